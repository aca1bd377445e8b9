from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import HTMLResponse, StreamingResponse

from alexandrie.api.auth import require_caller
from alexandrie.core.dependencies import Registry, get_registry
from alexandrie.domain.models import (
    AccountRecord,
    CategoriesResponse,
    CrateInfo,
    OkResponse,
    OwnerEntry,
    OwnersRequest,
    OwnersResponse,
    PublishResponse,
    SearchResponse,
    SuggestResponse,
)
from alexandrie.services.envelope import read_envelope

logger = logging.getLogger(__name__)
router = APIRouter()

# ---------------------------------------------------------------------------
# 1. PUT /crates/new
# ---------------------------------------------------------------------------


@router.put("/crates/new", response_model=PublishResponse)
async def publish_crate(
    request: Request,
    caller: AccountRecord = Depends(require_caller),
    registry: Registry = Depends(get_registry),
) -> PublishResponse:
    """
    Cargo publish endpoint. The body is the binary upload envelope.
    """
    settings = registry.settings
    envelope = await read_envelope(
        request.stream(),
        max_crate_size=settings.max_crate_size,
        max_metadata_size=settings.max_metadata_size,
        timeout=settings.upload_timeout_seconds,
    )
    outcome = await registry.publisher.publish(envelope, caller)
    return PublishResponse(warnings=outcome.warnings)


# ---------------------------------------------------------------------------
# 2. Search and suggestions
# ---------------------------------------------------------------------------


@router.get("/crates", response_model=SearchResponse)
async def search_crates(
    q: str = Query(default=""),
    per_page: Optional[int] = Query(default=None, ge=1),
    page: int = Query(default=1, ge=1),
    registry: Registry = Depends(get_registry),
) -> SearchResponse:
    return await registry.queries.search(q, per_page=per_page, page=page)


@router.get("/crates/suggest", response_model=SuggestResponse)
async def suggest_crates(
    q: str = Query(default=""),
    limit: int = Query(default=10, ge=1, le=100),
    registry: Registry = Depends(get_registry),
) -> SuggestResponse:
    if not q.strip():
        return SuggestResponse(suggestions=[])
    return SuggestResponse(suggestions=await registry.queries.suggest(q, limit))


# ---------------------------------------------------------------------------
# 3. Crate information and downloads
# ---------------------------------------------------------------------------


@router.get("/crates/{name}", response_model=CrateInfo)
async def crate_info(name: str, registry: Registry = Depends(get_registry)) -> CrateInfo:
    return await registry.queries.crate_info(name)


@router.get("/crates/{name}/{vers}/download")
async def download_crate(name: str, vers: str, registry: Registry = Depends(get_registry)) -> StreamingResponse:
    result = await registry.queries.download(name, vers)
    headers = {"Content-Disposition": f'attachment; filename="{result.name}-{result.vers}.crate"'}
    if result.stream.size is not None:
        headers["Content-Length"] = str(result.stream.size)
    return StreamingResponse(result.stream, media_type="application/gzip", headers=headers)


@router.get("/crates/{name}/{vers}/readme", response_class=HTMLResponse)
async def crate_readme(name: str, vers: str, registry: Registry = Depends(get_registry)) -> HTMLResponse:
    return HTMLResponse(await registry.queries.readme(name, vers))


# ---------------------------------------------------------------------------
# 4. Yank / unyank
# ---------------------------------------------------------------------------


@router.delete("/crates/{name}/{vers}/yank", response_model=OkResponse, response_model_exclude_none=True)
async def yank_crate(
    name: str,
    vers: str,
    caller: AccountRecord = Depends(require_caller),
    registry: Registry = Depends(get_registry),
) -> OkResponse:
    await registry.queries.yank(name, vers, caller)
    return OkResponse(ok=True)


@router.put("/crates/{name}/{vers}/unyank", response_model=OkResponse, response_model_exclude_none=True)
@router.put("/crates/{name}/{vers}/yank", response_model=OkResponse, response_model_exclude_none=True)
async def unyank_crate(
    name: str,
    vers: str,
    caller: AccountRecord = Depends(require_caller),
    registry: Registry = Depends(get_registry),
) -> OkResponse:
    await registry.queries.unyank(name, vers, caller)
    return OkResponse(ok=True)


# ---------------------------------------------------------------------------
# 5. Owners
# ---------------------------------------------------------------------------


@router.get("/crates/{name}/owners", response_model=OwnersResponse)
async def list_owners(name: str, registry: Registry = Depends(get_registry)) -> OwnersResponse:
    owners = await registry.queries.list_owners(name)
    return OwnersResponse(users=[OwnerEntry(id=o.id, login=o.login, name=o.name) for o in owners])


@router.put("/crates/{name}/owners", response_model=OkResponse)
async def add_owners(
    name: str,
    body: OwnersRequest,
    caller: AccountRecord = Depends(require_caller),
    registry: Registry = Depends(get_registry),
) -> OkResponse:
    msg = await registry.queries.add_owners(name, body.users, caller)
    return OkResponse(ok=True, msg=msg)


@router.delete("/crates/{name}/owners", response_model=OkResponse)
async def remove_owners(
    name: str,
    body: OwnersRequest,
    caller: AccountRecord = Depends(require_caller),
    registry: Registry = Depends(get_registry),
) -> OkResponse:
    msg = await registry.queries.remove_owners(name, body.users, caller)
    return OkResponse(ok=True, msg=msg)


# ---------------------------------------------------------------------------
# 6. Categories
# ---------------------------------------------------------------------------


@router.get("/categories", response_model=CategoriesResponse)
async def list_categories(registry: Registry = Depends(get_registry)) -> CategoriesResponse:
    return await registry.queries.categories()
