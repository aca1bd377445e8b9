"""
Sparse registry index protocol (`sparse+https://<host>/index/`).

Serves the same files as the git index, straight from its working copy.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response

from alexandrie.core.dependencies import Registry, get_registry
from alexandrie.domain.crate_utils import index_path, is_valid_crate_name
from alexandrie.domain.errors import NotFound

router = APIRouter()


@router.get("/config.json")
async def index_config(registry: Registry = Depends(get_registry)) -> Response:
    config = await registry.queries.index_config()
    return Response(content=config.to_json(), media_type="application/json")


async def _crate_file(path: str, name: str, registry: Registry) -> Response:
    # The prefix directories must be the ones the crate actually lives under.
    if not is_valid_crate_name(name) or index_path(name) != path.lower():
        raise NotFound(f"no index file at {path}")
    content = await registry.queries.index_file(name)
    return Response(content=content, media_type="text/plain")


@router.get("/{a}/{name}")
async def index_file_short(a: str, name: str, registry: Registry = Depends(get_registry)) -> Response:
    return await _crate_file(f"{a}/{name}", name, registry)


@router.get("/{a}/{b}/{name}")
async def index_file(a: str, b: str, name: str, registry: Registry = Depends(get_registry)) -> Response:
    return await _crate_file(f"{a}/{b}/{name}", name, registry)
