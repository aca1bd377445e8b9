"""
Caller identification for the Cargo API.

Cargo sends the registry token verbatim in the `Authorization` header.
Tokens are issued elsewhere; this module only resolves them to accounts.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header

from alexandrie.core.dependencies import Registry, get_registry
from alexandrie.domain.errors import Unauthorized
from alexandrie.domain.models import AccountRecord


async def require_caller(
    authorization: Optional[str] = Header(default=None),
    registry: Registry = Depends(get_registry),
) -> AccountRecord:
    """
    Dependency returning the account behind the request's API token.

    Raises:
        Unauthorized: If the header is missing or the token is unknown.
    """
    if not authorization:
        raise Unauthorized("missing API token")
    token = authorization.strip()
    if token.lower().startswith("bearer "):
        token = token[7:].strip()
    return await registry.queries.authenticate(token)
