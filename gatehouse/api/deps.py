from __future__ import annotations

from typing import Optional

from fastapi import Header

from gatehouse.logging import bind_auth_context, clear_auth_context, set_correlation_id
from gatehouse.service.runtime import get_runtime
from gatehouse.storage.models import Claims


async def _resolve(authorization: Optional[str], request_id: Optional[str]) -> Claims:
    set_correlation_id(request_id)
    clear_auth_context()
    claims = await get_runtime().auth.authenticate(authorization)
    bind_auth_context(claims.sub, claims.sid)
    return claims


async def get_auth_claims(
    authorization: Optional[str] = Header(None),
    x_request_id: Optional[str] = Header(None, alias="X-Request-ID"),
) -> Claims:
    """Resolve the caller's access claims or fail with 401."""
    return await _resolve(authorization, x_request_id)


async def optional_auth_claims(
    authorization: Optional[str] = Header(None),
    x_request_id: Optional[str] = Header(None, alias="X-Request-ID"),
) -> Optional[Claims]:
    """Like ``get_auth_claims`` but anonymous callers get None.

    A header that is present but invalid still fails.
    """
    if not authorization:
        set_correlation_id(x_request_id)
        clear_auth_context()
        return None
    return await _resolve(authorization, x_request_id)
