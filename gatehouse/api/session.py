from __future__ import annotations

from typing import Optional

from fastapi import Header, Request

from gatehouse.service.errors import UnauthenticatedError
from gatehouse.service.runtime import get_runtime
from gatehouse.service.tokens import Identity

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        return None
    return credentials.strip()


async def require_identity(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Identity:
    """Gate a protected route on a valid access token.

    The cookie wins over the Authorization header. Verification is local to
    the signing secret and never touches the cache or the account store.
    """
    token = request.cookies.get(ACCESS_COOKIE) or _bearer_token(authorization)
    if not token:
        raise UnauthenticatedError("no token provided")
    identity = get_runtime().tokens.verify_access(token)
    if identity is None:
        raise UnauthenticatedError("invalid or expired token")
    request.state.identity = identity
    return identity
