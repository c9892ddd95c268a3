"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The access token is read from, in priority order:
  1. Authorization: Bearer <token> header -- API clients.
  2. "access_token" cookie -- browser sessions.

Both converge on AuthenticationService.authenticate(), which validates the
JWT and checks both revocation lists. The service lives on
request.app.state.auth_service (wired by the lifespan in api/main.py).

try_get_current_claims() is the soft variant (returns None on failure).
get_current_claims() wraps it and raises HTTP 401 with the failure code.
require_role(role) builds a dependency that raises HTTP 403 without the role.

Layer rule: no imports from api/ or core/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from fastapi import HTTPException, Request

from auth.errors import TokenError
from auth.models import TokenClaims

logger = logging.getLogger("sessionguard.auth")


def _token_from_request(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        if token:
            return token
    return request.cookies.get("access_token") or None


def _authenticate(request: Request) -> TokenClaims:
    """Raise HTTP 401 with the specific TokenError code on any failure."""
    token = _token_from_request(request)
    if token is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    service = request.app.state.auth_service
    try:
        return service.authenticate(token)
    except TokenError as exc:
        raise HTTPException(
            status_code=401,
            detail={"code": exc.code, "message": str(exc)},
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


def try_get_current_claims(request: Request) -> TokenClaims | None:
    """Return the caller's claims, or None if the request is not authenticated.

    Never raises -- callers that need a hard 401 should use get_current_claims().
    """
    try:
        return _authenticate(request)
    except HTTPException:
        return None


def get_current_claims(request: Request) -> TokenClaims:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(claims: TokenClaims = Depends(get_current_claims)): ...
    """
    return _authenticate(request)


def require_role(role: str) -> Callable[[Request], TokenClaims]:
    """Build a dependency requiring `role`. HTTP 401 if unauthenticated, 403 without the role.

        @router.post("/admin-only")
        async def route(claims: TokenClaims = Depends(require_role("ROLE_ADMIN"))): ...
    """

    def dependency(request: Request) -> TokenClaims:
        claims = get_current_claims(request)
        if role not in claims.roles:
            logger.info("Forbidden: user_id=%s lacks %s", claims.user_id, role)
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": f"{role} required."},
            )
        return claims

    return dependency
