"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and
permission checks.

Only one auth method exists: an access token in the
Authorization: Bearer <token> header. The token already carries the role and
its permission list, so no helper here touches the database.

try_get_principal() is the soft variant (returns None on failure).
get_current_principal() wraps it and raises HTTP 401 if unauthenticated.
require_permission("<resource>.<action>") builds a dependency that raises
HTTP 401 without a principal and HTTP 403 when the role lacks the permission.

service_name("PASSKEY") builds a router-level dependency that tags the request
with the service prefix used in response envelope codes ("PASSKEY-400").

Layer rule: no imports from api/, audit/, or cache/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import HTTPException, Request

from auth.models import Principal
from auth.tokens import TokenIssuer, principal_from_claims

FORBIDDEN_MESSAGE = "Forbidden: insufficient permissions"


def try_get_principal(request: Request) -> Principal | None:
    """Decode the Bearer token on the request, if any.

    Returns the Principal on success, None on any failure. The result is
    cached on request.state so several dependencies in one request decode the
    token once.
    """
    if hasattr(request.state, "principal"):
        return request.state.principal

    principal: Principal | None = None
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        issuer: TokenIssuer = request.app.state.token_issuer
        claims = issuer.verify_access(auth_header[7:])
        if claims is not None:
            principal = principal_from_claims(claims)

    request.state.principal = principal
    return principal


def get_current_principal(request: Request) -> Principal:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(principal: Principal = Depends(get_current_principal)): ...
    """
    principal = try_get_principal(request)
    if principal is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return principal


def require_permission(permission: str) -> Callable[[Request], Principal]:
    """Build a dependency that requires one exact permission string.

    Use as a FastAPI dependency:
        @router.get("/audit/trails/{id}")
        async def route(principal: Principal = Depends(require_permission("audit.read"))): ...

    A role whose permission list is NULL has no permissions.
    """

    def _check(request: Request) -> Principal:
        principal = get_current_principal(request)
        if not principal.has_permission(permission):
            raise HTTPException(status_code=403, detail=FORBIDDEN_MESSAGE)
        return principal

    _check.__name__ = f"require_{permission.replace('.', '_')}"
    return _check


def service_name(name: str) -> Callable[[Request], None]:
    """Build a router dependency that sets the envelope code prefix for a service."""

    def _tag(request: Request) -> None:
        request.state.service_name = name

    return _tag
