"""
api/routes/v1/auth.py -- Password login, token refresh and identity endpoints.

Routes:
  POST /api/v1/auth/login     -- email + password login; returns token pair
  POST /api/v1/auth/refresh   -- exchange a refresh token for a new pair
  GET  /api/v1/auth/me        -- current principal (requires auth)

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT, default 10/minute).
  [C1] authenticate_user() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on every response that carries tokens.
  Refresh re-reads the user from the store, so role and permission changes
  take effect at the next refresh rather than at the next password login.

  No `from __future__ import annotations` here: slowapi wraps login(), and
  FastAPI resolves string annotations against the wrapper's module globals.
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import LoginRequest, LoginResponse, MeResponse, RefreshRequest, TokenPair
from api.responses import respond
from audit.recorder import AuditRecorder, audit_trail
from audit.redaction import redact_sensitive_data
from auth.dependencies import get_current_principal, service_name
from auth.models import Principal
from auth.store import PasskeyStore, UserStore
from auth.tokens import TokenIssuer, authenticate_user
from core.config import get_settings

# Auth policy:
# - POST /api/v1/auth/login:    public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/refresh:  public -- the refresh token is the credential
# - GET  /api/v1/auth/me:       requires auth (get_current_principal)
router = APIRouter(dependencies=[Depends(service_name("AUTH"))])

_NO_STORE = {"Cache-Control": "no-store"}  # [M5]


def _login_rate_limit() -> str:
    return get_settings().login_rate_limit


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login")
@limiter.limit(_login_rate_limit)  # [H2] must sit BELOW @router so the registered endpoint is the limited wrapper
def login(
    request: Request,
    body: LoginRequest,
    audit: AuditRecorder = Depends(audit_trail),
) -> JSONResponse:
    """Authenticate with email and password; return access + refresh tokens.

    Uses authenticate_user() which includes timing equalization [C1]. Unknown
    email, passkey-only account and wrong password all produce the same
    "Invalid credentials" response.
    """
    user_store: UserStore = request.app.state.user_store
    passkey_store: PasskeyStore = request.app.state.passkey_store
    issuer: TokenIssuer = request.app.state.token_issuer

    user = authenticate_user(user_store, body.email, body.password)
    if user is None:
        audit.record_start_action("auth.login.failed")
        audit.record_change(
            "users", None, redact_sensitive_data({"email": body.email, "success": False, "reason": "Invalid credentials"})
        )
        return respond(request, "Invalid credentials", status_code=401, headers=_NO_STORE)

    has_passkeys = len(passkey_store.find_by_owner(user.id)) > 0
    access, refresh = issuer.issue_for(user, has_passkeys=has_passkeys)

    audit.identify(user.id)
    audit.record_start_action("auth.login.success")
    audit.record_change(
        "users",
        None,
        redact_sensitive_data({"email": user.email, "user_id": user.id, "success": True, "has_passkeys": has_passkeys}),
    )

    data = LoginResponse(
        access_token=access,
        refresh_token=refresh,
        expires_in=issuer.access_ttl_seconds,
        has_passkeys=has_passkeys,
    )
    return respond(request, "Login successful", data, headers=_NO_STORE)


@router.post("/auth/refresh")
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Verify a refresh token, re-read the user and sign a fresh pair."""
    user_store: UserStore = request.app.state.user_store
    issuer: TokenIssuer = request.app.state.token_issuer

    claims = issuer.verify_refresh(body.refresh_token)
    if claims is None:
        return respond(request, "Invalid refresh token", status_code=401, headers=_NO_STORE)

    user = user_store.get_by_id(claims["id"])
    if user is None or not user.is_active:
        return respond(request, "User not found", status_code=401, headers=_NO_STORE)

    access, refresh_token = issuer.issue_for(user)
    data = TokenPair(access_token=access, refresh_token=refresh_token, expires_in=issuer.access_ttl_seconds)
    return respond(request, "Token refreshed successfully", data, headers=_NO_STORE)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me")
def me(request: Request, principal: Principal = Depends(get_current_principal)) -> JSONResponse:
    """Return identity information for the caller, straight from the token."""
    data = MeResponse(
        id=principal.id,
        email=principal.email,
        name=principal.name,
        role=principal.role_name,
        permissions=list(principal.permissions or []),
    )
    return respond(request, "Current user retrieved successfully", data)
