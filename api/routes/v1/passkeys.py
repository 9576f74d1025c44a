"""
api/routes/v1/passkeys.py -- Passkey management and WebAuthn ceremony endpoints.

Routes:
  GET    /api/v1/auth/passkeys                     -- list caller's passkeys (requires auth)
  DELETE /api/v1/auth/passkeys/{id}                -- delete own passkey (requires auth)
  POST   /api/v1/auth/passkey/register             -- registration options (requires auth)
  POST   /api/v1/auth/passkey/register/finish      -- verify attestation (requires auth)
  POST   /api/v1/auth/passkey/login                -- email-based authentication options
  POST   /api/v1/auth/passkey/login/passwordless   -- discoverable-credential options
  POST   /api/v1/auth/passkey/login/finish         -- verify assertion; returns token pair

Status mapping for ceremony failures:
  start (register, login, passwordless)  -> 400
  register/finish                        -> 400
  login/finish                           -> 401
  delete                                 -> 400, or 403 when the passkey is not the caller's

Security:
  Ownership of a passkey is checked in PasskeyService.delete_passkey, never
  here. The assertion, not the request body, decides who logs in: tokens are
  signed for the credential's owner.
  [M5] Cache-Control: no-store on login/finish.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.models import (
    PasskeyLoginFinish,
    PasskeyLoginStart,
    PasskeyOptionsResponse,
    PasskeyRegisterFinish,
    PasskeyRegisterStart,
    PasskeySummary,
    PasswordlessLoginStart,
    SuccessResponse,
    TokenPair,
)
from api.responses import respond
from audit.recorder import AuditRecorder, audit_trail
from audit.redaction import redact_sensitive_data
from auth.dependencies import get_current_principal, service_name
from auth.models import PasskeyCredential, Principal
from auth.passkeys import FailureKind, PasskeyService
from auth.store import UserStore
from auth.tokens import TokenIssuer

logger = logging.getLogger("realm.api")

# Auth policy:
# - GET    /auth/passkeys, DELETE /auth/passkeys/{id}: requires auth
# - POST   /auth/passkey/register[/finish]:           requires auth
# - POST   /auth/passkey/login[/passwordless|/finish]: public -- these ARE the login
router = APIRouter(dependencies=[Depends(service_name("PASSKEY"))])


def _service(request: Request) -> PasskeyService:
    return request.app.state.passkey_service


def _summary(credential: PasskeyCredential) -> PasskeySummary:
    return PasskeySummary(
        id=credential.id,
        name=credential.name,
        device_type=credential.device_type,
        backed_up=credential.backed_up,
        transports=list(credential.transports),
        created_at=credential.created_at or "",
        updated_at=credential.updated_at or "",
    )


# ---------------------------------------------------------------------------
# Management (authenticated)
# ---------------------------------------------------------------------------


@router.get("/auth/passkeys")
def list_passkeys(request: Request, principal: Principal = Depends(get_current_principal)) -> JSONResponse:
    credentials = _service(request).list_passkeys(principal.id)
    return respond(request, "Passkeys retrieved successfully", [_summary(c) for c in credentials])


@router.delete("/auth/passkeys/{credential_id}")
def delete_passkey(
    request: Request,
    credential_id: str,
    principal: Principal = Depends(get_current_principal),
    audit: AuditRecorder = Depends(audit_trail),
) -> JSONResponse:
    """Delete one of the caller's passkeys. Another user's passkey gets 403."""
    result = _service(request).delete_passkey(principal.id, credential_id)
    if not result.success:
        audit.record_start_action("passkey.delete.failed")
        audit.record_change(
            "passkeys",
            None,
            {"user_id": principal.id, "passkey_id": credential_id, "success": False, "reason": result.error},
        )
        status = 403 if result.failure is FailureKind.FORBIDDEN else 400
        return respond(request, result.error or "Passkey deletion failed", status_code=status)

    audit.record_start_action("passkey.delete.success")
    audit.record_change(
        "passkeys",
        redact_sensitive_data(_summary(result.credential).model_dump()),
        {"user_id": principal.id, "passkey_id": credential_id, "success": True},
    )
    return respond(request, "Passkey deleted successfully", SuccessResponse())


# ---------------------------------------------------------------------------
# Registration (authenticated)
# ---------------------------------------------------------------------------


@router.post("/auth/passkey/register")
def register_start(
    request: Request,
    body: PasskeyRegisterStart,
    principal: Principal = Depends(get_current_principal),
) -> JSONResponse:
    """Return creation options for a new passkey on the caller's account.

    The email in the body must be the caller's own; registering a passkey for
    someone else is refused with 403 before any challenge is issued.
    """
    if body.email.lower() != principal.email.lower():
        return respond(request, "Email does not match authenticated user", status_code=403)

    result = _service(request).start_registration(
        user_id=principal.id,
        email=principal.email,
        display_name=principal.name,
        passkey_name=body.name,
        uuid=body.uuid,
    )
    if not result.success:
        return respond(request, result.error or "Registration failed", status_code=400)
    return respond(
        request, "Registration options generated successfully", PasskeyOptionsResponse(options=result.options or {})
    )


@router.post("/auth/passkey/register/finish")
def register_finish(
    request: Request,
    body: PasskeyRegisterFinish,
    principal: Principal = Depends(get_current_principal),
    audit: AuditRecorder = Depends(audit_trail),
) -> JSONResponse:
    result = _service(request).finish_registration(principal.id, body.response.to_webauthn(), uuid=body.uuid)
    if not result.success:
        audit.record_start_action("passkey.register.finish.failed")
        audit.record_change(
            "passkeys", None, {"user_id": principal.id, "uuid": body.uuid, "success": False, "reason": result.error}
        )
        return respond(request, result.error or "Passkey verification failed", status_code=400)

    audit.record_start_action("passkey.register.finish.success")
    audit.record_change("passkeys", None, redact_sensitive_data(_summary(result.credential).model_dump()))
    return respond(request, "Passkey registered successfully", SuccessResponse())


# ---------------------------------------------------------------------------
# Authentication (public)
# ---------------------------------------------------------------------------


@router.post("/auth/passkey/login")
def login_start(request: Request, body: PasskeyLoginStart) -> JSONResponse:
    result = _service(request).start_authentication(body.email, uuid=body.uuid)
    if not result.success:
        return respond(request, result.error or "Authentication failed", status_code=400)
    data = PasskeyOptionsResponse(options=result.options or {}, user_id=result.user_id)
    return respond(request, "Authentication options generated successfully", data)


@router.post("/auth/passkey/login/passwordless")
def login_passwordless(request: Request, body: PasswordlessLoginStart) -> JSONResponse:
    result = _service(request).start_passwordless(body.uuid)
    if not result.success:
        return respond(request, result.error or "Authentication failed", status_code=400)
    return respond(
        request,
        "Passwordless authentication options generated successfully",
        PasskeyOptionsResponse(options=result.options or {}),
    )


@router.post("/auth/passkey/login/finish")
def login_finish(
    request: Request,
    body: PasskeyLoginFinish,
    audit: AuditRecorder = Depends(audit_trail),
) -> JSONResponse:
    """Verify an assertion and sign tokens for the credential's owner.

    The audit row is flushed before tokens are signed so a successful login
    is on record even if signing fails.
    """
    no_store = {"Cache-Control": "no-store"}  # [M5]
    result = _service(request).finish_authentication(body.user_id or "", body.response.to_webauthn(), uuid=body.uuid)
    if not result.success:
        audit.record_start_action("passkey.auth.finish.failed")
        audit.record_change(
            "passkeys",
            None,
            {"uuid": body.uuid, "credential_id": body.response.rawId, "success": False, "reason": result.error},
        )
        return respond(request, result.error or "Authentication failed", status_code=401, headers=no_store)

    user_store: UserStore = request.app.state.user_store
    user = user_store.get_by_id(result.user_id or "")
    if user is None or not user.is_active:
        audit.record_start_action("passkey.auth.finish.failed")
        audit.record_change(
            "passkeys",
            None,
            {"uuid": body.uuid, "user_id": result.user_id, "success": False, "reason": "User not found"},
        )
        return respond(request, "User not found", status_code=401, headers=no_store)

    audit.identify(user.id)
    audit.record_start_action("passkey.auth.finish.success")
    audit.record_change(
        "passkeys",
        None,
        redact_sensitive_data({"uuid": body.uuid, "user_id": user.id, "email": user.email, "success": True}),
    )
    audit.flush_audit()

    issuer: TokenIssuer = request.app.state.token_issuer
    access, refresh = issuer.issue_for(user, has_passkeys=True)
    logger.info("Passkey login for user %s", user.id)
    data = TokenPair(access_token=access, refresh_token=refresh, expires_in=issuer.access_ttl_seconds)
    return respond(request, "Login successful", data, headers=no_store)
