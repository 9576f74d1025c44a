"""
API request and response models for Realm Admin REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
audit/models.py, which own the internal domain representation. Route
handlers map between the two.

Every response body is wrapped in an Envelope:

    {"meta": {"code": "PASSKEY-200", "message": "..."}, "data": {...}}

meta.errors is present only on validation failures.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


class FieldError(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    messages: list[str]


class Meta(BaseModel):
    """Envelope metadata. code is "<SERVICE>-<http status>", e.g. "AUTH-401"."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    errors: Optional[list[FieldError]] = None


class Envelope(BaseModel):
    model_config = ConfigDict(frozen=True)

    meta: Meta
    data: Any = None


class HealthResponse(BaseModel):
    """Data for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str


# ---------------------------------------------------------------------------
# Password auth and tokens
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    password is capped at 255 characters; bcrypt only reads the first 72 bytes.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1)


class TokenPair(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class LoginResponse(TokenPair):
    has_passkeys: bool = False


class MeResponse(BaseModel):
    """Identity of the caller, decoded from the access token."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    name: str
    role: str
    permissions: list[str]


# ---------------------------------------------------------------------------
# Passkeys -- browser credential payloads
#
# Field names follow the WebAuthn JSON serialization (camelCase) because the
# browser sends them verbatim. Unknown fields are kept and handed to the
# verifier untouched.
# ---------------------------------------------------------------------------


class AuthenticatorResponsePayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    clientDataJSON: str
    attestationObject: Optional[str] = None
    authenticatorData: Optional[str] = None
    signature: Optional[str] = None
    userHandle: Optional[str] = None
    transports: Optional[list[str]] = None


class CredentialPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1)
    rawId: str = Field(min_length=1)
    response: AuthenticatorResponsePayload
    type: str = "public-key"
    clientExtensionResults: dict[str, Any] = Field(default_factory=dict)
    authenticatorAttachment: Optional[str] = None

    def to_webauthn(self) -> dict:
        return self.model_dump(exclude_none=True)


# ---------------------------------------------------------------------------
# Passkeys -- ceremony requests
# ---------------------------------------------------------------------------


class PasskeyRegisterStart(BaseModel):
    """Request body for POST /api/v1/auth/passkey/register.

    email must match the authenticated caller. name labels the new passkey.
    uuid correlates a cross-device ceremony; any non-empty string is accepted.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255)
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    uuid: Optional[str] = Field(default=None, min_length=1, max_length=128)


class PasskeyRegisterFinish(BaseModel):
    response: CredentialPayload
    uuid: Optional[str] = Field(default=None, min_length=1, max_length=128)


class PasskeyLoginStart(BaseModel):
    """Request body for POST /api/v1/auth/passkey/login.

    email is optional in the schema so that its absence is reported by the
    ceremony ("Email is required...") rather than as a generic validation error.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: Optional[str] = Field(default=None, max_length=255)
    uuid: Optional[str] = Field(default=None, min_length=1, max_length=128)


class PasswordlessLoginStart(BaseModel):
    uuid: str = Field(min_length=1, max_length=128)


class PasskeyLoginFinish(BaseModel):
    """Request body for POST /api/v1/auth/passkey/login/finish.

    user_id (returned by the email-based start) selects the email flow;
    when it is missing or "" the passwordless challenge stored under uuid
    is used.
    """

    response: CredentialPayload
    uuid: Optional[str] = Field(default=None, min_length=1, max_length=128)
    user_id: Optional[str] = Field(default=None, max_length=36)


# ---------------------------------------------------------------------------
# Passkeys -- responses
# ---------------------------------------------------------------------------


class PasskeyOptionsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    options: dict[str, Any]
    user_id: Optional[str] = None


class PasskeySummary(BaseModel):
    """A registered passkey as shown to its owner. The public key is never exposed."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: Optional[str] = None
    device_type: Optional[str] = None
    backed_up: bool
    transports: list[str] = Field(default_factory=list)
    created_at: str
    updated_at: str


class SuccessResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


class AuditChangeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    table_name: str
    old_value: Any = None
    new_value: Any = None


class AuditTrailResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: Optional[str] = None
    action: str
    changes: list[AuditChangeResponse]
    ip_address: str
    user_agent: str
    created_at: str
    is_rolled_back: bool
