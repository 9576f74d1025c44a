"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores and
services do the work; these only own the shape.

Layer rule: no imports from api/, audit/, or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class Role:
    """A named set of permission strings.

    permissions is nullable on purpose: a role row created without a
    permission list is treated as having none (see Principal.has_permission).
    """

    name: str
    id: str | None = None
    description: str | None = None
    permissions: list[str] | None = None


@dataclass
class User:
    """An admin account. email is the login identifier and is unique."""

    email: str
    name: str
    role_id: str
    id: str | None = None
    hashed_password: str | None = None
    role: Role | None = None
    created_at: str | None = None
    is_active: bool = True


@dataclass
class PasskeyCredential:
    """A WebAuthn public-key credential bound to one user.

    id is the base64url credential id exactly as the browser reports it in
    rawId, so lookups during authentication need no re-encoding.

    public_key holds the COSE-encoded key bytes returned by registration
    verification. counter is the authenticator's signature counter; it only
    ever moves forward.
    """

    id: str
    owner_id: str
    public_key: bytes
    counter: int = 0
    transports: list[str] = field(default_factory=list)
    device_type: str | None = None  # "single_device" | "multi_device"
    backed_up: bool = False
    name: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Principal:
    """The authenticated caller, decoded from a verified access token.

    Never loaded from the database per request -- the token is the source of
    truth until it expires.
    """

    id: str
    email: str
    name: str
    role_name: str
    permissions: list[str] | None = None

    def has_permission(self, permission: str) -> bool:
        return permission in (self.permissions or [])
