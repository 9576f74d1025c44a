"""
auth/tokens.py -- JWT issuance, password hashing, and principal decoding.

Security design decisions:
  JWT: python-jose with HS256. Access tokens carry the principal's identity,
       role name and permission list, so the permission gate needs no DB
       round trip. They are short-lived (5 minutes by default); refresh tokens
       carry only id + email, are signed with a separate secret, and live for
       60 days. Verification returns None on any failure -- the route layer
       turns that into a 401.

       Every token carries a "type" claim and verify_* checks it, so a refresh
       token can never be replayed as an access token even when both secrets
       are the same.

  Passwords: bcrypt directly (no passlib wrapper). _DUMMY_HASH enables timing
       equalization in authenticate_user() so response time does not reveal
       whether an email is registered [C1].

Layer rule: no imports from api/, audit/, or cache/. Import from core/ is
allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.models import Principal

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore
    from core.config import Settings

logger = logging.getLogger("realm.auth")

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates input past 72 bytes; the API layer caps passwords at
    255 characters, and LoginRequest documents the limit.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash [C1]. Computed once at import so the first
# login attempt is not measurably slower than the rest.
_DUMMY_HASH: str = hash_password("realm_timing_dummy")


def authenticate_user(store: UserStore, email: str, password: str) -> User | None:
    """Authenticate an email/password login with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown email or passkey-only account: bcrypt runs against _DUMMY_HASH
    - Wrong password: bcrypt runs against the real hash

    Returns the User on success, None on any failure.
    """
    user = store.get_by_email(email)
    if user is None or user.hashed_password is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    if not user.is_active:
        return None
    return user


# ---------------------------------------------------------------------------
# Token issuer
# ---------------------------------------------------------------------------


class TokenIssuer:
    """Signs and verifies access and refresh tokens.

    Constructed once in the app lifespan and stored on app.state. Tests build
    their own instance with a fixed secret.
    """

    def __init__(
        self,
        secret_key: str,
        refresh_secret_key: str | None = None,
        access_ttl_seconds: int = 300,
        refresh_ttl_seconds: int = 60 * 24 * 60 * 60,
    ) -> None:
        self._secret = secret_key
        self._refresh_secret = refresh_secret_key or secret_key
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> TokenIssuer:
        return cls(
            secret_key=settings.secret_key,
            refresh_secret_key=settings.refresh_secret_key,
            access_ttl_seconds=settings.access_token_expire_seconds,
            refresh_ttl_seconds=settings.refresh_token_expire_seconds,
        )

    def sign_access(self, claims: dict) -> str:
        return self._sign(claims, "access", self._secret, self.access_ttl_seconds)

    def sign_refresh(self, claims: dict) -> str:
        return self._sign(claims, "refresh", self._refresh_secret, self.refresh_ttl_seconds)

    def issue_for(self, user: User, has_passkeys: bool | None = None) -> tuple[str, str]:
        """Sign an (access, refresh) pair for a user loaded with its role."""
        return self.sign_access(access_claims(user, has_passkeys)), self.sign_refresh(refresh_claims(user))

    def verify_access(self, token: str) -> dict | None:
        """Decode an access token. Returns the claims or None on any failure."""
        payload = self._verify(token, self._secret, "access")
        if payload is None or "role" not in payload:
            return None
        return payload

    def verify_refresh(self, token: str) -> dict | None:
        return self._verify(token, self._refresh_secret, "refresh")

    @staticmethod
    def _sign(claims: dict, token_type: str, secret: str, ttl_seconds: int) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            **claims,
            "type": token_type,
            "iat": now,
            "exp": now + timedelta(seconds=ttl_seconds),
        }
        return jwt.encode(payload, secret, algorithm=_ALGORITHM)

    @staticmethod
    def _verify(token: str, secret: str, token_type: str) -> dict | None:
        try:
            payload = jwt.decode(token, secret, algorithms=[_ALGORITHM])
        except JWTError as exc:
            logger.debug("Rejected %s token: %s", token_type, exc)
            return None
        if payload.get("type") != token_type or "id" not in payload:
            return None
        return payload


# ---------------------------------------------------------------------------
# Claims <-> domain mapping
# ---------------------------------------------------------------------------


def access_claims(user: User, has_passkeys: bool | None = None) -> dict:
    """Build access-token claims from a user with its role loaded."""
    role = user.role
    claims = {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "role": {
            "name": role.name if role else "",
            "permissions": list(role.permissions or []) if role else [],
        },
    }
    if has_passkeys is not None:
        claims["has_passkeys"] = has_passkeys
    return claims


def refresh_claims(user: User) -> dict:
    return {"id": user.id, "email": user.email}


def principal_from_claims(claims: dict) -> Principal:
    role = claims.get("role") or {}
    return Principal(
        id=claims["id"],
        email=claims.get("email", ""),
        name=claims.get("name", ""),
        role_name=role.get("name", ""),
        permissions=role.get("permissions"),
    )
