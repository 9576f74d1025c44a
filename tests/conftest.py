"""
tests/conftest.py -- Shared test fixtures for Realm Admin tests.

This module provides:
  - make_test_stores(): isolated in-memory DBs for users, passkeys and audit
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - api_env: one TestClient per module plus tokens for a superadmin and a
    limited admin
  - fake_clock / challenges: SQLite challenge cache driven by a fake clock
  - helpers to build browser WebAuthn payloads around a known challenge

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any app import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient
from webauthn.helpers import bytes_to_base64url

from api.limiter import limiter
from api.main import app
from audit.store import AuditStore
from auth.models import Role, User
from auth.passkeys import PasskeyService
from auth.permissions import admin_permissions, superadmin_permissions
from auth.store import PasskeyStore, UserStore
from auth.tokens import TokenIssuer, hash_password
from cache.store import ChallengeCache

TEST_SECRET = "test-secret-key-that-is-long-enough-000"
TEST_REFRESH_SECRET = "test-refresh-key-that-is-long-enough-00"
RP_ID = "localhost"
ORIGIN = "http://localhost:5173"


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


@dataclass
class Stores:
    users: UserStore
    passkeys: PasskeyStore
    audit: AuditStore
    challenges: ChallengeCache

    def close(self) -> None:
        self.challenges.close()
        self.audit.close()
        self.passkeys.close()
        self.users.close()


def make_test_stores(db_suffix: str) -> Stores:
    """Create isolated named shared-memory SQLite stores for test isolation.

    Args:
        db_suffix: Unique string appended to the DB name so test modules don't
                   share state (e.g. 'api', 'passkeys').
    """
    url = f"sqlite:///file:test_realm_{db_suffix}?mode=memory&cache=shared&uri=true"
    return Stores(
        users=UserStore(url),
        passkeys=PasskeyStore(url),
        audit=AuditStore(url),
        challenges=ChallengeCache(),
    )


def make_issuer() -> TokenIssuer:
    return TokenIssuer(TEST_SECRET, TEST_REFRESH_SECRET, access_ttl_seconds=3600)


def make_service(stores: Stores) -> PasskeyService:
    return PasskeyService(
        users=stores.users,
        passkeys=stores.passkeys,
        challenges=stores.challenges,
        rp_id=RP_ID,
        rp_name="Realm Admin Test",
        origin=ORIGIN,
    )


def _patch_lifespan(stores: Stores, issuer: TokenIssuer):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = stores.users
        app.state.passkey_store = stores.passkeys
        app.state.audit_store = stores.audit
        app.state.challenges = stores.challenges
        app.state.token_issuer = issuer
        app.state.passkey_service = make_service(stores)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# WebAuthn payload helpers
# ---------------------------------------------------------------------------


def client_data(challenge: str, ceremony: str = "webauthn.create", origin: str = ORIGIN) -> str:
    """base64url clientDataJSON echoing the given challenge, as a browser would send it."""
    raw = json.dumps({"type": ceremony, "challenge": challenge, "origin": origin, "crossOrigin": False})
    return bytes_to_base64url(raw.encode("utf-8"))


def registration_response(challenge: str, raw_id: str = "Y3JlZC0x") -> dict:
    return {
        "id": raw_id,
        "rawId": raw_id,
        "type": "public-key",
        "response": {
            "clientDataJSON": client_data(challenge, "webauthn.create"),
            "attestationObject": "o2NmbXRkbm9uZQ",
            "transports": ["internal", "hybrid"],
        },
        "clientExtensionResults": {},
    }


def authentication_response(challenge: str, raw_id: str = "Y3JlZC0x") -> dict:
    return {
        "id": raw_id,
        "rawId": raw_id,
        "type": "public-key",
        "response": {
            "clientDataJSON": client_data(challenge, "webauthn.get"),
            "authenticatorData": "SZYN5YgOjGh0NBcPZHZgW4_krrmihjLHmVzzuoMdl2MFAAAAAQ",
            "signature": "MEUCIQDsig",
        },
        "clientExtensionResults": {},
    }


# ---------------------------------------------------------------------------
# Function-scoped fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    """Login tests share one client IP; start every test with empty counters."""
    limiter.reset()


@pytest.fixture
def fake_clock() -> list[float]:
    """Mutable clock: tests advance time with fake_clock[0] += seconds."""
    return [1_000_000.0]


@pytest.fixture
def challenges(fake_clock: list[float]) -> Generator[ChallengeCache, None, None]:
    cache = ChallengeCache(clock=lambda: fake_clock[0])
    yield cache
    cache.close()


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@dataclass
class ApiEnv:
    client: TestClient
    stores: Stores
    issuer: TokenIssuer
    root_id: str
    root_token: str
    admin_id: str
    admin_token: str

    def auth(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}


@pytest.fixture(scope="module")
def api_env(request) -> Generator[ApiEnv, None, None]:
    """Yield an ApiEnv for HTTP integration tests.

    Two users exist before the client starts:
      root@example.com  / rootpass123   -- superadmin (every permission)
      admin@example.com / adminpass123  -- admin (admins.read, admins.create, audit.read)
    """
    stores = make_test_stores(request.module.__name__.rsplit(".", 1)[-1])
    issuer = make_issuer()

    superadmin_id = stores.users.create_role(Role(name="superadmin", permissions=superadmin_permissions()))
    admin_role_id = stores.users.create_role(Role(name="admin", permissions=admin_permissions()))
    root_id = stores.users.create_user(
        User(email="root@example.com", name="Root", role_id=superadmin_id, hashed_password=hash_password("rootpass123"))
    )
    admin_id = stores.users.create_user(
        User(email="admin@example.com", name="Ada", role_id=admin_role_id, hashed_password=hash_password("adminpass123"))
    )
    root_token, _ = issuer.issue_for(stores.users.get_by_id(root_id))
    admin_token, _ = issuer.issue_for(stores.users.get_by_id(admin_id))

    app.router.lifespan_context = _patch_lifespan(stores, issuer)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiEnv(client, stores, issuer, root_id, root_token, admin_id, admin_token)

    stores.close()
