"""
api/main.py -- FastAPI application entry point for Realm Admin.

Exposes password login, token refresh, passkey ceremonies and audit trail
lookups over HTTP for the admin console.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware        -- adds CORS headers for allowed browser origins
  2. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds every store and service once, places them on app.state, and
closes them symmetrically on shutdown. Route handlers and dependencies read
them from request.app.state; nothing is a module-level singleton.

Every response, including errors raised before a route runs, uses the
envelope from api/responses.py.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import FieldError, HealthResponse
from api.responses import respond
from api.routes.v1.audit import router as audit_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.passkeys import router as passkeys_router
from audit.store import AuditStore
from auth.passkeys import PasskeyService
from auth.store import PasskeyStore, UserStore
from auth.tokens import TokenIssuer
from cache.store import open_challenge_store
from core.config import get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("realm.api")

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Trim expired passkey challenges every 10 minutes.

    Expired challenges already read as absent; this only keeps the SQLite
    table from growing. The Redis backend expires keys itself and returns 0.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(10 * 60)
        removed = app.state.challenges.purge_expired()
        if removed:
            logger.info("Purged %d expired passkey challenges", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build stores and services on startup; close them on shutdown.

    Startup order matters: PasskeyService depends on the user, passkey and
    challenge stores, and the purge task references app.state.challenges.
    """
    settings = get_settings()
    logger.info("Realm Admin API starting up")

    app.state.user_store = UserStore(settings.database_url)
    app.state.passkey_store = PasskeyStore(settings.database_url)
    app.state.audit_store = AuditStore(settings.database_url)
    app.state.challenges = open_challenge_store(settings)
    app.state.token_issuer = TokenIssuer.from_settings(settings)
    app.state.passkey_service = PasskeyService(
        users=app.state.user_store,
        passkeys=app.state.passkey_store,
        challenges=app.state.challenges,
        rp_id=settings.passkey_rp_id,
        rp_name=settings.passkey_rp_name,
        origin=settings.passkey_origin,
        challenge_ttl_seconds=settings.challenge_ttl_seconds,
        timeout_ms=settings.passkey_timeout_ms,
    )
    if not app.state.user_store.has_users():
        logger.warning("No users exist yet. Run `python main.py seed-roles` and `python main.py create-admin`.")
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    # Shutdown
    app.state.purge_task.cancel()
    app.state.challenges.close()
    app.state.audit_store.close()
    app.state.passkey_store.close()
    app.state.user_store.close()
    logger.info("Realm Admin API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Realm Admin API",
    description="Admin authentication: passwords, passkeys (WebAuthn), role permissions and audit trail.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them: CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origin_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(passkeys_router, prefix="/api/v1", tags=["Passkey"])
app.include_router(audit_router, prefix="/api/v1", tags=["Audit"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the envelope so API clients can parse errors uniformly.
# The service prefix comes from the router that was matched; requests that
# never reached one (unknown path) are reported as APP.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with Retry-After when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    return respond(
        request,
        "Too many requests",
        status_code=429,
        headers={"Retry-After": str(retry_after)},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with one entry per invalid field.

    The leading location segment ("body", "query", "path") is dropped, so a
    bad body field is reported as "email", and a nested one as
    "response.rawId".
    """
    grouped: dict[str, list[str]] = {}
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ())]
        if loc and loc[0] in ("body", "query", "path", "header"):
            loc = loc[1:]
        grouped.setdefault(".".join(loc) or "body", []).append(err.get("msg", "Invalid value"))
    errors = [FieldError(field=f, messages=msgs) for f, msgs in grouped.items()]
    return respond(request, "Validation Error", status_code=400, errors=errors)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Envelope for HTTPException raised by dependencies and for unknown routes."""
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    if exc.status_code == 404 and message == "Not Found":
        message = "Route not found"
    return respond(request, message, status_code=exc.status_code, headers=getattr(exc, "headers", None))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    Security note: the raw exception is written to the log only, never to the
    response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return respond(request, "An unexpected error occurred", status_code=500)


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
async def health(request: Request) -> JSONResponse:
    """Return API liveness and current version."""
    return respond(request, "OK", HealthResponse(version=VERSION))
