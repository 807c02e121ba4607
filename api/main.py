"""
api/main.py -- FastAPI application entry point for RoleGate.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the auth components once (credential store, token codec,
revocation registry, login throttle, gate, authorizer), puts them on
app.state, starts the revocation sweep and refresh tasks, and tears everything down
symmetrically on shutdown.

Error handling: every auth failure is an AuthError subclass. One table
below maps classes to HTTP status codes; one handler renders the shared
error envelope.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.accounts import router as accounts_router
from api.routes.auth import router as auth_router
from api.routes.handlers import router as handlers_router
from auth.dependencies import AuthorizationMiddleware
from auth.errors import (
    AccessDenied,
    AccountNotFound,
    AuthError,
    DuplicateAccount,
    Forbidden,
    InvalidCredentials,
    InvalidPhoneFormat,
    InvalidToken,
    MalformedToken,
    Revoked,
    StoreUnavailable,
    Throttled,
    TokenError,
    WeakPassword,
)
from auth.gate import AuthenticationGate
from auth.revocation import RevocationRegistry
from auth.store import CredentialStore
from auth.throttle import FailedAttemptThrottle
from auth.tokens import TokenCodec
from auth.validation import SignupValidator
from core.config import APP_NAME, APP_VERSION, Settings, get_settings

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("rolegate.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Component wiring
# ---------------------------------------------------------------------------


def wire_components(
    app: FastAPI,
    settings: Settings,
    store: CredentialStore,
    clock: Callable[[], float] = time.time,
) -> None:
    """Build the auth components around ``store`` and attach them to app.state.

    Shared by the real lifespan and the test fixtures so both run the exact
    same object graph.
    """
    codec = TokenCodec.from_settings(settings, clock=clock)
    registry = RevocationRegistry(backend=store, clock=clock)
    registry.load()
    throttle = FailedAttemptThrottle(
        max_failures=settings.login_max_failures,
        window_seconds=settings.login_window_seconds,
        clock=clock,
    )
    app.state.store = store
    app.state.codec = codec
    app.state.registry = registry
    app.state.throttle = throttle
    app.state.gate = AuthenticationGate(
        store=store,
        codec=codec,
        registry=registry,
        throttle=throttle,
        validator=SignupValidator(settings.password_min_length),
    )
    app.state.authorizer = AuthorizationMiddleware(codec, registry)


# ---------------------------------------------------------------------------
# Background sweep task
# ---------------------------------------------------------------------------


async def _sweep_loop(app: FastAPI, interval: int) -> None:
    """Drop dead revocation entries and stale throttle counters every ``interval`` seconds.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly. The sweep itself hits the
    database, so it runs in a worker thread.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            removed = await asyncio.to_thread(app.state.registry.sweep)
        except StoreUnavailable:
            logger.warning("Revocation sweep skipped: credential store unavailable")
            continue
        purged = app.state.throttle.purge()
        if removed or purged:
            logger.info("Sweep removed %d revocation entries, %d throttle counters", removed, purged)


async def _refresh_loop(app: FastAPI, interval: int) -> None:
    """Merge revocations persisted by other processes every ``interval`` seconds.

    A logout handled by another worker, or a disable run from the CLI, only
    reaches this process's registry through the shared store.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(app.state.registry.refresh)
        except StoreUnavailable:
            logger.warning("Revocation refresh skipped: credential store unavailable")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. The store must exist before the registry loads persisted
    revocations, and the registry before the sweep task references it.
    """
    logger.info("%s API starting up", APP_NAME)
    store = CredentialStore.from_settings(_settings)
    wire_components(app, _settings, store)
    logger.info(
        "Auth initialized (algorithm=%s, token_ttl=%ds, revoked=%d)",
        _settings.jwt_algorithm,
        _settings.token_expire_seconds,
        len(app.state.registry),
    )
    app.state.sweep_task = asyncio.create_task(_sweep_loop(app, _settings.revocation_sweep_seconds))
    app.state.refresh_task = asyncio.create_task(_refresh_loop(app, _settings.revocation_refresh_seconds))

    yield

    app.state.refresh_task.cancel()
    app.state.sweep_task.cancel()
    app.state.store.close()
    logger.info("%s API shutdown complete", APP_NAME)


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title=f"{APP_NAME} API",
    description="JWT session tokens with role-based access control and early revocation.",
    version=APP_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "PATCH"],
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

app.include_router(auth_router, tags=["Auth"])
app.include_router(handlers_router, tags=["Role-scoped"])
app.include_router(accounts_router, tags=["Admin"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------

# First match wins, so subclasses come before their bases.
_STATUS_BY_ERROR: tuple[tuple[type[AuthError], int], ...] = (
    (WeakPassword, 400),
    (InvalidPhoneFormat, 400),
    (MalformedToken, 400),
    (InvalidCredentials, 401),
    (Forbidden, 403),
    (AccessDenied, 401),
    (TokenError, 401),
    (AccountNotFound, 404),
    (DuplicateAccount, 409),
    (Throttled, 429),
    (StoreUnavailable, 503),
)


def status_for(exc: AuthError) -> int:
    for error_cls, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            return status
    return 400


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render an AuthError with its stable code; never include internals.

    401s carry WWW-Authenticate so bearer clients know to (re)authenticate;
    429 and 503 carry Retry-After.
    """
    status = status_for(exc)
    detail = exc.reason if isinstance(exc, InvalidToken) else None
    response = JSONResponse(
        status_code=status,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message, detail=detail)).model_dump(),
    )
    if status == 401:
        if isinstance(exc, (InvalidToken, Revoked)):
            response.headers["WWW-Authenticate"] = 'Bearer error="invalid_token"'
        else:
            response.headers["WWW-Authenticate"] = "Bearer"
    if isinstance(exc, (Throttled, StoreUnavailable)):
        response.headers["Retry-After"] = str(exc.retry_after)
    if isinstance(exc, StoreUnavailable):
        logger.warning("%s %s -> 503 credential store unavailable", request.method, request.url.path)
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc.detail),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str([{"loc": e.get("loc"), "msg": e.get("msg")} for e in exc.errors()]),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with a dict detail ({code, message}).
    When detail is already structured, use it directly as the error field.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable.
# No rate limit -- health checks from load balancers must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and credential store reachability."""
    database = "ok" if request.app.state.store.ping() else "error"
    return HealthResponse(version=APP_VERSION, components={"app": "ok", "database": database})
