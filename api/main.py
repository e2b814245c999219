"""
api/main.py -- FastAPI application entry point for BankDVWA.

Run with:  uvicorn asgi:app --reload
           python main.py serve

Middleware stack (outermost to innermost):
  1. log_requests      -- one log line per request with latency
  2. setup_redirect    -- first-run redirect to /setup
  3. SessionMiddleware -- loads request.state.session, holds the per-session lock
  4. SlowAPIMiddleware -- per-IP limits from api.limiter

Lifespan builds every store and the access gate on app.state and starts the
session purge task; shutdown cancels the task and closes the stores.

Errors: every core.errors.SecurityError is turned into the
{"error": {"code", "message"}} envelope for /api/* paths. Other paths are
handed to app.state.web_error_handler (installed by asgi.py) so the web layer
can answer with redirects and flash messages instead; HTTPException on those
paths goes to app.state.web_http_error_handler and renders the error page.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.vulnerabilities import router as vulnerabilities_router
from auth.audit import AuditLog
from auth.session_manager import AuthSessionManager
from auth.store import UserStore
from bank.store import BankStore
from core.config import Settings, get_settings
from core.errors import RateLimited, SecurityError
from security.csrf import CsrfTokenManager
from security.gate import AccessGate
from security.levels import SecurityLevelStore
from security.rate_limit import RateLimiter
from sessions.middleware import SessionMiddleware
from sessions.store import SessionStore

__version__ = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("bankdvwa.api")

_PURGE_INTERVAL = 60 * 60  # 1 hour


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def wire_services(
    app: FastAPI,
    settings: Settings,
    *,
    user_store: UserStore,
    levels: SecurityLevelStore,
    bank: BankStore,
    audit: AuditLog,
    session_store: SessionStore,
) -> None:
    """Attach the stores and the components built on them to app.state.

    Shared by the real lifespan and the test fixtures so both run the same
    object graph.
    """
    csrf = CsrfTokenManager(token_bytes=settings.csrf_token_bytes, ttl_seconds=settings.csrf_ttl_seconds)
    rate_limiter = RateLimiter(
        enabled=settings.rate_limit_enabled,
        max_requests=settings.rate_limit_max_requests,
        period_seconds=settings.rate_limit_period,
    )
    auth = AuthSessionManager(
        user_store,
        idle_timeout=settings.session_idle_timeout,
        csrf=csrf,
        rate_limiter=rate_limiter,
        audit=audit,
    )
    app.state.settings = settings
    app.state.user_store = user_store
    app.state.levels = levels
    app.state.bank = bank
    app.state.audit = audit
    app.state.session_store = session_store
    app.state.csrf = csrf
    app.state.rate_limiter = rate_limiter
    app.state.auth = auth
    app.state.gate = AccessGate(auth, csrf, rate_limiter, levels, audit=audit)
    app.state.setup_required = not user_store.has_users()


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Drop idle session rows every hour.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine.
    """
    while True:
        await asyncio.sleep(_PURGE_INTERVAL)
        purged = app.state.session_store.purge_expired()
        if purged:
            logger.info("Purged %d idle sessions", purged)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build stores on startup, close them on shutdown.

    Everything before yield runs on startup; everything after yield runs on
    shutdown.
    """
    settings = get_settings()
    logger.info("BankDVWA starting up")
    Path(settings.session_db_path).parent.mkdir(parents=True, exist_ok=True)
    wire_services(
        app,
        settings,
        user_store=UserStore(settings.database_url),
        levels=SecurityLevelStore(
            settings.database_url,
            default_level=settings.default_security_level,
            vulnerabilities=tuple(settings.vulnerabilities),
        ),
        bank=BankStore(settings.database_url),
        audit=AuditLog(settings.database_url),
        session_store=SessionStore(
            settings.secret_key,
            db_path=settings.session_db_path,
            ttl=settings.session_store_ttl,
        ),
    )
    logger.info("Stores initialized (setup_required=%s)", app.state.setup_required)
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    for name in ("user_store", "levels", "bank", "audit", "session_store"):
        getattr(app.state, name).close()
    logger.info("BankDVWA shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="BankDVWA API",
    description="Deliberately vulnerable banking application with switchable security levels.",
    version=__version__,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() and @app.middleware("http") both wrap the current stack, so
# the last registration is the outermost layer.
# ---------------------------------------------------------------------------

app.add_middleware(SlowAPIMiddleware)
app.add_middleware(SessionMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def setup_redirect(request: Request, call_next):
    """Redirect all requests to /setup when no users exist (first-run state).

    The setup_required flag is set in lifespan and cleared by POST /setup once
    the first admin is created. POST /setup re-checks at the DB level.
    """
    path = request.url.path
    if getattr(request.app.state, "setup_required", False):
        exempt = ("/setup", "/api/v1/health")
        if path not in exempt and not path.startswith(("/static/",)):
            return RedirectResponse("/setup", status_code=302)
    return await call_next(request)


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
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])
app.include_router(vulnerabilities_router, prefix="/api/v1", tags=["Vulnerabilities"])
# Web UI router is mounted by asgi.py, not here.


# ---------------------------------------------------------------------------
# Exception handlers
#
# All JSON handlers return the same ErrorResponse envelope so API clients can
# parse errors uniformly.
# ---------------------------------------------------------------------------


def _error_json(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(SecurityError)
async def security_error_handler(request: Request, exc: SecurityError):
    web_handler = getattr(request.app.state, "web_error_handler", None)
    if web_handler is not None and not request.url.path.startswith("/api/"):
        return web_handler(request, exc)
    response = _error_json(exc.status_code, exc.code, exc.message)
    if isinstance(exc, RateLimited):
        response.headers["Retry-After"] = str(exc.retry_after)
    if exc.status_code >= 500:
        logger.error("%s on %s %s", exc.code, request.method, request.url.path)
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when the per-IP limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_json(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error_json(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Route handlers raise HTTPException with detail=ErrorDetail(...).model_dump().

    A dict detail is used directly as the error field; str(dict) would give a
    Python repr, not JSON. Non-/api paths get the web error page when asgi.py
    has installed one.
    """
    web_handler = getattr(request.app.state, "web_http_error_handler", None)
    if web_handler is not None and not request.url.path.startswith("/api/"):
        return web_handler(request, exc)
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error_json(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler. The traceback goes to the log, never to the client."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_json(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=__version__)
