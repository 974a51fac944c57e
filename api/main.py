"""
api/main.py -- FastAPI application entry point for the Plannr auth core.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. log_requests          -- method, path, status, latency for every request
  2. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  3. CORSMiddleware        -- adds CORS headers for allowed browser origins
  4. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  5. RouteGuardMiddleware  -- protected-path check, last stop before routing

Lifespan handles startup (identity store, mailer, services, session channel,
token purge task) and shutdown symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.dependencies import get_current_claim
from auth.guard import RouteGuardMiddleware
from auth.models import SessionClaim
from auth.reset import PasswordResetService
from auth.roles import RoleService
from auth.store import UserStore
from auth.sync import SessionChannel
from auth.verification import EmailVerificationService
from core.config import get_settings
from core.errors import AuthCoreError, DependencyUnavailable
from core.mailer import build_mailer

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("plannr.api")

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete consumed and expired reset and verification tokens every hour.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine.
    """
    store = app.state.user_store
    while True:
        await asyncio.sleep(60 * 60)
        for kind, purge in (("reset", store.purge_reset_tokens), ("verification", store.purge_verification_tokens)):
            try:
                removed = await asyncio.to_thread(purge)
            except SQLAlchemyError:
                logger.exception("%s token purge failed", kind.capitalize())
                continue
            if removed:
                logger.info("Purged %d stale %s token(s)", removed, kind)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. Startup order follows dependencies: store, then mailer, then
    the services built on both, then the purge task that uses the store.
    """
    settings = get_settings()
    logger.info("Plannr auth API starting up")
    app.state.user_store = UserStore(settings.database_url, settings.store_timeout_seconds)
    app.state.mailer = build_mailer(settings)
    app.state.role_service = RoleService(app.state.user_store)
    app.state.reset_service = PasswordResetService(app.state.user_store, app.state.mailer, settings)
    app.state.verification_service = EmailVerificationService(app.state.user_store, app.state.mailer, settings)
    app.state.session_channel = SessionChannel()
    logger.info("Auth initialized (protected prefixes: %s)", ", ".join(settings.protected_prefixes))
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.user_store.close()
    logger.info("Plannr auth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Plannr Auth API",
    description="Sessions, roles, password reset and route protection for Plannr.",
    version=__version__,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced by session-protected versions below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Starlette makes the LAST registered middleware the outermost one, so this
# list reads innermost-first: the route guard sits directly in front of the
# router and every handler.
# ---------------------------------------------------------------------------

app.add_middleware(RouteGuardMiddleware)

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["localhost", "127.0.0.1", "*.localhost", "testserver"],
)

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


# ---------------------------------------------------------------------------
# Session-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(claim: SessionClaim = Depends(get_current_claim)):
    """Swagger UI -- requires a session."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="Plannr Auth API")


@app.get("/redoc", include_in_schema=False)
async def redoc(claim: SessionClaim = Depends(get_current_claim)):
    """ReDoc UI -- requires a session."""
    return get_redoc_html(openapi_url="/openapi.json", title="Plannr Auth API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly. None of them put exception text into the response body.
# ---------------------------------------------------------------------------


def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message)).model_dump(exclude_none=True),
    )


@app.exception_handler(AuthCoreError)
async def auth_core_error_handler(request: Request, exc: AuthCoreError) -> JSONResponse:
    """Map the auth core's typed failures to their status code and generic message."""
    if isinstance(exc, DependencyUnavailable):
        logger.warning("%s unavailable on %s %s", exc.dependency, request.method, request.url.path)
    return _error_response(exc.status_code, exc.code, exc.message)


@app.exception_handler(SQLAlchemyError)
async def store_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Identity store failures that escaped a service become DependencyUnavailable."""
    logger.error("Identity store error on %s %s: %s", request.method, request.url.path, type(exc).__name__)
    unavailable = DependencyUnavailable("identity_store")
    return _error_response(unavailable.status_code, unavailable.code, unavailable.message)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(429, "rate_limited", "Too many requests.")
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 when request body or query params fail validation.

    Only field locations are echoed back, never the submitted values, since
    bodies here carry passwords and tokens.
    """
    fields = ", ".join(".".join(str(p) for p in err.get("loc", ())) for err in exc.errors())
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=fields or None,
            )
        ).model_dump(exclude_none=True),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable.
# No rate limit -- health checks from load balancers must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and identity store reachability."""
    try:
        request.app.state.user_store.ping()
        database = "ok"
    except SQLAlchemyError:
        logger.exception("Health check: identity store unreachable")
        database = "error"
    return HealthResponse(version=__version__, components={"app": "ok", "database": database})
