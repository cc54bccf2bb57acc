"""
api/main.py -- FastAPI application entry point for Passgate.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SessionMiddleware     -- signed server-side session cookie (request.session)
  4. log_requests          -- method, path, status and latency per request
  5. reconcile_identity    -- diffs the inbound token snapshot against the store

Starlette makes the LAST registered middleware the outermost one, so the
registrations below run innermost first. reconcile_identity must sit inside
SessionMiddleware or request.session is not available to it.

Lifespan opens the user store and mail transport on startup and closes the
store on shutdown.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.sessions import SessionMiddleware

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.dependencies import get_current_user, identify_request
from auth.errors import Conflict, TokenInvalid, UpstreamFailure, ValidationError
from auth.mail import Mailer
from auth.models import User
from auth.oauth import oauth as oauth_client
from auth.store import UserStore
from core.config import get_settings

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("passgate.api")

settings = get_settings()

# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open shared resources on startup; release them on shutdown.

    app.state after startup:
      user_store -- UserStore on settings.database_url
      mailer     -- Mailer built from the SMTP settings (dev mode if unset)
      oauth      -- authlib registry of configured providers
    """
    logger.info("Passgate API starting up")
    app.state.user_store = UserStore(settings.database_url)
    app.state.mailer = Mailer.from_settings(settings)
    app.state.oauth = oauth_client
    logger.info(
        "Auth initialized (users=%d, smtp=%s)",
        app.state.user_store.count_users(),
        "configured" if app.state.mailer.is_configured else "dev-mode",
    )

    yield

    app.state.user_store.close()
    logger.info("Passgate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Passgate API",
    description="Local accounts, bearer tokens, password reset and session reconciliation.",
    version=API_VERSION,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced by auth-protected routes below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Identity reconciliation middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def reconcile_identity(request: Request, call_next):
    """Resolve the caller against the store before any route runs.

    Leaves request.state.user (User or None) and request.state.must_reissue
    for the routes. The store lookup is blocking, so it runs in a worker
    thread.
    """
    await run_in_threadpool(identify_request, request)
    return await call_next(request)


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


# SessionMiddleware backs log_in()/log_out() and also stores the authlib
# OAuth state value between the provider redirect and the callback.
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.secret_key,
    https_only=settings.secure_cookies,
    same_site="lax",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
# Web router is mounted by asgi.py, not here.


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(user: User = Depends(get_current_user)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="Passgate API")


@app.get("/redoc", include_in_schema=False)
async def redoc(user: User = Depends(get_current_user)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="Passgate API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# Auth errors keep the client contract of the auth routes:
#   field errors  -> 400 [{param, msg, value}]
#   bad reset     -> 400 {"msg": ...}
# Everything else uses the ErrorResponse envelope.
# ---------------------------------------------------------------------------


@app.exception_handler(ValidationError)
async def field_validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content=exc.errors)


@app.exception_handler(Conflict)
async def conflict_handler(request: Request, exc: Conflict) -> JSONResponse:
    return JSONResponse(status_code=400, content=exc.as_field_errors())


@app.exception_handler(TokenInvalid)
async def token_invalid_handler(request: Request, exc: TokenInvalid) -> JSONResponse:
    return JSONResponse(status_code=400, content={"msg": str(exc)})


@app.exception_handler(UpstreamFailure)
async def upstream_failure_handler(request: Request, exc: UpstreamFailure) -> JSONResponse:
    """Store or mail transport failed. The cause is logged, never returned."""
    logger.error("Upstream failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content=ErrorResponse(
            error=ErrorDetail(
                code="service_unavailable",
                message="The service is temporarily unavailable. Please try again.",
            )
        ).model_dump(),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    A dict detail is used as the error field as-is; str(dict) would produce
    a Python repr, not JSON.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The traceback goes to the log only, never to the response body.
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
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> JSONResponse:
    """Return liveness plus a store check. 503 when the store is unreachable."""
    user_store: UserStore = request.app.state.user_store
    try:
        user_store.ping()
        database = "ok"
    except SQLAlchemyError:
        logger.warning("Health check: user store unreachable", exc_info=True)
        database = "unavailable"

    healthy = database == "ok"
    body = HealthResponse(
        status="healthy" if healthy else "degraded",
        version=API_VERSION,
        components={"app": "ok", "database": database},
    )
    return JSONResponse(status_code=200 if healthy else 503, content=body.model_dump())
