"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/register          -- create local account; {token, redirect}
  POST /api/v1/auth/login             -- password login; {token, redirect}
  POST /api/v1/auth/logout            -- clear session and token cookie
  GET  /api/v1/auth/me                -- current identity, or {token} if stale
  POST /api/v1/auth/forgot-password   -- issue + mail a reset token; {message, status}
  POST /api/v1/auth/reset/{token}     -- redeem reset token; {user}
  GET  /api/v1/auth/providers         -- list enabled OAuth providers (public)

Error mapping (see exception handlers in api/main.py):
  ValidationError / Conflict -> 400 [{param, msg, value}]
  TokenInvalid               -> 400 {"msg": ...}
  UpstreamFailure            -> 503 error envelope

Security:
  authenticate_user() provides timing equalization -- use it, never inline.
  forgot-password answers the same way for unknown emails and store failures.
  Cache-Control: no-store on every response that carries a token.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from api.models import (
    ForgotPasswordRequest,
    LoginRequest,
    OAuthProviderInfo,
    RefreshedTokenResponse,
    RegisterRequest,
    ResetCompletedResponse,
    ResetPasswordRequest,
    ResetRequestResponse,
    TokenResponse,
    UserResponse,
)
from auth.dependencies import try_get_current_user
from auth.errors import NotFound, UpstreamFailure
from auth.flows import complete_login, register_user
from auth.mail import Mailer
from auth.oauth import get_enabled_providers
from auth.reset import request_password_reset, reset_password
from auth.session import log_in, log_out
from auth.store import UserStore
from auth.tokens import TOKEN_COOKIE, authenticate_user, issue_token, set_auth_cookie
from core.config import get_settings

logger = logging.getLogger("passgate.api")

# Auth policy: every route here is public. /auth/me answers null for
# anonymous callers instead of 401 so clients can check their session state.
router = APIRouter()

RESET_SENT_MSG = "Mail successfully sent"
RESET_FAILED_MSG = "Unable to process the password reset request."


def _token_response(payload: dict) -> JSONResponse:
    resp = JSONResponse(content=TokenResponse(**payload).model_dump())
    set_auth_cookie(resp, payload["token"])
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Registration and login
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=TokenResponse)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a local account, open a session, and issue its first token.

    The new account always gets provider "local" and the default role set,
    whatever the body says.
    """
    user_store: UserStore = request.app.state.user_store
    user = register_user(user_store, body.model_dump(by_alias=True))
    log_in(request, user)
    payload = complete_login(user, landing_page=get_settings().landing_page, redirect=body.redirect)
    return _token_response(payload)


@router.post("/auth/login", response_model=TokenResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; issue a token.

    Returns the same generic error for unknown email and wrong password.
    """
    user_store: UserStore = request.app.state.user_store
    user = authenticate_user(user_store, body.email, body.password)
    if user is None:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid email or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp

    log_in(request, user)
    payload = complete_login(user, landing_page=get_settings().landing_page, redirect=body.redirect)
    return _token_response(payload)


@router.post("/auth/logout")
async def logout(request: Request) -> JSONResponse:
    """Clear the server session and the token cookie."""
    log_out(request)
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie(TOKEN_COOKIE)
    return resp


@router.get("/auth/me")
async def me(request: Request) -> JSONResponse:
    """Return the caller's identity.

    null                anonymous (no token, bad signature, or user gone)
    {token}             the caller's token no longer matches the stored
                        record; here is a fresh one (also set as cookie)
    {id, name, ...}     the caller's token is current
    """
    user = try_get_current_user(request)
    if user is None:
        return JSONResponse(content=None)

    if not getattr(request.state, "must_reissue", False):
        return JSONResponse(content=UserResponse(**user.to_snapshot()).model_dump())

    token = issue_token(user.to_snapshot())
    resp = JSONResponse(content=RefreshedTokenResponse(token=token).model_dump())
    set_auth_cookie(resp, token)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.post("/auth/forgot-password", response_model=ResetRequestResponse)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> ResetRequestResponse:
    """Mail a one-hour reset link to the account registered under body.text.

    Unknown email and store failure produce the same "danger" response.
    """
    settings = get_settings()
    user_store: UserStore = request.app.state.user_store
    mailer: Mailer = request.app.state.mailer
    try:
        request_password_reset(
            user_store,
            mailer,
            body.text,
            base_url=settings.base_url,
            sender=settings.email_from,
            ttl_seconds=settings.reset_token_ttl_seconds,
        )
    except (NotFound, UpstreamFailure) as exc:
        logger.info("Password reset request not fulfilled: %s", type(exc).__name__)
        return ResetRequestResponse(message=RESET_FAILED_MSG, status="danger")
    return ResetRequestResponse(message=RESET_SENT_MSG, status="success")


@router.post("/auth/reset/{token}", response_model=ResetCompletedResponse)
def reset(request: Request, token: str, body: ResetPasswordRequest) -> ResetCompletedResponse:
    """Redeem a reset token, set the new password, and open a session.

    The client gets no bearer token here; its next /auth/me hands one out.
    """
    user_store: UserStore = request.app.state.user_store
    user = reset_password(user_store, token, body.password, body.confirm_password)
    log_in(request, user)
    return ResetCompletedResponse(user=UserResponse(**user.to_snapshot()))


# ---------------------------------------------------------------------------
# Provider metadata
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers() -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers. Empty if none are set."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers()]
