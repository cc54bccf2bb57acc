"""
web/routes.py -- Browser-facing sign-in routes for Passgate.

These routes answer with redirects, not JSON. They share app.state with the
API routes (same user store, same OAuth registry).

Route registration order matters. GET /auth/oauth/{provider} and
GET /auth/callback/{provider} are distinct literal prefixes, so neither can
capture the other's path segment.

Routes:
  GET  /signin                   -- / when signed in, otherwise /login
  GET  /signout                  -- clear session and token cookie, redirect /
  GET  /auth/oauth/{provider}    -- OAuth redirect to provider
  GET  /auth/callback/{provider} -- OAuth callback; token + redirect cookies
"""

import logging

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.exc import SQLAlchemyError

from auth.flows import complete_provider_login
from auth.oauth import get_enabled_providers, get_oauth_user_info, resolve_oauth_user
from auth.session import is_authenticated, log_in, log_out
from auth.store import UserStore
from auth.tokens import REDIRECT_COOKIE, TOKEN_COOKIE
from core.config import get_settings

logger = logging.getLogger("passgate.web")

router = APIRouter()

_OAUTH_FAILED = "/login?error=oauth_failed"


# ---------------------------------------------------------------------------
# Session entry points
# ---------------------------------------------------------------------------


@router.get("/signin")
async def signin(request: Request) -> RedirectResponse:
    if is_authenticated(request):
        return RedirectResponse("/", status_code=302)
    return RedirectResponse("/login", status_code=302)


@router.get("/signout")
async def signout(request: Request) -> RedirectResponse:
    log_out(request)
    resp = RedirectResponse("/", status_code=302)
    resp.delete_cookie(TOKEN_COOKIE)
    return resp


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


@router.get("/auth/oauth/{provider}")
async def oauth_redirect(request: Request, provider: str) -> RedirectResponse:
    """Redirect the browser to the OAuth provider's authorization page.

    The provider name is checked against the enabled list first, so a
    spoofed name cannot reach create_client().
    """
    enabled = {p["name"] for p in get_enabled_providers()}
    if provider not in enabled:
        return RedirectResponse(_OAUTH_FAILED, status_code=302)

    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/auth/callback/{provider}", name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> RedirectResponse:
    """Handle the OAuth provider callback.

    Flow:
      1. Exchange the authorization code (authlib checks the session state).
      2. Extract (email, subject, name); unverified emails are refused.
      3. Resolve the local user: linked identity, then email, then create.
      4. Open a session and hand off to complete_provider_login().

    A redirect cookie set before the round-trip is left in place; otherwise
    the landing page is stored there for the client to follow.
    """
    enabled = {p["name"] for p in get_enabled_providers()}
    if provider not in enabled:
        return RedirectResponse(_OAUTH_FAILED, status_code=302)

    user_store: UserStore = request.app.state.user_store
    client = request.app.state.oauth.create_client(provider)

    try:
        token = await client.authorize_access_token(request)
    except OAuthError:
        logger.exception("OAuth token exchange failed for provider %r", provider)
        return RedirectResponse(_OAUTH_FAILED, status_code=302)

    try:
        email, subject, name = await get_oauth_user_info(client, provider, token)
    except ValueError:
        logger.warning("OAuth login rejected: unverified or missing email from %r", provider)
        return RedirectResponse(_OAUTH_FAILED, status_code=302)

    try:
        user = resolve_oauth_user(user_store, provider, email, subject, name)
    except ValueError as exc:
        logger.warning("OAuth login rejected for %r: %s", provider, exc)
        return RedirectResponse(_OAUTH_FAILED, status_code=302)
    except SQLAlchemyError:
        logger.exception("Store failure while resolving %r identity", provider)
        return RedirectResponse(_OAUTH_FAILED, status_code=302)

    landing_page = get_settings().landing_page
    log_in(request, user)
    resp = RedirectResponse(landing_page, status_code=302)
    complete_provider_login(
        resp,
        user,
        landing_page=landing_page,
        has_pending_redirect=bool(request.cookies.get(REDIRECT_COOKIE)),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp
