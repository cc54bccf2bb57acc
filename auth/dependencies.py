"""
auth/dependencies.py -- Request identity resolution and FastAPI Depends() helpers.

Inbound identity is checked in priority order:
  1. "token" cookie -- set by login, registration and OAuth completion.
  2. Authorization: Bearer <token> header -- API clients.
  3. Server-side session (request.session["user_id"]) -- set by log_in()
     after a password reset, before the client has been handed a token.

identify_request() runs once per request from the middleware in api/main.py.
It reconciles the inbound snapshot against the store and leaves the result on
request.state:
  request.state.user          authoritative User, or None (anonymous)
  request.state.must_reissue  True if the client's token is stale

A session-only identity carries just the id, so it always diffs as stale and
the client is handed a full token on its next /auth/me.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.

Layer rule: no imports from web/ or core/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import logging

from fastapi import HTTPException, Request

from auth.errors import InvalidSignature
from auth.models import User
from auth.session import SESSION_USER_KEY, reconcile
from auth.tokens import TOKEN_COOKIE, verify_token

logger = logging.getLogger("passgate.auth")


def extract_token(request: Request) -> str | None:
    """Return the raw bearer token from the cookie or Authorization header."""
    token: str | None = request.cookies.get(TOKEN_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    return token or None


def inbound_identity(request: Request) -> dict | None:
    """Return the identity snapshot the client claims, or None.

    A token that fails verification is logged and ignored -- never reported
    to the client as a distinct error.
    """
    token = extract_token(request)
    if token:
        try:
            return verify_token(token)
        except InvalidSignature:
            logger.info("Ignoring bearer token with invalid signature on %s", request.url.path)

    if "session" in request.scope:
        user_id = request.session.get(SESSION_USER_KEY)
        if user_id is not None:
            return {"id": user_id}
    return None


def identify_request(request: Request) -> None:
    """Reconcile the inbound identity and record the outcome on request.state.

    Blocking (hits the store). Call through run_in_threadpool from async code.
    """
    result = reconcile(request.app.state.user_store, inbound_identity(request))
    request.state.user = result.user
    request.state.must_reissue = result.must_reissue


def try_get_current_user(request: Request) -> User | None:
    """Return the reconciled User for this request, or None if anonymous."""
    return getattr(request.state, "user", None)


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user
