"""
auth/tokens.py -- Bearer token codec, password hashing, reset-token generation.

Security design decisions:
  Bearer tokens: python-jose JWS with HS256. The signed payload is the
       URI-escaped JSON of an identity snapshot (see User.to_snapshot()), so
       the server needs no session table -- the client carries its own
       identity. Tokens have no exp claim and no key version: rotating
       SECRET_KEY invalidates every outstanding token at once. Staleness is
       handled by the session reconciler (auth/session.py), not by expiry.

       verify_token() raises InvalidSignature on any failure. Callers treat
       that as "unauthenticated" and never show it to the client.

  Passwords: bcrypt used directly. The _DUMMY_HASH constant enables timing
       equalization in authenticate_user() so response time does not reveal
       whether an email is registered.

  Reset tokens: secrets.token_hex(20) -- 160 bits from the OS CSPRNG. The
       token is stored in plain text; possession is the only credential, and
       it dies after one use or one hour.

  SECRET_KEY: sourced from core.config.get_settings() once at import.

Layer rule: no imports from api/ or web/. Import from core/ is allowed.
"""

from __future__ import annotations

import json
import logging
import secrets
from typing import TYPE_CHECKING
from urllib.parse import quote, unquote

import bcrypt
from jose import jws
from jose.exceptions import JOSEError
from sqlalchemy.exc import SQLAlchemyError

from auth.errors import InvalidSignature, UpstreamFailure
from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("passgate.auth")

_settings = get_settings()

_ALGORITHM = "HS256"

# Characters encodeURI() leaves untouched, beyond quote()'s always-safe set.
_URI_SAFE = ";,/?:@&=+$!*'()#"

TOKEN_COOKIE = "token"
REDIRECT_COOKIE = "redirect"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    The validation layer caps passwords at 72 UTF-8 bytes, which bcrypt
    refuses to exceed.
    """
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("passgate_timing_dummy")


# ---------------------------------------------------------------------------
# Bearer token codec
# ---------------------------------------------------------------------------


def issue_token(snapshot: dict, secret_key: str | None = None) -> str:
    """Sign an identity snapshot into an opaque bearer token.

    Serialize, escape, sign. Pure function of the snapshot and the secret.
    Key order inside the payload is not significant: verify_token() returns
    a dict, and snapshots are compared by value.
    """
    escaped = quote(json.dumps(snapshot, separators=(",", ":")), safe=_URI_SAFE)
    return jws.sign(escaped.encode("utf-8"), secret_key or _settings.secret_key, algorithm=_ALGORITHM)


def verify_token(token: str, secret_key: str | None = None) -> dict:
    """Verify a bearer token and return the embedded snapshot.

    Raises InvalidSignature for a bad signature, a malformed token, or a
    payload that is not a JSON object. No expiry is enforced here.
    """
    try:
        payload = jws.verify(token, secret_key or _settings.secret_key, algorithms=[_ALGORITHM])
        snapshot = json.loads(unquote(payload.decode("utf-8")))
    except (JOSEError, UnicodeDecodeError, ValueError, AttributeError) as exc:
        raise InvalidSignature(str(exc)) from exc
    if not isinstance(snapshot, dict):
        raise InvalidSignature("token payload is not an object")
    return snapshot


# ---------------------------------------------------------------------------
# User authentication (constant-time)
# ---------------------------------------------------------------------------


def authenticate_user(store: UserStore, email: str, password: str) -> User | None:
    """Authenticate a local email/password login with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown email or provider-only account: bcrypt runs against _DUMMY_HASH
    - Wrong password: bcrypt runs against the real hash

    Returns the User on success, None on bad credentials. A store failure
    raises UpstreamFailure.
    """
    try:
        user = store.get_by_email(email)
    except SQLAlchemyError as exc:
        logger.exception("Store failure during password login")
        raise UpstreamFailure("identity store unavailable") from exc
    if user is None or user.hashed_password is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    return user


# ---------------------------------------------------------------------------
# Reset tokens
# ---------------------------------------------------------------------------


def generate_reset_token() -> str:
    """Return 20 random bytes as 40 hex characters."""
    return secrets.token_hex(20)


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str) -> None:
    """Write the bearer token as the "token" cookie on the response.

    httponly is off: single-page clients read the token and replay it in the
    Authorization header. samesite="lax" keeps it off cross-site POSTs.
    max_age of 0 leaves it a browser-session cookie.
    """
    max_age = _settings.token_cookie_max_age or None
    response.set_cookie(
        TOKEN_COOKIE,
        value=token,
        httponly=False,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=max_age,
    )


def set_redirect_cookie(response, destination: str) -> None:
    """Record a pending post-login redirect hint for the client."""
    response.set_cookie(
        REDIRECT_COOKIE,
        value=destination,
        samesite="lax",
        secure=_settings.secure_cookies,
    )
