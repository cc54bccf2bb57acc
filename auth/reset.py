"""
auth/reset.py -- Password-reset workflow: token issuance and redemption.

Issuer (request_password_reset):
  1. Draw a fresh token from the OS CSPRNG.
  2. Find the one user with the given email -- NotFound otherwise.
  3. Store token + expiry (now + ttl) on that record in one UPDATE.
  4. Mail a deep link. Delivery failure is logged and swallowed: the token
     stays live until it expires. Accepted trade-off -- the user can simply
     ask again.

Redeemer (reset_password):
  1. Validate the new password BEFORE touching the store, so a typo never
     burns a valid token.
  2. Hash, then hand off to UserStore.redeem_reset_token(), which changes the
     password and clears both reset fields in a single conditional UPDATE.
  3. No row updated -> TokenInvalid. Wrong token, replayed token, expired
     token and a lost race all look the same to the caller.

Store failures surface as UpstreamFailure.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from auth.errors import NotFound, TokenInvalid, UpstreamFailure
from auth.mail import Mailer, forgot_password_email
from auth.tokens import generate_reset_token, hash_password
from auth.validation import PasswordForm, validate_form

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("passgate.auth.reset")

DEFAULT_TTL_SECONDS = 3600


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def request_password_reset(
    store: UserStore,
    mailer: Mailer,
    identifier: str,
    *,
    base_url: str,
    sender: str,
    ttl_seconds: int = DEFAULT_TTL_SECONDS,
    now: datetime | None = None,
) -> None:
    """Issue a reset token for the account registered under identifier.

    Raises NotFound if no account matches, UpstreamFailure if the store
    fails. Mail delivery problems never raise.
    """
    token = generate_reset_token()
    now = now or _utcnow()

    try:
        user = store.get_by_email(identifier)
        if user is None:
            raise NotFound("no account for identifier")
        if not store.set_reset_token(user.id, token, now + timedelta(seconds=ttl_seconds)):
            # Deleted between lookup and update.
            raise NotFound("account vanished before token could be stored")
    except SQLAlchemyError as exc:
        logger.exception("Store failure while issuing reset token")
        raise UpstreamFailure("identity store unavailable") from exc

    logger.info("Reset token issued for user_id=%s (prefix=%s)", user.id, token[:8])

    message = forgot_password_email(user, base_url, token, ttl_seconds, sender)
    try:
        mailer.send(message)
    except UpstreamFailure:
        logger.warning("Reset email for user_id=%s not delivered; token left in place", user.id, exc_info=True)


def reset_password(
    store: UserStore,
    token: str,
    password: str,
    confirm_password: str,
    *,
    now: datetime | None = None,
) -> User:
    """Redeem token and set the new password. Returns the updated user.

    Raises ValidationError (bad password, token untouched), TokenInvalid, or
    UpstreamFailure.
    """
    validate_form(PasswordForm, {"password": password, "confirmPassword": confirm_password})

    hashed = hash_password(password)
    try:
        user = store.redeem_reset_token(token, hashed, now or _utcnow())
    except SQLAlchemyError as exc:
        logger.exception("Store failure while redeeming reset token")
        raise UpstreamFailure("identity store unavailable") from exc

    if user is None:
        logger.info("Reset token rejected (prefix=%s)", token[:8])
        raise TokenInvalid("Token invalid or expired, please regenerate using forgot password.")

    logger.info("Password reset completed for user_id=%s", user.id)
    return user
