"""
auth/flows.py -- Registration and login completion.

Every successful authentication path (local sign-up, password login, OAuth
callback) ends here: the user's snapshot is signed into the first bearer
token and the client is told where to go next.

Registration error policy:
  Field validation failures -> ValidationError, one entry per field.
  Duplicate email           -> Conflict on "email", whatever the store's
                               engine-specific code was. Unlike the reset
                               request, this does reveal that the address is
                               registered.
  Other store rejections    -> ValidationError with the store's per-field list.
  Store unavailable         -> UpstreamFailure.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import SQLAlchemyError

from auth.errors import Conflict, StoreValidationError, UpstreamFailure, ValidationError
from auth.models import DEFAULT_ROLES, User
from auth.tokens import hash_password, issue_token, set_auth_cookie, set_redirect_cookie
from auth.validation import RegistrationForm, validate_form

if TYPE_CHECKING:
    from auth.store import UserStore

logger = logging.getLogger("passgate.auth")

DUPLICATE_EMAIL_MSG = "E-Mail already exists, please sign in"


def register_user(store: UserStore, data: dict[str, Any]) -> User:
    """Validate a sign-up form, create a local account, return the stored user."""
    form = validate_form(RegistrationForm, data)

    user = User(
        name=form.name,
        email=form.email,
        username=form.username,
        hashed_password=hash_password(form.password),
        provider="local",
        roles=list(DEFAULT_ROLES),
    )
    try:
        user_id = store.create_user(user)
        stored = store.get_by_id(user_id)
    except Conflict as exc:
        raise Conflict("email", DUPLICATE_EMAIL_MSG, form.email) from exc
    except StoreValidationError as exc:
        raise ValidationError(exc.errors) from exc
    except SQLAlchemyError as exc:
        logger.exception("Store failure while registering a local user")
        raise UpstreamFailure("identity store unavailable") from exc

    logger.info("Registered local user_id=%s", user_id)
    return stored or user


def complete_login(user: User, *, landing_page: str, redirect: str | None = None) -> dict:
    """Issue the first token for user and return the client payload.

    A redirect hint, when given, rides inside the token. The reconciler
    does not find it on the stored record, so the client's next /auth/me
    swaps the token for a clean one.
    """
    snapshot = user.to_snapshot()
    if redirect:
        snapshot["redirect"] = redirect
    return {"token": issue_token(snapshot), "redirect": landing_page}


def complete_provider_login(response, user: User, *, landing_page: str, has_pending_redirect: bool) -> str:
    """Finish an upstream-authenticated login on a redirect response.

    Sets the token cookie, plus the redirect cookie unless the client already
    holds one from before the provider round-trip. Returns the token.
    """
    token = issue_token(user.to_snapshot())
    set_auth_cookie(response, token)
    if not has_pending_redirect:
        set_redirect_cookie(response, landing_page)
    logger.info("Provider login completed for user_id=%s (%s)", user.id, user.provider)
    return token
