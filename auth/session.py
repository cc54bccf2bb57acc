"""
auth/session.py -- Session reconciliation and session bookkeeping.

A bearer token embeds an identity snapshot taken when it was issued. The
server never trusts that snapshot; on each request reconcile() loads the
authoritative record and diffs the two. A difference in any client-relevant
field (roles, name, email, ...) means the client's token is stale and a new
one must be handed out. The id is the lookup key and is left out of the diff.

Whatever the diff says, the rest of the request sees the fresh record. Only
the token the client receives next depends on the outcome.

Fail-closed: if the record cannot be loaded (store error or deleted user) the
identity is dropped and the request continues as anonymous.

log_in() / log_out() / is_authenticated() sit on top of Starlette's
SessionMiddleware (request.session) and request.state.user.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("passgate.auth.session")

SESSION_USER_KEY = "user_id"


@dataclass
class Reconciliation:
    user: User | None
    must_reissue: bool = False


def _diffable(snapshot: dict) -> dict:
    return {key: value for key, value in snapshot.items() if key != "id"}


def reconcile(store: UserStore, snapshot: dict | None) -> Reconciliation:
    """Compare an inbound snapshot with the stored record for the same id."""
    if not snapshot:
        return Reconciliation(user=None)

    user_id = snapshot.get("id")
    if user_id is None:
        logger.info("Inbound identity carries no id; treating request as anonymous")
        return Reconciliation(user=None)

    try:
        user = store.get_by_id(user_id)
    except SQLAlchemyError:
        logger.warning("Could not load user_id=%s; dropping identity", user_id, exc_info=True)
        return Reconciliation(user=None)

    if user is None:
        logger.info("user_id=%s no longer exists; dropping identity", user_id)
        return Reconciliation(user=None)

    stale = _diffable(user.to_snapshot()) != _diffable(snapshot)
    if stale:
        logger.debug("Snapshot for user_id=%s is stale; token will be reissued", user_id)
    return Reconciliation(user=user, must_reissue=stale)


# ---------------------------------------------------------------------------
# Session bookkeeping
# ---------------------------------------------------------------------------


def log_in(request, user: User) -> None:
    """Bind user to the server-side session cookie."""
    request.session[SESSION_USER_KEY] = user.id


def log_out(request) -> None:
    request.session.clear()
    request.state.user = None
    request.state.must_reissue = False


def is_authenticated(request) -> bool:
    return getattr(request.state, "user", None) is not None
