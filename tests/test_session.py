"""
tests/test_session.py -- Session reconciler.

Coverage:
  - no snapshot passes through as anonymous
  - matching snapshot: no reissue
  - any client-relevant difference (roles, name, extra redirect hint) -> reissue
  - the working identity is always the stored record
  - deleted user, store error, or missing id -> anonymous
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from conftest import make_user
from sqlalchemy.exc import OperationalError

from auth.session import Reconciliation, reconcile


class TestReconcile:
    @pytest.mark.parametrize("snapshot", [None, {}])
    def test_no_snapshot_is_anonymous(self, user_store, snapshot) -> None:
        assert reconcile(user_store, snapshot) == Reconciliation(user=None, must_reissue=False)

    def test_fresh_snapshot(self, user_store) -> None:
        user = make_user(user_store)
        result = reconcile(user_store, user.to_snapshot())
        assert result.user.id == user.id
        assert result.must_reissue is False

    def test_role_change_requires_reissue(self, user_store) -> None:
        user = make_user(user_store)
        snapshot = user.to_snapshot()
        user_store.update_user(user.id, roles=["authenticated", "admin"])

        result = reconcile(user_store, snapshot)

        assert result.must_reissue is True
        assert result.user.roles == ["authenticated", "admin"]

    def test_name_change_requires_reissue(self, user_store) -> None:
        user = make_user(user_store, name="Ada")
        snapshot = user.to_snapshot()
        user_store.update_user(user.id, name="Ada Lovelace")

        result = reconcile(user_store, snapshot)

        assert result.must_reissue is True
        assert result.user.name == "Ada Lovelace"

    def test_stale_claims_are_never_trusted(self, user_store) -> None:
        """A snapshot claiming extra roles yields the stored roles, not the claimed ones."""
        user = make_user(user_store)
        forged = {**user.to_snapshot(), "roles": ["authenticated", "admin"]}

        result = reconcile(user_store, forged)

        assert result.user.roles == ["authenticated"]
        assert result.must_reissue is True

    def test_redirect_hint_forces_one_reissue(self, user_store) -> None:
        user = make_user(user_store)
        result = reconcile(user_store, {**user.to_snapshot(), "redirect": "/dashboard"})
        assert result.must_reissue is True

    def test_session_only_identity_is_stale(self, user_store) -> None:
        user = make_user(user_store)
        result = reconcile(user_store, {"id": user.id})
        assert result.user.id == user.id
        assert result.must_reissue is True

    def test_key_order_is_not_significant(self, user_store) -> None:
        user = make_user(user_store)
        snapshot = dict(reversed(list(user.to_snapshot().items())))
        assert reconcile(user_store, snapshot).must_reissue is False

    def test_deleted_user_is_anonymous(self, user_store) -> None:
        assert reconcile(user_store, {"id": 4242, "name": "Gone"}) == Reconciliation(user=None)

    def test_missing_id_is_anonymous(self, user_store) -> None:
        make_user(user_store)
        assert reconcile(user_store, {"name": "Ada"}).user is None

    def test_store_error_fails_closed(self) -> None:
        store = MagicMock()
        store.get_by_id.side_effect = OperationalError("SELECT", {}, Exception("down"))

        result = reconcile(store, {"id": 1, "name": "Ada"})

        assert result.user is None
        assert result.must_reissue is False
