"""
tests/conftest.py -- Shared test fixtures for Passgate.

This module provides:
  - _make_user_store(): isolated named shared-memory SQLite store
  - _patch_lifespan(): wires test store + recording mailer into app.state
  - RecordingMailer: captures outbound mail instead of sending it
  - make_user(): insert a local user with a known password
  - user_store / file_store / mailer / api_client / web_client fixtures

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. Each store gets a unique name so tests never see each other's rows.

Thread-race tests use file_store instead: two writers on one shared-memory
cache serialize through table locks rather than SQLite's busy handler.

DEBUG and BCRYPT_ROUNDS must be set before any auth/core import so
get_settings() auto-generates SECRET_KEY and hashing stays fast.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from unittest.mock import MagicMock

# CRITICAL: set before any auth/core import (get_settings() is cached).
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient

from asgi import app
from auth.errors import UpstreamFailure
from auth.models import User
from auth.store import UserStore
from auth.tokens import hash_password

DEFAULT_PASSWORD = "correct-horse"


# ---------------------------------------------------------------------------
# Collaborator doubles
# ---------------------------------------------------------------------------


class RecordingMailer:
    """Mailer stand-in. Records every message; raises when fail is set."""

    is_configured = True

    def __init__(self) -> None:
        self.sent: list = []
        self.fail = False

    def send(self, message) -> None:
        if self.fail:
            raise UpstreamFailure("SMTP delivery failed: connection refused")
        self.sent.append(message)


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_user_store(db_suffix: str) -> UserStore:
    """Create an isolated named shared-memory SQLite store."""
    name = f"test_auth_{db_suffix}_{uuid.uuid4().hex[:12]}"
    return UserStore(db_url=f"sqlite:///file:{name}?mode=memory&cache=shared&uri=true")


def make_user(
    store: UserStore,
    email: str = "ada@passgate.dev",
    password: str | None = DEFAULT_PASSWORD,
    name: str = "Ada",
    **fields,
) -> User:
    """Insert a user and return the stored record."""
    user = User(
        email=email,
        name=name,
        hashed_password=hash_password(password) if password else None,
        **fields,
    )
    uid = store.create_user(user)
    return store.get_by_id(uid)


def _patch_lifespan(user_store: UserStore, mailer: RecordingMailer):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and mailer into app.state and mocks the OAuth
    registry so no test reaches a real provider.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.mailer = mailer
        app.state.oauth = MagicMock()
        yield

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def user_store() -> Generator[UserStore, None, None]:
    store = _make_user_store("unit")
    yield store
    store.close()


@pytest.fixture
def file_store(tmp_path) -> Generator[UserStore, None, None]:
    """File-backed store for tests that race real threads against it."""
    store = UserStore(db_url=f"sqlite:///{tmp_path / 'users.db'}")
    yield store
    store.close()


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture
def api_client(mailer: RecordingMailer) -> Generator[tuple[TestClient, UserStore, RecordingMailer], None, None]:
    """Yield (client, user_store, mailer) for API integration tests.

    Function-scoped: every test starts with an empty store and an empty
    cookie jar, since the token and session cookies are the subject under
    test.
    """
    store = _make_user_store("api")
    app.router.lifespan_context = _patch_lifespan(store, mailer)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, store, mailer

    store.close()


@pytest.fixture
def web_client(mailer: RecordingMailer) -> Generator[tuple[TestClient, UserStore], None, None]:
    """Yield (client, user_store) for browser route tests.

    follow_redirects=False: the tests assert on redirect locations and
    cookies, which are lost once the client follows the redirect.
    """
    store = _make_user_store("web")
    app.router.lifespan_context = _patch_lifespan(store, mailer)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client, store

    store.close()
