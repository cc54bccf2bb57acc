"""
auth/store.py -- SQLAlchemy Core persistence layer for identity records.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. Route, flow and reconciler code never touches SQL directly.

Consistency rules:
  Every mutation is a single INSERT or UPDATE scoped to one row. The store is
  the sole arbiter of consistency -- callers never read-then-write.

  Email uniqueness is a UNIQUE constraint. A violation surfaces as
  auth.errors.Conflict regardless of the engine-specific error code (SQLite
  "UNIQUE constraint failed", PostgreSQL SQLSTATE 23505). Any other integrity
  failure surfaces as StoreValidationError with per-column errors.

  Reset-token redemption is a compare-and-swap: the UPDATE that writes the
  new password hash repeats the token and expiry predicates in its WHERE
  clause, so of two racing redemptions exactly one matches a row.

  reset_password_expires is stored as a UTC epoch float so the expiry
  predicate is a plain numeric comparison on every backend.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone

from sqlalchemy import Column, Float, Integer, MetaData, String, Table, Text, create_engine, event, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import Conflict, StoreValidationError
from auth.models import User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("email", String(255), nullable=False, unique=True),
    Column("username", String(255)),
    Column("hashed_password", Text),  # NULL for provider-only users
    Column("provider", String(30), nullable=False, server_default="local"),
    Column("oauth_subject", Text),  # provider's stable user ID
    Column("roles", Text, nullable=False),  # JSON list
    Column("reset_password_token", String(64), index=True),
    Column("reset_password_expires", Float),  # UTC epoch seconds
    Column("created_at", String(32), nullable=False),
)

# Columns update_user() may touch. Reset fields are excluded: they only move
# through set_reset_token() / redeem_reset_token().
_UPDATABLE_FIELDS: frozenset[str] = frozenset(
    {"name", "username", "hashed_password", "provider", "oauth_subject", "roles"}
)

_COLUMN_RE = re.compile(r"users\.(\w+)")


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers proceed while a writer commits.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_epoch(value: datetime) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def _integrity_error(exc: IntegrityError, user: User) -> Exception:
    """Translate an engine-specific IntegrityError into the auth taxonomy."""
    message = str(exc.orig)
    code = getattr(exc.orig, "pgcode", None) or getattr(exc.orig, "sqlstate", None)
    match = _COLUMN_RE.search(message)
    column = match.group(1) if match else None

    if code == "23505" or "UNIQUE constraint failed" in message or "duplicate key" in message:
        field = column or "email"
        return Conflict(field, value=getattr(user, field, None))

    param = column or "user"
    if "NOT NULL" in message or code == "23502":
        msg = f"{param} is required"
    else:
        msg = message
    return StoreValidationError([{"param": param, "msg": msg, "value": getattr(user, param, None)}])


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for identity records.

    Usage:
        store = UserStore("sqlite:///users.db")
        user_id = store.create_user(User(email="a@x.com", name="A", hashed_password=hash_password("secret12")))
        user = store.get_by_email("a@x.com")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def count_users(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(text("SELECT COUNT(*) FROM users")).scalar()
        return result or 0

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises Conflict if the email already exists, StoreValidationError for
        any other integrity failure. The uniqueness check is the database's
        UNIQUE constraint -- there is no read-before-insert.
        """
        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _users.insert().values(
                        name=user.name,
                        email=user.email,
                        username=user.username,
                        hashed_password=user.hashed_password,
                        provider=user.provider,
                        oauth_subject=user.oauth_subject,
                        roles=json.dumps(list(user.roles)),
                        created_at=_now_iso(),
                    )
                )
                conn.commit()
                return result.inserted_primary_key[0]
        except IntegrityError as exc:
            raise _integrity_error(exc, user) from exc

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by exact email. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_oauth(self, provider: str, subject: str) -> User | None:
        """Look up a user by (provider, oauth_subject). Returns None if not linked."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where((_users.c.provider == provider) & (_users.c.oauth_subject == subject))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable profile fields on an existing user.

        Accepted fields: name, username, hashed_password, provider,
        oauth_subject, roles (list). Unknown keys raise ValueError.

        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if "roles" in fields:
            fields["roles"] = json.dumps(list(fields["roles"]))
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def set_reset_token(self, user_id: int, token: str, expires: datetime) -> bool:
        """Store a reset token and its expiry on one record in one UPDATE.

        A later call overwrites an earlier pending token, so only the most
        recently mailed link is redeemable.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(reset_password_token=token, reset_password_expires=_to_epoch(expires))
            )
            conn.commit()
        return result.rowcount > 0

    def redeem_reset_token(self, token: str, hashed_password: str, now: datetime) -> User | None:
        """Consume a live reset token and set the new password hash atomically.

        The SELECT only finds the candidate row id. The UPDATE repeats the
        token and expiry predicates, so a concurrent redemption that already
        cleared the token leaves this UPDATE with rowcount 0. Password change
        and token clearing are the same statement and cannot be separated.

        Returns the refreshed User on success, None when the token is unknown,
        expired, or was consumed first by a concurrent request.
        """
        cutoff = _to_epoch(now)
        live = (_users.c.reset_password_token == token) & (_users.c.reset_password_expires > cutoff)

        with self.engine.connect() as conn:
            user_id = conn.execute(select(_users.c.id).where(live)).scalar()
        if user_id is None:
            return None

        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & live)
                .values(
                    hashed_password=hashed_password,
                    reset_password_token=None,
                    reset_password_expires=None,
                )
            )
        if result.rowcount != 1:
            return None
        return self.get_by_id(user_id)

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    expires = row.reset_password_expires
    return User(
        id=row.id,
        name=row.name,
        email=row.email,
        username=row.username,
        hashed_password=row.hashed_password,
        provider=row.provider,
        oauth_subject=row.oauth_subject,
        roles=json.loads(row.roles) if row.roles else [],
        reset_password_token=row.reset_password_token,
        reset_password_expires=datetime.fromtimestamp(expires, tz=timezone.utc) if expires is not None else None,
        created_at=row.created_at,
    )
