"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class. The stores and flows do the work; the only behavior here
is to_snapshot(), which defines which fields travel inside a bearer token.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

# Fields a client may see and that the session reconciler diffs against.
# Secrets (password hash, OAuth subject, reset token/expiry) never leave the
# server inside a token.
SNAPSHOT_FIELDS: tuple[str, ...] = ("id", "name", "email", "username", "provider", "roles")

DEFAULT_ROLES: tuple[str, ...] = ("authenticated",)


@dataclass
class User:
    """Authoritative identity record.

    hashed_password is None for provider-only users (they have no local password).
    oauth_subject is the provider's stable user ID; None for local accounts.

    reset_password_token and reset_password_expires are set together by the
    reset issuer and cleared together by the redeemer. Neither is ever set
    alone.
    """

    email: str
    name: str = ""
    id: int | None = None
    username: str | None = None
    hashed_password: str | None = None  # None = provider-only user
    provider: str = "local"  # "local", "github", "google", "oidc"
    oauth_subject: str | None = None
    roles: list[str] = field(default_factory=lambda: list(DEFAULT_ROLES))
    reset_password_token: str | None = None
    reset_password_expires: datetime | None = None
    created_at: str | None = None

    def to_snapshot(self) -> dict:
        """Return the client-relevant fields as a JSON-serializable dict."""
        snapshot = {name: getattr(self, name) for name in SNAPSHOT_FIELDS}
        snapshot["roles"] = list(self.roles)
        return snapshot
