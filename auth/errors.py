"""
auth/errors.py -- Exception taxonomy for the authentication layer.

Every error raised by auth/ derives from AuthError so the API layer can map
the whole family in one place (see the exception handlers in api/main.py).

  ValidationError    field-level, user-correctable (400 + field list)
  Conflict           duplicate unique field (400 + single field error)
  StoreValidationError  non-unique integrity failure reported by the store
  NotFound           no matching identity record
  TokenInvalid       reset token wrong, already used, or expired
  InvalidSignature   bearer token malformed or tampered
  UpstreamFailure    store or mail transport failure

NotFound and TokenInvalid are deliberately indistinguishable to clients.
InvalidSignature is never surfaced at all -- the request is simply treated as
anonymous.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for every authentication-layer failure."""


class ValidationError(AuthError):
    """One or more user-supplied fields failed validation.

    errors is a list of {"param", "msg", "value"} dicts, ready to be returned
    to the client as-is.
    """

    def __init__(self, errors: list[dict]) -> None:
        super().__init__(f"{len(errors)} field error(s)")
        self.errors = errors


class StoreValidationError(AuthError):
    """The store rejected a record for a reason other than a duplicate key.

    Carries the same field-error list shape as ValidationError.
    """

    def __init__(self, errors: list[dict]) -> None:
        super().__init__(f"{len(errors)} model error(s)")
        self.errors = errors


class Conflict(AuthError):
    """A unique field (email) already exists in the store."""

    def __init__(self, field: str, message: str = "", value: object = None) -> None:
        super().__init__(message or f"duplicate value for {field}")
        self.field = field
        self.message = message
        self.value = value

    def as_field_errors(self) -> list[dict]:
        return [{"param": self.field, "msg": self.message, "value": self.value}]


class NotFound(AuthError):
    """No identity record matched the lookup."""


class TokenInvalid(AuthError):
    """Reset token is unknown, already consumed, or past its expiry."""


class InvalidSignature(AuthError):
    """Bearer token failed signature verification or could not be decoded."""


class UpstreamFailure(AuthError):
    """A collaborator (store, SMTP) failed."""
