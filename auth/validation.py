"""
auth/validation.py -- Field-level validation of registration and reset forms.

Pydantic does the checking; this module owns the user-facing messages. Each
form declares one message per field. Any failure on that field (missing,
too short, malformed email, mismatch) is reported with the field's message,
so clients get a stable [{param, msg, value}] list regardless of which
pydantic rule tripped.

Passwords are bounded in characters and, for bcrypt, in UTF-8 bytes. Both
limits report the same message. Emails are checked by email-validator but
stored as submitted.

Params are reported under the field alias the client sent (confirmPassword,
not confirm_password).

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

from typing import Any, ClassVar

import pydantic
from pydantic import (
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    ValidationInfo,
    ValidatorFunctionWrapHandler,
    field_validator,
)

from auth.errors import ValidationError

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 20
# bcrypt rejects secrets longer than this many bytes.
PASSWORD_MAX_BYTES = 72

NAME_MSG = "You must enter a name"
EMAIL_MSG = "You must enter a valid email address"
PASSWORD_MSG = f"Password must be between {PASSWORD_MIN_LENGTH}-{PASSWORD_MAX_LENGTH} characters long"
CONFIRM_MSG = "Passwords do not match"


def _passwords_match(value: str, info: ValidationInfo) -> str:
    # When password itself failed it is absent from info.data and already
    # carries its own error.
    password = info.data.get("password")
    if password is not None and value != password:
        raise ValueError(CONFIRM_MSG)
    return value


def _fits_bcrypt(value: str) -> str:
    if len(value.encode("utf-8")) > PASSWORD_MAX_BYTES:
        raise ValueError(PASSWORD_MSG)
    return value


class _Form(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    messages: ClassVar[dict[str, str]] = {}


class PasswordForm(_Form):
    """New password plus confirmation. Used by the reset redeemer."""

    messages: ClassVar[dict[str, str]] = {
        "password": PASSWORD_MSG,
        "confirmPassword": CONFIRM_MSG,
    }

    password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH)
    confirm_password: str = Field(alias="confirmPassword")

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return _fits_bcrypt(value)

    @field_validator("confirm_password")
    @classmethod
    def passwords_match(cls, value: str, info: ValidationInfo) -> str:
        return _passwords_match(value, info)


class RegistrationForm(_Form):
    """Local account sign-up. Field order matters: password before confirm_password."""

    messages: ClassVar[dict[str, str]] = {
        "name": NAME_MSG,
        "email": EMAIL_MSG,
        "password": PASSWORD_MSG,
        "confirmPassword": CONFIRM_MSG,
    }

    name: str = Field(min_length=1)
    email: EmailStr
    username: str | None = None
    password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH)
    confirm_password: str = Field(alias="confirmPassword")

    @field_validator("email", mode="wrap")
    @classmethod
    def keep_submitted_email(cls, value: Any, handler: ValidatorFunctionWrapHandler) -> Any:
        # Checked as EmailStr, kept as typed. Lookups by email are exact.
        handler(value)
        return value

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return _fits_bcrypt(value)

    @field_validator("confirm_password")
    @classmethod
    def passwords_match(cls, value: str, info: ValidationInfo) -> str:
        return _passwords_match(value, info)


def validate_form(form_cls: type[_Form], data: dict[str, Any]):
    """Validate data against form_cls and return the model instance.

    Raises ValidationError with one {param, msg, value} entry per failing
    field, in field declaration order.
    """
    try:
        return form_cls.model_validate(data)
    except pydantic.ValidationError as exc:
        errors: list[dict] = []
        seen: set[str] = set()
        for err in exc.errors():
            param = str(err["loc"][0]) if err["loc"] else "form"
            if param in seen:
                continue
            seen.add(param)
            errors.append(
                {
                    "param": param,
                    "msg": form_cls.messages.get(param, err["msg"]),
                    "value": data.get(param),
                }
            )
        raise ValidationError(errors) from exc
