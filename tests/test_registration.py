"""
tests/test_registration.py -- Sign-up validation, duplicate handling and login completion.

Coverage:
  - valid form -> stored local user with default roles and a bcrypt hash
  - each invalid field is reported once, under the name the client sent
  - confirmPassword is only compared once the password itself is valid
  - passwords are bounded by bcrypt's byte limit as well as by length
  - the email is stored exactly as submitted
  - duplicate email -> Conflict on "email" with the sign-in hint
  - store outage -> UpstreamFailure
  - complete_login(): token carries the snapshot (+ redirect hint)
  - complete_provider_login(): token cookie always, redirect cookie only
    when none is pending
"""

from __future__ import annotations

from http.cookies import SimpleCookie
from unittest.mock import MagicMock

import pytest
from conftest import make_user
from sqlalchemy.exc import OperationalError
from starlette.responses import RedirectResponse

from auth.errors import Conflict, UpstreamFailure, ValidationError
from auth.flows import DUPLICATE_EMAIL_MSG, complete_login, complete_provider_login, register_user
from auth.tokens import REDIRECT_COOKIE, TOKEN_COOKIE, authenticate_user, verify_password, verify_token
from auth.validation import CONFIRM_MSG, EMAIL_MSG, NAME_MSG, PASSWORD_MSG


def _form(**overrides) -> dict:
    data = {
        "name": "Grace Hopper",
        "email": "grace@passgate.dev",
        "password": "cobol-1959",
        "confirmPassword": "cobol-1959",
    }
    data.update(overrides)
    return data


def _cookies(response) -> dict[str, str]:
    jar: dict[str, str] = {}
    for key, value in response.raw_headers:
        if key == b"set-cookie":
            cookie = SimpleCookie()
            cookie.load(value.decode())
            jar.update({name: morsel.value for name, morsel in cookie.items()})
    return jar


class TestRegisterUser:
    def test_creates_local_user(self, user_store) -> None:
        user = register_user(user_store, _form(username="grace"))

        assert user.id is not None
        assert user.provider == "local"
        assert user.roles == ["authenticated"]
        assert user.username == "grace"
        assert verify_password("cobol-1959", user.hashed_password)
        assert user_store.get_by_email("grace@passgate.dev").id == user.id

    def test_client_cannot_choose_roles_or_provider(self, user_store) -> None:
        user = register_user(user_store, _form(roles=["admin"], provider="github"))
        assert user.roles == ["authenticated"]
        assert user.provider == "local"

    @pytest.mark.parametrize(
        ("overrides", "param", "msg"),
        [
            ({"name": ""}, "name", NAME_MSG),
            ({"email": "not-an-email"}, "email", EMAIL_MSG),
            ({"password": "short", "confirmPassword": "short"}, "password", PASSWORD_MSG),
            ({"password": "x" * 21, "confirmPassword": "x" * 21}, "password", PASSWORD_MSG),
            # 19 characters, 76 UTF-8 bytes: over bcrypt's limit.
            ({"password": "\U0001f600" * 19, "confirmPassword": "\U0001f600" * 19}, "password", PASSWORD_MSG),
            ({"confirmPassword": "cobol-1960"}, "confirmPassword", CONFIRM_MSG),
        ],
    )
    def test_single_invalid_field(self, user_store, overrides, param, msg) -> None:
        data = _form(**overrides)
        with pytest.raises(ValidationError) as exc_info:
            register_user(user_store, data)
        assert exc_info.value.errors == [{"param": param, "msg": msg, "value": data[param]}]
        assert user_store.count_users() == 0

    def test_every_invalid_field_reported(self, user_store) -> None:
        data = {"name": "", "email": "nope", "password": "short", "confirmPassword": "other"}
        with pytest.raises(ValidationError) as exc_info:
            register_user(user_store, data)
        # confirmPassword is not compared against a password that already failed.
        assert [e["param"] for e in exc_info.value.errors] == ["name", "email", "password"]

    def test_missing_fields(self, user_store) -> None:
        with pytest.raises(ValidationError) as exc_info:
            register_user(user_store, {})
        errors = {e["param"]: e for e in exc_info.value.errors}
        assert set(errors) == {"name", "email", "password", "confirmPassword"}
        assert errors["email"]["value"] is None

    def test_multibyte_password_within_byte_limit(self, user_store) -> None:
        password = "\U0001f600" * 18
        user = register_user(user_store, _form(password=password, confirmPassword=password))
        assert verify_password(password, user.hashed_password)

    def test_email_is_stored_as_submitted(self, user_store) -> None:
        user = register_user(user_store, _form(email="Grace@Passgate.DEV"))
        assert user.email == "Grace@Passgate.DEV"
        assert authenticate_user(user_store, "Grace@Passgate.DEV", "cobol-1959").id == user.id

    def test_store_failure(self) -> None:
        store = MagicMock()
        store.create_user.side_effect = OperationalError("INSERT", {}, Exception("database is locked"))
        with pytest.raises(UpstreamFailure):
            register_user(store, _form())

    def test_duplicate_email(self, user_store) -> None:
        make_user(user_store, email="grace@passgate.dev")
        with pytest.raises(Conflict) as exc_info:
            register_user(user_store, _form())
        assert exc_info.value.as_field_errors() == [
            {"param": "email", "msg": DUPLICATE_EMAIL_MSG, "value": "grace@passgate.dev"}
        ]
        assert user_store.count_users() == 1


class TestCompleteLogin:
    def test_payload(self, user_store) -> None:
        user = make_user(user_store)
        payload = complete_login(user, landing_page="/home")
        assert payload["redirect"] == "/home"
        assert verify_token(payload["token"]) == user.to_snapshot()

    def test_redirect_hint_rides_in_token(self, user_store) -> None:
        user = make_user(user_store)
        payload = complete_login(user, landing_page="/", redirect="/billing")
        assert verify_token(payload["token"]) == {**user.to_snapshot(), "redirect": "/billing"}
        assert payload["redirect"] == "/"

    def test_token_holds_no_secrets(self, user_store) -> None:
        user = make_user(user_store, password="hunter2-hunter2")
        snapshot = verify_token(complete_login(user, landing_page="/")["token"])
        assert "hashed_password" not in snapshot
        assert "reset_password_token" not in snapshot
        assert "oauth_subject" not in snapshot


class TestCompleteProviderLogin:
    def test_sets_token_and_redirect_cookies(self, user_store) -> None:
        user = make_user(user_store, password=None, provider="github", oauth_subject="99")
        response = RedirectResponse("/", status_code=302)

        token = complete_provider_login(response, user, landing_page="/welcome", has_pending_redirect=False)

        cookies = _cookies(response)
        assert cookies[TOKEN_COOKIE] == token
        assert cookies[REDIRECT_COOKIE] == "/welcome"
        assert verify_token(token)["provider"] == "github"

    def test_pending_redirect_is_left_alone(self, user_store) -> None:
        user = make_user(user_store, password=None, provider="github", oauth_subject="99")
        response = RedirectResponse("/", status_code=302)

        complete_provider_login(response, user, landing_page="/welcome", has_pending_redirect=True)

        cookies = _cookies(response)
        assert TOKEN_COOKIE in cookies
        assert REDIRECT_COOKIE not in cookies
