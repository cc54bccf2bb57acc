"""
auth/oauth.py -- Authlib OAuth/OIDC provider configuration and user resolution.

This is the upstream federated-auth collaborator. It gets the browser
through the provider round-trip and hands back a local User. Token issuance
for that user is not its concern -- see auth.flows.complete_provider_login().

Reads configuration from core.config.get_settings() at module load to decide
which providers are active. Only providers with both client ID and secret
configured get registered.

Security notes:
  Email verification is mandatory. get_oauth_user_info() raises ValueError
  if the provider does not confirm the email is verified. An unverified email
  could belong to an attacker who added a victim's address to their account,
  and resolve_oauth_user() links by email.

  The OAuth state parameter (CSRF protection) is handled by authlib via
  Starlette SessionMiddleware.

Supported providers:
  github -- Authorization code flow; static endpoints.
  google -- Authorization code flow; OIDC discovery.
  oidc   -- Generic OIDC discovery (Okta, Azure AD, Keycloak, Authentik, etc.)

Layer rule: no imports from api/ or web/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from authlib.integrations.starlette_client import OAuth

from auth.errors import Conflict
from auth.models import DEFAULT_ROLES, User
from core.config import get_settings

if TYPE_CHECKING:
    from auth.store import UserStore

logger = logging.getLogger("passgate.auth.oauth")

# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------

oauth = OAuth()

_cfg = get_settings()

if _cfg.github_client_id and _cfg.github_client_secret:
    oauth.register(
        name="github",
        client_id=_cfg.github_client_id,
        client_secret=_cfg.github_client_secret,
        access_token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
        authorize_url="https://github.com/login/oauth/authorize",
        api_base_url="https://api.github.com/",
        client_kwargs={"scope": "read:user user:email"},
    )
    logger.info("GitHub OAuth provider registered")

if _cfg.google_client_id and _cfg.google_client_secret:
    oauth.register(
        name="google",
        client_id=_cfg.google_client_id,
        client_secret=_cfg.google_client_secret,
        server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
        client_kwargs={"scope": "openid email profile"},
    )
    logger.info("Google OAuth provider registered")

if _cfg.oidc_client_id and _cfg.oidc_client_secret and _cfg.oidc_discovery_url:
    oauth.register(
        name="oidc",
        client_id=_cfg.oidc_client_id,
        client_secret=_cfg.oidc_client_secret,
        server_metadata_url=_cfg.oidc_discovery_url,
        client_kwargs={"scope": "openid email profile"},
    )
    logger.info("Generic OIDC provider registered (display name: %s)", _cfg.oidc_display_name)


# ---------------------------------------------------------------------------
# Provider metadata
# ---------------------------------------------------------------------------


def get_enabled_providers() -> list[dict]:
    """Return {"name", "label"} for every provider configured in the environment."""
    cfg = get_settings()
    providers: list[dict] = []
    if cfg.github_client_id and cfg.github_client_secret:
        providers.append({"name": "github", "label": "GitHub"})
    if cfg.google_client_id and cfg.google_client_secret:
        providers.append({"name": "google", "label": "Google"})
    if cfg.oidc_client_id and cfg.oidc_client_secret and cfg.oidc_discovery_url:
        providers.append({"name": "oidc", "label": cfg.oidc_display_name})
    return providers


# ---------------------------------------------------------------------------
# Email / subject extraction -- provider-specific normalization
# ---------------------------------------------------------------------------


async def get_oauth_user_info(client, provider: str, token: dict) -> tuple[str, str, str]:
    """Extract (email, subject_id, display_name) from a provider token response.

    Raises:
        ValueError: If a verified email cannot be confirmed.
    """
    if provider == "github":
        return await _get_github_user_info(client, token)
    elif provider in ("google", "oidc"):
        return _get_oidc_user_info(token, provider)
    else:
        raise ValueError(f"Unknown OAuth provider: {provider!r}")


async def _get_github_user_info(client, token: dict) -> tuple[str, str, str]:
    """GitHub needs two calls: /user for the numeric ID, /user/emails for a
    primary verified address."""
    resp = await client.get("user", token=token)
    resp.raise_for_status()
    profile = resp.json()
    subject_id = str(profile["id"])
    name = profile.get("name") or profile.get("login") or ""

    emails_resp = await client.get("user/emails", token=token)
    emails_resp.raise_for_status()

    email: str | None = None
    for entry in emails_resp.json():
        if entry.get("primary") and entry.get("verified"):
            email = entry["email"]
            break

    if not email:
        raise ValueError("GitHub OAuth: no primary verified email found.")

    return email, subject_id, name


def _get_oidc_user_info(token: dict, provider: str) -> tuple[str, str, str]:
    """Read email, email_verified, sub and name from the id_token claims.

    A missing email_verified claim counts as unverified.
    """
    userinfo = token.get("userinfo")
    if not userinfo:
        raise ValueError(f"{provider} OAuth: no userinfo in token response")

    if not userinfo.get("email_verified", False):
        raise ValueError(f"{provider} OAuth: email is not verified.")

    email = userinfo.get("email")
    subject_id = userinfo.get("sub")
    if not email or not subject_id:
        raise ValueError(f"{provider} OAuth: missing email or sub claim in userinfo")

    return email, subject_id, userinfo.get("name") or ""


# ---------------------------------------------------------------------------
# Local account resolution
# ---------------------------------------------------------------------------


def resolve_oauth_user(store: UserStore, provider: str, email: str, subject: str, name: str = "") -> User:
    """Map a verified provider identity to a local User, creating it if needed.

    1. (provider, subject) already linked -> that user.
    2. Unlinked account with the same email -> link it to this identity.
    3. Otherwise create a provider account with the default roles.

    Raises ValueError when the email belongs to an account already linked to
    a different provider identity.
    """
    user = store.get_by_oauth(provider, subject)
    if user is not None:
        return user

    user = store.get_by_email(email)
    if user is not None:
        if user.oauth_subject is not None:
            raise ValueError(f"{email!r} is already linked to another {user.provider} identity")
        store.update_user(user.id, provider=provider, oauth_subject=subject)
        logger.info("Linked user_id=%s to %s identity", user.id, provider)
        return store.get_by_id(user.id)

    new_user = User(
        email=email,
        name=name or email.split("@", 1)[0],
        provider=provider,
        oauth_subject=subject,
        roles=list(DEFAULT_ROLES),
    )
    try:
        user_id = store.create_user(new_user)
    except Conflict as exc:
        # A concurrent callback created the same email first.
        raise ValueError(f"{email!r} was registered concurrently") from exc
    logger.info("Created user_id=%s from %s login", user_id, provider)
    return store.get_by_id(user_id)
