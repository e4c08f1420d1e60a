"""
auth/oauth.py -- Authlib OAuth/OIDC provider registry and the browser
handshake helpers.

Handshake state machine:  Start -> PendingCallback -> Completed

  Start            start_handshake() draws a random state value, asks the
                   provider client for the authorization URL carrying it, and
                   the route binds the same value to a short-lived
                   ``oauth_state`` cookie before redirecting (PendingCallback).
  callback         check_state() fails closed with InvalidState unless the
                   query-string state and the cookie state are both present
                   and equal (constant-time compare). This is the only CSRF
                   defense of the flow.
  Completed        complete_handshake() exchanges the code, fetches userinfo,
                   and normalizes it into an ExternalProfile.

Security notes:
  [H1] Email verification is mandatory. profile_from_userinfo() raises
       ValueError if the provider does not confirm the email is verified. An
       unverified email could belong to someone who typed in a victim's
       address, and would otherwise be linked to the victim's account.

Supported providers (registered only when client ID and secret are set):
  google -- OIDC discovery.
  oidc   -- Generic OIDC discovery (Okta, Azure AD, Keycloak, Authentik, etc.)

Layer rule: no imports from api/ or mail/. Import from core/ is allowed.
"""

from __future__ import annotations

import hmac
import logging

from authlib.integrations.starlette_client import OAuth

from auth.errors import InvalidState
from auth.models import ExternalProfile
from auth.tokens import generate_oauth_state
from core.config import Settings

logger = logging.getLogger("quicklearn.auth.oauth")

STATE_COOKIE = "oauth_state"

_GOOGLE_DISCOVERY_URL = "https://accounts.google.com/.well-known/openid-configuration"


# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------


def build_oauth_registry(settings: Settings) -> OAuth:
    """Register every provider whose credentials are configured."""
    registry = OAuth()

    if settings.google_client_id and settings.google_client_secret:
        registry.register(
            name="google",
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            server_metadata_url=_GOOGLE_DISCOVERY_URL,
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Google OAuth provider registered")

    if settings.oidc_client_id and settings.oidc_client_secret and settings.oidc_discovery_url:
        registry.register(
            name="oidc",
            client_id=settings.oidc_client_id,
            client_secret=settings.oidc_client_secret,
            server_metadata_url=settings.oidc_discovery_url,
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Generic OIDC provider registered (display name: %s)", settings.oidc_display_name)

    return registry


def get_enabled_providers(settings: Settings) -> list[dict]:
    """Return {"name", "label"} for every configured provider.

    Routes check provider names against this list before touching the
    registry, so a crafted provider segment can never pick an arbitrary client.
    """
    providers: list[dict] = []
    if settings.google_client_id and settings.google_client_secret:
        providers.append({"name": "google", "label": "Google"})
    if settings.oidc_client_id and settings.oidc_client_secret and settings.oidc_discovery_url:
        providers.append({"name": "oidc", "label": settings.oidc_display_name})
    return providers


# ---------------------------------------------------------------------------
# Handshake
# ---------------------------------------------------------------------------


async def start_handshake(client, redirect_uri: str) -> tuple[str, str]:
    """Return (authorization_url, state). The caller must bind state to a cookie."""
    state = generate_oauth_state()
    rv = await client.create_authorization_url(redirect_uri, state=state)
    return rv["url"], state


def check_state(returned_state: str | None, cookie_state: str | None) -> None:
    """Fail closed unless both values are present and identical."""
    if not returned_state or not cookie_state:
        logger.warning("OAuth callback rejected: state missing (query=%s cookie=%s)", bool(returned_state), bool(cookie_state))
        raise InvalidState()
    if not hmac.compare_digest(returned_state.encode(), cookie_state.encode()):
        logger.warning("OAuth callback rejected: state mismatch")
        raise InvalidState()


async def complete_handshake(client, provider: str, code: str, redirect_uri: str) -> ExternalProfile:
    """Exchange the authorization code and return the verified profile.

    Raises authlib's OAuthError on exchange failures and ValueError when the
    profile is unusable [H1]; the callback route treats both as a failed login.
    """
    token = await client.fetch_access_token(redirect_uri=redirect_uri, code=code)
    userinfo = token.get("userinfo") if isinstance(token, dict) else None
    if not userinfo:
        userinfo = await client.userinfo(token=token)
    return profile_from_userinfo(provider, dict(userinfo))


# ---------------------------------------------------------------------------
# Profile normalization [H1]
# ---------------------------------------------------------------------------


def profile_from_userinfo(provider: str, userinfo: dict) -> ExternalProfile:
    """Normalize OIDC userinfo claims into an ExternalProfile.

    The email is accepted only when email_verified is true. Some providers
    omit email_verified entirely -- that counts as unverified.
    """
    if not userinfo.get("email_verified", False):
        raise ValueError(
            f"{provider} OAuth: email is not verified. "
            "The provider must confirm email ownership before login is allowed."
        )

    email = userinfo.get("email")
    subject = userinfo.get("sub")
    if not email or not subject:
        raise ValueError(f"{provider} OAuth: missing email or sub claim in userinfo")

    return ExternalProfile(
        provider=provider,
        subject=str(subject),
        email=str(email).strip().lower(),
        email_verified=True,
        display_name=userinfo.get("name") or userinfo.get("given_name"),
    )
