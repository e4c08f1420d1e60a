"""
api/routes/v1/oauth.py -- Browser OAuth/OIDC handshake endpoints.

Routes:
  GET /api/v1/auth/oauth/{provider}/start     -- bind state cookie, 302 to provider
  GET /api/v1/auth/oauth/{provider}/callback  -- verify state, exchange code,
                                                 link account, set session cookie,
                                                 302 to the frontend

The state value lives in a short-lived httpOnly ``oauth_state`` cookie, not in
a server-side session, so no SessionMiddleware is needed and any process can
finish a handshake another one started. The cookie is deleted on every
callback outcome.

Every failure redirects to {frontend_origin}/login?error=<code>, where code is
one of the whitelisted values below; the browser never sees provider error
text.

Security:
  The provider segment is checked against the enabled provider list before the
  registry is touched, so a crafted path cannot select an arbitrary client.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Request
from fastapi.responses import RedirectResponse
from starlette.concurrency import run_in_threadpool

from auth.errors import AuthFlowError, IdentityAlreadyLinked, InvalidState
from auth.oauth import STATE_COOKIE, check_state, complete_handshake, get_enabled_providers, start_handshake
from auth.service import AuthService
from auth.tokens import set_auth_cookie
from core.config import Settings

logger = logging.getLogger("quicklearn.api.oauth")

router = APIRouter()


def _frontend(settings: Settings, path: str) -> str:
    return f"{settings.frontend_origin.rstrip('/')}{path}"


def _failure(settings: Settings, code: str) -> RedirectResponse:
    resp = RedirectResponse(_frontend(settings, f"/login?error={code}"), status_code=302)
    resp.delete_cookie(STATE_COOKIE, path="/")
    return resp


def _redirect_uri(request: Request, settings: Settings, provider: str) -> str:
    configured = {"google": settings.google_redirect_uri, "oidc": settings.oidc_redirect_uri}.get(provider)
    return configured or str(request.url_for("oauth_callback", provider=provider))


@router.get("/auth/oauth/{provider}/start", name="oauth_start")
async def oauth_start(request: Request, provider: str) -> RedirectResponse:
    """Redirect the browser to the provider's authorization page."""
    settings: Settings = request.app.state.settings
    enabled = {p["name"] for p in get_enabled_providers(settings)}
    if provider not in enabled:
        return _failure(settings, "oauth_failed")

    client = request.app.state.oauth.create_client(provider)
    url, state = await start_handshake(client, _redirect_uri(request, settings, provider))

    resp = RedirectResponse(url, status_code=302)
    resp.set_cookie(
        STATE_COOKIE,
        value=state,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=settings.oauth_state_ttl_seconds,
        path="/",
    )
    return resp


@router.get("/auth/oauth/{provider}/callback", name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> RedirectResponse:
    """Finish the handshake and sign the user in.

    Flow:
      1. Query state must equal the state cookie (fails closed).
      2. Exchange the code and read a verified profile.
      3. Resolve the profile to a local account (link or create).
      4. Set the session cookie, clear the state cookie, redirect to
         /upload?welcome=new|returning.
    """
    settings: Settings = request.app.state.settings
    service: AuthService = request.app.state.auth_service
    enabled = {p["name"] for p in get_enabled_providers(settings)}
    if provider not in enabled:
        return _failure(settings, "oauth_failed")

    try:
        check_state(request.query_params.get("state"), request.cookies.get(STATE_COOKIE))
    except InvalidState:
        return _failure(settings, "invalid_state")

    if request.query_params.get("error") or not request.query_params.get("code"):
        logger.info("OAuth callback from %r without a code (error=%r)", provider, request.query_params.get("error"))
        return _failure(settings, "oauth_failed")

    client = request.app.state.oauth.create_client(provider)
    try:
        profile = await complete_handshake(
            client, provider, request.query_params["code"], _redirect_uri(request, settings, provider)
        )
    except OAuthError:
        logger.exception("OAuth token exchange failed for provider %r", provider)
        return _failure(settings, "oauth_failed")
    except ValueError:
        logger.warning("OAuth login rejected: unverified or missing email from %r", provider)
        return _failure(settings, "oauth_failed")

    client_ip = request.client.host if request.client else None
    try:
        result = await run_in_threadpool(service.federated_login, profile, client_ip)
    except IdentityAlreadyLinked:
        return _failure(settings, "account_linked")
    except AuthFlowError as exc:
        logger.warning("Federated login via %r failed: %s", provider, exc.code)
        return _failure(settings, "oauth_failed")

    welcome = "new" if result.created else "returning"
    resp = RedirectResponse(_frontend(settings, f"/upload?welcome={welcome}"), status_code=302)
    set_auth_cookie(resp, result.access_token, settings)
    resp.delete_cookie(STATE_COOKIE, path="/")
    resp.headers["Cache-Control"] = "no-store"
    return resp
