"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two credential sources are checked in priority order:
  1. Session cookie ("access_token") -- set by login and the OAuth callback.
  2. Authorization: Bearer <token> header -- API clients.

get_current_session() verifies the assertion and performs sliding renewal:
a fresh assertion is written to the cookie and to the X-Access-Token header
of the injected Response on every authenticated request. Routes using it must
return plain data (not a Response object) so FastAPI merges those headers.

get_session_claims() verifies without renewing, for routes that end the
session (account deletion) and must not hand out a new assertion.

Failures raise InvalidOrExpired; the app-level handler turns it into a 401.

Layer rule: auth/dependencies.py may import from fastapi because it is part of
the FastAPI dependency injection system. No imports from api/ or mail/.
"""

from __future__ import annotations

from fastapi import Request, Response

from auth.models import SessionClaims
from auth.service import AuthService
from auth.tokens import ACCESS_COOKIE, RENEWED_TOKEN_HEADER, set_auth_cookie


def extract_token(request: Request) -> str | None:
    """Return the presented assertion, cookie first, then Bearer header."""
    token = request.cookies.get(ACCESS_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip()
    return token or None


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_session_claims(request: Request) -> SessionClaims:
    """Require a valid assertion; no renewal."""
    service: AuthService = request.app.state.auth_service
    return service.issuer.verify(extract_token(request) or "")


def get_current_session(request: Request, response: Response) -> SessionClaims:
    """Require a valid assertion and renew it.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(session: SessionClaims = Depends(get_current_session)): ...
    """
    service: AuthService = request.app.state.auth_service
    claims, renewed = service.authenticate(extract_token(request))
    set_auth_cookie(response, renewed, service.settings)
    response.headers[RENEWED_TOKEN_HEADER] = renewed
    return claims
