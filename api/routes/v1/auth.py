"""
api/routes/v1/auth.py -- Account REST endpoints.

Routes:
  POST   /api/v1/auth/register         -- create unverified account, email OTP; 201
  POST   /api/v1/auth/verify-email     -- confirm the OTP
  POST   /api/v1/auth/resend-otp       -- issue a fresh OTP
  POST   /api/v1/auth/login            -- password login; sets session cookie
  POST   /api/v1/auth/logout           -- clears cookie
  GET    /api/v1/auth/me               -- current session (sliding renewal)
  POST   /api/v1/auth/forgot-password  -- email a reset link (generic answer)
  POST   /api/v1/auth/reset-password   -- consume reset token, set password
  POST   /api/v1/auth/update-password  -- change password (requires session)
  DELETE /api/v1/auth/account          -- delete account (requires session)
  GET    /api/v1/auth/providers        -- list enabled OAuth providers

Handlers are sync: FastAPI runs them on its thread pool, which suits bcrypt and
the blocking SQLAlchemy calls behind AuthService. Flow errors propagate as
AuthFlowError and are rendered by the handler in api/main.py.

Security:
  POST /login is rate-limited per IP (LOGIN_RATE_LIMIT) on top of the Login
  Guardian's per identifier+origin lockout.
  Cache-Control: no-store on every response that carries a session assertion.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    EmailRequest,
    LoginRequest,
    LoginResponse,
    LogoutResponse,
    MeResponse,
    MessageResponse,
    OAuthProviderInfo,
    RegisterRequest,
    RegisterResponse,
    ResetPasswordRequest,
    SessionUser,
    UpdatePasswordRequest,
    UserOut,
    VerifyEmailRequest,
    VerifyEmailResponse,
)
from auth.dependencies import get_auth_service, get_current_session, get_session_claims
from auth.models import SessionClaims
from auth.oauth import get_enabled_providers
from auth.service import AuthService
from auth.tokens import clear_auth_cookie, set_auth_cookie

# Auth policy:
# - register, verify-email, resend-otp, login, logout,
#   forgot-password, reset-password, providers:  public
# - me, update-password:                          session, renewed
# - account:                                      session, not renewed
router = APIRouter()


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


# ---------------------------------------------------------------------------
# Registration and verification
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=RegisterResponse, status_code=201)
def register(body: RegisterRequest, service: AuthService = Depends(get_auth_service)) -> RegisterResponse:
    """Create an unverified account and email its verification code."""
    result = service.register(body.username, body.email, body.password, body.confirm_password)
    return RegisterResponse(
        message="Registration successful. Check your email for the verification code.",
        user_id=result.user_id,
        uuid=result.uuid,
    )


@router.post("/auth/verify-email", response_model=VerifyEmailResponse)
def verify_email(body: VerifyEmailRequest, service: AuthService = Depends(get_auth_service)) -> VerifyEmailResponse:
    verified = service.verify_email(body.email, body.otp)
    return VerifyEmailResponse(message="Email verified successfully.", verified=verified)


@router.post("/auth/resend-otp", response_model=MessageResponse)
def resend_otp(body: EmailRequest, service: AuthService = Depends(get_auth_service)) -> MessageResponse:
    return MessageResponse(message=service.resend_otp(body.email))


# ---------------------------------------------------------------------------
# Login / logout / session
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest, service: AuthService = Depends(get_auth_service)) -> JSONResponse:
    """Authenticate with username-or-email and password; set the session cookie.

    Unknown identifier and wrong password produce the same error, with the
    same bcrypt work, so neither the body nor the timing reveals which one
    it was.
    """
    result = service.login(
        body.identifier,
        body.password,
        origin=_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=result.access_token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=result.expires_in,
            user=UserOut.from_user(result.user),
        ).model_dump(),
    )
    set_auth_cookie(resp, result.access_token, service.settings)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/logout", response_model=LogoutResponse)
def logout(service: AuthService = Depends(get_auth_service)) -> JSONResponse:
    """Clear the session cookie. Sessions are stateless; nothing to revoke."""
    resp = JSONResponse(content=LogoutResponse(success=service.logout()).model_dump())
    clear_auth_cookie(resp)
    return resp


@router.get("/auth/me", response_model=MeResponse)
def me(session: SessionClaims = Depends(get_current_session)) -> MeResponse:
    """Return the identity carried by the (renewed) session."""
    return MeResponse(user=SessionUser(uuid=session.uuid, username=session.username))


# ---------------------------------------------------------------------------
# Password recovery and account management
# ---------------------------------------------------------------------------


@router.post("/auth/forgot-password", response_model=MessageResponse)
def forgot_password(body: EmailRequest, service: AuthService = Depends(get_auth_service)) -> MessageResponse:
    """Always answers with the same message whether or not the email exists."""
    return MessageResponse(message=service.forgot_password(body.email))


@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(body: ResetPasswordRequest, service: AuthService = Depends(get_auth_service)) -> MessageResponse:
    return MessageResponse(message=service.reset_password(body.token, body.password, body.confirm_password))


@router.post("/auth/update-password", response_model=MessageResponse)
def update_password(
    body: UpdatePasswordRequest,
    session: SessionClaims = Depends(get_current_session),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    message = service.update_password(session.user_id, body.current_password, body.new_password)
    return MessageResponse(message=message)


@router.delete("/auth/account", response_model=MessageResponse)
def delete_account(
    session: SessionClaims = Depends(get_session_claims),
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Delete the caller's account and everything it owns, then clear the cookie."""
    message = service.delete_account(session.user_id)
    resp = JSONResponse(content=MessageResponse(message=message).model_dump())
    clear_auth_cookie(resp)
    return resp


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers; an empty list when none are set."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers(request.app.state.settings)]
