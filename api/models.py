"""
API request and response models for the QuickLearn auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Request fields are optional at this layer: a missing field reaches the
service, which answers with the MissingFields validation error (400) rather
than a schema error (422). Length caps still apply here, so an oversized
password never reaches bcrypt.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from auth.models import User

# bcrypt only looks at the first 72 bytes; anything past 128 chars is rejected
# outright instead of being silently truncated.
_PASSWORD_MAX = 128

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: Optional[str] = Field(default=None, min_length=3, max_length=30, pattern=r"^[A-Za-z0-9_.-]+$")
    email: Optional[EmailStr] = None
    password: Optional[str] = Field(default=None, max_length=_PASSWORD_MAX)
    confirm_password: Optional[str] = Field(default=None, max_length=_PASSWORD_MAX)


class VerifyEmailRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: Optional[EmailStr] = None
    otp: Optional[str] = Field(default=None, max_length=6)


class EmailRequest(BaseModel):
    """Body for POST /auth/resend-otp and POST /auth/forgot-password."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: Optional[EmailStr] = None


class LoginRequest(BaseModel):
    """identifier matches a username or an email address."""

    identifier: Optional[str] = Field(default=None, max_length=254)
    password: Optional[str] = Field(default=None, max_length=_PASSWORD_MAX)


class ResetPasswordRequest(BaseModel):
    token: Optional[str] = Field(default=None, max_length=128)
    password: Optional[str] = Field(default=None, max_length=_PASSWORD_MAX)
    confirm_password: Optional[str] = Field(default=None, max_length=_PASSWORD_MAX)


class UpdatePasswordRequest(BaseModel):
    current_password: Optional[str] = Field(default=None, max_length=_PASSWORD_MAX)
    new_password: Optional[str] = Field(default=None, max_length=_PASSWORD_MAX)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserOut(BaseModel):
    """Public view of an account. The internal id never leaves the server."""

    model_config = ConfigDict(frozen=True)

    uuid: str
    username: str
    email: str
    is_email_verified: bool
    external_provider: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserOut":
        return cls(
            uuid=user.uuid,
            username=user.username,
            email=user.email,
            is_email_verified=user.is_email_verified,
            external_provider=user.external_provider,
        )


class MessageResponse(BaseModel):
    message: str


class RegisterResponse(BaseModel):
    message: str
    user_id: int
    uuid: str


class VerifyEmailResponse(BaseModel):
    message: str
    verified: bool


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserOut


class LogoutResponse(BaseModel):
    success: bool = True


class SessionUser(BaseModel):
    uuid: str
    username: str


class MeResponse(BaseModel):
    user: SessionUser


class OAuthProviderInfo(BaseModel):
    name: str
    label: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str
    version: str
    components: dict[str, str]
