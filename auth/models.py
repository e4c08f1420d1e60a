"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and ledgers do
the work; these only own the shape.

Layer rule: no imports from api/ or mail/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class User:
    """A local account.

    id is the internal sequential key; uuid is the opaque identifier handed to
    clients and embedded in session assertions.

    password_hash is always set. Accounts created from a federated login get a
    hash of a random value nobody knows, so password login is impossible until
    the user sets a password via the reset flow.

    external_provider / external_subject are None until a federated login
    links them. The pair maps to at most one user (UNIQUE in the schema).
    """

    username: str
    email: str
    password_hash: str
    uuid: str = ""
    id: int | None = None
    is_email_verified: bool = False
    external_provider: str | None = None  # "google", "oidc"
    external_subject: str | None = None  # provider's stable user ID
    created_at: datetime | None = None
    last_login_at: datetime | None = None
    last_login_ip: str | None = None


@dataclass
class EmailVerification:
    """One issued OTP. Several may exist per user; only the newest counts."""

    user_id: int
    code: str
    expires_at: datetime
    id: int | None = None
    attempt_count: int = 0
    consumed_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class PasswordResetToken:
    """A single-use password recovery token (256-bit, hex encoded)."""

    user_id: int
    token: str
    expires_at: datetime
    id: int | None = None
    consumed_at: datetime | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class SessionClaims:
    """Claims carried by a session assertion. Never persisted server-side."""

    user_id: int
    uuid: str
    username: str
    expires_at: datetime | None = None


@dataclass(frozen=True)
class ExternalProfile:
    """A profile already verified by an external identity provider."""

    provider: str
    subject: str
    email: str
    email_verified: bool = False
    display_name: str | None = None


@dataclass
class LoginFailure:
    """Login Guardian state for one (identifier, origin) key.

    locked_until and last_failure are monotonic-clock readings; locked_until is
    0.0 when the key is Open.
    """

    count: int = 0
    locked_until: float = 0.0
    last_failure: float = 0.0


@dataclass(frozen=True)
class RegistrationResult:
    user_id: int
    uuid: str


@dataclass(frozen=True)
class LoginResult:
    access_token: str
    expires_in: int
    user: User


@dataclass(frozen=True)
class FederatedLoginResult:
    access_token: str
    expires_in: int
    user: User
    created: bool  # onboarding hint only, never a trust input
