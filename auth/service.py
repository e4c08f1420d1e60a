"""
auth/service.py -- Orchestration Layer: the account flows.

AuthService composes the Credential Store, the two ledgers, the Token Issuer,
the Login Guardian, the Federated Identity Linker and the mail Outbox into
the flows the API exposes:

  register, verify_email, resend_otp, login, logout, forgot_password,
  reset_password, update_password, delete_account, federated_login,
  authenticate (verify + sliding renewal), purge_expired

Rules every flow follows:
  - Multi-statement mutations run inside one store.transaction(); any error
    rolls the whole flow back (a user row never exists without the OTP
    record created with it).
  - bcrypt runs before the transaction opens, so no lock is held while
    hashing.
  - Email is posted to the Outbox only after commit. Delivery is
    fire-and-forget and can never fail the flow.
  - The Login Guardian is consulted before and updated after a login
    attempt, outside any transaction.
  - Caller-facing messages are generic where a distinction would help an
    attacker; the distinction is logged instead.
"""

from __future__ import annotations

import logging
import uuid

from auth.errors import (
    AuthError,
    DuplicateIdentity,
    EmailNotVerified,
    InvalidCredentials,
    InvalidOrExpired,
    MissingFields,
    NotFound,
    PasswordMismatch,
    ValidationError,
)
from auth.federation import FederatedIdentityLinker
from auth.guardian import LoginGuardian, login_key
from auth.models import (
    ExternalProfile,
    FederatedLoginResult,
    LoginResult,
    RegistrationResult,
    SessionClaims,
    User,
)
from auth.otp import OneTimeCodeLedger
from auth.reset import ResetTokenLedger
from auth.store import UserStore
from auth.tokens import (
    TokenIssuer,
    burn_password_check,
    check_password_policy,
    hash_password,
    verify_password,
)
from core.config import Settings
from mail.dispatcher import LOGIN_ALERT, OTP, PASSWORD_RESET, Outbox

logger = logging.getLogger("quicklearn.auth")

FORGOT_PASSWORD_MESSAGE = "If an account exists for that email, a password reset link has been sent."
RESEND_OTP_MESSAGE = "If the account exists and is not yet verified, a new code has been sent."
ALREADY_VERIFIED_MESSAGE = "Email already verified."


def _require(*values: str | None) -> None:
    if any(v is None or not str(v).strip() for v in values):
        raise MissingFields()


def _claims_for(user: User) -> SessionClaims:
    return SessionClaims(user_id=user.id, uuid=user.uuid, username=user.username)


class AuthService:
    def __init__(
        self,
        store: UserStore,
        issuer: TokenIssuer,
        guardian: LoginGuardian,
        outbox: Outbox,
        settings: Settings,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.guardian = guardian
        self.outbox = outbox
        self.settings = settings
        self.otp = OneTimeCodeLedger(store, settings.otp_ttl_seconds, settings.otp_max_attempts)
        self.resets = ResetTokenLedger(store, settings.reset_token_ttl_seconds)
        self.linker = FederatedIdentityLinker(store)

    @classmethod
    def from_settings(cls, settings: Settings, store: UserStore, outbox: Outbox) -> AuthService:
        return cls(
            store=store,
            issuer=TokenIssuer.from_settings(settings, clock=store.clock),
            guardian=LoginGuardian(
                max_failures=settings.login_max_failures,
                lockout_seconds=settings.login_lockout_seconds,
                failure_ttl_seconds=settings.login_failure_ttl_seconds,
            ),
            outbox=outbox,
            settings=settings,
        )

    # ------------------------------------------------------------------
    # Registration and email verification
    # ------------------------------------------------------------------

    def register(self, username: str, email: str, password: str, confirm_password: str) -> RegistrationResult:
        """Create an unverified account and its first OTP in one transaction."""
        _require(username, email, password, confirm_password)
        username = username.strip()
        email = email.strip().lower()
        if "@" not in email:
            raise ValidationError("Invalid email address.")
        if password != confirm_password:
            raise PasswordMismatch()
        check_password_policy(password)

        password_hash = hash_password(password)
        user = User(uuid=str(uuid.uuid4()), username=username, email=email, password_hash=password_hash)

        with self.store.transaction() as conn:
            # Friendly early exit; the UNIQUE constraints still decide races.
            if self.store.username_exists(username, conn=conn) or self.store.get_by_email(email, conn=conn):
                logger.info("Registration rejected: duplicate username or email")
                raise DuplicateIdentity()
            user.id = self.store.create_user(user, conn=conn)
            code = self.otp.issue(user.id, conn=conn)

        logger.info("Registered user_id=%s", user.id)
        self._post_otp(user, code)
        return RegistrationResult(user_id=user.id, uuid=user.uuid)

    def verify_email(self, email: str, otp: str) -> bool:
        _require(email, otp)
        with self.store.transaction() as conn:
            user = self.store.get_by_email(email, conn=conn)
            if user is None:
                logger.info("Email verification for unknown address")
                raise NotFound()
            if user.is_email_verified:
                return True
            self.otp.verify(user.id, otp, conn=conn)
        logger.info("Email verified for user_id=%s", user.id)
        return True

    def resend_otp(self, email: str) -> str:
        """Issue a new code. Earlier codes stay in the ledger but stop counting."""
        _require(email)
        with self.store.transaction() as conn:
            user = self.store.get_by_email(email, conn=conn)
            if user is None:
                logger.info("OTP resend for unknown address")
                return RESEND_OTP_MESSAGE
            if user.is_email_verified:
                return ALREADY_VERIFIED_MESSAGE
            code = self.otp.issue(user.id, conn=conn)
        self._post_otp(user, code)
        return RESEND_OTP_MESSAGE

    # ------------------------------------------------------------------
    # Login / logout / sessions
    # ------------------------------------------------------------------

    def login(
        self,
        identifier: str,
        password: str,
        origin: str | None = None,
        user_agent: str | None = None,
    ) -> LoginResult:
        """Password login guarded by the Login Guardian.

        A locked key is rejected before any lookup or hashing. Every failure
        (missing input, unknown identifier, wrong password, unverified email)
        counts toward the lockout.
        """
        key = login_key(identifier or "", origin)
        self.guardian.check(key)
        try:
            _require(identifier, password)
            user = self._authenticate(identifier, password)
        except (AuthError, MissingFields):
            self.guardian.record_failure(key)
            raise
        self.guardian.record_success(key)

        with self.store.transaction() as conn:
            self.store.record_login(user.id, origin, conn=conn)
            new_context = self.store.touch_login_context(user.id, origin, user_agent, conn=conn)

        token = self.issuer.mint(_claims_for(user))
        if new_context:
            self.outbox.post(
                LOGIN_ALERT,
                user.email,
                {
                    "username": user.username,
                    "ip": origin,
                    "user_agent": user_agent,
                    "time": self.store.now().strftime("%Y-%m-%d %H:%M:%S UTC"),
                },
            )
        logger.info("Login succeeded for user_id=%s", user.id)
        return LoginResult(access_token=token, expires_in=self.issuer.ttl_seconds, user=user)

    def _authenticate(self, identifier: str, password: str) -> User:
        """Constant-work credential check [C1].

        bcrypt runs whether or not the identifier exists, and the caller sees
        the same InvalidCredentials for an unknown identifier and a wrong
        password.
        """
        user = self.store.get_by_identifier(identifier)
        if user is None:
            burn_password_check(password)
            logger.info("Login failed: unknown identifier")
            raise InvalidCredentials()
        if not verify_password(password, user.password_hash):
            logger.info("Login failed: wrong password for user_id=%s", user.id)
            raise InvalidCredentials()
        if not user.is_email_verified:
            logger.info("Login refused: email not verified for user_id=%s", user.id)
            raise EmailNotVerified()
        return user

    def logout(self) -> bool:
        # Stateless sessions: the caller discards its assertion.
        return True

    def authenticate(self, token: str | None) -> tuple[SessionClaims, str]:
        """Verify a presented assertion and return (claims, renewed_token)."""
        if not token:
            raise InvalidOrExpired()
        return self.issuer.renew(token)

    def federated_login(self, profile: ExternalProfile, origin: str | None = None) -> FederatedLoginResult:
        with self.store.transaction() as conn:
            user, created = self.linker.resolve(profile, conn=conn)
            self.store.record_login(user.id, origin, conn=conn)
        token = self.issuer.mint(_claims_for(user))
        logger.info("Federated login via %s for user_id=%s (created=%s)", profile.provider, user.id, created)
        return FederatedLoginResult(access_token=token, expires_in=self.issuer.ttl_seconds, user=user, created=created)

    # ------------------------------------------------------------------
    # Password recovery and account management
    # ------------------------------------------------------------------

    def forgot_password(self, email: str) -> str:
        """Issue a reset token if the account exists. The answer is the same either way."""
        _require(email)
        user = self.store.get_by_email(email)
        if user is None:
            logger.info("Password reset requested for unknown address")
            return FORGOT_PASSWORD_MESSAGE
        with self.store.transaction() as conn:
            token = self.resets.issue(user.id, conn=conn)
        self.outbox.post(
            PASSWORD_RESET,
            user.email,
            {
                "username": user.username,
                "reset_url": f"{self.settings.frontend_origin.rstrip('/')}/reset-password?token={token}",
                "ttl_minutes": self.settings.reset_token_ttl_seconds // 60,
            },
        )
        logger.info("Password reset token issued for user_id=%s", user.id)
        return FORGOT_PASSWORD_MESSAGE

    def reset_password(self, token: str, password: str, confirm_password: str) -> str:
        _require(token, password, confirm_password)
        if password != confirm_password:
            raise PasswordMismatch()
        check_password_policy(password)
        password_hash = hash_password(password)
        with self.store.transaction() as conn:
            record = self.resets.consume(token.strip(), password_hash, conn=conn)
        logger.info("Password reset completed for user_id=%s", record.user_id)
        return "Password reset successfully."

    def update_password(self, user_id: int, current_password: str, new_password: str) -> str:
        _require(current_password, new_password)
        check_password_policy(new_password)
        user = self.store.get_by_id(user_id)
        if user is None:
            raise InvalidOrExpired()
        if not verify_password(current_password, user.password_hash):
            raise InvalidCredentials("Current password is incorrect.")
        password_hash = hash_password(new_password)
        with self.store.transaction() as conn:
            if not self.store.update_password_hash(user_id, password_hash, conn=conn):
                raise InvalidOrExpired()
        logger.info("Password updated for user_id=%s", user_id)
        return "Password updated successfully."

    def delete_account(self, user_id: int) -> str:
        with self.store.transaction() as conn:
            if not self.store.delete_user(user_id, conn=conn):
                raise InvalidOrExpired()
        logger.info("Deleted account user_id=%s", user_id)
        return "Account deleted successfully."

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def purge_expired(self) -> dict[str, int]:
        retention = self.settings.ledger_retention_seconds
        with self.store.transaction() as conn:
            otps = self.otp.purge(retention, conn=conn)
            resets = self.resets.purge(retention, conn=conn)
        lockouts = self.guardian.prune()
        return {"email_verifications": otps, "password_reset_tokens": resets, "login_lockouts": lockouts}

    def _post_otp(self, user: User, code: str) -> None:
        self.outbox.post(
            OTP,
            user.email,
            {"username": user.username, "otp": code, "ttl_minutes": self.settings.otp_ttl_seconds // 60},
        )
