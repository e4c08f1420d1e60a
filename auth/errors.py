"""
auth/errors.py -- Exception taxonomy for the authentication flows.

Every flow failure is an AuthFlowError subclass carrying:
  code        -- stable machine-readable identifier for API clients
  message     -- the text that is safe to show the caller
  status_code -- HTTP status the API layer maps the error to

Families:
  ValidationError  caller-fixable input problems, surfaced verbatim
  ConflictError    duplicate identity, surfaced without naming the field
  AuthError        credential/token/session failures; messages stay generic
                   where a distinction would help an attacker
  ThrottledError   Login Guardian lockout, carries retry_after seconds
  TransientError   database failure after rollback, safe to retry

Internal detail belongs in logs, not in ``message``. Subclasses override the
class attributes; instances may pass a more specific message where the text
leaks nothing.

Layer rule: stdlib only.
"""

from __future__ import annotations

import math


class AuthFlowError(Exception):
    code: str = "auth_flow_error"
    message: str = "Request failed."
    status_code: int = 400
    # When True, transaction() commits the writes made so far before
    # re-raising (e.g. a failed-attempt counter).
    keep_writes: bool = False

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(AuthFlowError):
    code = "validation_error"
    message = "Invalid request."
    status_code = 400


class MissingFields(ValidationError):
    code = "missing_fields"
    message = "Missing required fields."


class PasswordMismatch(ValidationError):
    code = "password_mismatch"
    message = "Passwords do not match."


class WeakPassword(ValidationError):
    code = "weak_password"
    message = (
        "Password must be at least 8 characters and contain an uppercase letter, "
        "a digit, and a symbol."
    )


# ---------------------------------------------------------------------------
# Conflict
# ---------------------------------------------------------------------------


class ConflictError(AuthFlowError):
    code = "conflict"
    message = "Conflict with existing data."
    status_code = 409


class DuplicateIdentity(ConflictError):
    # Never say which of username/email collided [enumeration].
    code = "duplicate_identity"
    message = "Username or email already in use."


class IdentityAlreadyLinked(ConflictError):
    code = "identity_already_linked"
    message = "This account is linked to a different external identity."


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class AuthError(AuthFlowError):
    code = "unauthorized"
    message = "Authentication failed."
    status_code = 401


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    message = "Invalid credentials."


class EmailNotVerified(AuthError):
    code = "email_not_verified"
    message = "Email not verified."
    status_code = 403


class InvalidOrExpired(AuthError):
    # Bad signature, malformed payload and expiry are deliberately one error.
    code = "invalid_or_expired"
    message = "Invalid or expired session."


class InvalidState(AuthError):
    code = "invalid_state"
    message = "Invalid OAuth state."
    status_code = 400


class NotFound(AuthError):
    code = "not_found"
    message = "Invalid or expired code."
    status_code = 400


class Expired(AuthError):
    code = "expired"
    message = "Code has expired."
    status_code = 400


class AlreadyConsumed(AuthError):
    code = "already_consumed"
    message = "Code has already been used."
    status_code = 400


class Mismatch(AuthError):
    code = "mismatch"
    message = "Invalid verification code."
    status_code = 400
    keep_writes = True


class TooManyAttempts(AuthError):
    code = "too_many_attempts"
    message = "Too many invalid attempts. Request a new code."
    status_code = 400


# ---------------------------------------------------------------------------
# Throttling and infrastructure
# ---------------------------------------------------------------------------


class ThrottledError(AuthFlowError):
    code = "throttled"
    status_code = 429

    def __init__(self, retry_after: float) -> None:
        self.retry_after = max(1, math.ceil(retry_after))
        super().__init__(f"Too many failed attempts. Try again in {self.retry_after}s.")


class TransientError(AuthFlowError):
    code = "transient_error"
    message = "Temporary failure. Please retry."
    status_code = 503
