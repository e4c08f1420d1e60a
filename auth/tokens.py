"""
auth/tokens.py -- Password hashing, password policy, session assertions,
and cookie helpers.

Security design decisions:
  Session assertions: python-jose JWTs, HS256 by default. Claims are sub
       (internal user id), uuid, username and exp. TokenIssuer.verify()
       raises InvalidOrExpired for every failure -- bad signature, malformed
       payload, missing claim, expiry -- so callers cannot be used as an
       oracle. Expiry is checked against the issuer's own clock: valid while
       now < exp, invalid at and after exp.

  Sliding renewal: TokenIssuer.renew() verifies and re-mints the same claims
       with a fresh TTL. The request dependency calls it on every
       authenticated request; there is no minimum interval.

  Passwords: bcrypt used directly (no passlib wrapper) with a fixed cost
       factor from Settings.bcrypt_rounds. verify_password() uses bcrypt's
       constant-time compare. _dummy_hash() enables timing equalization in
       the login flow so response time does not reveal whether an
       identifier exists [C1].

  Random material: secrets module only. OTPs are uniform over 000000-999999,
       reset tokens are 256-bit hex, OAuth state is 128-bit hex.

Layer rule: no imports from api/ or mail/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import math
import re
import secrets
from datetime import datetime, timedelta, timezone
from functools import lru_cache

import bcrypt
from jose import JWTError, jwt

from auth.clock import Clock, utc_now
from auth.errors import InvalidOrExpired, WeakPassword
from auth.models import SessionClaims
from core.config import Settings, get_settings

logger = logging.getLogger("quicklearn.auth")

ACCESS_COOKIE = "access_token"
RENEWED_TOKEN_HEADER = "X-Access-Token"

# ---------------------------------------------------------------------------
# Password policy
# ---------------------------------------------------------------------------

_MIN_PASSWORD_LENGTH = 8
_UPPER = re.compile(r"[A-Z]")
_DIGIT = re.compile(r"\d")
_SYMBOL = re.compile(r"[^A-Za-z0-9]")


def check_password_policy(password: str) -> None:
    """Raise WeakPassword unless the password has length >= 8, an uppercase
    letter, a digit and a symbol. Runs before any hashing."""
    if (
        len(password) < _MIN_PASSWORD_LENGTH
        or not _UPPER.search(password)
        or not _DIGIT.search(password)
        or not _SYMBOL.search(password)
    ):
        raise WeakPassword()


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int | None = None) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are silently truncated by bcrypt. The API
    layer caps password fields at 128 characters.
    """
    cost = rounds if rounds is not None else get_settings().bcrypt_rounds
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=cost)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


@lru_cache(maxsize=1)
def _dummy_hash() -> str:
    """Hash used to burn the same bcrypt work for unknown identifiers [C1].

    Computed once, on first use, at the configured cost factor so it costs
    what a real verification costs.
    """
    return hash_password("quicklearn_timing_dummy")


def burn_password_check(plain: str) -> None:
    verify_password(plain, _dummy_hash())


def unusable_password_hash() -> str:
    """Hash of a random secret nobody knows, for federated-only accounts."""
    return hash_password(secrets.token_hex(32))


# ---------------------------------------------------------------------------
# Random material
# ---------------------------------------------------------------------------


def generate_otp() -> str:
    """Uniformly random 6-digit code, zero padded."""
    return f"{secrets.randbelow(1_000_000):06d}"


def generate_reset_token() -> str:
    """256 bits of entropy as 64 hex characters."""
    return secrets.token_hex(32)


def generate_oauth_state() -> str:
    return secrets.token_hex(16)


# ---------------------------------------------------------------------------
# Session assertions
# ---------------------------------------------------------------------------


class TokenIssuer:
    """Mints, verifies and renews signed session assertions.

    The signing algorithm is a constructor argument; callers only see
    mint/verify/renew, so switching schemes does not touch them.

    Usage:
        issuer = TokenIssuer.from_settings(get_settings())
        token = issuer.mint(SessionClaims(user_id=1, uuid="...", username="alice"))
        claims = issuer.verify(token)
        fresh = issuer.renew(token)
    """

    def __init__(
        self,
        secret_key: str,
        ttl_seconds: int = 30 * 60,
        algorithm: str = "HS256",
        clock: Clock = utc_now,
    ) -> None:
        self._secret_key = secret_key
        self._algorithm = algorithm
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, clock: Clock = utc_now) -> TokenIssuer:
        return cls(settings.secret_key, ttl_seconds=settings.access_token_ttl_seconds, clock=clock)

    def mint(self, claims: SessionClaims) -> str:
        """Sign the claims with an expiry ttl_seconds from now.

        exp is rounded up to the whole second so the assertion never lives
        less than ttl_seconds.
        """
        expire = self._clock() + timedelta(seconds=self.ttl_seconds)
        payload = {
            "sub": str(claims.user_id),
            "uuid": claims.uuid,
            "username": claims.username,
            "exp": math.ceil(expire.timestamp()),
        }
        return jwt.encode(payload, self._secret_key, algorithm=self._algorithm)

    def verify(self, token: str) -> SessionClaims:
        """Return the claims of a valid assertion or raise InvalidOrExpired."""
        if not token:
            raise InvalidOrExpired()
        try:
            # exp is checked below against our clock, not jose's wall clock.
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self._algorithm],
                options={"verify_exp": False},
            )
            user_id = int(payload["sub"])
            exp = int(payload["exp"])
            uuid = str(payload["uuid"])
            username = str(payload["username"])
        except (JWTError, KeyError, TypeError, ValueError) as exc:
            logger.debug("Session assertion rejected: %s", type(exc).__name__)
            raise InvalidOrExpired() from exc

        if self._clock().timestamp() >= exp:
            logger.debug("Session assertion expired for user_id=%s", user_id)
            raise InvalidOrExpired()

        return SessionClaims(
            user_id=user_id,
            uuid=uuid,
            username=username,
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
        )

    def renew(self, token: str) -> tuple[SessionClaims, str]:
        """Verify, then mint a fresh assertion carrying the same claims."""
        claims = self.verify(token)
        return claims, self.mint(claims)


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, settings: Settings | None = None) -> None:
    """Write the session assertion as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST (CSRF mitigation).
    secure: only sent over HTTPS when SECURE_COOKIES=true.
    max_age: matches the assertion TTL so both expire together.
    """
    cfg = settings or get_settings()
    response.set_cookie(
        ACCESS_COOKIE,
        value=token,
        httponly=True,
        samesite="lax",
        secure=cfg.secure_cookies,
        max_age=cfg.access_token_ttl_seconds,
        path="/",
    )


def clear_auth_cookie(response) -> None:
    response.delete_cookie(ACCESS_COOKIE, path="/")
