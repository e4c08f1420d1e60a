"""
auth/otp.py -- One-Time-Code Ledger for email verification.

issue():  new 6-digit code, expiry = now + otp_ttl, attempt_count = 0.
          Older records are left alone (resend does not revoke them), but
          only the newest record for a user is ever checked, so a superseded
          code stops working.

verify(): checks the newest record for the user, in this order:
            none                         -> NotFound
            consumed                     -> AlreadyConsumed
            expired                      -> Expired
            attempt cap reached          -> TooManyAttempts (cap > 0 only)
            code differs                 -> Mismatch, attempt_count += 1
          On a match the record is consumed and the user's verified flag set,
          both on the caller's connection.

Mismatch bookkeeping must survive the failing request. Mismatch is flagged
keep_writes, so the enclosing transaction commits the incremented
attempt_count before the error propagates.

Consumption is a conditional UPDATE (consumed_at IS NULL); if a concurrent
request consumed the record first the rowcount is 0 and this call fails with
AlreadyConsumed. At most one verifier wins.
"""

from __future__ import annotations

import hmac
import logging
from datetime import timedelta

from sqlalchemy import or_
from sqlalchemy.engine import Connection

from auth.clock import from_iso, to_iso
from auth.errors import AlreadyConsumed, Expired, Mismatch, NotFound, TooManyAttempts
from auth.models import EmailVerification
from auth.store import UserStore, email_verifications
from auth.tokens import generate_otp

logger = logging.getLogger("quicklearn.auth.otp")


class OneTimeCodeLedger:
    def __init__(self, store: UserStore, ttl_seconds: int = 10 * 60, max_attempts: int = 0) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.max_attempts = max_attempts

    def issue(self, user_id: int, conn: Connection | None = None) -> str:
        """Store a fresh code for the user and return it for out-of-band delivery."""
        code = generate_otp()
        now = self.store.now()
        with self.store.scope(conn) as c:
            c.execute(
                email_verifications.insert().values(
                    user_id=user_id,
                    otp_code=code,
                    expires_at=to_iso(now + timedelta(seconds=self.ttl_seconds)),
                    attempt_count=0,
                    created_at=to_iso(now),
                )
            )
        return code

    def latest(self, user_id: int, conn: Connection | None = None) -> EmailVerification | None:
        with self.store.scope(conn) as c:
            row = c.execute(
                email_verifications.select()
                .where(email_verifications.c.user_id == user_id)
                .order_by(email_verifications.c.id.desc())
                .limit(1)
            ).fetchone()
        return _row_to_record(row) if row is not None else None

    def verify(self, user_id: int, code: str, conn: Connection | None = None) -> EmailVerification:
        """Consume the newest record if ``code`` matches it; see module docstring."""
        with self.store.scope(conn) as c:
            record = self.latest(user_id, conn=c)
            if record is None:
                raise NotFound()
            if record.consumed_at is not None:
                raise AlreadyConsumed()
            now = self.store.now()
            if now >= record.expires_at:
                raise Expired()
            if self.max_attempts and record.attempt_count >= self.max_attempts:
                raise TooManyAttempts()
            if not hmac.compare_digest(record.code.encode(), str(code).strip().encode()):
                c.execute(
                    email_verifications.update()
                    .where(email_verifications.c.id == record.id)
                    .values(attempt_count=email_verifications.c.attempt_count + 1)
                )
                logger.info("OTP mismatch for user_id=%s (attempt %d)", user_id, record.attempt_count + 1)
                raise Mismatch()

            result = c.execute(
                email_verifications.update()
                .where((email_verifications.c.id == record.id) & email_verifications.c.consumed_at.is_(None))
                .values(consumed_at=to_iso(now))
            )
            if result.rowcount != 1:
                raise AlreadyConsumed()
            self.store.set_email_verified(user_id, True, conn=c)
            record.consumed_at = now
        return record

    def purge(self, retention_seconds: int, conn: Connection | None = None) -> int:
        """Delete records consumed or expired more than retention_seconds ago."""
        cutoff = to_iso(self.store.now() - timedelta(seconds=retention_seconds))
        with self.store.scope(conn) as c:
            result = c.execute(
                email_verifications.delete().where(
                    or_(email_verifications.c.expires_at < cutoff, email_verifications.c.consumed_at < cutoff)
                )
            )
        return result.rowcount


def _row_to_record(row) -> EmailVerification:
    return EmailVerification(
        id=row.id,
        user_id=row.user_id,
        code=row.otp_code,
        expires_at=from_iso(row.expires_at),
        attempt_count=row.attempt_count,
        consumed_at=from_iso(row.consumed_at),
        created_at=from_iso(row.created_at),
    )
