"""
auth/reset.py -- Reset-Token Ledger for password recovery.

issue():   marks every unconsumed token of the user consumed, then stores a
           fresh 256-bit hex token with expiry = now + reset_token_ttl.
consume(): looks the token up and fails with
             unknown token   -> NotFound
             consumed        -> AlreadyConsumed
             expired         -> Expired
           otherwise sets the user's password hash, consumes this token and
           every other live token of the same user.

Both operations run on the caller's connection so the flow that wraps them
is a single transaction. The consuming UPDATE is conditional on
consumed_at IS NULL; a concurrent consumer that lost the race gets
AlreadyConsumed and its password write is rolled back with it.
"""

from __future__ import annotations

from datetime import timedelta

from sqlalchemy import or_
from sqlalchemy.engine import Connection

from auth.clock import from_iso, to_iso
from auth.errors import AlreadyConsumed, Expired, NotFound
from auth.models import PasswordResetToken
from auth.store import UserStore, password_reset_tokens
from auth.tokens import generate_reset_token


class ResetTokenLedger:
    def __init__(self, store: UserStore, ttl_seconds: int = 60 * 60) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds

    def issue(self, user_id: int, conn: Connection | None = None) -> str:
        now = self.store.now()
        token = generate_reset_token()
        with self.store.scope(conn) as c:
            self._consume_outstanding(c, user_id, now)
            c.execute(
                password_reset_tokens.insert().values(
                    user_id=user_id,
                    token=token,
                    expires_at=to_iso(now + timedelta(seconds=self.ttl_seconds)),
                    created_at=to_iso(now),
                )
            )
        return token

    def get(self, token: str, conn: Connection | None = None) -> PasswordResetToken | None:
        with self.store.scope(conn) as c:
            row = c.execute(password_reset_tokens.select().where(password_reset_tokens.c.token == token)).fetchone()
        return _row_to_token(row) if row is not None else None

    def consume(self, token: str, new_password_hash: str, conn: Connection | None = None) -> PasswordResetToken:
        """Spend ``token`` and install ``new_password_hash`` for its owner."""
        with self.store.scope(conn) as c:
            record = self.get(token, conn=c)
            if record is None:
                raise NotFound("Invalid or expired reset token.")
            if record.consumed_at is not None:
                raise AlreadyConsumed("Reset token has already been used.")
            now = self.store.now()
            if now >= record.expires_at:
                raise Expired("Reset token has expired.")

            result = c.execute(
                password_reset_tokens.update()
                .where((password_reset_tokens.c.id == record.id) & password_reset_tokens.c.consumed_at.is_(None))
                .values(consumed_at=to_iso(now))
            )
            if result.rowcount != 1:
                raise AlreadyConsumed("Reset token has already been used.")
            self.store.update_password_hash(record.user_id, new_password_hash, conn=c)
            # Replay defense: nothing issued before this reset stays usable.
            self._consume_outstanding(c, record.user_id, now)
            record.consumed_at = now
        return record

    def _consume_outstanding(self, conn: Connection, user_id: int, now) -> int:
        result = conn.execute(
            password_reset_tokens.update()
            .where((password_reset_tokens.c.user_id == user_id) & password_reset_tokens.c.consumed_at.is_(None))
            .values(consumed_at=to_iso(now))
        )
        return result.rowcount

    def purge(self, retention_seconds: int, conn: Connection | None = None) -> int:
        """Delete tokens consumed or expired more than retention_seconds ago."""
        cutoff = to_iso(self.store.now() - timedelta(seconds=retention_seconds))
        with self.store.scope(conn) as c:
            result = c.execute(
                password_reset_tokens.delete().where(
                    or_(password_reset_tokens.c.expires_at < cutoff, password_reset_tokens.c.consumed_at < cutoff)
                )
            )
        return result.rowcount


def _row_to_token(row) -> PasswordResetToken:
    return PasswordResetToken(
        id=row.id,
        user_id=row.user_id,
        token=row.token,
        expires_at=from_iso(row.expires_at),
        consumed_at=from_iso(row.consumed_at),
        created_at=from_iso(row.created_at),
    )
