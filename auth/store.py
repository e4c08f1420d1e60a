"""
auth/store.py -- SQLAlchemy Core persistence layer for the Credential Store.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user is the mapper. Route and service
code never touches SQL directly. The ledgers (auth/otp.py, auth/reset.py)
share this module's tables and engine.

Transactions:
  Every method takes an optional ``conn``. Without one the method runs in its
  own short transaction; with one it joins the caller's transaction. Flows
  that touch several tables open ``store.transaction()`` and pass the
  connection down, so a failure anywhere rolls back everything.

  transaction() translates driver errors:
    IntegrityError on a UNIQUE column              -> DuplicateIdentity
    any other DBAPIError                           -> TransientError
  AuthFlowError raised by flow code passes through untouched after rollback.

Schema:
  Explicit and versioned (schema_version table). There is no column probing;
  a database at an older version fails fast at startup.
  Owned rows cascade on user delete. SQLite needs PRAGMA foreign_keys=ON for
  that, set per connection.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/ or mail/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError, IntegrityError

from auth.clock import Clock, from_iso, to_iso, utc_now
from auth.errors import AuthFlowError, DuplicateIdentity, TransientError
from auth.models import User

logger = logging.getLogger("quicklearn.auth.store")

SCHEMA_VERSION = 1

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("uuid", String(36), nullable=False, unique=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("is_email_verified", Boolean, nullable=False, default=False),
    Column("external_provider", String(30)),
    Column("external_subject", String(255)),
    Column("created_at", String(40), nullable=False),
    Column("last_login_at", String(40)),
    Column("last_login_ip", String(64)),
    # NULL pairs are distinct, so unlinked accounts never collide here.
    UniqueConstraint("external_provider", "external_subject", name="uq_users_external_identity"),
)

email_verifications = Table(
    "email_verifications",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("otp_code", String(6), nullable=False),
    Column("expires_at", String(40), nullable=False),
    Column("attempt_count", Integer, nullable=False, default=0),
    Column("consumed_at", String(40)),
    Column("created_at", String(40), nullable=False),
)

password_reset_tokens = Table(
    "password_reset_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("token", String(64), nullable=False, unique=True),
    Column("expires_at", String(40), nullable=False),
    Column("consumed_at", String(40)),
    Column("created_at", String(40), nullable=False),
)

# Advisory only: decides whether a login looks like a new device/location
# for the alert email. Never consulted for trust decisions.
login_contexts = Table(
    "login_contexts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("ip_address", String(64)),
    Column("user_agent", String(512)),
    Column("first_seen_at", String(40), nullable=False),
    Column("last_seen_at", String(40), nullable=False),
)

schema_version = Table(
    "schema_version",
    metadata,
    Column("version", Integer, primary_key=True),
)


# ---------------------------------------------------------------------------
# SQLite pragmas
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL and foreign keys on every new SQLite connection.

    PRAGMAs are not inherited by new connections from the pool, so this runs
    per connection. In-memory databases ignore the WAL request and stay in
    "memory" journal mode.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def _unique_violation_columns(exc: IntegrityError) -> str:
    return str(getattr(exc, "orig", exc)).lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User records plus the shared engine and tables.

    Usage:
        store = UserStore("sqlite:///:memory:")
        with store.transaction() as conn:
            user_id = store.create_user(user, conn=conn)
        user = store.get_by_identifier("alice")
        store.close()
    """

    def __init__(self, db_url: str, clock: Clock = utc_now) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.clock = clock
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        metadata.create_all(self.engine)
        self._ensure_schema_version()

    def _ensure_schema_version(self) -> None:
        """Stamp a fresh database with SCHEMA_VERSION, refuse a mismatched one."""
        with self.engine.begin() as conn:
            current = conn.execute(select(func.max(schema_version.c.version))).scalar()
            if current is None:
                conn.execute(schema_version.insert().values(version=SCHEMA_VERSION))
            elif current != SCHEMA_VERSION:
                raise RuntimeError(
                    f"Auth database is at schema version {current}, expected {SCHEMA_VERSION}. "
                    "Run the migration before starting the service."
                )

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Open one atomic unit of work. Commits on success, rolls back on any error.

        The one exception: an AuthFlowError with keep_writes=True commits what
        was written before it was raised (the OTP mismatch counter).
        """
        try:
            with self.engine.connect() as conn:
                trans = conn.begin()
                try:
                    yield conn
                except AuthFlowError as exc:
                    if exc.keep_writes:
                        trans.commit()
                    else:
                        trans.rollback()
                    raise
                except BaseException:
                    trans.rollback()
                    raise
                trans.commit()
        except AuthFlowError:
            raise
        except IntegrityError as exc:
            detail = _unique_violation_columns(exc)
            if "unique" in detail or "duplicate" in detail:
                logger.info("Uniqueness violation rolled back: %s", detail)
                raise DuplicateIdentity() from exc
            logger.exception("Integrity error rolled back")
            raise TransientError() from exc
        except DBAPIError as exc:
            logger.exception("Database error rolled back")
            raise TransientError() from exc

    @contextmanager
    def scope(self, conn: Connection | None) -> Iterator[Connection]:
        if conn is not None:
            yield conn
        else:
            with self.transaction() as own:
                yield own

    def now(self) -> datetime:
        return self.clock()

    # ------------------------------------------------------------------
    # User writes
    # ------------------------------------------------------------------

    def create_user(self, user: User, conn: Connection | None = None) -> int:
        """Insert a new user and return its sequential id.

        Raises DuplicateIdentity (via transaction()) when the username or the
        email is taken, including when a concurrent registration wins the race
        at the UNIQUE constraint.
        """
        with self.scope(conn) as c:
            result = c.execute(
                users.insert().values(
                    uuid=user.uuid,
                    username=user.username,
                    email=user.email,
                    password_hash=user.password_hash,
                    is_email_verified=user.is_email_verified,
                    external_provider=user.external_provider,
                    external_subject=user.external_subject,
                    created_at=to_iso(self.now()),
                )
            )
            return result.inserted_primary_key[0]

    def update_password_hash(self, user_id: int, password_hash: str, conn: Connection | None = None) -> bool:
        with self.scope(conn) as c:
            result = c.execute(users.update().where(users.c.id == user_id).values(password_hash=password_hash))
        return result.rowcount > 0

    def set_email_verified(self, user_id: int, verified: bool = True, conn: Connection | None = None) -> bool:
        with self.scope(conn) as c:
            result = c.execute(users.update().where(users.c.id == user_id).values(is_email_verified=verified))
        return result.rowcount > 0

    def link_external_identity(
        self, user_id: int, provider: str, subject: str, conn: Connection | None = None
    ) -> bool:
        """Attach a federated identity to an existing account.

        Only fills an empty slot; an account already linked elsewhere is left
        alone and False is returned.
        """
        with self.scope(conn) as c:
            result = c.execute(
                users.update()
                .where((users.c.id == user_id) & users.c.external_subject.is_(None))
                .values(external_provider=provider, external_subject=subject)
            )
        return result.rowcount > 0

    def record_login(self, user_id: int, ip: str | None, conn: Connection | None = None) -> None:
        """Stamp last_login_at / last_login_ip after a successful authentication."""
        with self.scope(conn) as c:
            c.execute(users.update().where(users.c.id == user_id).values(last_login_at=to_iso(self.now()), last_login_ip=ip))

    def delete_user(self, user_id: int, conn: Connection | None = None) -> bool:
        """Delete a user and every row it owns. Returns False if the user did not exist.

        Owned rows are deleted explicitly as well as via ON DELETE CASCADE so the
        result does not depend on the backend enforcing foreign keys.
        """
        with self.scope(conn) as c:
            for table in (email_verifications, password_reset_tokens, login_contexts):
                c.execute(table.delete().where(table.c.user_id == user_id))
            result = c.execute(users.delete().where(users.c.id == user_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def get_by_id(self, user_id: int, conn: Connection | None = None) -> User | None:
        with self.scope(conn) as c:
            row = c.execute(users.select().where(users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_uuid(self, user_uuid: str, conn: Connection | None = None) -> User | None:
        with self.scope(conn) as c:
            row = c.execute(users.select().where(users.c.uuid == user_uuid)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str, conn: Connection | None = None) -> User | None:
        with self.scope(conn) as c:
            row = c.execute(users.select().where(func.lower(users.c.email) == email.strip().lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_username(self, username: str, conn: Connection | None = None) -> User | None:
        with self.scope(conn) as c:
            row = c.execute(users.select().where(users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_identifier(self, identifier: str, conn: Connection | None = None) -> User | None:
        """Look up by username OR email (email compared case-insensitively)."""
        ident = identifier.strip()
        with self.scope(conn) as c:
            row = c.execute(
                users.select()
                .where(or_(users.c.username == ident, func.lower(users.c.email) == ident.lower()))
                .order_by(users.c.id)
                .limit(1)
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_external(self, provider: str, subject: str, conn: Connection | None = None) -> User | None:
        with self.scope(conn) as c:
            row = c.execute(
                users.select().where((users.c.external_provider == provider) & (users.c.external_subject == subject))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def username_exists(self, username: str, conn: Connection | None = None) -> bool:
        with self.scope(conn) as c:
            row = c.execute(select(users.c.id).where(users.c.username == username).limit(1)).fetchone()
        return row is not None

    # ------------------------------------------------------------------
    # Login contexts (advisory)
    # ------------------------------------------------------------------

    def touch_login_context(
        self, user_id: int, ip: str | None, user_agent: str | None, conn: Connection | None = None
    ) -> bool:
        """Record a login context. Returns True if it looks new for this user.

        A context is "known" when any previous login for the user shared the
        IP address or the user agent.
        """
        now = to_iso(self.now())
        agent = user_agent[:512] if user_agent else None
        with self.scope(conn) as c:
            known = c.execute(
                select(login_contexts.c.id)
                .where(
                    (login_contexts.c.user_id == user_id)
                    & or_(login_contexts.c.ip_address == ip, login_contexts.c.user_agent == agent)
                )
                .limit(1)
            ).fetchone()
            exact = c.execute(
                select(login_contexts.c.id).where(
                    (login_contexts.c.user_id == user_id)
                    & (login_contexts.c.ip_address == ip)
                    & (login_contexts.c.user_agent == agent)
                )
            ).fetchone()
            if exact is not None:
                c.execute(login_contexts.update().where(login_contexts.c.id == exact.id).values(last_seen_at=now))
            else:
                c.execute(
                    login_contexts.insert().values(
                        user_id=user_id,
                        ip_address=ip,
                        user_agent=agent,
                        first_seen_at=now,
                        last_seen_at=now,
                    )
                )
        return known is None

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Cheap connectivity check for the health endpoint."""
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except DBAPIError:
            logger.exception("Database ping failed")
            return False

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        uuid=row.uuid,
        username=row.username,
        email=row.email,
        password_hash=row.password_hash,
        is_email_verified=bool(row.is_email_verified),
        external_provider=row.external_provider,
        external_subject=row.external_subject,
        created_at=from_iso(row.created_at),
        last_login_at=from_iso(row.last_login_at),
        last_login_ip=row.last_login_ip,
    )
