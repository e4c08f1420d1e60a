"""
tests/conftest.py -- Shared test fixtures for QuickLearn Auth.

This module provides:
  - FakeClock / FakeMonotonic: hand-driven clocks so expiry and lockout
    tests move time instead of sleeping
  - store / service: unit-level UserStore and AuthService on a private
    in-memory DB, with an inline Outbox recording mail in a MemoryDispatcher
  - make_user: factory inserting an account directly, bypassing registration
  - _patch_lifespan(): wires test objects into app.state, bypassing real startup
  - api_client: TestClient over the real FastAPI app for integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
the TestClient because it runs route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

Environment must be set before any project import: DEBUG so get_settings()
auto-generates SECRET_KEY, a low bcrypt cost so the suite stays fast, a high
per-IP login limit so slowapi does not interfere with Login Guardian tests,
and the TestClient host in ALLOWED_HOSTS.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

# CRITICAL: set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.guardian import LoginGuardian
from auth.models import User
from auth.service import AuthService
from auth.store import UserStore
from auth.tokens import TokenIssuer, hash_password
from core.config import Settings, get_settings
from mail.dispatcher import MemoryDispatcher, Outbox

PASSWORD = "Str0ng!Pass"

# ---------------------------------------------------------------------------
# Clocks
# ---------------------------------------------------------------------------


class FakeClock:
    """Wall clock for stores, ledgers and the token issuer."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeMonotonic:
    """Monotonic clock for the Login Guardian."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mono() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def store(clock: FakeClock) -> Generator[UserStore, None, None]:
    s = UserStore("sqlite:///:memory:", clock=clock)
    yield s
    s.close()


@pytest.fixture
def mailbox() -> MemoryDispatcher:
    return MemoryDispatcher()


@pytest.fixture
def service(
    store: UserStore, settings: Settings, clock: FakeClock, mono: FakeMonotonic, mailbox: MemoryDispatcher
) -> AuthService:
    return AuthService(
        store=store,
        issuer=TokenIssuer(settings.secret_key, ttl_seconds=settings.access_token_ttl_seconds, clock=clock),
        guardian=LoginGuardian(max_failures=5, lockout_seconds=15, clock=mono),
        outbox=Outbox(mailbox, inline=True),
        settings=settings,
    )


def _make_user(
    store: UserStore,
    username: str = "alice",
    email: str = "alice@example.com",
    password: str = PASSWORD,
    verified: bool = True,
    **extra,
) -> User:
    """Insert a user directly and return it as read back from the store."""
    user = User(
        uuid=f"uuid-{username}",
        username=username,
        email=email,
        password_hash=hash_password(password),
        is_email_verified=verified,
        **extra,
    )
    with store.transaction() as conn:
        user_id = store.create_user(user, conn=conn)
    return store.get_by_id(user_id)


@pytest.fixture
def make_user():
    """Factory fixture: make_user(store, username, email, password, verified, **extra)."""
    return _make_user


# ---------------------------------------------------------------------------
# Integration fixtures
# ---------------------------------------------------------------------------


@dataclass
class ApiHarness:
    client: TestClient
    service: AuthService
    mailbox: MemoryDispatcher
    store: UserStore


def _patch_lifespan(service: AuthService, oauth_registry):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = service.settings
        app.state.user_store = service.store
        app.state.outbox = service.outbox
        app.state.auth_service = service
        app.state.oauth = oauth_registry
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


def build_harness(db_suffix: str, oauth_registry=None, settings: Settings | None = None) -> ApiHarness:
    cfg = settings or get_settings()
    store = UserStore(f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true")
    mailbox = MemoryDispatcher(app_name=cfg.app_name)
    service = AuthService.from_settings(cfg, store, Outbox(mailbox, inline=True))
    app.router.lifespan_context = _patch_lifespan(service, oauth_registry or MagicMock())
    return ApiHarness(client=TestClient(app, raise_server_exceptions=True), service=service, mailbox=mailbox, store=store)


@pytest.fixture(scope="module")
def api_client(request) -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness for API integration tests.

    One TestClient and one DB per test module for speed; tests inside a module
    use distinct usernames so they do not collide in the shared DB or the
    Login Guardian.
    """
    harness = build_harness(request.module.__name__.rsplit(".", 1)[-1])
    with harness.client:
        yield harness
    harness.store.close()


@pytest.fixture
def harness_factory():
    """Factory fixture for modules that need their own app wiring (e.g. a mocked OAuth registry)."""
    return build_harness
