"""
auth/guardian.py -- Login Guardian: per (identifier, origin) failure counter
driving a temporary lockout.

State machine per key:

    Open --(failure #max_failures)--> Locked --(lockout elapses)--> Open
    Open --(success)--> Open (counter cleared)

  check()           raises ThrottledError(retry_after) while Locked. Called
                    before the Credential Store is touched, so a locked key
                    costs no bcrypt work.
  record_failure()  increments; reaching max_failures locks for
                    lockout_seconds.
  record_success()  forgets the key.

When a lockout elapses the key starts over from a zero count. prune() forgets
elapsed lockouts and Open keys whose last failure is older than
failure_ttl_seconds, which bounds the map under identifier spraying.

Keys are ``identifier.lower() + "|" + origin``; distinct identifier/origin
pairs never share a counter.

Storage goes through the CounterStore interface. InMemoryCounterStore is the
single-process implementation: process memory, lost on restart, guarded by a
lock so concurrent failures on one key never lose an increment. A deployment
running several workers plugs in a shared implementation with the same
atomic update() contract; the state machine above does not change.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import replace
from typing import Protocol

from auth.errors import ThrottledError
from auth.models import LoginFailure

logger = logging.getLogger("quicklearn.auth.guardian")


def login_key(identifier: str, origin: str | None) -> str:
    return f"{(identifier or '').strip().lower()}|{origin or 'unknown'}"


class CounterStore(Protocol):
    def get(self, key: str) -> LoginFailure | None: ...

    def update(self, key: str, fn: Callable[[LoginFailure], LoginFailure | None]) -> LoginFailure | None:
        """Atomically replace the state of ``key`` with fn(current); None deletes it."""
        ...

    def delete(self, key: str) -> None: ...

    def prune(self, predicate: Callable[[LoginFailure], bool]) -> int: ...


class InMemoryCounterStore:
    """Process-local CounterStore backed by a dict and one lock."""

    def __init__(self) -> None:
        self._entries: dict[str, LoginFailure] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> LoginFailure | None:
        with self._lock:
            entry = self._entries.get(key)
            return replace(entry) if entry else None

    def update(self, key: str, fn: Callable[[LoginFailure], LoginFailure | None]) -> LoginFailure | None:
        with self._lock:
            current = self._entries.get(key) or LoginFailure()
            updated = fn(replace(current))
            if updated is None:
                self._entries.pop(key, None)
            else:
                self._entries[key] = updated
            return updated

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def prune(self, predicate: Callable[[LoginFailure], bool]) -> int:
        with self._lock:
            doomed = [k for k, v in self._entries.items() if predicate(v)]
            for k in doomed:
                del self._entries[k]
            return len(doomed)

    def __len__(self) -> int:
        return len(self._entries)


class LoginGuardian:
    def __init__(
        self,
        store: CounterStore | None = None,
        max_failures: int = 5,
        lockout_seconds: float = 15,
        failure_ttl_seconds: float = 60 * 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store if store is not None else InMemoryCounterStore()
        self.max_failures = max_failures
        self.lockout_seconds = lockout_seconds
        self.failure_ttl_seconds = failure_ttl_seconds
        self._clock = clock

    def check(self, key: str) -> None:
        """Raise ThrottledError while the key is Locked."""
        now = self._clock()
        entry = self.store.get(key)
        if entry is not None and entry.locked_until and now < entry.locked_until:
            raise ThrottledError(entry.locked_until - now)

    def record_failure(self, key: str) -> LoginFailure:
        now = self._clock()

        def bump(entry: LoginFailure) -> LoginFailure:
            if entry.locked_until and now >= entry.locked_until:
                entry = LoginFailure()
            entry.count += 1
            entry.last_failure = now
            if entry.count >= self.max_failures and not entry.locked_until:
                entry.locked_until = now + self.lockout_seconds
                logger.warning("Login locked for %ss after %d failures (key=%s)", self.lockout_seconds, entry.count, key)
            return entry

        return self.store.update(key, bump)

    def record_success(self, key: str) -> None:
        self.store.delete(key)

    def prune(self) -> int:
        """Drop keys whose lockout has elapsed and Open keys idle for failure_ttl_seconds."""
        now = self._clock()

        def dead(entry: LoginFailure) -> bool:
            if entry.locked_until:
                return now >= entry.locked_until
            return now - entry.last_failure >= self.failure_ttl_seconds

        return self.store.prune(dead)
