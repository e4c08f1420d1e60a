"""Unit tests for auth/store.py -- Credential Store.

Covers:
- create_user / lookups by id, uuid, username, email, identifier
- identifier matches username OR email, email case-insensitively
- DuplicateIdentity for a taken username or email, enforced by the UNIQUE
  constraints (so a concurrent registration cannot slip through)
- transaction() rolls back every write on failure
- external identity linking fills an empty slot only; subject is unique
- record_login stamps last_login_at / last_login_ip
- delete_user removes owned OTP, reset and login-context rows
- touch_login_context reports new vs known contexts
- schema version stamping and mismatch refusal
"""

from __future__ import annotations

import pytest
from sqlalchemy import func, select

from auth.errors import DuplicateIdentity
from auth.models import User
from auth.otp import OneTimeCodeLedger
from auth.reset import ResetTokenLedger
from auth.store import SCHEMA_VERSION, UserStore, email_verifications, login_contexts, password_reset_tokens, schema_version


def _count(store: UserStore, table) -> int:
    with store.transaction() as conn:
        return conn.execute(select(func.count()).select_from(table)).scalar()


class TestCreateAndLookup:
    def test_create_returns_sequential_ids(self, store, make_user) -> None:
        a = make_user(store, "alice", "alice@example.com")
        b = make_user(store, "bob", "bob@example.com")
        assert b.id == a.id + 1

    def test_lookups_return_the_same_user(self, store, make_user) -> None:
        user = make_user(store)
        assert store.get_by_id(user.id).username == "alice"
        assert store.get_by_uuid(user.uuid).id == user.id
        assert store.get_by_username("alice").id == user.id
        assert store.get_by_email("ALICE@Example.com").id == user.id

    def test_created_at_uses_store_clock(self, store, clock, make_user) -> None:
        user = make_user(store)
        assert user.created_at == clock()

    def test_identifier_matches_username_or_email(self, store, make_user) -> None:
        user = make_user(store)
        assert store.get_by_identifier("alice").id == user.id
        assert store.get_by_identifier("alice@example.com").id == user.id
        assert store.get_by_identifier("  Alice@EXAMPLE.com ").id == user.id

    def test_unknown_identifier_returns_none(self, store, make_user) -> None:
        make_user(store)
        assert store.get_by_identifier("mallory") is None
        assert store.get_by_id(999) is None

    def test_username_exists(self, store, make_user) -> None:
        make_user(store)
        assert store.username_exists("alice")
        assert not store.username_exists("bob")


class TestUniqueness:
    def test_duplicate_username_rejected(self, store, make_user) -> None:
        make_user(store, "alice", "alice@example.com")
        with pytest.raises(DuplicateIdentity):
            make_user(store, "alice", "other@example.com")

    def test_duplicate_email_rejected(self, store, make_user) -> None:
        make_user(store, "alice", "alice@example.com")
        with pytest.raises(DuplicateIdentity):
            make_user(store, "alice2", "alice@example.com")

    def test_duplicate_error_same_for_username_and_email(self, store, make_user) -> None:
        make_user(store)
        with pytest.raises(DuplicateIdentity) as by_username:
            make_user(store, "alice", "x@example.com")
        with pytest.raises(DuplicateIdentity) as by_email:
            make_user(store, "alice2", "alice@example.com")
        assert by_username.value.message == by_email.value.message
        assert by_username.value.code == by_email.value.code

    def test_external_subject_unique_per_provider(self, store, make_user) -> None:
        make_user(store, "a", "a@example.com", external_provider="google", external_subject="sub-1")
        with pytest.raises(DuplicateIdentity):
            make_user(store, "b", "b@example.com", external_provider="google", external_subject="sub-1")

    def test_many_users_without_external_identity(self, store, make_user) -> None:
        make_user(store, "a", "a@example.com")
        make_user(store, "b", "b@example.com")
        assert store.get_by_id(2).external_subject is None


class TestTransactions:
    def test_failure_rolls_back_all_writes(self, store) -> None:
        with pytest.raises(DuplicateIdentity):
            with store.transaction() as conn:
                store.create_user(User(uuid="u1", username="carol", email="carol@example.com", password_hash="x"), conn=conn)
                store.create_user(User(uuid="u2", username="carol", email="c2@example.com", password_hash="x"), conn=conn)
        assert store.get_by_username("carol") is None

    def test_arbitrary_exception_rolls_back(self, store) -> None:
        with pytest.raises(RuntimeError):
            with store.transaction() as conn:
                store.create_user(User(uuid="u1", username="dave", email="dave@example.com", password_hash="x"), conn=conn)
                raise RuntimeError("boom")
        assert store.get_by_username("dave") is None


class TestUserWrites:
    def test_update_password_hash(self, store, make_user) -> None:
        user = make_user(store)
        assert store.update_password_hash(user.id, "new-hash")
        assert store.get_by_id(user.id).password_hash == "new-hash"

    def test_set_email_verified(self, store, make_user) -> None:
        user = make_user(store, verified=False)
        store.set_email_verified(user.id)
        assert store.get_by_id(user.id).is_email_verified

    def test_link_external_identity_fills_empty_slot_only(self, store, make_user) -> None:
        user = make_user(store)
        assert store.link_external_identity(user.id, "google", "sub-1")
        assert not store.link_external_identity(user.id, "oidc", "sub-2")
        linked = store.get_by_external("google", "sub-1")
        assert linked.id == user.id
        assert store.get_by_external("oidc", "sub-2") is None

    def test_record_login(self, store, clock, make_user) -> None:
        user = make_user(store)
        store.record_login(user.id, "203.0.113.9")
        fresh = store.get_by_id(user.id)
        assert fresh.last_login_at == clock()
        assert fresh.last_login_ip == "203.0.113.9"


class TestDeleteUser:
    def test_delete_cascades_owned_rows(self, store, make_user) -> None:
        user = make_user(store)
        other = make_user(store, "bob", "bob@example.com")
        OneTimeCodeLedger(store).issue(user.id)
        ResetTokenLedger(store).issue(user.id)
        store.touch_login_context(user.id, "10.0.0.1", "ua")
        ResetTokenLedger(store).issue(other.id)

        assert store.delete_user(user.id)

        assert store.get_by_id(user.id) is None
        assert _count(store, email_verifications) == 0
        assert _count(store, login_contexts) == 0
        assert _count(store, password_reset_tokens) == 1  # bob's survives

    def test_delete_unknown_user_returns_false(self, store) -> None:
        assert not store.delete_user(12345)


class TestLoginContexts:
    def test_first_login_is_new(self, store, make_user) -> None:
        user = make_user(store)
        assert store.touch_login_context(user.id, "10.0.0.1", "Firefox")

    def test_same_context_is_known(self, store, make_user) -> None:
        user = make_user(store)
        store.touch_login_context(user.id, "10.0.0.1", "Firefox")
        assert not store.touch_login_context(user.id, "10.0.0.1", "Firefox")

    def test_same_ip_new_agent_is_known(self, store, make_user) -> None:
        user = make_user(store)
        store.touch_login_context(user.id, "10.0.0.1", "Firefox")
        assert not store.touch_login_context(user.id, "10.0.0.1", "Chrome")

    def test_new_ip_and_new_agent_is_new(self, store, make_user) -> None:
        user = make_user(store)
        store.touch_login_context(user.id, "10.0.0.1", "Firefox")
        assert store.touch_login_context(user.id, "198.51.100.4", "Chrome")

    def test_contexts_are_per_user(self, store, make_user) -> None:
        alice = make_user(store)
        bob = make_user(store, "bob", "bob@example.com")
        store.touch_login_context(alice.id, "10.0.0.1", "Firefox")
        assert store.touch_login_context(bob.id, "10.0.0.1", "Firefox")


class TestSchemaVersion:
    def test_fresh_db_is_stamped(self, store, make_user) -> None:
        with store.transaction() as conn:
            assert conn.execute(select(func.max(schema_version.c.version))).scalar() == SCHEMA_VERSION

    def test_reopening_same_db_is_accepted(self, tmp_path) -> None:
        url = f"sqlite:///{tmp_path / 'auth.db'}"
        UserStore(url).close()
        UserStore(url).close()

    def test_mismatched_version_refused(self, tmp_path) -> None:
        url = f"sqlite:///{tmp_path / 'auth.db'}"
        s = UserStore(url)
        with s.transaction() as conn:
            conn.execute(schema_version.insert().values(version=SCHEMA_VERSION + 1))
        s.close()
        with pytest.raises(RuntimeError, match="schema version"):
            UserStore(url)

    def test_ping(self, store, make_user) -> None:
        assert store.ping()
