"""Unit tests for auth/federation.py -- Federated Identity Linker.

Covers:
- returning identity resolves to the linked user (created=False)
- first login with a known email links the identity to that account and
  marks it verified
- first login with an unknown email creates a verified account with an
  unusable password and a derived, de-duplicated username
- an account already linked to another subject is never relinked
- username_base() normalization
"""

from __future__ import annotations

import pytest

from auth.errors import IdentityAlreadyLinked
from auth.federation import FederatedIdentityLinker, username_base
from auth.models import ExternalProfile
from auth.tokens import verify_password


def _profile(subject: str = "g-123", email: str = "alice@example.com", name: str | None = "Alice Smith") -> ExternalProfile:
    return ExternalProfile(provider="google", subject=subject, email=email, email_verified=True, display_name=name)


@pytest.fixture
def linker(store) -> FederatedIdentityLinker:
    return FederatedIdentityLinker(store)


class TestResolve:
    def test_creates_account_for_unknown_email(self, linker, store) -> None:
        user, created = linker.resolve(_profile())
        assert created
        assert user.username == "alicesmith"
        assert user.email == "alice@example.com"
        assert user.is_email_verified
        assert (user.external_provider, user.external_subject) == ("google", "g-123")
        assert user.uuid

    def test_created_account_has_no_usable_password(self, linker) -> None:
        user, _ = linker.resolve(_profile())
        assert not verify_password("", user.password_hash)

    def test_returning_identity_resolves_to_same_user(self, linker) -> None:
        first, _ = linker.resolve(_profile())
        again, created = linker.resolve(_profile(email="changed@example.com"))
        assert not created
        assert again.id == first.id

    def test_links_existing_account_by_email(self, linker, store, make_user) -> None:
        existing = make_user(store, "alice", "alice@example.com", verified=False)
        user, created = linker.resolve(_profile())
        assert not created
        assert user.id == existing.id
        assert user.external_subject == "g-123"
        assert user.is_email_verified
        assert user.password_hash == existing.password_hash

    def test_email_match_is_case_insensitive(self, linker, store, make_user) -> None:
        existing = make_user(store, "alice", "Alice@Example.com")
        user, created = linker.resolve(_profile(email="alice@example.com"))
        assert not created and user.id == existing.id

    def test_refuses_to_relink_account_with_other_subject(self, linker, store, make_user) -> None:
        make_user(store, "alice", "alice@example.com", external_provider="google", external_subject="g-999")
        with pytest.raises(IdentityAlreadyLinked):
            linker.resolve(_profile(subject="g-123"))

    def test_username_collision_gets_numeric_suffix(self, linker, store, make_user) -> None:
        make_user(store, "alicesmith", "someone@example.com")
        make_user(store, "alicesmith1", "someone-else@example.com")
        user, created = linker.resolve(_profile())
        assert created
        assert user.username == "alicesmith2"


class TestUsernameBase:
    @pytest.mark.parametrize(
        "name, email, expected",
        [
            ("Alice Smith", "x@example.com", "alicesmith"),
            (None, "bob.jones+tag@example.com", "bobjonestag"),
            ("Zoë O'Brien", "x@example.com", "zoobrien"),
            ("!!!", "x@example.com", "user"),
            ("A" * 40, "x@example.com", "a" * 20),
        ],
    )
    def test_normalization(self, name, email, expected) -> None:
        assert username_base(_profile(email=email, name=name)) == expected
