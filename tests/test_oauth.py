"""Unit tests for auth/oauth.py -- provider registry and handshake helpers.

Covers:
- check_state() fails closed on missing or mismatched state
- profile_from_userinfo() requires a verified email and a subject
- get_enabled_providers() / build_oauth_registry() follow configuration
- start_handshake() / complete_handshake() against a fake provider client
"""

from __future__ import annotations

import asyncio

import pytest

from auth.errors import InvalidState
from auth.oauth import (
    build_oauth_registry,
    check_state,
    complete_handshake,
    get_enabled_providers,
    profile_from_userinfo,
    start_handshake,
)
from core.config import Settings

SECRET = "s" * 40


class FakeProviderClient:
    """Stands in for an authlib StarletteOAuth2App."""

    def __init__(self, userinfo: dict, embed_userinfo: bool = True) -> None:
        self._userinfo = userinfo
        self._embed = embed_userinfo
        self.authorize_calls: list[tuple[str, str]] = []
        self.exchanged: list[str] = []

    async def create_authorization_url(self, redirect_uri, **kwargs):
        self.authorize_calls.append((redirect_uri, kwargs["state"]))
        return {"url": f"https://idp.example/authorize?state={kwargs['state']}", "state": kwargs["state"]}

    async def fetch_access_token(self, redirect_uri=None, **kwargs):
        self.exchanged.append(kwargs["code"])
        token = {"access_token": "at", "token_type": "Bearer"}
        if self._embed:
            token["userinfo"] = self._userinfo
        return token

    async def userinfo(self, **kwargs):
        return self._userinfo


class TestCheckState:
    def test_equal_values_pass(self) -> None:
        check_state("abc123", "abc123")

    @pytest.mark.parametrize(
        "returned, cookie",
        [(None, "abc"), ("abc", None), ("", ""), ("abc", "abd"), (None, None)],
    )
    def test_missing_or_mismatched_state_rejected(self, returned, cookie) -> None:
        with pytest.raises(InvalidState):
            check_state(returned, cookie)


class TestProfileFromUserinfo:
    def test_verified_profile_normalized(self) -> None:
        profile = profile_from_userinfo(
            "google", {"sub": 42, "email": " Alice@Example.com ", "email_verified": True, "name": "Alice"}
        )
        assert profile.subject == "42"
        assert profile.email == "alice@example.com"
        assert profile.email_verified
        assert profile.display_name == "Alice"

    def test_unverified_email_rejected(self) -> None:
        with pytest.raises(ValueError, match="not verified"):
            profile_from_userinfo("google", {"sub": "1", "email": "a@example.com", "email_verified": False})

    def test_missing_verified_claim_counts_as_unverified(self) -> None:
        with pytest.raises(ValueError):
            profile_from_userinfo("oidc", {"sub": "1", "email": "a@example.com"})

    def test_missing_subject_rejected(self) -> None:
        with pytest.raises(ValueError, match="missing"):
            profile_from_userinfo("oidc", {"email": "a@example.com", "email_verified": True})


class TestRegistry:
    def test_no_credentials_means_no_providers(self) -> None:
        assert get_enabled_providers(Settings(secret_key=SECRET)) == []

    def test_configured_providers_listed(self) -> None:
        cfg = Settings(
            secret_key=SECRET,
            google_client_id="gid",
            google_client_secret="gsecret",
            oidc_client_id="oid",
            oidc_client_secret="osecret",
            oidc_discovery_url="https://sso.example/.well-known/openid-configuration",
            oidc_display_name="Company SSO",
        )
        assert get_enabled_providers(cfg) == [
            {"name": "google", "label": "Google"},
            {"name": "oidc", "label": "Company SSO"},
        ]
        registry = build_oauth_registry(cfg)
        assert registry.create_client("google") is not None
        assert registry.create_client("oidc") is not None

    def test_oidc_needs_discovery_url(self) -> None:
        cfg = Settings(secret_key=SECRET, oidc_client_id="oid", oidc_client_secret="osecret")
        assert get_enabled_providers(cfg) == []


class TestHandshake:
    def test_start_returns_url_carrying_fresh_state(self) -> None:
        client = FakeProviderClient({})
        url, state = asyncio.run(start_handshake(client, "https://app.example/cb"))
        assert state in url
        assert client.authorize_calls == [("https://app.example/cb", state)]
        _, other = asyncio.run(start_handshake(client, "https://app.example/cb"))
        assert other != state

    def test_complete_uses_embedded_userinfo(self) -> None:
        client = FakeProviderClient({"sub": "s1", "email": "a@example.com", "email_verified": True})
        profile = asyncio.run(complete_handshake(client, "google", "code-1", "https://app.example/cb"))
        assert client.exchanged == ["code-1"]
        assert profile.subject == "s1"

    def test_complete_falls_back_to_userinfo_endpoint(self) -> None:
        client = FakeProviderClient({"sub": "s2", "email": "b@example.com", "email_verified": True}, embed_userinfo=False)
        profile = asyncio.run(complete_handshake(client, "oidc", "code-2", "https://app.example/cb"))
        assert profile.provider == "oidc"
        assert profile.email == "b@example.com"
