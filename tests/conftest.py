"""
Shared test configuration and fixtures.
"""

import os
from typing import Any
from urllib.parse import parse_qs, urlencode, urlparse
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

# Set environment variables before importing app
with patch.dict(
    os.environ,
    {
        "SESSION_SECRET_KEY": "test-secret",
        "BASE_URL": "http://testserver",
        "OIDC_PROVIDERS": "",
    },
):
    from oidc_login.main import app

from oidc_login.accounts.repository import InMemoryAccountRepository
from oidc_login.core.domain import RegistrationMode, Tokens
from oidc_login.core.hooks import HookRegistry
from oidc_login.openid_connect.config import (
    OpenIDConnectConfig,
    ProviderRegistry,
    get_oidc_config,
)
from oidc_login.openid_connect.dependencies import (
    get_hooks,
    get_registry,
    get_repository,
    get_store,
)
from oidc_login.sessions.store import InMemorySessionStore


client = TestClient(app)


class FakeProviderClient:
    """
    Spy ProviderClient.

    Returns canned tokens and userinfo and records every call.
    """

    def __init__(
        self,
        name: str = "generic",
        label: str = "Generic",
        tokens: Tokens | None = None,
        userinfo: dict[str, Any] | None = None,
    ):
        self.name = name
        self.label = label
        self.tokens = tokens
        self.userinfo = userinfo
        self.authorization_requests: list[tuple[str, str | None]] = []
        self.exchanged_codes: list[str] = []
        self.exchange_nonces: list[str | None] = []
        self.userinfo_requests = 0

    async def authorization_url(self, state: str, nonce: str | None = None) -> str:
        self.authorization_requests.append((state, nonce))
        query = urlencode({"state": state, "nonce": nonce or ""})
        return f"https://idp.example.com/authorize?{query}"

    async def exchange_code(self, code: str, nonce: str | None = None) -> Tokens | None:
        self.exchanged_codes.append(code)
        self.exchange_nonces.append(nonce)
        return self.tokens

    async def retrieve_userinfo(self, tokens: Tokens) -> dict[str, Any] | None:
        self.userinfo_requests += 1
        return dict(self.userinfo) if self.userinfo is not None else None


def make_tokens(sub: str = "u123", **claims: Any) -> Tokens:
    """Token bundle whose ID token carries the given subject."""
    return Tokens(
        access_token=f"access-{sub}",
        id_token="header.payload.signature",
        id_token_claims={"sub": sub, **claims},
    )


def state_from_location(response) -> str:
    """Extract the state token from a redirect to the provider."""
    location = response.headers["location"]
    return parse_qs(urlparse(location).query)["state"][0]


@pytest.fixture
def provider():
    """Spy provider returning tokens for subject u123."""
    return FakeProviderClient(
        tokens=make_tokens("u123"),
        userinfo={
            "sub": "u123",
            "email": "ada@example.com",
            "preferred_username": "ada",
            "zoneinfo": "Europe/London",
        },
    )


@pytest.fixture
def registry(provider):
    """Provider registry with the spy provider as 'generic'."""
    return ProviderRegistry({"generic": lambda: provider})


@pytest.fixture
def repository():
    """Fresh account repository."""
    return InMemoryAccountRepository()


@pytest.fixture
def session_store():
    """Fresh session store."""
    return InMemorySessionStore()


@pytest.fixture
def hooks():
    """Fresh hook registry."""
    return HookRegistry()


@pytest.fixture
def oidc_config():
    """Default test configuration: visitors may register."""
    return OpenIDConnectConfig(
        base_url="http://testserver",
        registration_mode=RegistrationMode.VISITORS,
        userinfo_mapping={"timezone": "zoneinfo"},
    )


@pytest.fixture
def test_client(registry, repository, session_store, hooks, oidc_config):
    """Test client with the app's collaborators replaced by fixtures."""
    app.dependency_overrides[get_registry] = lambda: registry
    app.dependency_overrides[get_repository] = lambda: repository
    app.dependency_overrides[get_store] = lambda: session_store
    app.dependency_overrides[get_hooks] = lambda: hooks
    app.dependency_overrides[get_oidc_config] = lambda: oidc_config

    yield TestClient(app)

    app.dependency_overrides.pop(get_registry, None)
    app.dependency_overrides.pop(get_repository, None)
    app.dependency_overrides.pop(get_store, None)
    app.dependency_overrides.pop(get_hooks, None)
    app.dependency_overrides.pop(get_oidc_config, None)
