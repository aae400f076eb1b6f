"""
Tests for OpenID Connect configuration and provider registry.
"""

import os
from unittest.mock import patch

import pytest

from oidc_login.core.domain import RegistrationMode
from oidc_login.core.exceptions import ProviderConfigurationError, ProviderNotFoundError
from oidc_login.infrastructure.oauth_providers import AuthlibProviderClient
from oidc_login.openid_connect.config import (
    GOOGLE_METADATA_URL,
    OpenIDConnectConfig,
    ProviderRegistry,
    ProviderSettings,
    create_oauth_registry,
    create_provider_registry,
    parse_pairs,
)


class TestOpenIDConnectConfig:
    """Tests for OpenIDConnectConfig."""

    def test_from_env_loads_variables(self):
        """Test loading config from environment variables."""
        env = {
            "BASE_URL": "https://example.com/",
            "OIDC_PROVIDERS": "google, Keycloak",
            "OIDC_GOOGLE_CLIENT_ID": "google-id",
            "OIDC_GOOGLE_CLIENT_SECRET": "google-secret",
            "OIDC_KEYCLOAK_CLIENT_ID": "kc-id",
            "OIDC_KEYCLOAK_CLIENT_SECRET": "kc-secret",
            "OIDC_KEYCLOAK_LABEL": "Company SSO",
            "OIDC_KEYCLOAK_SERVER_METADATA_URL": "https://kc.example.com/.well-known/openid-configuration",
            "OIDC_REGISTRATION_MODE": "visitors_admin_approval",
            "OIDC_OVERRIDE_REGISTRATION_SETTINGS": "true",
            "OIDC_CONNECT_EXISTING_USERS": "1",
            "OIDC_USERINFO_MAPPING": "timezone=zoneinfo, picture=picture",
            "OIDC_TOKEN_TIMEOUT": "5",
            "SSO_COOKIE_NAMES": "login.example.org=SSOLoggedInExample",
            "SESSION_IDLE_TIMEOUT": "3600",
        }

        with patch.dict(os.environ, env, clear=True):
            config = OpenIDConnectConfig.from_env()

        assert config.base_url == "https://example.com"
        assert sorted(config.providers) == ["google", "keycloak"]
        assert config.providers["google"].server_metadata_url == GOOGLE_METADATA_URL
        assert config.providers["keycloak"].display_label == "Company SSO"
        assert config.registration_mode == RegistrationMode.VISITORS_ADMINISTRATIVE_APPROVAL
        assert config.override_registration_settings is True
        assert config.connect_existing_users is True
        assert config.always_save_userinfo is False
        assert config.userinfo_mapping == {"timezone": "zoneinfo", "picture": "picture"}
        assert config.token_timeout == 5.0
        assert config.sso_cookie_names == {"login.example.org": "SSOLoggedInExample"}
        assert config.sso_cookie_default_name == "SSOLoggedInState"
        assert config.session_idle_timeout == 3600.0

    def test_from_env_handles_missing(self):
        """Test loading config with missing variables."""
        with patch.dict(os.environ, {"BASE_URL": "https://example.com"}, clear=True):
            config = OpenIDConnectConfig.from_env()

        assert config.providers == {}
        assert config.registration_mode == RegistrationMode.VISITORS
        assert config.default_destination == "user"
        assert config.sso_cookie_max_age == 86400
        assert config.session_idle_timeout == 86400

    def test_invalid_registration_mode(self):
        """Test an unknown registration mode is a configuration error."""
        with patch.dict(os.environ, {"OIDC_REGISTRATION_MODE": "everyone"}, clear=True):
            with pytest.raises(ProviderConfigurationError, match="OIDC_REGISTRATION_MODE"):
                OpenIDConnectConfig.from_env()

    def test_get_callback_url(self):
        """Test callback URL generation."""
        config = OpenIDConnectConfig(base_url="https://example.com")

        assert config.get_callback_url("google") == "https://example.com/openid-connect/google"

    def test_is_provider_configured(self):
        """Test providers need credentials and endpoints."""
        config = OpenIDConnectConfig(
            base_url="https://example.com",
            providers={
                "google": ProviderSettings("google", "id", "secret", server_metadata_url=GOOGLE_METADATA_URL),
                "nosecret": ProviderSettings("nosecret", "id", None, server_metadata_url=GOOGLE_METADATA_URL),
                "noendpoints": ProviderSettings("noendpoints", "id", "secret"),
                "manual": ProviderSettings(
                    "manual",
                    "id",
                    "secret",
                    authorize_url="https://idp.example.com/authorize",
                    token_url="https://idp.example.com/token",
                ),
            },
        )

        assert config.is_provider_configured("google") is True
        assert config.is_provider_configured("nosecret") is False
        assert config.is_provider_configured("noendpoints") is False
        assert config.is_provider_configured("manual") is True
        assert config.is_provider_configured("unknown") is False
        assert config.get_configured_providers() == ["google", "manual"]


class TestParsePairs:
    """Tests for parse_pairs."""

    def test_parse_pairs(self):
        assert parse_pairs("a=1, b = 2,,broken,c=") == {"a": "1", "b": "2"}

    def test_parse_empty(self):
        assert parse_pairs(None) == {}


class TestProviderRegistry:
    """Tests for ProviderRegistry and its authlib wiring."""

    @pytest.fixture
    def config(self):
        return OpenIDConnectConfig(
            base_url="https://example.com",
            token_timeout=3.0,
            providers={
                "manual": ProviderSettings(
                    "manual",
                    "id",
                    "secret",
                    authorize_url="https://idp.example.com/authorize",
                    token_url="https://idp.example.com/token",
                    userinfo_url="https://idp.example.com/userinfo",
                ),
                "incomplete": ProviderSettings("incomplete", None, None),
            },
        )

    def test_create_oauth_registry_skips_incomplete(self, config):
        """Test only configured providers are registered with authlib."""
        oauth = create_oauth_registry(config)

        assert oauth.create_client("manual") is not None
        assert oauth.create_client("incomplete") is None

    def test_create_provider_registry(self, config):
        """Test the registry builds authlib-backed clients."""
        registry = create_provider_registry(config)

        assert registry.names() == ["manual"]
        client = registry.create("manual")
        assert isinstance(client, AuthlibProviderClient)
        assert client.name == "manual"
        assert client.label == "Manual"
        assert client.redirect_uri == "https://example.com/openid-connect/manual"

    def test_unknown_provider(self):
        """Test creating an unregistered provider raises."""
        with pytest.raises(ProviderNotFoundError):
            ProviderRegistry().create("ghost")

    def test_register(self):
        registry = ProviderRegistry()
        registry.register("x", lambda: "client")

        assert "x" in registry
        assert registry.create("x") == "client"
