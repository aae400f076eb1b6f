"""
OpenID Connect configuration and provider registry.

Uses authlib to manage OAuth2/OpenID Connect clients for multiple providers.
Each provider is configured independently through environment variables.
"""

import os
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Callable

from authlib.integrations.starlette_client import OAuth

from oidc_login.core.domain import DEFAULT_DESTINATION, RegistrationMode
from oidc_login.core.exceptions import ProviderConfigurationError, ProviderNotFoundError
from oidc_login.core.ports import ProviderClient


logger = logging.getLogger(__name__)


GOOGLE_METADATA_URL = "https://accounts.google.com/.well-known/openid-configuration"

# Discovery documents for well-known providers
KNOWN_METADATA_URLS = {
    "google": GOOGLE_METADATA_URL,
}

DEFAULT_SCOPE = "openid email profile"


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def parse_pairs(value: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2`` into a dict, ignoring blanks."""
    pairs: dict[str, str] = {}
    if not value:
        return pairs
    for item in value.split(","):
        if "=" not in item:
            continue
        key, _, val = item.partition("=")
        if key.strip() and val.strip():
            pairs[key.strip()] = val.strip()
    return pairs


@dataclass
class ProviderSettings:
    """Settings for one identity provider."""

    name: str
    client_id: str | None
    client_secret: str | None
    label: str | None = None
    server_metadata_url: str | None = None
    authorize_url: str | None = None
    token_url: str | None = None
    userinfo_url: str | None = None
    jwks_uri: str | None = None
    scope: str = DEFAULT_SCOPE

    @classmethod
    def from_env(cls, name: str) -> "ProviderSettings":
        """Load settings from ``OIDC_<NAME>_*`` environment variables."""
        prefix = f"OIDC_{name.upper()}_"
        return cls(
            name=name,
            client_id=os.getenv(prefix + "CLIENT_ID"),
            client_secret=os.getenv(prefix + "CLIENT_SECRET"),
            label=os.getenv(prefix + "LABEL"),
            server_metadata_url=os.getenv(prefix + "SERVER_METADATA_URL")
            or KNOWN_METADATA_URLS.get(name),
            authorize_url=os.getenv(prefix + "AUTHORIZE_URL"),
            token_url=os.getenv(prefix + "TOKEN_URL"),
            userinfo_url=os.getenv(prefix + "USERINFO_URL"),
            jwks_uri=os.getenv(prefix + "JWKS_URI"),
            scope=os.getenv(prefix + "SCOPE", DEFAULT_SCOPE),
        )

    @property
    def display_label(self) -> str:
        return self.label or self.name.replace("_", " ").title()

    @property
    def is_configured(self) -> bool:
        """Credentials present and endpoints discoverable or explicit."""
        if not (self.client_id and self.client_secret):
            return False
        return bool(self.server_metadata_url or (self.authorize_url and self.token_url))


@dataclass
class OpenIDConnectConfig:
    """
    OpenID Connect configuration settings.

    Loaded from environment variables.
    """

    base_url: str
    providers: dict[str, ProviderSettings] = field(default_factory=dict)
    registration_mode: RegistrationMode = RegistrationMode.VISITORS
    override_registration_settings: bool = False
    connect_existing_users: bool = False
    always_save_userinfo: bool = False
    userinfo_mapping: dict[str, str] = field(default_factory=dict)
    token_timeout: float = 10.0
    default_destination: str = DEFAULT_DESTINATION
    sso_cookie_names: dict[str, str] = field(default_factory=dict)
    sso_cookie_default_name: str | None = "SSOLoggedInState"
    sso_cookie_max_age: int = 60 * 60 * 24
    session_idle_timeout: float = 60 * 60 * 24

    @classmethod
    def from_env(cls) -> "OpenIDConnectConfig":
        """Load configuration from environment variables."""
        names = [
            name.strip().lower()
            for name in os.getenv("OIDC_PROVIDERS", "").split(",")
            if name.strip()
        ]

        raw_mode = os.getenv("OIDC_REGISTRATION_MODE", RegistrationMode.VISITORS.value)
        try:
            registration_mode = RegistrationMode(raw_mode)
        except ValueError:
            raise ProviderConfigurationError(
                f"Invalid OIDC_REGISTRATION_MODE: {raw_mode!r}. "
                f"Expected one of {[m.value for m in RegistrationMode]}"
            )

        return cls(
            base_url=os.getenv("BASE_URL", "").rstrip("/"),
            providers={name: ProviderSettings.from_env(name) for name in names},
            registration_mode=registration_mode,
            override_registration_settings=_env_flag("OIDC_OVERRIDE_REGISTRATION_SETTINGS"),
            connect_existing_users=_env_flag("OIDC_CONNECT_EXISTING_USERS"),
            always_save_userinfo=_env_flag("OIDC_ALWAYS_SAVE_USERINFO"),
            userinfo_mapping=parse_pairs(os.getenv("OIDC_USERINFO_MAPPING")),
            token_timeout=float(os.getenv("OIDC_TOKEN_TIMEOUT", "10")),
            default_destination=os.getenv("OIDC_DEFAULT_DESTINATION", DEFAULT_DESTINATION),
            sso_cookie_names=parse_pairs(os.getenv("SSO_COOKIE_NAMES")),
            sso_cookie_default_name=os.getenv("SSO_COOKIE_DEFAULT_NAME", "SSOLoggedInState")
            or None,
            sso_cookie_max_age=int(os.getenv("SSO_COOKIE_MAX_AGE", str(60 * 60 * 24))),
            session_idle_timeout=float(os.getenv("SESSION_IDLE_TIMEOUT", str(60 * 60 * 24))),
        )

    def get_callback_url(self, provider: str) -> str:
        """Generate callback URL for a provider."""
        return f"{self.base_url}/openid-connect/{provider}"

    def is_provider_configured(self, provider: str) -> bool:
        """Check if a provider has valid settings."""
        settings = self.providers.get(provider)
        return settings is not None and settings.is_configured

    def get_configured_providers(self) -> list[str]:
        """List all providers with valid configuration."""
        return [name for name in self.providers if self.is_provider_configured(name)]


@lru_cache()
def get_oidc_config() -> OpenIDConnectConfig:
    """Get OpenID Connect configuration singleton."""
    return OpenIDConnectConfig.from_env()


def create_oauth_registry(config: OpenIDConnectConfig | None = None) -> OAuth:
    """
    Create and configure the authlib OAuth registry.

    Registers all configured providers. Providers without complete
    settings are skipped (allows partial configuration).

    Args:
        config: OpenID Connect configuration (uses default if not provided)

    Returns:
        Configured OAuth registry
    """
    if config is None:
        config = get_oidc_config()

    oauth = OAuth()

    for name, settings in config.providers.items():
        if not settings.is_configured:
            logger.warning(f"{name} OpenID Connect provider not configured (incomplete settings)")
            continue

        kwargs = {
            "name": name,
            "client_id": settings.client_id,
            "client_secret": settings.client_secret,
            "client_kwargs": {
                "scope": settings.scope,
                # Single attempt per call; httpx does not retry by default
                "timeout": config.token_timeout,
            },
        }
        if settings.server_metadata_url:
            kwargs["server_metadata_url"] = settings.server_metadata_url
        if settings.authorize_url:
            kwargs["authorize_url"] = settings.authorize_url
        if settings.token_url:
            kwargs["access_token_url"] = settings.token_url
        if settings.userinfo_url:
            kwargs["userinfo_endpoint"] = settings.userinfo_url
        if settings.jwks_uri:
            kwargs["jwks_uri"] = settings.jwks_uri

        oauth.register(**kwargs)
        logger.info(f"Registered {name} OpenID Connect provider")

    return oauth


ProviderFactory = Callable[[], ProviderClient]


class ProviderRegistry:
    """Maps provider ids to factories returning ProviderClient instances."""

    def __init__(self, factories: dict[str, ProviderFactory] | None = None):
        self._factories: dict[str, ProviderFactory] = dict(factories or {})

    def register(self, name: str, factory: ProviderFactory) -> None:
        self._factories[name] = factory

    def names(self) -> list[str]:
        return list(self._factories)

    def __contains__(self, name: str) -> bool:
        return name in self._factories

    def create(self, name: str) -> ProviderClient:
        """
        Instantiate the client for a provider.

        Raises:
            ProviderNotFoundError: If no factory is registered for the id
        """
        factory = self._factories.get(name)
        if factory is None:
            raise ProviderNotFoundError(f"Unknown provider: {name}")
        return factory()


def create_provider_registry(config: OpenIDConnectConfig | None = None) -> ProviderRegistry:
    """Build a ProviderRegistry of authlib-backed clients for configured providers."""
    from oidc_login.infrastructure.oauth_providers import AuthlibProviderClient

    if config is None:
        config = get_oidc_config()

    oauth = create_oauth_registry(config)
    registry = ProviderRegistry()

    for name in config.get_configured_providers():
        settings = config.providers[name]

        def factory(name: str = name, settings: ProviderSettings = settings) -> ProviderClient:
            app = oauth.create_client(name)
            if app is None:
                raise ProviderNotFoundError(f"OpenID Connect client for '{name}' not available")
            return AuthlibProviderClient(
                app=app,
                name=name,
                label=settings.display_label,
                redirect_uri=config.get_callback_url(name),
            )

        registry.register(name, factory)

    return registry


# Global provider registry singleton
_provider_registry: ProviderRegistry | None = None


def get_provider_registry() -> ProviderRegistry:
    """
    Get the provider registry singleton.

    Creates and configures the registry on first access.
    """
    global _provider_registry
    if _provider_registry is None:
        _provider_registry = create_provider_registry()
    return _provider_registry


def reset_provider_registry() -> None:
    """
    Reset the provider registry.

    Useful for testing with different configurations.
    """
    global _provider_registry
    _provider_registry = None
