"""
Port definitions (interfaces) for the core domain.

Ports define the contracts between the core domain and external systems.
Infrastructure adapters implement these ports.
"""

from typing import Any, Protocol

from oidc_login.core.domain import RegistrationMode, Tokens


class ProviderClient(Protocol):
    """
    Port (interface) for an OpenID Connect identity provider client.

    Implemented by infrastructure adapters (e.g., AuthlibProviderClient).
    The core domain depends on this interface, not on concrete implementations.
    """

    name: str
    label: str

    async def authorization_url(self, state: str, nonce: str | None = None) -> str:
        """
        Build the provider authorization URL for a new flow.

        Args:
            state: Anti-forgery state token to round-trip
            nonce: OpenID Connect nonce to bind into the ID token

        Returns:
            URL to redirect the browser to
        """
        ...

    async def exchange_code(self, code: str, nonce: str | None = None) -> Tokens | None:
        """
        Exchange an authorization code for tokens.

        Makes a single attempt with a bounded timeout. Errors are logged by
        the adapter and reported as None.

        Args:
            code: Authorization code from the callback
            nonce: Expected ID token nonce, when known

        Returns:
            Tokens if the exchange succeeded, None otherwise
        """
        ...

    async def retrieve_userinfo(self, tokens: Tokens) -> dict[str, Any] | None:
        """
        Fetch claims from the provider's userinfo endpoint.

        Returns:
            Claims dict, or None when unavailable
        """
        ...


class PolicyStore(Protocol):
    """Port for account registration policy."""

    def registration_mode(self) -> RegistrationMode:
        """Configured registration mode."""
        ...

    def override_registration(self) -> bool:
        """Whether administrators-only registration is overridden for SSO logins."""
        ...

    def effective_registration_mode(self) -> RegistrationMode:
        """Registration mode after applying the override flag."""
        ...


class Messenger(Protocol):
    """Port for user-facing notices."""

    def add(self, text: str, level: str = "status") -> None:
        ...
