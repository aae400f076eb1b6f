"""
OpenID Connect provider implementations.

Adapts authlib's Starlette integration to the ProviderClient port.
"""

import logging
from typing import Any

import httpx
from authlib.common.errors import AuthlibBaseError
from authlib.integrations.starlette_client import OAuthError

from oidc_login.core.domain import Tokens
from oidc_login.core.ports import ProviderClient


logger = logging.getLogger(__name__)


class AuthlibProviderClient(ProviderClient):
    """ProviderClient backed by an authlib Starlette OAuth2 app."""

    def __init__(self, app, name: str, label: str, redirect_uri: str):
        self._app = app
        self.name = name
        self.label = label
        self.redirect_uri = redirect_uri

    async def authorization_url(self, state: str, nonce: str | None = None) -> str:
        kwargs: dict[str, Any] = {"state": state}
        if nonce:
            kwargs["nonce"] = nonce
        rv = await self._app.create_authorization_url(self.redirect_uri, **kwargs)
        return rv["url"]

    async def exchange_code(self, code: str, nonce: str | None = None) -> Tokens | None:
        try:
            token = await self._app.fetch_access_token(
                redirect_uri=self.redirect_uri,
                code=code,
                grant_type="authorization_code",
            )
        except OAuthError as e:
            logger.error(
                f"OpenID Connect error during token exchange: {e}",
                extra={"provider": self.name, "error": e.error},
            )
            return None
        except httpx.HTTPError as e:
            logger.error(
                f"Network error during token exchange: {e}",
                extra={"provider": self.name},
            )
            return None
        except ValueError as e:
            logger.error(
                f"Malformed token response: {e}",
                extra={"provider": self.name},
            )
            return None

        if not token or not token.get("access_token"):
            logger.error(
                "Token response carried no access token",
                extra={"provider": self.name},
            )
            return None

        claims: dict[str, Any] = {}
        if token.get("id_token"):
            try:
                claims = dict(await self._app.parse_id_token(token, nonce=nonce))
            except (AuthlibBaseError, httpx.HTTPError, ValueError) as e:
                logger.error(
                    f"Invalid ID token from {self.name}: {e}",
                    extra={"provider": self.name},
                )
                return None

        return Tokens.from_token_response(dict(token), claims)

    async def retrieve_userinfo(self, tokens: Tokens) -> dict[str, Any] | None:
        try:
            userinfo = await self._app.userinfo(
                token={"access_token": tokens.access_token, "token_type": tokens.token_type}
            )
        except (AuthlibBaseError, httpx.HTTPError, KeyError) as e:
            # KeyError: provider metadata has no userinfo endpoint
            logger.warning(
                f"Could not retrieve userinfo from {self.name}: {e}",
                extra={"provider": self.name},
            )
            return None
        return dict(userinfo)
