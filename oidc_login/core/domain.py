"""
Core domain models for the OpenID Connect login flow.

These models represent the business domain and are independent of
any infrastructure or delivery mechanism.
"""

from enum import Enum
from typing import Any
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field

from oidc_login.accounts.models import Account


DEFAULT_DESTINATION = "user"


class FlowOperation(str, Enum):
    """What the pending flow was started for."""

    LOGIN = "login"
    CONNECT = "connect"


class RegistrationMode(str, Enum):
    """Who may create accounts."""

    ADMINISTRATORS_ONLY = "admin_only"
    VISITORS = "visitors"
    VISITORS_ADMINISTRATIVE_APPROVAL = "visitors_admin_approval"


class VerdictReason(str, Enum):
    """Why an authorization attempt ended the way it did."""

    OK = "ok"
    REGISTRATION_BLOCKED = "registration_blocked"
    UID_MISMATCH = "uid_mismatch"
    EXCHANGE_FAILED = "exchange_failed"
    PROVIDER_ERROR = "provider_error"
    USER_CANCELLED = "user_cancelled"
    CLAIMS_REJECTED = "claims_rejected"
    SUBJECT_CONFLICT = "subject_conflict"
    ACCOUNT_BLOCKED = "account_blocked"
    AUTHORIZATION_DENIED = "authorization_denied"
    ACCOUNT_ERROR = "account_error"


class Destination(BaseModel):
    """
    Internal location to send the browser to once the flow completes.

    Always rendered root-relative; external URLs are never produced.
    """

    path: str = Field(default=DEFAULT_DESTINATION, description="Internal path")
    query: str | None = Field(default=None, description="Raw query string")

    model_config = ConfigDict(frozen=True)

    @classmethod
    def parse(cls, value: str | None, default: str = DEFAULT_DESTINATION) -> "Destination":
        """
        Build a destination from a user supplied value such as ``user/5?tab=a``.

        Values carrying a scheme or host fall back to ``default``.
        """
        if not value:
            return cls(path=default)

        parts = urlsplit(value)
        if parts.scheme or parts.netloc or value.startswith("//"):
            return cls(path=default)

        return cls(path=parts.path or default, query=parts.query or None)

    def render(self) -> str:
        """Render as an absolute internal path."""
        url = "/" + self.path.lstrip("/")
        if self.query:
            url = f"{url}?{self.query}"
        return url


class FlowState(BaseModel):
    """
    Parameters of a pending login or connect flow.

    Stored in the session when the flow starts and read exactly once by
    the callback.
    """

    destination: Destination = Field(default_factory=Destination)
    operation: FlowOperation = FlowOperation.LOGIN
    connect_uid: str | None = None
    nonce: str | None = None


class Tokens(BaseModel):
    """Credential bundle returned by a provider's token endpoint."""

    access_token: str
    id_token: str | None = None
    refresh_token: str | None = None
    expires_at: int | None = None
    token_type: str = "Bearer"
    scope: str | None = None
    id_token_claims: dict[str, Any] = Field(
        default_factory=dict, description="Decoded ID token (user data)"
    )

    model_config = ConfigDict(extra="allow")

    @classmethod
    def from_token_response(
        cls, token_data: dict[str, Any], id_token_claims: dict[str, Any] | None = None
    ) -> "Tokens":
        """Create Tokens from an authlib token response."""
        return cls(
            access_token=token_data["access_token"],
            id_token=token_data.get("id_token"),
            refresh_token=token_data.get("refresh_token"),
            expires_at=token_data.get("expires_at"),
            token_type=token_data.get("token_type", "Bearer"),
            scope=token_data.get("scope"),
            id_token_claims=dict(id_token_claims or {}),
        )


class UserInfo(BaseModel):
    """Normalized claims about the authenticated subject."""

    sub: str
    claims: dict[str, Any] = Field(default_factory=dict)
    user_data: dict[str, Any] = Field(default_factory=dict)

    @property
    def email(self) -> str | None:
        return self.claims.get("email")

    def get(self, claim: str, default: Any = None) -> Any:
        return self.claims.get(claim, default)


class AuthorizationVerdict(BaseModel):
    """Outcome of a login or connect attempt."""

    success: bool
    account: Account | None = None
    reason: VerdictReason = VerdictReason.OK

    @classmethod
    def ok(cls, account: Account) -> "AuthorizationVerdict":
        return cls(success=True, account=account, reason=VerdictReason.OK)

    @classmethod
    def fail(cls, reason: VerdictReason) -> "AuthorizationVerdict":
        return cls(success=False, reason=reason)


class CallbackResult(BaseModel):
    """What the HTTP layer needs to finish a callback request."""

    redirect_url: str
    verdict: AuthorizationVerdict
    sso_cookie: str | None = Field(
        default=None, description="Name of the SSO logged-in cookie to set"
    )
