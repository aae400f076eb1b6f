"""
Redirect callback handler.

Runs the provider callback: consumes the pending flow, classifies provider
errors, exchanges the authorization code and hands the tokens to the
AuthorizationCoordinator. Every path that passes the access gate ends in a
redirect to the flow's destination.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Mapping

from oidc_login.core.coordinator import AuthorizationCoordinator, current_user_id
from oidc_login.core.domain import (
    AuthorizationVerdict,
    CallbackResult,
    FlowOperation,
    FlowState,
    RegistrationMode,
    VerdictReason,
)
from oidc_login.core.exceptions import AccessDeniedError, ProviderNotFoundError
from oidc_login.core.flow_state import SessionFlowState
from oidc_login.core.ports import Messenger, PolicyStore, ProviderClient
from oidc_login.core.state_token import StateToken
from oidc_login.sessions.store import Session


logger = logging.getLogger(__name__)

# Provider errors meaning the user did not grant the authorization
USER_CANCELLED_ERRORS = frozenset(
    {
        "interaction_required",
        "login_required",
        "account_selection_required",
        "consent_required",
    }
)


@dataclass(frozen=True)
class CallbackQuery:
    """The callback's query parameters."""

    state: str | None = None
    code: str | None = None
    error: str | None = None
    error_description: str | None = None

    @classmethod
    def from_mapping(cls, params: Mapping[str, str]) -> "CallbackQuery":
        return cls(
            state=params.get("state") or None,
            code=params.get("code") or None,
            error=params.get("error") or None,
            error_description=params.get("error_description") or None,
        )


@dataclass(frozen=True)
class SSOCookiePolicy:
    """Host-to-cookie-name mapping for the "logged in to SSO" flag cookie."""

    names_by_host: Mapping[str, str]
    default_name: str | None

    def cookie_name(self, host: str | None) -> str | None:
        if host and host in self.names_by_host:
            return self.names_by_host[host]
        return self.default_name


class RedirectCallbackHandler:
    """HTTP-independent callback orchestration."""

    def __init__(
        self,
        state_token: StateToken,
        flow_state: SessionFlowState,
        create_client: Callable[[str], ProviderClient],
        coordinator: AuthorizationCoordinator,
        policy: PolicyStore,
        sso_cookies: SSOCookiePolicy,
    ):
        self.state_token = state_token
        self.flow_state = flow_state
        self.create_client = create_client
        self.coordinator = coordinator
        self.policy = policy
        self.sso_cookies = sso_cookies

    def check_access(self, session: Session, state: str | None) -> None:
        """
        Access gate: the callback must carry the session's state token.

        Raises:
            AccessDeniedError: If the token is missing, wrong or spent
        """
        if not state or not self.state_token.confirm(session, state):
            raise AccessDeniedError("Invalid or missing state token")

    async def handle(
        self,
        client_name: str,
        query: CallbackQuery,
        session: Session,
        messenger: Messenger,
        host: str | None = None,
    ) -> CallbackResult:
        """
        Process a callback that has passed the access gate.

        Args:
            client_name: Provider id from the URL
            query: Callback query parameters
            session: Current (locked) session
            messenger: Sink for user-facing notices
            host: Request host, used to pick the SSO cookie name

        Returns:
            Redirect target, verdict and optional SSO cookie name

        Raises:
            ProviderNotFoundError: If the callback is visited outside a flow
        """
        # The flow is one-shot: consume it before anything can fail.
        flow = self.flow_state.pop(session)

        client: ProviderClient | None
        try:
            client = self.create_client(client_name)
        except ProviderNotFoundError:
            client = None

        if not query.error and (client is None or not query.code):
            logger.info(
                "Callback visited outside of a login flow",
                extra={"provider": client_name},
            )
            raise ProviderNotFoundError(f"No active flow for provider: {client_name}")

        label = client.label if client is not None else client_name
        sso_cookie = None

        if query.error:
            verdict = self._handle_provider_error(client_name, label, query, messenger)
        else:
            verdict, sso_cookie = await self._process_code(
                client, query.code, flow, session, messenger, host
            )

        return CallbackResult(
            redirect_url=flow.destination.render(),
            verdict=verdict,
            sso_cookie=sso_cookie,
        )

    def _handle_provider_error(
        self, client_name: str, label: str, query: CallbackQuery, messenger: Messenger
    ) -> AuthorizationVerdict:
        if query.error in USER_CANCELLED_ERRORS:
            messenger.add(f"Logging in with {label} has been canceled.", "warning")
            logger.info(
                f"Authorization canceled by user: {query.error}",
                extra={"provider": client_name},
            )
            return AuthorizationVerdict.fail(VerdictReason.USER_CANCELLED)

        details = query.error_description or "Unknown error."
        logging.getLogger(f"openid_connect.{client_name}").error(
            f"Authorization failed: {query.error}. Details: {details}",
            extra={"provider": client_name, "error": query.error, "details": details},
        )
        messenger.add(f"Could not authenticate with {label}.", "error")
        return AuthorizationVerdict.fail(VerdictReason.PROVIDER_ERROR)

    async def _process_code(
        self,
        client: ProviderClient,
        code: str,
        flow: FlowState,
        session: Session,
        messenger: Messenger,
        host: str | None,
    ) -> tuple[AuthorizationVerdict, str | None]:
        tokens = await client.exchange_code(code, nonce=flow.nonce)
        if not tokens:
            # TODO: decide whether a failed exchange should tell the user;
            # for now it only redirects (the adapter has already logged it).
            return AuthorizationVerdict.fail(VerdictReason.EXCHANGE_FAILED), None

        if flow.operation == FlowOperation.LOGIN:
            verdict = await self.coordinator.resolve(
                client, tokens, session, messenger, destination=flow.destination
            )
            if verdict.success:
                return verdict, self.sso_cookies.cookie_name(host)

            mode = self.policy.effective_registration_mode()
            if mode not in (
                RegistrationMode.ADMINISTRATORS_ONLY,
                RegistrationMode.VISITORS_ADMINISTRATIVE_APPROVAL,
            ):
                messenger.add(
                    f"Logging in with {client.label} could not be completed due to an error.",
                    "error",
                )
            return verdict, None

        if flow.connect_uid is None or flow.connect_uid != current_user_id(session):
            logger.warning(
                "Connect flow does not belong to the current user; skipping",
                extra={"provider": client.name},
            )
            return AuthorizationVerdict.fail(VerdictReason.UID_MISMATCH), None

        verdict = await self.coordinator.connect_current_user(client, tokens, session, messenger)
        if verdict.success:
            messenger.add(f"Account successfully connected with {client.label}.", "status")
        else:
            messenger.add(
                f"Connecting with {client.label} could not be completed due to an error.",
                "error",
            )
        return verdict, None
