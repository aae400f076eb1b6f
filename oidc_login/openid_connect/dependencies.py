"""
FastAPI dependencies for OpenID Connect endpoints.

Provides dependency injection for the session, the provider registry and
the services built on them.
"""

import logging
from typing import Annotated, AsyncIterator

from fastapi import Depends, HTTPException, Query, Request, status

from oidc_login.accounts.models import Account
from oidc_login.accounts.repository import AccountRepository, get_account_repository
from oidc_login.core.callback import RedirectCallbackHandler, SSOCookiePolicy
from oidc_login.core.claims import ClaimsMapper
from oidc_login.core.coordinator import AuthorizationCoordinator, current_user_id
from oidc_login.core.flow_state import SessionFlowState
from oidc_login.core.hooks import HookRegistry, get_hook_registry
from oidc_login.core.ports import PolicyStore
from oidc_login.core.state_token import StateToken
from oidc_login.infrastructure.policy import ConfigPolicyStore
from oidc_login.openid_connect.config import (
    OpenIDConnectConfig,
    ProviderRegistry,
    get_oidc_config,
    get_provider_registry,
)
from oidc_login.sessions.messages import SessionMessenger
from oidc_login.sessions.store import (
    SESSION_ID_KEY,
    Session,
    SessionStore,
    get_session_store,
    new_session_id,
)


logger = logging.getLogger(__name__)


def get_store(
    config: Annotated[OpenIDConnectConfig, Depends(get_oidc_config)],
) -> SessionStore:
    """Provide SessionStore dependency."""
    return get_session_store(idle_timeout=config.session_idle_timeout)


def get_registry() -> ProviderRegistry:
    """Provide ProviderRegistry dependency."""
    return get_provider_registry()


def get_repository() -> AccountRepository:
    """Provide AccountRepository dependency."""
    return get_account_repository()


def get_hooks() -> HookRegistry:
    """Provide HookRegistry dependency."""
    return get_hook_registry()


async def get_session(
    request: Request,
    store: Annotated[SessionStore, Depends(get_store)],
) -> AsyncIterator[Session]:
    """
    Open the server-side session for this request.

    The session id travels in Starlette's signed session cookie; a new one
    is issued when absent. The session stays locked until the request ends.
    """
    session_id = request.session.get(SESSION_ID_KEY)
    if not session_id:
        session_id = new_session_id()
        request.session[SESSION_ID_KEY] = session_id

    async with store.open(session_id) as session:
        yield session


async def regenerate_session_id(
    request: Request, session: Session, store: SessionStore
) -> None:
    """
    Move the session to a fresh id if a login asked for it.

    Must run inside the endpoint so the new id reaches the session cookie.
    """
    if not session.regenerate_requested:
        return
    request.session[SESSION_ID_KEY] = await store.regenerate(session)


def get_messenger(session: Annotated[Session, Depends(get_session)]) -> SessionMessenger:
    """Provide the session-backed messenger."""
    return SessionMessenger(session)


def get_policy(
    config: Annotated[OpenIDConnectConfig, Depends(get_oidc_config)],
) -> PolicyStore:
    """Provide registration policy from configuration."""
    return ConfigPolicyStore(
        registration_mode=config.registration_mode,
        override_registration=config.override_registration_settings,
    )


def get_state_token() -> StateToken:
    """Provide StateToken dependency."""
    return StateToken()


def get_flow_state(
    config: Annotated[OpenIDConnectConfig, Depends(get_oidc_config)],
) -> SessionFlowState:
    """Provide SessionFlowState dependency."""
    return SessionFlowState(default_destination=config.default_destination)


def get_claims_mapper(
    config: Annotated[OpenIDConnectConfig, Depends(get_oidc_config)],
    hooks: Annotated[HookRegistry, Depends(get_hooks)],
) -> ClaimsMapper:
    """Provide ClaimsMapper dependency."""
    return ClaimsMapper(hooks=hooks, userinfo_mapping=config.userinfo_mapping)


def get_coordinator(
    config: Annotated[OpenIDConnectConfig, Depends(get_oidc_config)],
    repository: Annotated[AccountRepository, Depends(get_repository)],
    claims_mapper: Annotated[ClaimsMapper, Depends(get_claims_mapper)],
    policy: Annotated[PolicyStore, Depends(get_policy)],
    hooks: Annotated[HookRegistry, Depends(get_hooks)],
) -> AuthorizationCoordinator:
    """Provide AuthorizationCoordinator dependency."""
    return AuthorizationCoordinator(
        repository=repository,
        claims_mapper=claims_mapper,
        policy=policy,
        hooks=hooks,
        connect_existing_users=config.connect_existing_users,
        always_save_userinfo=config.always_save_userinfo,
    )


def get_callback_handler(
    config: Annotated[OpenIDConnectConfig, Depends(get_oidc_config)],
    registry: Annotated[ProviderRegistry, Depends(get_registry)],
    coordinator: Annotated[AuthorizationCoordinator, Depends(get_coordinator)],
    policy: Annotated[PolicyStore, Depends(get_policy)],
    state_token: Annotated[StateToken, Depends(get_state_token)],
    flow_state: Annotated[SessionFlowState, Depends(get_flow_state)],
) -> RedirectCallbackHandler:
    """Provide RedirectCallbackHandler dependency."""
    return RedirectCallbackHandler(
        state_token=state_token,
        flow_state=flow_state,
        create_client=registry.create,
        coordinator=coordinator,
        policy=policy,
        sso_cookies=SSOCookiePolicy(
            names_by_host=config.sso_cookie_names,
            default_name=config.sso_cookie_default_name,
        ),
    )


async def require_state_token(
    session: Annotated[Session, Depends(get_session)],
    handler: Annotated[RedirectCallbackHandler, Depends(get_callback_handler)],
    state: Annotated[str | None, Query(description="Anti-forgery state token")] = None,
) -> None:
    """
    Access gate for the callback route.

    Raises:
        AccessDeniedError: Mapped to 403 by the application
    """
    handler.check_access(session, state)


async def get_current_account(
    session: Annotated[Session, Depends(get_session)],
    repository: Annotated[AccountRepository, Depends(get_repository)],
) -> Account | None:
    """Account logged in on this session, if any."""
    uid = current_user_id(session)
    if uid is None:
        return None
    return await repository.get_by_uid(uid)


async def require_current_account(
    account: Annotated[Account | None, Depends(get_current_account)],
) -> Account:
    """
    Dependency requiring a logged-in account.

    Raises:
        HTTPException: 401 if not authenticated
    """
    if account is None:
        logger.warning("No logged-in account on session")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return account


# Type aliases for cleaner dependency injection
SessionDep = Annotated[Session, Depends(get_session)]
Store = Annotated[SessionStore, Depends(get_store)]
Messages = Annotated[SessionMessenger, Depends(get_messenger)]
Config = Annotated[OpenIDConnectConfig, Depends(get_oidc_config)]
Registry = Annotated[ProviderRegistry, Depends(get_registry)]
Repository = Annotated[AccountRepository, Depends(get_repository)]
StateTokens = Annotated[StateToken, Depends(get_state_token)]
FlowStates = Annotated[SessionFlowState, Depends(get_flow_state)]
CallbackHandler = Annotated[RedirectCallbackHandler, Depends(get_callback_handler)]
CurrentAccount = Annotated[Account | None, Depends(get_current_account)]
RequiredAccount = Annotated[Account, Depends(require_current_account)]
StateTokenGate = Depends(require_state_token)
