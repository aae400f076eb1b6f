"""
OpenID Connect API endpoints.

Provides the HTTP surface of the relying party:
- GET /openid-connect/{client_name}/login - Start a login flow
- GET /openid-connect/{client_name}/connect - Start connecting the current account
- GET /openid-connect/{client_name} - Handle the provider callback
- GET /openid-connect/connections - List the current account's providers
- DELETE /openid-connect/{client_name} - Disconnect a provider
"""

import logging
import secrets
from typing import Annotated

from fastapi import APIRouter, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse

from oidc_login.core.callback import CallbackQuery
from oidc_login.core.domain import Destination, FlowOperation, FlowState
from oidc_login.core.exceptions import ProviderNotFoundError
from oidc_login.core.flow_state import SessionFlowState
from oidc_login.core.state_token import StateToken
from oidc_login.openid_connect.config import ProviderRegistry
from oidc_login.openid_connect.dependencies import (
    CallbackHandler,
    Config,
    FlowStates,
    Messages,
    Registry,
    Repository,
    RequiredAccount,
    SessionDep,
    StateTokenGate,
    StateTokens,
    Store,
    regenerate_session_id,
)
from oidc_login.sessions.store import Session


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/openid-connect", tags=["openid-connect"])


async def _start_flow(
    client_name: str,
    flow: FlowState,
    session: Session,
    registry: ProviderRegistry,
    state_tokens: StateToken,
    flow_states: SessionFlowState,
) -> RedirectResponse:
    """Store the flow and state token, then redirect to the provider."""
    try:
        client = registry.create(client_name)
    except ProviderNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown provider: {client_name}. Supported: {registry.names()}",
        )

    state = state_tokens.generate(session)
    flow = flow.model_copy(update={"nonce": secrets.token_urlsafe(16)})
    flow_states.save(session, flow)

    logger.info(
        f"Starting OpenID Connect {flow.operation.value} flow for provider: {client_name}",
        extra={"provider": client_name, "connect_uid": flow.connect_uid},
    )

    url = await client.authorization_url(state, nonce=flow.nonce)
    return RedirectResponse(url=url, status_code=status.HTTP_302_FOUND)


@router.get("/connections")
async def list_connections(
    account: RequiredAccount,
    repository: Repository,
):
    """
    List the providers connected to the current account.

    Args:
        account: Current logged-in account
        repository: Account repository

    Returns:
        List of connected provider names
    """
    connections = await repository.list_connections(account.uid)

    return {
        "status": "success",
        "connections": sorted(connections),
    }


@router.get("/{client_name}/login")
async def login(
    client_name: str,
    session: SessionDep,
    config: Config,
    registry: Registry,
    state_tokens: StateTokens,
    flow_states: FlowStates,
    destination: Annotated[
        str | None, Query(description="Internal path to return to after login")
    ] = None,
):
    """
    Start an OpenID Connect login.

    Generates the state token, remembers where to return to and redirects
    the browser to the provider's authorization page.
    """
    flow = FlowState(
        destination=Destination.parse(destination, default=config.default_destination),
        operation=FlowOperation.LOGIN,
    )
    return await _start_flow(client_name, flow, session, registry, state_tokens, flow_states)


@router.get("/{client_name}/connect")
async def connect(
    client_name: str,
    account: RequiredAccount,
    session: SessionDep,
    config: Config,
    registry: Registry,
    state_tokens: StateTokens,
    flow_states: FlowStates,
):
    """
    Start connecting a provider to the current account.

    Requires a logged-in account.
    """
    flow = FlowState(
        destination=Destination(path=config.default_destination),
        operation=FlowOperation.CONNECT,
        connect_uid=account.uid,
    )
    return await _start_flow(client_name, flow, session, registry, state_tokens, flow_states)


@router.get("/{client_name}", dependencies=[StateTokenGate])
async def callback(
    client_name: str,
    request: Request,
    session: SessionDep,
    messages: Messages,
    handler: CallbackHandler,
    config: Config,
    store: Store,
):
    """
    Handle the redirect back from the provider.

    Only reached when the state token matches (see the access gate). Always
    ends in a redirect to the flow's destination.

    Raises:
        ProviderNotFoundError: Callback visited outside of a flow (404)
    """
    query = CallbackQuery.from_mapping(request.query_params)
    host = request.url.hostname

    result = await handler.handle(client_name, query, session, messages, host=host)
    await regenerate_session_id(request, session, store)

    logger.info(
        f"OpenID Connect callback finished: {result.verdict.reason.value}",
        extra={"provider": client_name, "success": result.verdict.success},
    )

    response = RedirectResponse(url=result.redirect_url, status_code=status.HTTP_302_FOUND)
    if result.sso_cookie:
        response.set_cookie(
            key=result.sso_cookie,
            value="true",
            max_age=config.sso_cookie_max_age,
            path="/",
            domain=host,
        )
    return response


@router.delete("/{client_name}")
async def disconnect(
    client_name: str,
    account: RequiredAccount,
    repository: Repository,
):
    """
    Disconnect a provider from the current account.

    Args:
        client_name: Provider to disconnect
        account: Current logged-in account
        repository: Account repository

    Returns:
        Success message
    """
    deleted = await repository.unbind_subject(account.uid, client_name)

    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No connection found for provider: {client_name}",
        )

    logger.info(
        f"Disconnected {client_name} for account",
        extra={"account_uid": account.uid, "provider": client_name},
    )

    return {
        "status": "success",
        "message": f"Disconnected from {client_name}",
    }
