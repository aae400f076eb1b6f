"""
Session-scoped storage of the pending flow's parameters.
"""

import logging

from pydantic import ValidationError

from oidc_login.core.domain import (
    DEFAULT_DESTINATION,
    Destination,
    FlowOperation,
    FlowState,
)
from oidc_login.sessions.store import Session


logger = logging.getLogger(__name__)

KEY_PREFIX = "openid_connect_"
DESTINATION_KEY = KEY_PREFIX + "destination"
OPERATION_KEY = KEY_PREFIX + "op"
CONNECT_UID_KEY = KEY_PREFIX + "connect_uid"
NONCE_KEY = KEY_PREFIX + "nonce"

FLOW_KEYS = (DESTINATION_KEY, OPERATION_KEY, CONNECT_UID_KEY, NONCE_KEY)


class SessionFlowState:
    """Reads and writes FlowState through the session."""

    def __init__(self, default_destination: str = DEFAULT_DESTINATION):
        self.default_destination = default_destination

    def save(self, session: Session, flow: FlowState) -> None:
        """Store a flow, replacing any previous one."""
        session.set(DESTINATION_KEY, flow.destination.model_dump())
        session.set(OPERATION_KEY, flow.operation.value)
        session.set(CONNECT_UID_KEY, flow.connect_uid)
        session.set(NONCE_KEY, flow.nonce)

    def pop(self, session: Session) -> FlowState:
        """
        Remove the flow from the session and return it.

        All keys are removed, whatever their content. Missing values fall
        back to a login to the default destination.
        """
        raw = {key: session.pop(key) for key in FLOW_KEYS}

        destination = Destination(path=self.default_destination)
        stored_destination = raw[DESTINATION_KEY]
        if isinstance(stored_destination, dict):
            try:
                destination = Destination.model_validate(stored_destination)
            except ValidationError:
                logger.warning("Discarding malformed flow destination")
        elif isinstance(stored_destination, str):
            destination = Destination.parse(
                stored_destination, default=self.default_destination
            )

        try:
            operation = FlowOperation(raw[OPERATION_KEY] or FlowOperation.LOGIN)
        except ValueError:
            logger.warning(f"Unknown flow operation: {raw[OPERATION_KEY]!r}")
            operation = FlowOperation.LOGIN

        connect_uid = raw[CONNECT_UID_KEY]
        return FlowState(
            destination=destination,
            operation=operation,
            connect_uid=str(connect_uid) if connect_uid is not None else None,
            nonce=raw[NONCE_KEY],
        )
