"""
Anti-forgery state token bound to the current session.

The token is generated when a flow starts, round-tripped through the
identity provider and confirmed on the callback. A stored token is spent
on every confirmation attempt, so it can authorize at most one callback.
"""

import hmac
import logging
import secrets

from oidc_login.sessions.store import Session


logger = logging.getLogger(__name__)

STATE_TOKEN_KEY = "openid_connect_state"


class StateToken:
    """Generates and confirms the session's state token."""

    def __init__(self, nbytes: int = 32):
        self.nbytes = nbytes

    def generate(self, session: Session) -> str:
        """
        Create a new state token and store it in the session.

        Replaces any token from an earlier, unfinished flow.

        Args:
            session: Current session

        Returns:
            Token to embed in the authorization request
        """
        token = secrets.token_urlsafe(self.nbytes)
        session.set(STATE_TOKEN_KEY, token)
        return token

    def confirm(self, session: Session, candidate: str | None) -> bool:
        """
        Check a candidate against the stored token and spend the stored token.

        Args:
            session: Current session
            candidate: ``state`` value from the callback query

        Returns:
            True only if a token was stored and equals the candidate
        """
        stored = session.pop(STATE_TOKEN_KEY)
        if not stored or not candidate:
            logger.info("State token missing from session or request")
            return False

        matches = hmac.compare_digest(str(stored).encode(), str(candidate).encode())
        if not matches:
            logger.info("State token mismatch")
        return matches
