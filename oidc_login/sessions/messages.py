"""
User-facing notices carried in the session until the next page view.
"""

from typing import Literal

from oidc_login.sessions.store import Session


MESSAGES_KEY = "messages"

MessageLevel = Literal["status", "warning", "error"]


class SessionMessenger:
    """Messenger that queues notices in the session."""

    def __init__(self, session: Session):
        self.session = session

    def add(self, text: str, level: MessageLevel = "status") -> None:
        messages = self.session.get(MESSAGES_KEY) or []
        messages.append({"level": level, "text": text})
        self.session.set(MESSAGES_KEY, messages)

    def peek(self) -> list[dict[str, str]]:
        return list(self.session.get(MESSAGES_KEY) or [])

    def drain(self) -> list[dict[str, str]]:
        """Return queued notices and clear them."""
        return list(self.session.pop(MESSAGES_KEY) or [])
