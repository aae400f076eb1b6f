"""
Server-side session storage.

The browser only carries an opaque session id (inside Starlette's signed
session cookie). Session data lives here, so values consumed during a
request (such as the state token) cannot be replayed by resending an
old cookie.

Each session is opened under its own asyncio lock, which serializes
concurrent requests on the same session while leaving other sessions
independent.
"""

import asyncio
import logging
import secrets
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Protocol


logger = logging.getLogger(__name__)

# Key inside Starlette's cookie session holding our session id
SESSION_ID_KEY = "sid"

DEFAULT_IDLE_TIMEOUT = 60 * 60 * 24


def new_session_id() -> str:
    """Generate a fresh opaque session id."""
    return secrets.token_urlsafe(32)


class Session:
    """Mutable view on one session's data, valid while the session is open."""

    def __init__(self, session_id: str, data: dict[str, Any]):
        self.session_id = session_id
        self._data = data
        self.regenerate_requested = False

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def pop(self, key: str, default: Any = None) -> Any:
        return self._data.pop(key, default)

    def clear(self) -> None:
        self._data.clear()

    def request_regeneration(self) -> None:
        """Ask for a new session id before the response goes out (on login)."""
        self.regenerate_requested = True

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def __repr__(self) -> str:
        return f"Session({self.session_id[:8]}..., keys={sorted(self._data)})"


class SessionStore(Protocol):
    """
    Port for session storage.

    ``open`` must hold an exclusive lock for the session for as long as the
    block runs.
    """

    def open(self, session_id: str):
        """Async context manager yielding a locked Session."""
        ...

    async def regenerate(self, session: Session) -> str:
        """
        Move an open session's data to a fresh id.

        Returns:
            The new session id
        """
        ...


class InMemorySessionStore(SessionStore):
    """
    In-memory implementation of SessionStore.

    Suitable for a single process. Data is lost when the application restarts.
    Sessions that are empty when closed are dropped, and sessions idle for
    longer than ``idle_timeout`` seconds are evicted.
    """

    def __init__(
        self,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.idle_timeout = idle_timeout
        self._clock = clock
        self._sessions: dict[str, dict[str, Any]] = {}
        self._last_seen: dict[str, float] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def open(self, session_id: str) -> AsyncIterator[Session]:
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            async with lock:
                self._evict_idle(current=session_id)
                data = self._sessions.setdefault(session_id, {})
                session = Session(session_id, data)
                try:
                    yield session
                finally:
                    self._close(session)
        finally:
            self._release(session_id)

    async def regenerate(self, session: Session) -> str:
        old_id = session.session_id
        new_id = new_session_id()
        self._sessions.pop(old_id, None)
        self._sessions[new_id] = session._data
        self._last_seen.pop(old_id, None)
        self._last_seen[new_id] = self._clock()
        session.session_id = new_id
        session.regenerate_requested = False
        logger.info("Session id regenerated")
        return new_id

    def _close(self, session: Session) -> None:
        if session._data:
            self._sessions[session.session_id] = session._data
            self._last_seen[session.session_id] = self._clock()
        else:
            self._sessions.pop(session.session_id, None)
            self._last_seen.pop(session.session_id, None)

    def _release(self, session_id: str) -> None:
        users = self._lock_users[session_id] - 1
        if users:
            self._lock_users[session_id] = users
        else:
            del self._lock_users[session_id]
            self._locks.pop(session_id, None)

    def _in_use_elsewhere(self, session_id: str, current: str) -> bool:
        users = self._lock_users.get(session_id, 0)
        return users > (1 if session_id == current else 0)

    def _evict_idle(self, current: str) -> None:
        cutoff = self._clock() - self.idle_timeout
        expired = [
            sid
            for sid, seen in self._last_seen.items()
            if seen < cutoff and not self._in_use_elsewhere(sid, current)
        ]
        for sid in expired:
            self._sessions.pop(sid, None)
            del self._last_seen[sid]
        if expired:
            logger.info(f"Evicted {len(expired)} idle sessions")


# Singleton instance for dependency injection
_store: SessionStore | None = None


def get_session_store(idle_timeout: float = DEFAULT_IDLE_TIMEOUT) -> SessionStore:
    """
    Get the session store singleton.

    ``idle_timeout`` only applies when the store is first created.
    """
    global _store
    if _store is None:
        _store = InMemorySessionStore(idle_timeout=idle_timeout)
    return _store


def reset_session_store() -> None:
    """Reset the session store singleton (testing)."""
    global _store
    _store = None
