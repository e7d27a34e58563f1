"""In-memory session store.

Holds one ``PurchaseSession`` per session id. Sessions idle for longer
than the TTL are dropped on the next access; an absent session is
simply a fresh one to callers.
"""

from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import structlog

from lineflow.domain.entities import PurchaseSession

logger = structlog.get_logger()


class SessionStore:
    """In-memory repository for purchase sessions."""

    def __init__(self, ttl_seconds: int = 2 * 60 * 60) -> None:
        self._sessions: dict[str, PurchaseSession] = {}
        self._ttl = timedelta(seconds=ttl_seconds) if ttl_seconds else None
        self._expiry_listeners: list[Callable[[str], None]] = []

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return isinstance(session_id, str) and self.get(session_id) is not None

    def _expired(self, session: PurchaseSession, now: datetime) -> bool:
        return self._ttl is not None and now - session.updated_at > self._ttl

    def add_expiry_listener(self, listener: Callable[[str], None]) -> None:
        """Call ``listener(session_id)`` whenever a session expires."""
        self._expiry_listeners.append(listener)

    def _expire(self, session_id: str) -> None:
        del self._sessions[session_id]
        for listener in self._expiry_listeners:
            listener(session_id)

    def get(self, session_id: str) -> PurchaseSession | None:
        """Get a session by id, or None if absent or expired."""
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if self._expired(session, datetime.now(timezone.utc)):
            logger.info("Session expired", session_id=session_id)
            self._expire(session_id)
            return None
        return session

    def save(self, session: PurchaseSession) -> None:
        self._sessions[session.id] = session

    def delete(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    def most_recent(self) -> PurchaseSession | None:
        """The live session updated most recently."""
        self.purge_expired()
        if not self._sessions:
            return None
        return max(self._sessions.values(), key=lambda s: s.updated_at)

    def purge_expired(self) -> list[str]:
        """Drop expired sessions.

        Returns:
            Ids of the sessions removed.
        """
        now = datetime.now(timezone.utc)
        expired = [sid for sid, s in self._sessions.items() if self._expired(s, now)]
        for session_id in expired:
            self._expire(session_id)
        if expired:
            logger.info("Purged expired sessions", count=len(expired))
        return expired


# Global store instance
_session_store: SessionStore | None = None


def get_session_store(ttl_seconds: int = 2 * 60 * 60) -> SessionStore:
    """Get session store singleton."""
    global _session_store
    if _session_store is None:
        _session_store = SessionStore(ttl_seconds=ttl_seconds)
    return _session_store
