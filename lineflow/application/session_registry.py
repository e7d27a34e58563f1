"""Session registry.

Tool calls in one conversation do not reliably repeat the session id,
so resolution is best effort: an explicit id wins, then the session
this process touched last, then the most recently updated session in
the store, and finally a newly minted id.
"""

from dataclasses import dataclass
from enum import Enum

import structlog

from lineflow.domain.entities import PurchaseSession
from lineflow.domain.value_objects import generate_session_id
from lineflow.infrastructure.session_store import SessionStore

logger = structlog.get_logger()


class SessionSource(str, Enum):
    """Where a resolved session id came from."""

    EXPLICIT = "explicit"
    CURRENT = "current"
    MOST_RECENT = "most_recent"
    NEW = "new"


@dataclass(frozen=True)
class ResolvedSession:
    session_id: str
    source: SessionSource
    created: bool


class SessionRegistry:
    """Maps tool calls to a purchase session."""

    def __init__(self, store: SessionStore) -> None:
        self._store = store
        self._current: str | None = None

    @property
    def current_session_id(self) -> str | None:
        return self._current

    def resolve(self, explicit_id: str | None = None) -> ResolvedSession:
        """Resolve the session for a call, creating it if needed.

        Never fails. The resolved session becomes the most recent one.

        Args:
            explicit_id: Session id passed by the caller, if any.

        Returns:
            The resolved session id and how it was found.
        """
        explicit_id = (explicit_id or "").strip() or None

        if explicit_id:
            session_id, source = explicit_id, SessionSource.EXPLICIT
        elif self._current and self._store.get(self._current) is not None:
            session_id, source = self._current, SessionSource.CURRENT
        else:
            recent = self._store.most_recent()
            if recent is not None:
                session_id, source = recent.id, SessionSource.MOST_RECENT
            else:
                session_id, source = generate_session_id(), SessionSource.NEW

        created = False
        if self._store.get(session_id) is None:
            self._store.save(PurchaseSession.create(session_id))
            created = True
            logger.info("Session created", session_id=session_id, source=source.value)

        self._current = session_id
        return ResolvedSession(session_id=session_id, source=source, created=created)

    def forget(self, session_id: str) -> None:
        """Drop the process pointer if it refers to ``session_id``."""
        if self._current == session_id:
            self._current = None
