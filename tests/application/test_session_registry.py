"""Tests for session resolution."""

from datetime import timedelta

from lineflow.application.session_registry import SessionRegistry, SessionSource
from lineflow.domain import PurchaseSession
from lineflow.infrastructure.session_store import SessionStore


class TestSessionRegistry:
    """Tests for SessionRegistry.resolve."""

    def test_new_session_when_store_empty(self) -> None:
        """A fresh id is minted and the session is stored."""
        store = SessionStore()
        registry = SessionRegistry(store)

        resolved = registry.resolve()

        assert resolved.source == SessionSource.NEW
        assert resolved.created
        assert resolved.session_id.startswith("session_")
        assert store.get(resolved.session_id) is not None

    def test_explicit_id_wins(self) -> None:
        """An explicit id is used and created if absent."""
        registry = SessionRegistry(SessionStore())
        registry.resolve()

        resolved = registry.resolve("session-explicit")

        assert resolved.session_id == "session-explicit"
        assert resolved.source == SessionSource.EXPLICIT
        assert registry.current_session_id == "session-explicit"

    def test_blank_explicit_id_ignored(self) -> None:
        """Whitespace-only ids count as absent."""
        registry = SessionRegistry(SessionStore())
        first = registry.resolve()

        resolved = registry.resolve("   ")

        assert resolved.session_id == first.session_id
        assert resolved.source == SessionSource.CURRENT

    def test_most_recent_used_without_pointer(self) -> None:
        """A fresh registry falls back to the most recently updated session."""
        store = SessionStore()
        older = PurchaseSession(id="older")
        newer = PurchaseSession(id="newer")
        older.updated_at = newer.updated_at - timedelta(minutes=5)
        store.save(older)
        store.save(newer)

        resolved = SessionRegistry(store).resolve()

        assert resolved.session_id == "newer"
        assert resolved.source == SessionSource.MOST_RECENT
        assert not resolved.created

    def test_current_pointer_skips_deleted_session(self) -> None:
        """A pointer to a deleted session is not reused."""
        store = SessionStore()
        registry = SessionRegistry(store)
        first = registry.resolve()
        store.delete(first.session_id)

        resolved = registry.resolve()

        assert resolved.session_id != first.session_id
        assert resolved.source == SessionSource.NEW

    def test_forget(self) -> None:
        """forget clears the pointer for that session only."""
        registry = SessionRegistry(SessionStore())
        resolved = registry.resolve("a")

        registry.forget("b")
        assert registry.current_session_id == "a"
        registry.forget(resolved.session_id)
        assert registry.current_session_id is None
