"""Base classes for the domain layer.

Value objects, the session aggregate root and domain events all
build on the small set of abstractions defined here.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar
from uuid import UUID, uuid4


def utc_now() -> datetime:
    """Return the current UTC time."""
    return datetime.now(timezone.utc)


# ============================================================================
# Value Object Base
# ============================================================================


@dataclass(frozen=True)
class ValueObject(ABC):
    """Immutable object compared by value.

    Example:
        @dataclass(frozen=True)
        class Money(ValueObject):
            amount_cents: int
            currency: str
    """


# ============================================================================
# Aggregate Root Base
# ============================================================================


@dataclass(kw_only=True)
class AggregateRoot(ABC):
    """Entry point to a consistency boundary.

    All changes to the objects inside the aggregate go through the root,
    which keeps a version counter and buffers the domain events raised
    by those changes until the caller collects them.

    Attributes:
        id: Identity of the aggregate.
        version: Incremented on every mutation.
        created_at: Timestamp when the aggregate was created.
        updated_at: Timestamp of the last mutation.
    """

    id: str
    version: int = field(default=1, compare=False)
    created_at: datetime = field(default_factory=utc_now, compare=False)
    updated_at: datetime = field(default_factory=utc_now, compare=False)
    _events: list["DomainEvent"] = field(
        default_factory=list,
        init=False,
        repr=False,
        compare=False,
    )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, self.__class__):
            return False
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    def _record_event(self, event: "DomainEvent") -> None:
        """Buffer a domain event until it is collected.

        Args:
            event: Domain event to record.
        """
        self._events.append(event)

    def collect_events(self) -> list["DomainEvent"]:
        """Return and clear the buffered events.

        Returns:
            Events recorded since the last collection.
        """
        events = list(self._events)
        self._events.clear()
        return events

    def _touch(self) -> None:
        """Bump the version and the modification timestamp."""
        self.updated_at = utc_now()
        self.version += 1


# ============================================================================
# Domain Event Base
# ============================================================================


@dataclass(frozen=True)
class DomainEvent(ABC):
    """Something significant that happened to an aggregate.

    Attributes:
        event_id: Unique identifier for this event instance.
        event_type: Dotted event name (set by subclass).
        occurred_at: Timestamp when the event occurred.
        aggregate_id: ID of the aggregate that emitted this event.
    """

    event_type: ClassVar[str]

    event_id: UUID = field(default_factory=uuid4)
    occurred_at: datetime = field(default_factory=utc_now)
    aggregate_id: str = field(default="")

    def to_dict(self) -> dict[str, Any]:
        """Serialize the event for logging.

        Returns:
            Dictionary representation of the event.
        """
        return {
            "event_id": str(self.event_id),
            "event_type": self.event_type,
            "occurred_at": self.occurred_at.isoformat(),
            "aggregate_id": self.aggregate_id,
            "payload": self._payload(),
        }

    @abstractmethod
    def _payload(self) -> dict[str, Any]:
        """Event-specific data."""
