"""Domain events raised by the purchase session aggregate.

The application service collects them after each committed
transaction and writes them to the structured log, which gives an
audit trail of how a conversation shaped the cart.
"""

from dataclasses import dataclass, field
from typing import Any, ClassVar

from lineflow.domain.base import DomainEvent


@dataclass(frozen=True)
class SessionStarted(DomainEvent):
    """Raised when a new purchase session is created."""

    event_type: ClassVar[str] = "session.started"

    def _payload(self) -> dict[str, Any]:
        return {}


@dataclass(frozen=True)
class LineCountChanged(DomainEvent):
    """Raised when the number of lines changes."""

    event_type: ClassVar[str] = "session.line_count_changed"

    previous: int | None = None
    current: int = 0

    def _payload(self) -> dict[str, Any]:
        return {"previous": self.previous, "current": self.current}


@dataclass(frozen=True)
class ItemAssigned(DomainEvent):
    """Raised when an item is placed on a line (new or replacing)."""

    event_type: ClassVar[str] = "line.item_assigned"

    line_number: int = 0
    item_type: str = ""
    item_id: str = ""
    item_name: str = ""
    price_cents: int = 0
    replaced_item_id: str | None = None

    def _payload(self) -> dict[str, Any]:
        return {
            "line_number": self.line_number,
            "item_type": self.item_type,
            "item_id": self.item_id,
            "item_name": self.item_name,
            "price_cents": self.price_cents,
            "replaced_item_id": self.replaced_item_id,
        }


@dataclass(frozen=True)
class ItemRemoved(DomainEvent):
    """Raised when an item is taken off a line."""

    event_type: ClassVar[str] = "line.item_removed"

    line_number: int = 0
    item_type: str = ""
    item_id: str = ""
    cascaded: bool = False

    def _payload(self) -> dict[str, Any]:
        return {
            "line_number": self.line_number,
            "item_type": self.item_type,
            "item_id": self.item_id,
            "cascaded": self.cascaded,
        }


@dataclass(frozen=True)
class SelectionModeChanged(DomainEvent):
    """Raised when the plan or device selection mode changes."""

    event_type: ClassVar[str] = "selection.mode_changed"

    item_type: str = ""
    previous: str = ""
    current: str = ""

    def _payload(self) -> dict[str, Any]:
        return {
            "item_type": self.item_type,
            "previous": self.previous,
            "current": self.current,
        }


@dataclass(frozen=True)
class SelectionParked(DomainEvent):
    """Raised when a choice is held back until a mode is confirmed."""

    event_type: ClassVar[str] = "selection.parked"

    item_type: str = ""
    item_id: str = ""

    def _payload(self) -> dict[str, Any]:
        return {"item_type": self.item_type, "item_id": self.item_id}


@dataclass(frozen=True)
class CartCleared(DomainEvent):
    """Raised when the cart is emptied, with or without a full reset."""

    event_type: ClassVar[str] = "session.cart_cleared"

    reset_flow: bool = True
    cleared_lines: list[int] = field(default_factory=list)

    def _payload(self) -> dict[str, Any]:
        return {"reset_flow": self.reset_flow, "cleared_lines": self.cleared_lines}


@dataclass(frozen=True)
class ShippingAddressCollected(DomainEvent):
    """Raised when checkout shipping details are stored."""

    event_type: ClassVar[str] = "checkout.shipping_collected"

    zip_code: str = ""
    state: str = ""

    def _payload(self) -> dict[str, Any]:
        return {"zip_code": self.zip_code, "state": self.state}
