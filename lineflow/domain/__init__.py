"""Domain layer - purchase session aggregate, value objects, state machines.

- **Aggregate**: ``PurchaseSession`` owns a ``FlowContext`` and a ``Cart``
- **Value Objects**: Money, catalog items, SIM types, shipping address
- **State Machines**: ``FlowStage`` and per-item ``SelectionMode``
- **Domain Events**: Audit trail of line and mode changes
- **Exceptions**: Validation and business rule violations

Example usage:
    from lineflow.domain import CatalogItem, ItemType, Money, PurchaseSession

    session = PurchaseSession.create("session_1700000000000_abc123xyz")
    session.set_line_count(2)
    plan = CatalogItem(ItemType.PLAN, "plan-unl", "Unlimited", Money(3000))
    session.assign_item(1, plan)

    print(session.total)  # $30.00
"""

# Base classes
from lineflow.domain.base import AggregateRoot, DomainEvent, ValueObject

# Entities
from lineflow.domain.entities import (
    MAX_LINES,
    Cart,
    CartLine,
    FlowContext,
    LineState,
    PurchaseSession,
    SelectionState,
)

# Events
from lineflow.domain.events import (
    CartCleared,
    ItemAssigned,
    ItemRemoved,
    LineCountChanged,
    SelectionModeChanged,
    SelectionParked,
    SessionStarted,
    ShippingAddressCollected,
)

# Exceptions
from lineflow.domain.exceptions import (
    CatalogItemNotFoundError,
    DomainError,
    InvalidIccidError,
    InvalidLineNumberError,
    InvalidSelectionModeError,
    InvalidSimTypeError,
    InvalidStateTransitionError,
    LineCountReductionError,
    LineLimitExceededError,
    PrerequisiteNotMetError,
    ValidationError,
)

# State machines
from lineflow.domain.state_machines import (
    FlowStage,
    SelectionMode,
    StateTransition,
    validate_flow_stage_transition,
    validate_selection_mode_transition,
)

# Value objects
from lineflow.domain.value_objects import (
    CatalogItem,
    FlowStep,
    ItemType,
    Money,
    ShippingAddress,
    SimType,
    generate_session_id,
    normalize_iccid,
    normalize_imei,
    sim_catalog_item,
)

__all__ = [
    # Base
    "AggregateRoot",
    "DomainEvent",
    "ValueObject",
    # Entities
    "MAX_LINES",
    "Cart",
    "CartLine",
    "FlowContext",
    "LineState",
    "PurchaseSession",
    "SelectionState",
    # Events
    "CartCleared",
    "ItemAssigned",
    "ItemRemoved",
    "LineCountChanged",
    "SelectionModeChanged",
    "SelectionParked",
    "SessionStarted",
    "ShippingAddressCollected",
    # Exceptions
    "CatalogItemNotFoundError",
    "DomainError",
    "InvalidIccidError",
    "InvalidLineNumberError",
    "InvalidSelectionModeError",
    "InvalidSimTypeError",
    "InvalidStateTransitionError",
    "LineCountReductionError",
    "LineLimitExceededError",
    "PrerequisiteNotMetError",
    "ValidationError",
    # State machines
    "FlowStage",
    "SelectionMode",
    "StateTransition",
    "validate_flow_stage_transition",
    "validate_selection_mode_transition",
    # Value objects
    "CatalogItem",
    "FlowStep",
    "ItemType",
    "Money",
    "ShippingAddress",
    "SimType",
    "generate_session_id",
    "normalize_iccid",
    "normalize_imei",
    "sim_catalog_item",
]
