"""Domain entities for the purchase flow.

A ``PurchaseSession`` is the aggregate root for one conversation. It
owns two records that must never drift apart:

- ``FlowContext``: what has been configured and where the user is in
  the flow (line count, per-line flags, selection modes, bookkeeping).
- ``Cart``: the priced items on each line.

Every change to a line goes through a method on the session, which
updates both records in one step and records a domain event.
"""

from dataclasses import dataclass, field
from typing import Any

from lineflow.domain.base import AggregateRoot, utc_now
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
from lineflow.domain.exceptions import (
    InvalidLineNumberError,
    LineCountReductionError,
    LineLimitExceededError,
    PrerequisiteNotMetError,
    ValidationError,
)
from lineflow.domain.state_machines import (
    FlowStage,
    SelectionMode,
    validate_flow_stage_transition,
    validate_selection_mode_transition,
)
from lineflow.domain.value_objects import (
    CatalogItem,
    FlowStep,
    ItemType,
    Money,
    ShippingAddress,
    SimType,
    protection_for_device,
    sim_catalog_item,
)

MAX_LINES = 25
HISTORY_LIMIT = 10


# ============================================================================
# Line State
# ============================================================================


@dataclass
class LineState:
    """Selection flags for one line of the order.

    Attributes:
        line_number: 1-based line number, equal to position + 1.
        plan_selected: Whether a plan is on this line.
        plan_id: Id of the selected plan.
        device_selected: Whether a device is on this line.
        device_id: Id of the selected device.
        protection_selected: Whether protection is on this line.
        protection_id: Id of the selected protection.
        sim_type: Chosen SIM type, if any.
        sim_iccid: ICCID of a physical SIM being swapped in.
    """

    line_number: int
    plan_selected: bool = False
    plan_id: str | None = None
    device_selected: bool = False
    device_id: str | None = None
    protection_selected: bool = False
    protection_id: str | None = None
    sim_type: SimType | None = None
    sim_iccid: str | None = None

    def has(self, item_type: ItemType) -> bool:
        """Check whether the line holds an item of the given type."""
        if item_type is ItemType.PLAN:
            return self.plan_selected
        if item_type is ItemType.DEVICE:
            return self.device_selected
        if item_type is ItemType.PROTECTION:
            return self.protection_selected
        return self.sim_type is not None

    def item_id(self, item_type: ItemType) -> str | None:
        if item_type is ItemType.PLAN:
            return self.plan_id
        if item_type is ItemType.DEVICE:
            return self.device_id
        if item_type is ItemType.PROTECTION:
            return self.protection_id
        return self.sim_type.value if self.sim_type else None

    @property
    def has_selection(self) -> bool:
        return any(self.has(item_type) for item_type in ItemType)

    @property
    def is_complete(self) -> bool:
        """A line is complete once it has a plan and a SIM type."""
        return self.plan_selected and self.sim_type is not None

    def _set(self, item_type: ItemType, item_id: str | None) -> None:
        selected = item_id is not None
        if item_type is ItemType.PLAN:
            self.plan_selected, self.plan_id = selected, item_id
        elif item_type is ItemType.DEVICE:
            self.device_selected, self.device_id = selected, item_id
        elif item_type is ItemType.PROTECTION:
            self.protection_selected, self.protection_id = selected, item_id
        else:
            self.sim_type = SimType(item_id) if item_id else None
            if not selected:
                self.sim_iccid = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "line_number": self.line_number,
            "plan_selected": self.plan_selected,
            "plan_id": self.plan_id,
            "device_selected": self.device_selected,
            "device_id": self.device_id,
            "protection_selected": self.protection_selected,
            "protection_id": self.protection_id,
            "sim_type": self.sim_type.value if self.sim_type else None,
            "sim_iccid": self.sim_iccid,
        }


# ============================================================================
# Selection State
# ============================================================================


@dataclass
class SelectionState:
    """Selection-mode state for one item type (plans or devices).

    Attributes:
        item_type: PLAN or DEVICE.
        mode: Current selection mode.
        prompted: Whether the user has been asked to choose a mode.
        pending_item_id: Item named before a mode was confirmed.
        last_chosen_item_id: Most recent item the user chose.
        active_line_index: Zero-based index of the line awaiting the next
            mix-and-match choice; None when no line is waiting.
    """

    item_type: ItemType
    mode: SelectionMode = SelectionMode.UNKNOWN
    prompted: bool = False
    pending_item_id: str | None = None
    last_chosen_item_id: str | None = None
    active_line_index: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "selection_mode": self.mode.label,
            "prompted": self.prompted,
            "pending_item_id": self.pending_item_id,
            "last_chosen_item_id": self.last_chosen_item_id,
            "active_line_index": self.active_line_index,
        }


# ============================================================================
# Flow Context
# ============================================================================


@dataclass
class FlowContext:
    """Progress record for a session's purchase flow.

    ``len(lines) == line_count`` holds whenever ``line_count`` is set.
    A ``line_count`` of None (or 0) means the user has not said how
    many lines they want yet.
    """

    line_count: int | None = None
    lines: list[LineState] = field(default_factory=list)
    plan_selection: SelectionState = field(
        default_factory=lambda: SelectionState(item_type=ItemType.PLAN)
    )
    device_selection: SelectionState = field(
        default_factory=lambda: SelectionState(item_type=ItemType.DEVICE)
    )
    flow_stage: FlowStage = FlowStage.INITIAL
    resume_step: FlowStep | None = None
    last_intent: str | None = None
    last_action: str | None = None
    conversation_history: list[dict[str, Any]] = field(default_factory=list)
    coverage_checked: bool = False
    coverage_zip_code: str | None = None
    shipping_address: ShippingAddress | None = None
    checkout_data_collected: bool = False

    @property
    def is_configured(self) -> bool:
        return bool(self.line_count)

    def line(self, line_number: int) -> LineState:
        """Get a line by its 1-based number.

        Raises:
            InvalidLineNumberError: If the line is outside 1..line_count.
        """
        if not self.line_count or not 1 <= line_number <= self.line_count:
            raise InvalidLineNumberError(line_number, self.line_count)
        return self.lines[line_number - 1]

    def normalize_lines(self) -> None:
        """Pad or trim ``lines`` to ``line_count`` and renumber them."""
        count = self.line_count or 0
        del self.lines[count:]
        while len(self.lines) < count:
            self.lines.append(LineState(line_number=len(self.lines) + 1))
        for index, line in enumerate(self.lines):
            line.line_number = index + 1

    def selection(self, item_type: ItemType) -> SelectionState:
        """Selection state for plans or devices."""
        if item_type is ItemType.PLAN:
            return self.plan_selection
        if item_type is ItemType.DEVICE:
            return self.device_selection
        raise ValidationError(
            f"Selection modes apply to plans and devices, not {item_type.value}.",
            details={"item_type": item_type.value},
        )

    def filled(self, item_type: ItemType) -> list[bool]:
        """Per-line flags telling which lines hold the item type."""
        return [line.has(item_type) for line in self.lines]

    @property
    def selected_plan_by_line(self) -> dict[str, str]:
        return {str(l.line_number): l.plan_id for l in self.lines if l.plan_id}

    @property
    def selected_devices_per_line(self) -> dict[str, str]:
        return {str(l.line_number): l.device_id for l in self.lines if l.device_id}

    def global_flags(self) -> dict[str, bool]:
        """Flags summarising what has been configured on any line."""
        return {
            "plan_selected": any(l.plan_selected for l in self.lines),
            "device_selected": any(l.device_selected for l in self.lines),
            "protection_selected": any(l.protection_selected for l in self.lines),
            "sim_selected": any(l.sim_type is not None for l in self.lines),
            "lines_configured": self.is_configured,
            "coverage_checked": self.coverage_checked,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "line_count": self.line_count,
            "lines": [line.to_dict() for line in self.lines],
            "flow_stage": self.flow_stage.value,
            "plan_mode": self.plan_selection.mode.value,
            "plan_selection_mode": self.plan_selection.mode.label,
            "plan_mode_prompted": self.plan_selection.prompted,
            "pending_plan_id": self.plan_selection.pending_item_id,
            "last_chosen_plan_id": self.plan_selection.last_chosen_item_id,
            "active_line_index": self.plan_selection.active_line_index,
            "device_mode": self.device_selection.mode.value,
            "device_selection_mode": self.device_selection.mode.label,
            "device_mode_prompted": self.device_selection.prompted,
            "pending_device_id": self.device_selection.pending_item_id,
            "active_device_line_index": self.device_selection.active_line_index,
            "selected_plan_by_line": self.selected_plan_by_line,
            "selected_devices_per_line": self.selected_devices_per_line,
            "resume_step": self.resume_step.value if self.resume_step else None,
            "last_intent": self.last_intent,
            "last_action": self.last_action,
            "coverage_checked": self.coverage_checked,
            "coverage_zip_code": self.coverage_zip_code,
            "shipping_address": (
                self.shipping_address.to_dict() if self.shipping_address else None
            ),
            "checkout_data_collected": self.checkout_data_collected,
        }


# ============================================================================
# Cart
# ============================================================================


@dataclass
class CartLine:
    """Priced items on one line: at most one of each item type."""

    line_number: int
    plan: CatalogItem | None = None
    device: CatalogItem | None = None
    protection: CatalogItem | None = None
    sim: CatalogItem | None = None

    def get(self, item_type: ItemType) -> CatalogItem | None:
        return getattr(self, item_type.value)

    def put(self, item_type: ItemType, item: CatalogItem | None) -> None:
        setattr(self, item_type.value, item)

    @property
    def items(self) -> list[CatalogItem]:
        return [item for item in (self.plan, self.device, self.protection, self.sim) if item]

    @property
    def is_empty(self) -> bool:
        return not self.items

    @property
    def subtotal(self) -> Money:
        total = Money.zero()
        for item in self.items:
            total = total + item.price
        return total

    def to_dict(self) -> dict[str, Any]:
        return {
            "line_number": self.line_number,
            "plan": self.plan.to_dict() if self.plan else None,
            "device": self.device.to_dict() if self.device else None,
            "protection": self.protection.to_dict() if self.protection else None,
            "sim": self.sim.to_dict() if self.sim else None,
            "subtotal": float(self.subtotal.to_decimal()),
        }


@dataclass
class Cart:
    """Priced selections keyed by line number."""

    lines: dict[int, CartLine] = field(default_factory=dict)

    def line(self, line_number: int) -> CartLine:
        """Get the cart line, creating an empty one if needed."""
        if line_number not in self.lines:
            self.lines[line_number] = CartLine(line_number=line_number)
        return self.lines[line_number]

    def visible_lines(self, line_count: int | None) -> list[CartLine]:
        """Non-empty cart lines within ``1..line_count``, in order.

        Lines past the current line count are ignored, which keeps
        reads correct even if a stale entry survived a reduction.
        """
        limit = line_count or 0
        return [
            self.lines[n]
            for n in sorted(self.lines)
            if 1 <= n <= limit and not self.lines[n].is_empty
        ]

    def total(self, line_count: int | None) -> Money:
        total = Money.zero()
        for line in self.visible_lines(line_count):
            total = total + line.subtotal
        return total

    def populated_line_numbers(self) -> list[int]:
        return sorted(n for n, line in self.lines.items() if not line.is_empty)

    def trim(self, line_count: int | None) -> list[int]:
        """Drop cart lines beyond ``line_count``.

        Returns:
            Line numbers that were removed.
        """
        limit = line_count or 0
        removed = sorted(n for n in self.lines if n > limit or n < 1)
        for n in removed:
            del self.lines[n]
        return removed


# ============================================================================
# Purchase Session Aggregate
# ============================================================================


@dataclass(kw_only=True)
class PurchaseSession(AggregateRoot):
    """Aggregate root owning the flow context and cart of one session.

    Attributes:
        id: Session identifier.
        flow: Flow progress record.
        cart: Priced line items.
    """

    flow: FlowContext = field(default_factory=FlowContext)
    cart: Cart = field(default_factory=Cart)

    @classmethod
    def create(cls, session_id: str) -> "PurchaseSession":
        """Create a fresh session and record its creation."""
        session = cls(id=session_id)
        session._record_event(SessionStarted(aggregate_id=session_id))
        return session

    # -------------------------------------------------------------------------
    # Query Methods
    # -------------------------------------------------------------------------

    @property
    def line_count(self) -> int | None:
        return self.flow.line_count

    def visible_cart_lines(self) -> list[CartLine]:
        return self.cart.visible_lines(self.flow.line_count)

    @property
    def total(self) -> Money:
        return self.cart.total(self.flow.line_count)

    def populated_lines_beyond(self, line_count: int) -> list[int]:
        """Lines above ``line_count`` holding anything in either record."""
        numbers = {
            line.line_number
            for line in self.flow.lines
            if line.line_number > line_count and line.has_selection
        }
        current = self.flow.line_count or 0
        numbers.update(
            n for n in self.cart.populated_line_numbers() if line_count < n <= current
        )
        return sorted(numbers)

    def assignment_summary(self) -> list[str]:
        """One text row per line listing what it holds."""
        rows = []
        for line in self.flow.lines:
            parts = []
            if line.plan_selected:
                parts.append("Plan")
            if line.device_selected:
                parts.append("Device")
            if line.protection_selected:
                parts.append("Protection")
            if line.sim_type:
                parts.append(f"SIM ({line.sim_type.value})")
            rows.append(f"Line {line.line_number}: {', '.join(parts) if parts else 'Empty'}")
        return rows

    # -------------------------------------------------------------------------
    # Line Count
    # -------------------------------------------------------------------------

    def set_line_count(self, line_count: int, max_lines: int = MAX_LINES) -> None:
        """Set the number of lines on the order.

        Growing pads new empty lines. Shrinking is refused if any line
        above the new count already holds an item in the flow context
        or the cart; otherwise extra lines are dropped from both.

        Args:
            line_count: New number of lines.
            max_lines: Account limit.

        Raises:
            LineLimitExceededError: If outside 1..max_lines.
            LineCountReductionError: If populated lines would be dropped.
        """
        if line_count < 1 or line_count > max_lines:
            raise LineLimitExceededError(line_count, max_lines)

        previous = self.flow.line_count
        if previous and line_count < previous:
            populated = self.populated_lines_beyond(line_count)
            if populated:
                raise LineCountReductionError(previous, line_count, populated)

        self.flow.line_count = line_count
        self.flow.normalize_lines()
        self.cart.trim(line_count)
        for selection in (self.flow.plan_selection, self.flow.device_selection):
            if selection.active_line_index is not None and selection.active_line_index >= line_count:
                selection.active_line_index = None

        if self.flow.flow_stage is FlowStage.INITIAL:
            self.advance_stage(FlowStage.PLANNING)
        elif self.flow.flow_stage is FlowStage.CHECKOUT and line_count != previous:
            self.advance_stage(FlowStage.CONFIGURING)

        if previous != line_count:
            self._record_event(
                LineCountChanged(aggregate_id=self.id, previous=previous, current=line_count)
            )
        self._touch()

    def ensure_configured(self, default_line_count: int = 1) -> bool:
        """Give an unconfigured session a default line count.

        Returns:
            True if the session was auto-initialised.
        """
        if self.flow.is_configured:
            return False
        self.set_line_count(default_line_count)
        return True

    # -------------------------------------------------------------------------
    # Line Items
    # -------------------------------------------------------------------------

    def assign_item(self, line_number: int, item: CatalogItem) -> bool:
        """Place an item on a line, replacing any item of the same type.

        Updates the flow flags and the cart entry together. Assigning a
        plan also gives the line an eSIM when it has no SIM yet, and
        assigning a device re-prices any protection already on the line.

        Args:
            line_number: Target line.
            item: Catalog item to place.

        Returns:
            True if an eSIM was auto-assigned alongside a plan.

        Raises:
            InvalidLineNumberError: If the line does not exist.
            PrerequisiteNotMetError: If protection targets a line without a device.
        """
        state = self.flow.line(line_number)
        if item.item_type is ItemType.PROTECTION and not state.device_selected:
            raise PrerequisiteNotMetError(
                f"Line {line_number} needs a device before protection can be added.",
                missing=[line_number],
            )

        cart_line = self.cart.line(line_number)
        replaced = cart_line.get(item.item_type)
        state._set(item.item_type, item.id)
        cart_line.put(item.item_type, item)
        self._record_event(
            ItemAssigned(
                aggregate_id=self.id,
                line_number=line_number,
                item_type=item.item_type.value,
                item_id=item.id,
                item_name=item.name,
                price_cents=item.price.amount_cents,
                replaced_item_id=replaced.id if replaced else None,
            )
        )

        if item.item_type is ItemType.DEVICE and state.protection_selected:
            # Protection price follows the device tier.
            self.assign_item(line_number, protection_for_device(item))

        auto_sim = False
        if item.item_type is ItemType.PLAN and state.sim_type is None:
            self.assign_sim(line_number, SimType.ESIM)
            auto_sim = True

        self._mark_cart_changed()
        return auto_sim

    def assign_sim(
        self,
        line_number: int,
        sim_type: SimType,
        iccid: str | None = None,
    ) -> None:
        """Set the SIM type (and optional swap ICCID) of a line."""
        state = self.flow.line(line_number)
        state._set(ItemType.SIM, sim_type.value)
        state.sim_iccid = iccid
        self.cart.line(line_number).put(ItemType.SIM, sim_catalog_item(sim_type))
        self._record_event(
            ItemAssigned(
                aggregate_id=self.id,
                line_number=line_number,
                item_type=ItemType.SIM.value,
                item_id=sim_type.value,
                item_name=sim_type.value,
            )
        )
        self._mark_cart_changed()

    def remove_item(self, line_number: int, item_type: ItemType) -> list[ItemType]:
        """Remove an item type from a line.

        Removing a device also removes protection from that line.

        Returns:
            Item types actually removed, in removal order.

        Raises:
            InvalidLineNumberError: If the line does not exist.
        """
        state = self.flow.line(line_number)
        cart_line = self.cart.line(line_number)
        targets = [item_type]
        if item_type is ItemType.DEVICE:
            targets.append(ItemType.PROTECTION)

        removed = []
        for index, target in enumerate(targets):
            if not state.has(target) and cart_line.get(target) is None:
                continue
            item_id = state.item_id(target) or ""
            state._set(target, None)
            cart_line.put(target, None)
            removed.append(target)
            self._record_event(
                ItemRemoved(
                    aggregate_id=self.id,
                    line_number=line_number,
                    item_type=target.value,
                    item_id=item_id,
                    cascaded=index > 0,
                )
            )

        if cart_line.is_empty:
            self.cart.lines.pop(line_number, None)
        if removed:
            self._mark_cart_changed()
        return removed

    def clear(self, reset_flow: bool = True) -> None:
        """Empty the cart.

        Args:
            reset_flow: When True the whole session returns to fresh
                defaults. When False only line selections are cleared;
                line count and selection modes are kept.
        """
        cleared = self.cart.populated_line_numbers()
        self.cart = Cart()
        if reset_flow:
            self.flow = FlowContext()
        else:
            for line in self.flow.lines:
                for item_type in ItemType:
                    line._set(item_type, None)
            for selection in (self.flow.plan_selection, self.flow.device_selection):
                selection.pending_item_id = None
                selection.active_line_index = None
            self.flow.shipping_address = None
            self.flow.checkout_data_collected = False
            self.flow.resume_step = None
            if self.flow.is_configured:
                self.advance_stage(FlowStage.PLANNING)
        self._record_event(
            CartCleared(aggregate_id=self.id, reset_flow=reset_flow, cleared_lines=cleared)
        )
        self._touch()

    # -------------------------------------------------------------------------
    # Selection Modes
    # -------------------------------------------------------------------------

    def update_selection(self, new_state: SelectionState) -> None:
        """Replace the plan or device selection state.

        Raises:
            InvalidStateTransitionError: If the mode change is not allowed.
        """
        current = self.flow.selection(new_state.item_type)
        if new_state.mode is not current.mode:
            validate_selection_mode_transition(self.id, current.mode, new_state.mode)
            self._record_event(
                SelectionModeChanged(
                    aggregate_id=self.id,
                    item_type=new_state.item_type.value,
                    previous=current.mode.value,
                    current=new_state.mode.value,
                )
            )
        if new_state.pending_item_id and new_state.pending_item_id != current.pending_item_id:
            self._record_event(
                SelectionParked(
                    aggregate_id=self.id,
                    item_type=new_state.item_type.value,
                    item_id=new_state.pending_item_id,
                )
            )
        if new_state.item_type is ItemType.PLAN:
            self.flow.plan_selection = new_state
        else:
            self.flow.device_selection = new_state
        self._touch()

    # -------------------------------------------------------------------------
    # Checkout and Bookkeeping
    # -------------------------------------------------------------------------

    def set_shipping_address(self, address: ShippingAddress) -> None:
        """Store checkout shipping details and enter the checkout stage."""
        self.flow.shipping_address = address
        self.flow.checkout_data_collected = True
        self.advance_stage(FlowStage.CHECKOUT)
        self.flow.resume_step = FlowStep.CHECKOUT
        self._record_event(
            ShippingAddressCollected(
                aggregate_id=self.id,
                zip_code=address.zip_code,
                state=address.state,
            )
        )
        self._touch()

    def record_coverage(self, zip_code: str) -> None:
        """Note a successful coverage lookup. The resume step is untouched."""
        self.flow.coverage_checked = True
        self.flow.coverage_zip_code = zip_code
        self._touch()

    def record_intent(
        self,
        intent: str,
        action: str | None = None,
        history_limit: int = HISTORY_LIMIT,
    ) -> None:
        """Record the latest user intent in the conversation history."""
        self.flow.last_intent = intent
        self.flow.last_action = action or intent
        self.flow.conversation_history.append(
            {
                "intent": intent,
                "action": self.flow.last_action,
                "at": utc_now().isoformat(),
            }
        )
        del self.flow.conversation_history[:-history_limit]
        self._touch()

    def set_resume_step(self, step: FlowStep | None) -> None:
        self.flow.resume_step = step
        self._touch()

    def advance_stage(self, target: FlowStage) -> None:
        """Move the flow stage, validating the transition.

        Raises:
            InvalidStateTransitionError: If the move is not allowed.
        """
        current = self.flow.flow_stage
        if current is target:
            return
        validate_flow_stage_transition(self.id, current, target)
        self.flow.flow_stage = target

    def _mark_cart_changed(self) -> None:
        if self.flow.flow_stage is not FlowStage.CONFIGURING:
            self.advance_stage(FlowStage.CONFIGURING)
        self._touch()

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.id,
            "flow_context": self.flow.to_dict(),
            "cart": {
                "lines": [line.to_dict() for line in self.visible_cart_lines()],
                "total": float(self.total.to_decimal()),
                "total_cents": self.total.amount_cents,
            },
            "version": self.version,
            "updated_at": self.updated_at.isoformat(),
        }
