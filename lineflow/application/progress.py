"""Progress and prerequisite engine.

Pure functions over a ``FlowContext`` (and optionally its ``Cart``).
They never raise and never mutate: every tool handler calls them
speculatively, so the same inputs must always yield the same verdict.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from lineflow.domain.entities import Cart, FlowContext


class Gate(str, Enum):
    """Which prerequisite decided a verdict."""

    OK = "OK"
    NEED_LINES = "NEED_LINES"
    NEED_PLANS = "NEED_PLANS"
    NEED_SIM = "NEED_SIM"
    NEED_DEVICE = "NEED_DEVICE"


class FlowAction(str, Enum):
    """Actions whose prerequisites can be checked."""

    ADD_PROTECTION = "add_protection"
    CHECKOUT = "checkout"
    COLLECT_SHIPPING = "collect_shipping"


# ============================================================================
# Result Types
# ============================================================================


@dataclass(frozen=True)
class MissingItems:
    """Line numbers lacking each item type."""

    plans: tuple[int, ...] = ()
    sim: tuple[int, ...] = ()
    devices: tuple[int, ...] = ()
    protection: tuple[int, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "plans": list(self.plans),
            "sim": list(self.sim),
            "devices": list(self.devices),
            "protection": list(self.protection),
            "device_count": len(self.devices),
            "protection_count": len(self.protection),
        }


@dataclass(frozen=True)
class Progress:
    """Snapshot of what each line still needs.

    Plans and SIMs are required on every line; devices and protection
    are optional and only surfaced as counts in guidance.

    Attributes:
        line_count: Configured line count (0 when unset).
        completed_lines: Lines holding both a plan and a SIM type.
        percent: Share of required line items filled, 0-100.
        missing: Per-item lists of lines lacking that item.
        cart_line_count: Cart lines within the line count.
    """

    line_count: int
    completed_lines: tuple[int, ...]
    percent: int
    missing: MissingItems = field(default_factory=MissingItems)
    cart_line_count: int = 0

    @property
    def is_complete(self) -> bool:
        return self.line_count > 0 and not self.missing.plans and not self.missing.sim

    def to_dict(self) -> dict[str, Any]:
        return {
            "line_count": self.line_count,
            "completed_lines": list(self.completed_lines),
            "percent": self.percent,
            "missing": self.missing.to_dict(),
            "cart_line_count": self.cart_line_count,
            "is_complete": self.is_complete,
        }


@dataclass(frozen=True)
class PrerequisiteResult:
    """Verdict for a requested action.

    Attributes:
        allowed: Whether the action may proceed.
        gate: The prerequisite that decided the verdict.
        reason: Guidance naming the most fundamental gap.
        missing: Line numbers lacking the required item, when known.
    """

    allowed: bool
    gate: Gate = Gate.OK
    reason: str | None = None
    missing: tuple[int, ...] = ()

    @classmethod
    def ok(cls) -> "PrerequisiteResult":
        return cls(allowed=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "gate": self.gate.value,
            "reason": self.reason,
            "missing": list(self.missing),
        }


# ============================================================================
# Progress
# ============================================================================


def compute_progress(flow: FlowContext, cart: Cart | None = None) -> Progress:
    """Compute which lines are missing which item types.

    Args:
        flow: Session flow context.
        cart: Session cart, used only for the visible line count.

    Returns:
        Progress snapshot.
    """
    line_count = flow.line_count or 0
    lines = flow.lines[:line_count]

    missing = MissingItems(
        plans=tuple(l.line_number for l in lines if not l.plan_selected),
        sim=tuple(l.line_number for l in lines if l.sim_type is None),
        devices=tuple(l.line_number for l in lines if not l.device_selected),
        protection=tuple(
            l.line_number for l in lines if l.device_selected and not l.protection_selected
        ),
    )
    completed = tuple(l.line_number for l in lines if l.is_complete)

    required = 2 * line_count
    filled = required - len(missing.plans) - len(missing.sim)
    percent = round(100 * filled / required) if required else 0

    return Progress(
        line_count=line_count,
        completed_lines=completed,
        percent=percent,
        missing=missing,
        cart_line_count=len(cart.visible_lines(line_count)) if cart else 0,
    )


def _format_lines(numbers: tuple[int, ...]) -> str:
    return ", ".join(f"Line {n}" for n in numbers)


# ============================================================================
# Prerequisites
# ============================================================================


def check_prerequisite(
    flow: FlowContext,
    action: FlowAction | str,
    line_number: int | None = None,
) -> PrerequisiteResult:
    """Decide whether an action is currently allowed.

    Checkout and shipping collection check, in order: a line count is
    set, every line has a plan, every line has a SIM type. The first
    failing check is the one reported.

    Args:
        flow: Session flow context.
        action: Action to check.
        line_number: Target line for line-scoped actions (protection).

    Returns:
        Verdict with reason and missing lines when denied.
    """
    try:
        action = FlowAction(action)
    except ValueError:
        # Actions without prerequisites.
        return PrerequisiteResult.ok()

    if action in (FlowAction.CHECKOUT, FlowAction.COLLECT_SHIPPING):
        return _check_checkout(flow)

    if action is FlowAction.ADD_PROTECTION:
        return _check_protection(flow, line_number)

    # Plans and devices can be added at any point.
    return PrerequisiteResult.ok()


def _check_checkout(flow: FlowContext) -> PrerequisiteResult:
    if not flow.is_configured:
        return PrerequisiteResult(
            allowed=False,
            gate=Gate.NEED_LINES,
            reason="The number of lines is required before checkout. How many lines do you need?",
        )

    progress = compute_progress(flow)
    if progress.missing.plans:
        return PrerequisiteResult(
            allowed=False,
            gate=Gate.NEED_PLANS,
            reason=(
                "Plans are required for all lines. Missing plans for: "
                f"{_format_lines(progress.missing.plans)}"
            ),
            missing=progress.missing.plans,
        )
    if progress.missing.sim:
        return PrerequisiteResult(
            allowed=False,
            gate=Gate.NEED_SIM,
            reason=(
                "A SIM type is required for all lines. Missing SIM for: "
                f"{_format_lines(progress.missing.sim)}"
            ),
            missing=progress.missing.sim,
        )
    return PrerequisiteResult.ok()


def _check_protection(flow: FlowContext, line_number: int | None) -> PrerequisiteResult:
    if line_number is not None:
        count = flow.line_count or 0
        if not 1 <= line_number <= count or not flow.lines[line_number - 1].device_selected:
            return PrerequisiteResult(
                allowed=False,
                gate=Gate.NEED_DEVICE,
                reason=(
                    f"Line {line_number} has no device. Add a device to Line "
                    f"{line_number} before adding protection."
                ),
                missing=(line_number,),
            )
        return PrerequisiteResult.ok()

    if not any(line.device_selected for line in flow.lines):
        return PrerequisiteResult(
            allowed=False,
            gate=Gate.NEED_DEVICE,
            reason="Device protection requires a device. Add a device to a line first.",
            missing=tuple(line.line_number for line in flow.lines),
        )
    return PrerequisiteResult.ok()
