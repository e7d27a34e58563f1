"""Line assignment resolver.

Decides which line(s) an incoming add-to-cart call targets. Explicit
line numbers win; otherwise the item fills the first line that lacks
it, so "add this plan" can be repeated without naming lines.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any

from lineflow.domain.entities import FlowContext
from lineflow.domain.value_objects import ItemType


class AssignmentReason(str, Enum):
    """Why a line was chosen."""

    USER_SPECIFIED = "user_specified"
    APPLY_TO_ALL = "apply_to_all"
    AUTO_ASSIGNED = "auto_assigned"
    MATCHED_TO_DEVICE = "matched_to_device"
    FALLBACK_TO_LINE_1 = "fallback_to_line_1"
    REJECTED = "rejected"


@dataclass(frozen=True)
class LineAssignment:
    """Resolved target lines for an item.

    Attributes:
        lines: 1-based target line numbers (empty when rejected).
        reason: How the lines were chosen.
        error: Guidance when the request was rejected.
    """

    lines: tuple[int, ...]
    reason: AssignmentReason
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def rejected(cls, error: str) -> "LineAssignment":
        return cls(lines=(), reason=AssignmentReason.REJECTED, error=error)

    def to_dict(self) -> dict[str, Any]:
        return {"lines": list(self.lines), "reason": self.reason.value, "error": self.error}


def resolve_target_lines(
    flow: FlowContext,
    item_type: ItemType,
    explicit_line: int | None = None,
    explicit_line_numbers: list[int] | None = None,
    wants_all: bool = False,
) -> LineAssignment:
    """Resolve the lines an item should be placed on.

    Rules, in priority order:
    1. "all" or explicit line numbers are honoured. Numbers above the
       line count are rejected with guidance to raise the line count.
    2. Plans, devices and SIMs go to the first line lacking that item.
    3. Protection goes to the first line with a device but no protection.
    4. Otherwise line 1.

    The flow's ``lines`` are padded or trimmed to the line count first.

    Args:
        flow: Session flow context.
        item_type: Kind of item being added.
        explicit_line: Single line requested by the caller.
        explicit_line_numbers: Several lines requested by the caller.
        wants_all: Caller asked for every line.

    Returns:
        Assignment verdict. Never raises.
    """
    flow.normalize_lines()
    count = flow.line_count or 0

    if wants_all:
        if not count:
            return LineAssignment.rejected(
                "Set how many lines you need before applying an item to all lines."
            )
        return LineAssignment(
            lines=tuple(range(1, count + 1)),
            reason=AssignmentReason.APPLY_TO_ALL,
        )

    requested = list(explicit_line_numbers or [])
    if explicit_line is not None:
        requested.append(explicit_line)
    if requested:
        return _resolve_explicit(sorted(set(requested)), count)

    if item_type is ItemType.PROTECTION:
        for line in flow.lines:
            if line.device_selected and not line.protection_selected:
                return LineAssignment(
                    lines=(line.line_number,),
                    reason=AssignmentReason.MATCHED_TO_DEVICE,
                )
    else:
        for line in flow.lines:
            if not line.has(item_type):
                return LineAssignment(
                    lines=(line.line_number,),
                    reason=AssignmentReason.AUTO_ASSIGNED,
                )

    return LineAssignment(lines=(1,), reason=AssignmentReason.FALLBACK_TO_LINE_1)


def _resolve_explicit(requested: list[int], count: int) -> LineAssignment:
    below = [n for n in requested if n < 1]
    if below:
        return LineAssignment.rejected(
            f"Invalid line number {below[0]}. Line numbers start at 1."
        )
    beyond = [n for n in requested if n > count]
    if beyond:
        listed = ", ".join(str(n) for n in beyond)
        plural = "s" if count != 1 else ""
        return LineAssignment.rejected(
            f"Line {listed} is beyond your current {count} line{plural}. "
            f"Increase the line count to at least {max(beyond)} with "
            "update_line_count first, then add the item again."
        )
    return LineAssignment(lines=tuple(requested), reason=AssignmentReason.USER_SPECIFIED)
