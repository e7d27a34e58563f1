"""Selection-mode transitions for plans and devices.

Pure functions: they take the current ``SelectionState`` plus the
line picture and return a ``SelectionDecision`` with the new state and
the lines to write. The purchase-flow service applies the decision to
the session aggregate. Nothing here touches the cart.

Behaviour per mode when an item is chosen without explicit lines:

- one line: always line 1, no mode needed
- UNKNOWN: the item is parked and the user is asked for a mode
- APPLY_TO_ALL: the item goes to every line
- MIX_AND_MATCH: the item goes to the active line, then the pointer
  moves to the next line still lacking that item
"""

from collections.abc import Sequence
from dataclasses import dataclass, replace
from enum import Enum

from lineflow.domain.entities import SelectionState
from lineflow.domain.exceptions import InvalidSelectionModeError
from lineflow.domain.state_machines import SelectionMode, StateTransition


class SelectionOutcome(str, Enum):
    """What the caller should do with a decision."""

    APPLY = "apply"
    PARK = "park"
    COMPLETE = "complete"
    NO_ITEM = "no_item"


@dataclass(frozen=True)
class SelectionDecision:
    """Result of a selection-mode step.

    Attributes:
        outcome: Whether to apply, park, or report completion.
        state: Selection state to store.
        target_lines: 1-based lines to receive ``item_id``.
        item_id: Item to place, if any.
        transition: Mode change, when the step changed modes.
    """

    outcome: SelectionOutcome
    state: SelectionState
    target_lines: tuple[int, ...] = ()
    item_id: str | None = None
    transition: StateTransition[SelectionMode] | None = None

    @property
    def all_lines_filled(self) -> bool:
        """True once mix-and-match has no line left waiting."""
        return (
            self.state.mode is SelectionMode.MIX_AND_MATCH
            and self.state.active_line_index is None
        )


def next_unfilled_index(filled: Sequence[bool], start: int = 0) -> int | None:
    """Index of the next line lacking the item, searching from ``start``.

    The search wraps around so gaps left behind (for example after an
    item was removed) are picked up again.

    Returns:
        Zero-based index, or None if every line is filled.
    """
    count = len(filled)
    for offset in range(count):
        index = (start + offset) % count
        if not filled[index]:
            return index
    return None


def _with_filled(filled: Sequence[bool], index: int) -> list[bool]:
    updated = list(filled)
    updated[index] = True
    return updated


def decide_selection(
    state: SelectionState,
    line_count: int,
    filled: Sequence[bool],
    item_id: str,
) -> SelectionDecision:
    """Decide where a newly chosen item goes under the current mode.

    Args:
        state: Current selection state for the item type.
        line_count: Number of lines on the order.
        filled: Per-line flags, True where the item type is already set.
        item_id: Chosen catalog item.

    Returns:
        Decision describing the lines to write and the new state.
    """
    if line_count <= 1:
        return SelectionDecision(
            outcome=SelectionOutcome.APPLY,
            state=replace(state, pending_item_id=None, last_chosen_item_id=item_id),
            target_lines=(1,),
            item_id=item_id,
        )

    if state.mode is SelectionMode.UNKNOWN:
        return SelectionDecision(
            outcome=SelectionOutcome.PARK,
            state=replace(
                state,
                pending_item_id=item_id,
                last_chosen_item_id=item_id,
                prompted=True,
            ),
            item_id=item_id,
        )

    if state.mode is SelectionMode.APPLY_TO_ALL:
        return SelectionDecision(
            outcome=SelectionOutcome.APPLY,
            state=replace(state, pending_item_id=None, last_chosen_item_id=item_id),
            target_lines=tuple(range(1, line_count + 1)),
            item_id=item_id,
        )

    index = state.active_line_index
    if index is None or index >= line_count or filled[index]:
        index = next_unfilled_index(filled)
    if index is None:
        return SelectionDecision(
            outcome=SelectionOutcome.COMPLETE,
            state=replace(state, pending_item_id=None, active_line_index=None),
            item_id=item_id,
        )

    after = _with_filled(filled, index)
    return SelectionDecision(
        outcome=SelectionOutcome.APPLY,
        state=replace(
            state,
            pending_item_id=None,
            last_chosen_item_id=item_id,
            active_line_index=next_unfilled_index(after, index + 1),
        ),
        target_lines=(index + 1,),
        item_id=item_id,
    )


def choose_mode(
    state: SelectionState,
    mode: SelectionMode,
    line_count: int,
    filled: Sequence[bool],
    item_id: str | None = None,
) -> SelectionDecision:
    """Move to a new selection mode and release any parked item.

    APPLY_TO_ALL broadcasts the pending (or last chosen) item to every
    line. MIX_AND_MATCH places the pending item on the active line (or
    the first unfilled line, or line 1) and points at the next gap.

    Args:
        state: Current selection state.
        mode: Mode the user chose.
        line_count: Number of lines on the order.
        filled: Per-line flags for the item type.
        item_id: Item named together with the mode, overriding the parked one.

    Returns:
        Decision with the new state and the lines to write.

    Raises:
        InvalidSelectionModeError: If ``mode`` is UNKNOWN.
    """
    if mode is SelectionMode.UNKNOWN:
        raise InvalidSelectionModeError(mode.value)

    transition = StateTransition(from_state=state.mode, to_state=mode)
    pending = item_id or state.pending_item_id
    base = replace(state, mode=mode, prompted=True, pending_item_id=None)

    if mode is SelectionMode.APPLY_TO_ALL:
        chosen = pending or state.last_chosen_item_id
        if not chosen or line_count < 1:
            return SelectionDecision(
                outcome=SelectionOutcome.NO_ITEM,
                state=replace(base, active_line_index=None),
                transition=transition,
            )
        return SelectionDecision(
            outcome=SelectionOutcome.APPLY,
            state=replace(base, last_chosen_item_id=chosen, active_line_index=None),
            target_lines=tuple(range(1, line_count + 1)),
            item_id=chosen,
            transition=transition,
        )

    index = state.active_line_index
    if index is None or index >= line_count or (line_count and filled[index]):
        index = next_unfilled_index(filled) if line_count else None

    if not pending or line_count < 1:
        return SelectionDecision(
            outcome=SelectionOutcome.NO_ITEM,
            state=replace(base, active_line_index=index),
            transition=transition,
        )

    target = 0 if index is None else index
    after = _with_filled(filled, target)
    return SelectionDecision(
        outcome=SelectionOutcome.APPLY,
        state=replace(
            base,
            last_chosen_item_id=pending,
            active_line_index=next_unfilled_index(after, target + 1),
        ),
        target_lines=(target + 1,),
        item_id=pending,
        transition=transition,
    )


def clear_pending(state: SelectionState) -> SelectionState:
    """Drop a parked item, e.g. when it could not be found in the catalog."""
    return replace(state, pending_item_id=None)
