"""State machines for the purchase flow.

Two small deterministic machines live here: the flow stage of a
session, and the selection mode that decides how a chosen plan or
device propagates across lines. Transition tables are defined next to
each enum; the pure functions that act on selection state live in
``lineflow.application.selection_modes``.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

from lineflow.domain.exceptions import InvalidStateTransitionError

S = TypeVar("S", bound=Enum)


# ============================================================================
# Flow Stage State Machine
# ============================================================================


class FlowStage(str, Enum):
    """Coarse progress of a session through the purchase flow.

    State diagram:
        INITIAL ──── set line count ────► PLANNING
          │                                 │
          │ first item added                │ first item added
          ▼                                 ▼
        CONFIGURING ◄──── cart edited ──── CHECKOUT
          │                                 ▲
          └────── shipping collected ───────┘

        Clearing selections returns CONFIGURING or CHECKOUT to PLANNING.
        Every stage can be reset back to INITIAL.
    """

    INITIAL = "initial"
    PLANNING = "planning"
    CONFIGURING = "configuring"
    CHECKOUT = "checkout"

    def can_transition_to(self, target: "FlowStage") -> bool:
        """Check if transition to target stage is valid.

        Args:
            target: Target stage.

        Returns:
            True if transition is valid.
        """
        return target in _FLOW_STAGE_TRANSITIONS.get(self, set())

    def allowed_transitions(self) -> list["FlowStage"]:
        """Get list of valid target stages."""
        return sorted(_FLOW_STAGE_TRANSITIONS.get(self, set()), key=lambda s: s.rank)

    @property
    def rank(self) -> int:
        """Position of the stage in the forward order."""
        return _FLOW_STAGE_ORDER.index(self)


_FLOW_STAGE_ORDER: list[FlowStage] = [
    FlowStage.INITIAL,
    FlowStage.PLANNING,
    FlowStage.CONFIGURING,
    FlowStage.CHECKOUT,
]

_FLOW_STAGE_TRANSITIONS: dict[FlowStage, set[FlowStage]] = {
    FlowStage.INITIAL: {FlowStage.PLANNING, FlowStage.CONFIGURING},
    FlowStage.PLANNING: {FlowStage.CONFIGURING, FlowStage.INITIAL},
    FlowStage.CONFIGURING: {FlowStage.CHECKOUT, FlowStage.PLANNING, FlowStage.INITIAL},
    FlowStage.CHECKOUT: {FlowStage.CONFIGURING, FlowStage.PLANNING, FlowStage.INITIAL},
}


# ============================================================================
# Selection Mode State Machine
# ============================================================================


class SelectionMode(str, Enum):
    """How a plan or device choice propagates across lines.

    State diagram:
        UNKNOWN ──── "apply to all" ────► APPLY_TO_ALL
          │                                 ▲   │
          │ "mix and match"                 │   │ user changes mind
          ▼                                 │   ▼
        MIX_AND_MATCH ◄─────────────────────┴───┘

    UNKNOWN is only re-entered by resetting the session. Re-confirming
    the current mode is allowed so the mode tool can be called again.
    """

    UNKNOWN = "UNKNOWN"
    APPLY_TO_ALL = "APPLY_TO_ALL"
    MIX_AND_MATCH = "MIX_AND_MATCH"

    def can_transition_to(self, target: "SelectionMode") -> bool:
        return target in _SELECTION_MODE_TRANSITIONS.get(self, set())

    def allowed_transitions(self) -> list["SelectionMode"]:
        return sorted(_SELECTION_MODE_TRANSITIONS.get(self, set()), key=lambda m: m.value)

    def is_decided(self) -> bool:
        """Check if the user has chosen a mode."""
        return self is not SelectionMode.UNKNOWN

    @property
    def label(self) -> str:
        """Short propagation label reported alongside the mode."""
        return _SELECTION_MODE_LABELS[self]

    @classmethod
    def parse(cls, value: "str | SelectionMode") -> "SelectionMode":
        """Parse a user-facing mode name.

        Accepts the enum values as well as the short forms used in
        conversation ("apply_to_all", "all", "sequential", ...).

        Returns:
            Matching mode, or UNKNOWN if the name is not recognised.
        """
        if isinstance(value, SelectionMode):
            return value
        key = str(value).strip().lower().replace("-", "_").replace(" ", "_")
        return _SELECTION_MODE_ALIASES.get(key, cls.UNKNOWN)


_SELECTION_MODE_TRANSITIONS: dict[SelectionMode, set[SelectionMode]] = {
    SelectionMode.UNKNOWN: {SelectionMode.APPLY_TO_ALL, SelectionMode.MIX_AND_MATCH},
    SelectionMode.APPLY_TO_ALL: {SelectionMode.APPLY_TO_ALL, SelectionMode.MIX_AND_MATCH},
    SelectionMode.MIX_AND_MATCH: {SelectionMode.MIX_AND_MATCH, SelectionMode.APPLY_TO_ALL},
}

_SELECTION_MODE_LABELS: dict[SelectionMode, str] = {
    SelectionMode.UNKNOWN: "initial",
    SelectionMode.APPLY_TO_ALL: "applyAll",
    SelectionMode.MIX_AND_MATCH: "sequential",
}

_SELECTION_MODE_ALIASES: dict[str, SelectionMode] = {
    "apply_to_all": SelectionMode.APPLY_TO_ALL,
    "applyall": SelectionMode.APPLY_TO_ALL,
    "apply_all": SelectionMode.APPLY_TO_ALL,
    "all": SelectionMode.APPLY_TO_ALL,
    "same": SelectionMode.APPLY_TO_ALL,
    "mix_and_match": SelectionMode.MIX_AND_MATCH,
    "mix": SelectionMode.MIX_AND_MATCH,
    "sequential": SelectionMode.MIX_AND_MATCH,
    "per_line": SelectionMode.MIX_AND_MATCH,
    "different": SelectionMode.MIX_AND_MATCH,
}


# ============================================================================
# State Transition Result
# ============================================================================


@dataclass(frozen=True)
class StateTransition(Generic[S]):
    """A state change applied by a transition function.

    Attributes:
        from_state: Previous state.
        to_state: New state.
    """

    from_state: S
    to_state: S

    @property
    def changed(self) -> bool:
        return self.from_state is not self.to_state


# ============================================================================
# State Machine Helpers
# ============================================================================


def validate_flow_stage_transition(
    session_id: str,
    current: FlowStage,
    target: FlowStage,
) -> None:
    """Validate and raise if a flow stage transition is invalid.

    Args:
        session_id: Session identifier for the error message.
        current: Current stage.
        target: Target stage.

    Raises:
        InvalidStateTransitionError: If transition is not valid.
    """
    if not current.can_transition_to(target):
        raise InvalidStateTransitionError(
            machine="FlowStage",
            session_id=session_id,
            current_state=current.value,
            target_state=target.value,
            allowed_transitions=[s.value for s in current.allowed_transitions()],
        )


def validate_selection_mode_transition(
    session_id: str,
    current: SelectionMode,
    target: SelectionMode,
) -> None:
    """Validate and raise if a selection mode transition is invalid.

    Raises:
        InvalidStateTransitionError: If transition is not valid.
    """
    if not current.can_transition_to(target):
        raise InvalidStateTransitionError(
            machine="SelectionMode",
            session_id=session_id,
            current_state=current.value,
            target_state=target.value,
            allowed_transitions=[m.value for m in current.allowed_transitions()],
        )
