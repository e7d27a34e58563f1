"""Domain exceptions.

Errors raised by the session aggregate, value objects and state
machines when a request violates a business rule. The application
layer catches ``DomainError`` and turns it into a result object, so
none of these ever reach the MCP client as a raw exception.
"""

from typing import Any


class DomainError(Exception):
    """Base class for all domain exceptions."""

    error_code: str = "DOMAIN_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize domain error.

        Args:
            message: Human-readable error message.
            details: Optional dictionary with additional error context.
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}


# ============================================================================
# State Machine Errors
# ============================================================================


class InvalidStateTransitionError(DomainError):
    """Raised when a state machine is asked for a transition it does not allow."""

    error_code = "INVALID_STATE_TRANSITION"

    def __init__(
        self,
        machine: str,
        session_id: str,
        current_state: str,
        target_state: str,
        allowed_transitions: list[str] | None = None,
    ) -> None:
        """Initialize invalid state transition error.

        Args:
            machine: Name of the state machine (e.g., "FlowStage").
            session_id: Session owning the state.
            current_state: Current state.
            target_state: Attempted target state.
            allowed_transitions: States reachable from the current one.
        """
        allowed = allowed_transitions or []
        super().__init__(
            f"Cannot move {machine} for session {session_id} "
            f"from '{current_state}' to '{target_state}'. "
            f"Allowed transitions: {allowed}",
            details={
                "machine": machine,
                "session_id": session_id,
                "current_state": current_state,
                "target_state": target_state,
                "allowed_transitions": allowed,
            },
        )


# ============================================================================
# Validation Errors
# ============================================================================


class ValidationError(DomainError):
    """Raised when caller input breaks a constraint."""

    error_code = "VALIDATION_ERROR"


class InvalidLineNumberError(ValidationError):
    """Raised when a line number falls outside 1..line_count."""

    error_code = "INVALID_LINE_NUMBER"

    def __init__(self, line_number: int, line_count: int | None) -> None:
        if not line_count:
            message = (
                f"Line {line_number} cannot be used before the number of lines "
                "is set. Start the purchase flow with a line count first."
            )
        elif line_number > line_count:
            message = (
                f"Line {line_number} does not exist: this order has {line_count} "
                f"line{'s' if line_count != 1 else ''}. Increase the line count "
                "with update_line_count before adding items to that line."
            )
        else:
            message = f"Invalid line number {line_number}. Valid lines are 1 to {line_count}."
        super().__init__(
            message,
            details={"line_number": line_number, "line_count": line_count},
        )
        self.line_number = line_number
        self.line_count = line_count


class LineLimitExceededError(ValidationError):
    """Raised when a line count is below 1 or above the account limit."""

    error_code = "INVALID_LINE_COUNT"

    def __init__(self, requested: int, max_lines: int) -> None:
        super().__init__(
            f"Line count must be between 1 and {max_lines} (got {requested}).",
            details={"requested": requested, "max_lines": max_lines},
        )


class InvalidSimTypeError(ValidationError):
    """Raised for SIM types other than ESIM and PSIM."""

    error_code = "INVALID_SIM_TYPE"

    def __init__(self, sim_type: str) -> None:
        super().__init__(
            f"Invalid SIM type '{sim_type}'. Must be ESIM or PSIM.",
            details={"sim_type": sim_type},
        )


class InvalidIccidError(ValidationError):
    """Raised when an ICCID is not 19-20 digits."""

    error_code = "INVALID_ICCID"

    def __init__(self, iccid: str) -> None:
        super().__init__(
            "Invalid ICCID. It must contain 19 or 20 digits.",
            details={"iccid": iccid},
        )


class InvalidSelectionModeError(ValidationError):
    """Raised for unknown selection mode names."""

    error_code = "INVALID_SELECTION_MODE"

    def __init__(self, mode: str) -> None:
        super().__init__(
            f"Invalid selection mode '{mode}'. Use 'apply_to_all' or 'mix_and_match'.",
            details={"mode": mode},
        )


# ============================================================================
# Session Errors
# ============================================================================


class LineCountReductionError(DomainError):
    """Raised when shrinking the line count would drop configured lines."""

    error_code = "LINE_COUNT_REDUCTION_REFUSED"

    def __init__(self, current: int, requested: int, populated_lines: list[int]) -> None:
        listed = ", ".join(f"Line {n}" for n in populated_lines)
        super().__init__(
            f"Cannot reduce lines from {current} to {requested}: {listed} "
            "already have items. Remove those items first, or clear the cart.",
            details={
                "current_line_count": current,
                "requested_line_count": requested,
                "populated_lines": populated_lines,
            },
        )
        self.populated_lines = populated_lines


class CatalogItemNotFoundError(DomainError):
    """Raised when an item id or name does not match the catalog."""

    error_code = "ITEM_NOT_FOUND"

    def __init__(self, item_type: str, reference: str) -> None:
        super().__init__(
            f"{item_type.capitalize()} '{reference}' not found in the catalog.",
            details={"item_type": item_type, "reference": reference},
        )


class PrerequisiteNotMetError(DomainError):
    """Raised by aggregate guards when an item is missing its prerequisite.

    The progress engine reports unmet prerequisites as plain verdicts;
    this error only fires if a caller skips that check.
    """

    error_code = "PREREQUISITE_NOT_MET"

    def __init__(self, reason: str, missing: list[int] | None = None) -> None:
        super().__init__(reason, details={"missing": missing or []})
