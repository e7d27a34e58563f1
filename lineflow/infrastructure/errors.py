"""Upstream failure classification.

Maps a failed carrier call to a problem type with a retry hint and
recovery options, so tool handlers can explain the issue in domain
terms instead of echoing a raw HTTP error.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from lineflow.infrastructure.carrier_client import APIError


class ProblemType(str, Enum):
    """Categories of upstream failure."""

    BAD_INPUT = "BAD_INPUT"
    MISSING = "MISSING"
    NOT_ELIGIBLE = "NOT_ELIGIBLE"
    NO_STOCK = "NO_STOCK"
    PRICE_UPDATED = "PRICE_UPDATED"
    THROTTLED = "THROTTLED"
    TIMEOUT = "TIMEOUT"
    UNAVAILABLE = "UNAVAILABLE"
    CART_MISMATCH = "CART_MISMATCH"
    OTHER = "OTHER"


_RECOVERY_OPTIONS: dict[ProblemType, list[str]] = {
    ProblemType.BAD_INPUT: ["Ask user for corrected input", "Validate input format"],
    ProblemType.MISSING: ["Check the identifier", "Show available options"],
    ProblemType.NOT_ELIGIBLE: ["Explain eligibility requirements", "Show alternative options"],
    ProblemType.NO_STOCK: ["Show similar devices", "Suggest alternative products"],
    ProblemType.PRICE_UPDATED: ["Refresh cart view", "Ask user to confirm new totals"],
    ProblemType.THROTTLED: ["Wait a moment before retrying", "Offer to try again later"],
    ProblemType.TIMEOUT: ["Retry once with safe parameters", "Offer to try again later"],
    ProblemType.UNAVAILABLE: ["Retry once with safe parameters", "Offer to try again later"],
    ProblemType.CART_MISMATCH: ["Reconcile cart with flow context", "Refresh cart view"],
    ProblemType.OTHER: ["Contact support if issue persists", "Try again in a few moments"],
}


@dataclass(frozen=True)
class Problem:
    """A classified upstream failure.

    Attributes:
        type: Problem category.
        message: Original error message.
        retryable: Whether repeating the request may succeed.
        status_code: HTTP status, when known.
        recovery_options: Suggestions for the agent.
    """

    type: ProblemType
    message: str
    retryable: bool = False
    status_code: int | None = None
    recovery_options: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "message": self.message,
            "retryable": self.retryable,
            "status_code": self.status_code,
            "recovery_options": list(self.recovery_options),
        }


def _problem(
    problem_type: ProblemType,
    message: str,
    retryable: bool,
    status_code: int | None,
) -> Problem:
    return Problem(
        type=problem_type,
        message=message,
        retryable=retryable,
        status_code=status_code,
        recovery_options=list(_RECOVERY_OPTIONS[problem_type]),
    )


def map_error_to_problem(error: APIError | Exception | None) -> Problem:
    """Classify an upstream failure.

    The status code decides when present; otherwise the message is
    matched against known patterns.

    Args:
        error: API error from the client, or an exception.

    Returns:
        Classified problem.
    """
    if error is None:
        return _problem(ProblemType.OTHER, "Unknown error occurred", False, None)

    if isinstance(error, APIError):
        message, status, code = error.message, error.status_code, error.error_code
    else:
        message, status, code = str(error), getattr(error, "status_code", None), ""
    text = message.lower()

    if code == "TIMEOUT" or status == 504 or "timeout" in text or "timed out" in text:
        return _problem(ProblemType.TIMEOUT, message, True, status)
    if status == 429 or "too many requests" in text or "throttl" in text:
        return _problem(ProblemType.THROTTLED, message, True, status)
    if status in (401, 403) or "forbidden" in text or "explicit deny" in text:
        return _problem(ProblemType.NOT_ELIGIBLE, message, False, status)
    if status == 404 or "not found" in text:
        return _problem(ProblemType.MISSING, message, False, status)
    if status in (400, 422) or "bad request" in text or "invalid" in text:
        return _problem(ProblemType.BAD_INPUT, message, False, status)
    if status == 409 or "price changed" in text or "price updated" in text:
        return _problem(ProblemType.PRICE_UPDATED, message, False, status)
    if "out of stock" in text or "stock" in text:
        return _problem(ProblemType.NO_STOCK, message, False, status)
    if (status is not None and status >= 500) or "unavailable" in text:
        return _problem(ProblemType.UNAVAILABLE, message, True, status)
    return _problem(ProblemType.OTHER, message, False, status)


def describe_problem(problem: Problem, subject: str) -> str:
    """Explain a problem to the user in one or two sentences.

    Args:
        problem: Classified problem.
        subject: What was being fetched, e.g. "plans".

    Returns:
        Guidance text.
    """
    if problem.type is ProblemType.NOT_ELIGIBLE:
        return (
            f"I couldn't load {subject} because the service denied access. "
            "This is a permissions issue on the carrier side, not something you did."
        )
    if problem.type in (ProblemType.TIMEOUT, ProblemType.UNAVAILABLE, ProblemType.THROTTLED):
        return (
            f"The {subject} service is temporarily unavailable. "
            "Please try again in a moment."
        )
    if problem.type is ProblemType.MISSING:
        return f"I couldn't find the requested {subject}."
    if problem.type is ProblemType.BAD_INPUT:
        return f"The request for {subject} was rejected as invalid: {problem.message}"
    if problem.type is ProblemType.NO_STOCK:
        return f"Some {subject} are out of stock right now."
    return f"Something went wrong while loading {subject}: {problem.message}"
