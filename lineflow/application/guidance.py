"""Next-step guidance.

Given the current progress, picks the most fundamental step still
open and the tool that serves it. Devices and protection are optional
and only offered alongside the required step.
"""

from dataclasses import dataclass
from typing import Any

from lineflow.application.progress import Progress, compute_progress
from lineflow.domain.entities import FlowContext
from lineflow.domain.state_machines import SelectionMode
from lineflow.domain.value_objects import FlowStep

STEP_TOOLS: dict[FlowStep, str] = {
    FlowStep.LINE_COUNT: "start_session",
    FlowStep.PLAN_SELECTION: "get_plans",
    FlowStep.DEVICE_SELECTION: "get_devices",
    FlowStep.PROTECTION_SELECTION: "get_protection_plan",
    FlowStep.SIM_SELECTION: "get_sim_types",
    FlowStep.CHECKOUT: "review_cart",
}


@dataclass(frozen=True)
class NextStep:
    """Recommended next step.

    Attributes:
        step: Required step to do next.
        tool: Tool that serves the step.
        message: Guidance for the user.
        optional_steps: Optional steps worth offering.
    """

    step: FlowStep
    tool: str
    message: str
    optional_steps: tuple[FlowStep, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "step": self.step.value,
            "tool": self.tool,
            "message": self.message,
            "optional_steps": [
                {"step": s.value, "tool": STEP_TOOLS[s]} for s in self.optional_steps
            ],
        }


def _lines(numbers: tuple[int, ...]) -> str:
    return ", ".join(str(n) for n in numbers)


def determine_next_step(flow: FlowContext, progress: Progress | None = None) -> NextStep:
    """Pick the next step for a session.

    Order: line count, plans, SIM types, checkout.

    Args:
        flow: Session flow context.
        progress: Precomputed progress, if the caller has it.

    Returns:
        Next step with its tool and message.
    """
    if progress is None:
        progress = compute_progress(flow)
    optional: list[FlowStep] = []
    if progress.missing.devices:
        optional.append(FlowStep.DEVICE_SELECTION)
    if progress.missing.protection:
        optional.append(FlowStep.PROTECTION_SELECTION)

    if not flow.is_configured:
        return NextStep(
            step=FlowStep.LINE_COUNT,
            tool=STEP_TOOLS[FlowStep.LINE_COUNT],
            message="How many lines would you like to set up?",
        )

    if progress.missing.plans:
        selection = flow.plan_selection
        if (
            progress.line_count > 1
            and selection.mode is SelectionMode.UNKNOWN
            and selection.pending_item_id
        ):
            return NextStep(
                step=FlowStep.PLAN_SELECTION,
                tool="select_plan_mode",
                message=(
                    "Should the chosen plan apply to all lines, or would you like "
                    "to pick a plan for each line?"
                ),
                optional_steps=tuple(optional),
            )
        return NextStep(
            step=FlowStep.PLAN_SELECTION,
            tool=STEP_TOOLS[FlowStep.PLAN_SELECTION],
            message=f"Choose a plan for line(s) {_lines(progress.missing.plans)}.",
            optional_steps=tuple(optional),
        )

    if progress.missing.sim:
        return NextStep(
            step=FlowStep.SIM_SELECTION,
            tool=STEP_TOOLS[FlowStep.SIM_SELECTION],
            message=f"Choose a SIM type for line(s) {_lines(progress.missing.sim)}.",
            optional_steps=tuple(optional),
        )

    if flow.checkout_data_collected:
        message = "Everything is set, including shipping. Your order is ready to purchase."
    else:
        message = "All lines have a plan and SIM. Review your cart and add a shipping address."
    return NextStep(
        step=FlowStep.CHECKOUT,
        tool=STEP_TOOLS[FlowStep.CHECKOUT],
        message=message,
        optional_steps=tuple(optional),
    )


def checkout_missing(flow: FlowContext, progress: Progress | None = None) -> list[str]:
    """Required categories still missing before checkout."""
    if not flow.is_configured:
        return ["line_count"]
    if progress is None:
        progress = compute_progress(flow)
    missing = []
    if progress.missing.plans:
        missing.append("plans")
    if progress.missing.sim:
        missing.append("sim")
    return missing
