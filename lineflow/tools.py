"""MCP Tools for LineFlow.

Thin adapters over the purchase flow service. Each tool returns the
same envelope so an agent can always read the outcome the same way:

    {
        "success": bool,
        "is_error": bool,
        "message": str,
        "data": {...},
        "meta": {"session_id", "suggested_tool", "flow_stage",
                 "resume_step", "problem"},
    }

An unmet prerequisite is not an error: it comes back with
``success: true`` and ``data.allowed: false``, naming what is missing.
"""

from decimal import Decimal
from typing import Any

import structlog

from lineflow.application.catalog_service import CatalogService
from lineflow.application.guidance import STEP_TOOLS, checkout_missing, determine_next_step
from lineflow.application.progress import (
    FlowAction,
    Gate,
    PrerequisiteResult,
    compute_progress,
)
from lineflow.application.purchase_flow_service import (
    AddItemResult,
    FlowResult,
    PurchaseFlowService,
)
from lineflow.domain.entities import PurchaseSession
from lineflow.domain.state_machines import SelectionMode
from lineflow.domain.value_objects import ItemType, protection_for_device
from lineflow.infrastructure.carrier_client import APIError
from lineflow.infrastructure.errors import Problem, describe_problem, map_error_to_problem

logger = structlog.get_logger()

GATE_TOOLS: dict[Gate, str] = {
    Gate.NEED_LINES: "start_session",
    Gate.NEED_PLANS: "get_plans",
    Gate.NEED_SIM: "get_sim_types",
    Gate.NEED_DEVICE: "get_devices",
}

MODE_TOOLS: dict[ItemType, str] = {
    ItemType.PLAN: "select_plan_mode",
    ItemType.DEVICE: "select_device_mode",
}


def format_price(amount_cents: int, currency: str = "USD") -> str:
    """Format price in cents to human-readable string."""
    return f"${amount_cents / 100:.2f}" if currency == "USD" else f"{amount_cents / 100:.2f} {currency}"


def format_error(result: FlowResult) -> str:
    """Format a failed service result for MCP output."""
    if result.error_code:
        return f"Error [{result.error_code}]: {result.error}"
    return result.error or "Unknown error occurred"


def envelope(
    success: bool = True,
    message: str = "",
    data: dict[str, Any] | None = None,
    *,
    is_error: bool = False,
    session: PurchaseSession | None = None,
    session_id: str | None = None,
    suggested_tool: str | None = None,
    problem: Problem | None = None,
) -> dict[str, Any]:
    """Build the standard tool response."""
    flow = session.flow if session else None
    return {
        "success": success,
        "is_error": is_error,
        "message": message,
        "data": data or {},
        "meta": {
            "session_id": session.id if session else session_id,
            "suggested_tool": suggested_tool,
            "flow_stage": flow.flow_stage.value if flow else None,
            "resume_step": flow.resume_step.value if flow and flow.resume_step else None,
            "problem": problem.to_dict() if problem else None,
        },
    }


class MCPTools:
    """MCP Tools for LineFlow.

    One method per tool. Methods never raise for expected failures;
    validation errors, upstream problems and unmet prerequisites all
    come back as envelopes.
    """

    def __init__(self, service: PurchaseFlowService, catalog: CatalogService | None = None) -> None:
        """Initialize MCP tools.

        Args:
            service: Purchase flow service.
            catalog: Catalog service (defaults to the service's own).
        """
        self.service = service
        self.catalog = catalog if catalog is not None else service.catalog

    # =========================================================================
    # Helpers
    # =========================================================================

    def _failure(self, result: FlowResult, subject: str = "the request") -> dict[str, Any]:
        session = result.session or (
            self.service.get_session(result.session_id) if result.session_id else None
        )
        if result.problem is not None:
            return envelope(
                False,
                describe_problem(result.problem, subject),
                {"error_code": result.error_code, "error": result.error},
                is_error=True,
                session=session,
                session_id=result.session_id,
                problem=result.problem,
            )
        return envelope(
            False,
            format_error(result),
            {"error_code": result.error_code, "details": result.details},
            is_error=True,
            session=session,
            session_id=result.session_id,
        )

    @staticmethod
    def _denial(
        verdict: PrerequisiteResult,
        session: PurchaseSession | None,
        extra: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        data = verdict.to_dict()
        data.update(extra or {})
        return envelope(
            True,
            verdict.reason or "This step is not available yet.",
            data,
            session=session,
            suggested_tool=GATE_TOOLS.get(verdict.gate),
        )

    @staticmethod
    def _upstream(
        error: APIError | None,
        subject: str,
        session: PurchaseSession | None = None,
    ) -> dict[str, Any]:
        problem = map_error_to_problem(error)
        return envelope(
            False,
            describe_problem(problem, subject),
            {"error_code": error.error_code if error else None},
            is_error=True,
            session=session,
            problem=problem,
        )

    @staticmethod
    def _cart_data(session: PurchaseSession) -> dict[str, Any]:
        lines = []
        for cart_line in session.visible_cart_lines():
            entry = cart_line.to_dict()
            entry["subtotal_formatted"] = format_price(cart_line.subtotal.amount_cents)
            lines.append(entry)
        return {
            "line_count": session.line_count,
            "lines": lines,
            "total": float(session.total.to_decimal()),
            "total_cents": session.total.amount_cents,
            "total_formatted": format_price(session.total.amount_cents),
            "assignments": session.assignment_summary(),
        }

    def _suggested_after(self, session: PurchaseSession) -> str:
        return determine_next_step(session.flow).tool

    @staticmethod
    def _parse_item_type(value: str) -> ItemType | None:
        try:
            return ItemType((value or "").strip().lower())
        except ValueError:
            return None

    @staticmethod
    def _unknown_item_type(value: str, session_id: str | None) -> dict[str, Any]:
        return envelope(
            False,
            f"Unknown item_type '{value}'. Use plan, device, protection or sim.",
            {"error_code": "VALIDATION_ERROR"},
            is_error=True,
            session_id=session_id,
        )

    # =========================================================================
    # Tool: start_session
    # =========================================================================

    async def start_session(
        self,
        session_id: str | None = None,
        line_count: int | None = None,
    ) -> dict[str, Any]:
        """Start or resume a purchase session.

        Args:
            session_id: Optional session ID; resolved if omitted.
            line_count: Optional number of lines to configure.

        Returns:
            Session state and the next step.
        """
        logger.info("Starting session", session_id=session_id, line_count=line_count)
        result = await self.service.start_session(session_id, line_count)
        if not result.success:
            return self._failure(result)

        session = result.session or self.service.get_session(result.session_id)
        if session.flow.is_configured:
            message = (
                f"Session ready with {session.line_count} line(s). "
                "Use get_plans to choose a plan."
            )
        else:
            message = "Session ready. How many lines would you like to set up?"
        return envelope(
            True,
            message,
            {
                "line_count": session.line_count,
                "flow_context": session.flow.to_dict(),
                **result.details,
            },
            session=session,
            suggested_tool=self._suggested_after(session),
        )

    # =========================================================================
    # Catalog tools
    # =========================================================================

    async def get_plans(
        self,
        session_id: str | None = None,
        max_price: Decimal | float | None = None,
    ) -> dict[str, Any]:
        """List mobile plans.

        Asks for the line count first when it is not set. On a
        multi-line order with no plan mode yet, asks how plans should
        be applied.
        """
        sid = self.service.resolve_session(session_id)
        session = self.service.get_session(sid)
        logger.info("Listing plans", session_id=sid, max_price=max_price)

        if not session.flow.is_configured:
            return envelope(
                True,
                "Before showing plans: how many lines would you like to set up?",
                {"needs_line_count": True},
                session=session,
                suggested_tool="start_session",
            )

        result = await self.catalog.get_plans(max_price=max_price)
        if not result.success:
            return self._upstream(result.error, "plans", session)

        data: dict[str, Any] = {
            "plans": [
                {**plan.to_dict(), "price_formatted": format_price(plan.price.amount_cents)}
                for plan in result.items
            ],
            "count": len(result.items),
            "line_count": session.line_count,
        }
        message = f"Found {len(result.items)} plan(s)."
        suggested = "add_to_cart"

        selection = session.flow.plan_selection
        if (session.line_count or 0) > 1 and selection.mode is SelectionMode.UNKNOWN:
            await self.service.mark_mode_prompted(sid, ItemType.PLAN)
            session = self.service.get_session(sid)
            data["mode_prompt"] = {
                "question": (
                    f"You have {session.line_count} lines. Should one plan apply to all "
                    "lines, or would you like to choose a plan for each line?"
                ),
                "options": ["apply_to_all", "mix_and_match"],
            }
            message += " " + data["mode_prompt"]["question"]
            suggested = "select_plan_mode"

        return envelope(True, message, data, session=session, suggested_tool=suggested)

    async def get_offers(self, session_id: str | None = None) -> dict[str, Any]:
        """List current carrier offers."""
        sid = self.service.resolve_session(session_id)
        result = await self.catalog.get_offers()
        if not result.success:
            return self._upstream(result.error, "offers", self.service.get_session(sid))
        return envelope(
            True,
            f"Found {len(result.raw)} offer(s).",
            {"offers": result.raw, "count": len(result.raw)},
            session=self.service.get_session(sid),
        )

    async def get_services(self, session_id: str | None = None) -> dict[str, Any]:
        """List add-on services."""
        sid = self.service.resolve_session(session_id)
        result = await self.catalog.get_services()
        if not result.success:
            return self._upstream(result.error, "services", self.service.get_session(sid))
        return envelope(
            True,
            f"Found {len(result.raw)} service(s).",
            {"services": result.raw, "count": len(result.raw)},
            session=self.service.get_session(sid),
        )

    async def get_devices(self, session_id: str | None = None, limit: int = 8) -> dict[str, Any]:
        """List devices from the device store."""
        sid = self.service.resolve_session(session_id)
        logger.info("Listing devices", session_id=sid, limit=limit)
        result = await self.catalog.get_devices(limit=limit)
        session = self.service.get_session(sid)
        if not result.success:
            return self._upstream(result.error, "devices", session)

        data: dict[str, Any] = {
            "devices": [
                {**device.to_dict(), "price_formatted": format_price(device.price.amount_cents)}
                for device in result.items
            ],
            "count": len(result.items),
        }
        message = f"Found {len(result.items)} device(s). Devices are optional."
        suggested = "add_to_cart"
        selection = session.flow.device_selection
        if (session.line_count or 0) > 1 and selection.mode is SelectionMode.UNKNOWN:
            await self.service.mark_mode_prompted(sid, ItemType.DEVICE)
            session = self.service.get_session(sid)
            data["mode_prompt"] = {
                "question": "Should one device go on every line, or a different device per line?",
                "options": ["apply_to_all", "mix_and_match"],
            }
        return envelope(True, message, data, session=session, suggested_tool=suggested)

    async def get_protection_plan(
        self,
        session_id: str | None = None,
        line_number: int | None = None,
    ) -> dict[str, Any]:
        """Show protection offers for lines that have a device."""
        sid = self.service.resolve_session(session_id)
        session = self.service.get_session(sid)
        verdict = self.service.prerequisite(sid, FlowAction.ADD_PROTECTION, line_number)
        if not verdict.allowed:
            return self._denial(verdict, session)

        lines = [line_number] if line_number else [
            line.line_number for line in session.flow.lines if line.device_selected
        ]
        offers = []
        for number in lines:
            device = session.cart.line(number).device if number in session.cart.lines else None
            offer = protection_for_device(device)
            offers.append({
                "line_number": number,
                "device": device.name if device else None,
                "protection": offer.to_dict(),
                "price_formatted": format_price(offer.price.amount_cents),
            })

        data: dict[str, Any] = {"offers": offers}
        states = await self.service.client.fetch_protection_states()
        if states.success and states.data:
            data["eligible_states"] = states.data

        return envelope(
            True,
            f"Device protection is available for {len(offers)} line(s).",
            data,
            session=session,
            suggested_tool="add_to_cart",
        )

    async def get_sim_types(self, session_id: str | None = None) -> dict[str, Any]:
        """List SIM types and the lines still needing one."""
        sid = self.service.resolve_session(session_id)
        auto_initialized = await self.service.ensure_initialized(sid)
        session = self.service.get_session(sid)
        missing = [line.line_number for line in session.flow.lines if line.sim_type is None]
        message = "Choose eSIM or a physical SIM for each line."
        if auto_initialized:
            message = "Set up 1 line for you. " + message
        return envelope(
            True,
            message,
            {
                "sim_types": [item.to_dict() for item in self.catalog.get_sim_types()],
                "lines_missing_sim": missing,
                "auto_initialized": auto_initialized,
            },
            session=session,
            suggested_tool="select_sim_type",
        )

    # =========================================================================
    # Tool: select_plan_mode / select_device_mode
    # =========================================================================

    async def select_mode(
        self,
        item_type: ItemType,
        mode: str,
        session_id: str | None = None,
        item_id: str | None = None,
        item_name: str | None = None,
    ) -> dict[str, Any]:
        """Choose how plans or devices are applied across lines."""
        sid = self.service.resolve_session(session_id)
        result = await self.service.select_mode(sid, item_type, mode, item_id, item_name)
        if not result.success:
            return self._failure(result, f"{item_type.value}s")

        session = result.session or self.service.get_session(result.session_id)
        noun = item_type.value
        if result.mode is SelectionMode.APPLY_TO_ALL:
            if result.target_lines:
                message = f"Applied {result.item.name} to all {len(result.target_lines)} lines."
            else:
                message = f"Great, one {noun} for all lines. Which {noun} would you like?"
        elif result.target_lines:
            remaining = [
                line.line_number for line in session.flow.lines if not line.has(item_type)
            ]
            message = f"Added {result.item.name} to Line {result.target_lines[0]}."
            if remaining:
                message += f" Which {noun} for Line {remaining[0]}?"
        else:
            message = f"OK, we'll pick a {noun} for each line, starting with Line 1."

        suggested = self._suggested_after(session)
        if not result.target_lines or (
            result.mode is SelectionMode.MIX_AND_MATCH and not result.all_lines_filled
        ):
            suggested = "get_plans" if item_type is ItemType.PLAN else "get_devices"
        return envelope(
            True,
            message,
            {
                "mode": result.mode.value,
                "selection_mode": result.mode.label,
                "previous_mode": result.previous_mode.value if result.previous_mode else None,
                "item": result.item.to_dict() if result.item else None,
                "lines_updated": result.target_lines,
                "all_lines_filled": result.all_lines_filled,
                "cart": self._cart_data(session),
            },
            session=session,
            suggested_tool=suggested,
        )

    async def select_plan_mode(self, mode: str, **kwargs: Any) -> dict[str, Any]:
        return await self.select_mode(ItemType.PLAN, mode, **kwargs)

    async def select_device_mode(self, mode: str, **kwargs: Any) -> dict[str, Any]:
        return await self.select_mode(ItemType.DEVICE, mode, **kwargs)

    # =========================================================================
    # Tool: add_to_cart
    # =========================================================================

    async def add_to_cart(
        self,
        item_type: str,
        session_id: str | None = None,
        item_id: str | None = None,
        item_name: str | None = None,
        line_number: int | None = None,
        line_numbers: list[int] | None = None,
        apply_to_all: bool = False,
    ) -> dict[str, Any]:
        """Add a plan, device, protection or SIM to the cart.

        Args:
            item_type: plan, device, protection or sim.
            session_id: Optional session ID.
            item_id: Catalog id of the item.
            item_name: Item name when the id is not known.
            line_number: Explicit line to place the item on.
            line_numbers: Several explicit lines.
            apply_to_all: Place the item on every line.

        Returns:
            What was placed where, plus the updated cart.
        """
        kind = self._parse_item_type(item_type)
        if kind is None:
            return self._unknown_item_type(item_type, session_id)
        sid = self.service.resolve_session(session_id)
        logger.info(
            "Adding to cart",
            session_id=sid,
            item_type=kind.value,
            item_id=item_id,
            line_number=line_number,
        )
        result = await self.service.add_item(
            sid,
            kind,
            item_id=item_id,
            item_name=item_name,
            line_number=line_number,
            line_numbers=line_numbers,
            apply_to_all=apply_to_all,
        )
        if result.denied:
            return self._denial(result.prerequisite, result.session)
        if not result.success:
            return self._failure(result, f"{kind.value}s")

        session = result.session or self.service.get_session(result.session_id)
        message, suggested = self._describe_add(kind, result, session)
        progress = compute_progress(session.flow, session.cart)
        return envelope(
            True,
            message,
            {
                "item": result.item.to_dict() if result.item else None,
                "lines_updated": result.target_lines,
                "assignment_reason": result.reason,
                "parked": result.parked,
                "all_lines_filled": result.all_lines_filled,
                "auto_sim_lines": result.auto_sim_lines,
                "cart": self._cart_data(session),
                "progress": progress.to_dict(),
            },
            session=session,
            suggested_tool=suggested,
        )

    def _describe_add(
        self,
        kind: ItemType,
        result: AddItemResult,
        session: PurchaseSession,
    ) -> tuple[str, str]:
        noun = kind.value
        if result.parked:
            name = result.item.name if result.item else noun
            return (
                f"You chose {name}. Should it apply to all {session.line_count} lines, "
                f"or would you like a different {noun} for each line?",
                MODE_TOOLS[kind],
            )
        if result.all_lines_filled and not result.target_lines:
            return (
                f"Every line already has a {noun}. Name a line to replace it, "
                "or use edit_cart_item.",
                "edit_cart_item",
            )

        name = result.item.name if result.item else noun
        lines = ", ".join(str(n) for n in result.target_lines)
        message = f"Added {name} to line(s) {lines}."
        if result.auto_sim_lines:
            message += " eSIM was selected by default; you can switch to a physical SIM anytime."

        selection_pending = (
            kind in MODE_TOOLS
            and session.flow.selection(kind).mode is SelectionMode.MIX_AND_MATCH
            and not all(session.flow.filled(kind))
        )
        if selection_pending:
            index = session.flow.selection(kind).active_line_index
            if index is not None:
                message += f" Which {noun} for Line {index + 1}?"
            return message, "get_plans" if kind is ItemType.PLAN else "get_devices"

        progress = compute_progress(session.flow, session.cart)
        if kind is ItemType.DEVICE and progress.missing.plans:
            return message + " Each line still needs a plan.", "get_plans"
        return message, self._suggested_after(session)

    # =========================================================================
    # Cart tools
    # =========================================================================

    async def get_cart(self, session_id: str | None = None) -> dict[str, Any]:
        """Show the cart with per-line and grand totals."""
        sid = self.service.resolve_session(session_id)
        session = self.service.get_session(sid)
        data = self._cart_data(session)
        if not data["lines"]:
            message = "Your cart is empty."
        else:
            message = f"Cart total: {data['total_formatted']} across {len(data['lines'])} line(s)."
        return envelope(
            True,
            message,
            data,
            session=session,
            suggested_tool=self._suggested_after(session),
        )

    async def review_cart(self, session_id: str | None = None) -> dict[str, Any]:
        """Check whether the cart is ready for checkout."""
        sid = self.service.resolve_session(session_id)
        session = self.service.get_session(sid)
        progress = compute_progress(session.flow, session.cart)
        verdict = self.service.prerequisite(sid, FlowAction.CHECKOUT)
        extra = {
            "ready": verdict.allowed,
            "missing_items": checkout_missing(session.flow, progress),
            "cart": self._cart_data(session),
            "progress": progress.to_dict(),
        }
        if not verdict.allowed:
            return self._denial(verdict, session, extra)

        data = verdict.to_dict()
        data.update(extra)
        if session.flow.checkout_data_collected:
            message = "Your order is complete and ready for purchase."
            suggested = None
        else:
            message = (
                f"All {session.line_count} line(s) have a plan and SIM. "
                f"Total: {extra['cart']['total_formatted']}. Please provide a shipping address."
            )
            suggested = "collect_shipping_address"
        return envelope(True, message, data, session=session, suggested_tool=suggested)

    async def update_line_count(
        self,
        line_count: int,
        session_id: str | None = None,
    ) -> dict[str, Any]:
        """Change the number of lines."""
        sid = self.service.resolve_session(session_id)
        result = await self.service.update_line_count(sid, line_count)
        if not result.success:
            return self._failure(result)
        session = result.session or self.service.get_session(result.session_id)
        return envelope(
            True,
            f"Line count updated to {line_count}.",
            {**result.details, "flow_context": session.flow.to_dict()},
            session=session,
            suggested_tool=self._suggested_after(session),
        )

    async def select_sim_type(
        self,
        session_id: str | None = None,
        sim_type: str | None = None,
        line_number: int | None = None,
        line_numbers: list[int] | None = None,
        selections: list[dict[str, Any]] | None = None,
        customer_id: str | None = None,
        new_iccid: str | None = None,
    ) -> dict[str, Any]:
        """Choose eSIM or physical SIM for one or more lines."""
        sid = self.service.resolve_session(session_id)
        result = await self.service.select_sim(
            sid,
            sim_type=sim_type,
            line_number=line_number,
            line_numbers=line_numbers,
            selections=selections,
            customer_id=customer_id,
            new_iccid=new_iccid,
        )
        if not result.success:
            return self._failure(result, "SIM selection")

        session = result.session or self.service.get_session(result.session_id)
        assigned = ", ".join(f"Line {n}: {t}" for n, t in sorted(result.assigned.items()))
        message = f"SIM type set. {assigned}."
        if result.swap is not None and not result.swap["success"]:
            message += (
                " The SIM swap could not be completed; the SIM type was still saved. "
                f"{result.swap['error']}"
            )
        return envelope(
            True,
            message,
            {
                "assigned": {str(n): t for n, t in result.assigned.items()},
                "auto_initialized": result.auto_initialized,
                "swap": result.swap,
                "progress": compute_progress(session.flow, session.cart).to_dict(),
            },
            session=session,
            suggested_tool=self._suggested_after(session),
        )

    async def edit_cart_item(
        self,
        action: str,
        item_type: str,
        line_number: int,
        session_id: str | None = None,
        old_item_id: str | None = None,
        new_item_id: str | None = None,
        new_sim_type: str | None = None,
    ) -> dict[str, Any]:
        """Remove or replace an item on a line."""
        kind = self._parse_item_type(item_type)
        if kind is None:
            return self._unknown_item_type(item_type, session_id)
        sid = self.service.resolve_session(session_id)
        result = await self.service.edit_item(
            sid,
            action,
            kind,
            line_number,
            old_item_id=old_item_id,
            new_item_id=new_item_id,
            new_sim_type=new_sim_type,
        )
        if result.denied:
            return self._denial(result.prerequisite, result.session)
        if not result.success:
            return self._failure(result, f"{kind.value}s")

        session = result.session or self.service.get_session(result.session_id)
        if result.details.get("action") == "remove":
            removed = " and ".join(result.details["removed"])
            message = f"Removed {removed} from Line {line_number}."
        else:
            message = f"Updated the {kind.value} on Line {line_number}."
        return envelope(
            True,
            message,
            {**result.details, "cart": self._cart_data(session)},
            session=session,
            suggested_tool=self._suggested_after(session),
        )

    async def clear_cart(
        self,
        session_id: str | None = None,
        reset_flow_context: bool = True,
    ) -> dict[str, Any]:
        """Empty the cart, optionally resetting the whole flow."""
        sid = self.service.resolve_session(session_id)
        result = await self.service.clear_cart(sid, reset_flow_context)
        session = result.session or self.service.get_session(result.session_id)
        message = (
            "Cart cleared and the flow was reset. How many lines would you like?"
            if reset_flow_context
            else "Cart cleared. Your line count and selection modes were kept."
        )
        return envelope(
            True,
            message,
            result.details,
            session=session,
            suggested_tool=self._suggested_after(session),
        )

    # =========================================================================
    # Coverage and device tools
    # =========================================================================

    async def check_coverage(self, zip_code: str, session_id: str | None = None) -> dict[str, Any]:
        """Check network coverage for a zip code.

        Never blocks the purchase: on failure the user can continue.
        """
        sid = self.service.resolve_session(session_id)
        result = await self.service.check_coverage(sid, zip_code)
        session = result.session or self.service.get_session(sid)
        resume_tool = (
            STEP_TOOLS.get(session.flow.resume_step) if session.flow.resume_step else None
        )
        if not result.success:
            if result.problem is None:
                return self._failure(result)
            message = (
                describe_problem(result.problem, "coverage")
                + " You can continue with your purchase without a coverage check."
            )
            return envelope(
                False,
                message,
                {"zip_code": zip_code, "blocking": False},
                is_error=True,
                session=session,
                suggested_tool=resume_tool or self._suggested_after(session),
                problem=result.problem,
            )
        return envelope(
            True,
            f"Coverage checked for {zip_code}.",
            result.details,
            session=session,
            suggested_tool=resume_tool or self._suggested_after(session),
        )

    async def validate_device(self, imei: str, session_id: str | None = None) -> dict[str, Any]:
        """Check whether a device works on the network."""
        sid = self.service.resolve_session(session_id)
        result = await self.service.validate_device(imei)
        if not result.success:
            result.session_id = sid
            return self._failure(result, "device validation")
        return envelope(
            True,
            f"Device {result.details['imei']} checked.",
            result.details,
            session=self.service.get_session(sid),
        )

    # =========================================================================
    # Flow status tools
    # =========================================================================

    async def get_flow_status(self, session_id: str | None = None) -> dict[str, Any]:
        """Snapshot of the flow context, progress and line assignments."""
        sid = self.service.resolve_session(session_id)
        session = self.service.get_session(sid)
        progress = compute_progress(session.flow, session.cart)
        return envelope(
            True,
            f"{len(progress.completed_lines)} of {progress.line_count} line(s) complete "
            f"({progress.percent}%).",
            {
                "flow_context": session.flow.to_dict(),
                "progress": progress.to_dict(),
                "assignments": session.assignment_summary(),
            },
            session=session,
            suggested_tool=self._suggested_after(session),
        )

    async def get_global_context(self, session_id: str | None = None) -> dict[str, Any]:
        """Flags summarising what has been configured."""
        sid = self.service.resolve_session(session_id)
        session = self.service.get_session(sid)
        return envelope(
            True,
            "Current purchase context.",
            {
                "flags": session.flow.global_flags(),
                "line_count": session.line_count,
                "last_intent": session.flow.last_intent,
                "conversation_history": list(session.flow.conversation_history),
            },
            session=session,
        )

    async def get_next_step(self, session_id: str | None = None) -> dict[str, Any]:
        """Recommend the next step and the tool that serves it."""
        sid = self.service.resolve_session(session_id)
        session = self.service.get_session(sid)
        step = self.service.next_step(sid)
        return envelope(
            True,
            step.message,
            step.to_dict(),
            session=session,
            suggested_tool=step.tool,
        )

    # =========================================================================
    # Tool: collect_shipping_address
    # =========================================================================

    async def collect_shipping_address(
        self,
        address: dict[str, Any],
        session_id: str | None = None,
    ) -> dict[str, Any]:
        """Store the shipping address for checkout."""
        sid = self.service.resolve_session(session_id)
        result = await self.service.collect_shipping_address(sid, address)
        if result.denied:
            return self._denial(result.prerequisite, result.session)
        if not result.success:
            return self._failure(result)

        session = result.session or self.service.get_session(result.session_id)
        return envelope(
            True,
            f"Shipping address saved. Order total: {format_price(session.total.amount_cents)}.",
            {**result.details, "cart": self._cart_data(session)},
            session=session,
            suggested_tool="review_cart",
        )
