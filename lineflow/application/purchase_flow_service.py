"""Purchase flow application service.

Orchestrates every session-scoped use case:
- Starting a session and setting or changing the line count
- Adding plans, devices, protection and SIMs to lines
- Plan and device selection modes (apply to all / mix and match)
- Editing and clearing the cart
- Coverage checks, SIM swaps and shipping collection

Each mutation runs inside ``transaction()``, which serialises calls
for the same session and commits a working copy of the aggregate
only if the whole body succeeds. Upstream calls happen before the
session is changed, so a failed call leaves nothing half-written.
"""

import asyncio
import copy
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from typing import Any

import structlog

from lineflow.application.catalog_service import CatalogService, CatalogUnavailableError
from lineflow.application.guidance import NextStep, determine_next_step
from lineflow.application.line_assignment import (
    AssignmentReason,
    resolve_target_lines,
)
from lineflow.application.progress import (
    FlowAction,
    PrerequisiteResult,
    Progress,
    check_prerequisite,
    compute_progress,
)
from lineflow.application.selection_modes import (
    SelectionOutcome,
    choose_mode,
    clear_pending,
    decide_selection,
)
from lineflow.application.session_registry import SessionRegistry
from lineflow.domain.entities import MAX_LINES, HISTORY_LIMIT, PurchaseSession
from lineflow.domain.exceptions import (
    CatalogItemNotFoundError,
    DomainError,
    InvalidSelectionModeError,
    ValidationError,
)
from lineflow.domain.state_machines import SelectionMode
from lineflow.domain.value_objects import (
    CatalogItem,
    FlowStep,
    ItemType,
    ShippingAddress,
    SimType,
    normalize_iccid,
    normalize_imei,
    protection_for_device,
)
from lineflow.infrastructure.carrier_client import APIError, CarrierAPIClient
from lineflow.infrastructure.errors import Problem, map_error_to_problem
from lineflow.infrastructure.session_store import SessionStore, get_session_store

logger = structlog.get_logger()


# ============================================================================
# Service Result Types
# ============================================================================


@dataclass
class FlowResult:
    """Result of a session operation."""

    session_id: str = ""
    session: PurchaseSession | None = None
    success: bool = True
    error: str | None = None
    error_code: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    problem: Problem | None = None
    prerequisite: PrerequisiteResult | None = None

    @property
    def denied(self) -> bool:
        """True when a prerequisite stopped the operation."""
        return self.prerequisite is not None and not self.prerequisite.allowed


@dataclass
class AddItemResult(FlowResult):
    """Result of adding an item to the cart."""

    item: CatalogItem | None = None
    target_lines: list[int] = field(default_factory=list)
    reason: str | None = None
    parked: bool = False
    all_lines_filled: bool = False
    auto_sim_lines: list[int] = field(default_factory=list)


@dataclass
class ModeResult(FlowResult):
    """Result of choosing a selection mode."""

    mode: SelectionMode = SelectionMode.UNKNOWN
    previous_mode: SelectionMode | None = None
    item: CatalogItem | None = None
    target_lines: list[int] = field(default_factory=list)
    all_lines_filled: bool = False


@dataclass
class SimResult(FlowResult):
    """Result of choosing SIM types."""

    assigned: dict[int, str] = field(default_factory=dict)
    auto_initialized: bool = False
    swap: dict[str, Any] | None = None


class _Denied(Exception):
    """Aborts a transaction when a prerequisite is not met."""

    def __init__(self, verdict: PrerequisiteResult) -> None:
        super().__init__(verdict.reason)
        self.verdict = verdict


# ============================================================================
# Service
# ============================================================================


class PurchaseFlowService:
    """Service for the multi-line purchase flow."""

    def __init__(
        self,
        catalog: CatalogService,
        store: SessionStore | None = None,
        client: CarrierAPIClient | None = None,
        max_lines: int = MAX_LINES,
        history_limit: int = HISTORY_LIMIT,
    ) -> None:
        """Initialize the service.

        Args:
            catalog: Catalog service for item lookups.
            store: Session store (defaults to the process-wide store).
            client: Carrier client for coverage and SIM swap calls.
            max_lines: Account line limit.
            history_limit: Conversation history entries to keep.
        """
        self.catalog = catalog
        self.store = store if store is not None else get_session_store()
        self.client = client if client is not None else catalog.client
        self.registry = SessionRegistry(self.store)
        self.max_lines = max_lines
        self.history_limit = history_limit
        self._locks: dict[str, asyncio.Lock] = {}
        self.store.add_expiry_listener(self._forget_session)

    # -------------------------------------------------------------------------
    # Sessions and transactions
    # -------------------------------------------------------------------------

    def _forget_session(self, session_id: str) -> None:
        self.registry.forget(session_id)
        lock = self._locks.get(session_id)
        if lock is not None and not lock.locked():
            del self._locks[session_id]

    def resolve_session(self, session_id: str | None = None) -> str:
        """Resolve (and create if needed) the session for a call."""
        return self.registry.resolve(session_id).session_id

    def get_session(self, session_id: str) -> PurchaseSession:
        """Current state of a session; a fresh one if it is absent."""
        return self.store.get(session_id) or PurchaseSession(id=session_id)

    @asynccontextmanager
    async def transaction(self, session_id: str) -> AsyncIterator[PurchaseSession]:
        """Serialised, all-or-nothing update of one session.

        Yields a deep copy of the stored aggregate. The copy replaces
        the stored session only if the block exits without raising.
        """
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        async with lock:
            with structlog.contextvars.bound_contextvars(session_id=session_id):
                stored = self.store.get(session_id) or PurchaseSession.create(session_id)
                working = copy.deepcopy(stored)
                yield working
                self.store.save(working)
                for event in working.collect_events():
                    logger.info("Domain event", **event.to_dict())

    def _bookkeep(self, session: PurchaseSession, intent: str, step: FlowStep | None = None) -> None:
        session.record_intent(intent, history_limit=self.history_limit)
        if step is not None:
            session.set_resume_step(step)

    @staticmethod
    def _domain_failure(result: FlowResult, error: DomainError) -> FlowResult:
        result.success = False
        result.error = error.message
        result.error_code = error.error_code
        result.details = dict(error.details)
        return result

    @staticmethod
    def _upstream_failure(result: FlowResult, subject: str, error: APIError | None) -> FlowResult:
        result.success = False
        result.problem = map_error_to_problem(error)
        result.error = error.message if error else f"Unable to reach {subject}"
        result.error_code = error.error_code if error else "UPSTREAM_ERROR"
        return result

    # -------------------------------------------------------------------------
    # Line count
    # -------------------------------------------------------------------------

    async def start_session(
        self,
        session_id: str | None = None,
        line_count: int | None = None,
    ) -> FlowResult:
        """Resolve the session and optionally set its line count.

        Args:
            session_id: Explicit session id, if the caller has one.
            line_count: Number of lines to configure.

        Returns:
            FlowResult with the session state.
        """
        resolved = self.registry.resolve(session_id)
        result = FlowResult(session_id=resolved.session_id)
        result.details = {"source": resolved.source.value, "created": resolved.created}
        try:
            async with self.transaction(resolved.session_id) as session:
                if line_count is not None:
                    session.set_line_count(line_count, self.max_lines)
                step = FlowStep.PLAN_SELECTION if session.flow.is_configured else FlowStep.LINE_COUNT
                self._bookkeep(session, "start_session", step)
        except DomainError as e:
            return self._domain_failure(result, e)

        result.session = self.get_session(resolved.session_id)
        logger.info("Session started", session_id=resolved.session_id, line_count=line_count)
        return result

    async def update_line_count(self, session_id: str, line_count: int) -> FlowResult:
        """Change the number of lines.

        Shrinking is refused when a line that would be dropped holds
        any item; the error lists those lines.
        """
        result = FlowResult(session_id=session_id)
        try:
            async with self.transaction(session_id) as session:
                previous = session.line_count
                session.set_line_count(line_count, self.max_lines)
                self._bookkeep(session, "update_line_count")
                result.details = {"previous": previous, "current": line_count}
        except DomainError as e:
            logger.info("Line count change refused", session_id=session_id, error=e.message)
            return self._domain_failure(result, e)

        result.session = self.get_session(session_id)
        return result

    async def ensure_initialized(self, session_id: str) -> bool:
        """Give an unconfigured session one line.

        Returns:
            True if the session was auto-initialised.
        """
        if self.get_session(session_id).flow.is_configured:
            return False
        async with self.transaction(session_id) as session:
            created = session.ensure_configured()
        if created:
            logger.info("Auto-initialized purchase flow with one line", session_id=session_id)
        return created

    # -------------------------------------------------------------------------
    # Adding items
    # -------------------------------------------------------------------------

    async def add_item(
        self,
        session_id: str,
        item_type: ItemType,
        item_id: str | None = None,
        item_name: str | None = None,
        line_number: int | None = None,
        line_numbers: list[int] | None = None,
        apply_to_all: bool = False,
    ) -> AddItemResult:
        """Add a plan, device or protection to the cart.

        Without explicit lines, plans and devices on a multi-line order
        follow the selection mode: parked until a mode is chosen, then
        broadcast (apply to all) or placed line by line (mix and match).
        Protection goes to the first line with an unprotected device.

        Args:
            session_id: Session identifier.
            item_type: Kind of item.
            item_id: Catalog id of the item.
            item_name: Item name, used when no id is given.
            line_number: Explicit target line.
            line_numbers: Several explicit target lines.
            apply_to_all: Place the item on every line.

        Returns:
            AddItemResult describing what was placed where.
        """
        result = AddItemResult(session_id=session_id)
        reference = (item_id or item_name or "").strip()

        if item_type is ItemType.SIM:
            sim = await self.select_sim(
                session_id,
                sim_type=reference or SimType.ESIM.value,
                line_number=line_number,
                line_numbers=line_numbers,
            )
            result.session, result.success = sim.session, sim.success
            result.error, result.error_code = sim.error, sim.error_code
            result.target_lines = sorted(sim.assigned)
            return result

        if item_type is not ItemType.PROTECTION and not reference:
            return self._domain_failure(
                result,
                ValidationError(f"Provide an item id or name for the {item_type.value}."),
            )

        item: CatalogItem | None = None
        if item_type is not ItemType.PROTECTION:
            try:
                item = await self.catalog.find_item(item_type, reference)
            except CatalogUnavailableError as e:
                return self._upstream_failure(result, e.subject, e.error)
            except CatalogItemNotFoundError as e:
                await self._drop_pending(session_id, item_type)
                return self._domain_failure(result, e)
        result.item = item

        explicit = apply_to_all or line_number is not None or bool(line_numbers)
        try:
            async with self.transaction(session_id) as session:
                if item_type is ItemType.PROTECTION:
                    verdict = check_prerequisite(session.flow, FlowAction.ADD_PROTECTION, line_number)
                    if not verdict.allowed:
                        raise _Denied(verdict)

                session.ensure_configured()

                if item is not None and not explicit:
                    self._place_by_mode(session, item, result)
                else:
                    self._place_by_assignment(
                        session, item_type, item, result, line_number, line_numbers, apply_to_all
                    )

                self._bookkeep(session, f"add_{item_type.value}", FlowStep.for_item(item_type))
        except _Denied as denied:
            result.prerequisite = denied.verdict
            result.session = self.get_session(session_id)
            return result
        except DomainError as e:
            return self._domain_failure(result, e)

        result.session = self.get_session(session_id)
        logger.info(
            "Item added",
            session_id=session_id,
            item_type=item_type.value,
            item_id=result.item.id if result.item else None,
            lines=result.target_lines,
            parked=result.parked,
        )
        return result

    def _place_by_mode(
        self,
        session: PurchaseSession,
        item: CatalogItem,
        result: AddItemResult,
    ) -> None:
        flow = session.flow
        flow.normalize_lines()
        selection = flow.selection(item.item_type)
        decision = decide_selection(
            selection,
            flow.line_count or 0,
            flow.filled(item.item_type),
            item.id,
        )
        session.update_selection(decision.state)

        if decision.outcome is SelectionOutcome.PARK:
            result.parked = True
            result.reason = "awaiting_mode"
            return
        if decision.outcome is SelectionOutcome.COMPLETE:
            result.all_lines_filled = True
            result.reason = "all_lines_filled"
            return

        for line in decision.target_lines:
            if session.assign_item(line, item):
                result.auto_sim_lines.append(line)
        result.target_lines = list(decision.target_lines)
        result.all_lines_filled = decision.all_lines_filled
        if (flow.line_count or 0) <= 1:
            result.reason = AssignmentReason.AUTO_ASSIGNED.value
        else:
            result.reason = decision.state.mode.value.lower()

    def _place_by_assignment(
        self,
        session: PurchaseSession,
        item_type: ItemType,
        item: CatalogItem | None,
        result: AddItemResult,
        line_number: int | None,
        line_numbers: list[int] | None,
        apply_to_all: bool,
    ) -> None:
        assignment = resolve_target_lines(
            session.flow,
            item_type,
            explicit_line=line_number,
            explicit_line_numbers=line_numbers,
            wants_all=apply_to_all,
        )
        if not assignment.ok:
            raise ValidationError(
                assignment.error or "Could not resolve a target line.",
                details={"line_number": line_number, "line_count": session.line_count},
            )

        for line in assignment.lines:
            if item_type is ItemType.PROTECTION:
                verdict = check_prerequisite(session.flow, FlowAction.ADD_PROTECTION, line)
                if not verdict.allowed:
                    raise _Denied(verdict)
                placed = protection_for_device(session.cart.line(line).device)
            elif item is None:
                raise ValidationError(f"Provide an item id or name for the {item_type.value}.")
            else:
                placed = item
            if session.assign_item(line, placed):
                result.auto_sim_lines.append(line)
            result.item = placed

        if item is not None:
            selection = session.flow.selection(item_type)
            session.update_selection(
                replace(selection, pending_item_id=None, last_chosen_item_id=item.id)
            )
        result.target_lines = list(assignment.lines)
        result.reason = assignment.reason.value

    async def _drop_pending(self, session_id: str, item_type: ItemType) -> None:
        if item_type not in (ItemType.PLAN, ItemType.DEVICE):
            return
        if not self.get_session(session_id).flow.selection(item_type).pending_item_id:
            return
        async with self.transaction(session_id) as session:
            session.update_selection(clear_pending(session.flow.selection(item_type)))

    # -------------------------------------------------------------------------
    # Selection modes
    # -------------------------------------------------------------------------

    async def select_mode(
        self,
        session_id: str,
        item_type: ItemType,
        mode: str | SelectionMode,
        item_id: str | None = None,
        item_name: str | None = None,
    ) -> ModeResult:
        """Choose how plans or devices propagate across lines.

        A parked item (or one named in this call) is placed right away:
        on every line for APPLY_TO_ALL, on the active line for
        MIX_AND_MATCH.

        Args:
            session_id: Session identifier.
            item_type: PLAN or DEVICE.
            mode: "apply_to_all" or "mix_and_match".
            item_id: Optional item to place with the mode.
            item_name: Optional item name, used when no id is given.

        Returns:
            ModeResult with the new mode and the lines written.
        """
        target_mode = SelectionMode.parse(mode)
        result = ModeResult(session_id=session_id, mode=target_mode)
        if target_mode is SelectionMode.UNKNOWN:
            return self._domain_failure(result, InvalidSelectionModeError(str(mode)))

        current = self.get_session(session_id).flow.selection(item_type)
        reference = (item_id or item_name or "").strip() or current.pending_item_id
        if not reference and target_mode is SelectionMode.APPLY_TO_ALL:
            reference = current.last_chosen_item_id

        item: CatalogItem | None = None
        if reference:
            try:
                item = await self.catalog.find_item(item_type, reference)
            except CatalogUnavailableError as e:
                return self._upstream_failure(result, e.subject, e.error)
            except CatalogItemNotFoundError as e:
                await self._drop_pending(session_id, item_type)
                return self._domain_failure(result, e)

        try:
            async with self.transaction(session_id) as session:
                flow = session.flow
                flow.normalize_lines()
                decision = choose_mode(
                    flow.selection(item_type),
                    target_mode,
                    flow.line_count or 0,
                    flow.filled(item_type),
                    item_id=item.id if item else None,
                )
                session.update_selection(decision.state)
                if decision.transition is not None and decision.transition.changed:
                    result.previous_mode = decision.transition.from_state
                if decision.outcome is SelectionOutcome.APPLY and item is not None:
                    for line in decision.target_lines:
                        session.assign_item(line, item)
                    result.item = item
                    result.target_lines = list(decision.target_lines)
                result.all_lines_filled = decision.all_lines_filled
                self._bookkeep(session, f"select_{item_type.value}_mode", FlowStep.for_item(item_type))
        except DomainError as e:
            return self._domain_failure(result, e)

        result.session = self.get_session(session_id)
        logger.info(
            "Selection mode chosen",
            session_id=session_id,
            item_type=item_type.value,
            mode=target_mode.value,
            previous_mode=result.previous_mode.value if result.previous_mode else None,
            lines=result.target_lines,
        )
        return result

    async def mark_mode_prompted(self, session_id: str, item_type: ItemType) -> None:
        """Remember that the user has been asked to choose a mode."""
        async with self.transaction(session_id) as session:
            selection = session.flow.selection(item_type)
            if not selection.prompted:
                selection.prompted = True

    # -------------------------------------------------------------------------
    # SIM selection
    # -------------------------------------------------------------------------

    async def select_sim(
        self,
        session_id: str,
        sim_type: str | None = None,
        line_number: int | None = None,
        line_numbers: list[int] | None = None,
        selections: list[dict[str, Any]] | None = None,
        customer_id: str | None = None,
        new_iccid: str | None = None,
    ) -> SimResult:
        """Choose SIM types for one or more lines.

        Without explicit lines the SIM goes to every line that has none
        yet (or every line if all have one). An unconfigured session is
        given enough lines for the highest line requested, and a line
        number above the current count extends it.

        A physical SIM swap is attempted only for PSIM with both a
        customer id and a new ICCID. A failed swap is reported but the
        SIM type is still recorded.

        Returns:
            SimResult with the SIM type per line.
        """
        result = SimResult(session_id=session_id)
        try:
            requested = self._sim_requests(sim_type, line_number, line_numbers, selections)
            iccid = normalize_iccid(new_iccid) if new_iccid else None
        except DomainError as e:
            return self._domain_failure(result, e)

        try:
            async with self.transaction(session_id) as session:
                explicit_lines = [line for line, _ in requested if line is not None]
                needed = max(explicit_lines, default=1)
                if not session.flow.is_configured:
                    session.set_line_count(needed, self.max_lines)
                    result.auto_initialized = True
                elif needed > (session.line_count or 0):
                    session.set_line_count(needed, self.max_lines)

                assignments: list[tuple[int, SimType]] = []
                for line, sim in requested:
                    if line is not None:
                        assignments.append((line, sim))
                        continue
                    missing = [l.line_number for l in session.flow.lines if l.sim_type is None]
                    targets = missing or [l.line_number for l in session.flow.lines]
                    assignments.extend((target, sim) for target in targets)

                swap_iccid: str | None = None
                if customer_id and iccid:
                    psim_lines = [line for line, sim in assignments if sim is SimType.PSIM]
                    if psim_lines:
                        result.swap = await self._swap_sim(customer_id, iccid)
                        if result.swap["success"]:
                            swap_iccid = iccid

                for line, sim in assignments:
                    session.assign_sim(
                        line,
                        sim,
                        iccid=swap_iccid if sim is SimType.PSIM else None,
                    )
                    result.assigned[line] = sim.value
                self._bookkeep(session, "select_sim_type", FlowStep.SIM_SELECTION)
        except DomainError as e:
            return self._domain_failure(result, e)

        result.session = self.get_session(session_id)
        logger.info("SIM types selected", session_id=session_id, assigned=result.assigned)
        return result

    @staticmethod
    def _sim_requests(
        sim_type: str | None,
        line_number: int | None,
        line_numbers: list[int] | None,
        selections: list[dict[str, Any]] | None,
    ) -> list[tuple[int | None, SimType]]:
        if selections:
            requests = []
            for entry in selections:
                raw_line = entry.get("line_number", entry.get("lineNumber"))
                raw_type = entry.get("sim_type", entry.get("simType"))
                if raw_line is None or raw_type is None:
                    raise ValidationError(
                        "Each SIM selection needs a line_number and a sim_type.",
                        details={"selection": entry},
                    )
                try:
                    line = int(raw_line)
                except (TypeError, ValueError):
                    raise ValidationError(
                        f"Invalid line number '{raw_line}'. Line numbers are whole numbers.",
                        details={"selection": entry},
                    ) from None
                if line < 1:
                    raise ValidationError(f"Invalid line number {line}. Line numbers start at 1.")
                requests.append((line, SimType.parse(raw_type)))
            return requests

        if not sim_type:
            raise ValidationError("Provide a sim_type (ESIM or PSIM) or a list of selections.")
        sim = SimType.parse(sim_type)
        lines = list(line_numbers or [])
        if line_number is not None:
            lines.append(line_number)
        for line in lines:
            if line < 1:
                raise ValidationError(f"Invalid line number {line}. Line numbers start at 1.")
        if not lines:
            return [(None, sim)]
        return [(line, sim) for line in sorted(set(lines))]

    async def _swap_sim(self, customer_id: str, iccid: str) -> dict[str, Any]:
        response = await self.client.swap_sim(customer_id, iccid, SimType.PSIM.value)
        if response.success:
            logger.info("SIM swap completed", customer_id=customer_id)
            return {"success": True, "iccid": iccid, "data": response.data}
        problem = map_error_to_problem(response.error)
        logger.warning(
            "SIM swap failed",
            customer_id=customer_id,
            problem=problem.type.value,
        )
        return {
            "success": False,
            "iccid": iccid,
            "error": response.error.message if response.error else "SIM swap failed",
            "problem": problem.to_dict(),
        }

    # -------------------------------------------------------------------------
    # Editing
    # -------------------------------------------------------------------------

    async def edit_item(
        self,
        session_id: str,
        action: str,
        item_type: ItemType,
        line_number: int,
        old_item_id: str | None = None,
        new_item_id: str | None = None,
        new_sim_type: str | None = None,
    ) -> FlowResult:
        """Remove or replace an item on a specific line.

        Args:
            session_id: Session identifier.
            action: "remove", "change" or "update".
            item_type: Kind of item to edit.
            line_number: Line to edit.
            old_item_id: Item expected on the line, checked when given.
            new_item_id: Replacement plan or device.
            new_sim_type: Replacement SIM type.

        Returns:
            FlowResult with ``details`` describing the change.
        """
        result = FlowResult(session_id=session_id)
        action = (action or "").strip().lower()
        if action not in ("remove", "change", "update"):
            return self._domain_failure(
                result,
                ValidationError(
                    f"Invalid action '{action}'. Use remove, change or update.",
                    details={"action": action},
                ),
            )

        replacement: CatalogItem | None = None
        if action != "remove" and item_type in (ItemType.PLAN, ItemType.DEVICE):
            if not new_item_id:
                return self._domain_failure(
                    result,
                    ValidationError(f"new_item_id is required to {action} a {item_type.value}."),
                )
            try:
                replacement = await self.catalog.find_item(item_type, new_item_id)
            except CatalogUnavailableError as e:
                return self._upstream_failure(result, e.subject, e.error)
            except CatalogItemNotFoundError as e:
                return self._domain_failure(result, e)

        try:
            async with self.transaction(session_id) as session:
                state = session.flow.line(line_number)
                current_id = state.item_id(item_type)
                if old_item_id and current_id and old_item_id != current_id:
                    raise ValidationError(
                        f"Line {line_number} has {item_type.value} '{current_id}', "
                        f"not '{old_item_id}'.",
                        details={"current_item_id": current_id, "old_item_id": old_item_id},
                    )

                if action == "remove":
                    removed = session.remove_item(line_number, item_type)
                    if not removed:
                        raise ValidationError(
                            f"Line {line_number} has no {item_type.value} to remove.",
                            details={"line_number": line_number},
                        )
                    result.details = {
                        "action": action,
                        "line_number": line_number,
                        "removed": [t.value for t in removed],
                    }
                else:
                    result.details = self._replace_item(
                        session, item_type, line_number, replacement, new_sim_type
                    )
                    result.details["action"] = action
                self._bookkeep(session, f"edit_{item_type.value}")
        except _Denied as denied:
            result.prerequisite = denied.verdict
            result.session = self.get_session(session_id)
            return result
        except DomainError as e:
            return self._domain_failure(result, e)

        result.session = self.get_session(session_id)
        return result

    @staticmethod
    def _replace_item(
        session: PurchaseSession,
        item_type: ItemType,
        line_number: int,
        replacement: CatalogItem | None,
        new_sim_type: str | None,
    ) -> dict[str, Any]:
        if item_type is ItemType.SIM:
            if not new_sim_type:
                raise ValidationError("new_sim_type is required to change a SIM.")
            sim = SimType.parse(new_sim_type)
            session.assign_sim(line_number, sim)
            return {"line_number": line_number, "sim_type": sim.value}

        if item_type is ItemType.PROTECTION:
            verdict = check_prerequisite(session.flow, FlowAction.ADD_PROTECTION, line_number)
            if not verdict.allowed:
                raise _Denied(verdict)
            protection = protection_for_device(session.cart.line(line_number).device)
            session.assign_item(line_number, protection)
            return {"line_number": line_number, "item": protection.to_dict()}

        if replacement is None:
            raise ValidationError(f"new_item_id is required to change a {item_type.value}.")
        session.assign_item(line_number, replacement)
        details: dict[str, Any] = {"line_number": line_number, "item": replacement.to_dict()}
        protection = session.cart.line(line_number).get(ItemType.PROTECTION)
        if item_type is ItemType.DEVICE and protection is not None:
            details["protection"] = protection.to_dict()
        return details

    async def clear_cart(self, session_id: str, reset_flow_context: bool = True) -> FlowResult:
        """Empty the cart, optionally resetting the whole flow."""
        result = FlowResult(session_id=session_id)
        async with self.transaction(session_id) as session:
            cleared = session.cart.populated_line_numbers()
            session.clear(reset_flow=reset_flow_context)
            if not reset_flow_context:
                self._bookkeep(session, "clear_cart")
        result.details = {"cleared_lines": cleared, "reset_flow_context": reset_flow_context}
        result.session = self.get_session(session_id)
        logger.info("Cart cleared", session_id=session_id, reset=reset_flow_context)
        return result

    # -------------------------------------------------------------------------
    # Coverage and devices
    # -------------------------------------------------------------------------

    async def check_coverage(self, session_id: str, zip_code: str) -> FlowResult:
        """Look up coverage for a zip code without disturbing the flow.

        A failure is reported with guidance but never blocks the
        purchase; the resume step is left as it was.
        """
        result = FlowResult(session_id=session_id)
        zip_code = (zip_code or "").strip()
        if not (len(zip_code) == 5 and zip_code.isdigit()):
            return self._domain_failure(
                result,
                ValidationError(
                    f"Invalid zip code '{zip_code}'. Use a 5-digit US zip code.",
                    details={"zip_code": zip_code},
                ),
            )

        response = await self.client.check_coverage(zip_code)
        if not response.success:
            self._upstream_failure(result, "coverage", response.error)
            result.session = self.get_session(session_id)
            return result

        async with self.transaction(session_id) as session:
            session.record_coverage(zip_code)
            session.record_intent("check_coverage", history_limit=self.history_limit)

        result.details = {"zip_code": zip_code, "coverage": response.data or {}}
        result.session = self.get_session(session_id)
        return result

    async def validate_device(self, imei: str) -> FlowResult:
        """Check whether a device (by IMEI) works on the network."""
        result = FlowResult()
        try:
            cleaned = normalize_imei(imei)
        except DomainError as e:
            return self._domain_failure(result, e)

        response = await self.client.validate_device(cleaned)
        if not response.success:
            return self._upstream_failure(result, "device validation", response.error)
        result.details = {"imei": cleaned, "device": response.data or {}}
        return result

    # -------------------------------------------------------------------------
    # Checkout
    # -------------------------------------------------------------------------

    async def collect_shipping_address(
        self,
        session_id: str,
        address: dict[str, Any],
    ) -> FlowResult:
        """Store the shipping address once the cart is ready for checkout."""
        result = FlowResult(session_id=session_id)
        verdict = check_prerequisite(
            self.get_session(session_id).flow, FlowAction.COLLECT_SHIPPING
        )
        if not verdict.allowed:
            result.prerequisite = verdict
            result.session = self.get_session(session_id)
            return result

        try:
            shipping = ShippingAddress.from_dict(address)
            async with self.transaction(session_id) as session:
                verdict = check_prerequisite(session.flow, FlowAction.COLLECT_SHIPPING)
                if not verdict.allowed:
                    raise _Denied(verdict)
                session.set_shipping_address(shipping)
                session.record_intent("collect_shipping_address", history_limit=self.history_limit)
        except _Denied as denied:
            result.prerequisite = denied.verdict
            result.session = self.get_session(session_id)
            return result
        except DomainError as e:
            return self._domain_failure(result, e)

        result.details = {"shipping_address": shipping.to_dict()}
        result.session = self.get_session(session_id)
        return result

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def progress(self, session_id: str) -> Progress:
        session = self.get_session(session_id)
        return compute_progress(session.flow, session.cart)

    def prerequisite(
        self,
        session_id: str,
        action: FlowAction | str,
        line_number: int | None = None,
    ) -> PrerequisiteResult:
        return check_prerequisite(self.get_session(session_id).flow, action, line_number)

    def next_step(self, session_id: str) -> NextStep:
        session = self.get_session(session_id)
        return determine_next_step(session.flow, compute_progress(session.flow, session.cart))
