"""Tests for the purchase flow service."""

import asyncio
from datetime import timedelta

import pytest

from lineflow.application.catalog_service import CatalogService
from lineflow.application.line_assignment import AssignmentReason
from lineflow.application.progress import Gate
from lineflow.application.purchase_flow_service import PurchaseFlowService
from lineflow.domain import FlowStage, FlowStep, ItemType, Money, SelectionMode, SimType
from lineflow.infrastructure.errors import ProblemType
from lineflow.infrastructure.session_store import SessionStore

ADDRESS = {
    "first_name": "Ada",
    "last_name": "Lovelace",
    "street": "1 Main St",
    "city": "Austin",
    "state": "TX",
    "zip_code": "78701",
}
ICCID = "8901260123456789012"


async def started(service: PurchaseFlowService, line_count: int | None = None) -> str:
    result = await service.start_session(line_count=line_count)
    assert result.success
    return result.session_id


class TestStartSession:
    """Tests for start_session and line count changes."""

    @pytest.mark.asyncio
    async def test_start_with_line_count(self, service: PurchaseFlowService) -> None:
        """Starting with a count configures the lines and moves to planning."""
        result = await service.start_session(line_count=3)

        session = result.session
        assert result.details["created"]
        assert session.line_count == 3
        assert len(session.flow.lines) == 3
        assert session.flow.flow_stage == FlowStage.PLANNING
        assert session.flow.resume_step == FlowStep.PLAN_SELECTION

    @pytest.mark.asyncio
    async def test_start_reuses_current_session(self, service: PurchaseFlowService) -> None:
        """A second call without an id resumes the same session."""
        first = await service.start_session(line_count=2)
        second = await service.start_session()

        assert second.session_id == first.session_id
        assert second.session.line_count == 2

    @pytest.mark.asyncio
    async def test_line_count_out_of_range(self, service: PurchaseFlowService) -> None:
        """Counts outside the account limit are rejected."""
        result = await service.start_session(line_count=0)

        assert not result.success
        assert result.error_code == "INVALID_LINE_COUNT"

    @pytest.mark.asyncio
    async def test_grow_line_count(self, service: PurchaseFlowService) -> None:
        """Growing keeps existing lines and pads new ones."""
        session_id = await started(service, 1)
        await service.add_item(session_id, ItemType.PLAN, item_id="plan-basic")

        result = await service.update_line_count(session_id, 3)

        assert result.details == {"previous": 1, "current": 3}
        assert result.session.flow.lines[0].plan_id == "plan-basic"
        assert not result.session.flow.lines[2].plan_selected

    @pytest.mark.asyncio
    async def test_reduction_refused_when_lines_populated(
        self, service: PurchaseFlowService
    ) -> None:
        """Shrinking past a populated line is refused and nothing changes."""
        session_id = await started(service, 3)
        await service.add_item(session_id, ItemType.PLAN, item_id="plan-basic", line_number=3)

        result = await service.update_line_count(session_id, 2)

        assert not result.success
        assert result.error_code == "LINE_COUNT_REDUCTION_REFUSED"
        assert result.details["populated_lines"] == [3]
        assert service.get_session(session_id).line_count == 3

    @pytest.mark.asyncio
    async def test_reduction_of_empty_lines(self, service: PurchaseFlowService) -> None:
        """Empty trailing lines can be dropped."""
        session_id = await started(service, 3)
        await service.add_item(session_id, ItemType.PLAN, item_id="plan-basic", line_number=1)

        result = await service.update_line_count(session_id, 1)

        assert result.success
        assert len(result.session.flow.lines) == 1
        assert service.progress(session_id).line_count == 1


class TestApplyToAll:
    """Multi-line order where one plan goes to every line."""

    @pytest.mark.asyncio
    async def test_plan_parked_then_applied(self, service: PurchaseFlowService) -> None:
        """A plan on a multi-line order waits for a mode, then fills every line."""
        session_id = await started(service, 3)

        added = await service.add_item(session_id, ItemType.PLAN, item_id="plan-unlimited")

        assert added.success
        assert added.parked
        assert added.target_lines == []
        assert service.get_session(session_id).flow.plan_selection.pending_item_id == "plan-unlimited"

        chosen = await service.select_mode(session_id, ItemType.PLAN, "apply_to_all")

        assert chosen.success
        assert chosen.mode == SelectionMode.APPLY_TO_ALL
        assert chosen.target_lines == [1, 2, 3]
        session = chosen.session
        assert [line.plan_id for line in session.flow.lines] == ["plan-unlimited"] * 3
        assert all(line.sim_type == SimType.ESIM for line in session.flow.lines)
        assert session.flow.plan_selection.pending_item_id is None
        assert session.total == Money(3 * 4500)

        progress = service.progress(session_id)
        assert progress.percent == 100
        assert progress.is_complete

    @pytest.mark.asyncio
    async def test_later_plan_overwrites_all_lines(self, service: PurchaseFlowService) -> None:
        """In APPLY_TO_ALL a new plan replaces the plan on every line."""
        session_id = await started(service, 2)
        await service.select_mode(session_id, ItemType.PLAN, "all")

        result = await service.add_item(session_id, ItemType.PLAN, item_name="basic")

        assert result.target_lines == [1, 2]
        assert result.reason == "apply_to_all"
        assert [l.plan_id for l in result.session.flow.lines] == ["plan-basic", "plan-basic"]

    @pytest.mark.asyncio
    async def test_single_line_applies_directly(self, service: PurchaseFlowService) -> None:
        """One line never needs a mode."""
        session_id = await started(service, 1)

        result = await service.add_item(session_id, ItemType.PLAN, item_id="plan-basic")

        assert not result.parked
        assert result.target_lines == [1]
        assert result.auto_sim_lines == [1]
        assert result.reason == AssignmentReason.AUTO_ASSIGNED.value


class TestMixAndMatch:
    """Multi-line order with a different plan per line."""

    @pytest.mark.asyncio
    async def test_sequential_fill(self, service: PurchaseFlowService) -> None:
        """Each plan lands on the next open line until all are filled."""
        session_id = await started(service, 2)
        await service.select_mode(session_id, ItemType.PLAN, "mix_and_match")

        first = await service.add_item(session_id, ItemType.PLAN, item_id="plan-basic")
        second = await service.add_item(session_id, ItemType.PLAN, item_id="plan-unlimited")
        third = await service.add_item(session_id, ItemType.PLAN, item_id="plan-essentials")

        assert first.target_lines == [1]
        assert second.target_lines == [2]
        assert second.all_lines_filled
        assert third.target_lines == []
        assert third.all_lines_filled
        session = service.get_session(session_id)
        assert [l.plan_id for l in session.flow.lines] == ["plan-basic", "plan-unlimited"]

    @pytest.mark.asyncio
    async def test_parked_plan_goes_to_line_one(self, service: PurchaseFlowService) -> None:
        """Choosing mix and match places the parked plan on line 1."""
        session_id = await started(service, 3)
        await service.add_item(session_id, ItemType.PLAN, item_id="plan-basic")

        result = await service.select_mode(session_id, ItemType.PLAN, "mix")

        assert result.target_lines == [1]
        assert not result.all_lines_filled
        assert result.session.flow.plan_selection.active_line_index == 1

    @pytest.mark.asyncio
    async def test_concurrent_adds_fill_distinct_lines(self, service: PurchaseFlowService) -> None:
        """Concurrent adds on one session never land on the same line."""
        session_id = await started(service, 2)
        await service.select_mode(session_id, ItemType.PLAN, "mix_and_match")

        results = await asyncio.gather(
            service.add_item(session_id, ItemType.PLAN, item_id="plan-basic"),
            service.add_item(session_id, ItemType.PLAN, item_id="plan-unlimited"),
        )

        assert sorted(r.target_lines[0] for r in results) == [1, 2]
        assert service.progress(session_id).missing.plans == ()

    @pytest.mark.asyncio
    async def test_unknown_mode_rejected(self, service: PurchaseFlowService) -> None:
        """An unrecognised mode name is an error."""
        session_id = await started(service, 2)

        result = await service.select_mode(session_id, ItemType.PLAN, "sometimes")

        assert not result.success
        assert result.error_code == "INVALID_SELECTION_MODE"

    @pytest.mark.asyncio
    async def test_three_lines_advance_past_filled_line(self, service: PurchaseFlowService) -> None:
        """With line 1 filled the next plan goes to line 2, then line 3 completes."""
        session_id = await started(service, 3)
        await service.select_mode(session_id, ItemType.PLAN, "mix_and_match")
        await service.add_item(session_id, ItemType.PLAN, item_id="plan-basic")

        second = await service.add_item(session_id, ItemType.PLAN, item_id="plan-unlimited")

        assert second.target_lines == [2]
        assert second.session.flow.plan_selection.active_line_index == 2

        third = await service.add_item(session_id, ItemType.PLAN, item_id="plan-essentials")

        assert third.target_lines == [3]
        assert third.all_lines_filled
        assert third.session.flow.plan_selection.active_line_index is None

    @pytest.mark.asyncio
    async def test_mode_change_reports_previous_mode(self, service: PurchaseFlowService) -> None:
        """Switching modes reports the mode that was replaced."""
        session_id = await started(service, 2)

        first = await service.select_mode(session_id, ItemType.PLAN, "mix_and_match")
        again = await service.select_mode(session_id, ItemType.PLAN, "mix_and_match")
        switched = await service.select_mode(session_id, ItemType.PLAN, "apply_to_all")

        assert first.previous_mode == SelectionMode.UNKNOWN
        assert again.previous_mode is None
        assert switched.previous_mode == SelectionMode.MIX_AND_MATCH


class TestExplicitLines:
    """Tests for explicit line targeting."""

    @pytest.mark.asyncio
    async def test_line_beyond_count_rejected(self, service: PurchaseFlowService) -> None:
        """An explicit line past the count is refused, not clamped."""
        session_id = await started(service, 2)

        result = await service.add_item(
            session_id, ItemType.PLAN, item_id="plan-basic", line_number=3
        )

        assert not result.success
        assert result.error_code == "VALIDATION_ERROR"
        assert "update_line_count" in result.error
        assert service.get_session(session_id).flow.lines[1].plan_selected is False

    @pytest.mark.asyncio
    async def test_explicit_line_bypasses_mode(self, service: PurchaseFlowService) -> None:
        """An explicit line is honoured even before a mode is chosen."""
        session_id = await started(service, 3)

        result = await service.add_item(
            session_id, ItemType.DEVICE, item_id="dev-pixel", line_number=2
        )

        assert not result.parked
        assert result.target_lines == [2]
        assert result.reason == AssignmentReason.USER_SPECIFIED.value

    @pytest.mark.asyncio
    async def test_failed_add_rolls_back_auto_init(self, service: PurchaseFlowService) -> None:
        """A failed add on a fresh session leaves it unconfigured."""
        session_id = await started(service)

        result = await service.add_item(
            session_id, ItemType.PLAN, item_id="plan-basic", line_number=4
        )

        assert not result.success
        assert not service.get_session(session_id).flow.is_configured

    @pytest.mark.asyncio
    async def test_unknown_item(self, service: PurchaseFlowService) -> None:
        """Items missing from the catalog are reported."""
        session_id = await started(service, 1)

        result = await service.add_item(session_id, ItemType.PLAN, item_id="gold-plan")

        assert not result.success
        assert result.error_code == "ITEM_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_catalog_outage(
        self, service: PurchaseFlowService, mock_carrier_client, error_response
    ) -> None:
        """Catalog failures are reported with a problem description."""
        mock_carrier_client.fetch_products.return_value = error_response("SERVER_ERROR", "down", 503)
        session_id = await started(service, 1)

        result = await service.add_item(session_id, ItemType.PLAN, item_id="plan-basic")

        assert not result.success
        assert result.problem is not None
        assert not service.get_session(session_id).flow.lines[0].plan_selected


class TestProtection:
    """Tests for device protection."""

    @pytest.mark.asyncio
    async def test_denied_without_device(self, service: PurchaseFlowService) -> None:
        """Protection without a device is denied and nothing is committed."""
        session_id = await started(service)

        result = await service.add_item(session_id, ItemType.PROTECTION)

        assert result.success
        assert result.denied
        assert result.prerequisite.gate == Gate.NEED_DEVICE
        assert not service.get_session(session_id).flow.is_configured

    @pytest.mark.asyncio
    async def test_denied_for_line_without_device(self, service: PurchaseFlowService) -> None:
        """Protection on a specific line needs a device on that line."""
        session_id = await started(service, 2)
        await service.add_item(session_id, ItemType.DEVICE, item_id="dev-pixel", line_number=1)

        result = await service.add_item(session_id, ItemType.PROTECTION, line_number=2)

        assert result.denied
        assert result.prerequisite.missing == (2,)

    @pytest.mark.asyncio
    async def test_follows_device_and_tier(self, service: PurchaseFlowService) -> None:
        """Protection goes to the line with a device and is priced by its tier."""
        session_id = await started(service, 2)
        await service.add_item(session_id, ItemType.DEVICE, item_id="dev-iphone", line_number=2)

        result = await service.add_item(session_id, ItemType.PROTECTION)

        assert result.target_lines == [2]
        assert result.item.price == Money(900)
        assert result.session.flow.lines[1].protection_selected

    @pytest.mark.asyncio
    async def test_device_change_reprices_protection(self, service: PurchaseFlowService) -> None:
        """Changing a protected device updates the protection price."""
        session_id = await started(service, 1)
        await service.add_item(session_id, ItemType.DEVICE, item_id="dev-pixel")
        await service.add_item(session_id, ItemType.PROTECTION)

        result = await service.edit_item(
            session_id, "change", ItemType.DEVICE, 1, new_item_id="dev-fold"
        )

        assert result.success
        protection = result.session.cart.line(1).protection
        assert protection.price == Money(1100)
        assert result.details["protection"]["price_cents"] == 1100

    @pytest.mark.asyncio
    async def test_adding_device_to_protected_line_reprices(
        self, service: PurchaseFlowService
    ) -> None:
        """A device added over a protected one moves protection to the new tier."""
        session_id = await started(service, 1)
        await service.add_item(session_id, ItemType.DEVICE, item_id="dev-pixel")
        await service.add_item(session_id, ItemType.PROTECTION)

        result = await service.add_item(
            session_id, ItemType.DEVICE, item_id="dev-fold", line_number=1
        )

        assert result.success
        protection = result.session.cart.line(1).protection
        assert protection.price == Money(1100)
        assert protection.details["device_id"] == "dev-fold"
        assert result.session.flow.lines[0].protection_selected

    @pytest.mark.asyncio
    async def test_broadcast_device_reprices_every_line(self, service: PurchaseFlowService) -> None:
        """An apply-to-all device re-prices the protection on each line."""
        session_id = await started(service, 2)
        await service.select_mode(session_id, ItemType.DEVICE, "apply_to_all")
        await service.add_item(session_id, ItemType.DEVICE, item_id="dev-pixel")
        await service.add_item(session_id, ItemType.PROTECTION, apply_to_all=True)

        result = await service.add_item(session_id, ItemType.DEVICE, item_id="dev-iphone")

        assert result.target_lines == [1, 2]
        for line in (1, 2):
            protection = result.session.cart.line(line).protection
            assert protection.price == Money(900)
            assert protection.details["device_id"] == "dev-iphone"


class TestSimSelection:
    """Tests for select_sim."""

    @pytest.mark.asyncio
    async def test_auto_initializes_to_requested_line(self, service: PurchaseFlowService) -> None:
        """An unconfigured session grows to the highest requested line."""
        session_id = await started(service)

        result = await service.select_sim(session_id, sim_type="psim", line_number=3)

        assert result.success
        assert result.auto_initialized
        assert result.session.line_count == 3
        assert result.assigned == {3: "PSIM"}

    @pytest.mark.asyncio
    async def test_unspecified_lines_fill_gaps(self, service: PurchaseFlowService) -> None:
        """Without lines, every line lacking a SIM gets one."""
        session_id = await started(service, 3)
        await service.select_sim(session_id, sim_type="ESIM", line_number=2)

        result = await service.select_sim(session_id, sim_type="PSIM")

        assert result.assigned == {1: "PSIM", 3: "PSIM"}
        assert result.session.flow.lines[1].sim_type == SimType.ESIM

    @pytest.mark.asyncio
    async def test_selections_list(self, service: PurchaseFlowService) -> None:
        """Per-line selections accept both key spellings."""
        session_id = await started(service, 2)

        result = await service.select_sim(
            session_id,
            selections=[
                {"line_number": 1, "sim_type": "esim"},
                {"lineNumber": 2, "simType": "PSIM"},
            ],
        )

        assert result.assigned == {1: "ESIM", 2: "PSIM"}

    @pytest.mark.asyncio
    async def test_invalid_sim_type(self, service: PurchaseFlowService) -> None:
        """Unknown SIM types are rejected before anything changes."""
        session_id = await started(service, 1)

        result = await service.select_sim(session_id, sim_type="nano")

        assert not result.success
        assert result.error_code == "INVALID_SIM_TYPE"

    @pytest.mark.asyncio
    async def test_non_numeric_line_in_selections(self, service: PurchaseFlowService) -> None:
        """A selection with a non-numeric line is a validation error."""
        session_id = await started(service, 1)

        result = await service.select_sim(
            session_id, selections=[{"line_number": "x", "sim_type": "ESIM"}]
        )

        assert not result.success
        assert result.error_code == "VALIDATION_ERROR"
        assert "'x'" in result.error
        assert service.get_session(session_id).flow.lines[0].sim_type is None

    @pytest.mark.asyncio
    async def test_swap_success_stores_iccid(
        self, service: PurchaseFlowService, mock_carrier_client
    ) -> None:
        """A successful swap records the ICCID on the line."""
        session_id = await started(service, 1)

        result = await service.select_sim(
            session_id, sim_type="PSIM", customer_id="cust-1", new_iccid=ICCID
        )

        assert result.swap["success"]
        assert result.session.flow.lines[0].sim_iccid == ICCID
        mock_carrier_client.swap_sim.assert_called_once_with("cust-1", ICCID, "PSIM")

    @pytest.mark.asyncio
    async def test_swap_failure_keeps_sim_type(
        self, service: PurchaseFlowService, mock_carrier_client, error_response
    ) -> None:
        """A failed swap is reported but the SIM type is still recorded."""
        mock_carrier_client.swap_sim.return_value = error_response("SWAP_FAILED", "rejected", 422)
        session_id = await started(service, 1)

        result = await service.select_sim(
            session_id, sim_type="PSIM", customer_id="cust-1", new_iccid=ICCID
        )

        assert result.success
        assert not result.swap["success"]
        line = result.session.flow.lines[0]
        assert line.sim_type == SimType.PSIM
        assert line.sim_iccid is None

    @pytest.mark.asyncio
    async def test_swap_skipped_for_esim(
        self, service: PurchaseFlowService, mock_carrier_client
    ) -> None:
        """No swap call is made for eSIM lines."""
        session_id = await started(service, 1)

        result = await service.select_sim(
            session_id, sim_type="ESIM", customer_id="cust-1", new_iccid=ICCID
        )

        assert result.swap is None
        mock_carrier_client.swap_sim.assert_not_called()


class TestEditAndClear:
    """Tests for edit_item and clear_cart."""

    @pytest.mark.asyncio
    async def test_remove_device_cascades(self, service: PurchaseFlowService) -> None:
        """Removing a device also removes its protection."""
        session_id = await started(service, 1)
        await service.add_item(session_id, ItemType.DEVICE, item_id="dev-pixel")
        await service.add_item(session_id, ItemType.PROTECTION)

        result = await service.edit_item(session_id, "remove", ItemType.DEVICE, 1)

        assert result.details["removed"] == ["device", "protection"]
        assert not result.session.flow.lines[0].protection_selected

    @pytest.mark.asyncio
    async def test_remove_missing_item(self, service: PurchaseFlowService) -> None:
        """Removing something that is not there is an error."""
        session_id = await started(service, 1)

        result = await service.edit_item(session_id, "remove", ItemType.DEVICE, 1)

        assert not result.success

    @pytest.mark.asyncio
    async def test_old_item_mismatch(self, service: PurchaseFlowService) -> None:
        """old_item_id must match what the line holds."""
        session_id = await started(service, 1)
        await service.add_item(session_id, ItemType.PLAN, item_id="plan-basic")

        result = await service.edit_item(
            session_id, "change", ItemType.PLAN, 1,
            old_item_id="plan-unlimited", new_item_id="plan-essentials",
        )

        assert not result.success
        assert result.details["current_item_id"] == "plan-basic"

    @pytest.mark.asyncio
    async def test_invalid_action(self, service: PurchaseFlowService) -> None:
        """Only remove, change and update are accepted."""
        session_id = await started(service, 1)

        result = await service.edit_item(session_id, "swap", ItemType.PLAN, 1)

        assert not result.success
        assert result.error_code == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_edit_in_checkout_returns_to_configuring(
        self, service: PurchaseFlowService
    ) -> None:
        """Editing after shipping moves back to configuring but keeps the address."""
        session_id = await started(service, 1)
        await service.add_item(session_id, ItemType.PLAN, item_id="plan-basic")
        await service.collect_shipping_address(session_id, ADDRESS)

        result = await service.edit_item(
            session_id, "change", ItemType.PLAN, 1, new_item_id="plan-unlimited"
        )

        flow = result.session.flow
        assert flow.flow_stage == FlowStage.CONFIGURING
        assert flow.shipping_address is not None

    @pytest.mark.asyncio
    async def test_clear_keeps_line_count(self, service: PurchaseFlowService) -> None:
        """Clearing without a reset keeps the line count and modes."""
        session_id = await started(service, 2)
        await service.select_mode(session_id, ItemType.PLAN, "apply_to_all")
        await service.add_item(session_id, ItemType.PLAN, item_id="plan-basic")

        result = await service.clear_cart(session_id, reset_flow_context=False)

        session = result.session
        assert result.details["cleared_lines"] == [1, 2]
        assert session.line_count == 2
        assert session.flow.plan_selection.mode == SelectionMode.APPLY_TO_ALL
        assert session.total == Money.zero()

    @pytest.mark.asyncio
    async def test_clear_with_reset(self, service: PurchaseFlowService) -> None:
        """A full reset returns the session to fresh defaults."""
        session_id = await started(service, 2)

        result = await service.clear_cart(session_id)

        assert result.session.line_count is None
        assert result.session.flow.flow_stage == FlowStage.INITIAL


class TestCoverage:
    """Tests for check_coverage and validate_device."""

    @pytest.mark.asyncio
    async def test_coverage_keeps_resume_step(self, service: PurchaseFlowService) -> None:
        """A coverage lookup does not move the flow."""
        session_id = await started(service, 2)

        result = await service.check_coverage(session_id, "78701")

        assert result.success
        assert result.details["coverage"]["signal"] == "5G"
        flow = result.session.flow
        assert flow.coverage_checked
        assert flow.resume_step == FlowStep.PLAN_SELECTION

    @pytest.mark.asyncio
    async def test_coverage_failure_is_reported(
        self, service: PurchaseFlowService, mock_carrier_client, error_response
    ) -> None:
        """Upstream failures come back with a problem and an unchanged flow."""
        mock_carrier_client.check_coverage.return_value = error_response("TIMEOUT", "slow", 504)
        session_id = await started(service, 1)

        result = await service.check_coverage(session_id, "78701")

        assert not result.success
        assert result.problem.type == ProblemType.TIMEOUT
        assert not result.session.flow.coverage_checked

    @pytest.mark.asyncio
    async def test_invalid_zip(
        self, service: PurchaseFlowService, mock_carrier_client
    ) -> None:
        """Malformed zip codes never reach the carrier."""
        result = await service.check_coverage(await started(service), "7870")

        assert not result.success
        mock_carrier_client.check_coverage.assert_not_called()

    @pytest.mark.asyncio
    async def test_validate_device(self, service: PurchaseFlowService) -> None:
        """IMEIs are cleaned before validation."""
        result = await service.validate_device("35-209900-176148-1")

        assert result.success
        assert result.details["imei"] == "352099001761481"

    @pytest.mark.asyncio
    async def test_validate_device_bad_imei(self, service: PurchaseFlowService) -> None:
        """Short IMEIs are rejected."""
        result = await service.validate_device("1234")
        assert not result.success


class TestCheckoutGate:
    """Tests for the checkout prerequisites."""

    @pytest.mark.asyncio
    async def test_line_count_checked_first(self, service: PurchaseFlowService) -> None:
        """Without a line count, that is the reported gap."""
        session_id = await started(service)

        result = await service.collect_shipping_address(session_id, ADDRESS)

        assert result.denied
        assert result.prerequisite.gate == Gate.NEED_LINES

    @pytest.mark.asyncio
    async def test_plans_before_sims(self, service: PurchaseFlowService) -> None:
        """Missing plans are reported before missing SIMs."""
        session_id = await started(service, 2)

        verdict = service.prerequisite(session_id, "checkout")

        assert verdict.gate == Gate.NEED_PLANS
        assert verdict.missing == (1, 2)

    @pytest.mark.asyncio
    async def test_missing_sim_reported(self, service: PurchaseFlowService) -> None:
        """With plans in place a removed SIM blocks checkout."""
        session_id = await started(service, 2)
        await service.add_item(session_id, ItemType.PLAN, item_id="plan-basic", apply_to_all=True)
        await service.edit_item(session_id, "remove", ItemType.SIM, 2)

        verdict = service.prerequisite(session_id, "checkout")

        assert verdict.gate == Gate.NEED_SIM
        assert verdict.missing == (2,)

    @pytest.mark.asyncio
    async def test_verdict_is_repeatable(self, service: PurchaseFlowService) -> None:
        """Checking twice gives the same answer and changes nothing."""
        session_id = await started(service, 2)
        before = service.get_session(session_id).version

        first = service.prerequisite(session_id, "checkout")
        second = service.prerequisite(session_id, "checkout")

        assert first == second
        assert service.get_session(session_id).version == before

    @pytest.mark.asyncio
    async def test_shipping_collected(self, service: PurchaseFlowService) -> None:
        """A complete order accepts the address and enters checkout."""
        session_id = await started(service, 1)
        await service.add_item(session_id, ItemType.PLAN, item_id="plan-basic")

        result = await service.collect_shipping_address(session_id, ADDRESS)

        assert result.success
        assert result.details["shipping_address"]["zip_code"] == "78701"
        flow = result.session.flow
        assert flow.checkout_data_collected
        assert flow.flow_stage == FlowStage.CHECKOUT

    @pytest.mark.asyncio
    async def test_invalid_address(self, service: PurchaseFlowService) -> None:
        """Incomplete addresses are rejected."""
        session_id = await started(service, 1)
        await service.add_item(session_id, ItemType.PLAN, item_id="plan-basic")

        result = await service.collect_shipping_address(session_id, {**ADDRESS, "city": ""})

        assert not result.success
        assert result.details["missing_fields"] == ["city"]

    @pytest.mark.asyncio
    async def test_address_missing_key(self, service: PurchaseFlowService) -> None:
        """An address without a required key names the missing field."""
        session_id = await started(service, 1)
        await service.add_item(session_id, ItemType.PLAN, item_id="plan-basic")
        address = {key: value for key, value in ADDRESS.items() if key != "street"}

        result = await service.collect_shipping_address(session_id, address)

        assert not result.success
        assert result.error_code == "VALIDATION_ERROR"
        assert result.details["missing_fields"] == ["street"]

    @pytest.mark.asyncio
    async def test_address_unknown_key(self, service: PurchaseFlowService) -> None:
        """Unexpected address keys are rejected by name."""
        session_id = await started(service, 1)
        await service.add_item(session_id, ItemType.PLAN, item_id="plan-basic")

        result = await service.collect_shipping_address(session_id, {**ADDRESS, "apartment": "4B"})

        assert not result.success
        assert result.details["unknown_fields"] == ["apartment"]
        assert not service.get_session(session_id).flow.checkout_data_collected


class TestStoreIsolation:
    """Tests for session isolation."""

    @pytest.mark.asyncio
    async def test_sessions_do_not_share_state(
        self, service: PurchaseFlowService, store: SessionStore
    ) -> None:
        """Two explicit sessions keep separate carts."""
        a = (await service.start_session("session-a", line_count=1)).session_id
        b = (await service.start_session("session-b", line_count=2)).session_id
        await service.add_item(a, ItemType.PLAN, item_id="plan-basic")

        assert store.get(b).total == Money.zero()
        assert store.get(a).total == Money(2000)

    def test_uses_given_empty_store(self, catalog: CatalogService, store: SessionStore) -> None:
        """An empty store passed in is the one the service works with."""
        service = PurchaseFlowService(catalog=catalog, store=store)

        assert len(store) == 0
        assert service.store is store
        assert service.client is catalog.client

    @pytest.mark.asyncio
    async def test_most_recent_comes_from_own_store(
        self, catalog: CatalogService, service: PurchaseFlowService
    ) -> None:
        """A second service never resolves to a session held by the first."""
        first = await started(service, 2)
        other = PurchaseFlowService(catalog=catalog, store=SessionStore())

        second = await started(other)

        assert second != first
        assert other.get_session(second).line_count is None


class TestSessionExpiry:
    """Tests for cleanup when sessions expire."""

    @pytest.mark.asyncio
    async def test_expired_session_releases_lock(self, catalog: CatalogService) -> None:
        """Purging an idle session drops its lock and the current pointer."""
        store = SessionStore(ttl_seconds=60)
        service = PurchaseFlowService(catalog=catalog, store=store)
        session_id = await started(service, 1)
        assert session_id in service._locks
        store.get(session_id).updated_at -= timedelta(minutes=5)

        assert store.purge_expired() == [session_id]

        assert session_id not in service._locks
        assert service.registry.current_session_id is None

    @pytest.mark.asyncio
    async def test_live_sessions_keep_their_lock(self, catalog: CatalogService) -> None:
        """Sessions still inside the TTL are left alone."""
        store = SessionStore(ttl_seconds=60)
        service = PurchaseFlowService(catalog=catalog, store=store)
        session_id = await started(service, 1)

        assert store.purge_expired() == []
        assert session_id in service._locks
