"""LineFlow MCP Server.

Exposes the multi-line mobile purchase flow as MCP tools for AI agent
interaction, over the stdio transport.

MCP Tools:
- start_session / update_line_count - Set up the number of lines
- get_plans / get_offers / get_services / get_devices - Catalog reads
- get_protection_plan / get_sim_types - Per-line add-on options
- select_plan_mode / select_device_mode - Apply to all or per line
- add_to_cart / edit_cart_item / clear_cart / get_cart - Cart changes
- select_sim_type - eSIM or physical SIM, with optional swap
- check_coverage / validate_device - Network lookups
- review_cart / collect_shipping_address - Checkout readiness
- get_flow_status / get_global_context / get_next_step - Guidance
"""

import asyncio
import json
import logging
import sys
from typing import Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import (
    TextContent,
    Tool,
)
from pydantic import BaseModel, Field
import structlog

from lineflow.infrastructure.config import Settings, settings


# ============================================================================
# Logging
# ============================================================================


# stdout carries the MCP protocol
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(message)s",
    stream=sys.stderr,
)
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


# ============================================================================
# Tool Input Schemas
# ============================================================================


_SESSION_ID_DESCRIPTION = (
    "Optional session ID. When omitted, the current or most recent session is used."
)


class SessionInput(BaseModel):
    """Input schema for tools that only need a session."""

    session_id: str | None = Field(None, description=_SESSION_ID_DESCRIPTION)


class StartSessionInput(SessionInput):
    """Input schema for start_session tool."""

    line_count: int | None = Field(
        None,
        ge=1,
        description="Number of lines to set up (1 to the account maximum).",
    )


class UpdateLineCountInput(SessionInput):
    """Input schema for update_line_count tool."""

    line_count: int = Field(..., description="New number of lines.")


class GetPlansInput(SessionInput):
    """Input schema for get_plans tool."""

    max_price: float | None = Field(
        None,
        ge=0,
        description="Optional maximum monthly price in dollars.",
    )


class GetDevicesInput(SessionInput):
    """Input schema for get_devices tool."""

    limit: int = Field(default=8, ge=1, le=50, description="Number of devices to return.")


class GetProtectionPlanInput(SessionInput):
    """Input schema for get_protection_plan tool."""

    line_number: int | None = Field(
        None,
        description="Line to price protection for. Defaults to every line with a device.",
    )


class SelectModeInput(SessionInput):
    """Input schema for select_plan_mode and select_device_mode tools."""

    mode: str = Field(
        ...,
        description="'apply_to_all' (same item on every line) or "
        "'mix_and_match' (choose per line).",
    )
    item_id: str | None = Field(None, description="Optional item to apply with the mode.")
    item_name: str | None = Field(None, description="Optional item name, if the id is unknown.")


class AddToCartInput(SessionInput):
    """Input schema for add_to_cart tool."""

    item_type: str = Field(..., description="'plan', 'device', 'protection' or 'sim'.")
    item_id: str | None = Field(None, description="Catalog id of the item.")
    item_name: str | None = Field(None, description="Item name, if the id is unknown.")
    line_number: int | None = Field(None, description="Line to add the item to.")
    line_numbers: list[int] | None = Field(None, description="Several lines to add the item to.")
    apply_to_all: bool = Field(default=False, description="Add the item to every line.")


class SelectSimTypeInput(SessionInput):
    """Input schema for select_sim_type tool."""

    sim_type: str | None = Field(None, description="'ESIM' or 'PSIM'.")
    line_number: int | None = Field(None, description="Line to set the SIM type for.")
    line_numbers: list[int] | None = Field(None, description="Several lines to set.")
    selections: list[dict[str, Any]] | None = Field(
        None,
        description="Batch of {line_number, sim_type} entries.",
    )
    customer_id: str | None = Field(None, description="Customer id, required for a SIM swap.")
    new_iccid: str | None = Field(None, description="ICCID of the new physical SIM (19-20 digits).")


class EditCartItemInput(SessionInput):
    """Input schema for edit_cart_item tool."""

    action: str = Field(..., description="'remove', 'change' or 'update'.")
    item_type: str = Field(..., description="'plan', 'device', 'protection' or 'sim'.")
    line_number: int = Field(..., description="Line to edit.")
    old_item_id: str | None = Field(None, description="Item currently on the line, if known.")
    new_item_id: str | None = Field(None, description="Replacement plan or device id.")
    new_sim_type: str | None = Field(None, description="Replacement SIM type.")


class ClearCartInput(SessionInput):
    """Input schema for clear_cart tool."""

    reset_flow_context: bool = Field(
        default=True,
        description="Reset the whole flow (true) or only clear line selections (false).",
    )


class CheckCoverageInput(SessionInput):
    """Input schema for check_coverage tool."""

    zip_code: str = Field(..., description="5-digit US zip code.")


class ValidateDeviceInput(SessionInput):
    """Input schema for validate_device tool."""

    imei: str = Field(..., description="15-digit device IMEI.")


class ShippingAddressInput(SessionInput):
    """Input schema for collect_shipping_address tool."""

    first_name: str = Field(..., description="Recipient first name.")
    last_name: str = Field(..., description="Recipient last name.")
    street: str = Field(..., description="Street address.")
    city: str = Field(..., description="City.")
    state: str = Field(..., description="State code, e.g. 'CA'.")
    zip_code: str = Field(..., description="Zip code.")
    country: str = Field(default="US", description="Country code.")
    phone: str | None = Field(None, description="Contact phone number.")
    email: str | None = Field(None, description="Contact email.")


# ============================================================================
# MCP Server Implementation
# ============================================================================


def build_tools(config: Settings):
    """Wire the tool adapters from settings."""
    from lineflow.application.catalog_service import CatalogService
    from lineflow.application.purchase_flow_service import PurchaseFlowService
    from lineflow.infrastructure.auth import TokenProvider
    from lineflow.infrastructure.carrier_client import CarrierAPIClient
    from lineflow.infrastructure.session_store import get_session_store
    from lineflow.tools import MCPTools

    token_provider = TokenProvider(
        base_url=config.carrier_api_url,
        api_key=config.carrier_api_key,
        access_key_id=config.carrier_access_key_id,
        access_secret=config.carrier_access_secret,
        timeout=config.auth_timeout_seconds,
        retries=config.auth_retries,
        retry_delay=config.auth_retry_delay_seconds,
        refresh_buffer_seconds=config.token_refresh_buffer_seconds,
    )
    client = CarrierAPIClient(
        base_url=config.carrier_api_url,
        api_key=config.carrier_api_key,
        token_provider=token_provider,
        tenant=config.tenant,
        partner_tenant_id=config.partner_tenant_id,
        device_catalog_url=config.device_catalog_url,
        device_catalog_token=config.device_catalog_token,
        protection_api_url=config.protection_api_url,
        protection_api_token=config.protection_api_token,
        timeout=config.request_timeout_seconds,
    )
    catalog = CatalogService(client)
    service = PurchaseFlowService(
        catalog=catalog,
        store=get_session_store(ttl_seconds=config.session_ttl_seconds),
        client=client,
        max_lines=config.max_lines,
        history_limit=config.conversation_history_limit,
    )
    return MCPTools(service=service, catalog=catalog)


TOOL_DEFINITIONS: list[tuple[str, str, type[BaseModel]]] = [
    (
        "start_session",
        "Start or resume a purchase session. Optionally set how many lines the "
        "customer wants. Call this first when the line count is unknown.",
        StartSessionInput,
    ),
    (
        "get_plans",
        "List mobile plans. Asks for the line count if it is not set yet, and asks "
        "whether one plan should apply to all lines on multi-line orders.",
        GetPlansInput,
    ),
    ("get_offers", "List current carrier offers and promotions.", SessionInput),
    ("get_services", "List add-on services.", SessionInput),
    ("get_devices", "List phones and other devices. Devices are optional.", GetDevicesInput),
    (
        "get_protection_plan",
        "Show device protection pricing for lines that have a device.",
        GetProtectionPlanInput,
    ),
    (
        "get_sim_types",
        "List SIM types (eSIM, physical SIM) and the lines that still need one.",
        SessionInput,
    ),
    (
        "select_plan_mode",
        "Choose whether one plan applies to all lines or plans are chosen per line. "
        "Applies the plan the customer already picked, if any.",
        SelectModeInput,
    ),
    (
        "select_device_mode",
        "Choose whether one device goes on every line or devices are chosen per line.",
        SelectModeInput,
    ),
    (
        "add_to_cart",
        "Add a plan, device, protection or SIM to the cart. Target specific lines "
        "with line_number / line_numbers, or every line with apply_to_all.",
        AddToCartInput,
    ),
    ("get_cart", "Show the cart with per-line subtotals and the total.", SessionInput),
    (
        "review_cart",
        "Check whether the order is ready for checkout and list anything missing.",
        SessionInput,
    ),
    (
        "update_line_count",
        "Change the number of lines. Lines that already hold items cannot be removed.",
        UpdateLineCountInput,
    ),
    (
        "select_sim_type",
        "Choose eSIM or physical SIM for one line, several lines, or a batch of "
        "selections. Optionally swaps a physical SIM for an existing customer.",
        SelectSimTypeInput,
    ),
    (
        "edit_cart_item",
        "Remove or replace an item on a specific line. Removing a device also "
        "removes its protection.",
        EditCartItemInput,
    ),
    (
        "clear_cart",
        "Empty the cart. By default the whole purchase flow is reset.",
        ClearCartInput,
    ),
    (
        "check_coverage",
        "Check network coverage for a zip code. Optional; never blocks the purchase.",
        CheckCoverageInput,
    ),
    (
        "validate_device",
        "Check whether a device (by IMEI) is compatible with the network.",
        ValidateDeviceInput,
    ),
    (
        "get_flow_status",
        "Show the purchase flow state, progress and what each line holds.",
        SessionInput,
    ),
    (
        "get_global_context",
        "Show summary flags for what has been configured so far.",
        SessionInput,
    ),
    (
        "get_next_step",
        "Recommend the next step in the purchase flow and the tool to use.",
        SessionInput,
    ),
    (
        "collect_shipping_address",
        "Save the shipping address. Available once every line has a plan and SIM.",
        ShippingAddressInput,
    ),
]


def create_mcp_server(tools: Any = None) -> Server:
    """Create and configure the MCP server with all tools.

    Args:
        tools: Prebuilt tool adapters; built from settings on first use
            when omitted.
    """
    server = Server("lineflow-mcp")

    # Lazy-load tools to avoid import issues
    _tools_instance = tools

    async def get_tools():
        """Get or create the MCPTools instance."""
        nonlocal _tools_instance
        if _tools_instance is None:
            _tools_instance = build_tools(settings)
        return _tools_instance

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        """List all available MCP tools."""
        return [
            Tool(
                name=name,
                description=description,
                inputSchema=schema.model_json_schema(),
            )
            for name, description, schema in TOOL_DEFINITIONS
        ]

    @server.call_tool()
    async def call_tool(name: str, arguments: dict) -> list[TextContent]:
        """Handle tool invocation."""
        tools = await get_tools()

        logger.info("Tool called", tool=name, arguments=arguments)

        try:
            result = await dispatch(tools, name, arguments or {})

            logger.info("Tool completed", tool=name, success=result.get("success"))

            return [
                TextContent(
                    type="text",
                    text=json.dumps(result, indent=2, default=str),
                )
            ]

        except Exception as e:
            logger.exception("Tool execution failed", tool=name)
            return [
                TextContent(
                    type="text",
                    text=json.dumps(
                        {
                            "success": False,
                            "is_error": True,
                            "error": f"Tool execution failed: {str(e)}",
                        },
                        indent=2,
                    ),
                )
            ]

    return server


async def dispatch(tools: Any, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
    """Validate arguments and call the matching tool method."""
    if name == "start_session":
        input_data = StartSessionInput(**arguments)
        return await tools.start_session(
            session_id=input_data.session_id,
            line_count=input_data.line_count,
        )
    elif name == "update_line_count":
        input_data = UpdateLineCountInput(**arguments)
        return await tools.update_line_count(
            line_count=input_data.line_count,
            session_id=input_data.session_id,
        )
    elif name == "get_plans":
        input_data = GetPlansInput(**arguments)
        return await tools.get_plans(
            session_id=input_data.session_id,
            max_price=input_data.max_price,
        )
    elif name == "get_offers":
        input_data = SessionInput(**arguments)
        return await tools.get_offers(session_id=input_data.session_id)
    elif name == "get_services":
        input_data = SessionInput(**arguments)
        return await tools.get_services(session_id=input_data.session_id)
    elif name == "get_devices":
        input_data = GetDevicesInput(**arguments)
        return await tools.get_devices(
            session_id=input_data.session_id,
            limit=input_data.limit,
        )
    elif name == "get_protection_plan":
        input_data = GetProtectionPlanInput(**arguments)
        return await tools.get_protection_plan(
            session_id=input_data.session_id,
            line_number=input_data.line_number,
        )
    elif name == "get_sim_types":
        input_data = SessionInput(**arguments)
        return await tools.get_sim_types(session_id=input_data.session_id)
    elif name in ("select_plan_mode", "select_device_mode"):
        input_data = SelectModeInput(**arguments)
        method = tools.select_plan_mode if name == "select_plan_mode" else tools.select_device_mode
        return await method(
            mode=input_data.mode,
            session_id=input_data.session_id,
            item_id=input_data.item_id,
            item_name=input_data.item_name,
        )
    elif name == "add_to_cart":
        input_data = AddToCartInput(**arguments)
        return await tools.add_to_cart(
            item_type=input_data.item_type,
            session_id=input_data.session_id,
            item_id=input_data.item_id,
            item_name=input_data.item_name,
            line_number=input_data.line_number,
            line_numbers=input_data.line_numbers,
            apply_to_all=input_data.apply_to_all,
        )
    elif name == "get_cart":
        input_data = SessionInput(**arguments)
        return await tools.get_cart(session_id=input_data.session_id)
    elif name == "review_cart":
        input_data = SessionInput(**arguments)
        return await tools.review_cart(session_id=input_data.session_id)
    elif name == "select_sim_type":
        input_data = SelectSimTypeInput(**arguments)
        return await tools.select_sim_type(
            session_id=input_data.session_id,
            sim_type=input_data.sim_type,
            line_number=input_data.line_number,
            line_numbers=input_data.line_numbers,
            selections=input_data.selections,
            customer_id=input_data.customer_id,
            new_iccid=input_data.new_iccid,
        )
    elif name == "edit_cart_item":
        input_data = EditCartItemInput(**arguments)
        return await tools.edit_cart_item(
            action=input_data.action,
            item_type=input_data.item_type,
            line_number=input_data.line_number,
            session_id=input_data.session_id,
            old_item_id=input_data.old_item_id,
            new_item_id=input_data.new_item_id,
            new_sim_type=input_data.new_sim_type,
        )
    elif name == "clear_cart":
        input_data = ClearCartInput(**arguments)
        return await tools.clear_cart(
            session_id=input_data.session_id,
            reset_flow_context=input_data.reset_flow_context,
        )
    elif name == "check_coverage":
        input_data = CheckCoverageInput(**arguments)
        return await tools.check_coverage(
            zip_code=input_data.zip_code,
            session_id=input_data.session_id,
        )
    elif name == "validate_device":
        input_data = ValidateDeviceInput(**arguments)
        return await tools.validate_device(
            imei=input_data.imei,
            session_id=input_data.session_id,
        )
    elif name == "get_flow_status":
        input_data = SessionInput(**arguments)
        return await tools.get_flow_status(session_id=input_data.session_id)
    elif name == "get_global_context":
        input_data = SessionInput(**arguments)
        return await tools.get_global_context(session_id=input_data.session_id)
    elif name == "get_next_step":
        input_data = SessionInput(**arguments)
        return await tools.get_next_step(session_id=input_data.session_id)
    elif name == "collect_shipping_address":
        input_data = ShippingAddressInput(**arguments)
        return await tools.collect_shipping_address(
            address=input_data.model_dump(exclude={"session_id"}),
            session_id=input_data.session_id,
        )
    return {
        "success": False,
        "is_error": True,
        "error": f"Unknown tool: {name}",
    }


async def run_server() -> None:
    """Run the MCP server using stdio transport."""
    logger.info(
        "Starting LineFlow MCP Server",
        carrier_api_url=settings.carrier_api_url,
        tenant=settings.tenant,
        max_lines=settings.max_lines,
    )

    server = create_mcp_server()

    async with stdio_server() as (read_stream, write_stream):
        await server.run(
            read_stream,
            write_stream,
            server.create_initialization_options(),
        )


def main() -> None:
    """Run the MCP server.

    Entry point for the MCP server. Uses stdio transport for
    communication with AI agents.
    """
    asyncio.run(run_server())


if __name__ == "__main__":
    main()
