"""Catalog application service.

Turns raw carrier payloads into ``CatalogItem`` value objects and
resolves the item a user names (by id, exact name or partial name).
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import structlog

from lineflow.domain.exceptions import CatalogItemNotFoundError
from lineflow.domain.value_objects import (
    CatalogItem,
    ItemType,
    Money,
    SimType,
    sim_catalog_item,
)
from lineflow.infrastructure.carrier_client import APIError, CarrierAPIClient

logger = structlog.get_logger()


# ============================================================================
# Normalisation
# ============================================================================


def normalize_plan(raw: dict[str, Any]) -> CatalogItem:
    """Build a plan item from a carrier product record."""
    data_amount = raw.get("planData")
    data_unit = raw.get("dataUnit") or "GB"
    return CatalogItem(
        item_type=ItemType.PLAN,
        id=str(raw.get("uniqueIdentifier") or raw.get("id") or ""),
        name=raw.get("displayName") or raw.get("displayNameWeb") or raw.get("name") or "",
        price=Money.from_amount(raw.get("baseLinePrice", raw.get("price"))),
        details={
            "data": data_amount,
            "data_unit": data_unit,
            "description": f"{data_amount}{data_unit} data" if data_amount is not None else None,
            "unlimited": bool(raw.get("isUnlimited")),
            "max_lines": raw.get("maxLines"),
            "additional_line_price": raw.get("additionalLinePrice"),
            "service_code": raw.get("serviceCode"),
            "plan_type": raw.get("planType"),
        },
    )


def _device_price(raw: dict[str, Any]) -> Any:
    calculated = raw.get("calculatedPrice") or {}
    if calculated.get("unitPrice") is not None:
        return calculated["unitPrice"]
    if calculated.get("totalPrice") is not None:
        return calculated["totalPrice"]
    price = raw.get("price")
    if isinstance(price, list) and price:
        return price[0].get("gross")
    return price


def normalize_device(raw: dict[str, Any]) -> CatalogItem:
    """Build a device item from a device store record."""
    translated = raw.get("translated") or {}
    manufacturer = raw.get("manufacturer") or {}
    return CatalogItem(
        item_type=ItemType.DEVICE,
        id=str(raw.get("id") or raw.get("productNumber") or ""),
        name=translated.get("name") or raw.get("name") or "",
        price=Money.from_amount(_device_price(raw)),
        details={
            "product_number": raw.get("productNumber"),
            "manufacturer": manufacturer.get("name") if isinstance(manufacturer, dict) else manufacturer,
            "stock": raw.get("stock"),
        },
    )


def match_item(items: list[CatalogItem], reference: str) -> CatalogItem | None:
    """Find an item by id, then exact name, then partial name.

    Matching is case-insensitive.
    """
    needle = (reference or "").strip().lower()
    if not needle:
        return None
    for item in items:
        if item.id.lower() == needle:
            return item
    for item in items:
        if item.name.lower() == needle:
            return item
    for item in items:
        if needle in item.name.lower():
            return item
    return None


# ============================================================================
# Service
# ============================================================================


class CatalogUnavailableError(Exception):
    """Raised when the catalog cannot be fetched from upstream."""

    def __init__(self, subject: str, error: APIError | None) -> None:
        super().__init__(error.message if error else f"Unable to fetch {subject}")
        self.subject = subject
        self.error = error


@dataclass
class CatalogResult:
    """Result of a catalog read."""

    items: list[CatalogItem] = field(default_factory=list)
    raw: list[dict[str, Any]] = field(default_factory=list)
    success: bool = True
    error: APIError | None = None


class CatalogService:
    """Reads and searches the carrier catalog."""

    def __init__(self, client: CarrierAPIClient) -> None:
        self.client = client

    async def _products(self) -> tuple[dict[str, Any] | None, APIError | None]:
        response = await self.client.fetch_products()
        if not response.success:
            return None, response.error
        data = response.data if isinstance(response.data, dict) else {}
        return data, None

    async def get_plans(self, max_price: Decimal | float | None = None) -> CatalogResult:
        """Fetch plans, optionally capped at a monthly price in dollars."""
        products, error = await self._products()
        if error is not None:
            logger.error("Failed to fetch plans", error=error.message)
            return CatalogResult(success=False, error=error)

        raw_plans = [p for p in (products or {}).get("plans") or [] if isinstance(p, dict)]
        plans = [normalize_plan(p) for p in raw_plans]
        if max_price is not None:
            cap = Money.from_amount(max_price)
            plans = [p for p in plans if p.price.amount_cents <= cap.amount_cents]
        return CatalogResult(items=plans, raw=raw_plans)

    async def get_offers(self) -> CatalogResult:
        return await self._product_section("offers")

    async def get_services(self) -> CatalogResult:
        return await self._product_section("services")

    async def _product_section(self, section: str) -> CatalogResult:
        products, error = await self._products()
        if error is not None:
            return CatalogResult(success=False, error=error)
        raw = [x for x in (products or {}).get(section) or [] if isinstance(x, dict)]
        return CatalogResult(raw=raw)

    async def get_devices(self, limit: int = 8) -> CatalogResult:
        """Fetch devices from the device store."""
        response = await self.client.fetch_devices(limit=limit)
        if not response.success:
            logger.error("Failed to fetch devices", error=response.error.message if response.error else None)
            return CatalogResult(success=False, error=response.error)

        payload = response.data
        if isinstance(payload, dict):
            payload = payload.get("elements") or payload.get("data") or []
        raw_devices = [d for d in payload or [] if isinstance(d, dict)]
        return CatalogResult(items=[normalize_device(d) for d in raw_devices], raw=raw_devices)

    @staticmethod
    def get_sim_types() -> list[CatalogItem]:
        return [sim_catalog_item(sim_type) for sim_type in SimType]

    async def find_item(self, item_type: ItemType, reference: str) -> CatalogItem:
        """Resolve a plan or device the user named.

        Args:
            item_type: PLAN or DEVICE.
            reference: Item id or (partial) name.

        Returns:
            Matching catalog item.

        Raises:
            CatalogItemNotFoundError: If nothing matches.
            CatalogUnavailableError: If the catalog could not be fetched.
        """
        if item_type is ItemType.PLAN:
            result = await self.get_plans()
        else:
            result = await self.get_devices(limit=50)
        if not result.success:
            raise CatalogUnavailableError(f"{item_type.value}s", result.error)

        item = match_item(result.items, reference)
        if item is None:
            raise CatalogItemNotFoundError(item_type.value, reference)
        return item
