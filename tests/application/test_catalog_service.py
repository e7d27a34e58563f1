"""Tests for the catalog service."""

import pytest

from lineflow.application.catalog_service import (
    CatalogService,
    CatalogUnavailableError,
    match_item,
    normalize_device,
    normalize_plan,
)
from lineflow.domain import CatalogItem, ItemType, Money
from lineflow.domain.exceptions import CatalogItemNotFoundError
from lineflow.domain.value_objects import protection_for_device, protection_price_for


class TestProtectionPricing:
    """Tests for protection price tiers."""

    @pytest.mark.parametrize(
        "device_cents,expected_cents",
        [
            (0, 500),
            (399_00, 500),
            (400_00, 500),
            (400_01, 900),
            (800_00, 900),
            (1299_00, 1100),
        ],
    )
    def test_tiers(self, device_cents: int, expected_cents: int) -> None:
        """Protection price follows the device price tier."""
        assert protection_price_for(Money(device_cents)) == Money(expected_cents)

    def test_missing_price(self) -> None:
        """No device price falls into the lowest tier."""
        assert protection_price_for(None) == Money(500)

    def test_protection_item(self) -> None:
        """The protection item references its device."""
        device = CatalogItem(item_type=ItemType.DEVICE, id="d1", name="Phone", price=Money(79900))
        item = protection_for_device(device)

        assert item.id == "device-protection"
        assert item.price == Money(900)
        assert item.details["device_id"] == "d1"


class TestNormalisation:
    """Tests for payload normalisation."""

    def test_normalize_plan(self) -> None:
        """Carrier plan records become plan items priced in cents."""
        item = normalize_plan(
            {"uniqueIdentifier": "p1", "displayName": "Unlimited", "baseLinePrice": "45.5", "planData": 50}
        )

        assert item.item_type is ItemType.PLAN
        assert item.id == "p1"
        assert item.price.amount_cents == 4550
        assert item.details["description"] == "50GB data"

    def test_normalize_plan_fallback_fields(self) -> None:
        """Alternative id, name and price fields are accepted."""
        item = normalize_plan({"id": 7, "name": "Basic", "price": None})

        assert item.id == "7"
        assert item.name == "Basic"
        assert item.price == Money.zero()

    def test_normalize_device_price_sources(self) -> None:
        """Device prices come from calculatedPrice or the price list."""
        calculated = normalize_device({"id": "d1", "translated": {"name": "Phone"}, "calculatedPrice": {"totalPrice": 199}})
        listed = normalize_device({"id": "d2", "name": "Tab", "price": [{"gross": 299.99}]})

        assert calculated.price.amount_cents == 19900
        assert calculated.name == "Phone"
        assert listed.price.amount_cents == 29999


class TestMatchItem:
    """Tests for match_item."""

    ITEMS = [
        CatalogItem(item_type=ItemType.PLAN, id="plan-unlimited", name="Unlimited Plus"),
        CatalogItem(item_type=ItemType.PLAN, id="plan-basic", name="Basic 5GB"),
        CatalogItem(item_type=ItemType.PLAN, id="plan-unl-lite", name="Unlimited"),
    ]

    def test_match_by_id(self) -> None:
        """Ids match case-insensitively."""
        assert match_item(self.ITEMS, "PLAN-BASIC").id == "plan-basic"

    def test_exact_name_beats_partial(self) -> None:
        """An exact name wins over an earlier partial match."""
        assert match_item(self.ITEMS, "unlimited").id == "plan-unl-lite"

    def test_partial_name(self) -> None:
        """Partial names match when nothing exact does."""
        assert match_item(self.ITEMS, "5gb").id == "plan-basic"

    def test_no_match(self) -> None:
        """Blank or unknown references return None."""
        assert match_item(self.ITEMS, "") is None
        assert match_item(self.ITEMS, "premium") is None


class TestCatalogService:
    """Tests for CatalogService reads."""

    @pytest.mark.asyncio
    async def test_get_plans(self, catalog: CatalogService) -> None:
        """Plans are normalised from the product payload."""
        result = await catalog.get_plans()

        assert result.success
        assert [p.id for p in result.items] == ["plan-unlimited", "plan-basic", "plan-essentials"]

    @pytest.mark.asyncio
    async def test_get_plans_max_price(self, catalog: CatalogService) -> None:
        """max_price filters plans in dollars."""
        result = await catalog.get_plans(max_price=30)

        assert [p.id for p in result.items] == ["plan-basic", "plan-essentials"]

    @pytest.mark.asyncio
    async def test_get_plans_upstream_error(
        self, catalog: CatalogService, mock_carrier_client, error_response
    ) -> None:
        """Upstream failures are reported, not raised."""
        mock_carrier_client.fetch_products.return_value = error_response("API_ERROR", "boom", 500)

        result = await catalog.get_plans()

        assert not result.success
        assert result.error.status_code == 500

    @pytest.mark.asyncio
    async def test_get_devices(self, catalog: CatalogService, mock_carrier_client) -> None:
        """Devices are read from the elements list."""
        result = await catalog.get_devices(limit=3)

        assert [d.name for d in result.items] == ["iPhone 15", "Pixel 8", "Galaxy Fold"]
        mock_carrier_client.fetch_devices.assert_called_once_with(limit=3)

    @pytest.mark.asyncio
    async def test_find_item_by_name(self, catalog: CatalogService) -> None:
        """Items can be found by partial name."""
        item = await catalog.find_item(ItemType.DEVICE, "pixel")
        assert item.id == "dev-pixel"

    @pytest.mark.asyncio
    async def test_find_item_not_found(self, catalog: CatalogService) -> None:
        """Unknown references raise CatalogItemNotFoundError."""
        with pytest.raises(CatalogItemNotFoundError):
            await catalog.find_item(ItemType.PLAN, "gold plan")

    @pytest.mark.asyncio
    async def test_find_item_unavailable(
        self, catalog: CatalogService, mock_carrier_client, error_response
    ) -> None:
        """A catalog outage raises CatalogUnavailableError."""
        mock_carrier_client.fetch_devices.return_value = error_response("TIMEOUT", "slow", 504)

        with pytest.raises(CatalogUnavailableError) as exc_info:
            await catalog.find_item(ItemType.DEVICE, "pixel")

        assert exc_info.value.error.error_code == "TIMEOUT"

    def test_sim_types(self) -> None:
        """SIM types are a static free catalogue."""
        items = CatalogService.get_sim_types()
        assert [i.id for i in items] == ["ESIM", "PSIM"]
        assert all(i.price == Money.zero() for i in items)
