"""Pytest configuration and fixtures for LineFlow tests."""

from collections.abc import Callable
from unittest.mock import AsyncMock, MagicMock

import pytest

from lineflow.application.catalog_service import CatalogService
from lineflow.application.purchase_flow_service import PurchaseFlowService
from lineflow.infrastructure.carrier_client import APIError, APIResponse, CarrierAPIClient
from lineflow.infrastructure.session_store import SessionStore
from lineflow.tools import MCPTools

PLANS = [
    {
        "uniqueIdentifier": "plan-unlimited",
        "displayName": "Unlimited Plus",
        "baseLinePrice": 45,
        "planData": 50,
        "isUnlimited": True,
    },
    {
        "uniqueIdentifier": "plan-basic",
        "displayName": "Basic 5GB",
        "baseLinePrice": 20,
        "planData": 5,
    },
    {
        "uniqueIdentifier": "plan-essentials",
        "displayName": "Essentials 15GB",
        "baseLinePrice": "30.00",
        "planData": 15,
    },
]

DEVICES = [
    {
        "id": "dev-iphone",
        "productNumber": "IP15",
        "translated": {"name": "iPhone 15"},
        "calculatedPrice": {"unitPrice": 799.0},
    },
    {
        "id": "dev-pixel",
        "productNumber": "PX8",
        "translated": {"name": "Pixel 8"},
        "calculatedPrice": {"unitPrice": 399.0},
    },
    {
        "id": "dev-fold",
        "productNumber": "FOLD5",
        "translated": {"name": "Galaxy Fold"},
        "calculatedPrice": {"unitPrice": 1299.0},
    },
]


def make_success_response(data) -> APIResponse:
    """Create a successful API response."""
    return APIResponse(success=True, data=data)


def make_error_response(
    error_code: str,
    message: str,
    status_code: int = 400,
) -> APIResponse:
    """Create an error API response."""
    return APIResponse(
        success=False,
        error=APIError(
            error_code=error_code,
            message=message,
            status_code=status_code,
        ),
    )


@pytest.fixture
def success_response() -> Callable[..., APIResponse]:
    """Factory for successful API responses."""
    return make_success_response


@pytest.fixture
def error_response() -> Callable[..., APIResponse]:
    """Factory for failed API responses."""
    return make_error_response


@pytest.fixture
def mock_carrier_client() -> MagicMock:
    """Create a mock carrier API client with catalog data."""
    client = MagicMock(spec=CarrierAPIClient)

    # Make all methods async
    client.fetch_products = AsyncMock(
        return_value=make_success_response(
            {"plans": PLANS, "offers": [{"id": "offer-1"}], "services": [{"id": "svc-1"}]}
        )
    )
    client.fetch_devices = AsyncMock(
        return_value=make_success_response({"elements": DEVICES})
    )
    client.fetch_protection_states = AsyncMock(return_value=make_success_response([]))
    client.check_coverage = AsyncMock(
        return_value=make_success_response({"isValid": True, "signal": "5G"})
    )
    client.validate_device = AsyncMock(
        return_value=make_success_response({"isValid": True, "make": "Apple"})
    )
    client.swap_sim = AsyncMock(return_value=make_success_response({"status": "SWAPPED"}))
    client.close = AsyncMock()

    return client


@pytest.fixture
def store() -> SessionStore:
    """Create an empty session store."""
    return SessionStore()


@pytest.fixture
def catalog(mock_carrier_client: MagicMock) -> CatalogService:
    """Create a catalog service over the mock client."""
    return CatalogService(mock_carrier_client)


@pytest.fixture
def service(
    catalog: CatalogService,
    store: SessionStore,
    mock_carrier_client: MagicMock,
) -> PurchaseFlowService:
    """Create a purchase flow service with an isolated store."""
    return PurchaseFlowService(catalog=catalog, store=store, client=mock_carrier_client)


@pytest.fixture
def mcp_tools(service: PurchaseFlowService) -> MCPTools:
    """Create MCPTools over the service."""
    return MCPTools(service=service)
