"""Carrier API client.

Thin async HTTP client for the upstream carrier: product catalog,
coverage, device compatibility, SIM swap, plus the device store and
protection eligibility endpoints. Transport failures never raise;
every call returns an ``APIResponse``.
"""

from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from lineflow.infrastructure.auth import AuthenticationError, TokenProvider

logger = structlog.get_logger()


@dataclass
class APIError:
    """Represents an API error response."""

    error_code: str
    message: str
    status_code: int
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class APIResponse:
    """Represents an API response."""

    success: bool
    data: dict[str, Any] | list[Any] | None = None
    error: APIError | None = None


# Device store query: in-stock handsets, excluding data and protection SKUs.
_DEVICE_QUERY_FILTER = [
    {
        "type": "multi",
        "operator": "and",
        "queries": [
            {"type": "range", "field": "stock", "parameters": {"gte": 1}},
            {
                "type": "not",
                "operator": "or",
                "queries": [
                    {"type": "prefix", "field": "productNumber", "value": "DATA-"},
                    {"type": "prefix", "field": "productNumber", "value": "DEVPROTECT-"},
                ],
            },
        ],
    }
]


class CarrierAPIClient:
    """HTTP client for the carrier API.

    Adds the bearer token from ``TokenProvider`` to every carrier call.
    A 401 or 403 clears the cached token and the call is retried once
    with a fresh one.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        token_provider: TokenProvider,
        tenant: str = "reach",
        partner_tenant_id: str = "",
        device_catalog_url: str = "",
        device_catalog_token: str = "",
        protection_api_url: str = "",
        protection_api_token: str = "",
        timeout: float = 20.0,
    ) -> None:
        """Initialize the API client.

        Args:
            base_url: Carrier API base URL.
            api_key: x-api-key header value.
            token_provider: Source of bearer tokens.
            tenant: Tenant name used for token caching.
            partner_tenant_id: Optional x-partner-tenant-id header.
            device_catalog_url: Device store product endpoint.
            device_catalog_token: Device store access key.
            protection_api_url: Protection eligibility endpoint.
            protection_api_token: Protection API authorization.
            timeout: Request timeout in seconds.
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.token_provider = token_provider
        self.tenant = tenant
        self.partner_tenant_id = partner_tenant_id
        self.device_catalog_url = device_catalog_url
        self.device_catalog_token = device_catalog_token
        self.protection_api_url = protection_api_url
        self.protection_api_token = protection_api_token
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            headers = {
                "Accept": "application/json",
                "Content-Type": "application/json",
                "x-api-key": self.api_key,
            }
            if self.partner_tenant_id:
                headers["x-partner-tenant-id"] = self.partner_tenant_id
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=headers,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP clients."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        await self.token_provider.close()

    async def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        authenticated: bool = True,
    ) -> APIResponse:
        """Make an API request.

        Args:
            method: HTTP method.
            path: Endpoint path, or an absolute URL for non-carrier hosts.
            json: Request body as JSON.
            params: Query parameters.
            headers: Extra headers.
            authenticated: Attach the carrier bearer token.

        Returns:
            APIResponse with success status and data or error.
        """
        client = await self._get_client()

        if params:
            params = {k: v for k, v in params.items() if v is not None}

        try:
            logger.debug(
                "Making carrier API request",
                method=method,
                path=path,
                has_body=json is not None,
            )

            request_headers = dict(headers or {})
            if authenticated:
                request_headers["Authorization"] = await self.token_provider.get_token(
                    self.tenant
                )

            response = await client.request(
                method=method,
                url=path,
                json=json,
                params=params,
                headers=request_headers,
            )

            if authenticated and response.status_code in (401, 403):
                logger.warning(
                    "Carrier rejected token, refreshing and retrying",
                    path=path,
                    status_code=response.status_code,
                )
                self.token_provider.clear(self.tenant)
                request_headers["Authorization"] = await self.token_provider.get_token(
                    self.tenant, force_refresh=True
                )
                response = await client.request(
                    method=method,
                    url=path,
                    json=json,
                    params=params,
                    headers=request_headers,
                )

            return self._parse_response(response)

        except AuthenticationError as e:
            logger.error("Carrier authentication failed", path=path, error=e.message)
            return APIResponse(
                success=False,
                error=APIError(
                    error_code=e.error_code,
                    message=e.message,
                    status_code=e.status_code or 401,
                ),
            )
        except httpx.TimeoutException as e:
            logger.error("Carrier API request timeout", path=path, error=str(e))
            return APIResponse(
                success=False,
                error=APIError(
                    error_code="TIMEOUT",
                    message=f"Request timed out: {path}",
                    status_code=504,
                ),
            )
        except httpx.RequestError as e:
            logger.error("Carrier API request failed", path=path, error=str(e))
            return APIResponse(
                success=False,
                error=APIError(
                    error_code="REQUEST_ERROR",
                    message=f"Request failed: {str(e)}",
                    status_code=500,
                ),
            )

    @staticmethod
    def _parse_response(response: httpx.Response) -> APIResponse:
        try:
            payload = response.json() if response.content else None
        except ValueError:
            payload = None

        if response.status_code >= 400:
            body = payload if isinstance(payload, dict) else {}
            return APIResponse(
                success=False,
                error=APIError(
                    error_code=body.get("error_code") or body.get("code") or "API_ERROR",
                    message=body.get("message")
                    or f"API Error: {response.status_code} {response.reason_phrase}",
                    status_code=response.status_code,
                    details=body,
                ),
            )

        if isinstance(payload, dict) and payload.get("status") not in (None, "SUCCESS"):
            return APIResponse(
                success=False,
                error=APIError(
                    error_code="API_ERROR",
                    message=payload.get("message") or "Unknown error",
                    status_code=response.status_code,
                    details=payload,
                ),
            )

        if isinstance(payload, dict) and payload.get("status") == "SUCCESS":
            return APIResponse(success=True, data=payload.get("data"))
        return APIResponse(success=True, data=payload)

    # =========================================================================
    # Catalog Endpoints
    # =========================================================================

    async def fetch_products(self) -> APIResponse:
        """Fetch plans, offers and services.

        Returns:
            APIResponse whose data holds ``plans``, ``offers`` and ``services``.
        """
        return await self._request(method="GET", path="/apisvc/v0/product/fetch")

    async def fetch_devices(self, limit: int = 8) -> APIResponse:
        """Fetch top-selling in-stock devices from the device store.

        Args:
            limit: Maximum number of devices.

        Returns:
            APIResponse with the device store payload.
        """
        if not self.device_catalog_url:
            return APIResponse(
                success=False,
                error=APIError(
                    error_code="NOT_CONFIGURED",
                    message="Device catalog is not configured",
                    status_code=503,
                ),
            )
        return await self._request(
            method="POST",
            path=self.device_catalog_url,
            json={
                "limit": limit,
                "order": "topseller",
                "filter": _DEVICE_QUERY_FILTER,
                "sort": [
                    {
                        "field": "categories.customFields.priority",
                        "order": "desc",
                        "naturalSorting": False,
                    }
                ],
            },
            headers={"sw-access-key": self.device_catalog_token},
            authenticated=False,
        )

    async def fetch_protection_states(self) -> APIResponse:
        """Fetch the states where device protection can be sold."""
        if not self.protection_api_url:
            return APIResponse(success=True, data=[])
        return await self._request(
            method="GET",
            path=self.protection_api_url,
            headers={"Authorization": self.protection_api_token},
            authenticated=False,
        )

    # =========================================================================
    # Eligibility Endpoints
    # =========================================================================

    async def check_coverage(self, zip_code: str) -> APIResponse:
        """Check network coverage for a zip code.

        Args:
            zip_code: 5-digit US zip code.

        Returns:
            APIResponse with coverage flags (isValid, esimAvailable, ...).
        """
        return await self._request(
            method="POST",
            path="/apisvc/v0/zipCode/validate",
            json={"zipCode": zip_code},
        )

    async def validate_device(self, imei: str) -> APIResponse:
        """Check a device's compatibility by IMEI."""
        return await self._request(method="GET", path=f"/apisvc/v0/device/imei/{imei}")

    async def swap_sim(self, customer_id: str, new_iccid: str, sim_type: str) -> APIResponse:
        """Swap the SIM of an existing customer line.

        Args:
            customer_id: Carrier customer id.
            new_iccid: Digits-only ICCID of the new SIM.
            sim_type: ESIM or PSIM.

        Returns:
            APIResponse with the swap result.
        """
        return await self._request(
            method="POST",
            path="/apisvc/v0/iccid/swap",
            json={"customerId": customer_id, "newIccId": new_iccid, "simType": sim_type},
        )
