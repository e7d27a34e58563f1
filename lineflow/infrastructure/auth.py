"""Carrier authentication token provider.

Tokens are cached per tenant and refreshed before they expire, so
dependent calls never have to discover an expired token by failing.
Only one refresh runs per tenant at a time; concurrent callers wait
for it and reuse the result.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import structlog

logger = structlog.get_logger()

GENERATE_AUTH_PATH = "/apisvc/v0/account/generateauth"


class AuthenticationError(Exception):
    """Raised when a token cannot be obtained."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: str = "AUTHENTICATION_ERROR",
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code


@dataclass
class CachedToken:
    """A bearer token and its expiry."""

    token: str
    expires_at: datetime

    def seconds_left(self, now: datetime | None = None) -> float:
        now = now or datetime.now(timezone.utc)
        return (self.expires_at - now).total_seconds()


def _parse_expiry(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class TokenProvider:
    """Issues carrier bearer tokens, refreshing them proactively.

    A cached token is returned as long as it has more than
    ``refresh_buffer_seconds`` left. Inside the buffer a new token is
    fetched; if that fetch fails while the old token is still valid,
    the old token is used.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        access_key_id: str,
        access_secret: str,
        timeout: float = 15.0,
        retries: int = 3,
        retry_delay: float = 1.0,
        refresh_buffer_seconds: int = 20 * 60,
    ) -> None:
        """Initialize the token provider.

        Args:
            base_url: Carrier API base URL.
            api_key: x-api-key header value.
            access_key_id: Account access key id.
            access_secret: Account access secret.
            timeout: Per-attempt timeout in seconds.
            retries: Extra attempts for transient failures.
            retry_delay: Base delay for exponential backoff.
            refresh_buffer_seconds: Refresh window before expiry.
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.access_key_id = access_key_id
        self.access_secret = access_secret
        self.timeout = timeout
        self.retries = retries
        self.retry_delay = retry_delay
        self.refresh_buffer = timedelta(seconds=refresh_buffer_seconds)
        self._tokens: dict[str, CachedToken] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={
                    "Accept": "*/*",
                    "Content-Type": "application/json",
                    "x-api-key": self.api_key,
                },
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _is_fresh(self, cached: CachedToken | None) -> bool:
        return (
            cached is not None
            and cached.seconds_left() > self.refresh_buffer.total_seconds()
        )

    def cached_token(self, tenant: str) -> CachedToken | None:
        return self._tokens.get(tenant)

    def clear(self, tenant: str) -> None:
        """Forget the cached token for a tenant."""
        self._tokens.pop(tenant, None)

    async def get_token(self, tenant: str = "reach", force_refresh: bool = False) -> str:
        """Return a valid bearer token for the tenant.

        Args:
            tenant: Tenant name.
            force_refresh: Skip the cache and fetch a new token.

        Returns:
            Bearer token string.

        Raises:
            AuthenticationError: If no valid token can be obtained.
        """
        seen = self._tokens.get(tenant)
        if not force_refresh and self._is_fresh(seen):
            return seen.token

        lock = self._locks.setdefault(tenant, asyncio.Lock())
        async with lock:
            current = self._tokens.get(tenant)
            # Another caller refreshed while we waited.
            if current is not seen and self._is_fresh(current):
                return current.token

            try:
                token = await self._fetch_token(tenant)
            except AuthenticationError:
                if not force_refresh and current is not None and current.seconds_left() > 0:
                    logger.warning(
                        "Token refresh failed, using cached token until expiry",
                        tenant=tenant,
                        seconds_left=int(current.seconds_left()),
                    )
                    return current.token
                raise

            self._tokens[tenant] = token
            return token.token

    async def _fetch_token(self, tenant: str) -> CachedToken:
        client = await self._get_client()
        body = {
            "accountAccessKeyId": self.access_key_id,
            "accountAccessSecreteKey": self.access_secret,
        }

        last_error = AuthenticationError(
            "Auth failed: no attempt was made", error_code="API_ERROR"
        )
        for attempt in range(self.retries + 1):
            if attempt:
                delay = self.retry_delay * (2 ** (attempt - 1))
                logger.warning(
                    "Auth request failed, retrying",
                    tenant=tenant,
                    attempt=attempt,
                    max_retries=self.retries,
                    delay=delay,
                )
                await asyncio.sleep(delay)

            try:
                response = await client.post(GENERATE_AUTH_PATH, json=body)
            except httpx.TimeoutException:
                last_error = AuthenticationError(
                    f"Auth request timed out after {self.timeout}s",
                    status_code=504,
                    error_code="TIMEOUT",
                )
                continue
            except httpx.RequestError as e:
                last_error = AuthenticationError(
                    f"Auth request failed: {e}",
                    status_code=500,
                    error_code="REQUEST_ERROR",
                )
                continue

            if response.status_code >= 500 or response.status_code == 429:
                last_error = AuthenticationError(
                    f"Auth failed: {response.status_code}",
                    status_code=response.status_code,
                    error_code="API_ERROR",
                )
                continue

            if response.status_code >= 400:
                code = (
                    "AUTHENTICATION_ERROR"
                    if response.status_code == 401
                    else "AUTHORIZATION_ERROR"
                    if response.status_code == 403
                    else "API_ERROR"
                )
                logger.error(
                    "Auth HTTP error from generateauth",
                    tenant=tenant,
                    status_code=response.status_code,
                )
                raise AuthenticationError(
                    f"Auth failed ({response.status_code}). Verify the carrier "
                    "access key, secret and x-api-key.",
                    status_code=response.status_code,
                    error_code=code,
                )

            token = self._parse_token(response.json(), response.status_code)
            logger.info(
                "Authentication successful",
                tenant=tenant,
                expires_at=token.expires_at.isoformat(),
                minutes_until_expiration=int(token.seconds_left() // 60),
            )
            return token

        logger.error("Auth failed after retries", tenant=tenant, error=last_error.message)
        raise last_error

    @staticmethod
    def _parse_token(payload: dict[str, Any], status_code: int) -> CachedToken:
        if payload.get("status") != "SUCCESS":
            raise AuthenticationError(
                f"Auth failed: {payload.get('message') or 'unknown error from generateauth'}",
                status_code=status_code,
            )
        data = payload.get("data") or {}
        token = data.get("authorizationToken")
        expires_raw = data.get("expiresAt") or data.get("exipiresAt")
        if not token or not expires_raw:
            raise AuthenticationError(
                "Auth response missing token or expiration time",
                status_code=status_code,
            )
        try:
            expires_at = _parse_expiry(str(expires_raw))
        except ValueError:
            raise AuthenticationError(
                f"Auth response has an unreadable expiration time: {expires_raw}",
                status_code=status_code,
            ) from None
        cached = CachedToken(token=token, expires_at=expires_at)
        if cached.seconds_left() <= 0:
            raise AuthenticationError(
                "Auth response has an expired expiration time",
                status_code=status_code,
            )
        return cached
