"""Application configuration.

Loads settings from environment variables (or a ``.env`` file) with
development defaults. Carrier credentials have no defaults and must be
provided through the environment.
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """LineFlow server settings."""

    # Carrier API
    carrier_api_url: str = Field(
        default="http://localhost:8080",
        description="Carrier API base URL",
    )
    carrier_api_key: str = Field(default="", description="Carrier x-api-key header value")
    carrier_access_key_id: str = Field(default="", description="Account access key id")
    carrier_access_secret: str = Field(default="", description="Account access secret")
    partner_tenant_id: str = Field(default="", description="x-partner-tenant-id header")
    tenant: str = Field(default="reach", description="Tenant name for token caching")

    # Device and protection catalogs
    device_catalog_url: str = Field(
        default="",
        description="Device store product endpoint (empty disables device lookups)",
    )
    device_catalog_token: str = Field(default="", description="Device store access key")
    protection_api_url: str = Field(
        default="",
        description="Protection eligibility endpoint (empty uses local pricing only)",
    )
    protection_api_token: str = Field(default="", description="Protection API authorization")

    # Timeouts and retries
    request_timeout_seconds: float = Field(default=20.0, gt=0)
    auth_timeout_seconds: float = Field(default=15.0, gt=0)
    auth_retries: int = Field(default=3, ge=0)
    auth_retry_delay_seconds: float = Field(default=1.0, ge=0)
    token_refresh_buffer_seconds: int = Field(
        default=20 * 60,
        description="Refresh tokens this long before they expire",
    )

    # Sessions
    session_ttl_seconds: int = Field(
        default=2 * 60 * 60,
        ge=0,
        description="Idle session lifetime; 0 keeps sessions until cleared",
    )
    max_lines: int = Field(default=25, ge=1, description="Maximum lines per account")
    conversation_history_limit: int = Field(default=10, ge=1)

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")

    model_config = {
        "env_file": ".env",
        "extra": "ignore",
    }


settings = Settings()
