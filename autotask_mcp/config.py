"""Configuration management"""
import json
from typing import List, Optional
from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings"""

    # Autotask credentials (single-tenant mode)
    autotask_username: Optional[str] = Field(default=None, alias="AUTOTASK_USERNAME")
    autotask_secret: Optional[str] = Field(default=None, alias="AUTOTASK_SECRET")
    autotask_integration_code: Optional[str] = Field(default=None, alias="AUTOTASK_INTEGRATION_CODE")

    # Explicit zone URL, skips zoneInformation discovery when set
    autotask_api_url: Optional[str] = Field(default=None, alias="AUTOTASK_API_URL")
    autotask_zone_url: str = Field(
        default="https://webservices.autotask.net/ATServicesRest/V1.0/zoneInformation",
        alias="AUTOTASK_ZONE_URL"
    )

    # Multi-tenant mode: credentials arrive with each tool call
    multi_tenant_enabled: bool = Field(default=False, alias="MULTI_TENANT_ENABLED")
    multi_tenant_default_api_url: Optional[str] = Field(default=None, alias="MULTI_TENANT_DEFAULT_API_URL")
    multi_tenant_pool_size: int = Field(default=50, alias="MULTI_TENANT_POOL_SIZE")

    # ID-to-name mapping cache
    mapping_cache_max_tenants: int = Field(default=50, alias="MAPPING_CACHE_MAX_TENANTS")
    mapping_cache_stale_seconds: float = Field(default=30 * 60, alias="MAPPING_CACHE_STALE_SECONDS")
    mapping_cache_idle_seconds: float = Field(default=30 * 60, alias="MAPPING_CACHE_IDLE_SECONDS")
    mapping_cache_sweep_seconds: float = Field(default=5 * 60, alias="MAPPING_CACHE_SWEEP_SECONDS")
    mapping_fetch_concurrency: int = Field(default=10, alias="MAPPING_FETCH_CONCURRENCY")

    # Upstream request shaping
    requests_per_second: int = Field(default=5, alias="AUTOTASK_REQUESTS_PER_SECOND")
    max_concurrency: int = Field(default=10, alias="AUTOTASK_MAX_CONCURRENCY")
    request_timeout: float = Field(default=30.0, alias="AUTOTASK_TIMEOUT")

    # MCP server
    server_name: str = Field(default="autotask-mcp", alias="MCP_SERVER_NAME")
    server_version: str = Field(default="1.0.0", alias="MCP_SERVER_VERSION")
    transport: str = Field(default="stdio", alias="MCP_TRANSPORT")
    log_level: str = Field(default="info", alias="LOG_LEVEL")

    # Admin API keys (JSON string)
    api_keys_json: str = Field(
        default='[]',
        alias="API_KEYS"
    )

    # HTTP transport
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3999)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        populate_by_name = True
        extra = "ignore"

    @property
    def api_keys(self) -> List[str]:
        """Parse admin API keys"""
        return json.loads(self.api_keys_json)

    @property
    def has_default_credentials(self) -> bool:
        return bool(self.autotask_username and self.autotask_secret and self.autotask_integration_code)

    def validate_api_key(self, api_key: str) -> bool:
        """Check an admin API key"""
        return api_key in self.api_keys

    def validate_config(self) -> List[str]:
        """Return a list of configuration problems, empty when usable"""
        errors = []
        # Multi-tenant mode takes credentials per request
        if not self.multi_tenant_enabled:
            if not self.autotask_username:
                errors.append("AUTOTASK_USERNAME is required")
            if not self.autotask_secret:
                errors.append("AUTOTASK_SECRET is required")
            if not self.autotask_integration_code:
                errors.append("AUTOTASK_INTEGRATION_CODE is required")
        if self.transport not in ("stdio", "http"):
            errors.append(f"MCP_TRANSPORT must be 'stdio' or 'http', got {self.transport!r}")
        return errors


# Global settings instance
settings = Settings()
