from functools import lru_cache
from typing import Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    debug: bool = Field(False, description="Enable FastAPI debug mode")
    environment: str = Field(
        default="development",
        description="Runtime environment (development|staging|production)",
    )
    cache_database_url: str = Field(
        default="sqlite:///../data/bridge_cache.db",
        description="SQLAlchemy URL of the local key-value cache",
    )
    use_testnet: bool = Field(
        default=False,
        description="Load the built-in testnet network table instead of mainnet",
    )
    network_overrides: dict[str, dict[str, Any]] = Field(
        default_factory=dict,
        description="Per-network overrides keyed by network key (rpc_urls, block_time_seconds, ...)",
    )
    bridge_overrides: dict[str, dict[str, Any]] = Field(
        default_factory=dict,
        description="Additional or replacement bridge descriptors keyed by bridge key",
    )
    disabled_bridges: list[str] | str = Field(
        default_factory=list,
        description="Bridge keys excluded from discovery (list or comma-separated string)",
    )
    discovery_range_hours: float = Field(
        default=24.0,
        description="History search depth in hours for each discovery run",
        gt=0,
    )
    discovery_limit: int = Field(
        default=100,
        description="Maximum number of events fetched per bridge",
        ge=1,
    )
    discovery_max_concurrency: int = Field(
        default=8,
        description="Number of bridges scanned concurrently",
        ge=1,
    )
    rpc_timeout_seconds: float = Field(
        default=15.0,
        description="Timeout applied to each JSON-RPC request",
        gt=0,
    )
    rpc_max_log_blocks: int = Field(
        default=20,
        description="Maximum number of distinct blocks whose timestamps are resolved per bridge",
        ge=1,
    )
    retry_max_retries: int = Field(
        default=5,
        description="Retries attempted against a single source before moving on",
        ge=0,
    )
    retry_base_delay_seconds: float = Field(
        default=1.0,
        description="Base delay of the exponential backoff",
        ge=0,
    )
    retry_max_delay_seconds: float = Field(
        default=30.0,
        description="Upper bound applied to every backoff delay",
        ge=0,
    )
    retry_jitter_ratio: float = Field(
        default=0.1,
        description="Random jitter added to each delay as a fraction of the delay",
        ge=0,
        le=1,
    )
    retry_rate_limit_fallback_after: int | None = Field(
        default=None,
        description="Consecutive rate-limit failures before switching to the fallback source (default: whole retry budget)",
        ge=1,
    )
    retry_search_depth_aware: bool = Field(
        default=True,
        description="Shrink the requested range instead of failing when a source rejects it as too large",
    )
    retry_min_range_hours: float = Field(
        default=0.25,
        description="Smallest range the search-depth aware retry may shrink to",
        gt=0,
    )
    circuit_failure_threshold: int = Field(
        default=5,
        description="Failures that open a source's circuit breaker",
        ge=1,
    )
    circuit_cooldown_seconds: float = Field(
        default=60.0,
        description="Time an open circuit stays open before a trial request is allowed",
        gt=0,
    )
    claim_refresh_window_seconds: float = Field(
        default=300.0,
        description="Claims refreshed within this window are not overwritten by cached copies",
        ge=0,
    )

    @field_validator("disabled_bridges", mode="after")
    @classmethod
    def _parse_disabled_bridges(cls, value: Any) -> list[str]:
        if value in (None, "", []):
            return []
        if isinstance(value, str):
            return [item for item in (part.strip() for part in value.split(",")) if item]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip() for item in value if str(item).strip()]
        raise ValueError(
            "DISABLED_BRIDGES must be provided as a list or comma-separated string"
        )

    @field_validator("retry_max_delay_seconds")
    @classmethod
    def _validate_max_delay(cls, value: float, info) -> float:
        base = info.data.get("retry_base_delay_seconds")
        if base is not None and value < base:
            raise ValueError("retry_max_delay_seconds must not be smaller than retry_base_delay_seconds")
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
