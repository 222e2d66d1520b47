"""Application settings powered by Pydantic BaseSettings."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from resilient_fetch.cache.config import CacheConfig
from resilient_fetch.fetch.config import CircuitBreakerConfig, FetchConfig
from resilient_fetch.fetch.models import RetryPolicy
from resilient_fetch.layer import LayerConfig


class AppSettings(BaseSettings):
    """Centralized environment configuration."""

    model_config = SettingsConfigDict(
        env_prefix="",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    http_base_delay_ms: int = Field(default=500, validation_alias="HTTP_BASE_DELAY")
    http_max_delay_ms: int = Field(default=30_000, validation_alias="HTTP_MAX_DELAY")
    http_backoff_factor: float = Field(
        default=2.0, validation_alias="HTTP_BACKOFF_FACTOR"
    )
    http_max_retries: int = Field(default=3, validation_alias="HTTP_MAX_RETRIES")
    http_global_concurrency: int = Field(
        default=10, validation_alias="HTTP_GLOBAL_CONCURRENCY"
    )
    http_domain_concurrency: int = Field(
        default=2, validation_alias="HTTP_DOMAIN_CONCURRENCY"
    )
    http_min_time_between_requests_ms: int = Field(
        default=1500, validation_alias="HTTP_MIN_TIME_BETWEEN_REQUESTS"
    )
    http_cb_failure_threshold: int = Field(
        default=5, validation_alias="HTTP_CB_FAILURE_THRESHOLD"
    )
    http_cb_cooldown_ms: int = Field(
        default=600_000, validation_alias="HTTP_CB_COOLDOWN_MS"
    )
    http_timeout_ms: int = Field(default=30_000, validation_alias="HTTP_TIMEOUT")

    cache_memory_max_entries: int = Field(
        default=200, validation_alias="CACHE_MEMORY_MAX_ENTRIES"
    )
    cache_default_ttl_ms: int = Field(
        default=3_600_000, validation_alias="CACHE_DEFAULT_TTL_MS"
    )
    cache_stale_while_revalidate: bool = Field(
        default=True, validation_alias="CACHE_STALE_WHILE_REVALIDATE"
    )
    cache_stale_if_error_ms: int = Field(
        default=86_400_000, validation_alias="CACHE_STALE_IF_ERROR_MS"
    )
    cache_persist_to_db: bool = Field(
        default=True, validation_alias="CACHE_PERSIST_TO_DB"
    )
    cache_cleanup_interval_ms: int = Field(
        default=300_000, validation_alias="CACHE_CLEANUP_INTERVAL_MS"
    )
    cache_max_size_bytes: int = Field(
        default=52_428_800, validation_alias="CACHE_MAX_SIZE_BYTES"
    )
    cache_db_path: str = Field(
        default="data/cache.sqlite", validation_alias="CACHE_DB_PATH"
    )

    def to_fetch_config(self) -> FetchConfig:
        """Build the fetch client configuration."""
        return FetchConfig(
            global_concurrency=self.http_global_concurrency,
            domain_concurrency=self.http_domain_concurrency,
            min_time_between_requests_ms=self.http_min_time_between_requests_ms,
            request_timeout_ms=self.http_timeout_ms,
            retry_policy=RetryPolicy(
                max_retries=self.http_max_retries,
                base_delay_ms=self.http_base_delay_ms,
                max_delay_ms=self.http_max_delay_ms,
                backoff_factor=self.http_backoff_factor,
            ),
            circuit_breaker=CircuitBreakerConfig(
                failure_threshold=self.http_cb_failure_threshold,
                cooldown_duration_ms=self.http_cb_cooldown_ms,
            ),
        )

    def to_cache_config(self) -> CacheConfig:
        """Build the cache configuration."""
        return CacheConfig(
            memory_max_entries=self.cache_memory_max_entries,
            max_bytes=self.cache_max_size_bytes,
            default_ttl_ms=self.cache_default_ttl_ms,
            stale_if_error_window_ms=self.cache_stale_if_error_ms,
            cleanup_interval_ms=self.cache_cleanup_interval_ms,
            persist_to_durable_store=self.cache_persist_to_db,
            stale_while_revalidate=self.cache_stale_while_revalidate,
            durable_path=self.cache_db_path,
        )

    def to_layer_config(self) -> LayerConfig:
        """Build the complete layer configuration."""
        return LayerConfig(fetch=self.to_fetch_config(), cache=self.to_cache_config())


def get_settings() -> AppSettings:
    """Get a settings instance."""
    return AppSettings()
