"""Configuration model for the multi-tier cache."""

from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field


class CacheConfig(BaseModel):
    """Configuration for the multi-tier cache.

    Bounds the memory tier, sets freshness windows and controls the durable
    tier and the periodic sweep.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    memory_max_entries: Annotated[int, Field(ge=1, le=1_000_000)] = 200
    max_bytes: Annotated[int, Field(ge=1, le=8 * 1024 * 1024 * 1024)] = (
        50 * 1024 * 1024
    )
    default_ttl_ms: Annotated[int, Field(ge=1)] = 3_600_000
    stale_if_error_window_ms: Annotated[int, Field(ge=0)] = 86_400_000
    cleanup_interval_ms: Annotated[int, Field(ge=10)] = 300_000
    persist_to_durable_store: bool = True
    stale_while_revalidate: bool = True
    durable_path: Annotated[str, Field(min_length=1)] = "data/cache.sqlite"
