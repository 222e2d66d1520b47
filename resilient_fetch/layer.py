"""Assembly of the fetch layer: client, durable store, cache and façade."""

from collections.abc import Callable
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field

from resilient_fetch.cache.config import CacheConfig
from resilient_fetch.cache.durable import DurableStore, SqliteCacheStore
from resilient_fetch.cache.errors import CacheError
from resilient_fetch.cache.service import MultiTierCache
from resilient_fetch.facade import CachedFetcher
from resilient_fetch.fetch.client import ResilientHttpClient
from resilient_fetch.fetch.config import FetchConfig
from resilient_fetch.fetch.models import FetchResponse
from resilient_fetch.observability.events import EventBus


logger = structlog.get_logger()


class LayerConfig(BaseModel):
    """Complete configuration of the fetch layer."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    fetch: FetchConfig = Field(default_factory=FetchConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)


class FetchLayer:
    """Owns the lifecycle of every fetch-layer component.

    Components are built on construction and shut down in reverse order.
    A durable store that cannot be opened is logged and the cache runs
    memory-only.
    """

    def __init__(
        self,
        config: LayerConfig | None = None,
        *,
        event_bus: EventBus | None = None,
        store: DurableStore | None = None,
        transport: httpx.BaseTransport | None = None,
        decode: Callable[[FetchResponse], Any] | None = None,
    ) -> None:
        """Build and start the layer.

        Args:
            config: Layer configuration (defaults apply when omitted).
            event_bus: Shared bus for client and cache events.
            store: Durable store to use instead of opening one from config.
                The caller keeps ownership of a store passed in.
            transport: Optional httpx transport for the client.
            decode: Maps responses to cached values (default: body text).
        """
        self._config = config or LayerConfig()
        self._log = logger.bind(component="layer")
        self.events = event_bus or EventBus()

        self._owned_store: SqliteCacheStore | None = None
        if store is None and self._config.cache.persist_to_durable_store:
            store = self._open_store(self._config.cache.durable_path)
        self.store = store

        self.client = ResilientHttpClient(
            self._config.fetch,
            event_bus=self.events,
            transport=transport,
        )
        self.cache = MultiTierCache(
            self._config.cache,
            store=store,
            event_bus=self.events,
        )
        self.fetcher = CachedFetcher(self.client, self.cache, decode=decode)
        self._closed = False

        self._log.info(
            "fetch_layer_started",
            durable_store=store is not None,
        )

    @property
    def config(self) -> LayerConfig:
        """Configuration in effect."""
        return self._config

    def _open_store(self, path: str) -> SqliteCacheStore | None:
        candidate = SqliteCacheStore(path)
        try:
            candidate.connect()
        except CacheError as e:
            self._log.warning(
                "durable_store_unavailable",
                db_path=path,
                error=str(e),
            )
            return None
        self._owned_store = candidate
        return candidate

    def fetch(
        self,
        url: str,
        *,
        ttl_ms: float | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """Fetch a URL through the cache. See CachedFetcher.fetch."""
        return self.fetcher.fetch(url, ttl_ms=ttl_ms, headers=headers)

    def shutdown(self) -> None:
        """Stop every component. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self.fetcher.shutdown()
        self.cache.shutdown()
        self.client.shutdown()
        if self._owned_store is not None:
            self._owned_store.close()
        self._log.info("fetch_layer_stopped")

    def __enter__(self) -> "FetchLayer":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()
