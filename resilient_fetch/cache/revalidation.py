"""Single-flight coordination of cache refreshes."""

import threading
from collections.abc import Callable
from concurrent.futures import Future
from typing import Any

import structlog


logger = structlog.get_logger()


class RevalidationCoordinator:
    """Ensures at most one refresh runs per key.

    The first caller for a key becomes the owner and runs the refresh;
    callers arriving while it runs block on the owner's outcome and see the
    same value or the same exception. The key is released once the refresh
    settles, whatever its outcome.
    """

    def __init__(self) -> None:
        """Initialize with no refresh in progress."""
        self._lock = threading.Lock()
        self._in_progress: dict[str, Future[Any]] = {}
        self._log = logger.bind(component="revalidation")

    def in_progress(self, key: str) -> bool:
        """Whether a refresh for this key is currently running."""
        with self._lock:
            return key in self._in_progress

    def pending_count(self) -> int:
        """Number of refreshes currently running."""
        with self._lock:
            return len(self._in_progress)

    def run(self, key: str, refresh: Callable[[], Any]) -> Any:
        """Run `refresh` for `key`, or join the refresh already running.

        Args:
            key: Normalized cache key.
            refresh: Callable producing the refreshed value.

        Returns:
            The value produced by the (possibly shared) refresh.

        Raises:
            Exception: Whatever the shared refresh raised.
        """
        with self._lock:
            future = self._in_progress.get(key)
            owner = future is None
            if future is None:
                future = Future()
                self._in_progress[key] = future

        if not owner:
            self._log.debug("revalidation_joined", key=key)
            return future.result()

        try:
            value = refresh()
        except BaseException as e:
            self._release(key)
            future.set_exception(e)
            raise

        self._release(key)
        future.set_result(value)
        return value

    def _release(self, key: str) -> None:
        with self._lock:
            self._in_progress.pop(key, None)
