"""Exceptions for the cache layer.

Durable store failures are infrastructure errors. The multi-tier cache
catches them at its boundary and degrades to memory-only operation; they
only reach callers that use a store directly.
"""


class CacheError(Exception):
    """Base exception for all cache errors."""


class DurableStoreError(CacheError):
    """Raised when a durable store operation fails.

    Wraps the underlying database error.
    """

    def __init__(self, operation: str, message: str) -> None:
        """Initialize the error.

        Args:
            operation: Name of the store operation that failed.
            message: Human-readable error message.
        """
        self.operation = operation
        super().__init__(f"Durable store {operation} failed: {message}")


class StoreNotConnectedError(DurableStoreError):
    """Raised when the durable store is used before connect() or after close()."""

    def __init__(self, operation: str = "access") -> None:
        """Initialize the error.

        Args:
            operation: Name of the attempted operation.
        """
        super().__init__(operation, "database not connected, call connect() first")


class MigrationError(CacheError):
    """Raised when a schema migration fails."""

    def __init__(self, version: int, message: str) -> None:
        """Initialize the migration error.

        Args:
            version: The migration version that failed.
            message: Human-readable error message.
        """
        self.version = version
        super().__init__(f"Migration {version} failed: {message}")
