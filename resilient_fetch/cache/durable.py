"""Durable cache tier: store protocol and SQLite implementation."""

import json
import sqlite3
import threading
import time
import uuid
from collections.abc import Callable, Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import structlog

from resilient_fetch.cache.errors import DurableStoreError, StoreNotConnectedError
from resilient_fetch.cache.migrations import CURRENT_VERSION, MigrationManager
from resilient_fetch.cache.models import CacheMetadata, StoredEntry, epoch_ms


logger = structlog.get_logger()


class DurableStore(Protocol):
    """Interface of a persistent cache tier.

    Implementations raise DurableStoreError for every storage failure.
    Upserts are idempotent and keyed by normalized key; the last write wins.
    """

    def get(self, key: str) -> StoredEntry | None:
        """Load an entry and record the access."""
        ...

    def exists(self, key: str) -> bool:
        """Whether an entry is stored, without recording an access."""
        ...

    def upsert(self, key: str, value: Any, metadata: CacheMetadata) -> None:
        """Insert or replace an entry."""
        ...

    def delete(self, key: str) -> bool:
        """Remove an entry. Returns False if absent."""
        ...

    def delete_expired_before(self, cutoff_ms: float) -> int:
        """Remove entries that expired before `cutoff_ms`. Returns the count."""
        ...

    def list_keys(self, pattern: str | None = None) -> list[str]:
        """List keys, optionally filtered by a glob pattern."""
        ...

    def clear(self) -> int:
        """Remove every entry. Returns the count."""
        ...

    def close(self) -> None:
        """Release resources."""
        ...


@dataclass
class TransactionContext:
    """Context for a single transaction with timing.

    Attributes:
        tx_id: Unique transaction identifier.
        start_time_ns: Start time in nanoseconds.
        operation: The operation being performed.
    """

    tx_id: str
    start_time_ns: int
    operation: str
    affected_rows: int = field(default=0)

    def add_affected_rows(self, rows: int) -> None:
        """Add to the affected row count."""
        self.affected_rows += rows


class SqliteCacheStore:
    """SQLite implementation of the durable cache tier.

    Uses WAL mode and versioned schema migrations. One connection is shared
    across threads and serialized by a lock.
    """

    def __init__(
        self,
        db_path: Path | str,
        clock: Callable[[], float] = epoch_ms,
    ) -> None:
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
            clock: Wall clock in epoch milliseconds for access bookkeeping.
        """
        self._db_path = Path(db_path) if isinstance(db_path, str) else db_path
        self._clock = clock
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._log = logger.bind(component="cache_store", db_path=str(self._db_path))

    @property
    def db_path(self) -> Path:
        """Get the database path."""
        return self._db_path

    @property
    def is_connected(self) -> bool:
        """Check if connected to database."""
        return self._conn is not None

    def connect(self) -> None:
        """Open connection to database and apply migrations.

        Creates the database file and parent directories if they don't exist.

        Raises:
            DurableStoreError: If the database cannot be opened.
            MigrationError: If the schema cannot be brought up to date.
        """
        with self._lock:
            if self._conn is not None:
                return

            in_memory = str(self._db_path) == ":memory:"
            self._log.info("connecting_to_database")
            try:
                if not in_memory:
                    self._db_path.parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
                conn.row_factory = sqlite3.Row
                if not in_memory:
                    conn.execute("PRAGMA journal_mode=WAL")
                conn.execute("PRAGMA synchronous=NORMAL")
            except (OSError, sqlite3.Error) as e:
                raise DurableStoreError("connect", str(e)) from e

            migration_mgr = MigrationManager(conn)
            try:
                old_version = migration_mgr.get_current_version()
                applied = migration_mgr.apply_migrations()
            except Exception:
                conn.close()
                raise
            self._conn = conn

            self._log.info(
                "database_connected",
                old_version=old_version,
                new_version=CURRENT_VERSION,
                migrations_applied=applied,
            )

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                self._log.info("database_closed")

    def __enter__(self) -> "SqliteCacheStore":
        """Context manager entry."""
        self.connect()
        return self

    def __exit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Context manager exit."""
        self.close()

    def get_schema_version(self) -> int:
        """Get the current schema version."""
        with self._transaction("get_schema_version") as (conn, _ctx):
            return MigrationManager(conn).get_current_version()

    @contextmanager
    def _transaction(
        self, operation: str
    ) -> Generator[tuple[sqlite3.Connection, TransactionContext]]:
        """Serialize access, commit on success and map errors.

        Args:
            operation: Name of the operation for logging.

        Yields:
            The connection and a transaction context.

        Raises:
            StoreNotConnectedError: If the store is not connected.
            DurableStoreError: If SQLite reports an error.
        """
        with self._lock:
            conn = self._conn
            if conn is None:
                raise StoreNotConnectedError(operation)

            ctx = TransactionContext(
                tx_id=str(uuid.uuid4())[:8],
                start_time_ns=time.perf_counter_ns(),
                operation=operation,
            )
            try:
                yield conn, ctx
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                self._log.error(
                    "transaction_failed",
                    tx_id=ctx.tx_id,
                    op=operation,
                    error=str(e),
                )
                raise DurableStoreError(operation, str(e)) from e

            duration_ms = (time.perf_counter_ns() - ctx.start_time_ns) / 1_000_000
            self._log.debug(
                "transaction_complete",
                tx_id=ctx.tx_id,
                op=operation,
                affected_rows=ctx.affected_rows,
                duration_ms=round(duration_ms, 2),
            )

    def get(self, key: str) -> StoredEntry | None:
        """Load an entry and bump its access count.

        Args:
            key: Normalized cache key.

        Returns:
            The stored entry, or None if absent.

        Raises:
            DurableStoreError: If SQLite fails or the row cannot be decoded.
        """
        now = self._clock()
        with self._transaction("get") as (conn, ctx):
            row = conn.execute(
                """
                SELECT key, value, metadata, created_at_ms, access_count
                FROM cache_entries WHERE key = ?
                """,
                (key,),
            ).fetchone()
            if row is None:
                return None
            cursor = conn.execute(
                """
                UPDATE cache_entries
                SET accessed_at_ms = ?, access_count = access_count + 1
                WHERE key = ?
                """,
                (now, key),
            )
            ctx.add_affected_rows(cursor.rowcount)

        try:
            value = json.loads(row["value"])
            metadata = CacheMetadata.from_dict(json.loads(row["metadata"]))
        except (ValueError, KeyError, TypeError) as e:
            self._log.error("corrupt_entry", key=key, error=str(e))
            raise DurableStoreError("get", f"corrupt entry for {key!r}: {e}") from e

        return StoredEntry(
            key=row["key"],
            value=value,
            metadata=metadata,
            created_at_ms=row["created_at_ms"],
            accessed_at_ms=now,
            access_count=row["access_count"] + 1,
        )

    def exists(self, key: str) -> bool:
        """Check whether a key is stored."""
        with self._transaction("exists") as (conn, _ctx):
            row = conn.execute(
                "SELECT 1 FROM cache_entries WHERE key = ? LIMIT 1",
                (key,),
            ).fetchone()
        return row is not None

    def upsert(self, key: str, value: Any, metadata: CacheMetadata) -> None:
        """Insert or replace an entry.

        Args:
            key: Normalized cache key.
            value: JSON-serializable payload.
            metadata: Entry metadata.

        Raises:
            DurableStoreError: If the value cannot be serialized or written.
        """
        try:
            value_json = json.dumps(value)
            metadata_json = json.dumps(metadata.to_dict())
        except (TypeError, ValueError) as e:
            raise DurableStoreError("upsert", f"value is not JSON-serializable: {e}") from e

        now = self._clock()
        with self._transaction("upsert") as (conn, ctx):
            cursor = conn.execute(
                """
                INSERT INTO cache_entries (
                    key, value, metadata, expires_at_ms,
                    created_at_ms, accessed_at_ms, access_count
                ) VALUES (?, ?, ?, ?, ?, ?, 1)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    metadata = excluded.metadata,
                    expires_at_ms = excluded.expires_at_ms,
                    accessed_at_ms = excluded.accessed_at_ms,
                    access_count = cache_entries.access_count + 1
                """,
                (key, value_json, metadata_json, metadata.expires_at_ms, now, now),
            )
            ctx.add_affected_rows(cursor.rowcount)

    def delete(self, key: str) -> bool:
        """Remove an entry. Returns False if absent."""
        with self._transaction("delete") as (conn, ctx):
            cursor = conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
            ctx.add_affected_rows(cursor.rowcount)
        return cursor.rowcount > 0

    def delete_expired_before(self, cutoff_ms: float) -> int:
        """Remove entries whose expiry lies before a cutoff.

        Args:
            cutoff_ms: Epoch milliseconds; entries with expires_at_ms below it go.

        Returns:
            Number of deleted entries.
        """
        with self._transaction("delete_expired_before") as (conn, ctx):
            cursor = conn.execute(
                "DELETE FROM cache_entries WHERE expires_at_ms < ?",
                (cutoff_ms,),
            )
            ctx.add_affected_rows(cursor.rowcount)
        return cursor.rowcount

    def list_keys(self, pattern: str | None = None) -> list[str]:
        """List stored keys.

        Args:
            pattern: Optional glob pattern (`*` and `?` wildcards).

        Returns:
            Matching keys in lexicographic order.
        """
        with self._transaction("list_keys") as (conn, _ctx):
            if pattern is None:
                rows = conn.execute(
                    "SELECT key FROM cache_entries ORDER BY key"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT key FROM cache_entries WHERE key GLOB ? ORDER BY key",
                    (pattern,),
                ).fetchall()
        return [row["key"] for row in rows]

    def count(self) -> int:
        """Number of stored entries."""
        with self._transaction("count") as (conn, _ctx):
            row = conn.execute("SELECT COUNT(*) FROM cache_entries").fetchone()
        return int(row[0])

    def clear(self) -> int:
        """Remove every entry. Returns the number removed."""
        with self._transaction("clear") as (conn, ctx):
            cursor = conn.execute("DELETE FROM cache_entries")
            ctx.add_affected_rows(cursor.rowcount)
        return cursor.rowcount
