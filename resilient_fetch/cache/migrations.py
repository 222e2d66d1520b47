"""Versioned schema for the durable cache store.

The schema version lives in SQLite's `user_version` header field, so a cache
database carries no bookkeeping table besides its entries.
"""

import sqlite3
from dataclasses import dataclass

import structlog

from resilient_fetch.cache.errors import MigrationError


logger = structlog.get_logger()


@dataclass(frozen=True)
class Migration:
    """One step of the cache schema.

    Attributes:
        version: Schema version once this step is applied.
        description: Short summary shown in logs.
        up_sql: Statements moving the schema to `version`.
        down_sql: Statements moving the schema back to `version - 1`.
    """

    version: int
    description: str
    up_sql: str
    down_sql: str


MIGRATIONS: list[Migration] = [
    Migration(
        version=1,
        description="cache_entries with expiry and access indexes",
        up_sql="""
CREATE TABLE IF NOT EXISTS cache_entries (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    metadata TEXT NOT NULL,
    expires_at_ms REAL NOT NULL,
    created_at_ms REAL NOT NULL,
    accessed_at_ms REAL NOT NULL,
    access_count INTEGER NOT NULL DEFAULT 1
);
CREATE INDEX IF NOT EXISTS idx_cache_entries_expires_at
    ON cache_entries(expires_at_ms);
CREATE INDEX IF NOT EXISTS idx_cache_entries_accessed_at
    ON cache_entries(accessed_at_ms);
""",
        down_sql="""
DROP INDEX IF EXISTS idx_cache_entries_accessed_at;
DROP INDEX IF EXISTS idx_cache_entries_expires_at;
DROP TABLE IF EXISTS cache_entries;
""",
    ),
]

CURRENT_VERSION = MIGRATIONS[-1].version


def get_migrations_to_apply(current_version: int) -> list[Migration]:
    """Steps above `current_version`, lowest first."""
    return sorted(
        (m for m in MIGRATIONS if m.version > current_version),
        key=lambda m: m.version,
    )


class MigrationManager:
    """Moves a cache database between schema versions.

    Each step runs as one script wrapped in BEGIN/COMMIT together with the
    `user_version` update, so a failing step leaves the previous version
    in place.
    """

    def __init__(self, connection: sqlite3.Connection) -> None:
        self._conn = connection
        self._log = logger.bind(component="cache_store", operation="migration")

    def get_current_version(self) -> int:
        """Schema version recorded in the database (0 when fresh)."""
        row = self._conn.execute("PRAGMA user_version").fetchone()
        return int(row[0])

    def _run_step(self, migration: Migration, sql: str, new_version: int) -> None:
        script = f"BEGIN;\n{sql}\nPRAGMA user_version = {new_version:d};\nCOMMIT;"
        try:
            self._conn.executescript(script)
        except sqlite3.Error as e:
            if self._conn.in_transaction:
                self._conn.rollback()
            self._log.error(
                "migration_failed",
                version=migration.version,
                target_version=new_version,
                error=str(e),
            )
            raise MigrationError(migration.version, str(e)) from e

    def apply_migrations(self) -> list[int]:
        """Bring the schema up to CURRENT_VERSION.

        Returns:
            Versions applied, in order. Empty when already current.

        Raises:
            MigrationError: If a step fails.
        """
        current = self.get_current_version()
        pending = get_migrations_to_apply(current)
        if not pending:
            self._log.debug("schema_current", version=current)
            return []

        for migration in pending:
            self._log.info(
                "applying_migration",
                version=migration.version,
                description=migration.description,
            )
            self._run_step(migration, migration.up_sql, migration.version)

        applied = [m.version for m in pending]
        self._log.info("migrations_applied", from_version=current, versions=applied)
        return applied

    def rollback_to(self, target_version: int) -> list[int]:
        """Undo steps until the schema is at `target_version`.

        Returns:
            Versions undone, highest first.

        Raises:
            ValueError: If target_version is negative.
            MigrationError: If a step fails.
        """
        if target_version < 0:
            msg = f"Invalid target version: {target_version}"
            raise ValueError(msg)

        by_version = {m.version: m for m in MIGRATIONS}
        undone: list[int] = []
        current = self.get_current_version()
        while current > target_version and current in by_version:
            migration = by_version[current]
            self._log.info("rolling_back_migration", version=current)
            self._run_step(migration, migration.down_sql, current - 1)
            undone.append(current)
            current -= 1

        return undone
