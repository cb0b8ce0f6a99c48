# =============================================================================
# caseflow_core/offline/migrations.py
# Versioned, idempotent schema migrations for the local store
# =============================================================================
"""
SchemaMigrator - brings the on-device schema up to TARGET_VERSION.

The applied version is tracked in a `schema_migrations` ledger and mirrored
into `PRAGMA user_version`. Each step commits together with its ledger row
and version bump, so a crash mid-migration leaves the step unapplied and it
is retried on the next start. Steps check for existing columns and indexes
before adding them, which makes a re-applied step a no-op.
"""

from __future__ import annotations
import sqlite3
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, List, Optional, Sequence
import logging

from caseflow_core.errors import MigrationError
from caseflow_core.logging import LogContext

if TYPE_CHECKING:
    from caseflow_core.offline.local_store import LocalStore

logger = logging.getLogger(__name__)

LEDGER_SCHEMA = """
    CREATE TABLE IF NOT EXISTS schema_migrations (
        version INTEGER PRIMARY KEY,
        name TEXT NOT NULL,
        applied_at INTEGER
    )
"""


def column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return any(row[1] == column for row in rows)


def add_column(conn: sqlite3.Connection, table: str, column: str, definition: str) -> bool:
    """Add a column unless it already exists. Returns True if added."""
    if column_exists(conn, table, column):
        logger.debug(f"Column {table}.{column} already present")
        return False
    conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")
    return True


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    apply: Callable[[sqlite3.Connection], None]


def _case_versioning(conn: sqlite3.Connection) -> None:
    add_column(conn, "cases", "version", "INTEGER DEFAULT 1")
    add_column(conn, "cases", "conflict_data", "TEXT")
    add_column(conn, "cases", "offline_changes", "TEXT")
    add_column(conn, "attachments", "compressed_path", "TEXT")
    add_column(conn, "attachments", "upload_progress", "REAL DEFAULT 0")


def _sync_bookkeeping(conn: sqlite3.Connection) -> None:
    add_column(conn, "sync_actions", "sequence", "INTEGER")
    add_column(conn, "sync_actions", "last_error", "TEXT")
    add_column(conn, "sync_actions", "updated_at", "INTEGER")
    add_column(conn, "attachments", "sync_status", "TEXT DEFAULT 'pending'")
    add_column(conn, "attachments", "last_modified", "INTEGER")
    add_column(conn, "attachments", "deleted_at", "INTEGER")
    add_column(conn, "cases", "deleted_at", "INTEGER")
    add_column(conn, "form_submissions", "last_modified", "INTEGER")
    add_column(conn, "conflicts", "sync_action_id", "TEXT")
    add_column(conn, "conflicts", "server_version", "INTEGER")

    # Existing queue rows get an enqueue order matching their creation order
    conn.execute(
        """
        UPDATE sync_actions SET sequence = (
            SELECT COUNT(*) FROM sync_actions AS earlier
            WHERE earlier.created_at < sync_actions.created_at
               OR (earlier.created_at = sync_actions.created_at AND earlier.rowid <= sync_actions.rowid)
        )
        WHERE sequence IS NULL
        """
    )

    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_sync_actions_queue "
        "ON sync_actions (status, priority, created_at, sequence)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_sync_actions_entity "
        "ON sync_actions (entity_type, entity_id)"
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_conflicts_status ON conflicts (status)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_notifications_read ON notifications (read_status)")


MIGRATIONS: List[Migration] = [
    Migration(2, "case_versioning_and_attachment_variants", _case_versioning),
    Migration(3, "sync_bookkeeping", _sync_bookkeeping),
]

TARGET_VERSION = max(m.version for m in MIGRATIONS)


class SchemaMigrator:
    """Applies pending migrations to a LocalStore, in order, exactly once."""

    def __init__(
        self,
        store: LocalStore,
        migrations: Optional[Sequence[Migration]] = None,
    ):
        self.store = store
        self.migrations = sorted(migrations or MIGRATIONS, key=lambda m: m.version)

    @property
    def target_version(self) -> int:
        return self.migrations[-1].version if self.migrations else 0

    def _ensure_ledger(self) -> None:
        with self.store.transaction() as conn:
            conn.execute(LEDGER_SCHEMA)

    def current_version(self) -> int:
        """Highest version recorded in either the ledger or user_version."""
        self._ensure_ledger()
        ledger = self.store.query_one("SELECT MAX(version) AS version FROM schema_migrations")
        user_version = self.store.query_one("PRAGMA user_version")[0]
        return max(ledger["version"] or 0, user_version or 0)

    def pending(self) -> List[Migration]:
        current = self.current_version()
        return [m for m in self.migrations if m.version > current]

    def applied(self) -> List[int]:
        self._ensure_ledger()
        rows = self.store.query("SELECT version FROM schema_migrations ORDER BY version")
        return [row["version"] for row in rows]

    def migrate(self) -> int:
        """
        Apply every pending migration.

        Returns:
            The schema version after migrating
        """
        pending = self.pending()
        if not pending:
            logger.debug(f"Schema up to date (version {self.current_version()})")
            return self.current_version()

        with LogContext(logger, f"Migrating local schema to version {pending[-1].version}"):
            for migration in pending:
                self._apply(migration)

        return self.current_version()

    def _apply(self, migration: Migration) -> None:
        try:
            with self.store.transaction() as conn:
                migration.apply(conn)
                conn.execute(
                    "INSERT OR REPLACE INTO schema_migrations (version, name, applied_at) VALUES (?, ?, ?)",
                    [migration.version, migration.name, self.store.clock()],
                )
                conn.execute(f"PRAGMA user_version = {int(migration.version)}")
        except sqlite3.Error as e:
            raise MigrationError(
                f"Migration {migration.version} ({migration.name}) failed: {e}",
                version=migration.version,
                step=migration.name,
            ) from e

        logger.info(f"Applied migration {migration.version}: {migration.name}")
