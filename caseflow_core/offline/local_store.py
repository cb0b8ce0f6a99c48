# =============================================================================
# caseflow_core/offline/local_store.py
# Local SQLite Store for Offline Operations
# =============================================================================
"""
LocalStore - SQLite-based on-device storage that mirrors server entities.

Features:
- Idempotent schema creation followed by versioned migrations
- Atomic transactions (nested calls use savepoints)
- One connection per store, serialized by a re-entrant lock
- DataFrame export (pandas) for list and report views
- App settings key/value table

The store is constructed explicitly and handed to the layers above it; the
application's composition root owns its open/close lifecycle.
"""

from __future__ import annotations
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Set, Union
import logging

import pandas as pd

from caseflow_core.errors import MigrationError, StoreInitializationError
from caseflow_core.offline.migrations import SchemaMigrator
from caseflow_core.offline.models import now_ms
from caseflow_core.offline.serialization import canonical_json, loads

logger = logging.getLogger(__name__)

MEMORY_PATH = ":memory:"


class LocalStore:
    """
    Local SQLite database for offline data storage.

    Holds mirrored copies of cases, form submissions and attachments plus the
    sync bookkeeping tables. Pure persistence: no network awareness.
    """

    DEFAULT_DB_PATH = Path(__file__).parent.parent.parent / "local_data" / "caseflow.db"

    # Base (version 1) table shapes; later columns are added by migrations
    SCHEMA = {
        "cases": """
            CREATE TABLE IF NOT EXISTS cases (
                id TEXT PRIMARY KEY,
                customer_name TEXT NOT NULL,
                customer_phone TEXT,
                customer_email TEXT,
                address TEXT,
                verification_type TEXT,
                applicant_type TEXT,
                product TEXT,
                client TEXT,
                priority TEXT DEFAULT 'MEDIUM',
                status TEXT DEFAULT 'PENDING',
                assigned_to TEXT,
                assigned_by TEXT,
                created_by TEXT,
                backend_contact_number TEXT,
                trigger_info TEXT,
                customer_calling_code TEXT,
                notes TEXT,
                created_at INTEGER,
                updated_at INTEGER,
                sync_status TEXT DEFAULT 'pending',
                last_modified INTEGER
            )
        """,
        "form_submissions": """
            CREATE TABLE IF NOT EXISTS form_submissions (
                id TEXT PRIMARY KEY,
                case_id TEXT NOT NULL,
                form_type TEXT NOT NULL,
                form_data TEXT NOT NULL,
                submission_time INTEGER,
                location_latitude REAL,
                location_longitude REAL,
                location_accuracy REAL,
                location_address TEXT,
                device_info TEXT,
                app_version TEXT,
                sync_status TEXT DEFAULT 'pending',
                created_at INTEGER,
                updated_at INTEGER,
                FOREIGN KEY (case_id) REFERENCES cases (id)
            )
        """,
        "attachments": """
            CREATE TABLE IF NOT EXISTS attachments (
                id TEXT PRIMARY KEY,
                case_id TEXT,
                form_submission_id TEXT,
                file_name TEXT NOT NULL,
                file_type TEXT NOT NULL,
                file_size INTEGER,
                file_path TEXT NOT NULL,
                thumbnail_path TEXT,
                upload_status TEXT DEFAULT 'pending',
                metadata TEXT,
                created_at INTEGER,
                updated_at INTEGER,
                FOREIGN KEY (case_id) REFERENCES cases (id),
                FOREIGN KEY (form_submission_id) REFERENCES form_submissions (id)
            )
        """,
        "sync_actions": """
            CREATE TABLE IF NOT EXISTS sync_actions (
                id TEXT PRIMARY KEY,
                action_type TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                action_data TEXT NOT NULL,
                priority INTEGER DEFAULT 1,
                retry_count INTEGER DEFAULT 0,
                max_retries INTEGER DEFAULT 3,
                created_at INTEGER,
                scheduled_at INTEGER,
                status TEXT DEFAULT 'pending'
            )
        """,
        "cache": """
            CREATE TABLE IF NOT EXISTS cache (
                key TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                expires_at INTEGER,
                created_at INTEGER
            )
        """,
        "user_sessions": """
            CREATE TABLE IF NOT EXISTS user_sessions (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                token TEXT NOT NULL,
                refresh_token TEXT,
                expires_at INTEGER,
                created_at INTEGER,
                last_activity INTEGER
            )
        """,
        "conflicts": """
            CREATE TABLE IF NOT EXISTS conflicts (
                id TEXT PRIMARY KEY,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                local_data TEXT NOT NULL,
                server_data TEXT NOT NULL,
                conflict_type TEXT NOT NULL,
                resolution_strategy TEXT,
                created_at INTEGER,
                resolved_at INTEGER,
                status TEXT DEFAULT 'pending'
            )
        """,
        "performance_metrics": """
            CREATE TABLE IF NOT EXISTS performance_metrics (
                id TEXT PRIMARY KEY,
                metric_type TEXT NOT NULL,
                metric_value REAL NOT NULL,
                metadata TEXT,
                timestamp INTEGER
            )
        """,
        "notifications": """
            CREATE TABLE IF NOT EXISTS notifications (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                message TEXT NOT NULL,
                type TEXT DEFAULT 'info',
                data TEXT,
                read_status INTEGER DEFAULT 0,
                created_at INTEGER,
                expires_at INTEGER
            )
        """,
        "app_settings": """
            CREATE TABLE IF NOT EXISTS app_settings (
                key TEXT PRIMARY KEY,
                value TEXT,
                updated_at INTEGER
            )
        """,
    }

    INDEXES = [
        "CREATE INDEX IF NOT EXISTS idx_cases_status ON cases (status)",
        "CREATE INDEX IF NOT EXISTS idx_cases_assigned_to ON cases (assigned_to)",
        "CREATE INDEX IF NOT EXISTS idx_cases_sync_status ON cases (sync_status)",
        "CREATE INDEX IF NOT EXISTS idx_cases_updated_at ON cases (updated_at)",
        "CREATE INDEX IF NOT EXISTS idx_form_submissions_case_id ON form_submissions (case_id)",
        "CREATE INDEX IF NOT EXISTS idx_attachments_case_id ON attachments (case_id)",
        "CREATE INDEX IF NOT EXISTS idx_sync_actions_status ON sync_actions (status)",
        "CREATE INDEX IF NOT EXISTS idx_cache_expires_at ON cache (expires_at)",
    ]

    def __init__(self, db_path: Optional[Union[str, Path]] = None, clock=None):
        """
        Args:
            db_path: Path to the SQLite file, or ":memory:" for a throwaway store
            clock: Callable returning epoch milliseconds (defaults to wall clock)
        """
        if db_path is None:
            db_path = self.DEFAULT_DB_PATH
        self.db_path = db_path if str(db_path) == MEMORY_PATH else Path(db_path)
        self.clock = clock or now_ms
        self._lock = threading.RLock()
        self._connection: Optional[sqlite3.Connection] = None
        self._tx_depth = 0
        self._initialized = False

    @property
    def is_memory(self) -> bool:
        return str(self.db_path) == MEMORY_PATH

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def _open(self) -> sqlite3.Connection:
        if not self.is_memory:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        if not self.is_memory:
            conn.execute("PRAGMA journal_mode = WAL")
        return conn

    def _get_connection(self) -> sqlite3.Connection:
        if self._connection is None:
            raise StoreInitializationError(
                "Local store is not open; call initialize() first",
                db_path=str(self.db_path),
            )
        return self._connection

    def initialize(self) -> None:
        """
        Open the database, create missing tables and indexes, then migrate.

        Safe to call repeatedly. Any failure closes the store and raises
        StoreInitializationError; a partially initialized store is never used.
        """
        with self._lock:
            if self._initialized:
                return

            try:
                if self._connection is None:
                    self._connection = self._open()
                self._create_tables()
                SchemaMigrator(self).migrate()
            except (sqlite3.Error, OSError, MigrationError) as e:
                logger.error(f"Local store initialization failed: {e}")
                self.close()
                raise StoreInitializationError(
                    f"Could not initialize local store: {e}",
                    db_path=str(self.db_path),
                ) from e

            self._initialized = True
            logger.info(f"Local store initialized at: {self.db_path}")

    def _create_tables(self) -> None:
        with self.transaction() as conn:
            for table_name, schema in self.SCHEMA.items():
                conn.execute(schema)
                logger.debug(f"Created/verified table: {table_name}")
            for index_sql in self.INDEXES:
                conn.execute(index_sql)

    # =========================================================================
    # PRIMITIVES
    # =========================================================================

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Context manager for atomic writes.

        Either every statement inside the block commits or none does. A
        nested transaction() becomes a savepoint of the enclosing one.
        """
        with self._lock:
            conn = self._get_connection()

            if self._tx_depth > 0:
                savepoint = f"sp_{self._tx_depth}"
                conn.execute(f"SAVEPOINT {savepoint}")
                self._tx_depth += 1
                try:
                    yield conn
                    conn.execute(f"RELEASE SAVEPOINT {savepoint}")
                except BaseException:
                    conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
                    conn.execute(f"RELEASE SAVEPOINT {savepoint}")
                    raise
                finally:
                    self._tx_depth -= 1
                return

            conn.execute("BEGIN IMMEDIATE")
            self._tx_depth = 1
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            finally:
                self._tx_depth = 0

    def query(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[sqlite3.Row]:
        """Execute a read query and return all rows."""
        with self._lock:
            conn = self._get_connection()
            return conn.execute(sql, list(params or [])).fetchall()

    def query_one(self, sql: str, params: Optional[Sequence[Any]] = None) -> Optional[sqlite3.Row]:
        rows = self.query(sql, params)
        return rows[0] if rows else None

    def execute(self, sql: str, params: Optional[Sequence[Any]] = None) -> int:
        """Execute a single write statement atomically; returns rowcount."""
        with self.transaction() as conn:
            cursor = conn.execute(sql, list(params or []))
            return cursor.rowcount

    def table_columns(self, table: str) -> Set[str]:
        rows = self.query(f"PRAGMA table_info({table})")
        return {row["name"] for row in rows}

    def table_names(self) -> Set[str]:
        rows = self.query("SELECT name FROM sqlite_master WHERE type = 'table'")
        return {row["name"] for row in rows}

    # =========================================================================
    # PANDAS INTEGRATION
    # =========================================================================

    def to_dataframe(
        self,
        table: str,
        where: Optional[str] = None,
        params: Optional[Sequence[Any]] = None,
        order_by: Optional[str] = None,
    ) -> pd.DataFrame:
        """
        Load a table into a pandas DataFrame.

        Args:
            table: Table name
            where: Optional WHERE clause
            params: Parameters for WHERE clause
            order_by: Optional ORDER BY clause

        Returns:
            DataFrame with table data
        """
        query = f"SELECT * FROM {table}"
        if where:
            query += f" WHERE {where}"
        if order_by:
            query += f" ORDER BY {order_by}"

        with self._lock:
            return pd.read_sql_query(query, self._get_connection(), params=list(params or []))

    # =========================================================================
    # SETTINGS
    # =========================================================================

    def get_setting(self, key: str, default: Any = None) -> Any:
        """Get an app setting."""
        row = self.query_one("SELECT value FROM app_settings WHERE key = ?", [key])
        if row is None:
            return default
        return loads(row["value"], default)

    def set_setting(self, key: str, value: Any) -> None:
        """Set an app setting."""
        self.execute(
            """
            INSERT INTO app_settings (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """,
            [key, canonical_json(value), self.clock()]
        )

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    def get_database_size(self) -> int:
        """Size of the database in bytes."""
        page_count = self.query_one("PRAGMA page_count")[0]
        page_size = self.query_one("PRAGMA page_size")[0]
        return page_count * page_size

    def vacuum(self) -> None:
        with self._lock:
            self._get_connection().execute("VACUUM")

    def stats(self) -> Dict[str, int]:
        """Row counts per table, for diagnostics screens."""
        return {
            table: self.query_one(f"SELECT COUNT(*) AS count FROM {table}")["count"]
            for table in self.SCHEMA
        }

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
            self._initialized = False
            self._tx_depth = 0
