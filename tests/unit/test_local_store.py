# =============================================================================
# tests/unit/test_local_store.py
# Unit Tests for LocalStore
# =============================================================================

import pytest
import pandas as pd

from caseflow_core.errors import StoreInitializationError
from caseflow_core.offline.local_store import LocalStore


class TestInitialization:
    """Test store open/create lifecycle"""

    def test_creates_all_tables(self, store):
        """Every base table plus the migration ledger exists"""
        tables = store.table_names()
        for table in LocalStore.SCHEMA:
            assert table in tables
        assert "schema_migrations" in tables

    def test_initialize_is_idempotent(self, store):
        """Calling initialize() again is a no-op"""
        store.execute("INSERT INTO app_settings (key, value) VALUES ('k', '1')")
        store.initialize()
        store.initialize()
        assert store.get_setting("k") == 1

    def test_file_store_survives_reopen(self, tmp_path, clock):
        """Data persists across close/initialize on a file database"""
        path = tmp_path / "nested" / "caseflow.db"
        first = LocalStore(path, clock=clock)
        first.initialize()
        first.set_setting("device_id", "device_1")
        first.close()

        second = LocalStore(path, clock=clock)
        second.initialize()
        assert second.get_setting("device_id") == "device_1"
        second.close()

    def test_failure_surfaces_fatal_error(self, tmp_path):
        """An unopenable path raises StoreInitializationError and leaves the store closed"""
        blocker = tmp_path / "not_a_directory"
        blocker.write_text("occupied")
        store = LocalStore(blocker / "caseflow.db")

        with pytest.raises(StoreInitializationError) as exc_info:
            store.initialize()

        assert exc_info.value.recoverable is False
        assert exc_info.value.code == "STORE_001"
        assert not store.is_initialized

    def test_queries_before_initialize_fail(self):
        """A store that was never opened refuses to run queries"""
        store = LocalStore(":memory:")
        with pytest.raises(StoreInitializationError):
            store.query("SELECT 1")


class TestTransactions:
    """Test atomicity guarantees"""

    def test_commit(self, store):
        with store.transaction() as conn:
            conn.execute("INSERT INTO app_settings (key, value) VALUES ('a', '1')")
            conn.execute("INSERT INTO app_settings (key, value) VALUES ('b', '2')")

        assert store.get_setting("a") == 1
        assert store.get_setting("b") == 2

    def test_rollback_on_error(self, store):
        """Either every write commits or none does"""
        with pytest.raises(RuntimeError):
            with store.transaction() as conn:
                conn.execute("INSERT INTO app_settings (key, value) VALUES ('a', '1')")
                raise RuntimeError("boom")

        assert store.get_setting("a") is None

    def test_nested_rollback_only_undoes_inner_block(self, store):
        with store.transaction() as conn:
            conn.execute("INSERT INTO app_settings (key, value) VALUES ('outer', '1')")
            with pytest.raises(ValueError):
                with store.transaction() as inner:
                    inner.execute("INSERT INTO app_settings (key, value) VALUES ('inner', '2')")
                    raise ValueError("inner failure")

        assert store.get_setting("outer") == 1
        assert store.get_setting("inner") is None

    def test_execute_returns_rowcount(self, store):
        store.set_setting("a", 1)
        store.set_setting("b", 2)
        assert store.execute("DELETE FROM app_settings") == 2


class TestSettingsAndMaintenance:
    """Test settings table, DataFrame export and maintenance helpers"""

    def test_setting_round_trip(self, store):
        store.set_setting("last_pull_at", 1_700_000_000_000)
        store.set_setting("flags", {"beta": True, "tier": "gold"})

        assert store.get_setting("last_pull_at") == 1_700_000_000_000
        assert store.get_setting("flags") == {"beta": True, "tier": "gold"}
        assert store.get_setting("missing", "fallback") == "fallback"

    def test_setting_overwrite(self, store):
        store.set_setting("device_id", "a")
        store.set_setting("device_id", "b")
        assert store.get_setting("device_id") == "b"

    def test_to_dataframe(self, store):
        store.set_setting("a", 1)
        store.set_setting("b", 2)

        df = store.to_dataframe("app_settings", where="key = ?", params=["b"])

        assert isinstance(df, pd.DataFrame)
        assert len(df) == 1
        assert df.iloc[0]["key"] == "b"

    def test_database_size_and_vacuum(self, store):
        assert store.get_database_size() > 0
        store.vacuum()
        assert store.get_database_size() > 0

    def test_stats_counts_rows(self, store):
        store.set_setting("a", 1)
        stats = store.stats()
        assert stats["app_settings"] == 1
        assert stats["cases"] == 0
