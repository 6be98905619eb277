"""
Tests for the SQLite entity store

Covers document CRUD, index-backed lookups, nested transactions
(savepoints), after-commit callbacks and schema migrations.
"""

from datetime import datetime

import pytest

from kite.storage import (
    ConflictError,
    SQLiteEntityStore,
    StorageError,
)
from kite.storage.schema import DATA_TABLES, SCHEMA_VERSION


@pytest.fixture
def store():
    s = SQLiteEntityStore(":memory:")
    yield s
    s.close()


class TestDocumentOperations:
    """Tests for basic document reads and writes."""

    def test_insert_and_get(self, store):
        store.insert("accounts", {"id": "a1", "name": "Checking"})
        assert store.get("accounts", "a1") == {"id": "a1", "name": "Checking"}
        assert store.get("accounts", "missing") is None

    def test_insert_duplicate_id_conflicts(self, store):
        store.insert("accounts", {"id": "a1", "name": "Checking"})
        with pytest.raises(ConflictError):
            store.insert("accounts", {"id": "a1", "name": "Other"})

    def test_put_upserts(self, store):
        store.put("accounts", {"id": "a1", "name": "Checking"})
        store.put("accounts", {"id": "a1", "name": "Renamed"})
        assert store.get("accounts", "a1")["name"] == "Renamed"
        assert store.count("accounts") == 1

    def test_delete_reports_existence(self, store):
        store.insert("accounts", {"id": "a1"})
        assert store.delete("accounts", "a1") is True
        assert store.delete("accounts", "a1") is False

    def test_unknown_table_rejected(self, store):
        with pytest.raises(StorageError, match="Unknown table"):
            store.get("widgets", "w1")

    def test_record_needs_string_id(self, store):
        with pytest.raises(StorageError):
            store.insert("accounts", {"name": "No id"})

    def test_scan_keeps_insertion_order(self, store):
        for i in range(5):
            store.insert("categories", {"id": f"c{4 - i}", "name": str(i)})
        assert [r["id"] for r in store.scan("categories")] == ["c4", "c3", "c2", "c1", "c0"]


class TestQueries:
    """Tests for where_equals / where_in / where_between."""

    def test_where_equals_with_null_and_bool(self, store):
        store.insert("accounts", {"id": "a1", "is_default": True, "institution": None})
        store.insert("accounts", {"id": "a2", "is_default": False, "institution": "Bank"})
        assert [r["id"] for r in store.where_equals("accounts", {"is_default": True})] == ["a1"]
        assert [r["id"] for r in store.where_equals("accounts", {"institution": None})] == ["a1"]

    def test_where_in(self, store):
        for i in range(3):
            store.insert("budgets", {"id": f"b{i}", "month": f"2024-0{i + 1}"})
        rows = store.where_in("budgets", "month", ["2024-01", "2024-03"])
        assert [r["id"] for r in rows] == ["b0", "b2"]
        assert store.where_in("budgets", "month", []) == []

    def test_where_between_orders_by_field(self, store):
        store.insert("transactions", {"id": "t3", "date": datetime(2024, 3, 1).isoformat()})
        store.insert("transactions", {"id": "t1", "date": datetime(2024, 1, 1).isoformat()})
        store.insert("transactions", {"id": "t2", "date": datetime(2024, 2, 1).isoformat()})

        rows = store.where_between("transactions", "date", datetime(2024, 1, 1), datetime(2024, 3, 1))
        assert [r["id"] for r in rows] == ["t1", "t2", "t3"]

        rows = store.where_between(
            "transactions", "date", datetime(2024, 1, 1), datetime(2024, 3, 1), include_upper=False
        )
        assert [r["id"] for r in rows] == ["t1", "t2"]

    def test_invalid_field_name_rejected(self, store):
        with pytest.raises(StorageError):
            store.where_equals("accounts", {"name; DROP TABLE accounts": "x"})


class TestTransactions:
    """Tests for atomic units and savepoints."""

    def test_rollback_on_error(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.insert("accounts", {"id": "a1"})
                raise RuntimeError("boom")
        assert store.get("accounts", "a1") is None

    def test_nested_savepoint_rolls_back_alone(self, store):
        """A failing nested unit undoes only its own writes."""
        with store.transaction():
            store.insert("accounts", {"id": "outer"})
            with pytest.raises(RuntimeError):
                with store.transaction():
                    store.insert("accounts", {"id": "inner"})
                    raise RuntimeError("inner failure")
        assert store.get("accounts", "outer") is not None
        assert store.get("accounts", "inner") is None

    def test_after_commit_runs_only_on_commit(self, store):
        calls = []
        with store.transaction():
            store.after_commit(lambda: calls.append("committed"))
            assert calls == []
        assert calls == ["committed"]

        with pytest.raises(RuntimeError):
            with store.transaction():
                store.after_commit(lambda: calls.append("rolled back"))
                raise RuntimeError("boom")
        assert calls == ["committed"]

    def test_nested_callbacks_wait_for_outermost_commit(self, store):
        calls = []
        with store.transaction():
            with store.transaction():
                store.after_commit(lambda: calls.append("inner"))
            assert calls == []
        assert calls == ["inner"]

    def test_after_commit_outside_transaction_runs_immediately(self, store):
        calls = []
        store.after_commit(lambda: calls.append("now"))
        assert calls == ["now"]
        assert store.in_transaction is False


class TestSchema:
    """Tests for schema versions and migrations."""

    def test_fresh_store_is_latest(self, store):
        assert store.schema_version == SCHEMA_VERSION
        assert store.migration_history() == [f"v{SCHEMA_VERSION}-initial-setup"]

    def test_indexes_created(self, store):
        names = store.indexes("transactions")
        assert "idx_transactions_account_id" in names
        assert "idx_transactions_account_id_date" in names

    def test_upgrade_backfills_and_records_history(self, tmp_path):
        path = tmp_path / "kite.db"
        old = SQLiteEntityStore(path, target_version=2)
        assert "settings" not in old.table_names()
        old.insert("transactions", {"id": "t1", "account_id": "a1", "amount": "-5"})
        old.close()

        upgraded = SQLiteEntityStore(path)
        try:
            assert upgraded.schema_version == SCHEMA_VERSION
            assert upgraded.migration_history() == ["v2-initial-setup", f"v2-to-v{SCHEMA_VERSION}"]
            record = upgraded.get("transactions", "t1")
            assert record["tags"] == []
            assert record["metadata"] == {}
            assert "settings" in upgraded.table_names()
        finally:
            upgraded.close()

    def test_newer_store_rejected(self, tmp_path):
        path = tmp_path / "kite.db"
        SQLiteEntityStore(path).close()
        with pytest.raises(StorageError, match="newer"):
            SQLiteEntityStore(path, target_version=2)

    def test_reset_clears_data_keeps_settings(self, store):
        store.insert("accounts", {"id": "a1"})
        store.insert("audit_log", {"id": "e1"})
        store.insert("settings", {"id": "theme", "value": "dark"})

        name = store.reset_data()

        assert name.startswith("reset-")
        for table in DATA_TABLES:
            assert store.count(table) == 0
        assert store.get("settings", "theme")["value"] == "dark"
        assert store.migration_history()[-1] == name


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
