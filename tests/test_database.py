"""
Tests for the Database facade: reset, integrity checks and statistics.
"""

from datetime import datetime
from decimal import Decimal

import pytest

from kite import Database
from kite.models import AuditAction, Transaction
from kite.storage import SQLiteEntityStore


class TestLifecycle:
    """Tests for opening and closing."""

    def test_context_manager(self, settings):
        with Database(settings=settings) as database:
            assert database.schema_version >= 1
            assert database.migration_history()

    def test_explicit_store(self, settings, tmp_path):
        store = SQLiteEntityStore(str(tmp_path / "kite.db"))
        database = Database(store=store, settings=settings)
        assert database.store is store
        database.close()

    async def test_data_persists_across_reopen(self, settings, tmp_path):
        path = str(tmp_path / "kite.db")
        with Database(store=SQLiteEntityStore(path), settings=settings) as database:
            await database.accounts.create({"name": "Durable"})
        with Database(store=SQLiteEntityStore(path), settings=settings) as database:
            assert [a.name for a in await database.accounts.find_all()] == ["Durable"]


class TestReset:
    """Tests for clearing user data."""

    async def test_reset_clears_data_keeps_settings(self, db, account, dining):
        await db.app_settings.set("currency", "EUR")

        migration = await db.reset_data()

        assert migration.startswith("reset-")
        assert db.migration_history()[-1] == migration
        assert await db.accounts.count() == 0
        assert await db.categories.count() == 0
        assert await db.app_settings.get("currency") == "EUR"

    async def test_reset_is_audited_and_notified(self, db, account):
        stream = db.notifier.listen("accounts")
        await db.accounts.find_all(cache=True)

        await db.reset_data()

        assert (await stream.get(timeout=1)).action == "reset"
        assert len(db.cache) == 0
        events = await db.audit.get_recent_events()
        assert [e.action for e in events] == [AuditAction.RESET]


class TestIntegrity:
    """Tests for verify_integrity."""

    async def test_clean_database(self, db, account):
        await db.accounts.update(account.id, {"balance": Decimal("-10")})
        await db.transactions.create({
            "account_id": account.id, "date": datetime(2024, 3, 1), "amount": Decimal("-10"),
        })
        report = await db.verify_integrity()
        assert report.valid
        assert report.issues == []

    async def test_reports_orphans_duplicates_and_drift(self, db, account):
        for seconds in (0, 20):
            await db.transactions.create({
                "account_id": account.id,
                "date": datetime(2024, 3, 1, 12, 0, seconds),
                "amount": Decimal("-5"),
                "merchant": "Kiosk",
            })
        orphan = Transaction(account_id="vanished", date=datetime(2024, 3, 2), amount=Decimal("-1"))
        db.store.insert("transactions", orphan.to_record())

        report = await db.verify_integrity()

        assert not report.valid
        assert report.orphaned_transaction_ids == [orphan.id]
        assert report.duplicate_groups == 1
        assert len(report.issues) == 3
        assert len(report.recommendations) == 3


class TestStats:
    """Tests for get_stats."""

    async def test_counts_and_cache(self, db, account):
        await db.accounts.find_all(cache=True)
        await db.accounts.find_all(cache=True)

        stats = await db.get_stats()
        counts = {t.name: t.count for t in stats.tables}

        assert counts["accounts"] == 1
        assert counts["transactions"] == 0
        assert stats.total_records == sum(counts.values())
        assert stats.schema_version == db.schema_version
        assert stats.cache_entries == 1
        assert stats.cache_hit_rate > 0
        assert stats.pending_syncs == 0

    async def test_sync_counts(self, settings):
        with Database(settings=settings, online=False) as database:
            await database.accounts.create({"name": "Queued"})
            stats = await database.get_stats()
        assert stats.pending_syncs == 1
        assert stats.failed_syncs == 0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
