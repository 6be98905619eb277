"""
Tests for the transaction manager, change notifications, the read
cache, the offline write queue and optimistic updates.
"""

import asyncio

import pytest

from kite import Database
from kite.models import SyncOperation, SyncStatus
from kite.storage import (
    ConflictError,
    ContentionError,
    StorageError,
    TransactionTimeoutError,
    ValidationError,
)
from kite.sync import ChangeNotifier, OptimisticView, QueryCache, TentativeChange
from kite.sync.cache import make_cache_key
from kite.sync.optimistic import ChangeState


class TestTransactionManager:
    """Tests for retry, timeout and nesting."""

    async def test_contention_is_retried(self, db):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ContentionError("locked")
            return "ok"

        assert await db.manager.execute(flaky, retries=3) == "ok"
        assert len(calls) == 3

    async def test_contention_gives_up(self, db):
        calls = []

        async def locked():
            calls.append(1)
            raise ContentionError("locked")

        with pytest.raises(ContentionError):
            await db.manager.execute(locked, retries=2)
        assert len(calls) == 2

    async def test_timeout_raises_and_rolls_back(self, db):
        calls = []

        async def slow():
            calls.append(1)
            await db.categories.create({"name": f"Slow {len(calls)}"})
            await asyncio.sleep(1)

        with pytest.raises(TransactionTimeoutError):
            await db.manager.execute(slow, retries=2, timeout=0.05)
        assert len(calls) == 2
        assert await db.categories.count() == 0

    async def test_validation_not_retried(self, db):
        calls = []

        async def invalid():
            calls.append(1)
            raise ValidationError.single("name", "required", "Name is required")

        with pytest.raises(ValidationError):
            await db.manager.execute(invalid, retries=3)
        assert len(calls) == 1

    async def test_zero_retries_means_single_attempt(self, db):
        calls = []

        async def locked():
            calls.append(1)
            raise ContentionError("locked")

        with pytest.raises(ContentionError):
            await db.manager.execute(locked, retries=0)
        assert len(calls) == 1

    async def test_failed_unit_rolls_back_everything(self, db):
        async def unit():
            await db.categories.create({"name": "First"})
            await db.categories.create({"name": "Second"})
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await db.manager.execute(unit)
        assert await db.categories.count() == 0

    async def test_nested_unit_is_a_savepoint(self, db):
        async def inner():
            await db.categories.create({"name": "Dropped"})
            raise RuntimeError("inner failure")

        async def outer():
            await db.categories.create({"name": "Kept"})
            with pytest.raises(RuntimeError):
                await db.manager.execute(inner)
            return "done"

        assert await db.manager.execute(outer) == "done"
        assert [c.name for c in await db.categories.find_all()] == ["Kept"]


class TestChangeNotifications:
    """Tests for events published after commit."""

    async def test_stream_receives_committed_change(self, db):
        stream = db.notifier.listen("accounts")
        account = await db.accounts.create({"name": "Savings"})

        event = await stream.get(timeout=1)
        assert event.table == "accounts"
        assert event.action == "create"
        assert event.record_id == account.id
        assert event.version == 1
        stream.close()

    async def test_no_events_before_commit(self, db):
        stream = db.notifier.listen()
        seen_inside = []

        async def unit():
            await db.accounts.create({"name": "A"})
            await db.categories.create({"name": "B"})
            seen_inside.append(stream.pending())

        await db.manager.execute(unit)
        assert seen_inside == [0]
        assert stream.pending() == 2

    async def test_no_events_after_rollback(self, db):
        stream = db.notifier.listen("accounts")

        async def unit():
            await db.accounts.create({"name": "A"})
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await db.manager.execute(unit)
        assert stream.pending() == 0

    def test_failing_handler_does_not_block_others(self):
        notifier = ChangeNotifier()
        received = []

        def broken(event):
            raise RuntimeError("handler bug")

        notifier.subscribe("accounts", broken)
        notifier.subscribe("accounts", received.append)
        notifier.publish("accounts", "update", "a1", {"id": "a1", "version": 2})
        assert received[0].version == 2

    def test_unsubscribe(self):
        notifier = ChangeNotifier()
        received = []
        unsubscribe = notifier.subscribe_all(received.append)
        notifier.publish("accounts", "create")
        unsubscribe()
        notifier.publish("accounts", "create")
        assert len(received) == 1


class TestQueryCache:
    """Tests for the TTL cache."""

    def test_expiry_with_clock(self):
        now = [100.0]
        cache = QueryCache(default_ttl=10, clock=lambda: now[0])
        cache.set("accounts:find:1", ["a"])
        assert cache.get("accounts:find:1") == ["a"]
        now[0] = 110.0
        assert cache.get("accounts:find:1") is None
        assert (cache.hits, cache.misses) == (1, 1)

    def test_invalidate_by_table(self):
        cache = QueryCache()
        cache.set(make_cache_key("accounts", "find", {"a": 1}), 1)
        cache.set(make_cache_key("accounts", "find", {"a": 2}), 2)
        cache.set(make_cache_key("budgets", "find", {}), 3)
        assert cache.invalidate("accounts") == 2
        assert len(cache) == 1

    def test_keys_are_stable(self):
        assert make_cache_key("t", "k", {"a": 1, "b": 2}) == make_cache_key("t", "k", {"b": 2, "a": 1})

    def test_purge_expired(self):
        now = [0.0]
        cache = QueryCache(clock=lambda: now[0])
        cache.set("a:x:1", 1, ttl=5)
        cache.set("a:x:2", 2, ttl=50)
        now[0] = 10.0
        assert cache.purge_expired() == 1

    def test_zero_ttl_is_not_replaced_by_default(self):
        cache = QueryCache(default_ttl=60, clock=lambda: 0.0)
        cache.set("a:x:1", [1], ttl=0)
        assert cache.get("a:x:1") is None

    async def test_cached_results_are_copies(self):
        cache = QueryCache()

        async def load():
            return ["a", "b"]

        first = await cache.get_or_load("t:k:1", load)
        first.clear()
        second = await cache.get_or_load("t:k:1", load)
        assert second == ["a", "b"]
        second.append("c")
        assert await cache.get_or_load("t:k:1", load) == ["a", "b"]

    def test_database_shares_one_cache(self, db, settings):
        assert db.cache is db.manager.cache
        assert db.notifier is db.manager.notifier
        assert db.cache.default_ttl == settings.cache.default_ttl_seconds

    async def test_cached_reads_invalidated_on_write(self, db):
        await db.accounts.create({"name": "One"})
        first = await db.accounts.find_all(cache=True)
        assert len(first) == 1
        assert len(db.cache) == 1

        await db.accounts.create({"name": "Two"})
        assert len(db.cache) == 0
        assert len(await db.accounts.find_all(cache=True)) == 2


@pytest.fixture
def offline_db(settings):
    database = Database(settings=settings, online=False)
    yield database
    database.close()


class TestOfflineQueue:
    """Tests for write capture and replay."""

    async def test_online_writes_are_not_captured(self, db):
        await db.accounts.create({"name": "Online"})
        assert db.sync_queue.pending() == []

    async def test_offline_writes_captured_in_order(self, offline_db):
        account = await offline_db.accounts.create({"name": "Offline"})
        await offline_db.accounts.update(account.id, {"name": "Renamed"})
        await offline_db.accounts.delete(account.id)

        pending = offline_db.sync_queue.pending()
        assert [i.operation for i in pending] == [
            SyncOperation.CREATE, SyncOperation.UPDATE, SyncOperation.DELETE,
        ]
        assert pending[1].payload["name"] == "Renamed"
        assert all(i.table_name == "accounts" for i in pending)

    async def test_rolled_back_write_is_not_queued(self, offline_db):
        async def unit():
            await offline_db.accounts.create({"name": "Ghost"})
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await offline_db.manager.execute(unit)
        assert offline_db.sync_queue.pending() == []

    async def test_drain_is_fifo(self, offline_db):
        replayed = []

        async def processor(item):
            replayed.append(item.payload["name"])

        for name in ("a", "b", "c"):
            await offline_db.categories.create({"name": name})
        offline_db.sync_queue.set_processor(processor)

        result = await offline_db.sync_queue.drain()
        assert replayed == ["a", "b", "c"]
        assert (result.processed, result.failed, result.remaining) == (3, 0, 0)

    async def test_drain_without_processor(self, offline_db):
        with pytest.raises(StorageError):
            await offline_db.sync_queue.drain()

    async def test_failed_item_is_marked_and_retried_later(self, offline_db):
        attempts = []

        async def processor(item):
            attempts.append(item.payload["name"])
            if item.payload["name"] == "bad":
                raise ConnectionError("remote down")

        await offline_db.categories.create({"name": "bad"})
        await offline_db.categories.create({"name": "good"})
        offline_db.sync_queue.set_processor(processor)

        result = await offline_db.sync_queue.drain()
        assert (result.processed, result.failed) == (1, 1)
        assert attempts == ["bad", "bad", "bad", "good"]

        failed = offline_db.sync_queue.failed()
        assert failed[0].status == SyncStatus.FAILED
        assert failed[0].retry_count == 3
        assert "remote down" in failed[0].error

        assert offline_db.sync_queue.retry_failed() == 1
        assert len(offline_db.sync_queue.pending()) == 1

    async def test_reconnect_drains(self, offline_db):
        replayed = []

        async def processor(item):
            replayed.append(item.operation)

        offline_db.sync_queue.set_processor(processor)
        await offline_db.accounts.create({"name": "Offline"})

        result = await offline_db.sync_queue.set_online(True)
        assert result.processed == 1
        assert replayed == [SyncOperation.CREATE]
        assert offline_db.sync_queue.is_online

        await offline_db.accounts.create({"name": "Online"})
        assert offline_db.sync_queue.pending() == []


class TestOptimisticUpdates:
    """Tests for tentative local changes."""

    async def test_confirmed_update_adopts_saved_entity(self, db, account):
        view = OptimisticView(db.accounts)
        await view.refresh()

        saved = await view.update(account.id, {"name": "Main"})
        assert view.items[account.id] is saved
        assert view.items[account.id].version == 2

    async def test_conflict_rolls_back(self, db, account):
        view = OptimisticView(db.accounts)
        await view.refresh()
        await db.accounts.update(account.id, {"name": "Changed elsewhere"})

        with pytest.raises(ConflictError):
            await view.update(account.id, {"name": "Mine"})
        assert view.items[account.id].name == "Checking"

    async def test_validation_failure_rolls_back(self, db, account):
        view = OptimisticView(db.accounts)
        await view.refresh()
        with pytest.raises(ValidationError):
            await view.update(account.id, {"currency": "dollars"})
        assert view.items[account.id].currency == "USD"

    async def test_delete(self, db, account):
        view = OptimisticView(db.accounts)
        await view.refresh()
        await view.delete(account.id)
        assert account.id not in view.items

    async def test_change_shows_before_commit(self):
        state = {"value": 1}
        seen = []

        def apply():
            previous = state["value"]
            state["value"] = 2
            return previous

        def rollback(previous):
            state["value"] = previous

        async def commit():
            seen.append(state["value"])
            raise ConnectionError("offline")

        change = TentativeChange(apply, rollback)
        with pytest.raises(ConnectionError):
            await change.run(commit)
        assert seen == [2]
        assert state["value"] == 1
        assert change.state == ChangeState.ROLLED_BACK

    def test_state_machine_guards(self):
        change = TentativeChange(lambda: None, lambda snapshot: None)
        with pytest.raises(RuntimeError):
            change.confirm()
        change.apply()
        with pytest.raises(RuntimeError):
            change.apply()
        change.rollback()
        with pytest.raises(RuntimeError):
            change.rollback()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
