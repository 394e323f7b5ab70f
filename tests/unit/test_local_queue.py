# =============================================================================
# tests/unit/test_local_queue.py
# Unit Tests for the durable LocalQueue
# =============================================================================

import asyncio
import sqlite3
import threading
import pytest
from unittest.mock import MagicMock

from mess_core.errors import QueueStorageError, UnknownCategoryError
from mess_core.offline.local_database import LocalDatabase
from mess_core.offline.local_queue import Category, LocalQueue, QueueItem, generate_item_id


class TestCategory:
    """Test category parsing and endpoint mapping"""

    def test_endpoints(self):
        """Each category posts to its own endpoint"""
        assert Category.ATTENDANCE.endpoint == "/api/attendance"
        assert Category.MEALS.endpoint == "/api/meals"
        assert Category.PAYMENTS.endpoint == "/api/payments"
        assert Category.BAZAR.endpoint == "/api/bazars"

    def test_parse_accepts_partition_tag_and_member(self):
        """Partition names, sync tags and members all resolve"""
        assert Category.parse("meals") is Category.MEALS
        assert Category.parse("meal-sync") is Category.MEALS
        assert Category.parse(Category.BAZAR) is Category.BAZAR

    def test_parse_unknown_raises(self):
        """Unknown names raise QUEUE_002"""
        with pytest.raises(UnknownCategoryError) as exc_info:
            Category.parse("groceries")
        assert exc_info.value.code == "QUEUE_002"

    def test_from_tag(self):
        """Only category sync tags map to a category"""
        assert Category.from_tag("payment-sync") is Category.PAYMENTS
        assert Category.from_tag("data-refresh") is None


class TestItemIds:
    """Test client-side id generation"""

    def test_ids_unique_in_tight_loop(self):
        """Ids stay unique when generated within one clock tick"""
        ids = {generate_item_id() for _ in range(1000)}
        assert len(ids) == 1000


class TestEventLoopBinding:
    """The queue can be built away from the loop that drives it"""

    def test_built_in_thread_without_loop(self, settings):
        """A queue built in a loop-less thread works on another thread's loop"""
        database = LocalDatabase(settings.db_path)
        built = []
        thread = threading.Thread(target=lambda: built.append(LocalQueue(database)))
        thread.start()
        thread.join()
        queue = built[0]

        async def use():
            await queue.load()
            item = await queue.enqueue("meals", {"count": 1})
            await asyncio.gather(queue.list("meals"), queue.remove("meals", item.id))
            return queue.pending_count()

        assert asyncio.run(use()) == 0
        database.close()

    def test_lock_created_on_first_use(self, settings):
        """The lock is created lazily, on first use"""
        database = LocalDatabase(settings.db_path)
        queue = LocalQueue(database)

        assert queue._lock_instance is None
        asyncio.run(queue.load())
        assert queue._lock_instance is not None
        database.close()


class TestEnqueue:
    """Test persisting new items"""

    @pytest.mark.asyncio
    async def test_enqueue_writes_to_store(self, queue, database):
        """The item is in the store before enqueue returns"""
        item = await queue.enqueue("meals", {"meal_date": "2024-05-01", "count": 2}, "tok")

        rows = database.fetch_queue_items("meals")
        assert len(rows) == 1
        assert rows[0]["id"] == item.id
        assert rows[0]["token"] == "tok"
        assert queue.pending_count(Category.MEALS) == 1

    @pytest.mark.asyncio
    async def test_enqueue_returns_unsynced_item(self, queue):
        """A new item carries its payload and is not synced"""
        item = await queue.enqueue(Category.PAYMENTS, {"amount": 500})

        assert isinstance(item, QueueItem)
        assert item.category is Category.PAYMENTS
        assert item.synced is False
        assert item.payload == {"amount": 500}

    @pytest.mark.asyncio
    async def test_unserializable_payload_is_not_queued(self, queue, database):
        """Payloads that cannot be stored raise and leave nothing behind"""
        with pytest.raises(QueueStorageError):
            await queue.enqueue("meals", {"when": object()})

        assert database.fetch_queue_items("meals") == []
        assert queue.pending_count() == 0

    @pytest.mark.asyncio
    async def test_storage_failure_propagates(self):
        """A database error surfaces as QueueStorageError and nothing is indexed"""
        db = MagicMock(spec=LocalDatabase)
        db.insert_queue_item.side_effect = sqlite3.OperationalError("database or disk is full")
        queue = LocalQueue(db)

        with pytest.raises(QueueStorageError) as exc_info:
            await queue.enqueue("attendance", {"meal_type": "lunch"})

        assert exc_info.value.details["category"] == "attendance"
        assert queue.pending_count() == 0

    @pytest.mark.asyncio
    async def test_unknown_category_rejected(self, queue):
        """Unknown categories cannot be queued"""
        with pytest.raises(UnknownCategoryError):
            await queue.enqueue("groceries", {})


class TestList:
    """Test reading pending items"""

    @pytest.mark.asyncio
    async def test_list_in_enqueue_order(self, queue):
        """Items come back oldest first"""
        first = await queue.enqueue("bazar", {"total_cost": 10})
        second = await queue.enqueue("bazar", {"total_cost": 20})
        third = await queue.enqueue("bazar", {"total_cost": 30})

        items = await queue.list("bazar")
        assert [i.id for i in items] == [first.id, second.id, third.id]

    @pytest.mark.asyncio
    async def test_list_excludes_synced(self, queue, database):
        """Rows already marked synced are not pending"""
        database.insert_queue_item("meals", {
            "id": "done-1",
            "timestamp": "2024-05-01T10:00:00",
            "data_json": "{}",
            "token": "",
            "synced": True,
        })
        pending = await queue.enqueue("meals", {"count": 1})

        items = await queue.list("meals")
        assert [i.id for i in items] == [pending.id]

    @pytest.mark.asyncio
    async def test_categories_are_partitioned(self, queue):
        """Each category only lists its own items"""
        await queue.enqueue("meals", {"count": 1})
        await queue.enqueue("payments", {"amount": 5})

        assert len(await queue.list("meals")) == 1
        assert len(await queue.list("payments")) == 1
        assert await queue.list("attendance") == []


class TestRemove:
    """Test removal by id"""

    @pytest.mark.asyncio
    async def test_remove_twice_is_noop(self, queue, database):
        """Second removal of the same id changes nothing"""
        item = await queue.enqueue("meals", {"count": 1})

        assert await queue.remove("meals", item.id) is True
        assert await queue.remove("meals", item.id) is False
        assert database.fetch_queue_items("meals") == []
        assert queue.pending_count() == 0

    @pytest.mark.asyncio
    async def test_remove_unknown_id(self, queue):
        """Removing an id that never existed returns False"""
        assert await queue.remove("payments", "missing") is False

    @pytest.mark.asyncio
    async def test_remove_matches_id_not_payload(self, queue):
        """Identical payloads are told apart by id"""
        keep = await queue.enqueue("payments", {"amount": 100})
        drop = await queue.enqueue("payments", {"amount": 100})

        await queue.remove("payments", drop.id)

        items = await queue.list("payments")
        assert [i.id for i in items] == [keep.id]


class TestLoad:
    """Test recovery of items from an earlier session"""

    @pytest.mark.asyncio
    async def test_new_queue_recovers_pending_items(self, settings):
        """A fresh queue over the same file sees every pending item"""
        db = LocalDatabase(settings.db_path)
        first = LocalQueue(db)
        await first.load()
        await first.enqueue("meals", {"count": 1})
        await first.enqueue("attendance", {"meal_type": "dinner"})
        db.close()

        reopened = LocalDatabase(settings.db_path)
        second = LocalQueue(reopened)
        recovered = await second.load()

        assert recovered == 2
        assert second.pending_counts() == {"attendance": 1, "meals": 1, "payments": 0, "bazar": 0}
        reopened.close()


class TestCallbacks:
    """Test change notifications"""

    @pytest.mark.asyncio
    async def test_callback_receives_counts(self, queue):
        """Callbacks get per-category counts after each change"""
        seen = []
        queue.register_callback(seen.append)

        item = await queue.enqueue("meals", {"count": 1})
        await queue.remove("meals", item.id)

        assert seen[0]["meals"] == 1
        assert seen[-1]["meals"] == 0

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_break_enqueue(self, queue):
        """A broken subscriber does not undo the write"""
        def broken(counts):
            raise RuntimeError("boom")

        queue.register_callback(broken)
        item = await queue.enqueue("meals", {"count": 1})
        assert queue.pending_count() == 1
        assert item.id
