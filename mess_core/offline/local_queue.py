# =============================================================================
# mess_core/offline/local_queue.py
# Durable per-category queue of pending mutations
# =============================================================================
"""
LocalQueue - repository of pending writes (attendance, meals, payments, bazar).

Every mutation is written to the LocalDatabase first and mirrored into the
in-memory index only after the write succeeded, so the two never disagree
once an operation returns.

Usage:
    queue = LocalQueue(get_local_database())
    await queue.load()
    item = await queue.enqueue(Category.MEALS, {"meal_date": "2024-05-01", "count": 2}, token)
    for item in await queue.list(Category.MEALS):
        ...
    await queue.remove(Category.MEALS, item.id)
"""

from __future__ import annotations
import asyncio
import json
import sqlite3
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union
import logging

from mess_core.errors import QueueStorageError, UnknownCategoryError
from mess_core.offline.local_database import LocalDatabase

logger = logging.getLogger(__name__)


class Category(Enum):
    """Queue categories with their server endpoint and background trigger tag."""
    ATTENDANCE = ("attendance", "/api/attendance", "attendance-sync")
    MEALS = ("meals", "/api/meals", "meal-sync")
    PAYMENTS = ("payments", "/api/payments", "payment-sync")
    BAZAR = ("bazar", "/api/bazars", "bazar-sync")

    def __init__(self, partition: str, endpoint: str, sync_tag: str):
        self.partition = partition
        self.endpoint = endpoint
        self.sync_tag = sync_tag

    @classmethod
    def parse(cls, value: Union[str, Category]) -> Category:
        """Accept a Category, a partition name ("meals") or a sync tag ("meal-sync")."""
        if isinstance(value, Category):
            return value
        for category in cls:
            if value in (category.partition, category.sync_tag, category.name.lower()):
                return category
        raise UnknownCategoryError(str(value))

    @classmethod
    def from_tag(cls, tag: str) -> Optional[Category]:
        for category in cls:
            if category.sync_tag == tag:
                return category
        return None


def generate_item_id() -> str:
    """Timestamp plus random suffix; unique even when two calls share a clock tick."""
    return f"{time.time_ns()}-{uuid.uuid4().hex[:12]}"


@dataclass
class QueueItem:
    """One pending mutation awaiting server acknowledgment."""
    id: str
    category: Category
    payload: Dict[str, Any]
    auth_token: str = ""
    created_at: datetime = field(default_factory=datetime.now)
    synced: bool = False

    def to_record(self) -> Dict[str, Any]:
        """Row shape stored in the category partition."""
        return {
            "id": self.id,
            "timestamp": self.created_at.isoformat(),
            "data_json": json.dumps(self.payload),
            "token": self.auth_token,
            "synced": self.synced,
        }

    @classmethod
    def from_record(cls, category: Category, record: Dict[str, Any]) -> QueueItem:
        return cls(
            id=record["id"],
            category=category,
            payload=json.loads(record["data_json"]) if record["data_json"] else {},
            auth_token=record.get("token") or "",
            created_at=datetime.fromisoformat(record["timestamp"]),
            synced=bool(record.get("synced", 0)),
        )


class LocalQueue:
    """
    Durable queue of pending mutations, partitioned by category.

    The database is the source of truth; the in-memory index serves cheap
    counts for the UI and is refreshed by load() and list().
    """

    def __init__(self, database: LocalDatabase):
        self._db = database
        self._items: Dict[Category, "OrderedDict[str, QueueItem]"] = {
            category: OrderedDict() for category in Category
        }
        self._lock_instance: Optional[asyncio.Lock] = None
        self._callbacks: List[Callable[[Dict[str, int]], None]] = []

    @property
    def _lock(self) -> asyncio.Lock:
        # Created inside the loop that first awaits it
        if self._lock_instance is None:
            self._lock_instance = asyncio.Lock()
        return self._lock_instance

    async def load(self) -> int:
        """
        Load all unsynced items from the store into memory.

        Picks up items left behind by an earlier session.

        Returns:
            Number of pending items
        """
        await asyncio.to_thread(self._db.initialize)
        async with self._lock:
            for category in Category:
                await self._refresh(category)
        total = self.pending_count()
        if total:
            logger.info(f"Recovered {total} pending item(s) from local store")
        self._notify_callbacks()
        return total

    async def _refresh(self, category: Category) -> List[QueueItem]:
        rows = await asyncio.to_thread(self._db.fetch_queue_items, category.partition)
        items = [QueueItem.from_record(category, row) for row in rows]
        self._items[category] = OrderedDict((item.id, item) for item in items)
        return items

    async def enqueue(
        self,
        category: Union[str, Category],
        payload: Dict[str, Any],
        auth_token: str = "",
    ) -> QueueItem:
        """
        Persist a new pending mutation.

        Raises:
            QueueStorageError: the item could not be written; it is not queued.
        """
        category = Category.parse(category)
        item = QueueItem(
            id=generate_item_id(),
            category=category,
            payload=payload,
            auth_token=auth_token,
        )

        try:
            record = item.to_record()
        except (TypeError, ValueError) as e:
            raise QueueStorageError(
                f"Payload is not JSON-serializable: {e}",
                category=category.partition,
            ) from e

        async with self._lock:
            try:
                await asyncio.to_thread(self._db.insert_queue_item, category.partition, record)
            except sqlite3.Error as e:
                logger.error(f"Failed to persist {category.partition} item: {e}")
                raise QueueStorageError(
                    f"Could not save offline {category.partition} entry: {e}",
                    category=category.partition,
                    item_id=item.id,
                ) from e
            self._items[category][item.id] = item

        logger.debug(f"Queued {category.partition} item {item.id}")
        self._notify_callbacks()
        return item

    async def list(self, category: Union[str, Category]) -> List[QueueItem]:
        """Pending items of a category in enqueue order, read from the store."""
        category = Category.parse(category)
        async with self._lock:
            return await self._refresh(category)

    async def remove(self, category: Union[str, Category], item_id: str) -> bool:
        """
        Delete an item by id. Removing an unknown id is a no-op.

        Returns:
            True if a stored row was deleted
        """
        category = Category.parse(category)
        async with self._lock:
            try:
                deleted = await asyncio.to_thread(
                    self._db.delete_queue_item, category.partition, item_id
                )
            except sqlite3.Error as e:
                raise QueueStorageError(
                    f"Could not remove {category.partition} entry: {e}",
                    category=category.partition,
                    item_id=item_id,
                ) from e
            self._items[category].pop(item_id, None)

        if deleted:
            logger.debug(f"Removed {category.partition} item {item_id}")
            self._notify_callbacks()
        return deleted > 0

    async def update_token(self, category: Union[str, Category], item_id: str, token: str) -> None:
        """Replace the credential stored with a pending item."""
        category = Category.parse(category)
        async with self._lock:
            await asyncio.to_thread(self._db.update_queue_token, category.partition, item_id, token)
            item = self._items[category].get(item_id)
            if item is not None:
                item.auth_token = token

    def pending_items(self, category: Union[str, Category]) -> List[QueueItem]:
        """In-memory snapshot for display."""
        return list(self._items[Category.parse(category)].values())

    def pending_count(self, category: Optional[Union[str, Category]] = None) -> int:
        if category is not None:
            return len(self._items[Category.parse(category)])
        return sum(len(items) for items in self._items.values())

    def pending_counts(self) -> Dict[str, int]:
        return {category.partition: len(items) for category, items in self._items.items()}

    def register_callback(self, callback: Callable[[Dict[str, int]], None]) -> None:
        """Register a callback receiving per-category counts whenever the queue changes."""
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unregister_callback(self, callback: Callable[[Dict[str, int]], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _notify_callbacks(self) -> None:
        counts = self.pending_counts()
        for callback in self._callbacks:
            try:
                callback(counts)
            except Exception as e:
                logger.error(f"Error in queue callback: {e}")
