# =============================================================================
# mess_core/offline/local_database.py
# Local SQLite store shared by the offline queue and the response cache
# =============================================================================
"""
LocalDatabase - SQLite-backed durable store for the offline client.

Holds:
- One queue partition (table) per category: attendance, meals, payments, bazar
- Named response-cache partitions (static, runtime, data)

All methods are blocking and serialized behind a single lock; async callers
run them through asyncio.to_thread so the event loop never blocks.
"""

from __future__ import annotations
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional
import logging

logger = logging.getLogger(__name__)

QUEUE_PARTITIONS = ("attendance", "meals", "payments", "bazar")

QUEUE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS {name} (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        timestamp TEXT NOT NULL,
        data_json TEXT NOT NULL,
        token TEXT,
        synced INTEGER DEFAULT 0
    )
"""


class LocalDatabase:
    """
    Local SQLite database for queued mutations and cached responses.

    The file survives restarts; whatever was queued before a crash is still
    here on the next start.
    """

    DEFAULT_DB_PATH = Path(__file__).parent.parent.parent / "local_data" / "mess_offline.db"

    SCHEMA = {
        **{name: QUEUE_TABLE_SQL.format(name=name) for name in QUEUE_PARTITIONS},
        "cache_names": """
            CREATE TABLE IF NOT EXISTS cache_names (
                name TEXT PRIMARY KEY,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
        """,
        "cache_entries": """
            CREATE TABLE IF NOT EXISTS cache_entries (
                cache_name TEXT NOT NULL,
                request_key TEXT NOT NULL,
                url TEXT NOT NULL,
                status_code INTEGER NOT NULL,
                headers_json TEXT,
                body BLOB,
                cached_at REAL NOT NULL,
                PRIMARY KEY (cache_name, request_key)
            )
        """,
    }

    def __init__(self, db_path: Optional[Path] = None):
        """
        Initialize local database.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path) if db_path else self.DEFAULT_DB_PATH
        self._ensure_directory()
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._initialized = False

    def _ensure_directory(self) -> None:
        """Ensure database directory exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _get_connection(self) -> sqlite3.Connection:
        """Get the shared connection, opening it on first use."""
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode = WAL")
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialized transaction; rolls back and re-raises on error."""
        with self._lock:
            conn = self._get_connection()
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def initialize(self) -> None:
        """Create tables if they do not exist."""
        if self._initialized:
            return

        with self.transaction() as conn:
            for table_name, schema in self.SCHEMA.items():
                conn.execute(schema)
                logger.debug(f"Created/verified table: {table_name}")

        self._initialized = True
        logger.info(f"Local database initialized at: {self.db_path}")

    def query(self, sql: str, params: Optional[List] = None) -> List[sqlite3.Row]:
        """Execute a read query."""
        with self._lock:
            cursor = self._get_connection().execute(sql, params or [])
            return cursor.fetchall()

    def execute(self, sql: str, params: Optional[List] = None) -> int:
        """Execute a write statement and return the affected row count."""
        with self.transaction() as conn:
            cursor = conn.execute(sql, params or [])
            return cursor.rowcount

    @staticmethod
    def _check_partition(partition: str) -> str:
        if partition not in QUEUE_PARTITIONS:
            raise ValueError(f"Unknown queue partition: {partition}")
        return partition

    # =========================================================================
    # QUEUE PARTITIONS
    # =========================================================================

    def insert_queue_item(self, partition: str, record: Dict[str, Any]) -> None:
        """Insert one queued mutation ({id, timestamp, data_json, token, synced})."""
        table = self._check_partition(partition)
        self.execute(
            f"""
            INSERT INTO {table} (id, timestamp, data_json, token, synced)
            VALUES (?, ?, ?, ?, ?)
            """,
            [
                record["id"],
                record["timestamp"],
                record["data_json"],
                record.get("token", ""),
                int(record.get("synced", False)),
            ],
        )

    def fetch_queue_items(self, partition: str, include_synced: bool = False) -> List[Dict[str, Any]]:
        """Return queued rows in enqueue order."""
        table = self._check_partition(partition)
        where = "" if include_synced else "WHERE synced = 0"
        rows = self.query(f"SELECT * FROM {table} {where} ORDER BY seq ASC")
        return [dict(row) for row in rows]

    def delete_queue_item(self, partition: str, item_id: str) -> int:
        """Delete by id; returns 0 when the id was not present."""
        table = self._check_partition(partition)
        return self.execute(f"DELETE FROM {table} WHERE id = ?", [item_id])

    def update_queue_token(self, partition: str, item_id: str, token: str) -> int:
        """Replace the credential stored with a queued item."""
        table = self._check_partition(partition)
        return self.execute(f"UPDATE {table} SET token = ? WHERE id = ?", [token, item_id])

    def count_queue_items(self, partition: str) -> int:
        table = self._check_partition(partition)
        result = self.query(f"SELECT COUNT(*) AS count FROM {table} WHERE synced = 0")
        return result[0]["count"] if result else 0

    # =========================================================================
    # CACHE PARTITIONS
    # =========================================================================

    def cache_open(self, name: str) -> None:
        """Register a cache partition name (no-op if it exists)."""
        self.execute(
            "INSERT OR IGNORE INTO cache_names (name, created_at) VALUES (?, ?)",
            [name, datetime.now().isoformat()],
        )

    def cache_names(self) -> List[str]:
        return [row["name"] for row in self.query("SELECT name FROM cache_names ORDER BY name")]

    def cache_drop(self, name: str) -> bool:
        """Delete a whole partition and its entries."""
        with self.transaction() as conn:
            conn.execute("DELETE FROM cache_entries WHERE cache_name = ?", [name])
            cursor = conn.execute("DELETE FROM cache_names WHERE name = ?", [name])
            return cursor.rowcount > 0

    def cache_put(
        self,
        name: str,
        request_key: str,
        url: str,
        status_code: int,
        headers_json: str,
        body: bytes,
        cached_at: float,
    ) -> None:
        with self.transaction() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO cache_names (name, created_at) VALUES (?, ?)",
                [name, datetime.now().isoformat()],
            )
            conn.execute(
                """
                INSERT OR REPLACE INTO cache_entries
                    (cache_name, request_key, url, status_code, headers_json, body, cached_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [name, request_key, url, status_code, headers_json, body, cached_at],
            )

    def cache_put_many(self, name: str, rows: List[Dict[str, Any]]) -> None:
        """Store several entries in one transaction (all or nothing)."""
        with self.transaction() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO cache_names (name, created_at) VALUES (?, ?)",
                [name, datetime.now().isoformat()],
            )
            conn.executemany(
                """
                INSERT OR REPLACE INTO cache_entries
                    (cache_name, request_key, url, status_code, headers_json, body, cached_at)
                VALUES (:cache_name, :request_key, :url, :status_code, :headers_json, :body, :cached_at)
                """,
                [{**row, "cache_name": name} for row in rows],
            )

    def cache_match(self, name: str, request_key: str) -> Optional[Dict[str, Any]]:
        rows = self.query(
            "SELECT * FROM cache_entries WHERE cache_name = ? AND request_key = ?",
            [name, request_key],
        )
        return dict(rows[0]) if rows else None

    def cache_delete(self, name: str, request_key: str) -> bool:
        return self.execute(
            "DELETE FROM cache_entries WHERE cache_name = ? AND request_key = ?",
            [name, request_key],
        ) > 0

    def cache_keys(self, name: str) -> List[str]:
        rows = self.query(
            "SELECT request_key FROM cache_entries WHERE cache_name = ? ORDER BY request_key",
            [name],
        )
        return [row["request_key"] for row in rows]

    def cache_clear(self, name: str) -> int:
        return self.execute("DELETE FROM cache_entries WHERE cache_name = ?", [name])

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None


# Process-wide accessor for the app entry point
_local_databases: Dict[Path, LocalDatabase] = {}


def get_local_database(db_path: Optional[Path] = None) -> LocalDatabase:
    """Get (or open) the LocalDatabase for a path."""
    path = Path(db_path) if db_path else LocalDatabase.DEFAULT_DB_PATH
    if path not in _local_databases:
        database = LocalDatabase(path)
        database.initialize()
        _local_databases[path] = database
    return _local_databases[path]
