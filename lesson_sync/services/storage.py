import logging
import sqlite3
import threading
from abc import ABC, abstractmethod

from lesson_sync.config import Settings
from lesson_sync.database import get_sync_conn

logger = logging.getLogger(__name__)

VIDEO_PROGRESS_PREFIX = "revalida_video_progress_"
HEARTBEAT_QUEUE_KEY = "revalida_heartbeat_queue"
LAST_LESSON_ACCESS_KEY = "revalida_last_lesson_access"

# What a KeyValueStore may raise on I/O failure
STORAGE_ERRORS = (sqlite3.Error, OSError)


class KeyValueStore(ABC):
    """String-to-string durable storage, the local equivalent of a browser's
    ``localStorage``.  Implementations may raise on I/O failure; callers
    decide whether that is fatal."""

    @abstractmethod
    def get_item(self, key: str) -> str | None:
        ...

    @abstractmethod
    def set_item(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    def remove_item(self, key: str) -> None:
        ...

    @abstractmethod
    def keys(self, prefix: str = "") -> list[str]:
        ...


class MemoryKeyValueStore(KeyValueStore):
    """Process-lifetime storage. Used in tests and when no disk is wanted."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._lock = threading.Lock()

    def get_item(self, key: str) -> str | None:
        with self._lock:
            return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def remove_item(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))


class SQLiteKeyValueStore(KeyValueStore):
    """Durable storage in a single SQLite table.

    The table is created by ``init_db`` at startup.  A short-lived connection
    per call keeps the store safe to use from the debounce timer threads and
    the heartbeat worker alike.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    def get_item(self, key: str) -> str | None:
        conn = get_sync_conn(self.db_path)
        try:
            row = conn.execute(
                "SELECT value FROM kv_store WHERE key = ?", (key,)
            ).fetchone()
            return row["value"] if row else None
        finally:
            conn.close()

    def set_item(self, key: str, value: str) -> None:
        conn = get_sync_conn(self.db_path)
        try:
            conn.execute(
                """INSERT INTO kv_store (key, value) VALUES (?, ?)
                   ON CONFLICT(key) DO UPDATE SET
                     value = excluded.value,
                     updated_at = CURRENT_TIMESTAMP""",
                (key, value),
            )
            conn.commit()
        finally:
            conn.close()

    def remove_item(self, key: str) -> None:
        conn = get_sync_conn(self.db_path)
        try:
            conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            conn.commit()
        finally:
            conn.close()

    def keys(self, prefix: str = "") -> list[str]:
        conn = get_sync_conn(self.db_path)
        try:
            rows = conn.execute(
                "SELECT key FROM kv_store WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(prefix), prefix),
            ).fetchall()
            return [row["key"] for row in rows]
        finally:
            conn.close()


def create_storage(config: Settings) -> KeyValueStore:
    """Pick the storage backend once at startup. The result is injected into
    the progress stores, the heartbeat and the lesson access tracker."""
    if config.storage_backend == "memory":
        logger.info("Using in-memory key-value storage")
        return MemoryKeyValueStore()
    if config.storage_backend == "sqlite":
        logger.info("Using SQLite key-value storage at %s", config.storage_path)
        return SQLiteKeyValueStore(config.storage_path)
    raise ValueError(
        f"storage_backend must be sqlite|memory, got {config.storage_backend!r}"
    )
