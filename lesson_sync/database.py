import sqlite3

import aiosqlite

from lesson_sync.config import settings

CREATE_KV_STORE = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
)
"""

_DDL = [CREATE_KV_STORE]


async def init_db(db_path: str | None = None) -> None:
    """Create all tables. Called once at server startup via FastAPI lifespan."""
    async with aiosqlite.connect(db_path or settings.storage_path) as db:
        for stmt in _DDL:
            await db.execute(stmt)
        await db.commit()


def get_sync_conn(db_path: str | None = None) -> sqlite3.Connection:
    """Synchronous connection for the progress store and the heartbeat thread."""
    conn = sqlite3.connect(db_path or settings.storage_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000")
    return conn
