from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

logger = logging.getLogger("doki_chat.storage")


@asynccontextmanager
async def _sqlite_connection(db_path: str | Path, timeout_ms: int) -> AsyncIterator[aiosqlite.Connection]:
    async with aiosqlite.connect(db_path) as db:
        if timeout_ms > 0:
            await db.execute(f"PRAGMA busy_timeout={timeout_ms}")
        yield db


class KeyValueStore:
    """Namespaced string values in a local SQLite file, the local-storage analogue."""

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path, busy_timeout_ms: int = 5000, reset_on_schema_mismatch: bool = False) -> None:
        self.db_path = Path(db_path)
        self.busy_timeout_ms = max(0, min(int(busy_timeout_ms), 60000))
        self.reset_on_schema_mismatch = reset_on_schema_mismatch
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _connect(self):
        return _sqlite_connection(self.db_path, self.busy_timeout_ms)

    async def _has_user_tables(self, db: aiosqlite.Connection) -> bool:
        async with db.execute(
            """
            SELECT 1
            FROM sqlite_master
            WHERE type = 'table'
              AND name NOT LIKE 'sqlite_%'
            LIMIT 1
            """
        ) as cursor:
            row = await cursor.fetchone()
        return bool(row)

    async def init(self) -> None:
        async with self._connect() as db:
            await db.execute("PRAGMA journal_mode=WAL")
            async with db.execute("PRAGMA user_version") as cursor:
                row = await cursor.fetchone()
            version = int(row[0]) if row else 0
            has_tables = await self._has_user_tables(db)

            if has_tables and version != self.SCHEMA_VERSION:
                if not self.reset_on_schema_mismatch:
                    raise RuntimeError(
                        "SQLite schema version mismatch detected. "
                        f"Found user_version={version}, supported={self.SCHEMA_VERSION}. "
                        "Set DOKI_SQLITE_RESET_ON_SCHEMA_MISMATCH=1 to allow destructive reset."
                    )
                logger.warning("Resetting local store %s (user_version=%s)", self.db_path, version)
                await db.execute("DROP TABLE IF EXISTS kv_store")

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS kv_store (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
            await db.commit()

    async def get(self, key: str) -> str | None:
        async with self._connect() as db:
            async with db.execute("SELECT value FROM kv_store WHERE key = ?", (key,)) as cursor:
                row = await cursor.fetchone()
        return str(row[0]) if row else None

    async def set(self, key: str, value: str) -> None:
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO kv_store (key, value, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (key, value),
            )
            await db.commit()

    async def ping(self) -> None:
        async with self._connect() as db:
            await db.execute("SELECT 1")
