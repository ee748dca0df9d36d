"""
SQL Storage Provider.

Relational backend built on the async SQLAlchemy engine. PostgreSQL (asyncpg)
for production, SQLite (aiosqlite) for single-host deployments.
"""

import asyncio
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import AsyncIterator, Optional
import logging

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from .locks import KeyedLock
from .provider import AbstractStorageProvider, StorageConfig

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS idbridge_kv (
    key VARCHAR(512) PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
)
"""


class SQLStorageProvider(AbstractStorageProvider):
    """
    SQL storage provider.

    Features:
    - Async SQLAlchemy engine with connection pooling
    - Upserts via ``INSERT ... ON CONFLICT``
    - Primary-key enforced insert-if-absent
    - Per-key locks: PostgreSQL transaction-level advisory locks, shared by
      every process on the database

    On SQLite the per-key lock is held in process only. Processes sharing one
    SQLite file are not excluded from each other; the primary key still keeps
    a second first-time insert from overwriting a record.

    Requires: sqlalchemy[asyncio] plus asyncpg or aiosqlite
    """

    LOCK_POLL_INTERVAL = 0.05

    def __init__(self, config: StorageConfig):
        """Initialize SQL storage."""
        super().__init__(config)
        self._engine: Optional[AsyncEngine] = None
        self._locks = KeyedLock()

    async def connect(self) -> None:
        """Create the engine and the schema."""
        url = self.config.url
        if not url:
            raise ValueError("storage.url is required for the sql backend")

        kwargs = {"pool_pre_ping": True}
        if not url.startswith("sqlite"):
            kwargs["pool_size"] = self.config.pool_size
        self._engine = create_async_engine(url, **kwargs)

        async with self._engine.begin() as conn:
            await conn.execute(text(_SCHEMA))

    async def disconnect(self) -> None:
        """Dispose of the engine."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None

    async def health_check(self) -> bool:
        """Check if the database answers."""
        try:
            if self._engine is not None:
                async with self._engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
                return True
        except Exception:
            logger.debug("SQL health check failed", exc_info=True)
        return False

    # Key-Value Operations

    async def get(self, key: str) -> Optional[str]:
        """Get value by key."""
        async with self._engine.connect() as conn:
            result = await conn.execute(
                text("SELECT value FROM idbridge_kv WHERE key = :key"),
                {"key": key},
            )
            row = result.fetchone()
            return row[0] if row else None

    async def set(self, key: str, value: str) -> bool:
        """Insert or replace value."""
        async with self._engine.begin() as conn:
            await conn.execute(
                text(
                    "INSERT INTO idbridge_kv (key, value) VALUES (:key, :value) "
                    "ON CONFLICT (key) DO UPDATE SET value = excluded.value, "
                    "updated_at = CURRENT_TIMESTAMP"
                ),
                {"key": key, "value": value},
            )
        return True

    async def set_if_absent(self, key: str, value: str) -> bool:
        """Insert value; the primary key rejects duplicates."""
        try:
            async with self._engine.begin() as conn:
                await conn.execute(
                    text("INSERT INTO idbridge_kv (key, value) VALUES (:key, :value)"),
                    {"key": key, "value": value},
                )
        except IntegrityError:
            return False
        return True

    async def delete(self, key: str) -> bool:
        """Delete key."""
        async with self._engine.begin() as conn:
            result = await conn.execute(
                text("DELETE FROM idbridge_kv WHERE key = :key"),
                {"key": key},
            )
            return result.rowcount > 0

    async def exists(self, key: str) -> bool:
        """Check if key exists."""
        return await self.get(key) is not None

    # Listing

    async def keys(self, prefix: str) -> list[str]:
        """Get keys starting with prefix."""
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        async with self._engine.connect() as conn:
            result = await conn.execute(
                text("SELECT key FROM idbridge_kv WHERE key LIKE :pattern ESCAPE '\\'"),
                {"pattern": f"{escaped}%"},
            )
            return [row[0] for row in result.fetchall()]

    # Locking

    def lock(self, key: str) -> AbstractAsyncContextManager[None]:
        """Hold the lock for ``key``; database-wide on PostgreSQL."""
        if self._engine is not None and self._engine.dialect.name == "postgresql":
            return self._advisory_lock(key)
        return self._locks.hold(key, timeout=self.config.lock_timeout_seconds)

    @asynccontextmanager
    async def _advisory_lock(self, key: str) -> AsyncIterator[None]:
        timeout = self.config.lock_timeout_seconds
        # Tasks of this process queue in memory instead of each holding a connection
        async with self._locks.hold(key, timeout=timeout):
            loop = asyncio.get_running_loop()
            deadline = loop.time() + timeout
            # Released by the database when the transaction ends, commit or rollback
            async with self._engine.begin() as conn:
                while True:
                    result = await conn.execute(
                        text("SELECT pg_try_advisory_xact_lock(hashtext(:key))"),
                        {"key": key},
                    )
                    if result.scalar():
                        break
                    if loop.time() >= deadline:
                        raise TimeoutError(f"Timed out waiting for advisory lock on {key}")
                    await asyncio.sleep(self.LOCK_POLL_INTERVAL)
                logger.debug("Acquired advisory lock for %s", key)
                yield
