"""
Redis Storage Provider.

Production-ready Redis backend with connection pooling and distributed
per-key locks, so several bridge processes can share one credential store.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional
import logging

from .provider import AbstractStorageProvider, StorageConfig

logger = logging.getLogger(__name__)


class RedisStorageProvider(AbstractStorageProvider):
    """
    Redis storage provider.

    Features:
    - Connection pooling
    - Atomic ``SET NX`` inserts
    - ``SCAN`` based listing
    - Per-key locks via ``redis.asyncio.lock.Lock``

    Requires: redis package
    """

    LOCK_PREFIX = "lock:"

    def __init__(self, config: StorageConfig, client: Any = None):
        """Initialize Redis storage.

        Args:
            config: Storage configuration; ``url`` defaults to a local Redis.
            client: Pre-built ``redis.asyncio.Redis`` compatible client.
        """
        super().__init__(config)
        self._client = client
        self._owns_client = client is None

    async def connect(self) -> None:
        """Establish connection to Redis."""
        if self._client is None:
            try:
                import redis.asyncio as aioredis
            except ImportError:
                raise ImportError(
                    "redis package is required for RedisStorageProvider. "
                    "Install with: pip install redis"
                )

            self._client = aioredis.Redis.from_url(
                self.config.url or "redis://localhost:6379/0",
                max_connections=self.config.pool_size,
                socket_timeout=self.config.timeout_seconds,
                socket_connect_timeout=self.config.timeout_seconds,
                decode_responses=True,
            )

        # Test connection
        await self._client.ping()

    async def disconnect(self) -> None:
        """Close connection to Redis."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def health_check(self) -> bool:
        """Check if Redis is healthy."""
        try:
            if self._client is not None:
                await self._client.ping()
                return True
        except Exception:
            logger.debug("Redis health check failed", exc_info=True)
        return False

    # Key-Value Operations

    async def get(self, key: str) -> Optional[str]:
        """Get value by key."""
        return await self._client.get(key)

    async def set(self, key: str, value: str) -> bool:
        """Set value."""
        return bool(await self._client.set(key, value))

    async def set_if_absent(self, key: str, value: str) -> bool:
        """Set value unless the key exists (``SET NX``)."""
        return bool(await self._client.set(key, value, nx=True))

    async def delete(self, key: str) -> bool:
        """Delete key."""
        result = await self._client.delete(key)
        return result > 0

    async def exists(self, key: str) -> bool:
        """Check if key exists."""
        result = await self._client.exists(key)
        return result > 0

    # Listing

    async def keys(self, prefix: str) -> list[str]:
        """Scan all keys starting with prefix."""
        pattern = "".join(f"\\{c}" if c in "*?[]\\" else c for c in prefix) + "*"
        return [key async for key in self._client.scan_iter(match=pattern, count=100)]

    # Locking

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        """Hold a Redis lock on ``key``.

        The lock expires after ``lock_timeout_seconds`` so a crashed holder
        cannot block the key forever.
        """
        from redis.exceptions import LockError

        redis_lock = self._client.lock(
            f"{self.LOCK_PREFIX}{key}",
            timeout=self.config.lock_timeout_seconds,
            blocking_timeout=self.config.lock_timeout_seconds,
        )
        if not await redis_lock.acquire():
            raise TimeoutError(f"Could not acquire lock for {key}")
        try:
            yield
        finally:
            try:
                await redis_lock.release()
            except LockError:
                logger.warning("Lock for %s expired before release", key)
