"""
In-Memory Storage Provider.

Simple in-memory implementation for development and testing.
"""

from contextlib import AbstractAsyncContextManager
from typing import Optional

from .locks import KeyedLock
from .provider import AbstractStorageProvider, StorageConfig


class MemoryStorageProvider(AbstractStorageProvider):
    """
    In-memory storage provider.

    Uses Python dictionaries for storage. Data is lost on restart.
    Suitable for development and testing only.
    """

    def __init__(self, config: Optional[StorageConfig] = None):
        """Initialize in-memory storage."""
        super().__init__(config or StorageConfig(backend="memory"))
        self._data: dict[str, str] = {}
        self._locks = KeyedLock()
        self._connected = False

    async def connect(self) -> None:
        """Establish connection (no-op for memory)."""
        self._connected = True

    async def disconnect(self) -> None:
        """Close connection (no-op for memory)."""
        self._connected = False

    async def health_check(self) -> bool:
        """Check if storage is healthy."""
        return self._connected

    # Key-Value Operations

    async def get(self, key: str) -> Optional[str]:
        """Get value by key."""
        return self._data.get(key)

    async def set(self, key: str, value: str) -> bool:
        """Set value."""
        self._data[key] = value
        return True

    async def set_if_absent(self, key: str, value: str) -> bool:
        """Set value unless the key exists."""
        if key in self._data:
            return False
        self._data[key] = value
        return True

    async def delete(self, key: str) -> bool:
        """Delete key."""
        return self._data.pop(key, None) is not None

    async def exists(self, key: str) -> bool:
        """Check if key exists."""
        return key in self._data

    # Listing

    async def keys(self, prefix: str) -> list[str]:
        """Get keys starting with prefix."""
        return [key for key in list(self._data) if key.startswith(prefix)]

    # Locking

    def lock(self, key: str) -> AbstractAsyncContextManager[None]:
        """Hold the per-key asyncio lock."""
        return self._locks.hold(key, timeout=self.config.lock_timeout_seconds)
