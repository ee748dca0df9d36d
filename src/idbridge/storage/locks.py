"""
Per-key asyncio locks.

One lock per key, created on first use and discarded once no task holds or
waits for it.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional


class KeyedLock:
    """Map of asyncio locks keyed by string.

    Example:
        >>> locks = KeyedLock()
        >>> async with locks.hold("p-1"):  # doctest: +SKIP
        ...     ...
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str, timeout: Optional[float] = None) -> AsyncIterator[None]:
        """Acquire the lock for ``key``, waiting at most ``timeout`` seconds.

        Raises:
            asyncio.TimeoutError: If the lock could not be acquired in time.
        """
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            await asyncio.wait_for(lock.acquire(), timeout=timeout)
            try:
                yield
            finally:
                lock.release()
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
