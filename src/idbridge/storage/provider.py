"""
Abstract Storage Provider Interface.

Defines the contract that all storage backends must implement.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from typing import Literal, Optional

from pydantic import BaseModel, Field


class StorageConfig(BaseModel):
    """Configuration for storage provider."""

    backend: Literal["memory", "redis", "sql"] = Field(
        default="memory", description="Storage backend type"
    )
    url: Optional[str] = Field(
        default=None,
        description="Connection URL (redis://... or an SQLAlchemy async URL)",
    )
    prefix: str = Field(default="idbridge:", description="Key prefix")
    pool_size: int = Field(default=10, ge=1, le=100, description="Connection pool size")
    timeout_seconds: float = Field(default=10.0, gt=0, le=300, description="Operation timeout")
    lock_timeout_seconds: float = Field(
        default=60.0, gt=0, description="Maximum time a per-key lock is held"
    )


class AbstractStorageProvider(ABC):
    """
    Abstract storage provider.

    All storage backends (memory, Redis, SQL) must implement this interface.
    Supports:
    - Key-value operations on string values
    - Atomic insert-if-absent
    - Prefix listing
    - Per-key mutual exclusion
    """

    def __init__(self, config: StorageConfig):
        """Initialize storage provider with configuration."""
        self.config = config

    @abstractmethod
    async def connect(self) -> None:
        """Establish connection to storage backend."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Close connection to storage backend."""

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if storage backend is healthy."""

    # Key-Value Operations

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Get value by key."""

    @abstractmethod
    async def set(self, key: str, value: str) -> bool:
        """Set value, replacing any existing one."""

    @abstractmethod
    async def set_if_absent(self, key: str, value: str) -> bool:
        """Set value only if the key does not exist. Returns True if written."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete key. Returns True if the key existed."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check if key exists."""

    # Listing

    @abstractmethod
    async def keys(self, prefix: str) -> list[str]:
        """Return a snapshot of all keys starting with ``prefix``."""

    # Locking

    @abstractmethod
    def lock(self, key: str) -> AbstractAsyncContextManager[None]:
        """Return an async context manager holding an exclusive lock on ``key``.

        Locks on distinct keys never contend with each other.
        """
