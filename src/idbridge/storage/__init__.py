"""
Storage for idbridge.

Pluggable key-value backends and the typed credential store built on them.
"""

from .provider import AbstractStorageProvider, StorageConfig
from .memory_provider import MemoryStorageProvider
from .redis_provider import RedisStorageProvider
from .sql_provider import SQLStorageProvider
from .credential_store import CredentialStore, KeyTransaction


def create_provider(config: StorageConfig) -> AbstractStorageProvider:
    """Build the provider selected by ``config.backend``."""
    if config.backend == "redis":
        return RedisStorageProvider(config)
    if config.backend == "sql":
        return SQLStorageProvider(config)
    return MemoryStorageProvider(config)


__all__ = [
    "AbstractStorageProvider",
    "StorageConfig",
    "MemoryStorageProvider",
    "RedisStorageProvider",
    "SQLStorageProvider",
    "CredentialStore",
    "KeyTransaction",
    "create_provider",
]
