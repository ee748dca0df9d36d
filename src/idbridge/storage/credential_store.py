"""
Credential Store

Durable store of one Identity Record per principal, on top of any storage
provider. Writes to the same principal are serialized by the provider's
per-key lock; writes to distinct principals never wait on each other.
"""

import json
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import AsyncIterator, Optional

from idbridge.exceptions import ConflictError, StorageError, ValidationError
from idbridge.models import IdentityRecord, RevocationRecord

from .provider import AbstractStorageProvider

logger = logging.getLogger(__name__)


class KeyTransaction:
    """Operations on a single principal while its lock is held.

    Obtained from :meth:`CredentialStore.transaction`; must not be used after
    the ``async with`` block exits.
    """

    def __init__(self, store: "CredentialStore", principal_id: str) -> None:
        self._store = store
        self.principal_id = principal_id

    async def exists(self) -> bool:
        return await self._store.exists(self.principal_id)

    async def get(self) -> Optional[IdentityRecord]:
        return await self._store.get(self.principal_id)

    async def put(self, record: IdentityRecord) -> None:
        await self._store._write(self.principal_id, record)

    async def create(self, record: IdentityRecord) -> None:
        """Store a first record; raises ``ConflictError`` if one already exists."""
        await self._store._write(self.principal_id, record, only_if_absent=True)

    async def remove(self) -> bool:
        return await self._store._delete(self.principal_id)

    async def clear_revocation(self) -> bool:
        return await self._store.clear_revocation(self.principal_id)


class CredentialStore:
    """Typed Identity Record store.

    Args:
        provider: Connected storage provider.
        prefix: Key namespace; defaults to the provider config prefix.

    Example:
        >>> store = CredentialStore(MemoryStorageProvider())  # doctest: +SKIP
        >>> await store.put("p-1", record)                    # doctest: +SKIP
        >>> await store.get("p-1") == record                  # doctest: +SKIP
        True
    """

    IDENTITY_SUFFIX = "identity"
    REVOCATION_SUFFIX = "revocation"

    def __init__(self, provider: AbstractStorageProvider, prefix: Optional[str] = None) -> None:
        self._provider = provider
        self._prefix = prefix if prefix is not None else provider.config.prefix

    @property
    def provider(self) -> AbstractStorageProvider:
        return self._provider

    # -- Key helpers ----------------------------------------------------------

    def _key(self, principal_id: str, suffix: str = IDENTITY_SUFFIX) -> str:
        """Build a prefixed key for a principal."""
        return f"{self._prefix}{suffix}:{principal_id}"

    # -- Reads ----------------------------------------------------------------

    async def exists(self, principal_id: str) -> bool:
        """Return True if an identity record is stored for the principal."""
        return await self._provider.exists(self._key(principal_id))

    async def get(self, principal_id: str) -> Optional[IdentityRecord]:
        """Return the stored record, or None if the principal has none.

        Raises:
            StorageError: If the stored value cannot be decoded.
        """
        raw = await self._provider.get(self._key(principal_id))
        if raw is None:
            return None
        try:
            return IdentityRecord.from_wallet(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise StorageError(f"Corrupt identity record for {principal_id}: {exc}") from exc

    async def list(self) -> list[str]:
        """Return a sorted snapshot of all enrolled principal ids."""
        head = self._key("")
        keys = await self._provider.keys(head)
        return sorted(key[len(head):] for key in keys)

    async def count(self) -> int:
        return len(await self.list())

    # -- Writes ---------------------------------------------------------------

    @asynccontextmanager
    async def transaction(self, principal_id: str) -> AsyncIterator[KeyTransaction]:
        """Hold the principal's lock for the duration of the block.

        Raises:
            StorageError: If the lock cannot be acquired in time.
        """
        async with AsyncExitStack() as stack:
            try:
                await stack.enter_async_context(self._provider.lock(self._key(principal_id)))
            except TimeoutError as exc:
                raise StorageError(f"Timed out waiting for lock on {principal_id}") from exc
            yield KeyTransaction(self, principal_id)

    async def put(self, principal_id: str, record: IdentityRecord) -> None:
        """Store ``record`` under the principal's lock, replacing any previous one."""
        async with self.transaction(principal_id) as txn:
            await txn.put(record)

    async def remove(self, principal_id: str) -> bool:
        """Delete the principal's record. Returns False if none existed."""
        async with self.transaction(principal_id) as txn:
            return await txn.remove()

    async def _write(
        self, principal_id: str, record: IdentityRecord, only_if_absent: bool = False
    ) -> None:
        if record.principal_id != principal_id:
            raise ValidationError(
                f"Record for {record.principal_id} cannot be stored under {principal_id}"
            )
        key = self._key(principal_id)
        payload = json.dumps(record.to_wallet())
        try:
            if only_if_absent:
                written = await self._provider.set_if_absent(key, payload)
            else:
                written = await self._provider.set(key, payload)
        except Exception as exc:
            raise StorageError(f"Failed to store identity for {principal_id}: {exc}") from exc
        if not written:
            raise ConflictError(
                f"Identity already exists for principal {principal_id}",
                principal_id=principal_id,
            )
        logger.info("Stored identity for %s", principal_id)

    async def _delete(self, principal_id: str) -> bool:
        try:
            removed = await self._provider.delete(self._key(principal_id))
        except Exception as exc:
            raise StorageError(f"Failed to remove identity for {principal_id}: {exc}") from exc
        if removed:
            logger.info("Removed identity for %s", principal_id)
        else:
            logger.warning("Identity not found for removal: %s", principal_id)
        return removed

    # -- Revocations ----------------------------------------------------------

    async def record_revocation(self, record: RevocationRecord) -> None:
        """Persist the latest revocation for a principal."""
        await self._provider.set(
            self._key(record.principal_id, self.REVOCATION_SUFFIX),
            record.model_dump_json(),
        )

    async def get_revocation(self, principal_id: str) -> Optional[RevocationRecord]:
        raw = await self._provider.get(self._key(principal_id, self.REVOCATION_SUFFIX))
        if raw is None:
            return None
        return RevocationRecord.model_validate_json(raw)

    async def clear_revocation(self, principal_id: str) -> bool:
        return await self._provider.delete(self._key(principal_id, self.REVOCATION_SUFFIX))
