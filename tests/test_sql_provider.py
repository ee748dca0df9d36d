"""
Tests for SQLStorageProvider.

Runs against SQLite through aiosqlite.
"""

import asyncio
import os
from contextlib import asynccontextmanager
from types import SimpleNamespace

import pytest

pytest.importorskip("aiosqlite")

from idbridge.exceptions import ConflictError
from idbridge.models import IdentityRecord
from idbridge.storage import CredentialStore, SQLStorageProvider, StorageConfig


@pytest.fixture
async def sql_provider(tmp_path):
    url = f"sqlite+aiosqlite:///{tmp_path / 'idbridge.db'}"
    provider = SQLStorageProvider(StorageConfig(backend="sql", url=url))
    await provider.connect()
    yield provider
    await provider.disconnect()


class TestSQLStorageProvider:
    """Key-value contract on SQLite."""

    @pytest.mark.asyncio
    async def test_health_check(self, sql_provider):
        assert await sql_provider.health_check()

    @pytest.mark.asyncio
    async def test_upsert(self, sql_provider):
        assert await sql_provider.set("k", "one")
        assert await sql_provider.set("k", "two")
        assert await sql_provider.get("k") == "two"

    @pytest.mark.asyncio
    async def test_set_if_absent(self, sql_provider):
        assert await sql_provider.set_if_absent("k", "first")
        assert not await sql_provider.set_if_absent("k", "second")
        assert await sql_provider.get("k") == "first"

    @pytest.mark.asyncio
    async def test_delete_and_exists(self, sql_provider):
        await sql_provider.set("k", "v")
        assert await sql_provider.exists("k")
        assert await sql_provider.delete("k")
        assert not await sql_provider.delete("k")
        assert not await sql_provider.exists("k")

    @pytest.mark.asyncio
    async def test_keys_escape_like_wildcards(self, sql_provider):
        await sql_provider.set("ids_a:1", "x")
        await sql_provider.set("idsXa:1", "x")
        await sql_provider.set("ids%:1", "x")
        assert await sql_provider.keys("ids_a:") == ["ids_a:1"]
        assert await sql_provider.keys("ids%") == ["ids%:1"]

    @pytest.mark.asyncio
    async def test_connect_requires_url(self):
        provider = SQLStorageProvider(StorageConfig(backend="sql"))
        with pytest.raises(ValueError, match="storage.url"):
            await provider.connect()

    @pytest.mark.asyncio
    async def test_data_survives_reconnect(self, tmp_path):
        url = f"sqlite+aiosqlite:///{tmp_path / 'persist.db'}"
        record = IdentityRecord(
            principal_id="p-1", certificate=b"c", private_key=b"k", membership_id="Org1"
        )

        first = SQLStorageProvider(StorageConfig(backend="sql", url=url))
        await first.connect()
        await CredentialStore(first).put("p-1", record)
        await first.disconnect()

        second = SQLStorageProvider(StorageConfig(backend="sql", url=url))
        await second.connect()
        try:
            assert await CredentialStore(second).get("p-1") == record
        finally:
            await second.disconnect()

    @pytest.mark.asyncio
    async def test_create_through_store(self, sql_provider):
        store = CredentialStore(sql_provider)
        record = IdentityRecord(
            principal_id="p-1", certificate=b"c", private_key=b"k", membership_id="Org1"
        )
        async with store.transaction("p-1") as txn:
            await txn.create(record)
            with pytest.raises(ConflictError):
                await txn.create(record.model_copy(update={"certificate": b"other"}))
        assert await store.get("p-1") == record


async def _hold(provider, key, name, events, seconds=0.1):
    async with provider.lock(key):
        events.append(f"{name}-in")
        await asyncio.sleep(seconds)
        events.append(f"{name}-out")


SERIALIZED = (
    ["a-in", "a-out", "b-in", "b-out"],
    ["b-in", "b-out", "a-in", "a-out"],
)


class TestSQLiteLocks:
    """SQLite locks are held in process."""

    @pytest.mark.asyncio
    async def test_same_key_serializes(self, sql_provider):
        events = []
        await asyncio.gather(
            _hold(sql_provider, "k", "a", events), _hold(sql_provider, "k", "b", events)
        )
        assert events in SERIALIZED


class FakeDatabase:
    """Transaction-scoped advisory locks, as PostgreSQL keeps them."""

    def __init__(self):
        self.held = {}
        self.statements = []


class FakeConnection:
    def __init__(self, db: FakeDatabase):
        self.db = db

    async def execute(self, statement, params=None):
        self.db.statements.append(str(statement))
        owner = self.db.held.setdefault(params["key"], self)
        return SimpleNamespace(scalar=lambda: owner is self)


class FakeEngine:
    dialect = SimpleNamespace(name="postgresql")

    def __init__(self, db: FakeDatabase):
        self.db = db

    @asynccontextmanager
    async def begin(self):
        conn = FakeConnection(self.db)
        try:
            yield conn
        finally:
            for key in [k for k, owner in self.db.held.items() if owner is conn]:
                del self.db.held[key]


def _postgres_provider(db: FakeDatabase, lock_timeout: float = 5.0) -> SQLStorageProvider:
    provider = SQLStorageProvider(StorageConfig(
        backend="sql",
        url="postgresql+asyncpg://db/idbridge",
        lock_timeout_seconds=lock_timeout,
    ))
    provider._engine = FakeEngine(db)
    return provider


class TestPostgresAdvisoryLocks:
    """PostgreSQL locks are taken in the database, across processes."""

    @pytest.mark.asyncio
    async def test_two_processes_serialize(self):
        db = FakeDatabase()
        events = []

        await asyncio.gather(
            _hold(_postgres_provider(db), "idbridge:identity:p-1", "a", events),
            _hold(_postgres_provider(db), "idbridge:identity:p-1", "b", events),
        )

        assert events in SERIALIZED
        assert "pg_try_advisory_xact_lock" in db.statements[0]
        assert db.held == {}

    @pytest.mark.asyncio
    async def test_distinct_keys_do_not_block(self):
        db = FakeDatabase()
        first, second = _postgres_provider(db), _postgres_provider(db, lock_timeout=0.1)
        async with first.lock("a"):
            async with second.lock("b"):
                assert set(db.held) == {"a", "b"}

    @pytest.mark.asyncio
    async def test_timeout_while_another_process_holds(self):
        db = FakeDatabase()
        holder = _postgres_provider(db)
        waiter = _postgres_provider(db, lock_timeout=0.1)

        async with holder.lock("k"):
            with pytest.raises(TimeoutError):
                async with waiter.lock("k"):
                    pass

        assert db.held == {}


POSTGRES_URL = os.environ.get("IDBRIDGE_TEST_POSTGRES_URL")


@pytest.mark.skipif(POSTGRES_URL is None, reason="IDBRIDGE_TEST_POSTGRES_URL not set")
class TestLivePostgres:
    """Two providers on one PostgreSQL database."""

    @pytest.mark.asyncio
    async def test_two_providers_serialize(self):
        pytest.importorskip("asyncpg")
        first = SQLStorageProvider(StorageConfig(backend="sql", url=POSTGRES_URL))
        second = SQLStorageProvider(StorageConfig(backend="sql", url=POSTGRES_URL))
        await first.connect()
        await second.connect()
        try:
            events = []
            await asyncio.gather(
                _hold(first, "idbridge:test-lock", "a", events),
                _hold(second, "idbridge:test-lock", "b", events),
            )
            assert events in SERIALIZED
        finally:
            await first.disconnect()
            await second.disconnect()
