"""
Shared fixtures for idbridge tests.
"""

import asyncio
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import Any, Optional

import pytest
from cryptography.hazmat.primitives import serialization

from idbridge.admin import AdminCredentialCache, CAAdminEnrollmentProvider
from idbridge.ca import LocalCertificateAuthority, MembershipAuthorityClient
from idbridge.ca.keys import build_csr, generate_private_key, private_key_to_pem
from idbridge.config import EnrollmentConfig
from idbridge.models import AdminCredential, Attribute, EnrollmentResult, IdentityRecord, utcnow
from idbridge.orchestrator import EnrollmentOrchestrator
from idbridge.status import IdentityStatusService
from idbridge.storage import CredentialStore, MemoryStorageProvider


class RecordingCA(MembershipAuthorityClient):
    """Delegates to a real authority while counting calls.

    ``failures[name]`` holds exceptions raised, in order, before delegating;
    ``delays[name]`` is slept before every call of that operation.
    """

    def __init__(self, inner: MembershipAuthorityClient):
        self.inner = inner
        self.calls: Counter = Counter()
        self.failures: dict[str, list[Exception]] = defaultdict(list)
        self.delays: dict[str, float] = {}

    async def _call(self, name: str, *args: Any) -> Any:
        self.calls[name] += 1
        if name in self.delays:
            await asyncio.sleep(self.delays[name])
        if self.failures[name]:
            raise self.failures[name].pop(0)
        return await getattr(self.inner, name)(*args)

    async def register(self, principal_id, role, affiliation, attrs, admin) -> str:
        return await self._call("register", principal_id, role, affiliation, attrs, admin)

    async def enroll(self, principal_id, secret) -> EnrollmentResult:
        return await self._call("enroll", principal_id, secret)

    async def revoke(self, principal_id, reason, admin) -> datetime:
        return await self._call("revoke", principal_id, reason, admin)

    async def get_identity(self, principal_id, admin) -> dict[str, Any]:
        return await self._call("get_identity", principal_id, admin)

    async def reset_secret(self, principal_id, admin) -> str:
        return await self._call("reset_secret", principal_id, admin)

    async def health_check(self) -> dict[str, Any]:
        return await self._call("health_check")


class RecordingSleep:
    """Stand-in for ``asyncio.sleep`` that records backoff delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def local_ca() -> LocalCertificateAuthority:
    return LocalCertificateAuthority(organization="Org1")


@pytest.fixture
def ca(local_ca) -> RecordingCA:
    return RecordingCA(local_ca)


@pytest.fixture
async def admin_cache(local_ca):
    cache = AdminCredentialCache(CAAdminEnrollmentProvider(local_ca, "admin", "adminpw"))
    yield cache
    await cache.close()


@pytest.fixture
async def admin_credential(admin_cache) -> AdminCredential:
    return await admin_cache.get()


@pytest.fixture
def store() -> CredentialStore:
    return CredentialStore(MemoryStorageProvider())


@pytest.fixture
def backoff() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def make_orchestrator(store, ca, admin_cache, backoff):
    def factory(**overrides) -> EnrollmentOrchestrator:
        return EnrollmentOrchestrator(
            store,
            ca,
            admin_cache,
            membership_id="Org1",
            config=EnrollmentConfig(**overrides),
            sleep=backoff,
        )

    return factory


@pytest.fixture
def orchestrator(make_orchestrator) -> EnrollmentOrchestrator:
    return make_orchestrator()


@pytest.fixture
def status_service(store) -> IdentityStatusService:
    return IdentityStatusService(store)


@pytest.fixture
def make_record(local_ca):
    """Build an IdentityRecord with a certificate valid over a chosen window."""

    def factory(
        principal_id: str = "p-1",
        not_before: Optional[datetime] = None,
        not_after: Optional[datetime] = None,
        der: bool = False,
    ) -> IdentityRecord:
        key = generate_private_key()
        cert = local_ca.issue_certificate(
            build_csr(principal_id, key),
            attrs=[Attribute(name="role", value="client", ecert=True)],
            not_before=not_before or utcnow() - timedelta(minutes=5),
            not_after=not_after,
        )
        encoding = serialization.Encoding.DER if der else serialization.Encoding.PEM
        return IdentityRecord(
            principal_id=principal_id,
            certificate=cert.public_bytes(encoding),
            private_key=private_key_to_pem(key),
            membership_id="Org1",
        )

    return factory
