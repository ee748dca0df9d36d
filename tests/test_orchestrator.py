"""
Tests for the enrollment orchestrator.

Runs against the in-process CA wrapped in a call-counting client.
"""

import asyncio
import json

import pytest

from idbridge.admin import AdminCredentialCache, AdminCredentialProvider
from idbridge.exceptions import (
    ConflictError,
    ManualInterventionRequired,
    NotFoundError,
    StorageError,
    UpstreamAuthError,
    UpstreamError,
    ValidationError,
)
from idbridge.models import EnrollmentState
from idbridge.orchestrator import EnrollmentOrchestrator


class RejectingProvider(AdminCredentialProvider):
    async def fetch(self):
        raise UpstreamAuthError("bad admin password")


class TestEnroll:
    """Register + enroll + store."""

    @pytest.mark.asyncio
    async def test_enroll_stores_record(self, orchestrator, store, ca):
        record = await orchestrator.enroll("p-1", role="client", affiliation="org1")

        assert record.principal_id == "p-1"
        assert record.membership_id == "Org1"
        assert record.role == "client"
        assert record.certificate.startswith(b"-----BEGIN CERTIFICATE-----")
        assert await store.get("p-1") == record
        assert await orchestrator.state("p-1") == EnrollmentState.ENROLLED
        assert ca.calls["register"] == 1
        assert ca.calls["enroll"] == 1

    @pytest.mark.asyncio
    async def test_enroll_is_idempotent(self, orchestrator, ca):
        first = await orchestrator.enroll("p-1")
        second = await orchestrator.enroll("p-1")

        assert first == second
        assert ca.calls["register"] == 1
        assert ca.calls["enroll"] == 1

    @pytest.mark.asyncio
    async def test_concurrent_enrolls_register_once(self, orchestrator, store, ca):
        ca.delays["register"] = 0.05

        results = await asyncio.gather(*(orchestrator.enroll("p-1") for _ in range(3)))

        assert ca.calls["register"] == 1
        assert all(r == results[0] for r in results)
        assert await store.list() == ["p-1"]

    @pytest.mark.asyncio
    async def test_distinct_principals_in_parallel(self, orchestrator, store, ca):
        await asyncio.gather(*(orchestrator.enroll(f"p-{i}") for i in range(5)))
        assert await store.count() == 5
        assert ca.calls["register"] == 5

    @pytest.mark.asyncio
    async def test_never_overwrites_unlocked_writer(self, orchestrator, store, ca, make_record):
        # Another writer stores a record while this enrollment is in flight
        ca.delays["enroll"] = 0.1
        foreign = make_record("p-1")
        task = asyncio.create_task(orchestrator.enroll("p-1"))
        await asyncio.sleep(0.05)
        await store.provider.set(store._key("p-1"), json.dumps(foreign.to_wallet()))

        with pytest.raises(ConflictError):
            await task

        assert await store.get("p-1") == foreign

    @pytest.mark.asyncio
    async def test_conflict_policy(self, make_orchestrator):
        orchestrator = make_orchestrator(reenroll_policy="conflict")
        await orchestrator.enroll("p-1")
        with pytest.raises(ConflictError):
            await orchestrator.enroll("p-1")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("principal_id,role", [("", "client"), ("p-1", "")])
    async def test_rejects_empty_input(self, orchestrator, principal_id, role):
        with pytest.raises(ValidationError):
            await orchestrator.enroll(principal_id, role=role)


class TestEnrollRetries:
    """Transient upstream failures on enroll are retried with backoff."""

    @pytest.mark.asyncio
    async def test_transient_failures_retried(self, orchestrator, store, ca, backoff):
        ca.failures["enroll"] = [UpstreamError("503"), UpstreamError("503")]

        await orchestrator.enroll("p-1")

        assert ca.calls["enroll"] == 3
        assert backoff.delays == [0.5, 1.0]
        assert await store.exists("p-1")

    @pytest.mark.asyncio
    async def test_backoff_is_capped(self, make_orchestrator, ca, backoff):
        orchestrator = make_orchestrator(
            max_enroll_attempts=5, backoff_base_seconds=1.0, backoff_max_seconds=3.0
        )
        ca.failures["enroll"] = [UpstreamError("503")] * 4

        await orchestrator.enroll("p-1")

        assert backoff.delays == [1.0, 2.0, 3.0, 3.0]

    @pytest.mark.asyncio
    async def test_single_attempt_raises_without_backoff(self, make_orchestrator, ca, backoff):
        orchestrator = make_orchestrator(max_enroll_attempts=1)
        ca.failures["enroll"] = [UpstreamError("503")]

        with pytest.raises(UpstreamError, match="503"):
            await orchestrator.enroll("p-1")

        assert ca.calls["enroll"] == 1
        assert backoff.delays == []

    @pytest.mark.asyncio
    async def test_attempts_exhausted_leaves_registered(self, orchestrator, store, ca):
        ca.failures["enroll"] = [UpstreamError("503")] * 3

        with pytest.raises(UpstreamError):
            await orchestrator.enroll("p-1")

        assert ca.calls["enroll"] == 3
        assert not await store.exists("p-1")
        assert await orchestrator.state("p-1") == EnrollmentState.REGISTERED

    @pytest.mark.asyncio
    async def test_retry_after_abandoned_registration(self, orchestrator, ca):
        ca.failures["enroll"] = [ValidationError("bad secret")]
        with pytest.raises(ValidationError):
            await orchestrator.enroll("p-1")

        with pytest.raises(ManualInterventionRequired):
            await orchestrator.enroll("p-1")
        assert ca.calls["register"] == 2

    @pytest.mark.asyncio
    async def test_validation_error_aborts(self, orchestrator, ca, backoff):
        ca.failures["enroll"] = [ValidationError("Authentication failure")]

        with pytest.raises(ValidationError):
            await orchestrator.enroll("p-1")

        assert ca.calls["enroll"] == 1
        assert backoff.delays == []


class TestRegisteredUpstream:
    """Principals registered upstream without a local record."""

    @pytest.mark.asyncio
    async def test_manual_intervention_required(self, orchestrator, local_ca, admin_credential, store):
        await local_ca.register("p-1", "client", "", [], admin_credential)

        with pytest.raises(ManualInterventionRequired) as exc_info:
            await orchestrator.enroll("p-1")

        assert exc_info.value.details["principal_id"] == "p-1"
        assert not await store.exists("p-1")

    @pytest.mark.asyncio
    async def test_recover_registered_resets_secret(
        self, make_orchestrator, local_ca, admin_credential, ca
    ):
        await local_ca.register("p-1", "client", "", [], admin_credential)
        orchestrator = make_orchestrator(recover_registered=True)

        record = await orchestrator.enroll("p-1")

        assert record.principal_id == "p-1"
        assert ca.calls["reset_secret"] == 1


class TestAdminCredentialFailures:
    """Admin credential failures are distinct from CA rejections."""

    @pytest.mark.asyncio
    async def test_cache_failure_surfaces_as_auth_error(self, store, ca):
        cache = AdminCredentialCache(RejectingProvider())
        orchestrator = EnrollmentOrchestrator(store, ca, cache, membership_id="Org1")

        with pytest.raises(UpstreamAuthError):
            await orchestrator.enroll("p-1")

        assert ca.calls["register"] == 0
        assert await orchestrator.state("p-1") == EnrollmentState.UNREGISTERED

    @pytest.mark.asyncio
    async def test_rejected_credential_invalidates_cache(self, orchestrator, admin_cache, ca):
        await admin_cache.get()
        ca.failures["register"] = [UpstreamAuthError("Authentication failure")]

        with pytest.raises(UpstreamAuthError):
            await orchestrator.enroll("p-1")

        assert admin_cache.credential is None
        record = await orchestrator.enroll("p-1")
        assert record.principal_id == "p-1"


class TestDeadlines:
    """A bounded deadline commits nothing when it passes."""

    @pytest.mark.asyncio
    async def test_timeout_commits_nothing(self, orchestrator, store, ca):
        ca.delays["enroll"] = 1.0

        with pytest.raises(UpstreamError, match="exceeded"):
            await orchestrator.enroll("p-1", timeout=0.05)

        assert not await store.exists("p-1")
        async with store.transaction("p-1"):
            pass

    @pytest.mark.asyncio
    async def test_slow_revocation_cleanup_outside_deadline(self, orchestrator, store):
        await orchestrator.enroll("p-1")
        await orchestrator.revoke("p-1")
        clear_revocation = store.clear_revocation

        async def slow_clear(principal_id):
            await asyncio.sleep(0.3)
            return await clear_revocation(principal_id)

        store.clear_revocation = slow_clear

        record = await orchestrator.enroll("p-1", timeout=0.2)

        assert await store.get("p-1") == record
        assert await store.get_revocation("p-1") is None
        assert await orchestrator.state("p-1") == EnrollmentState.ENROLLED

    @pytest.mark.asyncio
    async def test_failed_revocation_cleanup_keeps_enrollment(self, orchestrator, store):
        await orchestrator.enroll("p-1")
        await orchestrator.revoke("p-1")

        async def broken_clear(principal_id):
            raise RuntimeError("disk full")

        store.clear_revocation = broken_clear

        record = await orchestrator.enroll("p-1")

        assert await store.get("p-1") == record
        assert await orchestrator.state("p-1") == EnrollmentState.ENROLLED

    @pytest.mark.asyncio
    async def test_cancellation_commits_nothing(self, orchestrator, store, ca):
        ca.delays["enroll"] = 1.0
        task = asyncio.create_task(orchestrator.enroll("p-1"))
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert not await store.exists("p-1")


class TestRevoke:
    """Revocation removes access."""

    @pytest.mark.asyncio
    async def test_revoke(self, orchestrator, store, local_ca):
        await orchestrator.enroll("p-1")

        record = await orchestrator.revoke("p-1", "keyCompromise")

        assert record.upstream_revoked
        assert record.reason == "keyCompromise"
        assert not await store.exists("p-1")
        assert local_ca.is_revoked("p-1")
        assert await orchestrator.state("p-1") == EnrollmentState.REVOKED
        assert await store.get_revocation("p-1") == record

    @pytest.mark.asyncio
    async def test_revoke_unknown(self, orchestrator, ca):
        with pytest.raises(NotFoundError):
            await orchestrator.revoke("ghost")
        assert ca.calls["revoke"] == 0

    @pytest.mark.asyncio
    async def test_upstream_failure_still_removes_locally(self, orchestrator, store, ca):
        await orchestrator.enroll("p-1")
        ca.failures["revoke"] = [UpstreamError("connection refused")]

        record = await orchestrator.revoke("p-1")

        assert not record.upstream_revoked
        assert "connection refused" in record.upstream_error
        assert not await store.exists("p-1")

    @pytest.mark.asyncio
    async def test_local_failure_is_raised(self, orchestrator, store, ca, local_ca):
        await orchestrator.enroll("p-1")

        async def broken_delete(key):
            raise RuntimeError("disk full")

        store.provider.delete = broken_delete

        with pytest.raises(StorageError, match="disk full"):
            await orchestrator.revoke("p-1")
        assert local_ca.is_revoked("p-1")

    @pytest.mark.asyncio
    async def test_reenroll_after_revoke(self, orchestrator, store, ca):
        first = await orchestrator.enroll("p-1")
        await orchestrator.revoke("p-1")

        second = await orchestrator.enroll("p-1")

        assert second.certificate != first.certificate
        assert await orchestrator.state("p-1") == EnrollmentState.ENROLLED
        assert await store.get_revocation("p-1") is None
        assert ca.calls["reset_secret"] == 1

    @pytest.mark.asyncio
    async def test_reenroll_refused_after_revoke(self, orchestrator, store, ca):
        # Fabric CA keeps a revoked identity revoked after its secret is reset
        await orchestrator.enroll("p-1")
        revocation = await orchestrator.revoke("p-1")
        ca.failures["enroll"] = [ValidationError("Authentication failure")]

        with pytest.raises(ValidationError):
            await orchestrator.enroll("p-1")

        assert ca.calls["reset_secret"] == 1
        assert ca.calls["enroll"] == 2
        assert not await store.exists("p-1")
        assert await store.get_revocation("p-1") == revocation


class TestUpstreamIdentity:
    """Proxy to the authority's identity view."""

    @pytest.mark.asyncio
    async def test_upstream_identity(self, orchestrator):
        await orchestrator.enroll("p-1", role="client")
        info = await orchestrator.upstream_identity("p-1")
        assert info["id"] == "p-1"
        assert info["type"] == "client"

    @pytest.mark.asyncio
    async def test_unknown(self, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.upstream_identity("ghost")
