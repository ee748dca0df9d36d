"""
Enrollment Orchestrator

Drives a principal through ``unregistered -> registered -> enrolled`` and
``enrolled -> revoked``. Each transition runs under the credential store's
per-principal lock, so concurrent requests for the same principal issue at
most one upstream registration.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from idbridge.admin import AdminCredentialCache
from idbridge.ca.client import MembershipAuthorityClient, build_attributes
from idbridge.config import EnrollmentConfig
from idbridge.exceptions import (
    ConflictError,
    IdentityBridgeError,
    ManualInterventionRequired,
    NotFoundError,
    UpstreamAuthError,
    UpstreamError,
    ValidationError,
)
from idbridge.models import (
    AdminCredential,
    Attribute,
    EnrollmentResult,
    EnrollmentState,
    IdentityRecord,
    RevocationRecord,
    utcnow,
)
from idbridge.storage import CredentialStore

logger = logging.getLogger(__name__)

DEFAULT_REVOCATION_REASON = "User requested revocation"


class EnrollmentOrchestrator:
    """
    Registers, enrolls and revokes ledger identities.

    Args:
        store: Credential store holding one record per principal.
        ca_client: Membership authority.
        admin_cache: Source of the registrar credential.
        membership_id: MSP id written into every record.
        config: Retry, timeout and re-enroll policy.
        sleep: Backoff sleep; injectable for tests.
    """

    def __init__(
        self,
        store: CredentialStore,
        ca_client: MembershipAuthorityClient,
        admin_cache: AdminCredentialCache,
        membership_id: str,
        config: Optional[EnrollmentConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._store = store
        self._ca = ca_client
        self._admin_cache = admin_cache
        self.membership_id = membership_id
        self.config = config or EnrollmentConfig()
        self._sleep = sleep
        # Principals whose last attempt in this process registered but did not enroll
        self._registered: set[str] = set()

    async def state(self, principal_id: str) -> EnrollmentState:
        """Report the principal's lifecycle state."""
        if await self._store.exists(principal_id):
            return EnrollmentState.ENROLLED
        if principal_id in self._registered:
            return EnrollmentState.REGISTERED
        if await self._store.get_revocation(principal_id) is not None:
            return EnrollmentState.REVOKED
        return EnrollmentState.UNREGISTERED

    # ------------------------------------------------------------------
    # Enroll
    # ------------------------------------------------------------------

    async def enroll(
        self,
        principal_id: str,
        role: str = "client",
        affiliation: str = "",
        attrs: Optional[list[Attribute]] = None,
        timeout: Optional[float] = None,
    ) -> IdentityRecord:
        """
        Provision a ledger identity for ``principal_id``.

        Returns the stored record. Under the default policy an already
        enrolled principal gets its existing record back without any
        upstream call.

        Raises:
            ConflictError: Already enrolled and the policy is ``conflict``.
            UpstreamAuthError: The admin credential could not be used.
            ManualInterventionRequired: Registered upstream with a lost secret.
            ValidationError: Bad input or the enrollment secret was rejected.
            UpstreamError: The membership authority failed or the deadline passed.
        """
        if not principal_id:
            raise ValidationError("principal_id must not be empty")
        if not role:
            raise ValidationError("role must not be empty")

        timeout = self.config.enroll_timeout_seconds if timeout is None else timeout
        try:
            record, created = await asyncio.wait_for(
                self._enroll(principal_id, role, affiliation, attrs),
                timeout=timeout,
            )
        except TimeoutError as exc:
            logger.error("Enrollment of %s exceeded %ss, nothing stored", principal_id, timeout)
            raise UpstreamError(
                f"Enrollment of {principal_id} exceeded {timeout}s",
                principal_id=principal_id,
            ) from exc

        if created:
            await self._clear_revocation(principal_id)
        return record

    async def _enroll(
        self,
        principal_id: str,
        role: str,
        affiliation: str,
        attrs: Optional[list[Attribute]],
    ) -> tuple[IdentityRecord, bool]:
        async with self._store.transaction(principal_id) as txn:
            existing = await txn.get()
            if existing is not None:
                if self.config.reenroll_policy == "conflict":
                    raise ConflictError(
                        f"Identity already exists for principal {principal_id}",
                        principal_id=principal_id,
                    )
                logger.info("Identity already exists for %s", principal_id)
                return existing, False

            admin = await self._admin_cache.get()
            secret = await self._register(
                principal_id, role, affiliation, build_attributes(role, attrs), admin
            )
            self._registered.add(principal_id)
            logger.info("Registered %s with membership authority", principal_id)

            result = await self._enroll_with_retry(principal_id, secret)
            record = IdentityRecord(
                principal_id=principal_id,
                certificate=result.certificate,
                private_key=result.private_key,
                membership_id=self.membership_id,
                role=role,
                affiliation=affiliation,
            )
            await txn.create(record)
            self._registered.discard(principal_id)

        logger.info("Enrolled %s in %s", principal_id, self.membership_id)
        return record, True

    async def _clear_revocation(self, principal_id: str) -> None:
        # Runs after the record is committed, outside the enrollment deadline
        async with self._store.transaction(principal_id) as txn:
            if not await txn.exists():
                return
            try:
                await txn.clear_revocation()
            except Exception as exc:
                logger.warning(
                    "Enrolled %s but could not clear its revocation record: %s",
                    principal_id, exc,
                )

    async def _register(
        self,
        principal_id: str,
        role: str,
        affiliation: str,
        attrs: list[Attribute],
        admin: AdminCredential,
    ) -> str:
        try:
            return await self._ca.register(principal_id, role, affiliation, attrs, admin)
        except UpstreamAuthError:
            self._admin_cache.invalidate(admin)
            raise
        except ConflictError:
            pass

        # Registered upstream without a local record
        revoked = await self._store.get_revocation(principal_id) is not None
        if not revoked and not self.config.recover_registered:
            logger.error(
                "%s is registered upstream but has no local identity; "
                "the enrollment secret is unrecoverable",
                principal_id,
            )
            raise ManualInterventionRequired(
                f"Principal {principal_id} is registered with the membership authority "
                f"but its enrollment secret is lost",
                principal_id=principal_id,
            )

        logger.warning("Resetting enrollment secret for registered principal %s", principal_id)
        try:
            return await self._ca.reset_secret(principal_id, admin)
        except UpstreamAuthError:
            self._admin_cache.invalidate(admin)
            raise

    def _backoff(self, attempt: int) -> float:
        delay = self.config.backoff_base_seconds * 2 ** (attempt - 1)
        return min(delay, self.config.backoff_max_seconds)

    async def _enroll_with_retry(self, principal_id: str, secret: str) -> EnrollmentResult:
        attempts = self.config.max_enroll_attempts
        attempt = 1
        while True:
            try:
                return await self._ca.enroll(principal_id, secret)
            except ValidationError:
                logger.error("Enrollment secret rejected for %s", principal_id)
                raise
            except UpstreamAuthError:
                raise
            except UpstreamError as exc:
                if attempt >= attempts:
                    logger.error(
                        "Enrollment of %s failed after %d attempts: %s",
                        principal_id, attempt, exc,
                    )
                    raise
                delay = self._backoff(attempt)
                logger.warning(
                    "Enrollment of %s failed (attempt %d/%d), retrying in %.2fs: %s",
                    principal_id, attempt, attempts, delay, exc,
                )
                await self._sleep(delay)
                attempt += 1

    # ------------------------------------------------------------------
    # Revoke
    # ------------------------------------------------------------------

    async def revoke(
        self,
        principal_id: str,
        reason: str = DEFAULT_REVOCATION_REASON,
    ) -> RevocationRecord:
        """
        Revoke the principal's identity upstream and remove it locally.

        Local removal happens even when the upstream revoke fails; the
        returned record then carries ``upstream_revoked=False``.

        Raises:
            NotFoundError: If no identity is stored for the principal.
            StorageError: If the local record could not be removed.
        """
        async with self._store.transaction(principal_id) as txn:
            if not await txn.exists():
                raise NotFoundError(
                    f"Identity not found for principal {principal_id}",
                    principal_id=principal_id,
                )

            revoked_at = None
            upstream_error = None
            try:
                revoked_at = await self._revoke_upstream(principal_id, reason)
            except IdentityBridgeError as exc:
                upstream_error = f"{exc.kind}: {exc}"
                logger.warning(
                    "Upstream revocation of %s failed, certificate remains valid upstream: %s",
                    principal_id, exc,
                )

            await txn.remove()
            record = RevocationRecord(
                principal_id=principal_id,
                reason=reason,
                revoked_at=revoked_at or utcnow(),
                upstream_revoked=upstream_error is None,
                upstream_error=upstream_error,
            )
            await self._store.record_revocation(record)
            self._registered.discard(principal_id)

        logger.info("Revoked identity for %s: %s", principal_id, reason)
        return record

    async def _revoke_upstream(self, principal_id: str, reason: str):
        admin = await self._admin_cache.get()
        try:
            return await self._ca.revoke(principal_id, reason, admin)
        except UpstreamAuthError:
            self._admin_cache.invalidate(admin)
            raise

    async def upstream_identity(self, principal_id: str) -> dict:
        """Return the membership authority's view of the principal."""
        admin = await self._admin_cache.get()
        try:
            return await self._ca.get_identity(principal_id, admin)
        except UpstreamAuthError:
            self._admin_cache.invalidate(admin)
            raise
