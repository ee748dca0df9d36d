"""
Identity Bridge

Process-level wiring: builds storage, the membership authority client, the
admin credential cache and the services from a :class:`BridgeConfig`, and
exposes the operations an outer layer calls.
"""

import logging
from typing import Any, Optional

import httpx

from idbridge.admin import (
    AdminCredentialCache,
    AdminCredentialProvider,
    CAAdminEnrollmentProvider,
    OIDCAdminTokenProvider,
)
from idbridge.ca import FabricCAClient, LocalCertificateAuthority, MembershipAuthorityClient
from idbridge.config import BridgeConfig
from idbridge.exceptions import ConfigurationError, StorageError
from idbridge.models import (
    AdminCredential,
    Attribute,
    CertificateInfo,
    ExportedIdentity,
    IdentityRecord,
    IdentityStatus,
    RevocationRecord,
    ValidationReport,
)
from idbridge.orchestrator import DEFAULT_REVOCATION_REASON, EnrollmentOrchestrator
from idbridge.status import IdentityStatusService
from idbridge.storage import AbstractStorageProvider, CredentialStore, create_provider

logger = logging.getLogger(__name__)


def build_ca_client(config: BridgeConfig) -> MembershipAuthorityClient:
    """Create the membership authority client selected by ``ca.backend``."""
    ca = config.ca
    if ca.backend == "fabric":
        return FabricCAClient(
            url=ca.url,
            ca_name=ca.ca_name,
            timeout_seconds=ca.timeout_seconds,
            tls_cert_path=ca.tls_cert_path,
        )
    return LocalCertificateAuthority(
        ca_name=ca.ca_name or "local-ca",
        organization=ca.membership_id,
        admin_user=ca.admin_user,
        admin_password=ca.admin_password,
    )


def build_admin_provider(
    config: BridgeConfig, ca_client: MembershipAuthorityClient
) -> AdminCredentialProvider:
    """Enroll the CA bootstrap registrar; its certificate signs registry requests."""
    return CAAdminEnrollmentProvider(ca_client, config.ca.admin_user, config.ca.admin_password)


def build_idp_admin_provider(
    config: BridgeConfig, http_client: Optional[httpx.AsyncClient] = None
) -> Optional[OIDCAdminTokenProvider]:
    """Identity provider admin token source, or None when no realm is configured.

    The bearer token it yields carries no signing key, so it never reaches the
    membership authority client.
    """
    idp = config.idp
    if not idp.token_url:
        return None
    return OIDCAdminTokenProvider(
        token_url=idp.token_url,
        client_id=idp.client_id,
        client_secret=idp.client_secret,
        username=idp.username,
        password=idp.password,
        grant_type=idp.grant_type,
        timeout_seconds=config.enrollment.admin_timeout_seconds,
        http_client=http_client,
    )


class IdentityBridge:
    """
    Enrollment orchestrator and status service behind one handle.

    Use :meth:`from_config` as an async context manager:

        async with IdentityBridge.from_config(config) as bridge:
            await bridge.enroll("p-1")
    """

    def __init__(
        self,
        config: BridgeConfig,
        storage: AbstractStorageProvider,
        ca_client: MembershipAuthorityClient,
        admin_cache: AdminCredentialCache,
        idp_admin_cache: Optional[AdminCredentialCache] = None,
    ):
        self.config = config
        self.storage = storage
        self.ca_client = ca_client
        self.admin_cache = admin_cache
        self.idp_admin_cache = idp_admin_cache
        self.store = CredentialStore(storage)
        self.orchestrator = EnrollmentOrchestrator(
            self.store,
            ca_client,
            admin_cache,
            membership_id=config.ca.membership_id,
            config=config.enrollment,
        )
        self.status_service = IdentityStatusService(self.store)
        self._started = False

    @classmethod
    def from_config(
        cls, config: BridgeConfig, idp_http_client: Optional[httpx.AsyncClient] = None
    ) -> "IdentityBridge":
        enrollment = config.enrollment
        storage = create_provider(config.storage)
        ca_client = build_ca_client(config)
        admin_cache = AdminCredentialCache(
            build_admin_provider(config, ca_client),
            safety_margin_seconds=enrollment.admin_safety_margin_seconds,
            timeout_seconds=enrollment.admin_timeout_seconds,
        )
        idp_admin_cache = None
        idp_provider = build_idp_admin_provider(config, idp_http_client)
        if idp_provider is not None:
            idp_admin_cache = AdminCredentialCache(
                idp_provider,
                safety_margin_seconds=enrollment.admin_safety_margin_seconds,
                timeout_seconds=enrollment.admin_timeout_seconds,
            )
        return cls(config, storage, ca_client, admin_cache, idp_admin_cache)

    async def start(self) -> None:
        if self._started:
            return
        try:
            await self.storage.connect()
        except Exception as exc:
            await self.close()
            raise StorageError(
                f"Failed to connect to {self.config.storage.backend} storage: {exc}"
            ) from exc
        self._started = True
        logger.info(
            "Identity bridge started (ca=%s, storage=%s)",
            self.config.ca.backend,
            self.config.storage.backend,
        )

    async def close(self) -> None:
        """Close the admin caches, CA client and storage, in that order."""
        await self.admin_cache.close()
        if self.idp_admin_cache is not None:
            await self.idp_admin_cache.close()
        await self.ca_client.close()
        if self._started:
            await self.storage.disconnect()
            self._started = False
        logger.info("Identity bridge stopped")

    async def __aenter__(self) -> "IdentityBridge":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Surfaced operations
    # ------------------------------------------------------------------

    async def enroll(
        self,
        principal_id: str,
        role: str = "client",
        affiliation: str = "",
        attrs: Optional[list[Attribute]] = None,
        timeout: Optional[float] = None,
    ) -> IdentityRecord:
        return await self.orchestrator.enroll(principal_id, role, affiliation, attrs, timeout)

    async def revoke(
        self, principal_id: str, reason: str = DEFAULT_REVOCATION_REASON
    ) -> RevocationRecord:
        return await self.orchestrator.revoke(principal_id, reason)

    async def status(self, principal_id: str) -> IdentityStatus:
        return await self.status_service.status(principal_id)

    async def validate(self, principal_id: str) -> ValidationReport:
        return await self.status_service.validate(principal_id)

    async def export(self, principal_id: str) -> ExportedIdentity:
        return await self.status_service.export(principal_id)

    async def certificate_info(self, principal_id: str) -> CertificateInfo:
        return await self.status_service.certificate_info(principal_id)

    async def list_identities(self) -> list[str]:
        return await self.store.list()

    async def upstream_identity(self, principal_id: str) -> dict[str, Any]:
        return await self.orchestrator.upstream_identity(principal_id)

    async def idp_admin_token(self) -> AdminCredential:
        """Return a cached identity provider admin token.

        Raises:
            ConfigurationError: If no identity provider realm is configured.
            UpstreamAuthError: If the token endpoint refused or failed.
        """
        if self.idp_admin_cache is None:
            raise ConfigurationError("No identity provider realm configured")
        return await self.idp_admin_cache.get()

    async def health_check(self) -> dict[str, Any]:
        """Report storage, membership authority and IdP reachability. Never raises."""
        storage_ok = await self.storage.health_check()
        ca: dict[str, Any]
        try:
            ca = {"healthy": True, **await self.ca_client.health_check()}
        except Exception as exc:
            logger.warning("Membership authority health check failed: %s", exc)
            ca = {"healthy": False, "error": str(exc)}
        report = {
            "healthy": storage_ok and ca["healthy"],
            "storage": {"backend": self.config.storage.backend, "healthy": storage_ok},
            "ca": ca,
        }
        if self.idp_admin_cache is not None:
            try:
                await self.idp_admin_cache.get()
                report["idp"] = {"healthy": True}
            except Exception as exc:
                logger.warning("Identity provider health check failed: %s", exc)
                report["idp"] = {"healthy": False, "error": str(exc)}
                report["healthy"] = False
        return report
