"""
Identity Status Service

Read-only views over the credential store. Never contacts the membership
authority and never returns private keys.
"""

import logging
from datetime import datetime
from typing import Any, Callable

from cryptography import x509
from cryptography.hazmat.primitives import hashes

from idbridge.ca.keys import certificate_to_pem, load_certificate
from idbridge.exceptions import ExpiredCredentialError, NotFoundError, ValidationError
from idbridge.models import (
    CertificateInfo,
    ExportedIdentity,
    IdentityRecord,
    IdentityStatus,
    ValidationReport,
    utcnow,
)
from idbridge.storage import CredentialStore

logger = logging.getLogger(__name__)


class IdentityStatusService:
    """Status, validation and export of stored identities.

    Args:
        store: Credential store to read from.
        clock: Returns the current aware UTC time; injectable for tests.
    """

    def __init__(self, store: CredentialStore, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock

    async def _require(self, principal_id: str) -> IdentityRecord:
        record = await self._store.get(principal_id)
        if record is None:
            raise NotFoundError(
                f"Identity not found for principal {principal_id}",
                principal_id=principal_id,
            )
        return record

    async def status(self, principal_id: str) -> IdentityStatus:
        record = await self._store.get(principal_id)
        if record is None:
            return IdentityStatus(enrolled=False)
        return IdentityStatus(enrolled=True, membership_id=record.membership_id)

    async def exists(self, principal_id: str) -> bool:
        return await self._store.exists(principal_id)

    async def validate(self, principal_id: str) -> ValidationReport:
        """Check the stored certificate's validity window against now."""
        record = await self._store.get(principal_id)
        if record is None:
            return ValidationReport(valid=False, reason="not found")

        try:
            cert = load_certificate(record.certificate)
        except ValueError:
            logger.warning("Stored certificate for %s could not be parsed", principal_id)
            return ValidationReport(valid=False, reason="invalid certificate")

        not_before = cert.not_valid_before_utc
        not_after = cert.not_valid_after_utc
        now = self._clock()
        reason = None
        if now < not_before:
            reason = "not yet valid"
        elif now > not_after:
            reason = "expired"
        return ValidationReport(
            valid=reason is None,
            reason=reason,
            not_before=not_before,
            not_after=not_after,
        )

    async def require_valid(self, principal_id: str) -> IdentityRecord:
        """Return the record if its certificate is currently valid.

        Raises:
            NotFoundError: If no identity is stored.
            ExpiredCredentialError: If the certificate is outside its window.
        """
        record = await self._require(principal_id)
        report = await self.validate(principal_id)
        if not report.valid:
            raise ExpiredCredentialError(
                f"Certificate for {principal_id} is {report.reason}",
                principal_id=principal_id,
                reason=report.reason,
            )
        return record

    async def export(self, principal_id: str) -> ExportedIdentity:
        """Return the public part of the identity.

        PEM certificates are returned as stored; DER is converted to PEM.
        """
        record = await self._require(principal_id)
        try:
            certificate = certificate_to_pem(record.certificate)
        except ValueError as exc:
            raise ValidationError(f"Stored certificate for {principal_id} is invalid") from exc
        return ExportedIdentity(
            principal_id=principal_id,
            certificate=certificate.decode("ascii"),
            membership_id=record.membership_id,
            type=record.type,
        )

    async def certificate_info(self, principal_id: str) -> CertificateInfo:
        """Parse subject, issuer, serial, validity and fingerprint."""
        record = await self._require(principal_id)
        try:
            cert: x509.Certificate = load_certificate(record.certificate)
        except ValueError as exc:
            raise ValidationError(f"Stored certificate for {principal_id} is invalid") from exc
        return CertificateInfo(
            subject=cert.subject.rfc4514_string(),
            issuer=cert.issuer.rfc4514_string(),
            serial_number=format(cert.serial_number, "x"),
            not_before=cert.not_valid_before_utc,
            not_after=cert.not_valid_after_utc,
            fingerprint=cert.fingerprint(hashes.SHA256()).hex(":"),
        )

    async def stats(self) -> dict[str, Any]:
        return {"total_identities": await self._store.count()}
