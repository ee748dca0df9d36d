"""
Identity Bridge Data Model

Identity records, admin credentials, revocation records and the read-only
views returned by the status service.
"""

import base64
import binascii
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from idbridge.exceptions import ValidationError


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class EnrollmentState(str, Enum):
    """Lifecycle of a principal's ledger identity."""

    UNREGISTERED = "unregistered"
    REGISTERED = "registered"
    ENROLLED = "enrolled"
    REVOKED = "revoked"


class Attribute(BaseModel):
    """Registration attribute attached to an enrollment id.

    Attributes with ``ecert=True`` are embedded in the issued certificate.
    """

    name: str = Field(..., min_length=1)
    value: str
    ecert: bool = False


class AdminCredential(BaseModel):
    """Short-lived privileged credential for registry operations.

    Attributes:
        token: Opaque bearer token or enrollment id of the admin.
        expires_at: Absolute expiry; never handed out after this instant.
        certificate: Admin certificate, when requests are signed rather than
            carrying a bearer token.
        private_key: Admin private key paired with ``certificate``.
    """

    model_config = ConfigDict(frozen=True)

    token: str
    expires_at: datetime
    certificate: Optional[bytes] = None
    private_key: Optional[bytes] = Field(default=None, repr=False)

    def is_usable(self, now: Optional[datetime] = None, safety_margin: float = 0.0) -> bool:
        """Return True while ``now`` is before ``expires_at - safety_margin``."""
        now = now or utcnow()
        return now < self.expires_at - timedelta(seconds=safety_margin)


class EnrollmentResult(BaseModel):
    """Certificate and key pair produced by a successful enrollment."""

    model_config = ConfigDict(frozen=True)

    certificate: bytes
    private_key: bytes = Field(repr=False)


class IdentityRecord(BaseModel):
    """One principal's cryptographic identity.

    Records are immutable once persisted; a new identity is only produced by
    revoke followed by a fresh enrollment.
    """

    model_config = ConfigDict(frozen=True)

    principal_id: str = Field(..., min_length=1)
    certificate: bytes
    private_key: bytes = Field(repr=False)
    membership_id: str
    role: str = "client"
    affiliation: str = ""
    issued_at: datetime = Field(default_factory=utcnow)
    type: str = "X.509"

    def to_wallet(self) -> dict[str, Any]:
        """Serialize to the persisted wallet layout.

        Byte fields are base64 encoded so PEM and DER both round-trip.
        """
        return {
            "principalId": self.principal_id,
            "credentials": {
                "certificate": base64.b64encode(self.certificate).decode("ascii"),
                "privateKey": base64.b64encode(self.private_key).decode("ascii"),
            },
            "mspId": self.membership_id,
            "type": self.type,
            "role": self.role,
            "affiliation": self.affiliation,
            "issuedAt": self.issued_at.isoformat(),
        }

    @classmethod
    def from_wallet(cls, data: dict[str, Any]) -> "IdentityRecord":
        """Rebuild a record from its wallet layout.

        Raises:
            ValidationError: If credentials are missing or not base64.
        """
        credentials = data.get("credentials") or {}
        certificate = credentials.get("certificate")
        private_key = credentials.get("privateKey")
        if not certificate or not private_key:
            raise ValidationError(
                "Invalid identity credentials - missing certificate or private key"
            )
        try:
            return cls(
                principal_id=data["principalId"],
                certificate=base64.b64decode(certificate, validate=True),
                private_key=base64.b64decode(private_key, validate=True),
                membership_id=data["mspId"],
                type=data.get("type", "X.509"),
                role=data.get("role", "client"),
                affiliation=data.get("affiliation", ""),
                issued_at=datetime.fromisoformat(data["issuedAt"]),
            )
        except (KeyError, ValueError, binascii.Error) as exc:
            raise ValidationError(f"Malformed identity record: {exc}") from exc


class RevocationRecord(BaseModel):
    """Outcome of revoking a principal's identity.

    ``upstream_revoked`` is False when the membership authority could not be
    reached; the local record is removed regardless and the certificate stays
    valid upstream until someone revokes it there.
    """

    principal_id: str
    reason: str
    revoked_at: datetime = Field(default_factory=utcnow)
    upstream_revoked: bool = True
    upstream_error: Optional[str] = None


class IdentityStatus(BaseModel):
    """Enrollment status of a principal."""

    enrolled: bool
    membership_id: Optional[str] = None


class ValidationReport(BaseModel):
    """Validity of a stored certificate at a given instant."""

    valid: bool
    reason: Optional[str] = None
    not_before: Optional[datetime] = None
    not_after: Optional[datetime] = None


class ExportedIdentity(BaseModel):
    """Public part of an identity record. Has no private key field."""

    principal_id: str
    certificate: str
    membership_id: str
    type: str = "X.509"
    exported_at: datetime = Field(default_factory=utcnow)


class CertificateInfo(BaseModel):
    """Parsed details of a stored certificate."""

    subject: str
    issuer: str
    serial_number: str
    not_before: datetime
    not_after: datetime
    fingerprint: str
