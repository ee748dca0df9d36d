"""
Local Certificate Authority

In-process membership authority that registers enrollment ids and issues
ECDSA X.509 identities the way a Fabric CA does. Used for development
deployments (``ca.backend: local``) and throughout the test suite.

Features:
- Self-signed ECDSA P-256 root generated on start
- Bootstrap admin enrolled with a configured id and password
- One-time enrollment secrets
- Registration attributes embedded in issued certificates
- Revocation by enrollment id
"""

import json
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from idbridge.ca.client import MembershipAuthorityClient, generate_secret
from idbridge.ca.keys import build_csr, generate_private_key, private_key_to_pem
from idbridge.exceptions import (
    ConflictError,
    NotFoundError,
    UpstreamAuthError,
    ValidationError,
)
from idbridge.models import AdminCredential, Attribute, EnrollmentResult

# Extension Fabric uses to carry ecert attributes as JSON.
ATTRIBUTES_OID = x509.ObjectIdentifier("1.2.3.4.5.6.7.8.1")


@dataclass
class _Registration:
    """A registered enrollment id."""

    principal_id: str
    type: str
    affiliation: str
    attrs: list[Attribute]
    secret: Optional[str]
    registrar: bool = False
    revoked: bool = False
    serials: list[int] = field(default_factory=list)


class LocalCertificateAuthority(MembershipAuthorityClient):
    """
    In-memory membership authority.

    Args:
        ca_name: Name reported by ``health_check``.
        organization: Organization placed in the CA subject.
        admin_user: Bootstrap registrar enrollment id.
        admin_password: Bootstrap registrar secret.
        cert_ttl: Lifetime of issued certificates.
        ca_private_key: CA's private key (generates new if None).
        ca_certificate: CA's certificate (self-signs if None).
    """

    VERSION = "1.5-local"

    def __init__(
        self,
        ca_name: str = "local-ca",
        organization: str = "Org1",
        admin_user: str = "admin",
        admin_password: str = "adminpw",
        cert_ttl: timedelta = timedelta(days=365),
        ca_private_key: Optional[ec.EllipticCurvePrivateKey] = None,
        ca_certificate: Optional[x509.Certificate] = None,
    ):
        self.ca_name = ca_name
        self.organization = organization
        self.cert_ttl = cert_ttl

        if ca_private_key is None:
            ca_private_key = generate_private_key()
        self.ca_private_key = ca_private_key
        self.ca_public_key = ca_private_key.public_key()

        if ca_certificate is None:
            ca_certificate = self._generate_ca_certificate()
        self.ca_certificate = ca_certificate

        self._registrations: dict[str, _Registration] = {
            admin_user: _Registration(
                principal_id=admin_user,
                type="admin",
                affiliation="",
                attrs=[Attribute(name="hf.Registrar.Roles", value="*", ecert=False)],
                secret=admin_password,
                registrar=True,
            )
        }
        self._bootstrap = (admin_user, admin_password)
        self._revoked_serials: set[int] = set()

    @property
    def ca_certificate_pem(self) -> bytes:
        return self.ca_certificate.public_bytes(serialization.Encoding.PEM)

    def _generate_ca_certificate(self) -> x509.Certificate:
        """Generate a self-signed CA certificate."""
        subject = issuer = x509.Name([
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, self.organization),
            x509.NameAttribute(NameOID.COMMON_NAME, self.ca_name),
        ])
        now = datetime.now(timezone.utc)

        return (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(issuer)
            .public_key(self.ca_public_key)
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(minutes=5))
            .not_valid_after(now + timedelta(days=3650))  # 10 years
            .add_extension(
                x509.BasicConstraints(ca=True, path_length=None),
                critical=True,
            )
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    key_cert_sign=True,
                    crl_sign=True,
                    key_encipherment=False,
                    content_commitment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .sign(self.ca_private_key, hashes.SHA256())
        )

    def issue_certificate(
        self,
        csr: x509.CertificateSigningRequest,
        role: str = "client",
        attrs: Optional[list[Attribute]] = None,
        not_before: Optional[datetime] = None,
        not_after: Optional[datetime] = None,
    ) -> x509.Certificate:
        """
        Sign a CSR as an enrollment certificate.

        The subject keeps the CSR's common name and gains an OU for the role.
        Attributes flagged ``ecert`` are embedded as a JSON extension.
        """
        not_before = not_before or datetime.now(timezone.utc) - timedelta(minutes=5)
        not_after = not_after or not_before + self.cert_ttl
        common_name = csr.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value

        builder = (
            x509.CertificateBuilder()
            .subject_name(x509.Name([
                x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, role),
                x509.NameAttribute(NameOID.COMMON_NAME, common_name),
            ]))
            .issuer_name(self.ca_certificate.subject)
            .public_key(csr.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_after)
            .add_extension(
                x509.BasicConstraints(ca=False, path_length=None),
                critical=True,
            )
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    key_cert_sign=False,
                    crl_sign=False,
                    key_encipherment=False,
                    content_commitment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
        )

        ecert_attrs = {a.name: a.value for a in attrs or [] if a.ecert}
        if ecert_attrs:
            builder = builder.add_extension(
                x509.UnrecognizedExtension(
                    ATTRIBUTES_OID,
                    json.dumps({"attrs": ecert_attrs}).encode(),
                ),
                critical=False,
            )

        return builder.sign(self.ca_private_key, hashes.SHA256())

    # ------------------------------------------------------------------
    # Admin authentication
    # ------------------------------------------------------------------

    def _authenticate_registrar(self, admin: AdminCredential) -> _Registration:
        """Check that ``admin`` holds a live registrar certificate from this CA."""
        if admin.certificate is None:
            raise UpstreamAuthError("Authentication failure: no admin certificate")
        try:
            cert = x509.load_pem_x509_certificate(admin.certificate)
            self.ca_public_key.verify(
                cert.signature,
                cert.tbs_certificate_bytes,
                ec.ECDSA(cert.signature_hash_algorithm),
            )
        except (ValueError, InvalidSignature) as exc:
            raise UpstreamAuthError("Authentication failure: untrusted admin certificate") from exc

        if cert.serial_number in self._revoked_serials:
            raise UpstreamAuthError("Authentication failure: admin certificate revoked")
        if datetime.now(timezone.utc) >= cert.not_valid_after_utc:
            raise UpstreamAuthError("Authentication failure: admin certificate expired")

        common_name = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value
        registration = self._registrations.get(common_name)
        if registration is None or not registration.registrar or registration.revoked:
            raise UpstreamAuthError(f"Authorization failure: {common_name} is not a registrar")
        return registration

    # ------------------------------------------------------------------
    # MembershipAuthorityClient
    # ------------------------------------------------------------------

    async def register(
        self,
        principal_id: str,
        role: str,
        affiliation: str,
        attrs: list[Attribute],
        admin: AdminCredential,
    ) -> str:
        self._authenticate_registrar(admin)
        if principal_id in self._registrations:
            raise ConflictError(f"Identity '{principal_id}' is already registered")

        secret = generate_secret()
        self._registrations[principal_id] = _Registration(
            principal_id=principal_id,
            type=role,
            affiliation=affiliation,
            attrs=list(attrs),
            secret=secret,
        )
        return secret

    async def enroll(self, principal_id: str, secret: str) -> EnrollmentResult:
        registration = self._registrations.get(principal_id)
        if (
            registration is None
            or registration.revoked
            or registration.secret is None
            or not secrets.compare_digest(registration.secret, secret)
        ):
            raise ValidationError(f"Authentication failure for {principal_id}")

        # The bootstrap admin may re-enroll; everyone else consumes the secret
        if (principal_id, secret) != self._bootstrap:
            registration.secret = None

        key = generate_private_key()
        cert = self.issue_certificate(
            build_csr(principal_id, key),
            role=registration.type,
            attrs=registration.attrs,
        )
        registration.serials.append(cert.serial_number)
        return EnrollmentResult(
            certificate=cert.public_bytes(serialization.Encoding.PEM),
            private_key=private_key_to_pem(key),
        )

    async def revoke(self, principal_id: str, reason: str, admin: AdminCredential) -> datetime:
        self._authenticate_registrar(admin)
        registration = self._registrations.get(principal_id)
        if registration is None:
            raise NotFoundError(f"Identity '{principal_id}' not found")
        registration.revoked = True
        registration.secret = None
        self._revoked_serials.update(registration.serials)
        return datetime.now(timezone.utc)

    async def get_identity(self, principal_id: str, admin: AdminCredential) -> dict[str, Any]:
        self._authenticate_registrar(admin)
        registration = self._registrations.get(principal_id)
        if registration is None:
            raise NotFoundError(f"Identity '{principal_id}' not found")
        return {
            "id": registration.principal_id,
            "type": registration.type,
            "affiliation": registration.affiliation,
            "attrs": [a.model_dump() for a in registration.attrs],
            "max_enrollments": -1,
            "revoked": registration.revoked,
        }

    async def reset_secret(self, principal_id: str, admin: AdminCredential) -> str:
        self._authenticate_registrar(admin)
        registration = self._registrations.get(principal_id)
        if registration is None:
            raise NotFoundError(f"Identity '{principal_id}' not found")
        registration.secret = generate_secret()
        # Unlike Fabric CA, a reset here also lifts a revocation
        registration.revoked = False
        return registration.secret

    async def health_check(self) -> dict[str, Any]:
        return {"ca_name": self.ca_name, "version": self.VERSION}

    def is_registered(self, principal_id: str) -> bool:
        return principal_id in self._registrations

    def is_revoked(self, principal_id: str) -> bool:
        registration = self._registrations.get(principal_id)
        return registration is not None and registration.revoked
