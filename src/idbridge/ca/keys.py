"""
Key material helpers shared by the membership authority clients.
"""

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID


def generate_private_key() -> ec.EllipticCurvePrivateKey:
    """Generate an ECDSA P-256 key, the curve Fabric MSPs expect."""
    return ec.generate_private_key(ec.SECP256R1())


def private_key_to_pem(key: ec.EllipticCurvePrivateKey) -> bytes:
    """Serialize an unencrypted PKCS#8 PEM private key."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def load_private_key(pem: bytes) -> ec.EllipticCurvePrivateKey:
    """Load a PEM private key, rejecting non-EC keys."""
    key = serialization.load_pem_private_key(pem, password=None)
    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise ValueError("Only ECDSA private keys are supported")
    return key


def build_csr(common_name: str, key: ec.EllipticCurvePrivateKey) -> x509.CertificateSigningRequest:
    """Build a certificate signing request with ``common_name`` as subject CN."""
    return (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
        .sign(key, hashes.SHA256())
    )


def load_certificate(data: bytes) -> x509.Certificate:
    """Load a PEM or DER encoded certificate."""
    if data.lstrip().startswith(b"-----BEGIN"):
        return x509.load_pem_x509_certificate(data)
    return x509.load_der_x509_certificate(data)


def certificate_to_pem(data: bytes) -> bytes:
    """Return ``data`` as PEM, converting from DER when needed."""
    if data.lstrip().startswith(b"-----BEGIN"):
        return data
    return load_certificate(data).public_bytes(serialization.Encoding.PEM)
