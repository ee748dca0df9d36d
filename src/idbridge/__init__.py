"""
idbridge - Ledger identities for OIDC principals

Provisions, tracks and revokes X.509 identities issued by a Hyperledger
Fabric style membership authority for principals authenticated by an OIDC
identity provider.

Version: 0.1.0
"""

__version__ = "0.1.0"

from .exceptions import (
    IdentityBridgeError,
    NotFoundError,
    ConflictError,
    ValidationError,
    UpstreamError,
    UpstreamAuthError,
    ManualInterventionRequired,
    ExpiredCredentialError,
    StorageError,
    ConfigurationError,
)
from .models import (
    AdminCredential,
    Attribute,
    EnrollmentResult,
    EnrollmentState,
    IdentityRecord,
    RevocationRecord,
    IdentityStatus,
    ValidationReport,
    ExportedIdentity,
    CertificateInfo,
)
from .admin import AdminCredentialCache
from .ca import MembershipAuthorityClient, FabricCAClient, LocalCertificateAuthority
from .storage import CredentialStore, StorageConfig
from .config import BridgeConfig, load_config
from .orchestrator import EnrollmentOrchestrator
from .status import IdentityStatusService
from .bridge import IdentityBridge

__all__ = [
    "__version__",
    # Errors
    "IdentityBridgeError",
    "NotFoundError",
    "ConflictError",
    "ValidationError",
    "UpstreamError",
    "UpstreamAuthError",
    "ManualInterventionRequired",
    "ExpiredCredentialError",
    "StorageError",
    "ConfigurationError",
    # Models
    "AdminCredential",
    "Attribute",
    "EnrollmentResult",
    "EnrollmentState",
    "IdentityRecord",
    "RevocationRecord",
    "IdentityStatus",
    "ValidationReport",
    "ExportedIdentity",
    "CertificateInfo",
    # Components
    "AdminCredentialCache",
    "MembershipAuthorityClient",
    "FabricCAClient",
    "LocalCertificateAuthority",
    "CredentialStore",
    "StorageConfig",
    "BridgeConfig",
    "load_config",
    "EnrollmentOrchestrator",
    "IdentityStatusService",
    "IdentityBridge",
]
