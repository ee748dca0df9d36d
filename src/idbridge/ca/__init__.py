"""
Membership authority clients.
"""

from .client import MembershipAuthorityClient, build_attributes, generate_secret
from .fabric import FabricCAClient, create_auth_token, normalize_revocation_reason
from .local import LocalCertificateAuthority

__all__ = [
    "MembershipAuthorityClient",
    "FabricCAClient",
    "LocalCertificateAuthority",
    "build_attributes",
    "generate_secret",
    "create_auth_token",
    "normalize_revocation_reason",
]
