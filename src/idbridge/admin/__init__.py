"""
Admin credentials for privileged registry operations.
"""

from .providers import (
    AdminCredentialProvider,
    CAAdminEnrollmentProvider,
    OIDCAdminTokenProvider,
    StaticAdminCredentialProvider,
)
from .cache import AdminCredentialCache

__all__ = [
    "AdminCredentialCache",
    "AdminCredentialProvider",
    "CAAdminEnrollmentProvider",
    "OIDCAdminTokenProvider",
    "StaticAdminCredentialProvider",
]
