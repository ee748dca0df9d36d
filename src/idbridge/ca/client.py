"""
Membership Authority Client

Abstract contract for the certificate authority that registers enrollment
ids and issues X.509 identities. Implementations never retry; retry policy
belongs to the caller.
"""

from __future__ import annotations

import abc
import secrets
import string
from datetime import datetime
from typing import Any, Iterable, Optional

from idbridge.exceptions import ManualInterventionRequired
from idbridge.models import AdminCredential, Attribute, EnrollmentResult

_SECRET_ALPHABET = string.ascii_letters + string.digits


def generate_secret(length: int = 12) -> str:
    """Return a random alphanumeric enrollment secret."""
    return "".join(secrets.choice(_SECRET_ALPHABET) for _ in range(length))


def build_attributes(role: str, attrs: Optional[Iterable[Attribute]] = None) -> list[Attribute]:
    """Prepend the ``role`` ecert attribute to caller supplied attributes.

    A caller supplied ``role`` attribute is replaced rather than duplicated.
    """
    result = [Attribute(name="role", value=role, ecert=True)]
    result.extend(a for a in (attrs or []) if a.name != "role")
    return result


class MembershipAuthorityClient(abc.ABC):
    """Remote certificate authority operations.

    Every method is a single remote call with a bounded timeout and maps
    failures onto the idbridge error taxonomy:

    - ``ConflictError``: enrollment id already registered.
    - ``ValidationError``: bad secret or malformed request.
    - ``UpstreamAuthError``: admin credential rejected.
    - ``UpstreamError``: transport failure, timeout or server error.
    - ``NotFoundError``: unknown enrollment id.
    """

    @abc.abstractmethod
    async def register(
        self,
        principal_id: str,
        role: str,
        affiliation: str,
        attrs: list[Attribute],
        admin: AdminCredential,
    ) -> str:
        """Register an enrollment id and return its one-time secret."""

    @abc.abstractmethod
    async def enroll(self, principal_id: str, secret: str) -> EnrollmentResult:
        """Exchange an enrollment secret for a certificate and private key."""

    @abc.abstractmethod
    async def revoke(self, principal_id: str, reason: str, admin: AdminCredential) -> datetime:
        """Revoke all certificates of an enrollment id. Returns revokedAt."""

    @abc.abstractmethod
    async def get_identity(self, principal_id: str, admin: AdminCredential) -> dict[str, Any]:
        """Return the authority's view of a registered enrollment id."""

    async def reset_secret(self, principal_id: str, admin: AdminCredential) -> str:
        """Assign a fresh enrollment secret to an already registered id.

        Authorities that cannot modify identities leave the principal stuck
        in the registered state.
        """
        raise ManualInterventionRequired(
            f"{type(self).__name__} cannot reset the enrollment secret of {principal_id}",
            principal_id=principal_id,
        )

    @abc.abstractmethod
    async def health_check(self) -> dict[str, Any]:
        """Return CA name and version, or raise ``UpstreamError``."""

    async def close(self) -> None:
        """Release network resources."""
