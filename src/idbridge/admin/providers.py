"""
Admin Credential Providers

Sources of the privileged credential cached by AdminCredentialCache:
- CAAdminEnrollmentProvider: enrolls the CA bootstrap registrar
- OIDCAdminTokenProvider: fetches an identity-provider admin token
- StaticAdminCredentialProvider: hands out a pre-provisioned credential
"""

from __future__ import annotations

import abc
import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Literal, Optional

import httpx

from idbridge.ca.keys import load_certificate
from idbridge.exceptions import UpstreamAuthError, ValidationError
from idbridge.models import AdminCredential, utcnow

if TYPE_CHECKING:
    from idbridge.ca.client import MembershipAuthorityClient

logger = logging.getLogger(__name__)


class AdminCredentialProvider(abc.ABC):
    """Fetches a fresh admin credential from upstream. Never retries."""

    @abc.abstractmethod
    async def fetch(self) -> AdminCredential:
        """Return a new credential or raise ``UpstreamAuthError``/``UpstreamError``."""

    async def close(self) -> None:
        """Release network resources."""


class StaticAdminCredentialProvider(AdminCredentialProvider):
    """Returns the same credential on every fetch."""

    def __init__(self, credential: AdminCredential) -> None:
        self._credential = credential

    async def fetch(self) -> AdminCredential:
        return self._credential


class CAAdminEnrollmentProvider(AdminCredentialProvider):
    """Enrolls the bootstrap registrar to obtain a signing credential.

    The resulting credential expires with the issued certificate.

    Args:
        client: Membership authority client used for the enrollment.
        admin_user: Registrar enrollment id.
        admin_password: Registrar enrollment secret.
    """

    def __init__(
        self,
        client: "MembershipAuthorityClient",
        admin_user: str,
        admin_password: str,
    ) -> None:
        if not admin_user:
            raise ValueError("admin_user must not be empty")
        self._client = client
        self._admin_user = admin_user
        self._admin_password = admin_password

    async def fetch(self) -> AdminCredential:
        logger.info("Enrolling admin user %s", self._admin_user)
        try:
            enrollment = await self._client.enroll(self._admin_user, self._admin_password)
        except ValidationError as exc:
            raise UpstreamAuthError(
                f"Membership authority rejected admin credentials for {self._admin_user}"
            ) from exc
        cert = load_certificate(enrollment.certificate)
        return AdminCredential(
            token=self._admin_user,
            expires_at=cert.not_valid_after_utc,
            certificate=enrollment.certificate,
            private_key=enrollment.private_key,
        )


class OIDCAdminTokenProvider(AdminCredentialProvider):
    """Fetches an admin access token from an OIDC token endpoint.

    Supports the ``password`` grant (Keycloak ``admin-cli`` style) and the
    ``client_credentials`` grant.

    Args:
        token_url: Full token endpoint URL.
        client_id: OAuth client id.
        client_secret: OAuth client secret, for confidential clients.
        username: Admin username for the password grant.
        password: Admin password for the password grant.
        grant_type: ``password`` or ``client_credentials``.
        timeout_seconds: Bound on the token request.
        http_client: Pre-built ``httpx.AsyncClient``.
    """

    def __init__(
        self,
        token_url: str,
        client_id: str = "admin-cli",
        client_secret: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        grant_type: Literal["password", "client_credentials"] = "password",
        timeout_seconds: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if grant_type == "password" and not username:
            raise ValueError("username is required for the password grant")
        self.token_url = token_url
        self.client_id = client_id
        self._client_secret = client_secret
        self._username = username
        self._password = password
        self.grant_type = grant_type
        self.timeout_seconds = timeout_seconds
        self._client = http_client or httpx.AsyncClient(timeout=timeout_seconds)

    def _form(self) -> dict[str, str]:
        form = {"grant_type": self.grant_type, "client_id": self.client_id}
        if self._client_secret:
            form["client_secret"] = self._client_secret
        if self.grant_type == "password":
            form["username"] = self._username or ""
            form["password"] = self._password or ""
        return form

    async def fetch(self) -> AdminCredential:
        try:
            response = await self._client.post(
                self.token_url,
                data=self._form(),
                headers={"Accept": "application/json"},
                timeout=self.timeout_seconds,
            )
        except httpx.HTTPError as exc:
            raise UpstreamAuthError(f"Failed to authenticate with identity provider: {exc}") from exc

        if response.status_code in (400, 401, 403):
            raise UpstreamAuthError(
                f"Identity provider rejected admin credentials ({response.status_code})",
                status=response.status_code,
            )
        if not response.is_success:
            raise UpstreamAuthError(
                f"Identity provider token endpoint failed ({response.status_code})",
                status=response.status_code,
            )

        try:
            payload = response.json()
            token = payload["access_token"]
            expires_in = int(payload.get("expires_in", 60))
        except (ValueError, KeyError, TypeError) as exc:
            raise UpstreamAuthError("Malformed token response from identity provider") from exc

        logger.info("Admin token obtained from %s", self.token_url)
        return AdminCredential(token=token, expires_at=utcnow() + timedelta(seconds=expires_in))

    async def close(self) -> None:
        await self._client.aclose()
