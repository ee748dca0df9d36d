"""
Fabric CA REST Client

Talks to a Hyperledger Fabric CA server over its ``/api/v1`` REST API with
httpx. Keys are generated locally; only the CSR leaves the process.
"""

from __future__ import annotations

import base64
import json
import logging
import ssl
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import quote, urlencode

import httpx
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature,
    encode_dss_signature,
)

from idbridge.ca.client import MembershipAuthorityClient, generate_secret
from idbridge.ca.keys import build_csr, generate_private_key, load_private_key, private_key_to_pem
from idbridge.exceptions import (
    ConflictError,
    IdentityBridgeError,
    NotFoundError,
    UpstreamAuthError,
    UpstreamError,
    ValidationError,
)
from idbridge.models import AdminCredential, Attribute, EnrollmentResult

logger = logging.getLogger(__name__)

# Order of the P-256 group, used to normalize signatures to low-S form.
_P256_ORDER = 0xFFFFFFFF00000000FFFFFFFFFFFFFFFFBCE6FAADA7179E84F3B9CAC2FC632551

# RFC 5280 reason names accepted by the Fabric CA revoke endpoint.
REVOCATION_REASONS = frozenset({
    "unspecified",
    "keycompromise",
    "cacompromise",
    "affiliationchange",
    "superseded",
    "cessationofoperation",
    "certificatehold",
    "removefromcrl",
    "privilegewithdrawn",
    "aacompromise",
})


def normalize_revocation_reason(reason: str) -> str:
    """Map free-form text onto a reason name the CA accepts."""
    compact = reason.replace(" ", "").replace("_", "").lower()
    return compact if compact in REVOCATION_REASONS else "unspecified"


def create_auth_token(
    admin: AdminCredential,
    method: str,
    uri: str,
    body: bytes,
) -> str:
    """Build the Fabric CA ``Authorization`` token for an admin request.

    The token is ``b64(cert).b64(sig)`` where the signature covers
    ``method.b64(uri).b64(body).b64(cert)``.

    Raises:
        UpstreamAuthError: If the credential carries no signing material.
    """
    if admin.certificate is None or admin.private_key is None:
        raise UpstreamAuthError("Admin credential has no certificate to sign requests with")

    b64_cert = base64.b64encode(admin.certificate).decode()
    payload = ".".join([
        method.upper(),
        base64.b64encode(uri.encode()).decode(),
        base64.b64encode(body).decode(),
        b64_cert,
    ])
    key = load_private_key(admin.private_key)
    r, s = decode_dss_signature(key.sign(payload.encode(), ec.ECDSA(hashes.SHA256())))
    if s > _P256_ORDER // 2:
        s = _P256_ORDER - s
    signature = encode_dss_signature(r, s)
    return f"{b64_cert}.{base64.b64encode(signature).decode()}"


class FabricCAClient(MembershipAuthorityClient):
    """Fabric CA implementation of :class:`MembershipAuthorityClient`.

    Args:
        url: Base URL of the CA server, e.g. ``https://ca.org1.example.com:7054``.
        ca_name: Name of the CA instance on a multi-CA server.
        timeout_seconds: Bound on every request.
        tls_cert_path: PEM bundle used to verify the CA's TLS certificate.
        http_client: Pre-built ``httpx.AsyncClient`` (tests inject a mock transport).
    """

    API_PREFIX = "/api/v1"
    ALREADY_REGISTERED_CODE = 74

    def __init__(
        self,
        url: str,
        ca_name: str = "",
        timeout_seconds: float = 10.0,
        tls_cert_path: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url.rstrip("/")
        self.ca_name = ca_name
        self.timeout_seconds = timeout_seconds
        if http_client is None:
            verify: Any = True
            if tls_cert_path:
                verify = ssl.create_default_context(cafile=tls_cert_path)
            http_client = httpx.AsyncClient(
                base_url=self.url,
                timeout=httpx.Timeout(timeout_seconds),
                verify=verify,
            )
        self._client = http_client

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def register(
        self,
        principal_id: str,
        role: str,
        affiliation: str,
        attrs: list[Attribute],
        admin: AdminCredential,
    ) -> str:
        proposed = generate_secret()
        body = {
            "id": principal_id,
            "type": role,
            "secret": proposed,
            "affiliation": affiliation,
            "attrs": [a.model_dump() for a in attrs],
            "max_enrollments": -1,
            "caname": self.ca_name,
        }
        result = await self._request(
            "POST", "/register", "register", json_body=body, admin=admin
        )
        logger.info("Registered enrollment id %s with role %s", principal_id, role)
        return result.get("secret") or proposed

    async def enroll(self, principal_id: str, secret: str) -> EnrollmentResult:
        key = generate_private_key()
        csr = build_csr(principal_id, key)
        body = {
            "certificate_request": csr.public_bytes(serialization.Encoding.PEM).decode(),
            "caname": self.ca_name,
        }
        result = await self._request(
            "POST", "/enroll", "enroll", json_body=body, basic_auth=(principal_id, secret)
        )
        encoded = result.get("Cert")
        if not encoded:
            raise UpstreamError(f"Enrollment of {principal_id} returned no certificate")
        logger.info("Enrolled %s", principal_id)
        return EnrollmentResult(
            certificate=base64.b64decode(encoded),
            private_key=private_key_to_pem(key),
        )

    async def revoke(self, principal_id: str, reason: str, admin: AdminCredential) -> datetime:
        body = {
            "id": principal_id,
            "reason": normalize_revocation_reason(reason),
            "caname": self.ca_name,
            "gencrl": False,
        }
        await self._request("POST", "/revoke", "revoke", json_body=body, admin=admin)
        logger.info("Revoked certificates of %s", principal_id)
        return datetime.now(timezone.utc)

    async def get_identity(self, principal_id: str, admin: AdminCredential) -> dict[str, Any]:
        return await self._request(
            "GET", self._identity_path(principal_id), "get identity", admin=admin
        )

    async def reset_secret(self, principal_id: str, admin: AdminCredential) -> str:
        """Set a fresh enrollment secret through an identity modification.

        Fabric CA keeps a revoked identity revoked: the modification replaces
        the secret but not the revoked state, so the following enroll is
        refused (``ValidationError``). Re-enrolling a principal revoked on a
        Fabric CA needs a new enrollment id or an operator clearing the
        identity with ``fabric-ca-client identity remove``.
        """
        proposed = generate_secret()
        result = await self._request(
            "PUT",
            self._identity_path(principal_id),
            "reset secret",
            json_body={"secret": proposed, "caname": self.ca_name},
            admin=admin,
        )
        logger.info("Reset enrollment secret of %s", principal_id)
        return result.get("secret") or proposed

    async def health_check(self) -> dict[str, Any]:
        result = await self._request("GET", "/cainfo", "cainfo")
        return {"ca_name": result.get("CAName", ""), "version": result.get("Version", "")}

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _identity_path(self, principal_id: str) -> str:
        path = f"/identities/{quote(principal_id, safe='')}"
        if self.ca_name:
            path += "?" + urlencode({"ca": self.ca_name})
        return path

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        json_body: Optional[dict[str, Any]] = None,
        admin: Optional[AdminCredential] = None,
        basic_auth: Optional[tuple[str, str]] = None,
    ) -> dict[str, Any]:
        """Send one request and return the ``result`` member of the reply."""
        uri = f"{self.API_PREFIX}{path}"
        body = json.dumps(json_body).encode() if json_body is not None else b""
        headers = {"Content-Type": "application/json"}
        if admin is not None:
            headers["Authorization"] = create_auth_token(admin, method, uri, body)

        try:
            response = await self._client.request(
                method,
                f"{self.url}{uri}",
                content=body or None,
                headers=headers,
                auth=basic_auth,
                timeout=self.timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            raise UpstreamError(
                f"Fabric CA {operation} timed out after {self.timeout_seconds}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Fabric CA {operation} failed: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        if response.is_success and payload.get("success", True):
            return payload.get("result") or {}

        error = self._map_error(response, payload, operation, admin_call=admin is not None)
        logger.warning("Fabric CA %s failed: %s", operation, error)
        raise error

    def _map_error(
        self,
        response: httpx.Response,
        payload: dict[str, Any],
        operation: str,
        admin_call: bool,
    ) -> IdentityBridgeError:
        errors = payload.get("errors") or []
        codes = {e.get("code") for e in errors if isinstance(e, dict)}
        detail = "; ".join(
            f"[{e.get('code')}] {e.get('message')}" for e in errors if isinstance(e, dict)
        ) or response.text or response.reason_phrase
        message = f"Fabric CA {operation} failed ({response.status_code}): {detail}"
        status = response.status_code
        lowered = detail.lower()

        if self.ALREADY_REGISTERED_CODE in codes or "already registered" in lowered:
            return ConflictError(message, status=status)
        if status in (401, 403):
            if admin_call:
                return UpstreamAuthError(message, status=status)
            return ValidationError(message, status=status)
        if status == 404 or "not found" in lowered:
            return NotFoundError(message, status=status)
        if 400 <= status < 500:
            return ValidationError(message, status=status)
        return UpstreamError(message, status=status)
