# Copyright (c) idbridge Contributors. All rights reserved.
# Licensed under the MIT License.
"""Centralized exception hierarchy for idbridge.

All idbridge exceptions inherit from IdentityBridgeError. Every class carries
a stable ``kind`` string and a suggested HTTP status so that an outer HTTP
layer can map errors without inspecting messages or transport exceptions.
"""

from typing import Any


class IdentityBridgeError(Exception):
    """Base exception for all idbridge errors."""

    kind = "internal_error"
    http_status = 500

    def __init__(self, message: str = "", **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error into a transport-neutral payload."""
        payload: dict[str, Any] = {"error": self.kind, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class NotFoundError(IdentityBridgeError):
    """No identity record exists for the principal."""

    kind = "not_found"
    http_status = 404


class ConflictError(IdentityBridgeError):
    """The principal is already registered or enrolled."""

    kind = "conflict"
    http_status = 409


class ValidationError(IdentityBridgeError):
    """Bad enrollment secret, malformed attributes or an invalid record."""

    kind = "validation_error"
    http_status = 400


class UpstreamError(IdentityBridgeError):
    """The membership authority or identity provider is unreachable or failed."""

    kind = "upstream_error"
    http_status = 502


class UpstreamAuthError(UpstreamError):
    """The admin credential was rejected, expired or could not be obtained."""

    kind = "upstream_auth_error"
    http_status = 502


class ManualInterventionRequired(IdentityBridgeError):
    """Registered upstream but the enrollment secret is unrecoverable."""

    kind = "manual_intervention_required"
    http_status = 409


class ExpiredCredentialError(IdentityBridgeError):
    """The stored certificate is outside its validity window."""

    kind = "expired_credential"
    http_status = 401


class StorageError(IdentityBridgeError):
    """Errors related to storage backend operations."""

    kind = "storage_error"


class ConfigurationError(IdentityBridgeError):
    """Invalid or incomplete configuration."""

    kind = "configuration_error"


__all__ = [
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
]
