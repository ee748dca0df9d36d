"""
Bridge Configuration

pydantic settings for the bridge, loaded from a YAML file and overridden by
environment variables.
"""

import logging
import os
from pathlib import Path
from typing import Any, Literal, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, model_validator

from idbridge.exceptions import ConfigurationError
from idbridge.storage import StorageConfig

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class CAConfig(BaseModel):
    """Membership authority connection settings."""

    backend: Literal["fabric", "local"] = "local"
    url: Optional[str] = None
    ca_name: str = ""
    admin_user: str = "admin"
    admin_password: str = Field(default="adminpw", repr=False)
    tls_cert_path: Optional[str] = None
    membership_id: str = "Org1"
    timeout_seconds: float = Field(default=10.0, gt=0)

    @model_validator(mode="after")
    def check_url(self) -> "CAConfig":
        if self.backend == "fabric" and not self.url:
            raise ValueError("ca.url is required for the fabric backend")
        return self


class IdPConfig(BaseModel):
    """OIDC identity provider settings.

    When ``realm_url`` is set, the admin credential comes from the IdP's
    token endpoint instead of a CA admin enrollment.
    """

    realm_url: Optional[str] = None
    client_id: str = "admin-cli"
    client_secret: Optional[str] = Field(default=None, repr=False)
    username: Optional[str] = None
    password: Optional[str] = Field(default=None, repr=False)
    grant_type: Literal["password", "client_credentials"] = "password"

    @property
    def token_url(self) -> Optional[str]:
        if not self.realm_url:
            return None
        return f"{self.realm_url.rstrip('/')}/protocol/openid-connect/token"


class EnrollmentConfig(BaseModel):
    """Enrollment orchestration policy."""

    reenroll_policy: Literal["idempotent", "conflict"] = "idempotent"
    recover_registered: bool = False
    max_enroll_attempts: int = Field(default=3, ge=1, le=10)
    backoff_base_seconds: float = Field(default=0.5, ge=0)
    backoff_max_seconds: float = Field(default=5.0, ge=0)
    enroll_timeout_seconds: float = Field(default=30.0, gt=0)
    admin_safety_margin_seconds: float = Field(default=60.0, ge=0)
    admin_timeout_seconds: float = Field(default=10.0, gt=0)


class BridgeConfig(BaseModel):
    """Top-level bridge configuration."""

    ca: CAConfig = Field(default_factory=CAConfig)
    idp: IdPConfig = Field(default_factory=IdPConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    enrollment: EnrollmentConfig = Field(default_factory=EnrollmentConfig)
    log_level: str = "INFO"


# Environment variable -> (section, field)
ENV_OVERRIDES: dict[str, tuple[Optional[str], str]] = {
    "FABRIC_CA_URL": ("ca", "url"),
    "FABRIC_CA_NAME": ("ca", "ca_name"),
    "FABRIC_CA_ADMIN_USER": ("ca", "admin_user"),
    "FABRIC_CA_ADMIN_PASSWORD": ("ca", "admin_password"),
    "FABRIC_CA_TLS_CERT_PATH": ("ca", "tls_cert_path"),
    "FABRIC_MSP_ID": ("ca", "membership_id"),
    "KEYCLOAK_REALM_URL": ("idp", "realm_url"),
    "KEYCLOAK_CLIENT_ID": ("idp", "client_id"),
    "KEYCLOAK_CLIENT_SECRET": ("idp", "client_secret"),
    "IDBRIDGE_STORAGE_BACKEND": ("storage", "backend"),
    "IDBRIDGE_STORAGE_URL": ("storage", "url"),
    "LOG_LEVEL": (None, "log_level"),
}


def _apply_env(data: dict[str, Any], environ: Mapping[str, str]) -> dict[str, Any]:
    for name, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(name)
        if not value:
            continue
        if section is None:
            data[key] = value
        else:
            data.setdefault(section, {})[key] = value
    # A CA URL in the environment means a real Fabric CA
    if environ.get("FABRIC_CA_URL") and "backend" not in data.get("ca", {}):
        data["ca"]["backend"] = "fabric"
    return data


def load_config(
    path: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> BridgeConfig:
    """Load configuration from YAML, then apply environment overrides.

    Args:
        path: YAML file; when None only defaults and environment are used.
        environ: Environment mapping, ``os.environ`` by default.

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid.
    """
    environ = os.environ if environ is None else environ
    data: dict[str, Any] = {}
    if path is not None:
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path}")
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigurationError(f"Failed to load config: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file must contain a mapping: {path}")

    data = _apply_env(data, environ)
    try:
        config = BridgeConfig(**data)
    except PydanticValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc
    logger.debug("Loaded configuration (ca=%s, storage=%s)", config.ca.backend, config.storage.backend)
    return config


def configure_logging(level: str = "INFO") -> None:
    """Install a root handler at ``level`` for command line use."""
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        raise ConfigurationError(f"Unknown log level: {level}")
    logging.basicConfig(level=numeric, format=LOG_FORMAT, force=True)
