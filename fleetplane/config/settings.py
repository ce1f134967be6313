"""Fleet control plane configuration.

Configuration is a dataclass with type-safe environment variable getters
(``FLEETPLANE_*``) and an optional YAML file. Environment variables always
win over file values.

Usage:
    from fleetplane.config import load_config

    config = load_config()                  # FLEETPLANE_CONFIG or defaults
    config = load_config("fleet.yaml")      # explicit file

Example fleet.yaml:
    node_name: root
    registry_db_path: /var/lib/fleetplane/registry.db
    provisioning_deadline_seconds: 900
    max_concurrent_installs: 10

Environment Variables:
    FLEETPLANE_CONFIG: Path to YAML config file
    FLEETPLANE_NODE_NAME: Local container name
    FLEETPLANE_REGISTRY_DB: Configuration registry SQLite path
    FLEETPLANE_PROVISIONING_DEADLINE: Batch deadline in seconds
    FLEETPLANE_MAX_CONCURRENT_INSTALLS: Worker pool size
    FLEETPLANE_LOG_LEVEL: Logging level name
"""

from __future__ import annotations

import logging
import os
import socket
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, ClassVar

import yaml

from fleetplane.errors import ConfigurationError

__all__ = [
    "FleetConfig",
    "load_config",
    "DEFAULT_PROVISIONING_DEADLINE_SECONDS",
]

logger = logging.getLogger(__name__)

# Upper bound on waiting for one provisioning batch (15 minutes)
DEFAULT_PROVISIONING_DEADLINE_SECONDS = 15 * 60.0


@dataclass
class FleetConfig:
    """Runtime settings for the control plane.

    Attributes:
        node_name: Name of the local container (used in endpoint templates)
        registry_db_path: SQLite path of the configuration registry
        provisioning_deadline_seconds: Max wait for one provisioning batch
        max_concurrent_installs: Size of the installation worker pool
        provider_wait_timeout_seconds: Max wait for a newly registered provider
        provider_poll_interval_seconds: Poll interval while waiting for a provider
        cancel_grace_seconds: Wait for cancelled installs to settle after a timeout
        ssh_user: Login user for remote script execution
        ssh_connect_timeout_seconds: SSH connect timeout
        ssh_key_path: Optional private key for SSH
        log_level: Logging level name
    """

    _env_prefix: ClassVar[str] = "FLEETPLANE"

    node_name: str = field(default_factory=socket.gethostname)
    registry_db_path: str = ":memory:"
    provisioning_deadline_seconds: float = DEFAULT_PROVISIONING_DEADLINE_SECONDS
    max_concurrent_installs: int = 10
    provider_wait_timeout_seconds: float = 60.0
    provider_poll_interval_seconds: float = 0.5
    cancel_grace_seconds: float = 5.0
    ssh_user: str = "ubuntu"
    ssh_connect_timeout_seconds: float = 30.0
    ssh_key_path: str | None = None
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.provisioning_deadline_seconds <= 0:
            raise ConfigurationError("provisioning_deadline_seconds must be positive")
        if self.max_concurrent_installs < 1:
            raise ConfigurationError("max_concurrent_installs must be at least 1")

    # -------------------------------------------------------------------------
    # Environment Variable Helpers
    # -------------------------------------------------------------------------

    @classmethod
    def _make_env_key(cls, suffix: str) -> str:
        return f"{cls._env_prefix}_{suffix}"

    @classmethod
    def _get_env_int(cls, suffix: str, default: int) -> int:
        value = os.environ.get(cls._make_env_key(suffix))
        if value is None:
            return default
        try:
            return int(value)
        except (ValueError, TypeError):
            logger.warning(f"Ignoring invalid integer for {cls._make_env_key(suffix)}: {value!r}")
            return default

    @classmethod
    def _get_env_float(cls, suffix: str, default: float) -> float:
        value = os.environ.get(cls._make_env_key(suffix))
        if value is None:
            return default
        try:
            return float(value)
        except (ValueError, TypeError):
            logger.warning(f"Ignoring invalid float for {cls._make_env_key(suffix)}: {value!r}")
            return default

    @classmethod
    def _get_env_str(cls, suffix: str, default: str | None) -> str | None:
        value = os.environ.get(cls._make_env_key(suffix))
        if value is None:
            return default
        return value.strip()

    # -------------------------------------------------------------------------
    # Loaders
    # -------------------------------------------------------------------------

    @classmethod
    def from_env(cls, base: FleetConfig | None = None) -> FleetConfig:
        """Build a config from environment variables.

        Args:
            base: Values to fall back on for unset variables (defaults if None)

        Returns:
            New FleetConfig
        """
        base = base or cls()
        return cls(
            node_name=cls._get_env_str("NODE_NAME", base.node_name),
            registry_db_path=cls._get_env_str("REGISTRY_DB", base.registry_db_path),
            provisioning_deadline_seconds=cls._get_env_float(
                "PROVISIONING_DEADLINE", base.provisioning_deadline_seconds
            ),
            max_concurrent_installs=cls._get_env_int(
                "MAX_CONCURRENT_INSTALLS", base.max_concurrent_installs
            ),
            provider_wait_timeout_seconds=cls._get_env_float(
                "PROVIDER_WAIT_TIMEOUT", base.provider_wait_timeout_seconds
            ),
            provider_poll_interval_seconds=cls._get_env_float(
                "PROVIDER_POLL_INTERVAL", base.provider_poll_interval_seconds
            ),
            cancel_grace_seconds=cls._get_env_float("CANCEL_GRACE", base.cancel_grace_seconds),
            ssh_user=cls._get_env_str("SSH_USER", base.ssh_user),
            ssh_connect_timeout_seconds=cls._get_env_float(
                "SSH_CONNECT_TIMEOUT", base.ssh_connect_timeout_seconds
            ),
            ssh_key_path=cls._get_env_str("SSH_KEY", base.ssh_key_path),
            log_level=cls._get_env_str("LOG_LEVEL", base.log_level),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FleetConfig:
        """Build a config from a mapping, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {', '.join(unknown)}")
        return cls(**data)

    @classmethod
    def from_yaml(cls, path: str | Path) -> FleetConfig:
        """Load a config file.

        Raises:
            ConfigurationError: If the file is missing or malformed
        """
        path = Path(path)
        try:
            with path.open() as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError as e:
            raise ConfigurationError(f"Config file not found: {path}") from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {path} must contain a mapping")
        return cls.from_dict(data)


def load_config(path: str | Path | None = None) -> FleetConfig:
    """Load configuration from YAML (optional) with environment overrides.

    Args:
        path: Config file path. Falls back to FLEETPLANE_CONFIG when None.

    Returns:
        Resolved FleetConfig
    """
    path = path or os.environ.get("FLEETPLANE_CONFIG")
    base = FleetConfig.from_yaml(path) if path else None
    config = FleetConfig.from_env(base)
    logger.debug(f"Loaded configuration (file={path}): {config}")
    return config
