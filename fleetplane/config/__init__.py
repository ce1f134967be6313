"""Configuration loading for the fleet control plane."""

from fleetplane.config.log_setup import configure_logging
from fleetplane.config.settings import (
    DEFAULT_PROVISIONING_DEADLINE_SECONDS,
    FleetConfig,
    load_config,
)

__all__ = [
    "DEFAULT_PROVISIONING_DEADLINE_SECONDS",
    "FleetConfig",
    "configure_logging",
    "load_config",
]
