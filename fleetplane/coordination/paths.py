"""Well-known record paths in the coordination service."""

from __future__ import annotations

REGISTRY_ROOT = "/fleet/registry"

# Per-container configuration (endpoint placeholders resolve under here)
CONTAINER_CONFIG_ROOT = f"{REGISTRY_ROOT}/containers/config"

# Containers that have registered themselves as alive
CONTAINER_ALIVE_ROOT = f"{REGISTRY_ROOT}/containers/alive"

# Cloud provider records published by the provider bridge
CLOUD_SERVICE_ROOT = f"{REGISTRY_ROOT}/cloud/config"

# Leader-elected service groups
GROUPS_ROOT = f"{REGISTRY_ROOT}/clusters"
GIT_GROUP = f"{GROUPS_ROOT}/git"


def container_config_path(container: str, key: str | None = None) -> str:
    path = f"{CONTAINER_CONFIG_ROOT}/{container}"
    return f"{path}/{key}" if key else path


def container_alive_path(container: str) -> str:
    return f"{CONTAINER_ALIVE_ROOT}/{container}"


def cloud_service_path(name: str) -> str:
    return f"{CLOUD_SERVICE_ROOT}/{name}"


def cloud_service_property_path(name: str, key: str) -> str:
    return f"{CLOUD_SERVICE_ROOT}/{name}/{key}"


def group_path(name: str) -> str:
    return f"{GROUPS_ROOT}/{name}"
