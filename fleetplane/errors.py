"""Error taxonomy for the fleet control plane.

Request-level errors (configuration, provider unavailable, batch failure)
short-circuit a whole provisioning request. Node-level errors (install
failure, timeout) are captured into the per-node result objects and never
escape ``ProvisioningOrchestrator.create``.

Usage:
    from fleetplane.errors import NETWORK_ERRORS, ConfigurationError

    try:
        await provider.create_nodes_in_group(group, count, template)
    except NETWORK_ERRORS as e:
        raise ProviderBatchFailure(f"Provider unreachable: {e}") from e
"""

from __future__ import annotations

import asyncio

__all__ = [
    "FleetError",
    "ConfigurationError",
    "ProviderUnavailable",
    "ProvisioningTimeout",
    "NodeInstallFailure",
    "ProviderBatchFailure",
    "ProvisioningError",
    "CoordinationError",
    "CoordinationConnectionError",
    "NodeExistsError",
    "NoNodeError",
    "PlaceholderResolutionError",
    "NETWORK_ERRORS",
]


class FleetError(Exception):
    """Base class for all fleet control plane errors."""


# =============================================================================
# Provisioning
# =============================================================================

class ConfigurationError(FleetError):
    """Missing or invalid provider configuration (identity, credential, name)."""


class ProviderUnavailable(FleetError):
    """A compute provider could not be resolved or created."""


class ProviderBatchFailure(FleetError):
    """The provider rejected the batch node creation call."""


class ProvisioningTimeout(FleetError):
    """The provisioning deadline elapsed before every node finished."""

    def __init__(self, deadline_seconds: float, pending: int):
        self.deadline_seconds = deadline_seconds
        self.pending = pending
        super().__init__(
            f"Error waiting for container installation: {pending} node(s) "
            f"still running after {deadline_seconds}s"
        )


class NodeInstallFailure(FleetError):
    """A remote install/start/stop script failed on one node."""

    def __init__(self, message: str, node_id: str | None = None, output: str | None = None):
        self.node_id = node_id
        self.output = output
        super().__init__(message)


class ProvisioningError(FleetError):
    """Raised by callers that demand every slot of a request succeeded."""


# =============================================================================
# Coordination service
# =============================================================================

class CoordinationError(FleetError):
    """Base class for coordination service errors."""


class CoordinationConnectionError(CoordinationError):
    """The coordination client is not connected."""


class NodeExistsError(CoordinationError):
    """A record already exists at the given path."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Node already exists: {path}")


class NoNodeError(CoordinationError):
    """No record exists at the given path."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"No node at path: {path}")


class PlaceholderResolutionError(CoordinationError):
    """An endpoint template placeholder could not be resolved."""


# =============================================================================
# Exception Type Tuples
# =============================================================================

# Use for: HTTP requests to provider APIs, SSH transport failures
NETWORK_ERRORS: tuple[type[BaseException], ...] = (
    ConnectionError,
    TimeoutError,
    OSError,
    asyncio.TimeoutError,
)
