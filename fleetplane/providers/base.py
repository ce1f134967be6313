"""Compute provider contract.

A compute provider creates groups of nodes from a template, runs scripts on
them, reports their status and destroys them. Providers are shared across
provisioning requests for the same context, so implementations must be safe
to call concurrently from many InstallationTasks.

Usage:
    class MyProvider(ComputeProvider):
        async def create_nodes_in_group(self, group, count, template): ...
        async def run_script_on_node(self, node_id, script, options=None): ...
        async def destroy_node(self, node_id): ...
        async def get_node_status(self, node_id): ...
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from fleetplane.provisioning.models import ProvisionRequest

__all__ = [
    "ComputeProvider",
    "ExecResponse",
    "NodeHandle",
    "NodeStatus",
    "NodeTemplate",
    "ProviderSpec",
]


class NodeStatus(str, Enum):
    """Lifecycle state of a provisioned node."""

    PENDING = "pending"
    RUNNING = "running"
    ERROR = "error"
    TERMINATED = "terminated"
    UNKNOWN = "unknown"


@dataclass
class NodeHandle:
    """A node as reported by its provider.

    Attributes:
        node_id: Provider-assigned identifier
        name: Provider-side display name
        status: Last known lifecycle state
        public_addresses: Publicly reachable IP addresses
        private_addresses: Private IP addresses
        group: Group tag the node was created in
        raw: Provider payload the handle was built from
    """

    node_id: str
    name: str = ""
    status: NodeStatus = NodeStatus.PENDING
    public_addresses: list[str] = field(default_factory=list)
    private_addresses: list[str] = field(default_factory=list)
    group: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def address(self) -> str | None:
        """Preferred address for reaching the node."""
        if self.public_addresses:
            return self.public_addresses[0]
        if self.private_addresses:
            return self.private_addresses[0]
        return None


@dataclass(frozen=True)
class NodeTemplate:
    """Provider-specific description of the nodes to create."""

    image: str | None = None
    hardware: str | None = None
    location: str | None = None
    network: str | None = None
    options: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_parameters(cls, parameters: dict[str, Any]) -> NodeTemplate:
        params = dict(parameters)
        return cls(
            image=params.pop("image", None),
            hardware=params.pop("hardware", None),
            location=params.pop("location", None),
            network=params.pop("network", None),
            options=params,
        )


@dataclass(frozen=True)
class ExecResponse:
    """Outcome of running a script on a node."""

    output: str = ""
    error: str = ""
    exit_status: int = 0


@dataclass(frozen=True)
class ProviderSpec:
    """Connection settings of one provider context.

    Exactly one of ``provider_name`` and ``api_name`` is normally set; the
    API form also takes an ``endpoint``.
    """

    context_name: str
    provider_name: str | None = None
    api_name: str | None = None
    endpoint: str | None = None
    identity: str | None = None
    credential: str | None = None
    options: dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> str | None:
        """Name used to look the provider up in a factory table."""
        return self.provider_name or self.api_name


class ComputeProvider(ABC):
    """A live connection to one compute backend account."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Context name the provider is registered under."""

    @abstractmethod
    async def create_nodes_in_group(
        self,
        group: str,
        count: int,
        template: NodeTemplate,
    ) -> list[NodeHandle]:
        """Create ``count`` nodes tagged with ``group`` in one batch."""

    @abstractmethod
    async def run_script_on_node(
        self,
        node_id: str,
        script: str,
        options: dict[str, Any] | None = None,
    ) -> ExecResponse | None:
        """Run ``script`` on a node and return its response."""

    @abstractmethod
    async def destroy_node(self, node_id: str) -> None:
        ...

    @abstractmethod
    async def get_node_status(self, node_id: str) -> NodeStatus:
        ...

    def build_template(self, request: ProvisionRequest) -> NodeTemplate:
        """Build a node template from a request's template parameters."""
        return NodeTemplate.from_parameters(request.template_parameters)

    async def close(self) -> None:
        """Release provider resources (HTTP sessions and the like)."""
