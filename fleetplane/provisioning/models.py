"""Provisioning request and result types."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from fleetplane.providers.base import ComputeProvider, NodeHandle

__all__ = [
    "ContainerCreateResult",
    "CreationStateListener",
    "LoggingCreationStateListener",
    "ProvisionRequest",
    "ResultCollection",
]

logger = logging.getLogger(__name__)


@runtime_checkable
class CreationStateListener(Protocol):
    """Sink for human-readable provisioning progress messages."""

    def on_state_change(self, message: str) -> None:
        ...


class LoggingCreationStateListener:
    """Logs progress messages at INFO."""

    def __init__(self, name: str = "provisioning"):
        self._name = name

    def on_state_change(self, message: str) -> None:
        logger.info(f"[{self._name}] {message}")


@dataclass(frozen=True)
class ProvisionRequest:
    """Request to provision ``count`` containers in one group.

    Attributes:
        name: Base container name
        count: Number of nodes to create (at least 1)
        group: Provider group tag
        context_name: Provider context to use or register
        provider_name: Provider kind for registration (e.g. "lambda")
        api_name: API kind for API-style registration
        endpoint: API endpoint for API-style registration
        identity: Provider identity
        credential: Provider credential
        service_options: Extra provider context settings
        template_parameters: Provider-specific node template parameters
        environment: Variables exported by the start script
        install_script: Commands the start script runs on each node
        stop_script: Commands the stop script runs on each node
        creation_state_listener: Receives progress messages
        provider: Explicit provider, bypassing the registry
    """

    name: str
    count: int = 1
    group: str = "fleet"
    context_name: str | None = None
    provider_name: str | None = None
    api_name: str | None = None
    endpoint: str | None = None
    identity: str | None = None
    credential: str | None = None
    service_options: dict[str, Any] = field(default_factory=dict)
    template_parameters: dict[str, Any] = field(default_factory=dict)
    environment: dict[str, str] = field(default_factory=dict)
    install_script: str = ""
    stop_script: str = ""
    creation_state_listener: CreationStateListener = field(
        default_factory=LoggingCreationStateListener, compare=False
    )
    provider: ComputeProvider | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if self.count < 1:
            raise ValueError(f"count must be at least 1, got {self.count}")
        if not self.name:
            raise ValueError("name is required")

    def with_provider(self, provider: ComputeProvider) -> ProvisionRequest:
        return replace(self, provider=provider)

    def container_name(self, index: int) -> str:
        """Display name of the node in 0-based slot ``index``."""
        return self.name if self.count <= 1 else f"{self.name}{index + 1}"


@dataclass
class ContainerCreateResult:
    """Outcome of one node slot.

    Attributes:
        slot: 0-based slot index
        container_name: Display name of the container
        request: Request the slot belongs to
        node: Provider node handle (None if creation failed before a node existed)
        failure: Cause of a failed creation
        operation_failure: Cause of the last failed start/stop/destroy
        last_operation: Name of the last start/stop/destroy attempted
    """

    slot: int
    container_name: str
    request: ProvisionRequest
    node: NodeHandle | None = None
    failure: BaseException | None = None
    operation_failure: BaseException | None = None
    last_operation: str | None = None

    @property
    def success(self) -> bool:
        return self.failure is None and self.node is not None

    @property
    def node_id(self) -> str | None:
        return self.node.node_id if self.node is not None else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "slot": self.slot,
            "container_name": self.container_name,
            "node_id": self.node_id,
            "success": self.success,
            "failure": str(self.failure) if self.failure else None,
            "failure_type": type(self.failure).__name__ if self.failure else None,
        }


class ResultCollection:
    """Fixed-size, write-once result slots shared by one batch's tasks."""

    def __init__(self, request: ProvisionRequest):
        self._request = request
        self._slots: list[ContainerCreateResult | None] = [None] * request.count
        self._nodes: list[NodeHandle | None] = [None] * request.count
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._slots)

    def bind_nodes(self, nodes: list[NodeHandle]) -> None:
        """Remember the node created for each slot, so failure fills keep it."""
        with self._lock:
            for slot, node in enumerate(nodes[: len(self._nodes)]):
                self._nodes[slot] = node

    def record(self, result: ContainerCreateResult) -> bool:
        """Store ``result`` in its slot unless the slot is already filled.

        Returns:
            True if the result was stored
        """
        with self._lock:
            if self._slots[result.slot] is not None:
                return False
            self._slots[result.slot] = result
            return True

    def record_failure(
        self,
        slot: int,
        cause: BaseException,
        node: NodeHandle | None = None,
    ) -> bool:
        return self.record(
            ContainerCreateResult(
                slot=slot,
                container_name=self._request.container_name(slot),
                request=self._request,
                node=node if node is not None else self._nodes[slot],
                failure=cause,
            )
        )

    def fill_remaining(self, cause: BaseException) -> int:
        """Fill every empty slot with ``cause``. Returns the number filled.

        Slots whose node was created keep its handle, so the node can still
        be destroyed.
        """
        with self._lock:
            empty = [i for i, r in enumerate(self._slots) if r is None]
            for i in empty:
                self._slots[i] = ContainerCreateResult(
                    slot=i,
                    container_name=self._request.container_name(i),
                    request=self._request,
                    node=self._nodes[i],
                    failure=cause,
                )
        return len(empty)

    def is_filled(self, slot: int) -> bool:
        with self._lock:
            return self._slots[slot] is not None

    def completed_count(self) -> int:
        with self._lock:
            return sum(1 for r in self._slots if r is not None)

    def snapshot(self) -> list[ContainerCreateResult]:
        """Filled results in slot order."""
        with self._lock:
            return [r for r in self._slots if r is not None]
