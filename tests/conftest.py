"""Shared pytest fixtures for fleetplane tests.

Provides an in-process coordination ensemble, a private configuration
registry, a recording creation-state listener and a scriptable fake compute
provider.
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from fleetplane.coordination.config_registry import ConfigurationRegistry
from fleetplane.coordination.service import InMemoryCoordinationService
from fleetplane.providers.base import (
    ComputeProvider,
    ExecResponse,
    NodeHandle,
    NodeStatus,
    NodeTemplate,
)

# =============================================================================
# FAKES
# =============================================================================


class RecordingListener:
    """CreationStateListener that keeps every message."""

    def __init__(self):
        self.messages: list[str] = []

    def on_state_change(self, message: str) -> None:
        self.messages.append(message)


class FakeComputeProvider(ComputeProvider):
    """In-process compute provider with scriptable behaviour.

    Attributes:
        batch_error: Raised by create_nodes_in_group when set
        node_count: Number of nodes to return instead of the requested count
        node_status: Status of newly created nodes
        responses: Per node id: ExecResponse, None, or an exception to raise
        delays: Per node id: seconds run_script_on_node sleeps first
        statuses: Per node id: statuses returned by successive get_node_status calls
    """

    def __init__(self, name: str = "fake"):
        self._name = name
        self.batch_error: BaseException | None = None
        self.node_count: int | None = None
        self.node_status = NodeStatus.RUNNING
        self.responses: dict[str, Any] = {}
        self.delays: dict[str, float] = {}
        self.statuses: dict[str, list[NodeStatus]] = {}
        self.destroy_error: BaseException | None = None

        self.batches: list[tuple[str, int, NodeTemplate]] = []
        self.scripts: list[tuple[str, str]] = []
        self.cancelled: list[str] = []
        self.destroyed: list[str] = []
        self.closed = False
        self.active = 0
        self.max_active = 0
        self._counter = 0

    @property
    def name(self) -> str:
        return self._name

    async def create_nodes_in_group(self, group, count, template):
        self.batches.append((group, count, template))
        if self.batch_error is not None:
            raise self.batch_error
        nodes = []
        for _ in range(self.node_count if self.node_count is not None else count):
            self._counter += 1
            node_id = f"{self._name}-node-{self._counter}"
            nodes.append(
                NodeHandle(
                    node_id=node_id,
                    name=node_id,
                    status=self.node_status,
                    public_addresses=[f"10.0.0.{self._counter}"],
                    group=group,
                )
            )
        return nodes

    async def run_script_on_node(self, node_id, script, options=None):
        self.scripts.append((node_id, script))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            delay = self.delays.get(node_id, 0.0)
            if delay:
                await asyncio.sleep(delay)
        except asyncio.CancelledError:
            self.cancelled.append(node_id)
            raise
        finally:
            self.active -= 1

        response = self.responses.get(node_id, ExecResponse(output="installed\n"))
        if isinstance(response, BaseException):
            raise response
        return response

    async def destroy_node(self, node_id):
        if self.destroy_error is not None:
            raise self.destroy_error
        self.destroyed.append(node_id)

    async def get_node_status(self, node_id):
        sequence = self.statuses.get(node_id)
        if not sequence:
            return NodeStatus.RUNNING
        return sequence.pop(0) if len(sequence) > 1 else sequence[0]

    async def close(self):
        self.closed = True


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def ensemble():
    """Fresh in-process coordination ensemble."""
    return InMemoryCoordinationService()


@pytest.fixture
def session(ensemble):
    """Connected session on the ensemble."""
    return ensemble.connect()


@pytest.fixture
def config_registry():
    """Private in-memory configuration registry."""
    registry = ConfigurationRegistry()
    yield registry
    registry.close()


@pytest.fixture
def listener():
    return RecordingListener()


@pytest.fixture
def fake_provider():
    return FakeComputeProvider()


@pytest.fixture
def fake_provider_class():
    """The FakeComputeProvider class, for use as a provider factory."""
    return FakeComputeProvider
