"""Helpers for waiting on provisioned containers.

Usage:
    results = await orchestrator.create(request)
    assert_provisioning_success(results)
    await wait_for_node_status(provider, results, NodeStatus.RUNNING, timeout_seconds=300)
    await wait_for_containers_registered(client, [r.container_name for r in results])
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable

from fleetplane.coordination.paths import container_alive_path
from fleetplane.coordination.service import CoordinationClient
from fleetplane.errors import CoordinationError, ProvisioningError
from fleetplane.providers.base import ComputeProvider, NodeStatus
from fleetplane.provisioning.models import ContainerCreateResult

__all__ = [
    "assert_provisioning_success",
    "wait_for_containers_registered",
    "wait_for_node_status",
]

logger = logging.getLogger(__name__)


def assert_provisioning_success(results: Iterable[ContainerCreateResult]) -> None:
    """Raise ProvisioningError naming every failed slot."""
    failed = [r for r in results if not r.success]
    if failed:
        details = "; ".join(f"{r.container_name}: {r.failure}" for r in failed)
        raise ProvisioningError(f"{len(failed)} container(s) failed to provision: {details}")


async def wait_for_node_status(
    provider: ComputeProvider,
    results: Iterable[ContainerCreateResult],
    status: NodeStatus = NodeStatus.RUNNING,
    timeout_seconds: float = 300.0,
    poll_interval_seconds: float = 5.0,
) -> dict[str, NodeStatus]:
    """Poll every successfully created node until it reaches ``status``.

    Nodes are polled concurrently. Polling of a node stops once it reaches
    ``status`` or the timeout passes.

    Returns:
        Last observed status per container name

    Raises:
        ProvisioningError: If any node did not reach ``status`` in time
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_seconds

    async def poll(result: ContainerCreateResult) -> NodeStatus:
        while True:
            current = await provider.get_node_status(result.node_id)
            if current is status or loop.time() >= deadline:
                return current
            await asyncio.sleep(poll_interval_seconds)

    targets = [r for r in results if r.success]
    statuses = await asyncio.gather(*(poll(r) for r in targets))
    observed = {r.container_name: s for r, s in zip(targets, statuses)}

    lagging = {name: s.value for name, s in observed.items() if s is not status}
    if lagging:
        raise ProvisioningError(
            f"Containers did not reach {status.value} within {timeout_seconds}s: {lagging}"
        )
    return observed


async def wait_for_containers_registered(
    client: CoordinationClient,
    container_names: Iterable[str],
    timeout_seconds: float = 300.0,
    poll_interval_seconds: float = 1.0,
) -> None:
    """Wait until each container has registered itself as alive.

    Raises:
        ProvisioningError: If some containers are still missing at the timeout
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_seconds
    missing = list(container_names)
    logger.info(f"Waiting for containers {missing} to register")

    while True:
        still_missing = []
        for name in missing:
            try:
                if not await client.exists(container_alive_path(name)):
                    still_missing.append(name)
            except CoordinationError as e:
                logger.debug(f"Could not check registration of {name}: {e}")
                still_missing.append(name)
        missing = still_missing
        if not missing:
            return
        if loop.time() >= deadline:
            raise ProvisioningError(f"Containers not registered after {timeout_seconds}s: {missing}")
        await asyncio.sleep(poll_interval_seconds)
