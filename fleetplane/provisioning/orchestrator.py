"""Node lifecycle orchestration.

``ProvisioningOrchestrator.create`` provisions a batch of containers:

1. Resolve the compute provider (explicit, registered, or registered now).
2. Build the provider's node template from the request.
3. Create ``count`` nodes in one provider batch call. A failing batch call
   fills every slot with the same ProviderBatchFailure.
4. Name each node's container (base name when count is 1, otherwise the
   base name plus a 1-based suffix).
5. Run one InstallationTask per node on a semaphore-bounded pool.
6. Wait for all tasks or the deadline. At the deadline every unfinished
   task is cancelled (which kills its remote session) and its slot is
   filled with ProvisioningTimeout, keeping the slot's node handle so the
   node can be destroyed; finished slots keep their outcome.

``create`` always returns exactly ``count`` results in slot order and never
raises for node- or request-level failures. ``start``, ``stop`` and
``destroy`` act on one created container and record failures on the
result's ``operation_failure`` instead of raising.

Usage:
    orchestrator = ProvisioningOrchestrator(provider_registry, deadline_seconds=900)
    results = await orchestrator.create(request)
    for result in results:
        if not result.success:
            print(result.container_name, result.failure)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

from fleetplane.config.settings import DEFAULT_PROVISIONING_DEADLINE_SECONDS
from fleetplane.errors import (
    ConfigurationError,
    NodeInstallFailure,
    ProviderBatchFailure,
    ProviderUnavailable,
    ProvisioningTimeout,
)
from fleetplane.metrics import NODES_PROVISIONED, PROVISIONING_DURATION
from fleetplane.providers.base import ComputeProvider, NodeHandle, NodeStatus
from fleetplane.providers.registry import ComputeProviderRegistry
from fleetplane.provisioning.installation import InstallationTask
from fleetplane.provisioning.models import (
    ContainerCreateResult,
    ProvisionRequest,
    ResultCollection,
)
from fleetplane.provisioning.scripts import (
    build_start_script,
    build_stop_script,
    classify_response,
    failure_from_exception,
)

__all__ = ["ProvisioningOrchestrator"]

logger = logging.getLogger(__name__)

OVERVIEW_FORMAT = "Creating {count} nodes on {context}. It may take a while ..."
NODE_CREATED_FORMAT = "Node {name} has been successfully created."
NODE_ERROR_FORMAT = "Error creating node {name}. Status: {status}."


def _outcome(result: ContainerCreateResult) -> str:
    failure = result.failure
    if failure is None:
        return "success"
    if isinstance(failure, ProvisioningTimeout):
        return "timeout"
    if isinstance(failure, ProviderBatchFailure):
        return "batch_failure"
    if isinstance(failure, NodeInstallFailure) or result.node is not None:
        return "install_failure"
    return "request_failure"


class ProvisioningOrchestrator:
    """Creates, starts, stops and destroys containers on compute providers."""

    def __init__(
        self,
        provider_registry: ComputeProviderRegistry,
        *,
        deadline_seconds: float = DEFAULT_PROVISIONING_DEADLINE_SECONDS,
        max_concurrent_installs: int = 10,
        cancel_grace_seconds: float = 5.0,
        run_options: dict[str, Any] | None = None,
    ):
        self._provider_registry = provider_registry
        self._deadline = deadline_seconds
        self._semaphore = asyncio.Semaphore(max_concurrent_installs)
        self._cancel_grace = cancel_grace_seconds
        self._run_options = run_options or {}

    @property
    def deadline_seconds(self) -> float:
        return self._deadline

    # =========================================================================
    # Create
    # =========================================================================

    async def create(
        self,
        request: ProvisionRequest,
        deadline_seconds: float | None = None,
    ) -> list[ContainerCreateResult]:
        """Provision ``request.count`` containers.

        Returns:
            Exactly ``request.count`` results, in slot order
        """
        results = ResultCollection(request)
        deadline = deadline_seconds if deadline_seconds is not None else self._deadline
        start = time.monotonic()

        try:
            await self._provision(request, results, deadline)
        except ProvisioningTimeout as e:
            filled = results.fill_remaining(e)
            logger.warning(f"[{request.name}] {e}; {filled} slot(s) marked as timed out")
            request.creation_state_listener.on_state_change(str(e))
        except Exception as e:
            filled = results.fill_remaining(e)
            logger.error(f"[{request.name}] Provisioning failed: {e} ({filled} slot(s) failed)")
            request.creation_state_listener.on_state_change(f"Provisioning failed: {e}")

        snapshot = results.snapshot()
        PROVISIONING_DURATION.observe(time.monotonic() - start)
        for result in snapshot:
            NODES_PROVISIONED.labels(outcome=_outcome(result)).inc()
        succeeded = sum(1 for r in snapshot if r.success)
        logger.info(f"[{request.name}] {succeeded}/{len(snapshot)} container(s) provisioned")
        return snapshot

    async def _provision(
        self,
        request: ProvisionRequest,
        results: ResultCollection,
        deadline: float,
    ) -> None:
        listener = request.creation_state_listener
        listener.on_state_change("Looking up for compute service.")
        provider = await self._resolve_provider(request)

        template = provider.build_template(request)
        count = max(request.count, 1)
        listener.on_state_change(OVERVIEW_FORMAT.format(count=count, context=provider.name))

        try:
            nodes = await provider.create_nodes_in_group(request.group, count, template)
        except Exception as e:
            if isinstance(e, ProviderBatchFailure):
                failure = e
            else:
                failure = ProviderBatchFailure(
                    f"Provider {provider.name} failed to create {count} node(s): {e}"
                )
                failure.__cause__ = e
            results.fill_remaining(failure)
            logger.error(f"[{request.name}] {failure}")
            listener.on_state_change(str(failure))
            return

        self._report_node_status(request, nodes)
        nodes = self._assign_slots(request, nodes, results)
        results.bind_nodes(nodes)

        tasks: dict[asyncio.Task, int] = {}
        for slot, node in enumerate(nodes):
            container_name = request.container_name(slot)
            task = InstallationTask(
                slot,
                container_name,
                node,
                request,
                provider,
                results,
                semaphore=self._semaphore,
                run_options=self._run_options,
            )
            tasks[asyncio.create_task(task.run(), name=f"install-{container_name}")] = slot

        if not tasks:
            return

        try:
            done, pending = await asyncio.wait(tasks, timeout=deadline)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise

        for task in done:
            if not task.cancelled() and task.exception() is not None:
                results.record_failure(tasks[task], task.exception(), node=nodes[tasks[task]])

        if pending:
            for task in pending:
                task.cancel()
            await asyncio.wait(pending, timeout=self._cancel_grace)
            raise ProvisioningTimeout(deadline, len(pending))

    async def _resolve_provider(self, request: ProvisionRequest) -> ComputeProvider:
        try:
            return await self._provider_registry.get_or_create(request)
        except (ConfigurationError, ProviderUnavailable):
            raise
        except Exception as e:
            raise ProviderUnavailable(f"Compute service could not be found or created: {e}") from e

    def _report_node_status(self, request: ProvisionRequest, nodes: list[NodeHandle]) -> None:
        listener = request.creation_state_listener
        for node in nodes:
            if node.status is NodeStatus.RUNNING:
                listener.on_state_change(NODE_CREATED_FORMAT.format(name=node.name or node.node_id))
            else:
                listener.on_state_change(
                    NODE_ERROR_FORMAT.format(name=node.name or node.node_id, status=node.status.value)
                )

    def _assign_slots(
        self,
        request: ProvisionRequest,
        nodes: list[NodeHandle],
        results: ResultCollection,
    ) -> list[NodeHandle]:
        """Keep at most ``count`` nodes; fail the slots the provider left empty."""
        if len(nodes) > request.count:
            extra = [n.node_id for n in nodes[request.count:]]
            logger.warning(f"[{request.name}] Provider returned more nodes than requested; ignoring {extra}")
            nodes = nodes[: request.count]
        if len(nodes) < request.count:
            missing = request.count - len(nodes)
            failure = ProviderBatchFailure(
                f"Provider returned {len(nodes)} of {request.count} requested node(s)"
            )
            logger.error(f"[{request.name}] {failure}")
            for slot in range(len(nodes), request.count):
                results.record_failure(slot, failure)
            request.creation_state_listener.on_state_change(f"{missing} node(s) were not created.")
        return nodes

    # =========================================================================
    # Start / stop / destroy
    # =========================================================================

    async def start(
        self,
        result: ContainerCreateResult,
        provider: ComputeProvider | None = None,
    ) -> ContainerCreateResult:
        """Run the start script on a created container's node."""
        return await self._run_script("start", result, provider, build_start_script)

    async def stop(
        self,
        result: ContainerCreateResult,
        provider: ComputeProvider | None = None,
    ) -> ContainerCreateResult:
        """Run the stop script on a created container's node."""
        return await self._run_script("stop", result, provider, build_stop_script)

    async def destroy(
        self,
        result: ContainerCreateResult,
        provider: ComputeProvider | None = None,
    ) -> ContainerCreateResult:
        """Destroy a created container's node."""
        result.last_operation = "destroy"
        result.operation_failure = None
        try:
            node = self._require_node(result)
            provider = provider or await self._resolve_provider(result.request)
            await provider.destroy_node(node.node_id)
            node.status = NodeStatus.TERMINATED
            logger.info(f"[{result.container_name}] Destroyed node {node.node_id}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            result.operation_failure = e
            logger.error(f"[{result.container_name}] Failed to destroy node: {e}")
        return result

    async def _run_script(
        self,
        operation: str,
        result: ContainerCreateResult,
        provider: ComputeProvider | None,
        build_script: Callable[[str, ProvisionRequest], str],
    ) -> ContainerCreateResult:
        result.last_operation = operation
        result.operation_failure = None
        node_id = result.node_id
        try:
            node = self._require_node(result)
            provider = provider or await self._resolve_provider(result.request)
            script = build_script(result.container_name, result.request)
            response = await provider.run_script_on_node(node.node_id, script, self._run_options)
            result.operation_failure = classify_response(response, node.node_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            result.operation_failure = failure_from_exception(e, node_id)

        if result.operation_failure is not None:
            logger.warning(f"[{result.container_name}] {operation} failed: {result.operation_failure}")
        else:
            logger.info(f"[{result.container_name}] {operation} succeeded")
        return result

    @staticmethod
    def _require_node(result: ContainerCreateResult) -> NodeHandle:
        if result.node is None:
            raise NodeInstallFailure(f"Container {result.container_name} has no node")
        return result.node
