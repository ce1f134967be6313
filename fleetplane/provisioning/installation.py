"""Per-node installation work.

One InstallationTask runs the start script on one freshly created node and
records exactly one ContainerCreateResult into the batch's ResultCollection.
Failures of the remote call are captured into the result, never raised.
Cancellation (the batch deadline) propagates so the orchestrator can fill
the slot with a timeout instead.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from fleetplane.providers.base import ComputeProvider, NodeHandle
from fleetplane.provisioning.models import (
    ContainerCreateResult,
    ProvisionRequest,
    ResultCollection,
)
from fleetplane.provisioning.scripts import (
    build_start_script,
    classify_response,
    failure_from_exception,
)

__all__ = ["InstallationTask"]

logger = logging.getLogger(__name__)


class InstallationTask:
    """Installs and starts the container of one node slot."""

    def __init__(
        self,
        slot: int,
        container_name: str,
        node: NodeHandle,
        request: ProvisionRequest,
        provider: ComputeProvider,
        results: ResultCollection,
        *,
        semaphore: asyncio.Semaphore | None = None,
        run_options: dict[str, Any] | None = None,
    ):
        self.slot = slot
        self.container_name = container_name
        self.node = node
        self.request = request
        self.provider = provider
        self.results = results
        self._semaphore = semaphore
        self._run_options = run_options or {}

    async def run(self) -> ContainerCreateResult:
        if self._semaphore is None:
            return await self._install()
        async with self._semaphore:
            return await self._install()

    async def _install(self) -> ContainerCreateResult:
        listener = self.request.creation_state_listener
        start = time.monotonic()
        listener.on_state_change(f"Installing container {self.container_name} on node {self.node.node_id}.")

        try:
            script = build_start_script(self.container_name, self.request)
            response = await self.provider.run_script_on_node(self.node.node_id, script, self._run_options)
            failure = classify_response(response, self.node.node_id)
        except asyncio.CancelledError:
            logger.info(f"[{self.container_name}] Installation cancelled")
            raise
        except Exception as e:
            failure = failure_from_exception(e, self.node.node_id)

        result = ContainerCreateResult(
            slot=self.slot,
            container_name=self.container_name,
            request=self.request,
            node=self.node,
            failure=failure,
        )
        if not self.results.record(result):
            logger.warning(f"[{self.container_name}] Slot {self.slot} already filled; result discarded")
            return result

        elapsed = time.monotonic() - start
        if failure is None:
            listener.on_state_change(f"Container {self.container_name} installed in {elapsed:.1f}s.")
        else:
            logger.warning(f"[{self.container_name}] Installation failed: {failure}")
            listener.on_state_change(f"Failed to install container {self.container_name}: {failure}")
        return result
