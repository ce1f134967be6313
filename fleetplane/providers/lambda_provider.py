"""Lambda Labs compute provider.

Creates nodes through the Lambda Labs cloud API, waits for them to boot,
runs scripts on them over SSH and terminates them.

Provider context mapping:
    credential: API key
    identity: Name of the SSH key registered with Lambda Labs
    endpoint: API base URL override
    options: ``region`` and ``instance_type`` defaults

API Documentation: https://cloud.lambdalabs.com/api/v1/docs
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import aiohttp

from fleetplane.errors import ConfigurationError, FleetError, NodeInstallFailure
from fleetplane.providers.base import (
    ComputeProvider,
    ExecResponse,
    NodeHandle,
    NodeStatus,
    NodeTemplate,
    ProviderSpec,
)
from fleetplane.providers.remote_exec import RemoteScriptRunner

__all__ = [
    "LambdaAPIError",
    "LambdaComputeProvider",
    "LambdaConfig",
]

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://cloud.lambdalabs.com/api/v1"

LAMBDA_STATUSES = {
    "booting": NodeStatus.PENDING,
    "active": NodeStatus.RUNNING,
    "unhealthy": NodeStatus.ERROR,
    "terminating": NodeStatus.TERMINATED,
    "terminated": NodeStatus.TERMINATED,
}


class LambdaAPIError(FleetError):
    """The Lambda Labs API rejected a request or could not be reached."""

    def __init__(self, message: str, status: int | None = None):
        self.status = status
        super().__init__(message)


@dataclass
class LambdaConfig:
    """Configuration for one Lambda Labs account."""

    api_key: str
    ssh_key_name: str | None = None
    api_base: str = DEFAULT_API_BASE
    region: str | None = None
    instance_type: str = "gpu_1x_a10"
    timeout_seconds: float = 30.0
    boot_timeout_seconds: float = 600.0
    boot_poll_interval_seconds: float = 10.0


class LambdaComputeProvider(ComputeProvider):
    """ComputeProvider backed by the Lambda Labs cloud API.

    Example:
        provider = LambdaComputeProvider("lambda-us", LambdaConfig(api_key=key))
        nodes = await provider.create_nodes_in_group("workers", 2, NodeTemplate())
    """

    def __init__(
        self,
        context_name: str,
        config: LambdaConfig,
        runner: RemoteScriptRunner | None = None,
    ):
        self._context_name = context_name
        self.config = config
        self._runner = runner or RemoteScriptRunner()
        self._session: aiohttp.ClientSession | None = None
        self._nodes: dict[str, NodeHandle] = {}

    @classmethod
    def from_spec(cls, spec: ProviderSpec, runner: RemoteScriptRunner | None = None) -> LambdaComputeProvider:
        """Build a provider from registered context settings."""
        if not spec.credential:
            raise ConfigurationError(f"Lambda provider {spec.context_name} needs an API key credential")
        options = spec.options
        config = LambdaConfig(
            api_key=spec.credential,
            ssh_key_name=spec.identity,
            api_base=spec.endpoint or DEFAULT_API_BASE,
            region=options.get("region"),
            instance_type=options.get("instance_type", "gpu_1x_a10"),
        )
        return cls(spec.context_name, config, runner)

    @property
    def name(self) -> str:
        return self._context_name

    # =========================================================================
    # HTTP
    # =========================================================================

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def _api_request(
        self,
        method: str,
        endpoint: str,
        json: dict | None = None,
    ) -> dict[str, Any]:
        """Make an authenticated API request."""
        url = f"{self.config.api_base}{endpoint}"
        headers = {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }
        session = await self._get_session()
        try:
            async with session.request(method, url, headers=headers, json=json) as resp:
                data = await resp.json(content_type=None) or {}
                if resp.status >= 400:
                    error = data.get("error", {})
                    message = error.get("message", str(data)) if isinstance(error, dict) else str(error)
                    raise LambdaAPIError(f"Lambda API error ({resp.status}): {message}", resp.status)
                return data
        except aiohttp.ClientError as e:
            raise LambdaAPIError(f"Lambda API request failed: {e}") from e

    def _to_handle(self, inst: dict[str, Any], group: str | None = None) -> NodeHandle:
        handle = NodeHandle(
            node_id=inst["id"],
            name=inst.get("name") or inst["id"],
            status=LAMBDA_STATUSES.get(inst.get("status", ""), NodeStatus.UNKNOWN),
            public_addresses=[inst["ip"]] if inst.get("ip") else [],
            private_addresses=[inst["private_ip"]] if inst.get("private_ip") else [],
            group=group or inst.get("name"),
            raw=inst,
        )
        self._nodes[handle.node_id] = handle
        return handle

    # =========================================================================
    # ComputeProvider
    # =========================================================================

    async def create_nodes_in_group(
        self,
        group: str,
        count: int,
        template: NodeTemplate,
    ) -> list[NodeHandle]:
        instance_type = template.hardware or self.config.instance_type
        region = template.location or self.config.region or await self._get_best_region(instance_type)
        if not region:
            raise LambdaAPIError(f"No region has capacity for {instance_type}")

        payload: dict[str, Any] = {
            "instance_type_name": instance_type,
            "region_name": region,
            "quantity": count,
            "name": group,
            "file_system_names": list(template.options.get("file_systems", [])),
        }
        if self.config.ssh_key_name:
            payload["ssh_key_names"] = [self.config.ssh_key_name]

        data = await self._api_request("POST", "/instance-operations/launch", json=payload)
        instance_ids = data.get("data", {}).get("instance_ids", [])
        logger.info(f"[{self.name}] Launched {len(instance_ids)} Lambda instance(s) in {group}: {instance_ids}")

        return list(await asyncio.gather(*(self._wait_for_instance(i, group) for i in instance_ids)))

    async def _wait_for_instance(self, instance_id: str, group: str) -> NodeHandle:
        """Poll an instance until it leaves the booting state or the boot timeout passes."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.boot_timeout_seconds
        while True:
            handle = await self._get_instance(instance_id, group)
            if handle.status is not NodeStatus.PENDING or loop.time() >= deadline:
                if handle.status is NodeStatus.PENDING:
                    logger.warning(f"[{self.name}] Timeout waiting for Lambda instance {instance_id}")
                return handle
            await asyncio.sleep(self.config.boot_poll_interval_seconds)

    async def _get_instance(self, instance_id: str, group: str | None = None) -> NodeHandle:
        data = await self._api_request("GET", f"/instances/{instance_id}")
        inst = data.get("data")
        if not inst:
            raise LambdaAPIError(f"Lambda instance {instance_id} not found", 404)
        return self._to_handle(inst, group)

    async def run_script_on_node(
        self,
        node_id: str,
        script: str,
        options: dict[str, Any] | None = None,
    ) -> ExecResponse | None:
        options = options or {}
        handle = self._nodes.get(node_id)
        if handle is None or handle.address is None:
            handle = await self._get_instance(node_id)
        if handle.address is None:
            raise NodeInstallFailure(f"Node {node_id} has no reachable address", node_id=node_id)
        return await self._runner.run(
            handle.address,
            script,
            timeout_seconds=options.get("timeout_seconds"),
            user=options.get("user"),
        )

    async def destroy_node(self, node_id: str) -> None:
        await self._api_request(
            "POST",
            "/instance-operations/terminate",
            json={"instance_ids": [node_id]},
        )
        self._nodes.pop(node_id, None)
        logger.info(f"[{self.name}] Terminated Lambda instance {node_id}")

    async def get_node_status(self, node_id: str) -> NodeStatus:
        try:
            return (await self._get_instance(node_id)).status
        except LambdaAPIError as e:
            if e.status == 404:
                return NodeStatus.TERMINATED
            raise

    async def _get_best_region(self, instance_type: str) -> str | None:
        """Get the first region with capacity, preferring US regions."""
        data = await self._api_request("GET", "/instance-types")
        type_info = data.get("data", {}).get(instance_type, {})
        regions = [r.get("name", "") for r in type_info.get("regions_with_capacity_available", [])]
        for region in regions:
            if region.startswith("us-"):
                return region
        return regions[0] if regions else None

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
