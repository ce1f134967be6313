"""Application context for the fleet control plane.

FleetContext owns the long-lived collaborators (coordination client,
configuration registry, provider registry, orchestrator, provider bridge)
and their lifecycle. Components receive it, or the collaborators they need,
by reference; there is no module-level singleton.

Usage:
    async with FleetContext(load_config()) as fleet:
        results = await fleet.orchestrator.create(request)

        git = await fleet.start_leader_service(
            group_path=GIT_GROUP,
            member_id="fleet-repo",
            endpoint_template="${zk:" + fleet.config.node_name + "/http}/git/fleet/",
            registry_pid="fleetplane.git",
            registry_key="fleetplane.git.url",
        )
"""

from __future__ import annotations

import logging
from typing import Any

from fleetplane.config.settings import FleetConfig
from fleetplane.coordination.bridge import CloudProviderBridge
from fleetplane.coordination.config_registry import ConfigurationRegistry
from fleetplane.coordination.leader import LeaderCoordinatedService
from fleetplane.coordination.service import CoordinationClient, InMemoryCoordinationService
from fleetplane.providers.base import ProviderSpec
from fleetplane.providers.lambda_provider import LambdaComputeProvider
from fleetplane.providers.registry import ComputeProviderRegistry, ProviderFactory
from fleetplane.providers.remote_exec import RemoteScriptRunner, RunnerConfig
from fleetplane.provisioning.orchestrator import ProvisioningOrchestrator

__all__ = ["FleetContext"]

logger = logging.getLogger(__name__)


class FleetContext:
    """Owns the control plane's collaborators between init() and shutdown()."""

    def __init__(
        self,
        config: FleetConfig | None = None,
        client: CoordinationClient | None = None,
        factories: dict[str, ProviderFactory] | None = None,
    ):
        self.config = config or FleetConfig()
        self._client = client
        self._owns_client = client is None
        self._extra_factories = dict(factories or {})

        self.runner: RemoteScriptRunner | None = None
        self.config_registry: ConfigurationRegistry | None = None
        self.provider_registry: ComputeProviderRegistry | None = None
        self.orchestrator: ProvisioningOrchestrator | None = None
        self.bridge: CloudProviderBridge | None = None
        self._leader_services: list[LeaderCoordinatedService] = []
        self._initialized = False

    @property
    def client(self) -> CoordinationClient:
        if self._client is None:
            raise RuntimeError("FleetContext is not initialized")
        return self._client

    @property
    def initialized(self) -> bool:
        return self._initialized

    def _default_factories(self) -> dict[str, ProviderFactory]:
        def lambda_factory(spec: ProviderSpec) -> LambdaComputeProvider:
            return LambdaComputeProvider.from_spec(spec, runner=self.runner)

        return {"lambda": lambda_factory}

    async def init(self) -> FleetContext:
        """Create every collaborator and restore registered providers."""
        if self._initialized:
            return self
        config = self.config

        if self._client is None:
            self._client = InMemoryCoordinationService().connect()
            logger.info("No coordination client given; using an in-process ensemble")

        self.runner = RemoteScriptRunner(
            RunnerConfig(
                user=config.ssh_user,
                key_path=config.ssh_key_path,
                connect_timeout=config.ssh_connect_timeout_seconds,
                max_concurrent=config.max_concurrent_installs,
            )
        )
        self.config_registry = ConfigurationRegistry(config.registry_db_path)
        self.provider_registry = ComputeProviderRegistry(
            self.config_registry,
            {**self._default_factories(), **self._extra_factories},
            wait_timeout_seconds=config.provider_wait_timeout_seconds,
            poll_interval_seconds=config.provider_poll_interval_seconds,
        )
        restored = self.provider_registry.load_registered()
        self.orchestrator = ProvisioningOrchestrator(
            self.provider_registry,
            deadline_seconds=config.provisioning_deadline_seconds,
            max_concurrent_installs=config.max_concurrent_installs,
            cancel_grace_seconds=config.cancel_grace_seconds,
        )

        self.bridge = CloudProviderBridge(self._client, self.config_registry)
        self.bridge.attach()
        if self._client.is_connected:
            await self.bridge.on_connected()

        self._initialized = True
        logger.info(f"[{config.node_name}] Fleet context initialized ({restored} provider(s) restored)")
        return self

    async def start_leader_service(
        self,
        *,
        group_path: str,
        member_id: str,
        endpoint_template: str,
        registry_pid: str,
        registry_key: str,
        container: str | None = None,
    ) -> LeaderCoordinatedService:
        """Start a LeaderCoordinatedService stopped again by shutdown()."""
        service = LeaderCoordinatedService(
            self.client,
            self.config_registry,
            group_path=group_path,
            member_id=member_id,
            container=container or self.config.node_name,
            endpoint_template=endpoint_template,
            registry_pid=registry_pid,
            registry_key=registry_key,
        )
        await service.start()
        self._leader_services.append(service)
        return service

    async def shutdown(self) -> None:
        """Stop leader services, detach the bridge and release resources."""
        if not self._initialized:
            return
        self._initialized = False

        for service in self._leader_services:
            await service.stop()
        self._leader_services.clear()

        self.bridge.detach()
        await self.runner.cancel_all()
        await self.provider_registry.close()
        self.config_registry.close()
        if self._owns_client:
            await self._client.close()
            self._client = None
        logger.info(f"[{self.config.node_name}] Fleet context shut down")

    def get_status(self) -> dict[str, Any]:
        return {
            "node_name": self.config.node_name,
            "initialized": self._initialized,
            "connected": self._client.is_connected if self._client else False,
            "providers": self.provider_registry.names() if self.provider_registry else [],
            "leader_services": [s.get_status() for s in self._leader_services],
        }

    async def __aenter__(self) -> FleetContext:
        return await self.init()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()
