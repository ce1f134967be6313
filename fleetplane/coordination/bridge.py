"""Bridges locally registered cloud providers into the coordination service.

Whenever the coordination client connects (for instance after joining a new
ensemble), every compute and blob-store provider registered in the local
configuration registry is published under the cloud service path, so that
providers do not have to be registered twice. Providers that already have a
record in the coordination service are skipped.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3

from fleetplane.coordination.config_registry import (
    BLOBSTORE_FACTORY_PID,
    COMPUTE_FACTORY_PID,
    FACTORY_PID_KEY,
    SERVICE_PID_KEY,
    ConfigurationEvent,
    ConfigurationEventType,
    ConfigurationRegistry,
)
from fleetplane.coordination.paths import cloud_service_path, cloud_service_property_path
from fleetplane.coordination.service import ConnectionState, CoordinationClient
from fleetplane.errors import CoordinationError, NodeExistsError

__all__ = ["CloudProviderBridge"]

logger = logging.getLogger(__name__)

_SKIPPED_KEYS = frozenset({SERVICE_PID_KEY, FACTORY_PID_KEY})


class CloudProviderBridge:
    """Connection-state listener publishing provider registrations."""

    FACTORY_PIDS = (COMPUTE_FACTORY_PID, BLOBSTORE_FACTORY_PID)

    def __init__(self, client: CoordinationClient, config_registry: ConfigurationRegistry):
        self._client = client
        self._config_registry = config_registry
        self._loop: asyncio.AbstractEventLoop | None = None
        self._pending: set[asyncio.Task] = set()

    def attach(self) -> None:
        """Start listening for connection and registration changes. Call from the event loop."""
        self._loop = asyncio.get_running_loop()
        self._client.add_connection_listener(self.state_changed)
        self._config_registry.add_listener(self._on_configuration_event)

    def detach(self) -> None:
        self._client.remove_connection_listener(self.state_changed)
        self._config_registry.remove_listener(self._on_configuration_event)
        for task in self._pending:
            task.cancel()

    def state_changed(self, state: ConnectionState) -> None:
        if state.is_connected:
            if self._loop is not None:
                self._loop.call_soon_threadsafe(self._schedule_connected)
        else:
            self.on_disconnected()

    def _on_configuration_event(self, event: ConfigurationEvent) -> None:
        if event.type is ConfigurationEventType.DELETED or event.factory_pid not in self.FACTORY_PIDS:
            return
        if self._loop is not None and self._client.is_connected:
            self._loop.call_soon_threadsafe(self._schedule, self.register_services(event.factory_pid))

    def _schedule_connected(self) -> None:
        self._schedule(self.on_connected())

    def _schedule(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def wait_idle(self) -> None:
        """Wait for scheduled registrations to finish."""
        await asyncio.sleep(0)
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def on_connected(self) -> int:
        """Publish every local provider registration. Returns the count published."""
        published = 0
        for factory_pid in self.FACTORY_PIDS:
            published += await self.register_services(factory_pid)
        return published

    def on_disconnected(self) -> None:
        logger.debug("Coordination client disconnected; provider bridge idle")

    async def register_services(self, factory_pid: str) -> int:
        """Publish registrations of one factory that the ensemble lacks."""
        published = 0
        try:
            configurations = self._config_registry.list_configurations(factory_pid=factory_pid)
        except sqlite3.Error as e:
            logger.error(f"Failed to read provider configurations for {factory_pid}: {e}")
            return 0

        for properties in configurations:
            name = properties.get("name")
            identity = properties.get("identity")
            credential = properties.get("credential")
            if not (name and identity and credential) or not self._client.is_connected:
                continue
            try:
                if await self._client.exists(cloud_service_path(name)):
                    continue
                await self._client.create(cloud_service_path(name))
                for key, value in properties.items():
                    if key in _SKIPPED_KEYS:
                        continue
                    await self._client.create(
                        cloud_service_property_path(name, key), str(value).encode("utf-8")
                    )
                published += 1
                logger.info(f"Published cloud provider {name} to the coordination service")
            except NodeExistsError:
                logger.debug(f"Cloud provider {name} was published concurrently")
            except CoordinationError as e:
                logger.error(f"Failed to publish cloud provider {name}: {e}")
        return published
