"""Leader-coordinated service registration.

A LeaderCoordinatedService joins a group on behalf of one clustered
singleton (a git server, a broker) and reacts to membership events:

- connected / reconnected / members changed: recompute the local role,
  republish the member advertisement, and, while leader, resolve the
  advertised endpoint template and publish it to the configuration
  registry when it differs from the value the registry holds. Endpoint
  listeners are notified of every published change.
- disconnected: the role is left as is and leader-only writes are simply
  not attempted until reconnection re-evaluates it. The cached published
  endpoint is cleared.

Publishing failures are logged and retried on the next membership event.

Usage:
    service = LeaderCoordinatedService(
        client,
        config_registry,
        group_path=GIT_GROUP,
        member_id="fleet-repo",
        container="root",
        endpoint_template="${zk:root/http}/git/fleet/",
        registry_pid="fleetplane.git",
        registry_key="fleetplane.git.url",
    )
    service.add_endpoint_listener(lambda url: print(f"git is now at {url}"))
    await service.start()
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Callable
from enum import Enum
from typing import Any

from fleetplane.coordination.config_registry import ConfigurationRegistry
from fleetplane.coordination.membership import (
    GroupMember,
    GroupMembership,
    MembershipEvent,
    MembershipEventType,
)
from fleetplane.coordination.placeholders import resolve_placeholders
from fleetplane.coordination.service import CoordinationClient
from fleetplane.errors import CoordinationError, FleetError
from fleetplane.metrics import LEADER_PUBLISHES, LEADERSHIP_TRANSITIONS

__all__ = [
    "EndpointListener",
    "LeaderCoordinatedService",
    "ServiceRole",
]

logger = logging.getLogger(__name__)

EndpointListener = Callable[[str], Any]


class ServiceRole(str, Enum):
    """Role of the local member in its group."""

    UNELECTED = "unelected"
    LEADER = "leader"
    FOLLOWER = "follower"


class LeaderCoordinatedService:
    """Publishes a singleton service's endpoint while elected leader."""

    def __init__(
        self,
        client: CoordinationClient,
        config_registry: ConfigurationRegistry,
        *,
        group_path: str,
        member_id: str,
        container: str,
        endpoint_template: str,
        registry_pid: str,
        registry_key: str,
        membership: GroupMembership | None = None,
    ):
        self._client = client
        self._config_registry = config_registry
        self._group_path = group_path
        self._member_id = member_id
        self._container = container
        self._endpoint_template = endpoint_template
        self._registry_pid = registry_pid
        self._registry_key = registry_key
        self._membership = membership or GroupMembership(client)

        self._role = ServiceRole.UNELECTED
        self._published_endpoint: str | None = None
        self._endpoint_listeners: list[EndpointListener] = []
        self._event_lock = asyncio.Lock()
        self._started = False

    @property
    def role(self) -> ServiceRole:
        return self._role

    @property
    def is_leader(self) -> bool:
        return self._role is ServiceRole.LEADER

    @property
    def published_endpoint(self) -> str | None:
        """Endpoint this member published during its current leadership."""
        return self._published_endpoint

    @property
    def membership(self) -> GroupMembership:
        return self._membership

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Join the group and begin handling membership events."""
        if self._started:
            return
        self._started = True
        if self._membership.closed:
            self._membership = GroupMembership(self._client)
        self._membership.add_listener(self)
        await self._membership.join(self._group_path, self.create_state())
        logger.info(f"[{self._member_id}] Registered in {self._group_path}")

    async def stop(self) -> None:
        """Leave the group. The published endpoint stays in the registry."""
        if not self._started:
            return
        self._started = False
        await self._membership.close()
        self._role = ServiceRole.UNELECTED
        self._published_endpoint = None
        logger.info(f"[{self._member_id}] Deregistered from {self._group_path}")

    # =========================================================================
    # Listeners
    # =========================================================================

    def add_endpoint_listener(self, listener: EndpointListener) -> None:
        self._endpoint_listeners.append(listener)

    def remove_endpoint_listener(self, listener: EndpointListener) -> None:
        if listener in self._endpoint_listeners:
            self._endpoint_listeners.remove(listener)

    async def _fire_endpoint_changed(self, endpoint: str) -> None:
        for listener in list(self._endpoint_listeners):
            try:
                result = listener(endpoint)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"[{self._member_id}] Endpoint listener failed: {e}")

    # =========================================================================
    # Membership events
    # =========================================================================

    def create_state(self) -> GroupMember:
        """Build the local advertisement; only the leader lists services."""
        services = [self._endpoint_template] if self._role is ServiceRole.LEADER else []
        return GroupMember(
            member_id=self._member_id,
            container=self._container,
            url=self._endpoint_template,
            services=services,
        )

    async def on_membership_event(self, membership: GroupMembership, event: MembershipEvent) -> None:
        async with self._event_lock:
            if event.type is MembershipEventType.DISCONNECTED:
                logger.info(f"[{self._member_id}] Disconnected; leader-only writes suspended")
                self._published_endpoint = None
                return
            await self._reconcile()

    async def _reconcile(self) -> None:
        previous = self._role
        self._role = ServiceRole.LEADER if self._membership.is_leader() else ServiceRole.FOLLOWER

        if self._role is not previous:
            LEADERSHIP_TRANSITIONS.labels(group=self._group_path, role=self._role.value).inc()
            if self._role is ServiceRole.LEADER:
                logger.info(f"[{self._member_id}] Became leader of {self._group_path}")
            else:
                logger.info(f"[{self._member_id}] Is a follower in {self._group_path}")
            if previous is ServiceRole.LEADER:
                self._published_endpoint = None

        try:
            await self._membership.update(self.create_state())
        except CoordinationError as e:
            logger.warning(f"[{self._member_id}] Failed to update advertisement: {e}")

        if self._role is ServiceRole.LEADER:
            await self._publish_current_endpoint()

    async def _publish_current_endpoint(self) -> None:
        try:
            endpoint = await resolve_placeholders(self._client, self._endpoint_template)
        except CoordinationError as e:
            logger.error(
                f"[{self._member_id}] Could not resolve endpoint from "
                f"{self._endpoint_template}: {e}"
            )
            return
        try:
            await self.publish_endpoint(endpoint)
        except (FleetError, sqlite3.Error) as e:
            logger.error(f"[{self._member_id}] Could not publish endpoint {endpoint}: {e}")

    async def publish_endpoint(self, endpoint: str) -> bool:
        """Write ``endpoint`` to the registry unless the registry already holds it.

        The registry is compared rather than a local cache, so a value a peer
        wrote in the meantime is overwritten.

        Returns:
            True if the registry was written
        """
        if not endpoint:
            return False
        current = (self._config_registry.get(self._registry_pid) or {}).get(self._registry_key)
        if endpoint == current:
            self._published_endpoint = endpoint
            return False
        self._config_registry.update(self._registry_pid, {self._registry_key: endpoint})
        self._published_endpoint = endpoint
        LEADER_PUBLISHES.labels(group=self._group_path).inc()
        logger.info(f"[{self._member_id}] Published {self._registry_key}={endpoint}")
        await self._fire_endpoint_changed(endpoint)
        return True

    def get_status(self) -> dict[str, Any]:
        return {
            "member_id": self._member_id,
            "group_path": self._group_path,
            "role": self._role.value,
            "connected": self._membership.is_connected,
            "published_endpoint": self._published_endpoint,
            "node_path": self._membership.node_path,
        }
