"""Group membership and leader election over the coordination service.

Each member of a group owns one ephemeral, sequential record under the
group path holding its JSON advertisement. The member whose record has the
lowest sequence number (the first created) is the leader. Leadership is
re-evaluated whenever the child set changes; a member that loses its session
rejoins with a new record on reconnection and goes to the back of the line.

Events are delivered to each listener through its own queue and dispatcher
task, so delivery is FIFO per listener with no ordering across listeners.
Coordination client callbacks are marshalled onto the event loop that
joined the group.

Usage:
    membership = GroupMembership(client)
    membership.add_listener(my_service)
    await membership.join("/fleet/registry/clusters/git", GroupMember(member_id="git"))

    if membership.is_leader():
        ...

    await membership.close()
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from fleetplane.coordination.service import (
    SEQUENCE_WIDTH,
    ConnectionState,
    CoordinationClient,
)
from fleetplane.errors import CoordinationError, NoNodeError

__all__ = [
    "GroupMember",
    "GroupMembership",
    "MembershipEvent",
    "MembershipEventType",
    "MembershipListener",
]

logger = logging.getLogger(__name__)


class MembershipEventType(str, Enum):
    """Kinds of membership notifications."""

    CONNECTED = "connected"
    RECONNECTED = "reconnected"
    DISCONNECTED = "disconnected"
    MEMBERS_CHANGED = "members_changed"


@dataclass(frozen=True)
class MembershipEvent:
    """A membership notification for one group."""

    type: MembershipEventType
    group_path: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class GroupMember:
    """Advertisement of one group member.

    Attributes:
        member_id: Logical id of the advertised service (e.g. "fleet-repo")
        container: Container hosting the member
        url: Endpoint template advertised by the member
        services: Endpoints served by the member (populated by the leader)
        is_leader: Whether this member is the group leader (set on read)
        node_name: Name of the member's record in the group (set on read)
    """

    member_id: str
    container: str | None = None
    url: str | None = None
    services: list[str] = field(default_factory=list)
    is_leader: bool = False
    node_name: str | None = None

    def to_bytes(self) -> bytes:
        payload = {
            "id": self.member_id,
            "container": self.container,
            "url": self.url,
            "services": list(self.services),
        }
        return json.dumps(payload, sort_keys=True).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes, node_name: str | None = None, is_leader: bool = False) -> GroupMember:
        payload: dict[str, Any] = json.loads(data.decode("utf-8")) if data else {}
        return cls(
            member_id=payload.get("id", ""),
            container=payload.get("container"),
            url=payload.get("url"),
            services=list(payload.get("services") or []),
            is_leader=is_leader,
            node_name=node_name,
        )


@runtime_checkable
class MembershipListener(Protocol):
    """Receives membership events for a group."""

    async def on_membership_event(self, membership: GroupMembership, event: MembershipEvent) -> None:
        ...


def _sequence_key(name: str) -> tuple[int, str]:
    suffix = name[-SEQUENCE_WIDTH:]
    return (int(suffix), name) if suffix.isdigit() else (-1, name)


@dataclass
class _ListenerChannel:
    listener: MembershipListener
    queue: asyncio.Queue
    task: asyncio.Task | None = None


class GroupMembership:
    """Membership of the local process in one named group."""

    MEMBER_PREFIX = "member-"

    def __init__(self, client: CoordinationClient):
        self._client = client
        self._group_path: str | None = None
        self._node_path: str | None = None
        self._advertisement: GroupMember | None = None
        self._children: list[str] = []
        self._channels: list[_ListenerChannel] = []
        self._update_lock = asyncio.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._unwatch = None
        self._pending: set[asyncio.Task] = set()
        self._closed = False

    @property
    def group_path(self) -> str | None:
        return self._group_path

    @property
    def node_path(self) -> str | None:
        """Path of this member's record (changes after a rejoin)."""
        return self._node_path

    @property
    def advertisement(self) -> GroupMember | None:
        return self._advertisement

    @property
    def is_connected(self) -> bool:
        return self._client.is_connected and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def join(self, group_path: str, advertisement: GroupMember) -> GroupMembership:
        """Publish this member's record under ``group_path``.

        Returns:
            This membership, acting as the handle for update/is_leader/close
        """
        if self._node_path is not None:
            raise CoordinationError(f"Already joined {self._group_path}")
        if self._closed:
            raise CoordinationError("Membership is closed")

        self._loop = asyncio.get_running_loop()
        self._group_path = group_path.rstrip("/")
        self._advertisement = advertisement
        self._client.add_connection_listener(self._on_connection_state)
        self._unwatch = self._client.watch_children(self._group_path, self._on_children_changed)

        await self._create_member_record()
        logger.info(f"Joined group {self._group_path} as {self._node_path}")
        self._emit(MembershipEventType.CONNECTED)
        return self

    async def _create_member_record(self) -> None:
        self._node_path = await self._client.create(
            f"{self._group_path}/{self.MEMBER_PREFIX}",
            self._advertisement.to_bytes(),
            ephemeral=True,
            sequential=True,
        )
        self._set_children(await self._client.get_children(self._group_path))

    async def close(self) -> None:
        """Leave the group and stop event delivery."""
        if self._closed:
            return
        self._closed = True
        if self._unwatch is not None:
            self._unwatch()
        self._client.remove_connection_listener(self._on_connection_state)

        if self._node_path is not None and self._client.is_connected:
            try:
                await self._client.delete(self._node_path)
            except NoNodeError:
                pass
            except CoordinationError as e:
                logger.warning(f"Failed to remove member record {self._node_path}: {e}")

        tasks = [c.task for c in self._channels if c.task is not None] + list(self._pending)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._channels.clear()
        self._pending.clear()
        logger.info(f"Left group {self._group_path}")

    # =========================================================================
    # Membership state
    # =========================================================================

    async def update(self, advertisement: GroupMember) -> None:
        """Rewrite the local advertisement without affecting leadership.

        While disconnected the advertisement is kept locally and written when
        the member rejoins.
        """
        async with self._update_lock:
            self._advertisement = advertisement
            if self._node_path is None or not self.is_connected:
                logger.debug(f"Deferring advertisement update for {self._group_path}")
                return
            await self._client.set_data(self._node_path, advertisement.to_bytes())

    def is_leader(self) -> bool:
        """True if this member's record is the first in creation order."""
        if not self.is_connected or self._node_path is None or not self._children:
            return False
        return self._children[0] == self._node_path.rsplit("/", 1)[1]

    async def members(self) -> list[GroupMember]:
        """Read every member's advertisement, leader first."""
        if self._group_path is None:
            return []
        children = sorted(await self._client.get_children(self._group_path), key=_sequence_key)
        members = []
        for index, name in enumerate(children):
            try:
                data = await self._client.get_data(f"{self._group_path}/{name}")
            except NoNodeError:
                continue
            try:
                members.append(GroupMember.from_bytes(data, node_name=name, is_leader=index == 0))
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                logger.warning(f"Ignoring malformed member record {name}: {e}")
        return members

    def _set_children(self, children: list[str]) -> None:
        self._children = sorted(children, key=_sequence_key)

    # =========================================================================
    # Listeners
    # =========================================================================

    def add_listener(self, listener: MembershipListener) -> None:
        """Register a listener. Must be called from the event loop."""
        channel = _ListenerChannel(listener=listener, queue=asyncio.Queue())
        channel.task = asyncio.get_running_loop().create_task(
            self._dispatch(channel), name=f"membership-listener-{len(self._channels)}"
        )
        self._channels.append(channel)

    def remove_listener(self, listener: MembershipListener) -> None:
        for channel in list(self._channels):
            if channel.listener is listener:
                if channel.task is not None:
                    channel.task.cancel()
                self._channels.remove(channel)

    async def flush_events(self) -> None:
        """Wait until every queued event has been handled by its listener."""
        for _ in range(3):
            await asyncio.sleep(0)
            if self._pending:
                await asyncio.gather(*list(self._pending), return_exceptions=True)
            for channel in list(self._channels):
                await channel.queue.join()

    def _emit(self, event_type: MembershipEventType) -> None:
        event = MembershipEvent(type=event_type, group_path=self._group_path or "")
        for channel in self._channels:
            channel.queue.put_nowait(event)

    async def _dispatch(self, channel: _ListenerChannel) -> None:
        while True:
            event = await channel.queue.get()
            try:
                await channel.listener.on_membership_event(self, event)
            except Exception as e:
                logger.error(f"Membership listener failed on {event.type.value}: {e}")
            finally:
                channel.queue.task_done()

    # =========================================================================
    # Coordination client callbacks (any thread)
    # =========================================================================

    def _on_children_changed(self, path: str, children: list[str]) -> None:
        if self._closed or self._loop is None:
            return
        self._loop.call_soon_threadsafe(self._apply_children, children)

    def _on_connection_state(self, state: ConnectionState) -> None:
        if self._closed or self._loop is None:
            return
        if state is ConnectionState.LOST:
            # The record is gone; no leadership until _rejoin has rebuilt it
            self._children = []
        self._loop.call_soon_threadsafe(self._apply_connection_state, state)

    def _apply_children(self, children: list[str]) -> None:
        if self._closed:
            return
        self._set_children(children)
        self._emit(MembershipEventType.MEMBERS_CHANGED)

    def _apply_connection_state(self, state: ConnectionState) -> None:
        if self._closed:
            return
        if state.is_connected:
            task = asyncio.get_running_loop().create_task(self._rejoin())
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        else:
            logger.warning(f"Disconnected from coordination service ({state.value}) in {self._group_path}")
            self._emit(MembershipEventType.DISCONNECTED)

    async def _rejoin(self) -> None:
        if self._node_path is None:
            return
        try:
            async with self._update_lock:
                if await self._client.exists(self._node_path):
                    await self._client.set_data(self._node_path, self._advertisement.to_bytes())
                    self._set_children(await self._client.get_children(self._group_path))
                else:
                    await self._create_member_record()
                    logger.info(f"Rejoined group {self._group_path} as {self._node_path}")
        except CoordinationError as e:
            logger.error(f"Failed to rejoin group {self._group_path}: {e}")
            return
        self._emit(MembershipEventType.RECONNECTED)
