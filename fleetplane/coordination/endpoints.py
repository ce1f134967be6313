"""Client-side load balancing over a group's advertised endpoints.

An EndpointTracker listens to a group's membership and keeps the list of
addresses its members advertise (their services, or their URL when they
list none). Callers pick an address with a selection strategy.

Usage:
    tracker = EndpointTracker(strategy=RoundRobinStrategy())
    membership.add_listener(tracker)
    address = tracker.next_address()
"""

from __future__ import annotations

import logging
import random
import threading
from abc import ABC, abstractmethod

from fleetplane.coordination.membership import (
    GroupMembership,
    MembershipEvent,
    MembershipEventType,
)
from fleetplane.errors import CoordinationError

__all__ = [
    "EndpointTracker",
    "RandomStrategy",
    "RoundRobinStrategy",
    "SelectionStrategy",
]

logger = logging.getLogger(__name__)


class SelectionStrategy(ABC):
    """Chooses one address from a non-empty list."""

    @abstractmethod
    def select(self, addresses: list[str]) -> str:
        ...


class RoundRobinStrategy(SelectionStrategy):
    def __init__(self) -> None:
        self._index = 0
        self._lock = threading.Lock()

    def select(self, addresses: list[str]) -> str:
        with self._lock:
            address = addresses[self._index % len(addresses)]
            self._index += 1
            return address


class RandomStrategy(SelectionStrategy):
    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    def select(self, addresses: list[str]) -> str:
        return self._rng.choice(addresses)


class EndpointTracker:
    """Tracks member endpoints of one group."""

    def __init__(self, strategy: SelectionStrategy | None = None):
        self._strategy = strategy or RoundRobinStrategy()
        self._addresses: list[str] = []

    async def on_membership_event(self, membership: GroupMembership, event: MembershipEvent) -> None:
        if event.type is MembershipEventType.DISCONNECTED:
            return
        try:
            members = await membership.members()
        except CoordinationError as e:
            logger.warning(f"Could not refresh endpoints of {event.group_path}: {e}")
            return

        addresses = []
        for member in members:
            for address in member.services or ([member.url] if member.url else []):
                if address not in addresses:
                    addresses.append(address)
        self._addresses = addresses
        logger.debug(f"Endpoints of {event.group_path}: {addresses}")

    def alternate_addresses(self) -> list[str]:
        """Copy of the currently known addresses."""
        return list(self._addresses)

    def next_address(self) -> str | None:
        """Pick an address, or None when no member advertises one."""
        addresses = self._addresses
        if not addresses:
            return None
        return self._strategy.select(addresses)
