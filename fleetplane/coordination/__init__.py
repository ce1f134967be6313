"""Coordination: group membership, leader election and shared registries.

Usage:
    from fleetplane.coordination import (
        GroupMembership,
        InMemoryCoordinationService,
        LeaderCoordinatedService,
    )
"""

from fleetplane.coordination.bridge import CloudProviderBridge
from fleetplane.coordination.config_registry import (
    BLOBSTORE_FACTORY_PID,
    COMPUTE_FACTORY_PID,
    ConfigurationEvent,
    ConfigurationEventType,
    ConfigurationRegistry,
)
from fleetplane.coordination.endpoints import (
    EndpointTracker,
    RandomStrategy,
    RoundRobinStrategy,
)
from fleetplane.coordination.leader import LeaderCoordinatedService, ServiceRole
from fleetplane.coordination.membership import (
    GroupMember,
    GroupMembership,
    MembershipEvent,
    MembershipEventType,
    MembershipListener,
)
from fleetplane.coordination.placeholders import resolve_placeholders
from fleetplane.coordination.service import (
    ConnectionState,
    CoordinationClient,
    InMemoryCoordinationService,
    InMemorySession,
)

__all__ = [
    "BLOBSTORE_FACTORY_PID",
    "COMPUTE_FACTORY_PID",
    "CloudProviderBridge",
    "ConfigurationEvent",
    "ConfigurationEventType",
    "ConfigurationRegistry",
    "ConnectionState",
    "CoordinationClient",
    "EndpointTracker",
    "GroupMember",
    "GroupMembership",
    "InMemoryCoordinationService",
    "InMemorySession",
    "LeaderCoordinatedService",
    "MembershipEvent",
    "MembershipEventType",
    "MembershipListener",
    "RandomStrategy",
    "RoundRobinStrategy",
    "ServiceRole",
    "resolve_placeholders",
]
