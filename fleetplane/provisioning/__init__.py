"""Container provisioning: requests, results and the orchestrator."""

from fleetplane.provisioning.models import (
    ContainerCreateResult,
    CreationStateListener,
    LoggingCreationStateListener,
    ProvisionRequest,
    ResultCollection,
)
from fleetplane.provisioning.orchestrator import ProvisioningOrchestrator
from fleetplane.provisioning.waiters import (
    assert_provisioning_success,
    wait_for_containers_registered,
    wait_for_node_status,
)

__all__ = [
    "ContainerCreateResult",
    "CreationStateListener",
    "LoggingCreationStateListener",
    "ProvisionRequest",
    "ProvisioningOrchestrator",
    "ResultCollection",
    "assert_provisioning_success",
    "wait_for_containers_registered",
    "wait_for_node_status",
]
