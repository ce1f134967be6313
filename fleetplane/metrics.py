"""Prometheus metrics for the fleet control plane.

Counters and histograms live here so the orchestrator, provider registry
and leader service can record telemetry without managing their own metric
instances.
"""

from __future__ import annotations

from typing import Final

from prometheus_client import Counter, Histogram


NODES_PROVISIONED: Final[Counter] = Counter(
    "fleetplane_nodes_provisioned_total",
    (
        "Per-slot provisioning outcomes, labeled by outcome "
        "(success, install_failure, timeout, batch_failure, request_failure)."
    ),
    labelnames=("outcome",),
)

PROVISIONING_DURATION: Final[Histogram] = Histogram(
    "fleetplane_provisioning_duration_seconds",
    "Wall clock duration of ProvisioningOrchestrator.create calls.",
    buckets=(1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 900.0),
)

PROVIDER_REGISTRATIONS: Final[Counter] = Counter(
    "fleetplane_provider_registrations_total",
    "Compute provider registrations, labeled by outcome.",
    labelnames=("outcome",),
)

LEADER_PUBLISHES: Final[Counter] = Counter(
    "fleetplane_leader_endpoint_publishes_total",
    "Endpoint values written to the configuration registry by a group leader.",
    labelnames=("group",),
)

LEADERSHIP_TRANSITIONS: Final[Counter] = Counter(
    "fleetplane_leadership_transitions_total",
    "Local role transitions, labeled by group and new role.",
    labelnames=("group", "role"),
)
