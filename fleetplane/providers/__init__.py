"""Compute providers and the provider registry."""

from fleetplane.providers.base import (
    ComputeProvider,
    ExecResponse,
    NodeHandle,
    NodeStatus,
    NodeTemplate,
    ProviderSpec,
)
from fleetplane.providers.registry import ComputeProviderRegistry

__all__ = [
    "ComputeProvider",
    "ComputeProviderRegistry",
    "ExecResponse",
    "NodeHandle",
    "NodeStatus",
    "NodeTemplate",
    "ProviderSpec",
]
