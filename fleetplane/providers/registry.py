"""Compute provider registry.

Maps provider context names to live ComputeProvider handles. Providers are
registered by writing their settings into the shared configuration registry
under the compute factory PID; a configuration listener builds the provider
through the factory table and attaches it. Other processes sharing the
registry database can therefore discover and reuse a context with
``load_registered()``.

``get_or_create`` is serialised by one lock because provider creation is not
safe to race. Reading an attached provider with ``get`` takes no lock.

Usage:
    registry = ComputeProviderRegistry(config_registry)
    registry.register_factory("lambda", LambdaComputeProvider.from_spec)

    provider = await registry.get_or_create(request)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from fleetplane.coordination.config_registry import (
    COMPUTE_FACTORY_PID,
    FACTORY_PID_KEY,
    SERVICE_PID_KEY,
    ConfigurationEvent,
    ConfigurationEventType,
    ConfigurationRegistry,
)
from fleetplane.errors import ConfigurationError, ProviderUnavailable
from fleetplane.metrics import PROVIDER_REGISTRATIONS
from fleetplane.providers.base import ComputeProvider, ProviderSpec

if TYPE_CHECKING:
    from fleetplane.provisioning.models import ProvisionRequest

__all__ = [
    "ComputeProviderRegistry",
    "ProviderFactory",
    "spec_from_properties",
    "spec_to_properties",
]

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[ProviderSpec], ComputeProvider]

_RESERVED_KEYS = frozenset(
    {"name", "provider", "api", "endpoint", "identity", "credential", SERVICE_PID_KEY, FACTORY_PID_KEY}
)


def spec_to_properties(spec: ProviderSpec) -> dict[str, Any]:
    """Registry properties of a provider context."""
    properties: dict[str, Any] = dict(spec.options)
    properties["name"] = spec.context_name
    properties["identity"] = spec.identity
    properties["credential"] = spec.credential
    if spec.provider_name:
        properties["provider"] = spec.provider_name
    else:
        properties["api"] = spec.api_name
        if spec.endpoint:
            properties["endpoint"] = spec.endpoint
    return properties


def spec_from_properties(properties: dict[str, Any]) -> ProviderSpec:
    return ProviderSpec(
        context_name=properties["name"],
        provider_name=properties.get("provider"),
        api_name=properties.get("api"),
        endpoint=properties.get("endpoint"),
        identity=properties.get("identity"),
        credential=properties.get("credential"),
        options={k: v for k, v in properties.items() if k not in _RESERVED_KEYS},
    )


def _blank(value: str | None) -> bool:
    return value is None or not value.strip()


class ComputeProviderRegistry:
    """Registry of compute providers keyed by context name."""

    def __init__(
        self,
        config_registry: ConfigurationRegistry,
        factories: dict[str, ProviderFactory] | None = None,
        *,
        wait_timeout_seconds: float = 60.0,
        poll_interval_seconds: float = 0.5,
    ):
        self._config_registry = config_registry
        self._factories: dict[str, ProviderFactory] = dict(factories or {})
        self._providers: dict[str, ComputeProvider] = {}
        self._lock = asyncio.Lock()
        self._wait_timeout = wait_timeout_seconds
        self._poll_interval = poll_interval_seconds
        self._creations = 0
        config_registry.add_listener(self._on_configuration_event)

    @property
    def creations(self) -> int:
        """Number of providers built through the factory table."""
        return self._creations

    def register_factory(self, kind: str, factory: ProviderFactory) -> None:
        self._factories[kind] = factory

    # =========================================================================
    # Attach / detach
    # =========================================================================

    def attach(self, provider: ComputeProvider) -> None:
        """Make ``provider`` available under its context name."""
        previous = self._providers.get(provider.name)
        self._providers[provider.name] = provider
        if previous is not None and previous is not provider:
            logger.info(f"Replaced compute provider {provider.name}")
        else:
            logger.info(f"Attached compute provider {provider.name}")

    def detach(self, name: str) -> ComputeProvider | None:
        provider = self._providers.pop(name, None)
        if provider is not None:
            logger.info(f"Detached compute provider {name}")
        return provider

    def get(self, name: str) -> ComputeProvider | None:
        return self._providers.get(name)

    def names(self) -> list[str]:
        return sorted(self._providers)

    def load_registered(self) -> int:
        """Build and attach every provider context in the configuration registry.

        Returns:
            Number of providers attached
        """
        attached = 0
        for properties in self._config_registry.list_configurations(factory_pid=COMPUTE_FACTORY_PID):
            if properties.get("name") in self._providers:
                continue
            if self._build_and_attach(properties):
                attached += 1
        return attached

    # =========================================================================
    # Lookup / creation
    # =========================================================================

    async def get_or_create(self, request: ProvisionRequest) -> ComputeProvider:
        """Resolve the provider for ``request``, registering it if needed.

        Lookup order: the provider set on the request, a provider already
        attached under the request's context name, then registration from the
        request's provider settings.

        Raises:
            ConfigurationError: If a provider must be created but the provider
                name, identity or credential is blank
            ProviderUnavailable: If the new provider never became available
        """
        if request.provider is not None:
            return request.provider

        context_name = request.context_name or request.provider_name or request.api_name
        async with self._lock:
            if context_name:
                provider = self._providers.get(context_name)
                if provider is not None:
                    return provider

            request.creation_state_listener.on_state_change("Compute Service not found. Creating ...")
            if (
                (_blank(request.provider_name) and _blank(request.api_name))
                or _blank(request.identity)
                or _blank(request.credential)
            ):
                PROVIDER_REGISTRATIONS.labels(outcome="invalid").inc()
                raise ConfigurationError(
                    "Cannot create compute service. A registered cloud provider or the "
                    "provider name, identity and credential options are required"
                )

            spec = ProviderSpec(
                context_name=context_name,
                provider_name=request.provider_name or None,
                api_name=None if request.provider_name else request.api_name,
                endpoint=request.endpoint,
                identity=request.identity,
                credential=request.credential,
                options=dict(request.service_options),
            )
            self.register(spec)
            return await self._wait_for_provider(context_name)

    def register(self, spec: ProviderSpec) -> dict[str, Any]:
        """Persist a provider context into the configuration registry."""
        pid = f"{COMPUTE_FACTORY_PID}-{spec.context_name}"
        stored = self._config_registry.update(
            pid, spec_to_properties(spec), factory_pid=COMPUTE_FACTORY_PID, merge=False
        )
        logger.info(f"Registered compute provider context {spec.context_name} ({spec.kind})")
        return stored

    def unregister(self, context_name: str) -> bool:
        return self._config_registry.delete(f"{COMPUTE_FACTORY_PID}-{context_name}")

    async def _wait_for_provider(self, name: str) -> ComputeProvider:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._wait_timeout
        while True:
            provider = self._providers.get(name)
            if provider is not None:
                PROVIDER_REGISTRATIONS.labels(outcome="success").inc()
                return provider
            if loop.time() >= deadline:
                PROVIDER_REGISTRATIONS.labels(outcome="timeout").inc()
                logger.warning(f"Did not manage to register compute provider {name}")
                raise ProviderUnavailable(
                    f"Compute provider {name} not available after {self._wait_timeout}s"
                )
            await asyncio.sleep(self._poll_interval)

    # =========================================================================
    # Configuration events
    # =========================================================================

    def _on_configuration_event(self, event: ConfigurationEvent) -> None:
        if event.factory_pid != COMPUTE_FACTORY_PID:
            return
        name = event.properties.get("name")
        if event.type is ConfigurationEventType.DELETED:
            if name:
                self.detach(name)
            return
        self._build_and_attach(event.properties)

    def _build_and_attach(self, properties: dict[str, Any]) -> bool:
        if not properties.get("name"):
            logger.warning(f"Ignoring compute configuration without a name: {properties.get(SERVICE_PID_KEY)}")
            return False
        spec = spec_from_properties(properties)
        factory = self._factories.get(spec.kind or "")
        if factory is None:
            logger.warning(f"No compute provider factory for {spec.kind!r} (context {spec.context_name})")
            return False
        try:
            provider = factory(spec)
        except Exception as e:
            PROVIDER_REGISTRATIONS.labels(outcome="failure").inc()
            logger.error(f"Failed to create compute provider {spec.context_name}: {e}")
            return False
        self._creations += 1
        self.attach(provider)
        return True

    async def close(self) -> None:
        """Close every attached provider."""
        self._config_registry.remove_listener(self._on_configuration_event)
        providers = list(self._providers.values())
        self._providers.clear()
        for provider in providers:
            try:
                await provider.close()
            except Exception as e:
                logger.error(f"Error closing compute provider {provider.name}: {e}")
