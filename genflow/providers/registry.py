"""Provider registry.

Maps each capability to the adapter that serves it.
"""

import structlog

from genflow.models.workflow import Capability
from genflow.providers.base import ProviderAdapter

logger = structlog.get_logger()


class ProviderRegistryError(Exception):
    """Error in provider registry operations."""

    pass


class ProviderRegistry:
    """Capability to adapter lookup.

    Example usage:
        registry = ProviderRegistry()
        registry.register(Capability.IMAGE_GENERATION, PredictionApiAdapter())
        adapter = registry.get(Capability.IMAGE_GENERATION)
    """

    def __init__(self) -> None:
        """Initialize empty registry."""
        self._adapters: dict[Capability, ProviderAdapter] = {}

    def register(
        self,
        capability: Capability,
        adapter: ProviderAdapter,
        replace: bool = False,
    ) -> None:
        """Register the adapter for a capability.

        Raises:
            ProviderRegistryError: If the capability is taken and replace is False
        """
        if capability in self._adapters and not replace:
            raise ProviderRegistryError(
                f"Capability '{capability.value}' already has an adapter"
            )
        self._adapters[capability] = adapter
        logger.debug(
            "provider_registered",
            capability=capability.value,
            provider=adapter.name,
        )

    def get(self, capability: Capability) -> ProviderAdapter:
        """Get the adapter for a capability.

        Raises:
            ProviderRegistryError: If no adapter serves the capability
        """
        adapter = self._adapters.get(capability)
        if adapter is None:
            raise ProviderRegistryError(
                f"No provider registered for capability '{capability.value}'"
            )
        return adapter

    def has(self, capability: Capability) -> bool:
        return capability in self._adapters

    @property
    def capabilities(self) -> list[Capability]:
        return list(self._adapters)

    async def close(self) -> None:
        """Close every distinct adapter once."""
        seen: set[int] = set()
        for adapter in self._adapters.values():
            if id(adapter) in seen:
                continue
            seen.add(id(adapter))
            await adapter.close()
