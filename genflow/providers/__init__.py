"""Provider adapters - the boundary to external generation services."""

from genflow.providers.base import ProviderAdapter, ProviderHandle, ProviderStatus
from genflow.providers.prediction_api import PredictionApiAdapter
from genflow.providers.registry import ProviderRegistry, ProviderRegistryError
from genflow.providers.webhook_delivery import WebhookDeliveryAdapter

__all__ = [
    "PredictionApiAdapter",
    "ProviderAdapter",
    "ProviderHandle",
    "ProviderRegistry",
    "ProviderRegistryError",
    "ProviderStatus",
    "WebhookDeliveryAdapter",
]
