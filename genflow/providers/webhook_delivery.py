"""Webhook delivery adapter.

Delivers a node's gathered inputs to the URL in its config with a single
HTTP POST. The request completes during submit(), so check_status() only
reports the recorded outcome.
"""

from typing import Any
from uuid import uuid4

import httpx
import structlog

from genflow.config import Settings, settings as default_settings
from genflow.core.errors import ProviderError
from genflow.models.workflow import Capability
from genflow.providers.base import ProviderAdapter, ProviderHandle, ProviderStatus

logger = structlog.get_logger()


class WebhookDeliveryAdapter(ProviderAdapter):
    """Posts artifacts to an external endpoint."""

    name = "webhook_delivery"

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings or default_settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self._settings.delivery_timeout)
        self._outcomes: dict[str, ProviderStatus] = {}

    async def submit(
        self,
        capability: Capability,
        payload: dict[str, Any],
    ) -> ProviderHandle:
        config = payload.get("config", {})
        url = config.get("url")
        if not url:
            raise ProviderError(
                f"Delivery node '{payload.get('node_id')}' has no url configured",
                error_code="DELIVERY_MISCONFIGURED",
                retriable=False,
            )

        body = {
            "node_id": payload.get("node_id"),
            "artifacts": payload.get("inputs", {}),
        }
        try:
            response = await self._client.post(
                url,
                json=body,
                headers=config.get("headers") or {},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ProviderError(
                f"Delivery endpoint returned {e.response.status_code}",
                error_code=f"DELIVERY_HTTP_{e.response.status_code}",
            ) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Delivery failed: {e}", error_code="DELIVERY_FAILED") from e

        delivery_id = f"delivery-{uuid4()}"
        self._outcomes[delivery_id] = ProviderStatus(
            status="succeeded",
            output={"url": url, "status_code": response.status_code},
        )
        logger.info(
            "artifact_delivered",
            delivery_id=delivery_id,
            node_id=payload.get("node_id"),
            status_code=response.status_code,
        )
        return ProviderHandle(prediction_id=delivery_id, capability=capability)

    async def check_status(self, handle: ProviderHandle) -> ProviderStatus:
        outcome = self._outcomes.pop(handle.prediction_id, None)
        if outcome is None:
            # Outcomes live in memory only; a restart loses them.
            return ProviderStatus(
                status="failed",
                error=f"Unknown delivery '{handle.prediction_id}'",
            )
        return outcome

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
