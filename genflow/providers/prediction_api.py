"""HTTP prediction API adapter.

Talks to a Replicate-style prediction API:
- POST /models/{owner}/{name}/predictions starts a prediction
- GET /predictions/{id} reports its status
- POST /predictions/{id}/cancel aborts it
"""

from typing import Any

import httpx
import structlog

from genflow.config import Settings, settings as default_settings
from genflow.core.errors import ProviderError
from genflow.models.workflow import Capability
from genflow.providers.base import ProviderAdapter, ProviderHandle, ProviderStatus

logger = structlog.get_logger()

# Config keys consumed by the engine, never forwarded to the provider.
ENGINE_CONFIG_KEYS = frozenset({"required_inputs", "model", "value"})


class PredictionApiAdapter(ProviderAdapter):
    """Adapter for generation and processing predictions.

    Example usage:
        adapter = PredictionApiAdapter()
        handle = await adapter.submit(
            Capability.IMAGE_GENERATION,
            {"node_id": "img-1", "config": {"prompt": "a fox"}, "inputs": {}},
        )
        status = await adapter.check_status(handle)
    """

    name = "prediction_api"
    supports_cancel = True

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the adapter.

        Args:
            settings: Settings to read URL, token and models from
            client: Pre-built HTTP client (tests pass one with a mock transport)
        """
        self._settings = settings or default_settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self._settings.prediction_api_url,
            timeout=self._settings.prediction_api_timeout,
            headers=self._auth_headers(),
        )
        self._models = {
            Capability.IMAGE_GENERATION: self._settings.image_model,
            Capability.VIDEO_GENERATION: self._settings.video_model,
            Capability.TEXT_GENERATION: self._settings.text_model,
            Capability.PROCESSING: self._settings.processing_model,
        }

    def _auth_headers(self) -> dict[str, str]:
        token = self._settings.prediction_api_token
        if token is None:
            return {}
        return {"Authorization": f"Bearer {token.get_secret_value()}"}

    def build_input(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Merge node config and gathered inputs into the prediction input."""
        config = payload.get("config", {})
        prediction_input = {
            k: v for k, v in config.items() if k not in ENGINE_CONFIG_KEYS
        }
        prediction_input.update(payload.get("inputs", {}))
        return prediction_input

    async def submit(
        self,
        capability: Capability,
        payload: dict[str, Any],
    ) -> ProviderHandle:
        model = payload.get("config", {}).get("model") or self._models.get(capability)
        if not model:
            raise ProviderError(
                f"No model configured for capability '{capability.value}'",
                error_code="PROVIDER_MISCONFIGURED",
                retriable=False,
            )

        body: dict[str, Any] = {"input": self.build_input(payload)}
        if self._settings.prediction_callback_url:
            body["webhook"] = self._settings.prediction_callback_url
            body["webhook_events_filter"] = ["completed"]

        data = await self._request("POST", f"/models/{model}/predictions", json=body)

        logger.info(
            "prediction_submitted",
            prediction_id=data["id"],
            capability=capability.value,
            model=model,
            node_id=payload.get("node_id"),
        )
        return ProviderHandle(
            prediction_id=data["id"],
            capability=capability,
            metadata={"model": model},
        )

    async def check_status(self, handle: ProviderHandle) -> ProviderStatus:
        data = await self._request("GET", f"/predictions/{handle.prediction_id}")
        metrics = data.get("metrics") or {}
        return ProviderStatus(
            status=data.get("status", "processing"),
            output=data.get("output"),
            error=data.get("error"),
            progress=data.get("progress"),
            cost=metrics.get("cost"),
        )

    async def cancel(self, handle: ProviderHandle) -> None:
        await self._request("POST", f"/predictions/{handle.prediction_id}/cancel")
        logger.info("prediction_cancelled", prediction_id=handle.prediction_id)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        """Send a request and map failures to ProviderError.

        Client errors other than 429 are not retriable.
        """
        try:
            response = await self._client.request(method, url, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            logger.warning(
                "prediction_api_http_error",
                method=method,
                url=url,
                status_code=status_code,
            )
            raise ProviderError(
                f"Prediction API returned {status_code}: {e.response.text[:200]}",
                error_code=f"PROVIDER_HTTP_{status_code}",
                retriable=status_code == 429 or status_code >= 500,
            ) from e
        except httpx.HTTPError as e:
            logger.warning(
                "prediction_api_unreachable",
                method=method,
                url=url,
                error=str(e),
            )
            raise ProviderError(f"Prediction API request failed: {e}") from e
