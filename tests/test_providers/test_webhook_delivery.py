"""Tests for the webhook delivery adapter."""

import json

import httpx
import pytest

from genflow.config import Settings
from genflow.core.errors import ProviderError
from genflow.models.workflow import Capability
from genflow.providers.base import ProviderHandle
from genflow.providers.webhook_delivery import WebhookDeliveryAdapter


def make_adapter(status_code: int = 200) -> tuple[WebhookDeliveryAdapter, list[httpx.Request]]:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status_code, json={"ok": status_code < 400})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WebhookDeliveryAdapter(Settings(), client=client), requests


class TestWebhookDeliveryAdapter:
    @pytest.mark.asyncio
    async def test_delivers_inputs_and_reports_outcome_once(self):
        adapter, requests = make_adapter()

        handle = await adapter.submit(
            Capability.DELIVERY,
            {
                "node_id": "publish",
                "config": {"url": "http://hooks.test/artifacts", "headers": {"X-Key": "k"}},
                "inputs": {"input": {"video": "fox.mp4"}},
            },
        )

        assert requests[0].headers["X-Key"] == "k"
        assert json.loads(requests[0].content) == {
            "node_id": "publish",
            "artifacts": {"input": {"video": "fox.mp4"}},
        }

        status = await adapter.check_status(handle)
        assert status.status == "succeeded"
        assert status.output == {"url": "http://hooks.test/artifacts", "status_code": 200}

        again = await adapter.check_status(handle)
        assert again.status == "failed"

    @pytest.mark.asyncio
    async def test_missing_url_not_retriable(self):
        adapter, requests = make_adapter()

        with pytest.raises(ProviderError) as exc_info:
            await adapter.submit(
                Capability.DELIVERY,
                {"node_id": "publish", "config": {}, "inputs": {}},
            )

        assert exc_info.value.error_code == "DELIVERY_MISCONFIGURED"
        assert exc_info.value.retriable is False
        assert requests == []

    @pytest.mark.asyncio
    async def test_endpoint_error_is_retriable(self):
        adapter, _ = make_adapter(status_code=502)

        with pytest.raises(ProviderError) as exc_info:
            await adapter.submit(
                Capability.DELIVERY,
                {"node_id": "publish", "config": {"url": "http://hooks.test"}, "inputs": {}},
            )

        assert exc_info.value.error_code == "DELIVERY_HTTP_502"
        assert exc_info.value.retriable is True

    @pytest.mark.asyncio
    async def test_unknown_handle_reports_failure(self):
        adapter, _ = make_adapter()

        status = await adapter.check_status(
            ProviderHandle(prediction_id="delivery-missing", capability=Capability.DELIVERY)
        )

        assert status.status == "failed"
        assert "delivery-missing" in status.error
