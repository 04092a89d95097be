"""Tests for execution, dead-letter and webhook endpoints."""

import pytest
import pytest_asyncio
from httpx import AsyncClient

from conftest import ScriptedAdapter
from genflow.services.execution_service import ExecutionEngine


@pytest_asyncio.fixture
async def workflow(client: AsyncClient) -> dict:
    response = await client.post(
        "/api/v1/workflows",
        json={
            "name": "Fox pipeline",
            "graph": {
                "nodes": [
                    {"id": "prompt", "type": "input", "config": {"value": "a fox"}},
                    {"id": "image", "type": "generator", "capability": "image_generation"},
                    {"id": "publish", "type": "delivery", "config": {"url": "http://hooks.test"}},
                ],
                "edges": [
                    {"source": "prompt", "target": "image"},
                    {"source": "image", "target": "publish"},
                ],
            },
        },
    )
    assert response.status_code == 201
    return response.json()


class TestRunExecution:
    """Tests for starting and inspecting executions."""

    @pytest.mark.asyncio
    async def test_run_in_debug_mode(
        self,
        client: AsyncClient,
        engine: ExecutionEngine,
        adapter: ScriptedAdapter,
        workflow: dict,
    ):
        """Test generators complete with placeholders without provider calls."""
        response = await client.post(
            "/api/v1/executions",
            json={"workflow_id": workflow["id"], "debug_mode": True},
        )

        assert response.status_code == 201
        started = response.json()
        assert started["workflow_version"] == 1
        assert started["debug_mode"] is True

        await engine.orchestrator.wait_for_terminal(started["id"], timeout=5.0)

        response = await client.get(f"/api/v1/executions/{started['id']}")
        data = response.json()
        assert data["status"] == "completed"
        assert "placehold.co" in data["node_results"]["image"]["output"]["image"]
        assert [p["node_id"] for p in adapter.submitted] == ["publish"]

    @pytest.mark.asyncio
    async def test_run_subset_with_known_outputs(
        self,
        client: AsyncClient,
        engine: ExecutionEngine,
        adapter: ScriptedAdapter,
        workflow: dict,
    ):
        response = await client.post(
            "/api/v1/executions",
            json={
                "workflow_id": workflow["id"],
                "node_ids": ["publish"],
                "known_outputs": {"image": {"image": "fox.png"}},
            },
        )
        assert response.status_code == 201

        final = await engine.orchestrator.wait_for_terminal(response.json()["id"], timeout=5.0)

        assert final.status.value == "completed"
        assert [p["node_id"] for p in adapter.submitted] == ["publish"]

    @pytest.mark.asyncio
    async def test_run_unknown_workflow(self, client: AsyncClient):
        response = await client.post(
            "/api/v1/executions",
            json={"workflow_id": "non-existent-id"},
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_run_subset_missing_upstream(self, client: AsyncClient, workflow: dict):
        """Test a subset whose dependencies are unsatisfied is rejected."""
        response = await client.post(
            "/api/v1/executions",
            json={"workflow_id": workflow["id"], "node_ids": ["publish"]},
        )

        assert response.status_code == 422
        assert response.json()["detail"]["errors"]

    @pytest.mark.asyncio
    async def test_get_unknown_execution(self, client: AsyncClient):
        response = await client.get("/api/v1/executions/non-existent-id")
        assert response.status_code == 404

        response = await client.get("/api/v1/executions/non-existent-id/stream")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_list_executions(
        self,
        client: AsyncClient,
        engine: ExecutionEngine,
        workflow: dict,
    ):
        response = await client.post(
            "/api/v1/executions",
            json={"workflow_id": workflow["id"], "debug_mode": True},
        )
        execution_id = response.json()["id"]
        await engine.orchestrator.wait_for_terminal(execution_id, timeout=5.0)

        listed = await client.get(
            "/api/v1/executions",
            params={"workflow_id": workflow["id"], "status": "completed"},
        )

        assert [e["id"] for e in listed.json()] == [execution_id]


class TestStopAndResume:
    @pytest.mark.asyncio
    async def test_stop_finished_execution_conflicts(
        self,
        client: AsyncClient,
        engine: ExecutionEngine,
        workflow: dict,
    ):
        response = await client.post(
            "/api/v1/executions",
            json={"workflow_id": workflow["id"], "debug_mode": True},
        )
        execution_id = response.json()["id"]
        await engine.orchestrator.wait_for_terminal(execution_id, timeout=5.0)

        stop = await client.post(f"/api/v1/executions/{execution_id}/stop")
        resume = await client.post(f"/api/v1/executions/{execution_id}/resume")

        assert stop.status_code == 409
        assert resume.status_code == 409

    @pytest.mark.asyncio
    async def test_failed_run_dead_letters_and_resumes(
        self,
        client: AsyncClient,
        engine: ExecutionEngine,
        adapter: ScriptedAdapter,
        workflow: dict,
    ):
        adapter.scripts["image"] = [["failed"], ["failed"], ["failed"], ["succeeded"]]

        response = await client.post(
            "/api/v1/executions",
            json={"workflow_id": workflow["id"]},
        )
        execution_id = response.json()["id"]
        failed = await engine.orchestrator.wait_for_terminal(execution_id, timeout=5.0)
        assert failed.status.value == "failed"
        assert failed.last_failed_node_id == "image"

        letters = await client.get(
            "/api/v1/dead-letters",
            params={"execution_id": execution_id},
        )
        assert letters.status_code == 200
        entries = letters.json()
        assert len(entries) == 1
        assert entries[0]["node_id"] == "image"
        assert entries[0]["attempts"] == 3

        resumed = await client.post(f"/api/v1/executions/{execution_id}/resume")
        assert resumed.status_code == 200

        final = await engine.orchestrator.wait_for_terminal(execution_id, timeout=5.0)
        assert final.status.value == "completed"
        assert final.node_results["prompt"].output == "a fox"


class TestWebhooksAndHealth:
    @pytest.mark.asyncio
    async def test_prediction_callback_acknowledged(self, client: AsyncClient):
        response = await client.post(
            "/api/v1/webhooks/predictions",
            json={"id": "pred-unknown", "status": "succeeded", "output": ["x.png"]},
        )

        assert response.status_code == 202
        assert response.json() == {"prediction_id": "pred-unknown", "matched": False}

    @pytest.mark.asyncio
    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, client: AsyncClient):
        response = await client.get("/health", headers={"x-request-id": "req-42"})

        assert response.headers["x-request-id"] == "req-42"
