"""Tests for workflow API endpoints."""

import pytest
import pytest_asyncio
from httpx import AsyncClient


def graph_payload(with_cycle: bool = False) -> dict:
    edges = [{"source": "prompt", "target": "image"}]
    if with_cycle:
        edges += [
            {"source": "image", "target": "upscale"},
            {"source": "upscale", "target": "image"},
        ]
    return {
        "version": "1.0",
        "nodes": [
            {"id": "prompt", "type": "input", "config": {"value": "a fox"}},
            {"id": "image", "type": "generator", "capability": "image_generation"},
            {"id": "upscale", "type": "transform"},
        ],
        "edges": edges,
        "config": {},
    }


@pytest_asyncio.fixture
async def workflow(client: AsyncClient) -> dict:
    response = await client.post(
        "/api/v1/workflows",
        json={"name": "Product shots", "graph": graph_payload()},
    )
    assert response.status_code == 201
    return response.json()


class TestWorkflowEndpoints:
    """Tests for workflow CRUD endpoints."""

    @pytest.mark.asyncio
    async def test_list_workflows_empty(self, client: AsyncClient):
        """Test listing workflows when none exist."""
        response = await client.get("/api/v1/workflows")

        assert response.status_code == 200
        assert response.json() == []

    @pytest.mark.asyncio
    async def test_create_workflow(self, client: AsyncClient):
        """Test creating a new workflow."""
        response = await client.post(
            "/api/v1/workflows",
            json={
                "name": "My New Workflow",
                "description": "Test description",
                "graph": graph_payload(),
            },
        )

        assert response.status_code == 201
        data = response.json()
        assert data["name"] == "My New Workflow"
        assert data["status"] == "draft"
        assert data["version"] == 1
        assert len(data["graph"]["nodes"]) == 3

    @pytest.mark.asyncio
    async def test_create_workflow_with_cycle_rejected(self, client: AsyncClient):
        response = await client.post(
            "/api/v1/workflows",
            json={"name": "Loop", "graph": graph_payload(with_cycle=True)},
        )

        assert response.status_code == 422
        detail = response.json()["detail"]
        assert detail["message"] == "Invalid workflow graph"
        assert any("cycle" in e.lower() for e in detail["errors"])

    @pytest.mark.asyncio
    async def test_create_workflow_with_dangling_edge_rejected(self, client: AsyncClient):
        graph = graph_payload()
        graph["edges"].append({"source": "image", "target": "missing"})

        response = await client.post(
            "/api/v1/workflows",
            json={"name": "Broken", "graph": graph},
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_get_and_list_workflow(self, client: AsyncClient, workflow: dict):
        response = await client.get(f"/api/v1/workflows/{workflow['id']}")
        assert response.status_code == 200
        assert response.json()["name"] == "Product shots"

        listed = await client.get("/api/v1/workflows")
        assert [w["id"] for w in listed.json()] == [workflow["id"]]

    @pytest.mark.asyncio
    async def test_get_workflow_not_found(self, client: AsyncClient):
        """Test getting a non-existent workflow."""
        response = await client.get("/api/v1/workflows/non-existent-id")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_update_name_keeps_version(self, client: AsyncClient, workflow: dict):
        response = await client.put(
            f"/api/v1/workflows/{workflow['id']}",
            json={"name": "Renamed"},
        )

        assert response.status_code == 200
        assert response.json()["name"] == "Renamed"
        assert response.json()["version"] == 1

    @pytest.mark.asyncio
    async def test_graph_update_creates_version(self, client: AsyncClient, workflow: dict):
        """Test each graph change freezes a new version."""
        graph = graph_payload()
        graph["edges"].append({"source": "image", "target": "upscale"})

        response = await client.put(
            f"/api/v1/workflows/{workflow['id']}",
            json={"graph": graph},
        )
        assert response.status_code == 200
        assert response.json()["version"] == 2

        first = await client.get(f"/api/v1/workflows/{workflow['id']}/versions/1")
        second = await client.get(f"/api/v1/workflows/{workflow['id']}/versions/2")
        assert len(first.json()["graph"]["edges"]) == 1
        assert len(second.json()["graph"]["edges"]) == 2

        missing = await client.get(f"/api/v1/workflows/{workflow['id']}/versions/3")
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_invalid_graph_update_keeps_current_version(
        self,
        client: AsyncClient,
        workflow: dict,
    ):
        response = await client.put(
            f"/api/v1/workflows/{workflow['id']}",
            json={"graph": graph_payload(with_cycle=True)},
        )
        assert response.status_code == 422

        current = await client.get(f"/api/v1/workflows/{workflow['id']}")
        assert current.json()["version"] == 1

    @pytest.mark.asyncio
    async def test_activate_and_archive(self, client: AsyncClient, workflow: dict):
        activated = await client.post(f"/api/v1/workflows/{workflow['id']}/activate")
        assert activated.json()["status"] == "active"

        archived = await client.post(f"/api/v1/workflows/{workflow['id']}/archive")
        assert archived.json()["status"] == "archived"

        filtered = await client.get("/api/v1/workflows", params={"status": "active"})
        assert filtered.json() == []

    @pytest.mark.asyncio
    async def test_delete_workflow(self, client: AsyncClient, workflow: dict):
        response = await client.delete(f"/api/v1/workflows/{workflow['id']}")
        assert response.status_code == 204

        response = await client.get(f"/api/v1/workflows/{workflow['id']}")
        assert response.status_code == 404

        response = await client.delete(f"/api/v1/workflows/{workflow['id']}")
        assert response.status_code == 404
