"""Pytest configuration and fixtures.

Provides common fixtures for all tests including:
- Database sessions
- A scripted provider adapter
- An in-process execution engine with fast polling
- HTTP test client
"""

import asyncio
import time
from typing import Any, AsyncGenerator, Callable
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from genflow.api.deps import get_db_session
from genflow.config import Settings
from genflow.core.errors import ProviderError
from genflow.core.poller import PollOptions
from genflow.main import app
from genflow.models.workflow import (
    Capability,
    NodeKind,
    WorkflowGraph,
    WorkflowGraphEdge,
    WorkflowGraphNode,
)
from genflow.providers.base import ProviderAdapter, ProviderHandle, ProviderStatus
from genflow.providers.registry import ProviderRegistry
from genflow.services.execution_service import ExecutionEngine, get_engine
from genflow.services.execution_store import InMemoryExecutionStore
from genflow.services.job_queue import JobQueue, RetryPolicy
from genflow.services.orchestrator import Orchestrator
from genflow.services.status_channel import StatusHub


# Test database URL (uses SQLite for speed)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class ScriptedAdapter(ProviderAdapter):
    """Provider whose predictions follow per-node status scripts.

    ``scripts[node_id]`` is a list with one entry per attempt; each entry is
    the sequence of statuses check_status() reports (the last one repeats).
    Nodes without a script go processing then succeeded.
    """

    name = "scripted"
    supports_cancel = True

    def __init__(self, scripts: dict[str, list[list[str]]] | None = None) -> None:
        self.scripts = scripts or {}
        self.submitted: list[dict[str, Any]] = []
        self.cancelled: list[str] = []
        self.submit_errors: dict[str, list[Exception]] = {}
        self._predictions: dict[str, dict[str, Any]] = {}
        self._attempts: dict[str, int] = {}
        self.live = 0
        self.peak_live = 0

    def submitted_for(self, node_id: str) -> list[dict[str, Any]]:
        return [p for p in self.submitted if p["node_id"] == node_id]

    async def submit(self, capability: Capability, payload: dict[str, Any]) -> ProviderHandle:
        node_id = payload["node_id"]
        errors = self.submit_errors.get(node_id)
        if errors:
            raise errors.pop(0)

        attempt = self._attempts.get(node_id, 0)
        self._attempts[node_id] = attempt + 1
        plans = self.scripts.get(node_id) or [["processing", "succeeded"]]
        statuses = list(plans[min(attempt, len(plans) - 1)])

        prediction_id = f"pred-{node_id}-{uuid4().hex[:8]}"
        self._predictions[prediction_id] = {
            "node_id": node_id,
            "statuses": statuses,
            "terminal": False,
        }
        self.submitted.append(payload)
        self.live += 1
        self.peak_live = max(self.peak_live, self.live)
        return ProviderHandle(prediction_id=prediction_id, capability=capability)

    async def check_status(self, handle: ProviderHandle) -> ProviderStatus:
        prediction = self._predictions[handle.prediction_id]
        statuses = prediction["statuses"]
        status = statuses.pop(0) if len(statuses) > 1 else statuses[0]
        if status in ("succeeded", "failed", "canceled") and not prediction["terminal"]:
            prediction["terminal"] = True
            self.live -= 1
        if status == "succeeded":
            return ProviderStatus(
                status=status,
                output={"output": f"result:{prediction['node_id']}"},
                cost=0.01,
            )
        if status == "failed":
            return ProviderStatus(status=status, error="model crashed")
        return ProviderStatus(status=status)

    async def cancel(self, handle: ProviderHandle) -> None:
        self.cancelled.append(handle.prediction_id)


def make_graph(
    nodes: list[tuple[str, NodeKind] | tuple[str, NodeKind, dict[str, Any]]],
    edges: list[tuple[str, str]],
) -> WorkflowGraph:
    """Build a graph from (id, kind[, config]) tuples and (source, target) pairs."""
    graph_nodes = []
    for i, spec in enumerate(nodes):
        node_id, kind = spec[0], spec[1]
        config = spec[2] if len(spec) > 2 else {}
        capability = Capability.IMAGE_GENERATION if kind == NodeKind.GENERATOR else None
        graph_nodes.append(
            WorkflowGraphNode(
                id=node_id,
                type=kind,
                capability=capability,
                config=config,
                position={"x": i * 100, "y": 0},
            )
        )
    return WorkflowGraph(
        nodes=graph_nodes,
        edges=[WorkflowGraphEdge(source=s, target=t) for s, t in edges],
    )


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        database_url=TEST_DATABASE_URL,
        prediction_api_url="http://predictions.test/v1",
        prediction_api_token="test-token",
        job_backoff_base=0.0,
        heartbeat_timeout=5.0,
        recover_on_startup=False,
        debug=True,
    )


@pytest.fixture
def poll_options() -> dict[Capability, PollOptions]:
    """Poll options that make scripted predictions finish in milliseconds."""
    return {c: PollOptions(interval=0.01, max_attempts=20) for c in Capability}


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def queue_clock() -> Callable[[], float]:
    return time.monotonic


@pytest.fixture
def adapter() -> ScriptedAdapter:
    return ScriptedAdapter()


@pytest_asyncio.fixture
async def engine(
    test_settings: Settings,
    adapter: ScriptedAdapter,
    poll_options: dict[Capability, PollOptions],
    queue_clock: Callable[[], float],
) -> AsyncGenerator[ExecutionEngine, None]:
    """In-memory engine with every capability served by the scripted adapter."""
    providers = ProviderRegistry()
    for capability in Capability:
        providers.register(capability, adapter)

    store = InMemoryExecutionStore()
    queue = JobQueue(
        dead_letters=store,
        concurrency={Capability.VIDEO_GENERATION: 2},
        default_retry=RetryPolicy(max_attempts=3, backoff_base=0.0),
        heartbeat_timeout=test_settings.heartbeat_timeout,
        clock=queue_clock,
    )
    hub = StatusHub(buffer_size=test_settings.status_buffer_size)
    orchestrator = Orchestrator(
        store,
        queue,
        providers,
        hub,
        settings=test_settings,
        poll_options=poll_options,
    )
    engine = ExecutionEngine(
        settings=test_settings,
        store=store,
        queue=queue,
        providers=providers,
        hub=hub,
        orchestrator=orchestrator,
    )

    yield engine

    await engine.shutdown()


@pytest_asyncio.fixture
async def db_engine():
    """Create async database engine.

    StaticPool keeps every session on the same in-memory database.
    """
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_maker(db_engine) -> sessionmaker:
    return sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def db_session(session_maker: sessionmaker) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session."""
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    engine: ExecutionEngine,
) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client."""
    # Override database and engine dependencies
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db_session] = override_get_db
    app.dependency_overrides[get_engine] = lambda: engine

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    """Poll ``predicate`` until it is true or fail the test."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            pytest.fail("Condition not met before timeout")
        await asyncio.sleep(interval)


def transient_error(message: str = "upstream unavailable") -> ProviderError:
    return ProviderError(message, error_code="PROVIDER_HTTP_503")
