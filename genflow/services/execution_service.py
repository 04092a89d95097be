"""Execution service.

Wires the engine components together and exposes the operations the API
and CLI need: run, inspect, stream, stop, resume, dead-letter inspection and
inbound prediction callbacks.
"""

from dataclasses import dataclass
from typing import AsyncIterator

import structlog
from sqlalchemy.orm import sessionmaker

from genflow.config import Settings, settings as default_settings
from genflow.models.dead_letter import DeadLetterRead
from genflow.models.execution import (
    ExecutionCreate,
    ExecutionRecord,
    ExecutionStatus,
    ExecutionSummary,
)
from genflow.models.workflow import Capability
from genflow.providers.prediction_api import PredictionApiAdapter
from genflow.providers.registry import ProviderRegistry
from genflow.providers.webhook_delivery import WebhookDeliveryAdapter
from genflow.services.execution_store import (
    ExecutionStore,
    InMemoryExecutionStore,
    SqlExecutionStore,
)
from genflow.services.job_queue import JobQueue
from genflow.services.orchestrator import Orchestrator
from genflow.services.status_channel import ExecutionSnapshot, StatusHub
from genflow.services.workflow_service import WorkflowService

logger = structlog.get_logger()


@dataclass
class ExecutionEngine:
    """Process-wide engine components."""

    settings: Settings
    store: ExecutionStore
    queue: JobQueue
    providers: ProviderRegistry
    hub: StatusHub
    orchestrator: Orchestrator

    async def startup(self) -> None:
        """Start the stalled-job watchdog and recover interrupted executions."""
        self.queue.start_watchdog(self.settings.watchdog_interval)
        if self.settings.recover_on_startup:
            recovered = await self.orchestrator.recover_active()
            logger.info("executions_recovered", count=len(recovered))

    async def shutdown(self) -> None:
        await self.orchestrator.shutdown()
        await self.providers.close()


def default_providers(settings: Settings) -> ProviderRegistry:
    """Registry with the prediction API and webhook delivery adapters."""
    registry = ProviderRegistry()
    prediction_api = PredictionApiAdapter(settings)
    for capability in (
        Capability.IMAGE_GENERATION,
        Capability.VIDEO_GENERATION,
        Capability.TEXT_GENERATION,
        Capability.PROCESSING,
    ):
        registry.register(capability, prediction_api)
    registry.register(Capability.DELIVERY, WebhookDeliveryAdapter(settings))
    return registry


def build_engine(
    settings: Settings | None = None,
    session_maker: sessionmaker | None = None,
    providers: ProviderRegistry | None = None,
    store: ExecutionStore | None = None,
    queue: JobQueue | None = None,
) -> ExecutionEngine:
    """Assemble an engine.

    Args:
        settings: Settings (defaults to the process settings)
        session_maker: Session factory; without one records live in memory
        providers: Adapter registry (defaults to default_providers())
        store: Explicit store, overriding ``session_maker``
        queue: Explicit job queue

    Returns:
        Engine ready for startup()
    """
    settings = settings or default_settings
    if store is None:
        store = (
            SqlExecutionStore(session_maker)
            if session_maker is not None
            else InMemoryExecutionStore()
        )
    queue = queue or JobQueue.from_settings(settings, dead_letters=store)
    providers = providers or default_providers(settings)
    hub = StatusHub(buffer_size=settings.status_buffer_size)
    orchestrator = Orchestrator(store, queue, providers, hub, settings=settings)
    return ExecutionEngine(
        settings=settings,
        store=store,
        queue=queue,
        providers=providers,
        hub=hub,
        orchestrator=orchestrator,
    )


# Will be set by init_engine
_engine: ExecutionEngine | None = None


def init_engine(engine: ExecutionEngine) -> None:
    """Install the process-wide engine."""
    global _engine
    _engine = engine
    logger.info("execution_engine_initialized")


def get_engine() -> ExecutionEngine:
    """Get the process-wide engine.

    Raises:
        RuntimeError: If init_engine() has not been called
    """
    if _engine is None:
        raise RuntimeError("Execution engine is not initialized")
    return _engine


class ExecutionService:
    """Service for running and inspecting executions.

    Example usage:
        service = ExecutionService(engine, WorkflowService(session))
        record = await service.run(ExecutionCreate(workflow_id="wf-1"))
        async for snapshot in service.stream(record.id):
            print(snapshot.status)
    """

    def __init__(
        self,
        engine: ExecutionEngine,
        workflow_service: WorkflowService,
    ) -> None:
        self._engine = engine
        self._workflow_service = workflow_service

    async def run(self, data: ExecutionCreate) -> ExecutionRecord:
        """Start an execution of a workflow version.

        Raises:
            WorkflowNotFoundError: If the workflow or version doesn't exist
            ValidationError: If the graph or request is invalid
        """
        graph, version = await self._workflow_service.get_graph(
            data.workflow_id,
            data.workflow_version,
        )
        return await self._engine.orchestrator.start(
            workflow_id=data.workflow_id,
            graph=graph,
            workflow_version=version,
            node_ids=data.node_ids,
            debug_mode=data.debug_mode,
            known_outputs=data.known_outputs,
        )

    async def get(self, execution_id: str) -> ExecutionRecord:
        """Get the authoritative record.

        Raises:
            ExecutionNotFoundError: If the execution doesn't exist
        """
        return await self._engine.store.get(execution_id)

    async def list_all(
        self,
        workflow_id: str | None = None,
        status: ExecutionStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ExecutionSummary]:
        records = await self._engine.store.list_all(
            workflow_id=workflow_id,
            status=status,
            limit=limit,
            offset=offset,
        )
        return [ExecutionSummary.from_record(r) for r in records]

    async def stop(self, execution_id: str) -> ExecutionRecord:
        return await self._engine.orchestrator.stop(execution_id)

    async def resume(self, execution_id: str) -> ExecutionRecord:
        return await self._engine.orchestrator.resume(execution_id)

    async def stream(self, execution_id: str) -> AsyncIterator[ExecutionSnapshot]:
        """Yield the current state, then pushed snapshots until terminal.

        Snapshots older than one already yielded are skipped.

        Raises:
            ExecutionNotFoundError: If the execution doesn't exist
        """
        channel = self._engine.hub.get(execution_id)
        subscription = channel.subscribe() if channel is not None else None
        try:
            record = await self._engine.store.get(execution_id)
            current = ExecutionSnapshot.from_record(record)
            yield current
            if subscription is None or current.is_terminal:
                return

            async for snapshot in subscription:
                if snapshot.sequence <= current.sequence:
                    continue
                current = snapshot
                yield snapshot
                if snapshot.is_terminal:
                    return
        finally:
            if subscription is not None:
                subscription.close()

    async def list_dead_letters(
        self,
        execution_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[DeadLetterRead]:
        entries = await self._engine.store.list_dead_letters(
            execution_id=execution_id,
            limit=limit,
            offset=offset,
        )
        return [DeadLetterRead.from_entity(e) for e in entries]

    def handle_prediction_callback(self, prediction_id: str) -> bool:
        """Route an inbound completion callback to its waiting poller."""
        return self._engine.orchestrator.handle_callback(prediction_id)
