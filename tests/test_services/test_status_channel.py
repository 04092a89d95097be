"""Tests for pushed status snapshots."""

import asyncio

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import make_graph
from genflow.models.execution import ExecutionRecord, ExecutionStatus
from genflow.models.workflow import NodeKind
from genflow.services.execution_service import ExecutionEngine, ExecutionService
from genflow.services.status_channel import ExecutionSnapshot, StatusChannel, StatusHub
from genflow.services.workflow_service import WorkflowService


def snapshot(sequence: int, status: ExecutionStatus = ExecutionStatus.RUNNING) -> ExecutionSnapshot:
    return ExecutionSnapshot(
        execution_id="exec-1",
        sequence=sequence,
        status=status,
        node_results={},
        jobs={},
    )


class TestStatusChannel:
    """Tests for StatusChannel fan-out."""

    @pytest.mark.asyncio
    async def test_subscriber_receives_in_order_until_close(self):
        channel = StatusChannel("exec-1")
        subscription = channel.subscribe()

        for sequence in (1, 2, 3):
            channel.publish(snapshot(sequence))
        channel.close()

        received = [s.sequence async for s in subscription]
        assert received == [1, 2, 3]
        assert channel.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_full_buffer_drops_oldest(self):
        """Test a slow subscriber keeps the newest snapshots."""
        channel = StatusChannel("exec-1", buffer_size=2)
        subscription = channel.subscribe()

        for sequence in range(1, 6):
            channel.publish(snapshot(sequence))

        assert subscription.dropped == 3
        assert (await subscription.get()).sequence == 4
        assert (await subscription.get()).sequence == 5

    @pytest.mark.asyncio
    async def test_late_subscriber_primed_with_latest(self):
        channel = StatusChannel("exec-1")
        channel.publish(snapshot(1))
        channel.publish(snapshot(2))

        subscription = channel.subscribe()

        assert (await subscription.get()).sequence == 2

    @pytest.mark.asyncio
    async def test_subscribing_to_closed_channel_ends_immediately(self):
        channel = StatusChannel("exec-1")
        channel.publish(snapshot(4, ExecutionStatus.COMPLETED))
        channel.close()

        received = [s.sequence async for s in channel.subscribe()]

        assert received == [4]


class TestStatusHub:
    def test_publish_builds_snapshot_from_record(self):
        hub = StatusHub()
        record = ExecutionRecord(
            id="exec-9",
            workflow_id="wf-1",
            graph=make_graph([("a", NodeKind.INPUT)], []),
            sequence=12,
        )

        published = hub.publish(record)

        assert published.execution_id == "exec-9"
        assert published.sequence == 12
        assert hub.get("exec-9") is not None

        hub.close("exec-9")
        assert hub.get("exec-9") is None

    def test_snapshot_dict_round_trip_keeps_fields(self):
        original = snapshot(3, ExecutionStatus.FAILED)
        original.last_failed_node_id = "video"
        original.error = "Node 'video' failed"

        restored = ExecutionSnapshot.from_dict(original.to_dict())

        assert restored.status == ExecutionStatus.FAILED
        assert restored.last_failed_node_id == "video"
        assert restored.is_terminal
        assert original.to_sse().startswith("data: ")


class TestExecutionStream:
    """Tests for ExecutionService.stream()."""

    @pytest.mark.asyncio
    async def test_stream_follows_run_to_terminal(
        self,
        engine: ExecutionEngine,
        db_session: AsyncSession,
    ):
        service = ExecutionService(engine, WorkflowService(db_session))
        graph = make_graph(
            [("prompt", NodeKind.INPUT), ("image", NodeKind.GENERATOR)],
            [("prompt", "image")],
        )
        record = await engine.orchestrator.start(workflow_id="wf-1", graph=graph)

        received = []

        async def consume():
            async for item in service.stream(record.id):
                received.append(item)

        await asyncio.wait_for(consume(), timeout=5.0)

        sequences = [s.sequence for s in received]
        assert sequences == sorted(set(sequences))
        assert received[-1].status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_stream_of_finished_execution_yields_stored_state(
        self,
        engine: ExecutionEngine,
        db_session: AsyncSession,
    ):
        service = ExecutionService(engine, WorkflowService(db_session))
        graph = make_graph([("prompt", NodeKind.INPUT)], [])
        record = await engine.orchestrator.start(workflow_id="wf-1", graph=graph)
        final = await engine.orchestrator.wait_for_terminal(record.id, timeout=5.0)

        received = [s async for s in service.stream(record.id)]

        assert len(received) == 1
        assert received[0].sequence == final.sequence
        assert received[0].status == ExecutionStatus.COMPLETED
