"""Push status channel.

After every committed mutation the orchestrator publishes an
ExecutionSnapshot. Delivery is best-effort: each subscriber has a bounded
buffer and the oldest snapshot is dropped when it is full. Consumers that
need certainty reconcile against the stored record.
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator

import structlog

from genflow.models.execution import (
    ExecutionRecord,
    ExecutionStatus,
    JobRecord,
    NodeResult,
)

logger = structlog.get_logger()


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


@dataclass
class ExecutionSnapshot:
    """Point-in-time view of an execution pushed to subscribers."""

    execution_id: str
    sequence: int
    status: ExecutionStatus
    node_results: dict[str, NodeResult]
    jobs: dict[str, JobRecord]
    last_failed_node_id: str | None = None
    error: str | None = None
    timestamp: datetime = field(default_factory=utc_now)

    @classmethod
    def from_record(cls, record: ExecutionRecord) -> "ExecutionSnapshot":
        return cls(
            execution_id=record.id,
            sequence=record.sequence,
            status=record.status,
            node_results={k: v.model_copy(deep=True) for k, v in record.node_results.items()},
            jobs={k: v.model_copy(deep=True) for k, v in record.jobs.items()},
            last_failed_node_id=record.last_failed_node_id,
            error=record.error,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExecutionSnapshot":
        return cls(
            execution_id=data["execution_id"],
            sequence=data["sequence"],
            status=ExecutionStatus(data["status"]),
            node_results={
                k: NodeResult.model_validate(v) for k, v in data["node_results"].items()
            },
            jobs={k: JobRecord.model_validate(v) for k, v in data.get("jobs", {}).items()},
            last_failed_node_id=data.get("last_failed_node_id"),
            error=data.get("error"),
            timestamp=datetime.fromisoformat(data["timestamp"]) if data.get("timestamp") else utc_now(),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in (
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for SSE streaming."""
        return {
            "execution_id": self.execution_id,
            "sequence": self.sequence,
            "status": self.status.value,
            "node_results": {
                k: v.model_dump(mode="json") for k, v in self.node_results.items()
            },
            "jobs": {k: v.model_dump(mode="json") for k, v in self.jobs.items()},
            "last_failed_node_id": self.last_failed_node_id,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_sse(self) -> str:
        """Format as Server-Sent Event."""
        return f"data: {json.dumps(self.to_dict())}\n\n"


class Subscription:
    """One subscriber's bounded buffer."""

    def __init__(self, channel: "StatusChannel", buffer_size: int) -> None:
        self._channel = channel
        self._queue: asyncio.Queue[ExecutionSnapshot | None] = asyncio.Queue(maxsize=buffer_size)
        self.dropped = 0

    def offer(self, snapshot: ExecutionSnapshot | None) -> None:
        """Enqueue without blocking, evicting the oldest entry when full."""
        while True:
            try:
                self._queue.put_nowait(snapshot)
                return
            except asyncio.QueueFull:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except asyncio.QueueEmpty:
                    pass

    async def get(self) -> ExecutionSnapshot | None:
        """Next snapshot, or None once the channel is closed."""
        return await self._queue.get()

    def close(self) -> None:
        self._channel.unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[ExecutionSnapshot]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ExecutionSnapshot]:
        try:
            while True:
                snapshot = await self.get()
                if snapshot is None:
                    return
                yield snapshot
        finally:
            self.close()


class StatusChannel:
    """Fan-out of snapshots for one execution."""

    def __init__(self, execution_id: str, buffer_size: int = 100) -> None:
        self.execution_id = execution_id
        self._buffer_size = buffer_size
        self._subscribers: list[Subscription] = []
        self._last: ExecutionSnapshot | None = None
        self.closed = False

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        """Add a subscriber primed with the latest snapshot."""
        subscription = Subscription(self, self._buffer_size)
        if self._last is not None:
            subscription.offer(self._last)
        if self.closed:
            subscription.offer(None)
        else:
            self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    def publish(self, snapshot: ExecutionSnapshot) -> None:
        """Deliver a snapshot to every subscriber without waiting."""
        if self.closed:
            return
        self._last = snapshot
        for subscription in list(self._subscribers):
            subscription.offer(snapshot)

    def close(self) -> None:
        """End every subscription after its buffered snapshots."""
        if self.closed:
            return
        self.closed = True
        for subscription in list(self._subscribers):
            subscription.offer(None)
        self._subscribers.clear()


class StatusHub:
    """Registry of status channels keyed by execution ID.

    Example usage:
        hub = StatusHub(buffer_size=100)
        subscription = hub.subscribe("exec-123")
        async for snapshot in subscription:
            print(snapshot.sequence, snapshot.status)
    """

    def __init__(self, buffer_size: int = 100) -> None:
        self._buffer_size = buffer_size
        self._channels: dict[str, StatusChannel] = {}

    def open(self, execution_id: str) -> StatusChannel:
        channel = self._channels.get(execution_id)
        if channel is None or channel.closed:
            channel = StatusChannel(execution_id, self._buffer_size)
            self._channels[execution_id] = channel
        return channel

    def get(self, execution_id: str) -> StatusChannel | None:
        return self._channels.get(execution_id)

    def publish(self, record: ExecutionRecord) -> ExecutionSnapshot:
        snapshot = ExecutionSnapshot.from_record(record)
        self.open(record.id).publish(snapshot)
        return snapshot

    def subscribe(self, execution_id: str) -> Subscription:
        """Subscribe to an execution, opening its channel if needed."""
        channel = self._channels.get(execution_id) or self.open(execution_id)
        return channel.subscribe()

    def close(self, execution_id: str) -> None:
        channel = self._channels.pop(execution_id, None)
        if channel is not None:
            channel.close()
            logger.debug("status_channel_closed", execution_id=execution_id)

    def close_all(self) -> None:
        for execution_id in list(self._channels):
            self.close(execution_id)
