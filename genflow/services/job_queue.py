"""Per-capability job queue.

Runs job handlers on independent lanes, one per capability, each with its own
in-flight limit. Failed attempts are retried with exponential backoff;
exhausted jobs are moved to the dead-letter store exactly once. Every state
change is published to listeners as a JobEvent.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol
from uuid import uuid4

import structlog

from genflow.config import Settings
from genflow.core.errors import error_code_of, is_retriable
from genflow.models.dead_letter import DeadLetter
from genflow.models.workflow import Capability

logger = structlog.get_logger()


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


class QueueJobStatus(str, Enum):
    """Lifecycle of a queue entry."""

    QUEUED = "queued"
    ACTIVE = "active"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"
    CANCELLED = "cancelled"


TERMINAL_QUEUE_STATUSES = frozenset(
    {
        QueueJobStatus.SUCCEEDED,
        QueueJobStatus.FAILED,
        QueueJobStatus.DEAD_LETTERED,
        QueueJobStatus.CANCELLED,
    }
)


class JobEventType(str, Enum):
    """Kinds of job events."""

    STARTED = "started"
    PROGRESS = "progress"
    HEARTBEAT = "heartbeat"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"
    STALLED = "stalled"
    CANCELLED = "cancelled"


TERMINAL_EVENT_TYPES = frozenset(
    {JobEventType.SUCCEEDED, JobEventType.FAILED, JobEventType.CANCELLED}
)


@dataclass
class RetryPolicy:
    """Retry limit and exponential backoff for one capability."""

    max_attempts: int = 3
    backoff_base: float = 2.0
    backoff_max: float = 60.0

    def delay_for(self, attempt: int) -> float:
        """Backoff before the attempt following ``attempt`` (1-based)."""
        return min(self.backoff_base * 2 ** (attempt - 1), self.backoff_max)


@dataclass
class JobAttempt:
    """Attempt context passed to a job handler."""

    number: int
    max_attempts: int

    @property
    def is_last_attempt(self) -> bool:
        return self.number >= self.max_attempts


@dataclass
class JobHandle:
    """A job submitted to the queue.

    The handle is shared with the submitter; only the queue mutates it.
    """

    capability: Capability
    node_id: str
    payload: dict[str, Any]
    max_attempts: int
    execution_id: str | None = None
    id: str = field(default_factory=lambda: str(uuid4()))
    status: QueueJobStatus = QueueJobStatus.QUEUED
    attempt: int = 0
    progress: int = 0
    result: Any = None
    error: str | None = None
    error_code: str | None = None
    stalled: bool = False
    details: dict[str, Any] = field(default_factory=dict)
    last_heartbeat: float = field(default_factory=time.monotonic)
    created_at: datetime = field(default_factory=utc_now)
    done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    task: asyncio.Task | None = field(default=None, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_QUEUE_STATUSES


@dataclass
class JobEvent:
    """Event emitted by the job queue."""

    type: JobEventType
    job_id: str
    capability: Capability
    node_id: str
    execution_id: str | None
    attempt: int
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "job_id": self.job_id,
            "capability": self.capability.value,
            "node_id": self.node_id,
            "execution_id": self.execution_id,
            "attempt": self.attempt,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


JobHandler = Callable[[JobHandle, JobAttempt], Awaitable[Any]]
JobListener = Callable[[JobEvent], Awaitable[None]]


class DeadLetterSink(Protocol):
    """Durable store for dead-lettered jobs."""

    async def add_dead_letter(self, entry: DeadLetter) -> DeadLetter: ...


class JobQueue:
    """Capability-laned job queue with retry, dead-lettering and liveness.

    Example usage:
        queue = JobQueue(dead_letters=store, concurrency={Capability.VIDEO_GENERATION: 2})
        queue.add_listener(on_job_event)
        handle = await queue.submit(
            Capability.VIDEO_GENERATION,
            node_id="video-1",
            payload={...},
            handler=run_prediction,
            execution_id="exec-1",
        )
        await queue.wait(handle)
    """

    def __init__(
        self,
        dead_letters: DeadLetterSink,
        concurrency: dict[Capability, int] | None = None,
        retry_policies: dict[Capability, RetryPolicy] | None = None,
        default_concurrency: int = 5,
        default_retry: RetryPolicy | None = None,
        heartbeat_timeout: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the queue.

        Args:
            dead_letters: Store receiving exhausted jobs
            concurrency: Max in-flight jobs per capability
            retry_policies: Retry policy per capability
            default_concurrency: Limit for capabilities not in ``concurrency``
            default_retry: Policy for capabilities not in ``retry_policies``
            heartbeat_timeout: Seconds of silence before a job is flagged stalled
            clock: Monotonic clock, replaceable in tests
        """
        self._dead_letters = dead_letters
        self._concurrency = dict(concurrency or {})
        self._retry_policies = dict(retry_policies or {})
        self._default_concurrency = default_concurrency
        self._default_retry = default_retry or RetryPolicy()
        self._heartbeat_timeout = heartbeat_timeout
        self._clock = clock

        self._lanes: dict[Capability, asyncio.Semaphore] = {}
        self._active: dict[Capability, int] = {}
        self._peak: dict[Capability, int] = {}
        self._jobs: dict[str, JobHandle] = {}
        self._dead_lettering: set[str] = set()
        self._listeners: list[JobListener] = []
        self._watchdog: asyncio.Task | None = None

    @classmethod
    def from_settings(cls, settings: Settings, dead_letters: DeadLetterSink) -> "JobQueue":
        """Build a queue with the configured lanes and retry policy."""
        policy = RetryPolicy(
            max_attempts=settings.job_max_attempts,
            backoff_base=settings.job_backoff_base,
            backoff_max=settings.job_backoff_max,
        )
        return cls(
            dead_letters=dead_letters,
            concurrency={
                Capability.IMAGE_GENERATION: settings.image_concurrency,
                Capability.VIDEO_GENERATION: settings.video_concurrency,
                Capability.TEXT_GENERATION: settings.text_concurrency,
                Capability.PROCESSING: settings.processing_concurrency,
                Capability.DELIVERY: settings.delivery_concurrency,
            },
            default_retry=policy,
            heartbeat_timeout=settings.heartbeat_timeout,
        )

    def add_listener(self, listener: JobListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: JobListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def retry_policy(self, capability: Capability) -> RetryPolicy:
        return self._retry_policies.get(capability, self._default_retry)

    def concurrency_limit(self, capability: Capability) -> int:
        return self._concurrency.get(capability, self._default_concurrency)

    def _lane(self, capability: Capability) -> asyncio.Semaphore:
        lane = self._lanes.get(capability)
        if lane is None:
            lane = asyncio.Semaphore(self.concurrency_limit(capability))
            self._lanes[capability] = lane
        return lane

    async def submit(
        self,
        capability: Capability,
        node_id: str,
        payload: dict[str, Any],
        handler: JobHandler,
        execution_id: str | None = None,
    ) -> JobHandle:
        """Enqueue a job on its capability lane.

        Args:
            capability: Lane to run on
            node_id: Node the job works for
            payload: Payload handed to the handler via the handle
            handler: Coroutine run once per attempt
            execution_id: Owning execution

        Returns:
            Handle tracking the job
        """
        handle = JobHandle(
            capability=capability,
            node_id=node_id,
            payload=payload,
            max_attempts=self.retry_policy(capability).max_attempts,
            execution_id=execution_id,
            last_heartbeat=self._clock(),
        )
        self._jobs[handle.id] = handle
        handle.task = asyncio.create_task(self._run(handle, handler))

        logger.debug(
            "job_enqueued",
            job_id=handle.id,
            capability=capability.value,
            node_id=node_id,
            execution_id=execution_id,
        )
        return handle

    async def _run(self, handle: JobHandle, handler: JobHandler) -> None:
        policy = self.retry_policy(handle.capability)
        lane = self._lane(handle.capability)
        try:
            while True:
                handle.attempt += 1
                attempt = JobAttempt(number=handle.attempt, max_attempts=policy.max_attempts)
                error: Exception | None = None

                async with lane:
                    self._enter(handle.capability)
                    try:
                        handle.status = QueueJobStatus.ACTIVE
                        handle.stalled = False
                        handle.last_heartbeat = self._clock()
                        await self._emit(handle, JobEventType.STARTED)
                        handle.result = await handler(handle, attempt)
                    except asyncio.CancelledError:
                        raise
                    except Exception as e:
                        error = e
                    finally:
                        self._leave(handle.capability)

                if error is None:
                    handle.status = QueueJobStatus.SUCCEEDED
                    handle.progress = 100
                    await self._emit(handle, JobEventType.SUCCEEDED, {"result": handle.result})
                    return

                handle.error = str(error)
                handle.error_code = error_code_of(error)
                retriable = is_retriable(error)

                logger.warning(
                    "job_attempt_failed",
                    job_id=handle.id,
                    capability=handle.capability.value,
                    node_id=handle.node_id,
                    attempt=attempt.number,
                    max_attempts=attempt.max_attempts,
                    retriable=retriable,
                    error=handle.error,
                )

                if not retriable:
                    handle.status = QueueJobStatus.FAILED
                    await self._emit(
                        handle,
                        JobEventType.FAILED,
                        {
                            "error": handle.error,
                            "error_code": handle.error_code,
                            "dead_lettered": False,
                        },
                    )
                    return

                if attempt.is_last_attempt:
                    dead_lettered = await self._write_dead_letter(handle, policy)
                    handle.status = (
                        QueueJobStatus.DEAD_LETTERED if dead_lettered else QueueJobStatus.FAILED
                    )
                    await self._emit(
                        handle,
                        JobEventType.FAILED,
                        {
                            "error": handle.error,
                            "error_code": handle.error_code,
                            "dead_lettered": dead_lettered,
                        },
                    )
                    return

                delay = policy.delay_for(attempt.number)
                handle.status = QueueJobStatus.RETRYING
                await self._emit(
                    handle,
                    JobEventType.RETRYING,
                    {"delay": delay, "error": handle.error, "error_code": handle.error_code},
                )
                await asyncio.sleep(delay)
        except asyncio.CancelledError:
            handle.status = QueueJobStatus.CANCELLED
            await self._emit(handle, JobEventType.CANCELLED)
            raise
        finally:
            self._jobs.pop(handle.id, None)
            handle.done.set()

    def _enter(self, capability: Capability) -> None:
        self._active[capability] = self._active.get(capability, 0) + 1
        self._peak[capability] = max(self._peak.get(capability, 0), self._active[capability])

    def _leave(self, capability: Capability) -> None:
        self._active[capability] -= 1

    async def _emit(
        self,
        handle: JobHandle,
        event_type: JobEventType,
        data: dict[str, Any] | None = None,
    ) -> None:
        event = JobEvent(
            type=event_type,
            job_id=handle.id,
            capability=handle.capability,
            node_id=handle.node_id,
            execution_id=handle.execution_id,
            attempt=handle.attempt,
            data=data or {},
        )
        for listener in list(self._listeners):
            try:
                await listener(event)
            except Exception:
                logger.exception(
                    "job_listener_failed",
                    job_id=handle.id,
                    event_type=event_type.value,
                )

    async def update_status(
        self,
        handle: JobHandle,
        progress: int | None = None,
        **details: Any,
    ) -> None:
        """Record progress or provider details for an active job.

        Counts as a heartbeat.
        """
        if handle.is_terminal:
            return
        if progress is not None:
            handle.progress = max(0, min(100, int(progress)))
        handle.details.update(details)
        handle.last_heartbeat = self._clock()
        await self._emit(
            handle,
            JobEventType.PROGRESS,
            {"progress": handle.progress, **details},
        )

    async def heartbeat(self, handle: JobHandle) -> None:
        """Signal that an active job is still alive."""
        if handle.is_terminal:
            return
        handle.last_heartbeat = self._clock()
        if handle.stalled:
            handle.stalled = False
        await self._emit(handle, JobEventType.HEARTBEAT)

    async def move_to_dead_letter(self, handle: JobHandle, reason: str) -> DeadLetter | None:
        """Persist a dead-letter entry for a job.

        Idempotent: a job is dead-lettered at most once. Write errors from
        the sink propagate and leave the job eligible for another try.

        Returns:
            The stored entry, or None if the job was already dead-lettered
        """
        if handle.status == QueueJobStatus.DEAD_LETTERED or handle.id in self._dead_lettering:
            return None
        self._dead_lettering.add(handle.id)

        entry = DeadLetter(
            job_id=handle.id,
            execution_id=handle.execution_id,
            node_id=handle.node_id,
            capability=handle.capability,
            reason=reason,
            attempts=handle.attempt,
        )
        entry.set_payload(handle.payload)
        try:
            stored = await self._dead_letters.add_dead_letter(entry)
            handle.status = QueueJobStatus.DEAD_LETTERED
        finally:
            self._dead_lettering.discard(handle.id)

        logger.error(
            "job_dead_lettered",
            job_id=handle.id,
            capability=handle.capability.value,
            node_id=handle.node_id,
            execution_id=handle.execution_id,
            attempts=handle.attempt,
            reason=reason,
        )
        await self._emit(handle, JobEventType.DEAD_LETTERED, {"reason": reason})
        return stored

    async def _write_dead_letter(self, handle: JobHandle, policy: RetryPolicy) -> bool:
        """Dead-letter an exhausted job, retrying sink errors with the job's policy.

        Returns:
            True once the entry is stored, False if every write failed
        """
        for write in range(1, policy.max_attempts + 1):
            try:
                await self.move_to_dead_letter(handle, reason=handle.error or "")
                return True
            except Exception:
                logger.exception(
                    "dead_letter_write_failed",
                    job_id=handle.id,
                    write=write,
                    max_writes=policy.max_attempts,
                )
            if write < policy.max_attempts:
                await asyncio.sleep(policy.delay_for(write))
        logger.error(
            "dead_letter_write_abandoned",
            job_id=handle.id,
            execution_id=handle.execution_id,
            node_id=handle.node_id,
        )
        return False

    def cancel(self, handle: JobHandle) -> bool:
        """Cancel a queued, active or backing-off job.

        Returns:
            True if a cancellation was requested
        """
        if handle.task is None or handle.task.done():
            return False
        handle.task.cancel()
        return True

    async def wait(self, handle: JobHandle, timeout: float | None = None) -> JobHandle:
        """Wait until a job reaches a terminal status."""
        await asyncio.wait_for(handle.done.wait(), timeout=timeout)
        return handle

    def get(self, job_id: str) -> JobHandle | None:
        return self._jobs.get(job_id)

    def list_jobs(self, execution_id: str | None = None) -> list[JobHandle]:
        """Jobs that have not finished yet."""
        return [
            j for j in self._jobs.values()
            if execution_id is None or j.execution_id == execution_id
        ]

    def in_flight(self, capability: Capability) -> int:
        return self._active.get(capability, 0)

    def peak_in_flight(self, capability: Capability) -> int:
        return self._peak.get(capability, 0)

    def find_stalled(self) -> list[JobHandle]:
        """Active jobs whose last heartbeat is older than the timeout."""
        now = self._clock()
        return [
            j for j in self._jobs.values()
            if j.status == QueueJobStatus.ACTIVE
            and not j.stalled
            and now - j.last_heartbeat > self._heartbeat_timeout
        ]

    async def check_stalled(self) -> list[JobHandle]:
        """Flag silent jobs as stalled and emit one event per job.

        Stalled jobs are not killed; a later heartbeat clears the flag.
        """
        stalled = self.find_stalled()
        for handle in stalled:
            handle.stalled = True
            logger.warning(
                "job_stalled",
                job_id=handle.id,
                capability=handle.capability.value,
                node_id=handle.node_id,
                execution_id=handle.execution_id,
                seconds_since_heartbeat=round(self._clock() - handle.last_heartbeat, 1),
            )
            await self._emit(handle, JobEventType.STALLED)
        return stalled

    def start_watchdog(self, interval: float) -> None:
        """Run check_stalled() every ``interval`` seconds in the background."""
        if self._watchdog is not None and not self._watchdog.done():
            return
        self._watchdog = asyncio.create_task(self._watch(interval))

    async def _watch(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.check_stalled()
            except Exception:
                logger.exception("job_watchdog_failed")

    async def shutdown(self) -> None:
        """Stop the watchdog and cancel every unfinished job."""
        if self._watchdog is not None:
            self._watchdog.cancel()
            await asyncio.gather(self._watchdog, return_exceptions=True)
            self._watchdog = None

        tasks = [j.task for j in self._jobs.values() if j.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("job_queue_shutdown", cancelled=len(tasks))
