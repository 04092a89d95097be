"""Execution entity models.

Defines the runtime records an execution is made of (node results, jobs,
the execution record itself) and the Execution table that persists them.
The full record is stored as JSON so the orchestrator can rebuild its
runtime state from a single row.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlmodel import Column, Field, SQLModel, Text

from genflow.models.workflow import Capability, WorkflowGraph


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


class ExecutionStatus(str, Enum):
    """Execution lifecycle status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_EXECUTION_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)


class NodeStatus(str, Enum):
    """Per-node progress within one execution."""

    IDLE = "idle"
    PROCESSING = "processing"
    COMPLETE = "complete"
    ERROR = "error"


class JobStatus(str, Enum):
    """Status of one external prediction."""

    STARTING = "starting"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


TERMINAL_JOB_STATUSES = frozenset(
    {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELED}
)


class NodeResult(SQLModel):
    """Outcome of one node within one execution."""

    node_id: str
    status: NodeStatus = NodeStatus.IDLE
    output: Any = None
    error: str | None = None
    error_code: str | None = None
    cost: float | None = None
    attempts: int = 0
    debug_payload: dict[str, Any] | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def reset(self) -> None:
        """Return the node to idle for a resumed run."""
        self.status = NodeStatus.IDLE
        self.output = None
        self.error = None
        self.error_code = None
        self.cost = None
        self.started_at = None
        self.completed_at = None

    def mark_processing(self) -> None:
        self.status = NodeStatus.PROCESSING
        self.error = None
        self.error_code = None
        self.started_at = self.started_at or utc_now()

    def mark_complete(self, output: Any, cost: float | None = None) -> None:
        self.status = NodeStatus.COMPLETE
        self.output = output
        self.cost = cost
        self.error = None
        self.error_code = None
        self.completed_at = utc_now()

    def mark_error(self, error: str, error_code: str | None = None) -> None:
        self.status = NodeStatus.ERROR
        self.error = error
        self.error_code = error_code
        self.completed_at = utc_now()


class JobRecord(SQLModel):
    """One external prediction started on behalf of a node.

    ``prediction_id`` is the provider's handle; ``queue_job_id`` identifies
    the job queue entry that owns it across retries.
    """

    prediction_id: str
    node_id: str
    queue_job_id: str
    capability: Capability
    status: JobStatus = JobStatus.STARTING
    progress: int = Field(default=0, ge=0, le=100)
    output: Any = None
    error: str | None = None
    cost: float | None = None
    attempt: int = 1
    stalled: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    last_heartbeat_at: datetime = Field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


class ExecutionRecord(SQLModel):
    """Complete state of one execution.

    Mutated only by the orchestrator and persisted after every mutation.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    workflow_id: str
    workflow_version: int = 1
    graph: WorkflowGraph
    status: ExecutionStatus = ExecutionStatus.PENDING
    scope_node_ids: list[str] = Field(default_factory=list)
    debug_mode: bool = False
    node_results: dict[str, NodeResult] = Field(default_factory=dict)
    jobs: dict[str, JobRecord] = Field(default_factory=dict)
    job_history: list[JobRecord] = Field(default_factory=list)
    propagated_node_ids: list[str] = Field(default_factory=list)
    last_failed_node_id: str | None = None
    error: str | None = None
    error_code: str | None = None
    resume_count: int = 0
    sequence: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EXECUTION_STATUSES

    @property
    def total_cost(self) -> float:
        return sum(r.cost or 0.0 for r in self.node_results.values())

    def live_job_for(self, node_id: str) -> JobRecord | None:
        """The non-terminal job of a node, if any."""
        for job in self.jobs.values():
            if job.node_id == node_id and not job.is_terminal:
                return job
        return None

    def archive_job(self, prediction_id: str) -> JobRecord | None:
        """Move a job from the live map into history."""
        job = self.jobs.pop(prediction_id, None)
        if job is not None:
            self.job_history.append(job)
        return job

    def nodes_with_status(self, status: NodeStatus) -> list[str]:
        return [n for n, r in self.node_results.items() if r.status == status]


class Execution(SQLModel, table=True):
    """Execution database entity.

    Queryable columns are kept beside the JSON ``state`` blob holding the
    complete ExecutionRecord.
    """

    __tablename__ = "execution"

    id: str = Field(
        primary_key=True,
        description="Unique execution identifier (UUID)",
    )
    workflow_id: str = Field(
        index=True,
        description="Associated workflow ID",
    )
    workflow_version: int = Field(default=1, ge=1)
    status: ExecutionStatus = Field(
        default=ExecutionStatus.PENDING,
        index=True,
        description="Current execution status",
    )
    debug_mode: bool = Field(default=False)
    state: str = Field(
        sa_column=Column(Text, nullable=False),
        description="JSON ExecutionRecord",
    )
    error: str | None = Field(
        default=None,
        sa_column=Column(Text, nullable=True),
        description="Error message if execution failed",
    )
    error_code: str | None = Field(
        default=None,
        max_length=100,
        description="Error code for programmatic error handling",
    )
    sequence: int = Field(default=0, ge=0)
    created_at: datetime = Field(
        default_factory=utc_now,
        description="Creation timestamp (UTC)",
    )
    completed_at: datetime | None = Field(
        default=None,
        description="Execution completion timestamp (UTC)",
    )

    def get_record(self) -> ExecutionRecord:
        """Parse the stored state into an ExecutionRecord."""
        return ExecutionRecord.model_validate_json(self.state)

    def set_record(self, record: ExecutionRecord) -> None:
        """Store a record, refreshing the queryable columns."""
        self.workflow_id = record.workflow_id
        self.workflow_version = record.workflow_version
        self.status = record.status
        self.debug_mode = record.debug_mode
        self.error = record.error
        self.error_code = record.error_code
        self.sequence = record.sequence
        self.created_at = record.created_at
        self.completed_at = record.completed_at
        self.state = record.model_dump_json()

    @classmethod
    def from_record(cls, record: ExecutionRecord) -> "Execution":
        row = cls(id=record.id, workflow_id=record.workflow_id, state="{}")
        row.set_record(record)
        return row


class ExecutionCreate(SQLModel):
    """Schema for a run request."""

    workflow_id: str
    workflow_version: int | None = Field(
        default=None,
        ge=1,
        description="Version to run (defaults to the workflow's current version)",
    )
    node_ids: list[str] | None = Field(
        default=None,
        description="Run only these nodes (plus satisfied ancestors)",
    )
    debug_mode: bool = Field(
        default=False,
        description="Complete generator nodes with placeholders instead of calling providers",
    )
    known_outputs: dict[str, Any] = Field(
        default_factory=dict,
        description="Outputs of nodes already produced elsewhere, by node ID",
    )


class ExecutionSummary(SQLModel):
    """Schema for execution list entries."""

    id: str
    workflow_id: str
    workflow_version: int
    status: ExecutionStatus
    debug_mode: bool
    error: str | None
    error_code: str | None
    created_at: datetime
    completed_at: datetime | None

    @classmethod
    def from_record(cls, record: ExecutionRecord) -> "ExecutionSummary":
        return cls(
            id=record.id,
            workflow_id=record.workflow_id,
            workflow_version=record.workflow_version,
            status=record.status,
            debug_mode=record.debug_mode,
            error=record.error,
            error_code=record.error_code,
            created_at=record.created_at,
            completed_at=record.completed_at,
        )
