"""Data models - SQLModel entities and runtime records."""

from genflow.models.dead_letter import DeadLetter, DeadLetterRead
from genflow.models.execution import (
    Execution,
    ExecutionCreate,
    ExecutionRecord,
    ExecutionStatus,
    ExecutionSummary,
    JobRecord,
    JobStatus,
    NodeResult,
    NodeStatus,
)
from genflow.models.workflow import (
    Capability,
    NodeKind,
    Workflow,
    WorkflowCreate,
    WorkflowGraph,
    WorkflowRead,
    WorkflowStatus,
    WorkflowUpdate,
    WorkflowVersion,
)

__all__ = [
    "Capability",
    "DeadLetter",
    "DeadLetterRead",
    "Execution",
    "ExecutionCreate",
    "ExecutionRecord",
    "ExecutionStatus",
    "ExecutionSummary",
    "JobRecord",
    "JobStatus",
    "NodeKind",
    "NodeResult",
    "NodeStatus",
    "Workflow",
    "WorkflowCreate",
    "WorkflowGraph",
    "WorkflowRead",
    "WorkflowStatus",
    "WorkflowUpdate",
    "WorkflowVersion",
]
