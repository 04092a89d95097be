"""Service layer - engine components and business operations."""

from genflow.services.execution_service import (
    ExecutionEngine,
    ExecutionService,
    build_engine,
    get_engine,
    init_engine,
)
from genflow.services.execution_store import (
    ExecutionNotFoundError,
    ExecutionStore,
    InMemoryExecutionStore,
    SqlExecutionStore,
)
from genflow.services.job_queue import JobQueue, RetryPolicy
from genflow.services.orchestrator import ExecutionStateError, Orchestrator
from genflow.services.reconciliation import ExecutionObserver
from genflow.services.status_channel import ExecutionSnapshot, StatusHub
from genflow.services.workflow_service import WorkflowService

__all__ = [
    "ExecutionEngine",
    "ExecutionNotFoundError",
    "ExecutionObserver",
    "ExecutionService",
    "ExecutionSnapshot",
    "ExecutionStateError",
    "ExecutionStore",
    "InMemoryExecutionStore",
    "JobQueue",
    "Orchestrator",
    "RetryPolicy",
    "SqlExecutionStore",
    "StatusHub",
    "WorkflowService",
    "build_engine",
    "get_engine",
    "init_engine",
]
