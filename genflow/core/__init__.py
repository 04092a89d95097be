"""Core layer - pure graph, scheduling and polling logic."""

from genflow.core.errors import (
    CycleError,
    EngineError,
    JobCancelledError,
    OrchestrationError,
    PredictionTimeoutError,
    ProviderError,
    ValidationError,
)
from genflow.core.graph import ExecutionGraph, topological_order
from genflow.core.poller import PollOptions, PollSignals, TerminalResult, poll_until_terminal

__all__ = [
    "CycleError",
    "EngineError",
    "ExecutionGraph",
    "JobCancelledError",
    "OrchestrationError",
    "PollOptions",
    "PollSignals",
    "PredictionTimeoutError",
    "ProviderError",
    "TerminalResult",
    "ValidationError",
    "poll_until_terminal",
    "topological_order",
]
