"""Engine error taxonomy.

Every error carries an ``error_code`` for programmatic handling and a
``retriable`` flag the job queue consults before scheduling another attempt.
"""


class EngineError(Exception):
    """Base exception for execution engine errors."""

    retriable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str = "ENGINE_ERROR",
        retriable: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        if retriable is not None:
            self.retriable = retriable


class ValidationError(EngineError):
    """Graph or run request rejected before anything was dispatched."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message, "VALIDATION_ERROR", retriable=False)
        self.errors = errors or [message]


class CycleError(ValidationError):
    """Graph contains a dependency cycle."""

    def __init__(self, node_ids: list[str]) -> None:
        super().__init__(f"Graph contains a cycle through nodes: {', '.join(node_ids)}")
        self.error_code = "CYCLE_DETECTED"
        self.node_ids = node_ids


class ProviderError(EngineError):
    """External provider rejected, failed or lost a job."""

    retriable = True

    def __init__(
        self,
        message: str,
        error_code: str = "PROVIDER_ERROR",
        retriable: bool = True,
    ) -> None:
        super().__init__(message, error_code, retriable=retriable)


class PredictionTimeoutError(EngineError):
    """Poller exhausted its attempts without a terminal provider status."""

    retriable = True

    def __init__(self, message: str = "Prediction timed out") -> None:
        super().__init__(message, "PREDICTION_TIMEOUT", retriable=True)


class OrchestrationError(EngineError):
    """Execution cannot make progress and nothing explains why."""

    def __init__(self, message: str) -> None:
        super().__init__(message, "ORCHESTRATION_ERROR", retriable=False)


class JobCancelledError(EngineError):
    """Job was cancelled by a stop request."""

    def __init__(self, message: str = "Job cancelled") -> None:
        super().__init__(message, "CANCELLED", retriable=False)


def is_retriable(exc: BaseException) -> bool:
    """Whether the job queue may schedule another attempt after ``exc``.

    Unknown exceptions are treated as transient.
    """
    if isinstance(exc, EngineError):
        return exc.retriable
    return True


def error_code_of(exc: BaseException) -> str:
    """Error code for an arbitrary exception."""
    if isinstance(exc, EngineError):
        return exc.error_code
    return "INTERNAL_ERROR"
