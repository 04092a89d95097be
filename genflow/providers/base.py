"""Provider adapter interface.

Defines the boundary between the engine and external generation services.
The engine only ever sees capabilities, handles and statuses; vendor payload
shaping stays inside the adapters.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import structlog

from genflow.models.workflow import Capability

logger = structlog.get_logger()


@dataclass
class ProviderHandle:
    """Reference to a prediction started on a provider."""

    prediction_id: str
    capability: Capability
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderStatus:
    """Provider-reported state of a prediction.

    ``status`` is in the provider's own vocabulary; the poller maps it onto
    the engine's terminal statuses.
    """

    status: str
    output: Any = None
    error: str | None = None
    progress: int | None = None
    cost: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "output": self.output,
            "error": self.error,
            "progress": self.progress,
            "cost": self.cost,
        }


class ProviderAdapter(ABC):
    """Abstract base class for provider adapters.

    All adapters must implement:
    - submit(): Start a prediction and return its handle
    - check_status(): Report the current state of a prediction

    Adapters that can abort remote work override cancel() and set
    ``supports_cancel``.

    Example implementation:
        class EchoAdapter(ProviderAdapter):
            name = "echo"

            async def submit(self, capability, payload):
                return ProviderHandle(prediction_id=str(uuid4()), capability=capability)

            async def check_status(self, handle):
                return ProviderStatus(status="succeeded", output={"echo": True})
    """

    name: str = "provider"
    supports_cancel: bool = False

    @abstractmethod
    async def submit(
        self,
        capability: Capability,
        payload: dict[str, Any],
    ) -> ProviderHandle:
        """Start a prediction.

        Args:
            capability: Kind of work requested
            payload: Node payload with ``node_id``, ``config`` and ``inputs``

        Returns:
            Handle identifying the prediction

        Raises:
            ProviderError: If the provider rejects the request
        """
        pass

    @abstractmethod
    async def check_status(self, handle: ProviderHandle) -> ProviderStatus:
        """Get the current status of a prediction.

        Args:
            handle: Handle returned by submit()

        Returns:
            Provider-reported status

        Raises:
            ProviderError: If the status cannot be fetched
        """
        pass

    async def cancel(self, handle: ProviderHandle) -> None:
        """Abort a running prediction. No-op unless overridden."""
        logger.debug(
            "provider_cancel_unsupported",
            provider=self.name,
            prediction_id=handle.prediction_id,
        )

    async def close(self) -> None:
        """Release adapter resources."""
        return None
