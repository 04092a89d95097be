"""Async completion poller.

Polls a provider until a prediction reaches a terminal status, reporting
progress and heartbeats along the way. The wait between checks is the only
suspension point and can be interrupted by a cancel signal (stop) or a wake
signal (an inbound completion callback).
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

import structlog

from genflow.config import Settings
from genflow.models.workflow import Capability
from genflow.providers.base import ProviderAdapter, ProviderHandle

logger = structlog.get_logger()

SUCCEEDED_STATUSES = frozenset({"succeeded", "success", "successful", "completed", "complete"})
FAILED_STATUSES = frozenset({"failed", "failure", "error", "errored"})
CANCELED_STATUSES = frozenset({"canceled", "cancelled", "aborted"})


class PollStatus(str, Enum):
    """Canonical prediction status."""

    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    TIMEOUT = "timeout"


def normalize_status(provider_status: str) -> PollStatus:
    """Map a provider's status vocabulary onto PollStatus.

    Anything unrecognised counts as still processing.
    """
    value = (provider_status or "").strip().lower()
    if value in SUCCEEDED_STATUSES:
        return PollStatus.SUCCEEDED
    if value in FAILED_STATUSES:
        return PollStatus.FAILED
    if value in CANCELED_STATUSES:
        return PollStatus.CANCELED
    return PollStatus.PROCESSING


@dataclass
class PollOptions:
    """Polling cadence and the progress band reported while waiting."""

    interval: float
    max_attempts: int
    progress_start: int = 30
    progress_end: int = 90


@dataclass
class PollSignals:
    """Events that cut a poll sleep short."""

    cancel: asyncio.Event | None = None
    wake: asyncio.Event | None = None


@dataclass
class PollEvent:
    """Event emitted while a prediction is being polled."""

    type: str  # 'progress', 'heartbeat'
    prediction_id: str
    attempt: int
    progress: int | None = None
    provider_status: str | None = None


@dataclass
class TerminalResult:
    """Final outcome of a poll loop."""

    status: PollStatus
    output: Any = None
    error: str | None = None
    progress: int = 0
    attempts: int = 0
    cost: float | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == PollStatus.SUCCEEDED


PollObserver = Callable[[PollEvent], Awaitable[None]]

# Progress band (start, end) reported while polling, per capability.
PROGRESS_BANDS: dict[Capability, tuple[int, int]] = {
    Capability.IMAGE_GENERATION: (30, 90),
    Capability.VIDEO_GENERATION: (15, 95),
    Capability.TEXT_GENERATION: (30, 90),
    Capability.PROCESSING: (30, 90),
    Capability.DELIVERY: (50, 90),
}


def poll_options_for(capability: Capability, settings: Settings) -> PollOptions:
    """Default poll options for a capability."""
    prefix = {
        Capability.IMAGE_GENERATION: "image",
        Capability.VIDEO_GENERATION: "video",
        Capability.TEXT_GENERATION: "text",
        Capability.PROCESSING: "processing",
        Capability.DELIVERY: "delivery",
    }[capability]
    start, end = PROGRESS_BANDS[capability]
    return PollOptions(
        interval=getattr(settings, f"{prefix}_poll_interval"),
        max_attempts=getattr(settings, f"{prefix}_poll_attempts"),
        progress_start=start,
        progress_end=end,
    )


def band_progress(attempt: int, options: PollOptions) -> int:
    """Progress estimate for an attempt, confined to the option's band."""
    span = options.progress_end - options.progress_start
    fraction = min(attempt / options.max_attempts, 1.0)
    return int(options.progress_start + fraction * span)


async def _interruptible_sleep(interval: float, signals: PollSignals) -> None:
    """Sleep up to ``interval`` seconds, returning early on any signal."""
    events = [e for e in (signals.cancel, signals.wake) if e is not None]
    if not events:
        await asyncio.sleep(interval)
        return

    waiters = [asyncio.ensure_future(e.wait()) for e in events]
    try:
        await asyncio.wait(waiters, timeout=interval, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for waiter in waiters:
            waiter.cancel()

    if signals.wake is not None and signals.wake.is_set():
        signals.wake.clear()


async def poll_until_terminal(
    adapter: ProviderAdapter,
    handle: ProviderHandle,
    options: PollOptions,
    observer: PollObserver | None = None,
    signals: PollSignals | None = None,
) -> TerminalResult:
    """Poll a prediction until it finishes, is cancelled, or runs out of attempts.

    Args:
        adapter: Adapter that started the prediction
        handle: Prediction handle
        options: Interval, attempt limit and progress band
        observer: Receives progress and heartbeat events
        signals: Cancel and wake events

    Returns:
        TerminalResult; status TIMEOUT after ``max_attempts`` checks

    Raises:
        ProviderError: If the adapter cannot fetch the status
    """
    signals = signals or PollSignals()
    progress = options.progress_start

    for attempt in range(options.max_attempts):
        if signals.cancel is not None and signals.cancel.is_set():
            return TerminalResult(
                status=PollStatus.CANCELED,
                error="Prediction canceled",
                progress=progress,
                attempts=attempt,
            )

        reported = await adapter.check_status(handle)
        status = normalize_status(reported.status)

        if status == PollStatus.SUCCEEDED:
            if observer is not None:
                await observer(
                    PollEvent(
                        type="progress",
                        prediction_id=handle.prediction_id,
                        attempt=attempt + 1,
                        progress=100,
                        provider_status=reported.status,
                    )
                )
            return TerminalResult(
                status=status,
                output=reported.output,
                progress=100,
                attempts=attempt + 1,
                cost=reported.cost,
            )

        if status in (PollStatus.FAILED, PollStatus.CANCELED):
            return TerminalResult(
                status=status,
                error=reported.error or f"Prediction {reported.status}",
                progress=progress,
                attempts=attempt + 1,
                cost=reported.cost,
            )

        if reported.progress is not None:
            progress = max(progress, min(int(reported.progress), options.progress_end))
        else:
            progress = max(progress, band_progress(attempt, options))

        if observer is not None:
            await observer(
                PollEvent(
                    type="progress",
                    prediction_id=handle.prediction_id,
                    attempt=attempt + 1,
                    progress=progress,
                    provider_status=reported.status,
                )
            )
            await observer(
                PollEvent(
                    type="heartbeat",
                    prediction_id=handle.prediction_id,
                    attempt=attempt + 1,
                )
            )

        await _interruptible_sleep(options.interval, signals)

    if signals.cancel is not None and signals.cancel.is_set():
        return TerminalResult(
            status=PollStatus.CANCELED,
            error="Prediction canceled",
            progress=progress,
            attempts=options.max_attempts,
        )

    logger.warning(
        "prediction_poll_timeout",
        prediction_id=handle.prediction_id,
        max_attempts=options.max_attempts,
    )
    return TerminalResult(
        status=PollStatus.TIMEOUT,
        error="Prediction timed out",
        progress=progress,
        attempts=options.max_attempts,
    )
