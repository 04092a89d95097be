"""Inbound provider webhooks.

A completion callback only wakes the poller waiting on the prediction; the
poller then re-checks the provider, whose status stays authoritative.
"""

import structlog
from fastapi import APIRouter, status
from pydantic import BaseModel, ConfigDict

from genflow.api.deps import ExecutionServiceDep

logger = structlog.get_logger()

router = APIRouter()


class PredictionCallback(BaseModel):
    """Prediction payload posted by the provider."""

    model_config = ConfigDict(extra="allow")

    id: str
    status: str | None = None


class CallbackAck(BaseModel):
    """Whether a waiting poller was found for the prediction."""

    prediction_id: str
    matched: bool


@router.post(
    "/predictions",
    response_model=CallbackAck,
    status_code=status.HTTP_202_ACCEPTED,
)
async def prediction_callback(
    service: ExecutionServiceDep,
    payload: PredictionCallback,
) -> CallbackAck:
    """Receive a prediction completion callback."""
    matched = service.handle_prediction_callback(payload.id)
    logger.info(
        "prediction_webhook_received",
        prediction_id=payload.id,
        status=payload.status,
        matched=matched,
    )
    return CallbackAck(prediction_id=payload.id, matched=matched)
