"""Dead-letter entity model.

A dead letter records a job that exhausted its retries so an operator can
inspect it later. Entries are written once and never mutated.
"""

import json
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlmodel import Column, Field, SQLModel, Text

from genflow.models.workflow import Capability


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


class DeadLetter(SQLModel, table=True):
    """Dead-lettered job."""

    __tablename__ = "dead_letter"

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        primary_key=True,
    )
    job_id: str = Field(
        index=True,
        unique=True,
        description="Job queue entry that was dead-lettered",
    )
    execution_id: str | None = Field(default=None, index=True)
    node_id: str
    capability: Capability
    reason: str = Field(sa_column=Column(Text, nullable=False))
    attempts: int = Field(default=0, ge=0)
    payload: str | None = Field(
        default=None,
        sa_column=Column(Text, nullable=True),
        description="JSON payload of the last attempt",
    )
    created_at: datetime = Field(default_factory=utc_now)

    def get_payload(self) -> dict[str, Any] | None:
        """Parse and return the payload as a dictionary."""
        if self.payload is None:
            return None
        return json.loads(self.payload)

    def set_payload(self, payload: dict[str, Any]) -> None:
        """Set the payload from a dictionary."""
        self.payload = json.dumps(payload, default=str)


class DeadLetterRead(SQLModel):
    """Schema for reading a dead letter."""

    id: str
    job_id: str
    execution_id: str | None
    node_id: str
    capability: Capability
    reason: str
    attempts: int
    payload: dict[str, Any] | None
    created_at: datetime

    @classmethod
    def from_entity(cls, entry: DeadLetter) -> "DeadLetterRead":
        return cls(
            id=entry.id,
            job_id=entry.job_id,
            execution_id=entry.execution_id,
            node_id=entry.node_id,
            capability=entry.capability,
            reason=entry.reason,
            attempts=entry.attempts,
            payload=entry.get_payload(),
            created_at=entry.created_at,
        )
