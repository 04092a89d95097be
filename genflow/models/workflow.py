"""Workflow entity models.

Defines the Workflow table for storing workflow definitions and the
WorkflowVersion table holding the immutable graph of every version.
Graphs are stored as JSON with nodes and edges.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import field_validator
from sqlmodel import Column, Field, SQLModel, Text, UniqueConstraint


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


class WorkflowStatus(str, Enum):
    """Workflow lifecycle status."""

    DRAFT = "draft"
    ACTIVE = "active"
    ARCHIVED = "archived"


class NodeKind(str, Enum):
    """Role of a node in the graph."""

    INPUT = "input"
    GENERATOR = "generator"
    TRANSFORM = "transform"
    DELIVERY = "delivery"


class Capability(str, Enum):
    """Kind of external work a node performs.

    Keys provider adapters, job queue lanes and poll settings.
    """

    IMAGE_GENERATION = "image_generation"
    VIDEO_GENERATION = "video_generation"
    TEXT_GENERATION = "text_generation"
    PROCESSING = "processing"
    DELIVERY = "delivery"


class WorkflowBase(SQLModel):
    """Base workflow fields shared across models."""

    name: str = Field(
        max_length=255,
        min_length=1,
        description="Workflow name",
    )
    description: str | None = Field(
        default=None,
        max_length=2000,
        description="Workflow description",
    )


class Workflow(WorkflowBase, table=True):
    """Workflow database entity.

    Graph schema:
    {
        "version": "1.0",
        "nodes": [{"id": str, "type": str, "capability": str | null,
                   "config": dict, "position": {"x": int, "y": int}}],
        "edges": [{"source": str, "target": str, "sourceHandle": str, "targetHandle": str}],
        "config": {}
    }
    """

    __tablename__ = "workflow"

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        primary_key=True,
        description="Unique workflow identifier (UUID)",
    )
    graph: str = Field(
        sa_column=Column(Text, nullable=False),
        description="JSON graph of the current version",
    )
    status: WorkflowStatus = Field(
        default=WorkflowStatus.DRAFT,
        description="Workflow lifecycle status",
    )
    version: int = Field(
        default=1,
        ge=1,
        description="Current version number",
    )
    created_at: datetime = Field(
        default_factory=utc_now,
        description="Creation timestamp (UTC)",
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column_kwargs={"onupdate": utc_now},
        description="Last update timestamp (UTC)",
    )


class WorkflowVersion(SQLModel, table=True):
    """Immutable graph snapshot of one workflow version."""

    __tablename__ = "workflow_version"
    __table_args__ = (UniqueConstraint("workflow_id", "version"),)

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        primary_key=True,
    )
    workflow_id: str = Field(
        foreign_key="workflow.id",
        index=True,
        description="Owning workflow ID",
    )
    version: int = Field(ge=1)
    graph: str = Field(
        sa_column=Column(Text, nullable=False),
        description="JSON graph frozen at this version",
    )
    created_at: datetime = Field(default_factory=utc_now)


class WorkflowGraphNode(SQLModel):
    """Schema for a node in the workflow graph.

    ``config`` is opaque to the engine apart from ``required_inputs``
    (input slots that must be fed by an edge) and, on input nodes,
    ``value`` (the literal passed downstream).
    """

    id: str
    type: NodeKind
    capability: Capability | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    position: dict[str, int] = Field(default_factory=lambda: {"x": 0, "y": 0})

    def resolved_capability(self) -> Capability | None:
        """Capability used for dispatch, falling back to the kind's default."""
        if self.capability is not None:
            return self.capability
        if self.type == NodeKind.TRANSFORM:
            return Capability.PROCESSING
        if self.type == NodeKind.DELIVERY:
            return Capability.DELIVERY
        return None

    @property
    def required_inputs(self) -> list[str]:
        return list(self.config.get("required_inputs", []))


class WorkflowGraphEdge(SQLModel):
    """Schema for an edge in the workflow graph."""

    source: str
    target: str
    sourceHandle: str = "output"
    targetHandle: str = "input"


class WorkflowGraph(SQLModel):
    """Schema for the complete workflow graph."""

    version: str = "1.0"
    nodes: list[WorkflowGraphNode] = Field(default_factory=list)
    edges: list[WorkflowGraphEdge] = Field(default_factory=list)
    config: dict[str, Any] = Field(default_factory=dict)


class WorkflowCreate(WorkflowBase):
    """Schema for creating a new workflow."""

    graph: WorkflowGraph

    @field_validator("graph", mode="before")
    @classmethod
    def validate_graph(cls, v: Any) -> WorkflowGraph:
        """Validate and parse graph input."""
        if isinstance(v, dict):
            return WorkflowGraph(**v)
        return v


class WorkflowUpdate(SQLModel):
    """Schema for updating a workflow."""

    name: str | None = Field(default=None, max_length=255)
    description: str | None = Field(default=None, max_length=2000)
    graph: WorkflowGraph | None = None
    status: WorkflowStatus | None = None


class WorkflowRead(WorkflowBase):
    """Schema for reading workflow data."""

    id: str
    graph: WorkflowGraph
    status: WorkflowStatus
    version: int
    created_at: datetime
    updated_at: datetime

    @field_validator("graph", mode="before")
    @classmethod
    def parse_graph(cls, v: Any) -> WorkflowGraph:
        """Parse graph from JSON string or dict."""
        if isinstance(v, str):
            return WorkflowGraph(**json.loads(v))
        if isinstance(v, dict):
            return WorkflowGraph(**v)
        return v


class WorkflowVersionRead(SQLModel):
    """Schema for reading one frozen workflow version."""

    workflow_id: str
    version: int
    graph: WorkflowGraph
    created_at: datetime
