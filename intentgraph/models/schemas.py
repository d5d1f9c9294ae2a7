"""Pydantic schemas for the HTTP API.

Requests carry the graph as a node list; the service keeps no graph state
between calls.
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator

from intentgraph.events.types import AgentEvent
from intentgraph.graph.model import Delta, Node


class GraphPayload(BaseModel):
    """Base for requests that carry a graph snapshot."""

    nodes: list[Node] = Field(default_factory=list, description="All nodes of the graph")

    @field_validator("nodes")
    @classmethod
    def _unique_ids(cls, nodes: list[Node]) -> list[Node]:
        seen: set[str] = set()
        duplicates: set[str] = set()
        for node in nodes:
            if node.id in seen:
                duplicates.add(node.id)
            seen.add(node.id)
        if duplicates:
            raise ValueError(f"Duplicate node ids: {', '.join(sorted(duplicates))}")
        return nodes


class ValidateRequest(GraphPayload):
    """Request body for validating a graph."""


class ApplyRequest(GraphPayload):
    """Request body for applying a delta."""

    delta: Delta


class MergedViewRequest(GraphPayload):
    """Request body for a non-committing overlay."""

    delta: Delta | None = None


class SubgraphRequest(GraphPayload):
    """Request body for a downstream subgraph query."""

    entry_node_id: str = Field(min_length=1)
    delta: Delta | None = Field(default=None, description="Optional overlay")


class FindNodesRequest(GraphPayload):
    """Request body for an entry point keyword query."""

    filters: list[list[str]] = Field(
        description="OR'd groups of AND'd keywords",
        examples=[[["users", "delete"], ["users", "create"]]],
    )
    delta: Delta | None = Field(default=None, description="Optional overlay")


class AgentRequest(GraphPayload):
    """Base for requests that start an agent run."""

    prompt: str = Field(min_length=1, max_length=10000)
    run_id: str | None = Field(
        default=None,
        pattern=r"^[A-Za-z0-9_-]{1,64}$",
        description="Client-chosen run id, so /ws/runs/{run_id} can be opened first",
    )


class ProposeRequest(AgentRequest):
    """Request body for proposing a new delta."""

    overlay: Delta | None = None


class RefineRequest(AgentRequest):
    """Request body for refining an existing delta."""

    delta: Delta


class TweakRequest(AgentRequest):
    """Request body for tweaking one node of a delta."""

    delta: Delta
    node_id: str = Field(min_length=1)


class InstructionsRequest(GraphPayload):
    """Request body for rendering implementation instructions."""

    delta: Delta


class ValidationResponse(BaseModel):
    is_valid: bool
    errors: list[str] = Field(default_factory=list)


class NodesResponse(BaseModel):
    nodes: list[Node]


class ApplyResponse(BaseModel):
    """Outcome of applying a delta; ``nodes`` is the new graph."""

    nodes: list[Node]
    node_count: int


class DeltaResponse(BaseModel):
    """A proposed delta plus whether it applies to the request's graph."""

    run_id: str
    delta: Delta
    applies_cleanly: bool
    errors: list[str] = Field(default_factory=list)


class RunEventsResponse(BaseModel):
    """Recorded events of one run, oldest first."""

    run_id: str
    closed: bool
    events: list[AgentEvent]


class InstructionsResponse(BaseModel):
    markdown: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: Literal["healthy", "degraded"]
    timestamp: float
    agent_configured: bool
    active_sub_agents: int = 0
