"""Shared test fixtures for intentgraph tests.

Provides a recording EventBus, scripted LLM responses, node factories and a
ready-made AgentContext so tests never touch a real LLM API.
"""

import json
import os
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import pytest

# Use litellm's bundled model cost map instead of fetching it over the network
# at import time (offline fetch failure deadlocks under pytest log capture).
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")

from intentgraph.agents.context import AgentContext, SpawnLimiter, reset_spawn_limiter
from intentgraph.agents.utils import LLMResponse, MockLLMClient, ToolCallData
from intentgraph.events.bus import EventBus, reset_event_bus
from intentgraph.events.types import AgentEvent, EventType, LLMMetrics
from intentgraph.graph.model import Delta, Graph, Node, NodeType, graph_from_nodes

# ---------------------------------------------------------------------------
# Event Bus
# ---------------------------------------------------------------------------


class RecordingEventBus(EventBus):
    """EventBus that also keeps every published event in order.

    Lets tests assert on the exact publish order across runs, including
    sub-agent runs whose ids are generated internally.
    """

    def __init__(self) -> None:
        super().__init__()
        self.published: list[AgentEvent] = []

    async def publish(self, event: AgentEvent) -> None:
        self.published.append(event)
        await super().publish(event)

    def types(self) -> list[EventType]:
        return [event.type for event in self.published]

    def of_type(self, event_type: EventType) -> list[AgentEvent]:
        return [event for event in self.published if event.type == event_type]


@pytest.fixture()
def event_bus() -> RecordingEventBus:
    """Return a fresh recording EventBus for each test."""
    reset_event_bus()
    return RecordingEventBus()


@pytest.fixture(autouse=True)
def _reset_singletons() -> None:
    reset_spawn_limiter()
    reset_event_bus()


# ---------------------------------------------------------------------------
# Response Factories
# ---------------------------------------------------------------------------


def make_llm_response(
    content: str = "",
    tool_calls: list[ToolCallData] | None = None,
    finish_reason: str = "stop",
) -> LLMResponse:
    """Create an LLMResponse with sensible defaults."""
    return LLMResponse(
        content=content,
        tool_calls=tool_calls or [],
        finish_reason="tool_calls" if tool_calls else finish_reason,
        metrics=LLMMetrics(model="mock", input_tokens=10, output_tokens=20, latency_ms=100),
    )


def make_tool_call(name: str, args: dict[str, Any], call_id: str = "tc_1") -> ToolCallData:
    """Create a ToolCallData."""
    return ToolCallData(id=call_id, name=name, args=args)


def make_delta_response(delta: dict[str, Any]) -> LLMResponse:
    """Final model reply carrying ``delta`` as a bare JSON object."""
    return make_llm_response(content=json.dumps(delta))


# ---------------------------------------------------------------------------
# Graph Factories
# ---------------------------------------------------------------------------


def make_node(
    node_id: str,
    node_type: NodeType | str = NodeType.BEHAVIOR,
    name: str | None = None,
    inputs: Iterable[str] = (),
    outputs: Iterable[str] = (),
    **extra: Any,
) -> Node:
    """Create a Node; edges are declared on whichever end the caller chooses."""
    return Node(
        id=node_id,
        type=node_type,
        name=name or node_id.replace("-", " ").title(),
        inputs=list(inputs),
        outputs=list(outputs),
        **extra,
    )


def make_delta(name: str = "test-delta", operations: list[dict[str, Any]] | None = None) -> Delta:
    return Delta.model_validate({"name": name, "operations": operations or []})


@pytest.fixture()
def sample_graph() -> Graph:
    """A small chain with entry points.

    login -> session -> audit-log, plus an unrelated report job. Edges are
    declared on the upstream end only.
    """
    return graph_from_nodes([
        make_node(
            "login",
            outputs=["session"],
            entry_points=[{"kind": "REST", "name": "POST /api/users/login"}],
        ),
        make_node(
            "session",
            NodeType.DATA,
            outputs=["audit-log"],
        ),
        make_node(
            "audit-log",
            NodeType.INTEGRATION,
            entry_points=[{"kind": "LISTENER", "name": "user-events"}],
        ),
        make_node(
            "nightly-report",
            NodeType.BEHAVIOR,
            entry_points=[{"kind": "JOB", "name": "users-report"}],
        ),
    ])


# ---------------------------------------------------------------------------
# Agent Context
# ---------------------------------------------------------------------------


def make_context(
    llm_client: MockLLMClient,
    event_bus: EventBus | None = None,
    roots: list[str] | None = None,
    max_tool_iterations: int = 10,
    max_sub_agents: int = 5,
    **kwargs: Any,
) -> AgentContext:
    """Build an AgentContext with an isolated spawn limiter."""
    return AgentContext(
        llm_client=llm_client,
        event_bus=event_bus,
        spawn_limiter=SpawnLimiter(max_sub_agents),
        sandbox_roots=roots or [str(Path.cwd())],
        sandbox_timeout_seconds=kwargs.pop("sandbox_timeout_seconds", 2.0),
        max_tool_iterations=max_tool_iterations,
        **kwargs,
    )
