"""Event type definitions for agent runs.

Every state change of an orchestrator run (model calls, tool calls,
delegation, the final delta) is published as an ``AgentEvent`` so an editor
collaborator can follow a proposal while it is being drafted.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class EventType(StrEnum):
    """All event types published during a run.

    Grouped by:
    - Run lifecycle: start, completion, failure and close
    - Loop steps: which state-machine node is executing
    - Agent activity: tool calls, delegation and proposals
    - Observability: LLM call metrics and rate limiting
    """

    # Run lifecycle
    RUN_STARTED = "run_started"
    RUN_COMPLETE = "run_complete"
    RUN_FAILED = "run_failed"
    RUN_CLOSED = "run_closed"

    # Loop steps
    GRAPH_NODE_ACTIVE = "graph_node_active"
    GRAPH_NODE_COMPLETE = "graph_node_complete"

    # Agent activity
    AGENT_TOOL_CALL = "agent_tool_call"
    AGENT_TOOL_RESULT = "agent_tool_result"
    AGENT_SPAWNED = "agent_spawned"
    SUB_AGENT_REJECTED = "sub_agent_rejected"
    DELTA_PROPOSED = "delta_proposed"

    # Observability
    LLM_CALL_COMPLETE = "llm_call_complete"
    LLM_RATE_LIMITED = "llm_rate_limited"


class AgentEvent(BaseModel):
    """An event emitted while an orchestrator run executes.

    Payload schemas by event type:

    RUN_STARTED:
        - variant: str - "propose", "refine" or "tweak"
        - node_count: int - Size of the queried snapshot

    RUN_COMPLETE / DELTA_PROPOSED:
        - delta: str - Name of the resulting delta
        - operations: int - Number of operations

    RUN_FAILED:
        - error: str - Error message
        - error_type: str - Exception class name

    AGENT_TOOL_CALL:
        - tool: str - Tool name being called
        - args: dict - Arguments passed to the tool

    AGENT_TOOL_RESULT:
        - tool: str - Tool that was called
        - result: str - Truncated result preview
        - success: bool - Whether the tool call succeeded

    AGENT_SPAWNED:
        - parent_id: str - Agent that delegated
        - task: str - The delegated sub-task

    LLM_RATE_LIMITED:
        - attempt: int - Attempt that was rate limited
        - wait_seconds: float - Wait before the next attempt

    LLM_CALL_COMPLETE:
        - model: str - Model used
        - input_tokens: int - Input token count
        - output_tokens: int - Output token count
        - latency_ms: int - Latency in milliseconds
    """

    type: EventType
    timestamp: float = Field(default_factory=time.time)
    run_id: str
    agent_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class LLMMetrics(BaseModel):
    """Token and latency metrics for a single LLM call.

    Attributes:
        model: The model identifier
        input_tokens: Number of tokens in the prompt
        output_tokens: Number of tokens in the response
        latency_ms: Time taken for the LLM call in milliseconds
    """

    model: str
    input_tokens: int
    output_tokens: int
    latency_ms: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used in this call."""
        return self.input_tokens + self.output_tokens
