"""Agent loop, tools, prompts and LLM integration.

This module exports the key components needed for delta proposals:
- AgentOrchestrator, the LangGraph tool-calling loop
- Tool definitions and the dispatcher that runs them
- LLM client utilities with rate-limit retries and metrics tracking
"""

from intentgraph.agents.context import AgentContext, SpawnLimiter, get_spawn_limiter
from intentgraph.agents.instructions import render_planning_instructions
from intentgraph.agents.orchestrator import (
    AgentError,
    AgentOrchestrator,
    DeltaParseError,
    IterationLimitExceeded,
    parse_delta_content,
)
from intentgraph.agents.spawner import SubAgentSpawner
from intentgraph.agents.tools import (
    TOOL_DEFINITIONS,
    ToolDispatcher,
    ToolResult,
    get_tool_definitions_for_llm,
)
from intentgraph.agents.utils import (
    LLMClient,
    LLMResponse,
    MockLLMClient,
    ToolCallData,
)

__all__ = [
    # Context
    "AgentContext",
    "SpawnLimiter",
    "get_spawn_limiter",
    # Orchestrator
    "AgentError",
    "AgentOrchestrator",
    "DeltaParseError",
    "IterationLimitExceeded",
    "SubAgentSpawner",
    "parse_delta_content",
    "render_planning_instructions",
    # Tools
    "TOOL_DEFINITIONS",
    "ToolDispatcher",
    "ToolResult",
    "get_tool_definitions_for_llm",
    # Utils
    "LLMClient",
    "LLMResponse",
    "MockLLMClient",
    "ToolCallData",
]
