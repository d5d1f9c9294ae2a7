"""Tool definitions and dispatch for the delta-proposing agent.

The agent can query the graph (``get_node``, ``get_subgraph``,
``find_nodes``), run a scoped script (``execute_code``) and delegate a
sub-task (``spawn_agent``). Every query resolves against the merged view of
the base graph and the pending overlay, so the agent sees the nodes it is
currently proposing.

Tool failures never escape :meth:`ToolDispatcher.execute`: they come back as
a ``{"error": ...}`` payload the model can react to.
"""

import json
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

import structlog

from intentgraph.agents.context import AgentContext
from intentgraph.events.types import AgentEvent, EventType
from intentgraph.graph.delta import DeltaEngine
from intentgraph.graph.index import GraphIndex
from intentgraph.graph.model import Delta, Node
from intentgraph.sandbox.executor import SandboxedExecutor

logger = structlog.get_logger(__name__)


TOOL_DEFINITIONS: list[dict[str, Any]] = [
    {
        "name": "get_node",
        "description": "Get a node of the intent graph by its ID.",
        "parameters": {
            "type": "object",
            "properties": {
                "id": {"type": "string", "description": "The node ID"},
            },
            "required": ["id"],
        },
    },
    {
        "name": "get_subgraph",
        "description": (
            "Get every node reachable downstream of a start node, "
            "including the start node itself."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "entryPointId": {
                    "type": "string",
                    "description": "ID of the node to start from",
                },
            },
            "required": ["entryPointId"],
        },
    },
    {
        "name": "find_nodes",
        "description": (
            "Find nodes by entry point keywords. Filters are OR'd groups of "
            "AND'd case-insensitive keywords matched against each node's "
            "entry point kind and name."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "filters": {
                    "type": "array",
                    "items": {"type": "array", "items": {"type": "string"}},
                    "description": (
                        'Array of keyword groups, e.g. [["users", "delete"], ["users", "create"]]'
                    ),
                },
            },
            "required": ["filters"],
        },
    },
    {
        "name": "execute_code",
        "description": (
            "Run a short Python snippet with read-only access to the project "
            "files. Available names: fs.read_text(path), fs.list_dir(path), "
            "fs.stat(path), fs.exists(path), paths (join, basename, dirname, "
            "splitext, normpath, relative), roots, nodes (current graph), "
            "json.loads/dumps, re.search/findall/sub, print. Imports are not "
            "allowed. The value of the last expression (or `return`) is the "
            "result. Timeout: a few seconds."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "code": {"type": "string", "description": "Python snippet to run"},
            },
            "required": ["code"],
        },
    },
    {
        "name": "spawn_agent",
        "description": (
            "Delegate a self-contained sub-task to a fresh planning agent. "
            "Returns the delta it proposes, or null when too many sub-agents "
            "are already running."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "task": {"type": "string", "description": "The sub-task to plan"},
                "context": {
                    "type": "string",
                    "description": "Optional extra context for the sub-agent",
                },
            },
            "required": ["task"],
        },
    },
]

_TOOL_DEFINITION_MAP: dict[str, dict[str, Any]] = {
    tool["name"]: tool for tool in TOOL_DEFINITIONS
}

_JSON_TYPES: dict[str, type | tuple[type, ...]] = {
    "string": str,
    "array": list,
    "object": dict,
    "integer": int,
    "number": (int, float),
    "boolean": bool,
}


class ToolExecutionError(Exception):
    """A tool call failed; reported back to the model as ``{"error": ...}``."""


class Spawner(Protocol):
    async def spawn(
        self,
        task: str,
        context: str | None,
        graph: Mapping[str, Node],
        overlay: Delta | None = None,
        parent_id: str | None = None,
        parent_run_id: str | None = None,
    ) -> Delta | None: ...


def get_tool_definitions_for_llm(include_spawn: bool = True) -> list[dict[str, Any]]:
    """Tool definitions in the OpenAI function format LiteLLM expects."""
    return [
        {
            "type": "function",
            "function": {
                "name": tool["name"],
                "description": tool["description"],
                "parameters": tool["parameters"],
            },
        }
        for tool in TOOL_DEFINITIONS
        if include_spawn or tool["name"] != "spawn_agent"
    ]


@dataclass
class ToolResult:
    """Result of executing a tool.

    Attributes:
        tool_call_id: ID of the tool call this result corresponds to
        content: JSON-encoded payload sent back to the model
        success: Whether the tool execution succeeded
        error: Error message if execution failed
    """

    tool_call_id: str
    content: str
    success: bool
    error: str | None = None


class ToolDispatcher:
    """Executes tool calls against a graph snapshot and emits events.

    Attributes:
        context: Shared dependencies and bounds.
        graph: Base graph; never mutated.
        overlay: Pending delta overlaid on every query, if any.
        spawner: Sub-agent spawner; None disables ``spawn_agent``.
    """

    def __init__(
        self,
        context: AgentContext,
        graph: Mapping[str, Node],
        overlay: Delta | None = None,
        spawner: Spawner | None = None,
        run_id: str | None = None,
        agent_id: str | None = None,
    ) -> None:
        self.context = context
        self.graph = graph
        self.overlay = overlay
        self.spawner = spawner
        self.run_id = run_id
        self.agent_id = agent_id
        self._engine = DeltaEngine()
        self._executor = SandboxedExecutor(
            roots=context.sandbox_roots,
            timeout_seconds=context.sandbox_timeout_seconds,
        )

    def snapshot_index(self) -> GraphIndex:
        """Index over the merged view, rebuilt on each call."""
        return GraphIndex(self._engine.merged_view(self.graph, self.overlay))

    def _truncate_text(self, text: str, *, max_chars: int) -> str:
        if len(text) <= max_chars:
            return text
        omitted = len(text) - max_chars
        return (
            f"{text[:max_chars]}\n"
            f"... [truncated {omitted} characters to protect context window]"
        )

    def _summarize_args_for_event(self, args: Any) -> dict[str, Any]:
        if not isinstance(args, dict):
            return {"raw": str(args)[:500]}

        summarized: dict[str, Any] = {}
        for key, value in args.items():
            if isinstance(value, str) and len(value) > 500:
                summarized[key] = f"{value[:500]}... [truncated]"
            else:
                summarized[key] = value
        return summarized

    def _normalize_tool_args(self, tool_name: str, args: Any) -> dict[str, Any]:
        """Validate arguments against the tool's schema.

        Unknown fields are dropped. Missing required fields and wrong types
        raise ToolExecutionError.
        """
        tool_def = _TOOL_DEFINITION_MAP.get(tool_name)
        if tool_def is None:
            raise ToolExecutionError(f"Unknown tool: {tool_name}")

        if not isinstance(args, dict):
            raise ToolExecutionError(
                f"Invalid arguments for {tool_name}: expected an object"
            )

        params = tool_def["parameters"]
        properties = params.get("properties", {})

        normalized: dict[str, Any] = {}
        for key, value in args.items():
            prop_schema = properties.get(key)
            if prop_schema is None:
                continue
            if value is None and key not in params.get("required", []):
                continue
            expected = _JSON_TYPES[prop_schema["type"]]
            if not isinstance(value, expected):
                raise ToolExecutionError(
                    f"Invalid type for '{key}': expected {prop_schema['type']}"
                )
            normalized[key] = value.strip() if isinstance(value, str) and key != "code" else value

        missing = [
            req for req in params.get("required", [])
            if normalized.get(req) in (None, "")
        ]
        if missing:
            raise ToolExecutionError(
                f"Missing required arguments: {', '.join(sorted(missing))}"
            )
        return normalized

    @staticmethod
    def _normalize_filters(filters: list[Any]) -> list[list[str]]:
        """Coerce ``filters`` into keyword groups.

        A flat list of strings is taken as a single AND group.
        """
        if all(isinstance(item, str) for item in filters):
            return [list(filters)] if filters else []

        groups: list[list[str]] = []
        for group in filters:
            if isinstance(group, str):
                groups.append([group])
            elif isinstance(group, list) and all(isinstance(kw, str) for kw in group):
                groups.append(list(group))
            else:
                raise ToolExecutionError(
                    "Invalid type for 'filters': expected an array of string arrays"
                )
        return groups

    async def execute(
        self,
        tool_name: str,
        args: Any,
        tool_call_id: str | None = None,
    ) -> ToolResult:
        """Execute one tool call.

        Returns:
            ToolResult whose content is a JSON string; failures carry
            ``{"error": message}`` and ``success=False``.
        """
        start_time = time.time()
        call_id = tool_call_id or f"tool_{int(start_time * 1000)}"

        await self._publish(
            EventType.AGENT_TOOL_CALL,
            {
                "tool": tool_name,
                "args": self._summarize_args_for_event(args),
                "tool_call_id": call_id,
            },
        )
        if self.context.metrics_collector is not None and self.run_id:
            self.context.metrics_collector.record_tool_call(self.run_id)

        error: str | None = None
        try:
            normalized_args = self._normalize_tool_args(tool_name, args)
            payload = await self._dispatch_tool(tool_name, normalized_args)
            if isinstance(payload, dict) and set(payload) == {"error"}:
                error = str(payload["error"])
        except Exception as e:
            logger.warning(
                "tool_execution_failed",
                tool_name=tool_name,
                run_id=self.run_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            error = str(e)
            payload = {"error": error}

        content = self._truncate_text(
            json.dumps(payload, default=str),
            max_chars=self.context.max_tool_result_chars,
        )
        duration_ms = int((time.time() - start_time) * 1000)

        await self._publish(
            EventType.AGENT_TOOL_RESULT,
            {
                "tool": tool_name,
                "result": content[:2000],
                "success": error is None,
                "tool_call_id": call_id,
                "duration_ms": duration_ms,
            },
        )
        logger.debug(
            "tool_executed",
            tool_name=tool_name,
            run_id=self.run_id,
            success=error is None,
            duration_ms=duration_ms,
        )

        return ToolResult(
            tool_call_id=call_id,
            content=content,
            success=error is None,
            error=error,
        )

    async def _dispatch_tool(self, tool_name: str, args: dict[str, Any]) -> Any:
        if tool_name == "get_node":
            node = self.snapshot_index().get_node(args["id"])
            if node is None:
                return {"error": f"Node not found: {args['id']}"}
            return node.to_json_dict()

        if tool_name == "get_subgraph":
            nodes = self.snapshot_index().get_subgraph(args["entryPointId"])
            return [node.to_json_dict() for node in nodes]

        if tool_name == "find_nodes":
            groups = self._normalize_filters(args["filters"])
            return [node.to_json_dict() for node in self.snapshot_index().find_nodes(groups)]

        if tool_name == "execute_code":
            nodes = [node.to_json_dict() for node in self.snapshot_index().nodes()]
            return await self._executor.execute(args["code"], nodes=nodes)

        if tool_name == "spawn_agent":
            if self.spawner is None:
                return {"error": "Sub-agent spawning is not available"}
            delta = await self.spawner.spawn(
                args["task"],
                args.get("context"),
                graph=self.graph,
                overlay=self.overlay,
                parent_id=self.agent_id,
                parent_run_id=self.run_id,
            )
            return None if delta is None else delta.to_json_dict()

        raise ToolExecutionError(f"Unknown tool: {tool_name}")

    async def _publish(self, event_type: EventType, data: dict[str, Any]) -> None:
        if self.context.event_bus is None or not self.run_id:
            return
        await self.context.event_bus.publish(
            AgentEvent(
                type=event_type,
                run_id=self.run_id,
                agent_id=self.agent_id,
                data=data,
            )
        )
