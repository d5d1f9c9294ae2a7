"""Bounded tool-calling conversation that ends in one Delta.

The loop is a LangGraph ``StateGraph``:

    START -> call_model -> (execute_tools -> call_model)* -> parse_delta -> END

``call_model`` asks the chat backend for the next step with the tool schema
attached and JSON output requested. While the reply carries tool calls,
``execute_tools`` runs them in order through the ``ToolDispatcher`` and
appends each result as a tool message. The first reply without tool calls
goes to ``parse_delta``. More than ``max_tool_iterations`` tool rounds is a
fatal ``IterationLimitExceeded``.

Three variants share the loop and differ only in the first user message and
in the snapshot tools resolve against:
- ``propose``: a new delta against the base graph (optionally overlaid)
- ``refine``: an existing delta, with tools seeing it applied
- ``tweak_node``: one focal node of a delta plus its immediate neighbours
"""

import json
import operator
import uuid
from collections.abc import Mapping
from typing import Annotated, Any, Literal, TypedDict

import structlog
import yaml
from langgraph.graph import END, START, StateGraph
from pydantic import ValidationError

from intentgraph.agents.context import AgentContext
from intentgraph.agents.prompts import (
    get_refine_prompt,
    get_sub_agent_prompt,
    get_system_prompt,
    get_tweak_prompt,
)
from intentgraph.agents.spawner import SubAgentSpawner
from intentgraph.agents.tools import ToolDispatcher, get_tool_definitions_for_llm
from intentgraph.agents.utils import (
    ToolCallData,
    extract_fenced_block,
    format_assistant_message_with_tools,
    format_tool_result_for_llm,
)
from intentgraph.events.types import AgentEvent, EventType
from intentgraph.graph.delta import DeltaEngine, NodeNotFoundError
from intentgraph.graph.index import GraphIndex
from intentgraph.graph.model import Delta, Node

logger = structlog.get_logger(__name__)

Variant = Literal["propose", "refine", "tweak", "sub_agent"]


class AgentError(Exception):
    """Base class for failures of an orchestrator run."""


class DeltaParseError(AgentError):
    """The final reply could not be read as a Delta."""

    def __init__(self, message: str, raw_content: str) -> None:
        self.raw_content = raw_content
        super().__init__(message)


class IterationLimitExceeded(AgentError):
    """The model kept requesting tools past the iteration cap."""

    def __init__(self, max_iterations: int) -> None:
        self.max_iterations = max_iterations
        super().__init__(
            f"Agent exceeded the limit of {max_iterations} tool-call iterations"
        )


def _load_json(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


def _load_yaml(text: str) -> Any:
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return None


def parse_delta_content(content: str) -> Delta:
    """Read the model's final reply as a Delta.

    Strategies, first data-bearing one wins:
    1. the whole reply as JSON
    2. the first ```json (or unlabelled) fenced block as JSON
    3. the first ```yaml / ```yml fenced block as YAML

    Raises:
        DeltaParseError: No strategy yields an object, or the object does
            not validate as a Delta.
    """
    candidates = [
        lambda: _load_json(content.strip()),
        lambda: _load_json(extract_fenced_block(content, ("json", "")) or ""),
        lambda: _load_yaml(extract_fenced_block(content, ("yaml", "yml")) or ""),
    ]

    for load in candidates:
        data = load()
        if not isinstance(data, dict):
            continue
        try:
            return Delta.model_validate(data)
        except ValidationError as e:
            raise DeltaParseError(
                f"Response is not a valid delta: {e.error_count()} validation error(s)",
                raw_content=content,
            ) from e

    raise DeltaParseError("No JSON or YAML delta found in response", raw_content=content)


def new_run_id() -> str:
    return f"run_{uuid.uuid4().hex[:12]}"


class PlanningState(TypedDict):
    """State flowing through the planning graph.

    Attributes:
        messages: Conversation so far, appended to by each node
        tool_calls: Tool calls requested by the latest model reply
        last_content: Text content of the latest model reply
        iteration: Tool rounds executed so far
        max_iterations: Hard cap on tool rounds
        status: Current step of the state machine
        delta: Parsed result, set by parse_delta
        run_id: Run identifier for events and metrics
        agent_id: Agent identifier for events
    """

    messages: Annotated[list[dict[str, Any]], operator.add]
    tool_calls: list[ToolCallData]
    last_content: str
    iteration: int
    max_iterations: int
    status: Literal["awaiting_model", "executing_tools", "parsing", "done"]
    delta: Delta | None
    run_id: str
    agent_id: str


class AgentOrchestrator:
    """Drives the planning conversation for all three variants.

    Usage:
        >>> orchestrator = AgentOrchestrator(AgentContext.from_settings())
        >>> delta = await orchestrator.propose("Add password reset", graph)
    """

    def __init__(self, context: AgentContext) -> None:
        self.context = context
        self._engine = DeltaEngine()
        self._dispatchers: dict[str, ToolDispatcher] = {}
        self._compiled_graph = self._build_graph()

    def _build_graph(self) -> Any:
        graph = StateGraph(PlanningState)

        graph.add_node("call_model", self._call_model)
        graph.add_node("execute_tools", self._execute_tools)
        graph.add_node("parse_delta", self._parse_delta)

        graph.add_edge(START, "call_model")
        graph.add_conditional_edges(
            "call_model",
            self._route_after_model,
            {
                "tools": "execute_tools",
                "final": "parse_delta",
            },
        )
        graph.add_edge("execute_tools", "call_model")
        graph.add_edge("parse_delta", END)

        return graph.compile()

    # Public variants

    async def propose(
        self,
        prompt: str,
        graph: Mapping[str, Node],
        overlay: Delta | None = None,
        run_id: str | None = None,
    ) -> Delta:
        """Propose a brand-new delta for ``prompt``.

        Pass ``run_id`` to subscribe to the run's events before it starts.
        """
        return await self._run("propose", prompt, graph, overlay, run_id=run_id)

    async def refine(
        self,
        prompt: str,
        graph: Mapping[str, Node],
        delta: Delta,
        run_id: str | None = None,
    ) -> Delta:
        """Return ``delta`` refined according to ``prompt``."""
        return await self._run(
            "refine", get_refine_prompt(prompt, delta), graph, delta, run_id=run_id
        )

    async def tweak_node(
        self,
        prompt: str,
        graph: Mapping[str, Node],
        delta: Delta,
        node_id: str,
        run_id: str | None = None,
    ) -> Delta:
        """Adjust one node of ``delta``, seeding its immediate neighbours.

        Raises:
            NodeNotFoundError: ``node_id`` is absent from the merged view.
        """
        index = GraphIndex(self._engine.merged_view(graph, delta))
        node = index.get_node(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)

        user_message = get_tweak_prompt(
            prompt,
            delta,
            node,
            upstream=index.get_upstream(node_id),
            downstream=index.get_downstream(node_id),
        )
        return await self._run("tweak", user_message, graph, delta, run_id=run_id)

    async def delegate(
        self,
        task: str,
        context: str | None,
        graph: Mapping[str, Node],
        overlay: Delta | None = None,
        parent_id: str | None = None,
    ) -> Delta:
        """Plan a delegated sub-task (a ``propose`` with a sub-agent brief)."""
        return await self._run(
            "sub_agent",
            get_sub_agent_prompt(task, context),
            graph,
            overlay,
            parent_id=parent_id,
        )

    # Run driver

    async def _run(
        self,
        variant: Variant,
        user_message: str,
        graph: Mapping[str, Node],
        overlay: Delta | None,
        parent_id: str | None = None,
        run_id: str | None = None,
    ) -> Delta:
        run_id = run_id or new_run_id()
        agent_id = f"{variant}_{uuid.uuid4().hex[:12]}"
        snapshot = self._engine.merged_view(graph, overlay)
        max_iterations = self.context.max_tool_iterations

        self._dispatchers[run_id] = ToolDispatcher(
            self.context,
            graph,
            overlay=overlay,
            spawner=SubAgentSpawner(self.context, orchestrator_factory=AgentOrchestrator),
            run_id=run_id,
            agent_id=agent_id,
        )
        if self.context.metrics_collector is not None:
            self.context.metrics_collector.start(run_id)

        log = logger.bind(run_id=run_id, agent_id=agent_id, variant=variant)
        log.info("agent_run_started", node_count=len(snapshot), parent_id=parent_id)
        await self._publish(
            run_id,
            agent_id,
            EventType.RUN_STARTED,
            {"variant": variant, "node_count": len(snapshot), "parent_id": parent_id},
        )

        initial_state = PlanningState(
            messages=[
                {
                    "role": "system",
                    "content": get_system_prompt(list(snapshot.values()), max_iterations),
                },
                {"role": "user", "content": user_message},
            ],
            tool_calls=[],
            last_content="",
            iteration=0,
            max_iterations=max_iterations,
            status="awaiting_model",
            delta=None,
            run_id=run_id,
            agent_id=agent_id,
        )

        try:
            final_state = await self._compiled_graph.ainvoke(
                initial_state,
                config={"recursion_limit": 2 * max_iterations + 5},
            )
        except Exception as e:
            log.error("agent_run_failed", error_type=type(e).__name__, error=str(e))
            await self._publish(
                run_id,
                agent_id,
                EventType.RUN_FAILED,
                {"error": str(e), "error_type": type(e).__name__},
            )
            raise
        else:
            delta = final_state["delta"]
            log.info(
                "agent_run_complete",
                delta=delta.name,
                operations=len(delta.operations),
                iterations=final_state["iteration"],
            )
            await self._publish(
                run_id,
                agent_id,
                EventType.RUN_COMPLETE,
                {"delta": delta.name, "operations": len(delta.operations)},
            )
            return delta
        finally:
            self._dispatchers.pop(run_id, None)
            if self.context.metrics_collector is not None:
                self.context.metrics_collector.finish(run_id)
            if self.context.event_bus is not None:
                await self.context.event_bus.close_run(run_id)

    # Graph nodes

    async def _call_model(self, state: PlanningState) -> dict[str, Any]:
        await self._publish(
            state["run_id"], state["agent_id"], EventType.GRAPH_NODE_ACTIVE, {"node_id": "call_model"}
        )

        response = await self.context.llm_client.call(
            messages=state["messages"],
            tools=get_tool_definitions_for_llm(),
            model=self.context.model,
            json_mode=True,
            run_id=state["run_id"],
            agent_id=state["agent_id"],
        )

        logger.debug(
            "model_step",
            run_id=state["run_id"],
            iteration=state["iteration"],
            tool_calls=[tc.name for tc in response.tool_calls],
            finish_reason=response.finish_reason,
        )
        await self._publish(
            state["run_id"], state["agent_id"], EventType.GRAPH_NODE_COMPLETE, {"node_id": "call_model"}
        )

        return {
            "messages": [
                format_assistant_message_with_tools(response.content, response.tool_calls)
            ],
            "tool_calls": response.tool_calls,
            "last_content": response.content,
            "status": "executing_tools" if response.tool_calls else "parsing",
        }

    def _route_after_model(self, state: PlanningState) -> str:
        return "tools" if state["tool_calls"] else "final"

    async def _execute_tools(self, state: PlanningState) -> dict[str, Any]:
        iteration = state["iteration"] + 1
        if iteration > state["max_iterations"]:
            logger.warning(
                "iteration_limit_exceeded",
                run_id=state["run_id"],
                max_iterations=state["max_iterations"],
            )
            raise IterationLimitExceeded(state["max_iterations"])

        await self._publish(
            state["run_id"], state["agent_id"], EventType.GRAPH_NODE_ACTIVE, {"node_id": "execute_tools"}
        )

        dispatcher = self._dispatchers[state["run_id"]]
        tool_messages: list[dict[str, Any]] = []
        # Each result is attached to its own call before the next model turn.
        for tool_call in state["tool_calls"]:
            result = await dispatcher.execute(tool_call.name, tool_call.args, tool_call.id)
            tool_messages.append(format_tool_result_for_llm(tool_call.id, result.content))

        logger.info(
            "tools_executed",
            run_id=state["run_id"],
            iteration=iteration,
            tool_count=len(tool_messages),
        )
        await self._publish(
            state["run_id"], state["agent_id"], EventType.GRAPH_NODE_COMPLETE, {"node_id": "execute_tools"}
        )

        return {
            "messages": tool_messages,
            "tool_calls": [],
            "iteration": iteration,
            "status": "awaiting_model",
        }

    async def _parse_delta(self, state: PlanningState) -> dict[str, Any]:
        content = state["last_content"]
        try:
            delta = parse_delta_content(content)
        except DeltaParseError:
            logger.warning(
                "delta_parse_failed",
                run_id=state["run_id"],
                content_preview=content[:200],
            )
            raise

        applies = self._engine.try_apply(self._dispatchers[state["run_id"]].graph, delta)
        await self._publish(
            state["run_id"],
            state["agent_id"],
            EventType.DELTA_PROPOSED,
            {
                "delta": delta.name,
                "operations": len(delta.operations),
                "applies_cleanly": applies.applied,
                "apply_errors": applies.errors,
            },
        )
        return {"delta": delta, "status": "done"}

    async def _publish(
        self,
        run_id: str,
        agent_id: str,
        event_type: EventType,
        data: dict[str, Any],
    ) -> None:
        if self.context.event_bus is None:
            return
        await self.context.event_bus.publish(
            AgentEvent(type=event_type, run_id=run_id, agent_id=agent_id, data=data)
        )
