"""Tests for agents/tools.py -- tool definitions and ToolDispatcher.

Covers graph queries against the merged view, argument normalisation,
error payloads, truncation, event emission and spawn delegation.
"""

import json
from unittest.mock import AsyncMock

from intentgraph.agents.tools import (
    TOOL_DEFINITIONS,
    ToolDispatcher,
    get_tool_definitions_for_llm,
)
from intentgraph.agents.utils import MockLLMClient
from intentgraph.events.types import EventType
from intentgraph.metrics import MetricsCollector
from tests.conftest import make_context, make_delta

RUN_ID = "run_tools_test"


def _make_dispatcher(graph, event_bus=None, overlay=None, spawner=None, **context_kwargs) -> ToolDispatcher:
    context = make_context(MockLLMClient(), event_bus=event_bus, **context_kwargs)
    return ToolDispatcher(
        context,
        graph,
        overlay=overlay,
        spawner=spawner,
        run_id=RUN_ID,
        agent_id="agent_1",
    )


# =========================================================================
# Tool Definitions
# =========================================================================


class TestToolDefinitions:
    def test_tool_names(self) -> None:
        names = {t["name"] for t in TOOL_DEFINITIONS}
        assert names == {"get_node", "get_subgraph", "find_nodes", "execute_code", "spawn_agent"}

    def test_llm_format(self) -> None:
        formatted = get_tool_definitions_for_llm()
        assert len(formatted) == 5
        for tool in formatted:
            assert tool["type"] == "function"
            assert set(tool["function"]) == {"name", "description", "parameters"}

    def test_spawn_can_be_excluded(self) -> None:
        names = [t["function"]["name"] for t in get_tool_definitions_for_llm(include_spawn=False)]
        assert "spawn_agent" not in names


# =========================================================================
# Graph queries
# =========================================================================


class TestGraphQueries:
    async def test_get_node(self, sample_graph) -> None:
        result = await _make_dispatcher(sample_graph).execute("get_node", {"id": "login"}, "tc_1")
        assert result.success is True
        assert result.tool_call_id == "tc_1"
        payload = json.loads(result.content)
        assert payload["id"] == "login"
        assert payload["entryPoints"][0]["kind"] == "REST"

    async def test_get_node_missing(self, sample_graph) -> None:
        result = await _make_dispatcher(sample_graph).execute("get_node", {"id": "ghost"})
        assert result.success is False
        assert json.loads(result.content) == {"error": "Node not found: ghost"}
        assert result.error == "Node not found: ghost"

    async def test_get_subgraph(self, sample_graph) -> None:
        result = await _make_dispatcher(sample_graph).execute("get_subgraph", {"entryPointId": "login"})
        assert [n["id"] for n in json.loads(result.content)] == ["login", "session", "audit-log"]

    async def test_find_nodes(self, sample_graph) -> None:
        result = await _make_dispatcher(sample_graph).execute(
            "find_nodes", {"filters": [["users", "login"], ["report"]]}
        )
        assert [n["id"] for n in json.loads(result.content)] == ["login", "nightly-report"]

    async def test_find_nodes_flat_list_is_one_group(self, sample_graph) -> None:
        result = await _make_dispatcher(sample_graph).execute("find_nodes", {"filters": ["users", "job"]})
        assert [n["id"] for n in json.loads(result.content)] == ["nightly-report"]

    async def test_queries_see_overlay(self, sample_graph) -> None:
        overlay = make_delta(operations=[
            {"kind": "add", "node": {"id": "draft", "type": "view", "name": "Draft"}},
            {"kind": "remove", "node": {"id": "nightly-report"}},
        ])
        dispatcher = _make_dispatcher(sample_graph, overlay=overlay)

        found = await dispatcher.execute("get_node", {"id": "draft"})
        hidden = await dispatcher.execute("get_node", {"id": "nightly-report"})

        assert found.success is True
        assert hidden.success is False
        assert "draft" not in sample_graph


# =========================================================================
# Argument normalisation
# =========================================================================


class TestArguments:
    async def test_unknown_fields_ignored(self, sample_graph) -> None:
        result = await _make_dispatcher(sample_graph).execute("get_node", {"id": " login ", "verbose": True})
        assert result.success is True

    async def test_missing_required(self, sample_graph) -> None:
        result = await _make_dispatcher(sample_graph).execute("get_node", {})
        assert json.loads(result.content) == {"error": "Missing required arguments: id"}

    async def test_wrong_type(self, sample_graph) -> None:
        result = await _make_dispatcher(sample_graph).execute("get_subgraph", {"entryPointId": 42})
        assert json.loads(result.content) == {"error": "Invalid type for 'entryPointId': expected string"}

    async def test_invalid_filter_groups(self, sample_graph) -> None:
        result = await _make_dispatcher(sample_graph).execute("find_nodes", {"filters": [["a"], 3]})
        assert result.success is False

    async def test_unknown_tool(self, sample_graph) -> None:
        result = await _make_dispatcher(sample_graph).execute("delete_everything", {})
        assert json.loads(result.content) == {"error": "Unknown tool: delete_everything"}

    async def test_non_dict_args(self, sample_graph) -> None:
        result = await _make_dispatcher(sample_graph).execute("get_node", ["login"])
        assert result.success is False


# =========================================================================
# execute_code
# =========================================================================


class TestExecuteCode:
    async def test_runs_against_snapshot_nodes(self, sample_graph, tmp_path) -> None:
        dispatcher = _make_dispatcher(sample_graph, roots=[str(tmp_path)])
        result = await dispatcher.execute("execute_code", {"code": "len(nodes)"})
        assert json.loads(result.content) == {"result": 4, "output": []}

    async def test_sandbox_error_is_failure(self, sample_graph, tmp_path) -> None:
        dispatcher = _make_dispatcher(sample_graph, roots=[str(tmp_path)])
        result = await dispatcher.execute("execute_code", {"code": "import os"})
        assert result.success is False
        assert result.error == "Imports are not allowed"


# =========================================================================
# Truncation, events and metrics
# =========================================================================


class TestDispatchSideEffects:
    async def test_large_result_truncated(self, sample_graph) -> None:
        dispatcher = _make_dispatcher(sample_graph, max_tool_result_chars=50)
        result = await dispatcher.execute("get_subgraph", {"entryPointId": "login"})
        assert "[truncated" in result.content
        assert result.content.startswith('[{"id": "login"')
        assert len(result.content.split("\n")[0]) == 50

    async def test_events_published(self, sample_graph, event_bus) -> None:
        dispatcher = _make_dispatcher(sample_graph, event_bus=event_bus)
        await dispatcher.execute("get_node", {"id": "login"}, "tc_9")

        assert event_bus.types() == [EventType.AGENT_TOOL_CALL, EventType.AGENT_TOOL_RESULT]
        call_event, result_event = event_bus.published
        assert call_event.run_id == RUN_ID
        assert call_event.data["tool"] == "get_node"
        assert call_event.data["tool_call_id"] == "tc_9"
        assert result_event.data["success"] is True

    async def test_tool_calls_counted(self, sample_graph) -> None:
        collector = MetricsCollector()
        collector.start(RUN_ID)
        dispatcher = _make_dispatcher(sample_graph, metrics_collector=collector)
        await dispatcher.execute("get_node", {"id": "login"})
        await dispatcher.execute("get_node", {"id": "ghost"})
        assert collector.get(RUN_ID).tool_calls == 2


# =========================================================================
# spawn_agent
# =========================================================================


class TestSpawnAgent:
    async def test_without_spawner(self, sample_graph) -> None:
        result = await _make_dispatcher(sample_graph).execute("spawn_agent", {"task": "x"})
        assert json.loads(result.content) == {"error": "Sub-agent spawning is not available"}

    async def test_delegates_with_parent_ids(self, sample_graph) -> None:
        spawner = AsyncMock()
        spawner.spawn = AsyncMock(return_value=make_delta(name="sub"))
        overlay = make_delta(name="pending")
        dispatcher = _make_dispatcher(sample_graph, overlay=overlay, spawner=spawner)

        result = await dispatcher.execute("spawn_agent", {"task": "plan audit", "context": "ctx"})

        assert json.loads(result.content)["name"] == "sub"
        spawner.spawn.assert_awaited_once_with(
            "plan audit",
            "ctx",
            graph=sample_graph,
            overlay=overlay,
            parent_id="agent_1",
            parent_run_id=RUN_ID,
        )

    async def test_rejected_spawn_is_null(self, sample_graph) -> None:
        spawner = AsyncMock()
        spawner.spawn = AsyncMock(return_value=None)
        result = await _make_dispatcher(sample_graph, spawner=spawner).execute("spawn_agent", {"task": "x"})
        assert result.success is True
        assert result.content == "null"

    async def test_sub_agent_failure_becomes_error(self, sample_graph) -> None:
        spawner = AsyncMock()
        spawner.spawn = AsyncMock(side_effect=RuntimeError("sub-agent exploded"))
        result = await _make_dispatcher(sample_graph, spawner=spawner).execute("spawn_agent", {"task": "x"})
        assert json.loads(result.content) == {"error": "sub-agent exploded"}
