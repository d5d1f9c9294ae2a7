"""Tests for api/routes.py -- HTTP endpoint handlers.

Uses FastAPI TestClient (backed by httpx) with an AgentContext whose chat
backend is a MockLLMClient. No real LLM calls are made.
"""

import json
from collections.abc import Generator

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from intentgraph.agents.utils import MockLLMClient
from intentgraph.api.routes import router, set_agent_context
from intentgraph.api.websocket import websocket_router
from intentgraph.events.types import EventType
from intentgraph.rate_limiter import RateLimitExhaustedError
from tests.conftest import (
    RecordingEventBus,
    make_context,
    make_delta_response,
    make_llm_response,
    make_tool_call,
)

NODES = [
    {
        "id": "login",
        "type": "behavior",
        "name": "Login",
        "entryPoints": [{"kind": "REST", "name": "POST /api/users/login"}],
        "outputs": ["session"],
    },
    {"id": "session", "type": "data", "name": "Session", "outputs": ["audit-log"]},
    {"id": "audit-log", "type": "integration", "name": "Audit Log"},
]

ADD_NOTIFIER = {
    "name": "add-notifier",
    "operations": [
        {"kind": "add", "node": {"id": "notifier", "type": "integration", "name": "N", "inputs": ["session"]}}
    ],
}


@pytest.fixture()
def llm() -> MockLLMClient:
    return MockLLMClient()


@pytest.fixture()
def client(
    llm: MockLLMClient, event_bus: RecordingEventBus
) -> Generator[TestClient, None, None]:
    """Create a FastAPI TestClient with a scripted agent context."""
    app = FastAPI()
    app.include_router(router)
    app.include_router(websocket_router)
    set_agent_context(make_context(llm, event_bus=event_bus))
    with TestClient(app) as test_client:
        yield test_client
    set_agent_context(None)


# =========================================================================
# Health
# =========================================================================


class TestHealth:
    def test_healthy(self, client: TestClient) -> None:
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["agent_configured"] is True
        assert body["active_sub_agents"] == 0

    def test_degraded_without_context(self, client: TestClient) -> None:
        set_agent_context(None)
        body = client.get("/health").json()
        assert body["status"] == "degraded"
        assert body["agent_configured"] is False


# =========================================================================
# Graph routes
# =========================================================================


class TestGraphRoutes:
    def test_validate_valid(self, client: TestClient) -> None:
        response = client.post("/api/graph/validate", json={"nodes": NODES})
        assert response.json() == {"is_valid": True, "errors": []}

    def test_validate_reports_errors(self, client: TestClient) -> None:
        nodes = [*NODES, {"id": "x", "type": "view", "name": "X", "inputs": ["ghost"]}]
        body = client.post("/api/graph/validate", json={"nodes": nodes}).json()
        assert body["is_valid"] is False
        assert body["errors"] == ["Node x has missing input reference: ghost"]

    def test_duplicate_ids_rejected(self, client: TestClient) -> None:
        response = client.post("/api/graph/validate", json={"nodes": [NODES[0], NODES[0]]})
        assert response.status_code == 422

    def test_apply(self, client: TestClient) -> None:
        response = client.post("/api/graph/apply", json={"nodes": NODES, "delta": ADD_NOTIFIER})
        assert response.status_code == 200
        body = response.json()
        assert body["node_count"] == 4
        assert body["nodes"][-1]["id"] == "notifier"

    def test_apply_duplicate_is_conflict(self, client: TestClient) -> None:
        delta = {"name": "d", "operations": [{"kind": "add", "node": NODES[0]}]}
        response = client.post("/api/graph/apply", json={"nodes": NODES, "delta": delta})
        assert response.status_code == 409
        assert response.json()["detail"] == "Node already exists: login"

    def test_apply_missing_update_target(self, client: TestClient) -> None:
        delta = {"name": "d", "operations": [{"kind": "update", "node": {"id": "ghost", "type": "data", "name": "G"}}]}
        response = client.post("/api/graph/apply", json={"nodes": NODES, "delta": delta})
        assert response.status_code == 404

    def test_apply_invalid_result(self, client: TestClient) -> None:
        delta = {"name": "d", "operations": [{"kind": "remove", "node": {"id": "session"}}]}
        response = client.post("/api/graph/apply", json={"nodes": NODES, "delta": delta})
        assert response.status_code == 422
        assert response.json()["detail"]["errors"] == [
            "Node login has missing output reference: session"
        ]

    def test_merged_view(self, client: TestClient) -> None:
        delta = {"name": "d", "operations": [{"kind": "remove", "node": {"id": "session"}}]}
        body = client.post("/api/graph/merged-view", json={"nodes": NODES, "delta": delta}).json()
        assert [n["id"] for n in body["nodes"]] == ["login", "audit-log"]

    def test_subgraph_with_overlay(self, client: TestClient) -> None:
        body = client.post(
            "/api/graph/subgraph",
            json={"nodes": NODES, "entry_node_id": "session", "delta": ADD_NOTIFIER},
        ).json()
        assert [n["id"] for n in body["nodes"]] == ["session", "audit-log", "notifier"]

    def test_find(self, client: TestClient) -> None:
        body = client.post("/api/graph/find", json={"nodes": NODES, "filters": [["users", "login"]]}).json()
        assert [n["id"] for n in body["nodes"]] == ["login"]


# =========================================================================
# Delta routes
# =========================================================================


class TestDeltaRoutes:
    def test_propose(self, client: TestClient, llm: MockLLMClient) -> None:
        llm.responses = [
            make_llm_response(tool_calls=[make_tool_call("get_node", {"id": "session"})]),
            make_delta_response(ADD_NOTIFIER),
        ]
        response = client.post("/api/deltas/propose", json={"nodes": NODES, "prompt": "Notify users"})
        assert response.status_code == 200
        body = response.json()
        assert body["delta"]["name"] == "add-notifier"
        assert body["applies_cleanly"] is True

    def test_propose_unparseable_is_bad_gateway(self, client: TestClient, llm: MockLLMClient) -> None:
        llm.responses = [make_llm_response(content="no idea")]
        response = client.post("/api/deltas/propose", json={"nodes": NODES, "prompt": "x"})
        assert response.status_code == 502
        assert response.json()["detail"]["raw_content"] == "no idea"

    def test_propose_rate_limited(self, client: TestClient, llm: MockLLMClient) -> None:
        llm.responses = [RateLimitExhaustedError(4, RuntimeError("429"))]
        response = client.post("/api/deltas/propose", json={"nodes": NODES, "prompt": "x"})
        assert response.status_code == 429

    def test_propose_iteration_limit(self, client: TestClient, llm: MockLLMClient) -> None:
        llm.responses = [
            make_llm_response(tool_calls=[make_tool_call("get_node", {"id": "login"}, f"tc_{i}")])
            for i in range(11)
        ]
        response = client.post("/api/deltas/propose", json={"nodes": NODES, "prompt": "x"})
        assert response.status_code == 504

    def test_propose_without_context(self, client: TestClient) -> None:
        set_agent_context(None)
        response = client.post("/api/deltas/propose", json={"nodes": NODES, "prompt": "x"})
        assert response.status_code == 503

    def test_refine(self, client: TestClient, llm: MockLLMClient) -> None:
        llm.responses = [make_delta_response({**ADD_NOTIFIER, "description": "refined"})]
        response = client.post(
            "/api/deltas/refine",
            json={"nodes": NODES, "prompt": "be specific", "delta": ADD_NOTIFIER},
        )
        assert response.json()["delta"]["description"] == "refined"

    def test_tweak_unknown_node(self, client: TestClient) -> None:
        response = client.post(
            "/api/deltas/tweak",
            json={"nodes": NODES, "prompt": "x", "delta": ADD_NOTIFIER, "node_id": "ghost"},
        )
        assert response.status_code == 404

    def test_tweak(self, client: TestClient, llm: MockLLMClient) -> None:
        llm.responses = [make_delta_response(ADD_NOTIFIER)]
        response = client.post(
            "/api/deltas/tweak",
            json={"nodes": NODES, "prompt": "x", "delta": ADD_NOTIFIER, "node_id": "notifier"},
        )
        assert response.status_code == 200
        assert '"id": "notifier"' in llm.call_history[0]["messages"][1]["content"]

    def test_instructions(self, client: TestClient) -> None:
        response = client.post("/api/deltas/instructions", json={"nodes": NODES, "delta": ADD_NOTIFIER})
        markdown = response.json()["markdown"]
        assert "### ADD: N (integration)" in markdown
        assert "Related nodes: login, session, audit-log" in markdown

    def test_empty_prompt_rejected(self, client: TestClient) -> None:
        response = client.post("/api/deltas/propose", json={"nodes": NODES, "prompt": ""})
        assert response.status_code == 422
        assert json.loads(response.text)["detail"][0]["loc"][-1] == "prompt"


# =========================================================================
# Run events
# =========================================================================


class TestRunEvents:
    def test_generated_run_id_returned(self, client: TestClient, llm: MockLLMClient) -> None:
        llm.responses = [make_delta_response(ADD_NOTIFIER)]
        body = client.post("/api/deltas/propose", json={"nodes": NODES, "prompt": "x"}).json()
        assert body["run_id"].startswith("run_")

    def test_history_of_client_chosen_run(self, client: TestClient, llm: MockLLMClient) -> None:
        llm.responses = [make_delta_response(ADD_NOTIFIER)]
        body = client.post(
            "/api/deltas/propose",
            json={"nodes": NODES, "prompt": "x", "run_id": "run_editor_1"},
        ).json()
        assert body["run_id"] == "run_editor_1"

        history = client.get("/api/runs/run_editor_1/events").json()
        assert history["closed"] is True
        types = [event["type"] for event in history["events"]]
        assert types[0] == EventType.RUN_STARTED.value
        assert EventType.DELTA_PROPOSED.value in types
        assert EventType.RUN_CLOSED.value not in types

    def test_unknown_run_is_not_found(self, client: TestClient) -> None:
        assert client.get("/api/runs/run_missing/events").status_code == 404

    def test_invalid_run_id_rejected(self, client: TestClient) -> None:
        response = client.post(
            "/api/deltas/propose",
            json={"nodes": NODES, "prompt": "x", "run_id": "../etc"},
        )
        assert response.status_code == 422

    def test_history_without_context(self, client: TestClient) -> None:
        set_agent_context(None)
        assert client.get("/api/runs/run_1/events").status_code == 503

    def test_stream_live_run(self, client: TestClient, llm: MockLLMClient) -> None:
        llm.responses = [make_delta_response(ADD_NOTIFIER)]
        with client.websocket_connect("/ws/runs/run_live") as ws:
            response = client.post(
                "/api/deltas/propose",
                json={"nodes": NODES, "prompt": "x", "run_id": "run_live"},
            )
            assert response.status_code == 200

            types = []
            while not types or types[-1] != EventType.RUN_CLOSED.value:
                types.append(ws.receive_json()["type"])

        assert types[0] == EventType.RUN_STARTED.value
        assert EventType.RUN_COMPLETE.value in types

    def test_stream_replays_closed_run(self, client: TestClient, llm: MockLLMClient) -> None:
        llm.responses = [make_delta_response(ADD_NOTIFIER)]
        client.post(
            "/api/deltas/propose",
            json={"nodes": NODES, "prompt": "x", "run_id": "run_done"},
        )

        with client.websocket_connect("/ws/runs/run_done") as ws:
            messages = []
            while not messages or messages[-1]["type"] != EventType.RUN_CLOSED.value:
                messages.append(ws.receive_json())

        assert messages[0]["type"] == EventType.RUN_STARTED.value
        assert all(m["run_id"] == "run_done" for m in messages)

    def test_ping(self, client: TestClient, event_bus: RecordingEventBus) -> None:
        with client.websocket_connect("/ws/runs/run_idle") as ws:
            ws.send_json({"type": "ping", "timestamp": 1})
            assert ws.receive_json() == {"type": "pong", "timestamp": 1}
