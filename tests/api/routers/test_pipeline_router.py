"""HTTP and WebSocket tests for the pipeline, graph and progress endpoints."""

import asyncio
import time
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from api.main import app
from api.middleware.rate_limiter import node_expansion_limiter, pipeline_run_limiter
from api.orchestrators.pipeline_orchestrator import PipelineOrchestrator, get_orchestrator
from api.tools.graph_builder import GraphBuilder
from libs.caching.stage_snapshots import StageSnapshotStore
from libs.common.settings import Settings
from libs.models.graph import NodeType
from libs.storage.graph_store import InMemoryGraphStore
from tests.helpers import DOMAIN_ANALYSIS_RESPONSE, ScriptedGenerator, full_script

# --- Test Setup ---


def build_orchestrator(responses=None, store=None) -> PipelineOrchestrator:
    script = full_script() if responses is None else responses
    return PipelineOrchestrator(
        client=ScriptedGenerator(script),
        store=store or InMemoryGraphStore(),
        snapshots=StageSnapshotStore(AsyncMock()),
        settings=Settings(app_env="test"),
    )


def slow_domain_script(delay: float = 1.0) -> dict:
    async def slow(messages):
        await asyncio.sleep(delay)
        return DOMAIN_ANALYSIS_RESPONSE

    return {**full_script(), "domain_analysis": slow}


def stored_graph_store():
    builder = GraphBuilder()
    root = builder.add_root("Product Manager")
    strategy = builder.add_node("Product Strategy", NodeType.CATEGORY, root)
    roadmap = builder.add_node("Roadmapping", NodeType.SUBCATEGORY, strategy)
    builder.add_node("Prioritisation", NodeType.SKILL, roadmap)
    graph = builder.build()

    store = InMemoryGraphStore()
    asyncio.run(store.replace_graph("pm-session", graph))
    return store, graph


@pytest.fixture
def api_client():
    """Yields (client, install) where install() swaps in an orchestrator."""
    pipeline_run_limiter.reset()
    node_expansion_limiter.reset()

    def install(orchestrator: PipelineOrchestrator) -> PipelineOrchestrator:
        app.dependency_overrides[get_orchestrator] = lambda: orchestrator
        return orchestrator

    install(build_orchestrator())
    with TestClient(app) as client:
        yield client, install
    app.dependency_overrides.clear()


def wait_for_status(client: TestClient, session_id: str, *wanted: str, attempts: int = 300) -> dict:
    for _ in range(attempts):
        body = client.get(f"/api/v1/pipeline/runs/{session_id}").json()
        if body.get("status") in wanted:
            return body
        time.sleep(0.01)
    raise AssertionError(f"Session {session_id} never reached {wanted}")


def collect_frames(websocket) -> list:
    frames = []
    while True:
        try:
            frames.append(websocket.receive_json())
        except WebSocketDisconnect:
            return frames


# --- Test Cases ---


class TestPipelineRuns:
    def test_run_accepted_and_completes(self, api_client):
        client, _ = api_client

        response = client.post(
            "/api/v1/pipeline/runs",
            json={"roleName": "Data Engineer", "industries": ["Finance"], "sessionId": "run-1"},
        )

        assert response.status_code == 202
        body = response.json()
        assert body["sessionId"] == "run-1"
        assert body["progressUrl"] == "/api/v1/progress/run-1"
        assert "X-Request-ID" in response.headers

        final = wait_for_status(client, "run-1", "completed", "failed", "cancelled")
        assert final["status"] == "completed"
        assert final["stageKinds"]["structuring"] == "ok"

        graph = client.get("/api/v1/graphs/run-1").json()
        assert graph["sessionId"] == "run-1"
        assert any(n["type"] == "root" and n["name"] == "Data Engineer" for n in graph["nodes"])

    def test_blank_role_rejected(self, api_client):
        client, _ = api_client

        response = client.post("/api/v1/pipeline/runs", json={"roleName": "   "})

        assert response.status_code == 422

    def test_second_run_for_active_session_conflicts(self, api_client):
        client, install = api_client
        install(build_orchestrator(slow_domain_script(0.3)))
        payload = {"roleName": "Data Engineer", "sessionId": "busy"}

        assert client.post("/api/v1/pipeline/runs", json=payload).status_code == 202
        response = client.post("/api/v1/pipeline/runs", json=payload)

        assert response.status_code == 409
        assert response.json()["detail"]["error_code"] == "SessionConflictError"
        wait_for_status(client, "busy", "completed")

    def test_cancel_active_run(self, api_client):
        client, install = api_client
        install(build_orchestrator(slow_domain_script(0.3)))
        client.post("/api/v1/pipeline/runs", json={"roleName": "Data Engineer", "sessionId": "stop-me"})

        response = client.post("/api/v1/pipeline/runs/stop-me/cancel")

        assert response.status_code == 200
        assert response.json() == {"sessionId": "stop-me", "cancelRequested": True}
        final = wait_for_status(client, "stop-me", "completed", "cancelled")
        assert final["status"] == "cancelled"
        assert client.get("/api/v1/graphs/stop-me").status_code == 404

    def test_cancel_unknown_run(self, api_client):
        client, _ = api_client

        response = client.post("/api/v1/pipeline/runs/nobody/cancel")

        assert response.status_code == 404

    def test_unknown_run_status(self, api_client):
        client, _ = api_client

        assert client.get("/api/v1/pipeline/runs/nobody").status_code == 404

    def test_rate_limited(self, api_client, monkeypatch):
        client, _ = api_client
        monkeypatch.setattr(pipeline_run_limiter, "max_requests", 1)

        first = client.post("/api/v1/pipeline/runs", json={"roleName": "Nurse", "sessionId": "a"})
        second = client.post("/api/v1/pipeline/runs", json={"roleName": "Nurse", "sessionId": "b"})

        assert first.status_code == 202
        assert second.status_code == 429
        assert "Retry-After" in second.headers
        assert second.json()["detail"]["error_code"] == "RATE_LIMIT_EXCEEDED"
        wait_for_status(client, "a", "completed")


class TestGraphs:
    def test_get_graph(self, api_client):
        client, install = api_client
        store, graph = stored_graph_store()
        install(build_orchestrator(store=store))

        body = client.get("/api/v1/graphs/pm-session").json()

        assert len(body["nodes"]) == len(graph.nodes)
        assert {"source", "target", "label", "strength"} <= set(body["edges"][0])

    def test_missing_graph(self, api_client):
        client, _ = api_client

        response = client.get("/api/v1/graphs/missing")

        assert response.status_code == 404
        assert response.json()["detail"]["error_code"] == "GraphNotFound"

    def test_subgraph(self, api_client):
        client, install = api_client
        store, graph = stored_graph_store()
        install(build_orchestrator(store=store))
        center = graph.find_by_name("Product Strategy").id

        body = client.get(f"/api/v1/graphs/pm-session/subgraph?center={center}&depth=1").json()

        assert body["center"] == center
        assert {n["name"] for n in body["nodes"]} == {"Product Manager", "Product Strategy", "Roadmapping"}

    def test_subgraph_unknown_center_and_bad_depth(self, api_client):
        client, install = api_client
        store, _ = stored_graph_store()
        install(build_orchestrator(store=store))

        assert client.get("/api/v1/graphs/pm-session/subgraph?center=ghost").status_code == 404
        assert client.get("/api/v1/graphs/pm-session/subgraph?center=ghost&depth=9").status_code == 422

    def test_expand_node(self, api_client):
        client, install = api_client
        store, graph = stored_graph_store()
        install(build_orchestrator({"node_expansion": {"subNodes": ["Pricing", "Discovery"]}}, store=store))
        node_id = graph.find_by_name("Product Strategy").id

        response = client.post(f"/api/v1/graphs/pm-session/nodes/{node_id}/expand")

        assert response.status_code == 200
        body = response.json()
        assert body["kind"] == "ok"
        assert body["added"] == 2
        names = {n["name"] for n in client.get("/api/v1/graphs/pm-session").json()["nodes"]}
        assert {"Pricing", "Discovery"} <= names

    def test_expand_without_stored_graph(self, api_client):
        client, _ = api_client

        response = client.post("/api/v1/graphs/none/nodes/n1/expand")

        assert response.status_code == 404
        assert response.json()["detail"]["error_code"] == "SessionNotFoundError"


class TestProgressSocket:
    def test_client_messages(self, api_client):
        client, _ = api_client

        with client.websocket_connect("/api/v1/progress/idle") as websocket:
            assert websocket.receive_json() == {"type": "subscribed", "sessionId": "idle"}

            websocket.send_json({"operation": "ping"})
            assert websocket.receive_json() == {"type": "pong"}

            websocket.send_text("not json")
            assert websocket.receive_json()["type"] == "error"

            websocket.send_json({"operation": "cancel"})
            error = websocket.receive_json()
            assert error["type"] == "error"
            assert "No active run" in error["message"]

    def test_finished_run_replays_terminal_event(self, api_client):
        client, _ = api_client
        client.post("/api/v1/pipeline/runs", json={"roleName": "Data Engineer", "sessionId": "done"})
        wait_for_status(client, "done", "completed")

        with client.websocket_connect("/api/v1/progress/done") as websocket:
            frames = collect_frames(websocket)

        assert frames[0]["type"] == "subscribed"
        assert frames[-1]["status"] == "completed"
        assert frames[-1]["percent"] == 100

    def test_live_progress_until_completion(self, api_client):
        client, install = api_client
        install(build_orchestrator(slow_domain_script(0.3)))
        client.post("/api/v1/pipeline/runs", json={"roleName": "Data Engineer", "sessionId": "live"})

        with client.websocket_connect("/api/v1/progress/live") as websocket:
            frames = collect_frames(websocket)

        progress = [f for f in frames if f["type"] == "progress"]
        percents = [f["percent"] for f in progress]
        assert percents == sorted(percents)
        assert progress[-1]["status"] == "completed"
        assert [f["status"] for f in progress].count("completed") == 1

    def test_cancel_over_socket(self, api_client):
        client, install = api_client
        install(build_orchestrator(slow_domain_script(1.0)))
        client.post("/api/v1/pipeline/runs", json={"roleName": "Data Engineer", "sessionId": "ws-cancel"})

        with client.websocket_connect("/api/v1/progress/ws-cancel") as websocket:
            websocket.receive_json()
            websocket.send_json({"sessionId": "ws-cancel", "operation": "cancel"})
            frames = collect_frames(websocket)

        assert frames[-1]["status"] == "cancelled"
        assert frames[-1]["percent"] == 0
        assert wait_for_status(client, "ws-cancel", "cancelled")["cancelRequested"] is True

    def test_closing_socket_releases_subscription(self, api_client):
        client, install = api_client
        orchestrator = install(build_orchestrator())

        with client.websocket_connect("/api/v1/progress/leaving") as websocket:
            assert websocket.receive_json()["type"] == "subscribed"
            assert "leaving" in orchestrator.hub

        for _ in range(100):
            if "leaving" not in orchestrator.hub:
                break
            time.sleep(0.01)
        assert "leaving" not in orchestrator.hub


class TestHealth:
    def test_healthz(self, api_client):
        client, _ = api_client

        body = client.get("/healthz").json()

        assert body["status"] == "healthy"
        assert body["service"] == "api"

    def test_readyz_reports_redis_without_failing(self, api_client, monkeypatch):
        client, _ = api_client
        monkeypatch.setattr("api.main.redis_health_check", AsyncMock(return_value=False))

        body = client.get("/readyz").json()

        assert body["status"] == "ready"
        assert body["details"]["redis"] == "unavailable"
