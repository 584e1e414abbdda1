"""
HTTP 服务测试 — 使用 FastAPI TestClient 与离线占位处理器：
  1. 图提交与校验
  2. 启动运行并读取 text/event-stream 事件流
  3. 运行查询、事件重放、取消与健康检查
  4. 存储故障映射为 503

运行方式:
    python -m pytest tests/test_server.py -v
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from dag.errors import InfrastructureError
from dag.graph import ComputeGraph
from dag.runner import GraphRunner
from dag.templates import build_node
from handlers.registry import build_dry_run_registry
from schema import EventType, NodeKind
from server import create_app
from store.memory import InMemoryGraphStore, InMemoryRunStore
from stream.framing import decode_events

from helpers import chain_graph, make_runner


class BrokenGraphStore(InMemoryGraphStore):

    async def save_graph(self, project_id: str, graph: ComputeGraph) -> None:
        raise InfrastructureError("graph store offline")


def _graph_body(nodes, edges) -> dict:
    return {
        "nodes": [n.model_dump(mode="json") for n in nodes],
        "edges": [e.model_dump(mode="json") for e in edges],
    }


@pytest.fixture
def client():
    runner = make_runner(build_dry_run_registry(delay=0))
    with TestClient(create_app(runner)) as test_client:
        yield test_client


@pytest.fixture
def stored_project(client):
    nodes, edges = chain_graph()
    resp = client.put("/projects/demo/graph", json=_graph_body(nodes, edges))
    assert resp.status_code == 200
    return "demo"


# ======================================================================
# Test 1: 图提交与校验
# ======================================================================


class TestGraphRoutes:

    def test_put_valid_graph(self, client):
        nodes, edges = chain_graph()
        resp = client.put("/projects/demo/graph", json=_graph_body(nodes, edges))
        assert resp.status_code == 200
        assert resp.json() == {"valid": True, "errors": []}

    def test_put_invalid_graph_is_stored_with_errors(self, client):
        image = build_node(NodeKind.GENERATE_IMAGE, "image")
        resp = client.put("/projects/draft/graph", json=_graph_body([image], []))
        assert resp.status_code == 200
        assert resp.json()["valid"] is False

        again = client.post("/projects/draft/validate")
        assert again.status_code == 200, "不合法的图也应被保存"
        assert again.json()["errors"] == resp.json()["errors"]

    def test_malformed_body(self, client):
        resp = client.put("/projects/demo/graph", json={"nodes": [{"id": "x", "kind": "teleport"}]})
        assert resp.status_code == 422

    def test_validate_unknown_project(self, client):
        assert client.post("/projects/nope/validate").status_code == 404


# ======================================================================
# Test 2: 运行与事件流
# ======================================================================


class TestRunRoutes:

    def test_run_streams_events(self, client, stored_project):
        resp = client.post(f"/projects/{stored_project}/runs")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        run_id = resp.headers["x-run-id"]

        events = decode_events(resp.text)
        assert events[0].type == EventType.META
        assert events[0].payload.run_id == run_id
        assert events[-1].type == EventType.COMPLETE
        assert events[-1].payload.completed_nodes == 3
        assert any(e.type == EventType.NODE_PROGRESS for e in events), "占位处理器应上报进度"

    def test_run_record_and_replay(self, client, stored_project):
        resp = client.post(f"/projects/{stored_project}/runs")
        run_id = resp.headers["x-run-id"]
        live = [e for e in decode_events(resp.text) if e.type != EventType.NODE_PROGRESS]

        run = client.get(f"/runs/{run_id}").json()
        assert run["status"] == "completed"
        assert run["execution_order"] == ["prompt", "image", "video"]

        replay = client.get(f"/runs/{run_id}/events")
        assert replay.status_code == 200
        assert [e.model_dump() for e in decode_events(replay.text)] == [e.model_dump() for e in live]

    def test_run_invalid_graph(self, client):
        image = build_node(NodeKind.GENERATE_IMAGE, "image")
        client.put("/projects/draft/graph", json=_graph_body([image], []))

        resp = client.post("/projects/draft/runs")
        assert resp.status_code == 422
        detail = resp.json()["detail"]
        assert detail["message"] == "Graph is not executable"
        assert detail["errors"] == ['Node Generate Image: Required input "Prompt" is not connected']

    def test_run_unknown_project(self, client):
        assert client.post("/projects/nope/runs").status_code == 404

    def test_unknown_run(self, client):
        assert client.get("/runs/nope").status_code == 404
        assert client.get("/runs/nope/events").status_code == 404
        assert client.post("/runs/nope/cancel").status_code == 404

    def test_cancel_finished_run(self, client, stored_project):
        run_id = client.post(f"/projects/{stored_project}/runs").headers["x-run-id"]
        resp = client.post(f"/runs/{run_id}/cancel")
        assert resp.status_code == 409, "已结束的运行不可取消"


# ======================================================================
# Test 3: 系统路由与故障映射
# ======================================================================


class TestSystemRoutes:

    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["active_runs"] == 0
        assert body["uptime_seconds"] >= 0

    def test_store_failure_maps_to_503(self):
        runner = GraphRunner(BrokenGraphStore(), InMemoryRunStore(), build_dry_run_registry(delay=0))
        nodes, edges = chain_graph()
        with TestClient(create_app(runner)) as test_client:
            resp = test_client.put("/projects/demo/graph", json=_graph_body(nodes, edges))
        assert resp.status_code == 503
        assert "graph store offline" in resp.json()["detail"]
