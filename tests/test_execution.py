"""
执行引擎测试 — 分别体现：
  1. 正常执行：按层执行、输入沿边传递、事件顺序
  2. 失败隔离：失败节点的全部下游被跳过，兄弟分支继续执行
  3. 取消：停止派发、取消进行中的任务、未终结节点标记为 CANCELED
  4. 致命错误：运行存储故障以单个 error 事件结束
  5. 并发：同层并发执行，并受并发上限约束

运行方式:
    python -m pytest tests/test_execution.py -v
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

import config
from dag.errors import GraphValidationError
from dag.templates import build_node
from handlers.registry import build_dry_run_registry
from schema import (
    EventType,
    GraphSubmission,
    NodeKind,
    NodeOutput,
    NodeStatus,
    RunStatus,
)
from store.memory import InMemoryRunStore

from helpers import (
    IMAGE_OUTPUT,
    VIDEO_OUTPUT,
    StubHandler,
    branches_graph,
    chain_graph,
    edge,
    local_registry,
    make_runner,
    run_to_end,
    status_trail,
)


class FailingEventStore(InMemoryRunStore):
    """append_run_event 总是失败的运行存储。"""

    async def append_run_event(self, *args: Any, **kwargs: Any):
        raise OSError("disk full")


class FailingCreateStore(InMemoryRunStore):
    """create_run 总是失败的运行存储。"""

    def __init__(self) -> None:
        super().__init__()
        self.create_calls = 0

    async def create_run(self, project_id: str) -> str:
        self.create_calls += 1
        raise OSError("database unavailable")


class CountingStore(InMemoryRunStore):

    def __init__(self) -> None:
        super().__init__()
        self.create_calls = 0

    async def create_run(self, project_id: str) -> str:
        self.create_calls += 1
        return await super().create_run(project_id)


# ======================================================================
# Test 1: 正常执行
# ======================================================================


class TestHappyPath:

    @pytest.mark.asyncio
    async def test_chain_runs_level_by_level(self):
        """input -> image -> video：三层依次执行，video 收到 image 的输出."""
        image = StubHandler(NodeKind.GENERATE_IMAGE, IMAGE_OUTPUT)
        video = StubHandler(NodeKind.GENERATE_VIDEO, VIDEO_OUTPUT)
        runner = make_runner(local_registry(image, video))
        nodes, edges = chain_graph()

        events, run, run_id = await run_to_end(runner, nodes, edges)

        meta = events[0]
        assert meta.type == EventType.META
        assert meta.payload.run_id == run_id
        assert meta.payload.levels == [["prompt"], ["image"], ["video"]]
        assert meta.payload.total_nodes == 3

        assert status_trail(events) == [
            ("prompt", "running"), ("prompt", "succeeded"),
            ("image", "running"), ("image", "succeeded"),
            ("video", "running"), ("video", "succeeded"),
        ]

        complete = events[-1]
        assert complete.type == EventType.COMPLETE
        assert complete.payload.status == RunStatus.COMPLETED
        assert complete.payload.completed_nodes == 3
        assert complete.payload.failed_nodes == [] and complete.payload.skipped_nodes == []

        assert image.calls[0]["prompt"].data == "a red fox in snow", "image 应通过 prompt 端口收到上游文本"
        assert video.calls[0]["image"] == IMAGE_OUTPUT, "video 应通过 image 端口收到 image 的输出"
        assert run.status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_run_record_is_persisted(self):
        image = StubHandler(NodeKind.GENERATE_IMAGE, IMAGE_OUTPUT)
        video = StubHandler(NodeKind.GENERATE_VIDEO, VIDEO_OUTPUT)
        store = InMemoryRunStore()
        runner = make_runner(local_registry(image, video), run_store=store)
        nodes, edges = chain_graph()

        _, _, run_id = await run_to_end(runner, nodes, edges)

        stored = await store.get_run(run_id)
        assert stored.status == RunStatus.COMPLETED
        assert stored.completed_nodes == stored.total_nodes == 3
        assert stored.execution_order == ["prompt", "image", "video"]
        assert stored.finished_at is not None

        records = await store.list_run_events(run_id)
        assert [(r.node_id, r.status) for r in records][-1] == ("video", NodeStatus.SUCCEEDED)
        assert records[-1].payload["output"]["url"] == VIDEO_OUTPUT.url

    @pytest.mark.asyncio
    async def test_each_node_runs_exactly_once(self):
        nodes, edges = branches_graph()
        transform = StubHandler(NodeKind.TRANSFORM, NodeOutput(type="text", data="X"))
        runner = make_runner(local_registry(transform))

        events, _, _ = await run_to_end(runner, nodes, edges)

        assert len(transform.calls) == 2
        running = [nid for nid, status in status_trail(events) if status == "running"]
        assert sorted(running) == sorted(n.id for n in nodes)
        assert events[-1].payload.completed_nodes == 5

    @pytest.mark.asyncio
    async def test_dry_run_reports_progress(self):
        """离线占位处理器会上报进度，进度事件位于 running 与 succeeded 之间."""
        runner = make_runner(build_dry_run_registry(delay=0.01))
        nodes, edges = chain_graph()

        events, run, _ = await run_to_end(runner, nodes, edges)

        image_events = [
            e for e in events
            if e.type in (EventType.NODE_STATUS, EventType.NODE_PROGRESS) and e.payload.node_id == "image"
        ]
        assert image_events[0].type == EventType.NODE_STATUS
        assert image_events[-1].payload.status == NodeStatus.SUCCEEDED
        progress = [e.payload.progress for e in image_events if e.type == EventType.NODE_PROGRESS]
        assert progress == sorted(progress) and progress[-1] == 100.0
        assert run.status == RunStatus.COMPLETED


# ======================================================================
# Test 2: 失败隔离与跳过传播
# ======================================================================


class TestFailureIsolation:

    @pytest.mark.asyncio
    async def test_failed_node_skips_downstream(self):
        """image 失败 -> video 被跳过且其处理器从未被调用，运行仍以 completed 结束."""
        image = StubHandler(NodeKind.GENERATE_IMAGE, fail_if=lambda _: True)
        video = StubHandler(NodeKind.GENERATE_VIDEO, VIDEO_OUTPUT)
        runner = make_runner(local_registry(image, video))
        nodes, edges = chain_graph()

        events, run, _ = await run_to_end(runner, nodes, edges)

        assert status_trail(events) == [
            ("prompt", "running"), ("prompt", "succeeded"),
            ("image", "running"), ("image", "failed"),
            ("video", "skipped"),
        ]
        failed = [e for e in events if e.type == EventType.NODE_STATUS and e.payload.status == NodeStatus.FAILED]
        assert failed[0].payload.error == "generate-image backend exploded"
        assert video.calls == [], "被跳过的节点不应调用处理器"

        complete = events[-1].payload
        assert complete.status == RunStatus.COMPLETED
        assert complete.failed_nodes == ["image"]
        assert complete.skipped_nodes == ["video"]
        assert complete.completed_nodes == 1
        assert run.completed_nodes == 1

    @pytest.mark.asyncio
    async def test_skip_is_transitive(self):
        image = StubHandler(NodeKind.GENERATE_IMAGE, fail_if=lambda _: True)
        video = StubHandler(NodeKind.GENERATE_VIDEO, VIDEO_OUTPUT)
        runner = make_runner(local_registry(image, video))
        nodes, edges = chain_graph()
        nodes.append(build_node(NodeKind.OUTPUT, "final"))
        edges.append(edge("e3", "video", "video", "final", "in"))

        events, _, _ = await run_to_end(runner, nodes, edges)

        assert events[-1].payload.skipped_nodes == ["video", "final"]

    @pytest.mark.asyncio
    async def test_sibling_branch_keeps_running(self):
        """t_a 失败时 t_b 照常成功，汇合节点 combine 被跳过."""
        transform = StubHandler(
            NodeKind.TRANSFORM,
            NodeOutput(type="text", data="RIGHT"),
            fail_if=lambda inputs: inputs["in"].data == "left",
        )
        runner = make_runner(local_registry(transform))
        nodes, edges = branches_graph()

        events, _, _ = await run_to_end(runner, nodes, edges)

        trail = dict(status_trail(events))
        assert trail["t_a"] == "failed"
        assert trail["t_b"] == "succeeded"
        assert trail["combine"] == "skipped"
        assert events[-1].payload.completed_nodes == 3

    @pytest.mark.asyncio
    async def test_missing_handler_fails_only_that_node(self):
        runner = make_runner(local_registry())
        nodes, edges = chain_graph()

        events, run, _ = await run_to_end(runner, nodes, edges)

        failed = [e.payload for e in events if e.type == EventType.NODE_STATUS and e.payload.status == NodeStatus.FAILED]
        assert failed[0].node_id == "image"
        assert "No handler registered" in failed[0].error
        assert run.status == RunStatus.COMPLETED


# ======================================================================
# Test 3: 取消
# ======================================================================


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_in_flight_run(self):
        gate = asyncio.Event()
        image = StubHandler(NodeKind.GENERATE_IMAGE, IMAGE_OUTPUT, gate=gate)
        video = StubHandler(NodeKind.GENERATE_VIDEO, VIDEO_OUTPUT)
        runner = make_runner(local_registry(image, video))
        nodes, edges = chain_graph()
        await runner.submit_graph(GraphSubmission(project_id="p", nodes=nodes, edges=edges))
        handle = await runner.start("p")

        async def consume():
            seen = []
            async for event in handle.events():
                seen.append(event)
                if (
                    event.type == EventType.NODE_STATUS
                    and event.payload.node_id == "image"
                    and event.payload.status == NodeStatus.RUNNING
                ):
                    assert runner.cancel(handle.run_id), "进行中的运行应可取消"
            return seen

        events = await asyncio.wait_for(consume(), timeout=5)
        run = await asyncio.wait_for(handle.wait(), timeout=5)

        assert image.cancelled, "进行中的处理器任务应被取消"
        assert video.calls == []
        assert status_trail(events)[-2:] == [("image", "canceled"), ("video", "canceled")]

        complete = events[-1]
        assert complete.type == EventType.COMPLETE
        assert complete.payload.status == RunStatus.CANCELED
        assert run.status == RunStatus.CANCELED
        assert not runner.is_active(handle.run_id)
        assert not runner.cancel(handle.run_id), "已结束的运行不可再取消"

    @pytest.mark.asyncio
    async def test_cancel_unknown_run(self):
        runner = make_runner(local_registry())
        assert runner.cancel("nope") is False


# ======================================================================
# Test 4: 致命错误
# ======================================================================


class TestFatalErrors:

    @pytest.mark.asyncio
    async def test_store_failure_ends_with_single_error(self):
        """运行事件写入失败 -> 运行标记为 failed，事件流为 [meta, error]."""
        store = FailingEventStore()
        image = StubHandler(NodeKind.GENERATE_IMAGE, IMAGE_OUTPUT)
        video = StubHandler(NodeKind.GENERATE_VIDEO, VIDEO_OUTPUT)
        runner = make_runner(local_registry(image, video), run_store=store)
        nodes, edges = chain_graph()

        events, run, run_id = await run_to_end(runner, nodes, edges)

        assert [e.type for e in events] == [EventType.META, EventType.ERROR]
        assert "disk full" in events[-1].payload.error
        assert events[-1].payload.run_id == run_id
        assert run.status == RunStatus.FAILED
        assert (await store.get_run(run_id)).status == RunStatus.FAILED
        assert image.calls == [], "存储故障后不应再派发处理器"

    @pytest.mark.asyncio
    async def test_create_run_failure_yields_only_error(self):
        store = FailingCreateStore()
        runner = make_runner(local_registry(), run_store=store)
        nodes, edges = branches_graph()
        await runner.submit_graph(GraphSubmission(project_id="p", nodes=nodes, edges=edges))

        handle = await runner.start("p")
        events = [event async for event in handle.events()]

        assert handle.run_id is None
        assert [e.type for e in events] == [EventType.ERROR]
        assert "database unavailable" in events[0].payload.error
        assert await handle.wait() is None

    @pytest.mark.asyncio
    async def test_invalid_graph_never_creates_run(self):
        store = CountingStore()
        runner = make_runner(local_registry(), run_store=store)
        image = build_node(NodeKind.GENERATE_IMAGE, "image")
        check = await runner.submit_graph(GraphSubmission(project_id="p", nodes=[image], edges=[]))
        assert not check.valid

        with pytest.raises(GraphValidationError) as exc_info:
            await runner.start("p")
        assert exc_info.value.errors == check.errors
        assert store.create_calls == 0, "校验失败时不应创建运行记录"

    @pytest.mark.asyncio
    async def test_empty_graph_never_creates_run(self):
        """没有任何节点的图不可执行，且不创建运行记录."""
        store = CountingStore()
        runner = make_runner(local_registry(), run_store=store)
        check = await runner.submit_graph(GraphSubmission(project_id="p", nodes=[], edges=[]))
        assert check.valid, "空图可以保存"

        with pytest.raises(GraphValidationError) as exc_info:
            await runner.start("p")
        assert exc_info.value.errors == ["No nodes to execute"]
        assert store.create_calls == 0

    @pytest.mark.asyncio
    async def test_unknown_project(self):
        runner = make_runner(local_registry())
        with pytest.raises(KeyError):
            await runner.start("missing")


# ======================================================================
# Test 5: 并发
# ======================================================================


class TestConcurrency:

    @staticmethod
    def _text_nodes(count: int):
        return [build_node(NodeKind.GENERATE_TEXT, f"t{i}", params={"prompt": "hi"}) for i in range(count)]

    @pytest.mark.asyncio
    async def test_same_level_runs_concurrently(self):
        text = StubHandler(NodeKind.GENERATE_TEXT, delay=0.05)
        runner = make_runner(local_registry(text), max_concurrency=4)

        await run_to_end(runner, self._text_nodes(3), [])

        assert text.max_active == 3, "同层的 3 个节点应同时执行"

    @pytest.mark.asyncio
    async def test_concurrency_cap(self):
        text = StubHandler(NodeKind.GENERATE_TEXT, delay=0.05)
        runner = make_runner(local_registry(text), max_concurrency=2)

        events, run, _ = await run_to_end(runner, self._text_nodes(5), [])

        assert text.max_active == 2, "同时执行的处理器数不应超过上限"
        assert len(text.calls) == 5
        assert run.completed_nodes == 5
        running = [e for e in events if e.type == EventType.NODE_STATUS and e.payload.status == NodeStatus.RUNNING]
        assert len(running) == 5, "上限只限制处理器调用，不改变节点状态流转"

    @pytest.mark.parametrize("cap", [0, -1])
    def test_cap_below_one_rejected(self, cap):
        """上限小于 1 时在构建时报错，而不是让运行永远等待."""
        with pytest.raises(ValueError):
            make_runner(local_registry(), max_concurrency=cap)

    def test_cap_from_config_is_checked(self, monkeypatch):
        monkeypatch.setattr(config, "MAX_CONCURRENT_HANDLERS", 0)
        with pytest.raises(ValueError):
            make_runner(local_registry())
