"""
进度事件流测试 — 分别体现：
  1. 帧格式：编码、分片解析、注释行、不完整帧
  2. 事件通道：首个事件约束、结束后丢弃、单一消费者
  3. 断线重放：由运行记录重建的事件序列与实时事件流一致

运行方式:
    python -m pytest tests/test_streaming.py -v
"""

from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from schema import EventType, NodeKind, NodeOutput, NodeStatus, RunStatus, StreamEvent
from store.memory import InMemoryRunStore
from stream.framing import FrameParser, decode_events, encode_event
from stream.streamer import ProgressStreamer, StreamClosedError, replay_run

from helpers import (
    IMAGE_OUTPUT,
    VIDEO_OUTPUT,
    StubHandler,
    chain_graph,
    local_registry,
    make_runner,
    run_to_end,
)


def _status_event(node_id: str = "n1", status: NodeStatus = NodeStatus.RUNNING) -> StreamEvent:
    return StreamEvent.model_validate({
        "type": "node_status",
        "payload": {"node_id": node_id, "status": status.value},
    })


# ======================================================================
# Test 1: 帧格式
# ======================================================================


class TestFraming:

    def test_encode_format(self):
        frame = encode_event(_status_event())
        assert frame.startswith("event: node_status\ndata: ")
        assert frame.endswith("\n\n")
        data = json.loads(frame.split("data: ", 1)[1])
        assert data["node_id"] == "n1" and data["status"] == "running"

    def test_parser_handles_split_chunks(self):
        """帧被拆成任意分片时，凑齐后才产出事件."""
        text = encode_event(_status_event("a")) + encode_event(_status_event("b", NodeStatus.SUCCEEDED))
        parser = FrameParser()

        first = parser.feed(text[:10])
        assert first == [] and parser.pending == text[:10]

        events = parser.feed(text[10:])
        assert [e.payload.node_id for e in events] == ["a", "b"]
        assert parser.pending == ""

    def test_crlf_and_comments(self):
        text = ": keep-alive\r\n\r\nevent: node_progress\r\ndata: {\"node_id\": \"n1\", \"progress\": 40}\r\n\r\n"
        events = decode_events(text)
        assert len(events) == 1
        assert events[0].type == EventType.NODE_PROGRESS
        assert events[0].payload.progress == 40

    def test_incomplete_trailing_frame(self):
        text = encode_event(_status_event()) + "event: complete\ndata: {"
        with pytest.raises(ValueError):
            decode_events(text)

    def test_frame_without_event_type(self):
        with pytest.raises(ValueError):
            decode_events('data: {"node_id": "n1"}\n\n')

    def test_payload_must_match_type(self):
        """payload 模型由 type 唯一确定：complete 事件不能携带节点状态 payload."""
        with pytest.raises(ValidationError):
            StreamEvent.model_validate({"type": "complete", "payload": {"node_id": "n1", "status": "running"}})

    def test_decode_round_trip_keeps_output(self):
        event = StreamEvent.model_validate({
            "type": "node_status",
            "payload": {"node_id": "image", "status": "succeeded", "output": IMAGE_OUTPUT.model_dump()},
        })
        decoded = decode_events(encode_event(event))[0]
        assert decoded.payload.output == IMAGE_OUTPUT


# ======================================================================
# Test 2: 事件通道
# ======================================================================


class TestProgressStreamer:

    def test_first_event_must_be_meta_or_error(self):
        streamer = ProgressStreamer()
        with pytest.raises(ValueError):
            streamer.node_status("n1", NodeStatus.RUNNING)

    def test_error_may_open_stream(self):
        streamer = ProgressStreamer()
        assert streamer.error("boom")
        assert streamer.closed

    def test_nothing_after_close(self):
        """complete 之后的事件（例如迟到的进度回调）被丢弃."""
        streamer = ProgressStreamer()
        streamer.meta("r1", "p", 1, [["n1"]])
        streamer.complete("r1", RunStatus.COMPLETED, 1, 1)

        assert streamer.node_progress("n1", 50.0) is False
        assert streamer.error("late") is False
        assert [e.type for e in streamer.history] == [EventType.META, EventType.COMPLETE]

    def test_progress_is_clamped(self):
        streamer = ProgressStreamer()
        streamer.meta("r1", "p", 1, [["n1"]])
        streamer.node_progress("n1", 140.0)
        assert streamer.history[-1].payload.progress == 100.0

    @pytest.mark.asyncio
    async def test_iteration_ends_at_closing_event(self):
        streamer = ProgressStreamer()
        streamer.meta("r1", "p", 1, [["n1"]])
        streamer.node_status("n1", NodeStatus.RUNNING)
        streamer.node_status("n1", NodeStatus.SUCCEEDED, output=NodeOutput(type="text", data="x"))
        streamer.complete("r1", RunStatus.COMPLETED, 1, 1)

        events = [e async for e in streamer]
        assert [e.type.value for e in events] == ["meta", "node_status", "node_status", "complete"]

    @pytest.mark.asyncio
    async def test_single_consumer(self):
        streamer = ProgressStreamer()
        streamer.error("boom")
        _ = [e async for e in streamer]
        with pytest.raises(StreamClosedError):
            async for _ in streamer:
                pass


# ======================================================================
# Test 3: 断线重放
# ======================================================================


class TestReplay:

    @pytest.mark.asyncio
    async def test_replay_matches_live_stream(self):
        """除进度事件外，重放结果与实时事件流完全一致."""
        store = InMemoryRunStore()
        image = StubHandler(NodeKind.GENERATE_IMAGE, IMAGE_OUTPUT)
        video = StubHandler(NodeKind.GENERATE_VIDEO, VIDEO_OUTPUT, fail_if=lambda _: True)
        runner = make_runner(local_registry(image, video), run_store=store)
        nodes, edges = chain_graph()

        live, _, run_id = await run_to_end(runner, nodes, edges)
        replayed = await replay_run(store, run_id)

        live_dump = [e.model_dump() for e in live if e.type != EventType.NODE_PROGRESS]
        assert [e.model_dump() for e in replayed] == live_dump

    @pytest.mark.asyncio
    async def test_replay_failed_run_ends_with_error(self):
        store = InMemoryRunStore()
        run_id = await store.create_run("p")
        await store.update_run(run_id, status=RunStatus.FAILED, error="store exploded")

        events = await replay_run(store, run_id)
        assert [e.type for e in events] == [EventType.META, EventType.ERROR]
        assert events[-1].payload.error == "store exploded"

    @pytest.mark.asyncio
    async def test_replay_in_flight_run_has_no_closing_event(self):
        store = InMemoryRunStore()
        run_id = await store.create_run("p")
        await store.update_run(run_id, status=RunStatus.RUNNING, total_nodes=1, levels=[["n1"]])
        await store.append_run_event(run_id, "n1", NodeStatus.RUNNING)

        events = await replay_run(store, run_id)
        assert [e.type for e in events] == [EventType.META, EventType.NODE_STATUS]
        assert not events[-1].is_closing

    @pytest.mark.asyncio
    async def test_replay_unknown_run(self):
        with pytest.raises(KeyError):
            await replay_run(InMemoryRunStore(), "missing")
