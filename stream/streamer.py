"""
ProgressStreamer - ordered, typed event channel from the executor to one observer.
ProgressStreamer —— 从执行器到观察者的有序、强类型事件通道。

Event order for one run:
单次运行的事件顺序：
    meta                      exactly once, first           首个事件，仅一次
    node_status / progress    any number                    任意多个
    complete | error          exactly once, last            末尾事件，二选一且仅一次

Once the closing event is emitted the streamer is closed: later emits
(e.g. a progress callback from a handler that was just canceled) are
dropped, so the observer never sees anything after `complete`/`error`.
发出结束事件后通道即关闭：之后的 emit（例如刚被取消的处理器发来的进度回调）会被丢弃，
观察者在 `complete`/`error` 之后不会再收到任何事件。
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, AsyncIterator

from schema import (
    CompletePayload,
    ErrorPayload,
    EventType,
    MetaPayload,
    NodeOutput,
    NodeProgressPayload,
    NodeStatus,
    NodeStatusPayload,
    RunStatus,
    StreamEvent,
)

if TYPE_CHECKING:
    from store.base import RunStore

logger = logging.getLogger(__name__)


class StreamClosedError(RuntimeError):
    """Raised when a second consumer tries to iterate a streamer."""


class ProgressStreamer:
    """
    asyncio.Queue backed async iterator of StreamEvent.
    基于 asyncio.Queue 的 StreamEvent 异步迭代器（单一消费者）。
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[StreamEvent] = asyncio.Queue()
        self._closed = False
        self._consumed = False
        self.history: list[StreamEvent] = []  # 已发出的全部事件，便于调试与测试

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Producer side
    # 生产端
    # ------------------------------------------------------------------

    def emit(self, event: StreamEvent) -> bool:
        """
        Queue an event. Returns False when the stream is already closed.
        将事件放入队列；若通道已关闭则丢弃并返回 False。
        """
        if self._closed:
            logger.debug("[Stream] Dropped %s after close", event.type.value)
            return False
        if not self.history and event.type not in (EventType.META, EventType.ERROR):
            raise ValueError(f"first event must be meta or error, got {event.type.value}")
        self.history.append(event)
        self._queue.put_nowait(event)
        if event.is_closing:
            self._closed = True
        return True

    def meta(self, run_id: str, project_id: str, total_nodes: int, levels: list[list[str]]) -> bool:
        return self.emit(StreamEvent(
            type=EventType.META,
            payload=MetaPayload(run_id=run_id, project_id=project_id, total_nodes=total_nodes, levels=levels),
        ))

    def node_status(
        self,
        node_id: str,
        status: NodeStatus,
        output: NodeOutput | None = None,
        error: str | None = None,
        elapsed_ms: float | None = None,
    ) -> bool:
        return self.emit(StreamEvent(
            type=EventType.NODE_STATUS,
            payload=NodeStatusPayload(node_id=node_id, status=status, output=output, error=error, elapsed_ms=elapsed_ms),
        ))

    def node_progress(self, node_id: str, progress: float) -> bool:
        progress = min(max(progress, 0.0), 100.0)
        return self.emit(StreamEvent(
            type=EventType.NODE_PROGRESS,
            payload=NodeProgressPayload(node_id=node_id, progress=progress),
        ))

    def complete(
        self,
        run_id: str,
        status: RunStatus,
        completed_nodes: int,
        total_nodes: int,
        failed_nodes: list[str] | None = None,
        skipped_nodes: list[str] | None = None,
    ) -> bool:
        return self.emit(StreamEvent(
            type=EventType.COMPLETE,
            payload=CompletePayload(
                run_id=run_id,
                status=status,
                completed_nodes=completed_nodes,
                total_nodes=total_nodes,
                failed_nodes=list(failed_nodes or []),
                skipped_nodes=list(skipped_nodes or []),
            ),
        ))

    def error(self, error: str, run_id: str | None = None) -> bool:
        return self.emit(StreamEvent(type=EventType.ERROR, payload=ErrorPayload(run_id=run_id, error=error)))

    # ------------------------------------------------------------------
    # Consumer side
    # 消费端
    # ------------------------------------------------------------------

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        if self._consumed:
            raise StreamClosedError("ProgressStreamer supports a single consumer")
        self._consumed = True
        while True:
            event = await self._queue.get()
            yield event
            if event.is_closing:
                return


# ----------------------------------------------------------------------
# Replay
# 断线重放
# ----------------------------------------------------------------------

async def replay_run(run_store: RunStore, run_id: str) -> list[StreamEvent]:
    """
    Rebuild the event sequence of a run from its stored record and run
    events, so a reconnecting observer can catch up.
    根据存储的运行记录与运行事件重建事件序列，供重连的观察者追赶进度。

    A run that is still in flight yields no closing event.
    仍在进行中的运行不会包含结束事件。
    """
    run = await run_store.get_run(run_id)
    records = await run_store.list_run_events(run_id)

    events = [StreamEvent(
        type=EventType.META,
        payload=MetaPayload(run_id=run.id, project_id=run.project_id, total_nodes=run.total_nodes, levels=run.levels),
    )]

    final_status: dict[str, NodeStatus] = {}
    for record in records:
        final_status[record.node_id] = record.status
        output = record.payload.get("output")
        events.append(StreamEvent(
            type=EventType.NODE_STATUS,
            payload=NodeStatusPayload(
                node_id=record.node_id,
                status=record.status,
                output=NodeOutput.model_validate(output) if output else None,
                error=record.error,
                elapsed_ms=record.payload.get("elapsed_ms"),
            ),
        ))

    if run.status == RunStatus.FAILED:
        events.append(StreamEvent(
            type=EventType.ERROR,
            payload=ErrorPayload(run_id=run.id, error=run.error or "Run failed"),
        ))
    elif run.is_terminal:
        events.append(StreamEvent(
            type=EventType.COMPLETE,
            payload=CompletePayload(
                run_id=run.id,
                status=run.status,
                completed_nodes=run.completed_nodes,
                total_nodes=run.total_nodes,
                failed_nodes=[nid for nid, s in final_status.items() if s == NodeStatus.FAILED],
                skipped_nodes=[nid for nid, s in final_status.items() if s == NodeStatus.SKIPPED],
            ),
        ))

    logger.debug("[Stream] Replayed %d event(s) for run %s", len(events), run_id)
    return events
