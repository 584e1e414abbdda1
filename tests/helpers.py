"""
测试共用的辅助构件：桩处理器、常用图结构与运行辅助函数。
所有测试均不依赖真实的生成后端。
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable

from dag.runner import GraphRunner
from dag.templates import build_node
from handlers.base import BaseHandler, ProgressCallback
from handlers.local import CombineHandler, InputHandler, OutputHandler, TransformHandler
from handlers.registry import HandlerRegistry
from schema import Edge, GraphSubmission, Node, NodeKind, NodeOutput, NodeParams, Run, StreamEvent
from store.memory import InMemoryGraphStore, InMemoryRunStore


class StubHandler(BaseHandler):
    """
    可配置的桩处理器：记录每次调用的输入，可按条件失败、延迟或阻塞，
    并统计同时在执行的调用数。
    """

    def __init__(
        self,
        kind: NodeKind,
        output: NodeOutput | None = None,
        fail_if: Callable[[dict[str, Any]], bool] | None = None,
        delay: float = 0.0,
        gate: asyncio.Event | None = None,
    ):
        self._kind = kind
        self._output = output or NodeOutput(type="text", data=f"{kind.value} result")
        self._fail_if = fail_if
        self._delay = delay
        self._gate = gate
        self.calls: list[dict[str, Any]] = []
        self.active = 0
        self.max_active = 0
        self.cancelled = False

    @property
    def kind(self) -> NodeKind:
        return self._kind

    async def operate(self, inputs: dict[str, Any], params: NodeParams, progress: ProgressCallback | None = None) -> NodeOutput:
        self.calls.append(inputs)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self._delay:
                await asyncio.sleep(self._delay)
            if self._gate is not None:
                await self._gate.wait()
            if self._fail_if and self._fail_if(inputs):
                raise RuntimeError(f"{self._kind.value} backend exploded")
            return self._output.model_copy(deep=True)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        finally:
            self.active -= 1


def edge(eid: str, source: str, source_port: str, target: str, target_port: str, data_type: str | None = None) -> Edge:
    return Edge(
        id=eid,
        source_node_id=source,
        source_port_id=source_port,
        target_node_id=target,
        target_port_id=target_port,
        data_type=data_type,
    )


def local_registry(*extra: BaseHandler) -> HandlerRegistry:
    registry = HandlerRegistry([InputHandler(), TransformHandler(), CombineHandler(), OutputHandler()])
    for handler in extra:
        registry.register(handler)
    return registry


# ----------------------------------------------------------------------
# 常用图结构
# ----------------------------------------------------------------------

def chain_graph(prompt: str = "a red fox in snow") -> tuple[list[Node], list[Edge]]:
    """
    input -> generate-image -> generate-video
    """
    nodes = [
        build_node(NodeKind.INPUT, "prompt", params={"value": prompt}),
        build_node(NodeKind.GENERATE_IMAGE, "image"),
        build_node(NodeKind.GENERATE_VIDEO, "video"),
    ]
    edges = [
        edge("e1", "prompt", "out", "image", "prompt"),
        edge("e2", "image", "image", "video", "image"),
    ]
    return nodes, edges


def branches_graph(left: str = "left", right: str = "right") -> tuple[list[Node], list[Edge]]:
    """
    in_a -> t_a ─┐
                 ├─> combine
    in_b -> t_b ─┘
    """
    nodes = [
        build_node(NodeKind.INPUT, "in_a", params={"value": left}),
        build_node(NodeKind.INPUT, "in_b", params={"value": right}),
        build_node(NodeKind.TRANSFORM, "t_a", params={"operation": "uppercase"}),
        build_node(NodeKind.TRANSFORM, "t_b", params={"operation": "uppercase"}),
        build_node(NodeKind.COMBINE, "combine", params={"separator": " + "}),
    ]
    edges = [
        edge("e1", "in_a", "out", "t_a", "in"),
        edge("e2", "in_b", "out", "t_b", "in"),
        edge("e3", "t_a", "out", "combine", "items"),
        edge("e4", "t_b", "out", "combine", "items"),
    ]
    return nodes, edges


IMAGE_OUTPUT = NodeOutput(type="image", url="https://cdn.test/frame.png")
VIDEO_OUTPUT = NodeOutput(type="video", url="https://cdn.test/clip.mp4")


# ----------------------------------------------------------------------
# 运行辅助函数
# ----------------------------------------------------------------------

def make_runner(registry: HandlerRegistry, run_store: InMemoryRunStore | None = None, **kwargs: Any) -> GraphRunner:
    return GraphRunner(InMemoryGraphStore(), run_store or InMemoryRunStore(), registry, **kwargs)


async def run_to_end(
    runner: GraphRunner,
    nodes: list[Node],
    edges: list[Edge],
    project_id: str = "proj",
) -> tuple[list[StreamEvent], Run | None, str | None]:
    """提交图、启动运行并收集完整事件流（带超时保护，防止测试挂起）。"""
    check = await runner.submit_graph(GraphSubmission(project_id=project_id, nodes=nodes, edges=edges))
    assert check.valid, f"测试图应合法: {check.errors}"
    handle = await runner.start(project_id)

    async def collect() -> list[StreamEvent]:
        return [event async for event in handle.events()]

    events = await asyncio.wait_for(collect(), timeout=5)
    run = await asyncio.wait_for(handle.wait(), timeout=5)
    return events, run, handle.run_id


def status_trail(events: list[StreamEvent]) -> list[tuple[str, str]]:
    """提取 (node_id, status) 序列。"""
    return [
        (e.payload.node_id, e.payload.status.value)
        for e in events
        if e.type.value == "node_status"
    ]
