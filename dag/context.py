"""
RunContext - all mutable state of one run, owned by its coordinator.
RunContext —— 单次运行的全部可变状态，由该运行的协调协程独占。

Nothing about a run lives in module globals: the run record, the run's own
graph copy, the output map and the failed / skipped / canceled sets are
all here, and only the coordinator writes them. Handler tasks receive
their inputs as a finished dict and hand back a NodeOutput; they never
touch the context directly.
运行相关状态不存放在任何模块级全局变量中：运行记录、运行专属的图副本、输出表、
失败 / 跳过 / 取消集合都在这里，并且只有协调协程写入。
处理器任务只接收组装好的输入字典并返回 NodeOutput，从不直接访问上下文。
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

from dag.graph import ComputeGraph
from schema import Node, NodeOutput, Run


class RunContext:
    """
    Per-run state container.
    单次运行的状态容器。
    """

    def __init__(self, run: Run, graph: ComputeGraph, levels: list[list[str]]):
        self.run = run
        self.graph = graph                                   # 运行专属的图副本
        self.levels = levels
        self.outputs: dict[str, NodeOutput] = {}             # node_id -> 输出（每个节点只写一次）
        self.failed_nodes: list[str] = []
        self.skipped_nodes: list[str] = []
        self.canceled_nodes: list[str] = []
        self.cancel_event = asyncio.Event()
        self._started: dict[str, float] = {}                 # node_id -> 开始执行的单调时钟

    # ------------------------------------------------------------------
    # Cancellation
    # 取消
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Request cancellation; the coordinator reacts at its next await."""
        self.cancel_event.set()

    @property
    def canceled(self) -> bool:
        return self.cancel_event.is_set()

    # ------------------------------------------------------------------
    # Results
    # 结果记录
    # ------------------------------------------------------------------

    def record_output(self, node_id: str, output: NodeOutput) -> None:
        if node_id in self.outputs:
            raise RuntimeError(f"Output for node '{node_id}' already recorded")
        self.outputs[node_id] = output

    def is_blocked(self, node_id: str) -> bool:
        """
        True when any direct upstream node failed or was skipped.
        任一直接上游节点失败或被跳过时返回 True（传递性由逐层处理保证）。
        """
        blocked = set(self.failed_nodes) | set(self.skipped_nodes)
        return any(uid in blocked for uid in self.graph.upstream_ids(node_id))

    def assemble_inputs(self, node: Node) -> dict[str, Any]:
        """
        Build a node's handler inputs.
        组装节点处理器的输入。

        Upstream outputs are keyed by target port id; a port fed by more than
        one edge gets a list in edge order. Edge values win over static params.
        上游输出按目标端口 ID 存放；同一端口有多条入边时按边顺序组成列表。边上的值覆盖静态参数。
        """
        edges = self.graph.edges_into(node.id)
        per_port: dict[str, list[NodeOutput]] = {}
        for e in edges:
            output = self.outputs.get(e.source_node_id)
            if output is not None:
                per_port.setdefault(e.target_port_id, []).append(output)

        edge_inputs: dict[str, Any] = {}
        for port_id, values in per_port.items():
            fan_in = sum(1 for e in edges if e.target_port_id == port_id)
            edge_inputs[port_id] = values if fan_in > 1 else values[0]
        return {**node.params, **edge_inputs}

    # ------------------------------------------------------------------
    # Timing
    # 计时
    # ------------------------------------------------------------------

    def mark_started(self, node_id: str) -> None:
        self._started[node_id] = time.monotonic()

    def elapsed_ms(self, node_id: str) -> float | None:
        started = self._started.get(node_id)
        if started is None:
            return None
        return round((time.monotonic() - started) * 1000, 1)
