"""
ComputeGraph - node/edge container for one project's compute graph.
ComputeGraph —— 单个项目计算图的节点/边容器。

The ComputeGraph holds:
  - nodes: dict of Node, in insertion order (the scheduler relies on it)
  - edges: list of Edge (output port -> input port)

ComputeGraph 包含：
  - nodes: Node 字典，保持插入顺序（调度器依赖该顺序保证层内稳定）
  - edges: Edge 列表（输出端口 -> 输入端口）

It carries no execution behavior: status changes happen in the executor
on a per-run copy (see copy_for_run()).
本类不包含执行逻辑：状态变更只发生在执行器持有的运行副本上（见 copy_for_run()）。

Key operations:
  - get_port():       port lookup by node id + port id
  - edges_into():     inbound edges of a node (input assembly, skip checks)
  - downstream_ids(): BFS over edges, used to explain skip propagation

核心操作：
  - get_port():       按节点 ID + 端口 ID 查找端口
  - edges_into():     节点的入边（组装输入、判断是否跳过）
  - downstream_ids(): 沿边 BFS，得到全部下游节点
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Iterable

from dag.errors import GraphValidationError
from schema import Edge, Node, NodeStatus, Port

logger = logging.getLogger(__name__)


class ComputeGraph:
    """
    Directed graph of compute nodes connected through typed ports.
    通过类型化端口相连的计算节点有向图。
    """

    def __init__(self, nodes: Iterable[Node], edges: Iterable[Edge]):
        self.nodes: dict[str, Node] = {}
        duplicates: list[str] = []
        for node in nodes:
            if node.id in self.nodes:
                duplicates.append(node.id)
                continue
            self.nodes[node.id] = node
        if duplicates:
            raise GraphValidationError(
                "Duplicate node ids",
                errors=[f"Node id '{nid}' is used more than once" for nid in duplicates],
            )
        self.edges: list[Edge] = list(edges)

    # ------------------------------------------------------------------
    # Lookups
    # 查询方法
    # ------------------------------------------------------------------

    def get_node(self, node_id: str) -> Node | None:
        return self.nodes.get(node_id)

    def get_port(self, node_id: str, port_id: str) -> Port | None:
        """
        Find a port on a node, inputs first, then outputs.
        在节点上查找端口（先查输入，再查输出）。
        """
        node = self.nodes.get(node_id)
        if node is None:
            return None
        for port in (*node.inputs, *node.outputs):
            if port.id == port_id:
                return port
        return None

    def edges_into(self, node_id: str) -> list[Edge]:
        return [e for e in self.edges if e.target_node_id == node_id]

    def edges_from(self, node_id: str) -> list[Edge]:
        return [e for e in self.edges if e.source_node_id == node_id]

    def edges_by_node(self) -> dict[str, list[Edge]]:
        """
        Map every node id to all edges touching it (in or out).
        返回 节点 ID -> 与之相连的所有边（入边与出边）。
        """
        index: dict[str, list[Edge]] = {nid: [] for nid in self.nodes}
        for e in self.edges:
            if e.source_node_id in index:
                index[e.source_node_id].append(e)
            if e.target_node_id in index and e.target_node_id != e.source_node_id:
                index[e.target_node_id].append(e)
        return index

    def upstream_ids(self, node_id: str) -> list[str]:
        """
        Direct predecessors of `node_id`, in edge order, without duplicates.
        `node_id` 的直接前驱节点（按边顺序去重）。
        """
        seen: dict[str, None] = {}
        for e in self.edges_into(node_id):
            seen.setdefault(e.source_node_id, None)
        return list(seen)

    def downstream_ids(self, node_id: str) -> list[str]:
        """
        Return all node IDs downstream of `node_id` via BFS.
        通过 BFS 返回 `node_id` 的全部（直接 + 传递）下游节点 ID。
        """
        visited: set[str] = set()
        order: list[str] = []
        queue: deque[str] = deque(e.target_node_id for e in self.edges_from(node_id))

        while queue:
            nid = queue.popleft()
            if nid in visited:
                continue
            visited.add(nid)
            order.append(nid)
            queue.extend(e.target_node_id for e in self.edges_from(nid))

        return order

    # ------------------------------------------------------------------
    # Copies / serialization
    # 副本与序列化
    # ------------------------------------------------------------------

    def copy_for_run(self) -> ComputeGraph:
        """
        Deep copy with every node reset to QUEUED, so a run never mutates the
        submitted graph.
        深拷贝并将所有节点重置为 QUEUED，运行过程不会修改提交的原图。
        """
        nodes = [
            n.model_copy(deep=True, update={"status": NodeStatus.QUEUED, "progress": 0.0, "output": None, "error": None})
            for n in self.nodes.values()
        ]
        logger.debug("[Graph] Run copy: %d nodes, %d edges", len(nodes), len(self.edges))
        return ComputeGraph(nodes, [e.model_copy() for e in self.edges])

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [n.model_dump(mode="json") for n in self.nodes.values()],
            "edges": [e.model_dump(mode="json") for e in self.edges],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ComputeGraph:
        nodes = [Node.model_validate(n) for n in data.get("nodes", [])]
        edges = [Edge.model_validate(e) for e in data.get("edges", [])]
        return cls(nodes, edges)

    # ------------------------------------------------------------------
    # Display helpers
    # 展示辅助方法
    # ------------------------------------------------------------------

    def summary(self) -> str:
        """
        One-line summary for logging, e.g. Graph[5 nodes: 2 succeeded, 3 queued]
        生成单行状态摘要，用于日志输出。
        """
        status_counts: dict[str, int] = {}
        for n in self.nodes.values():
            status_counts[n.status.value] = status_counts.get(n.status.value, 0) + 1
        parts = [f"{v} {k}" for k, v in status_counts.items()]
        return f"Graph[{len(self.nodes)} nodes: {', '.join(parts)}]"

    def __len__(self) -> int:
        return len(self.nodes)
