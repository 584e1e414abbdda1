"""
Scheduler - Kahn's algorithm producing execution levels.
调度器 —— 基于 Kahn 算法计算分层执行顺序。

A level is a batch of nodes with no dependency edge among them, so the
executor may run a whole level concurrently. Level 0 holds every node with
in-degree 0; a node joins level k+1 when processing level k drops its
in-degree to exactly 0.
层是一批彼此之间没有依赖边的节点，执行器可以并发运行整层。
第 0 层包含所有入度为 0 的节点；处理第 k 层时入度恰好降为 0 的节点进入第 k+1 层。

Order inside a level follows node insertion order, so identical graphs
always produce identical levels.
层内顺序遵循节点插入顺序，相同的图总是得到相同的分层结果。
"""

from __future__ import annotations

import logging
from typing import Iterable

from schema import Edge, Node

logger = logging.getLogger(__name__)


def compute_levels(nodes: Iterable[Node], edges: Iterable[Edge]) -> list[list[str]] | None:
    """
    Group node ids into dependency levels.
    将节点 ID 按依赖关系分层。

    Returns None when the graph contains a cycle (fewer nodes released than
    exist). Edges naming unknown nodes are ignored.
    图中有环时返回 None（释放的节点数少于节点总数）；引用未知节点的边被忽略。
    """
    order = [n.id for n in nodes]
    position = {nid: i for i, nid in enumerate(order)}

    in_degree: dict[str, int] = {nid: 0 for nid in order}
    successors: dict[str, list[str]] = {nid: [] for nid in order}
    for e in edges:
        if e.source_node_id not in position or e.target_node_id not in position:
            continue
        successors[e.source_node_id].append(e.target_node_id)
        in_degree[e.target_node_id] += 1

    levels: list[list[str]] = []
    current = [nid for nid in order if in_degree[nid] == 0]
    released = 0

    while current:
        levels.append(current)
        released += len(current)

        next_level: list[str] = []
        for nid in current:
            for target in successors[nid]:
                in_degree[target] -= 1
                if in_degree[target] == 0:
                    next_level.append(target)
        current = sorted(next_level, key=position.__getitem__)

    if released < len(order):
        logger.warning("[Scheduler] Cycle detected: released %d of %d nodes", released, len(order))
        return None

    logger.debug("[Scheduler] %d node(s) in %d level(s)", released, len(levels))
    return levels


def flatten_levels(levels: list[list[str]]) -> list[str]:
    """Execution order of a run: levels concatenated. 运行的执行顺序：各层依次拼接。"""
    return [nid for level in levels for nid in level]
