"""
ConnectionValidator - checks a proposed edge, or a whole graph, before it runs.
ConnectionValidator —— 在运行前校验单条待连接的边或整张图。

Rules for one connection, applied in order (first failure wins):
单条连线的规则（按顺序执行，第一条失败即返回）：
  1. both ports exist                      两端端口都存在
  2. data types are compatible             数据类型兼容
  3. port cardinality not exceeded         端口连接数未超过上限
  4. the edge does not close a cycle       不会形成环
  5. no self-connection                    不允许自连接

Whole-graph validation additionally reports every required input port with
no inbound edge. A graph with any error is not executable.
整图校验还会报告每个未连接的必填输入端口；存在任何错误的图都不可执行。
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Iterable

from schema import ConnectionCheck, Edge, GraphCheck, Node, Port

logger = logging.getLogger(__name__)

ANY_TYPE = "any"


def is_datatype_compatible(source: str, target: str) -> bool:
    """
    Data-type compatibility between an output and an input port.
    输出端口与输入端口之间的数据类型兼容性判断：

      "image/png" -> "image/png"   exact match       精确匹配
      "x"         -> "any"         universal type    通用类型
      "image/png" -> "image/*"     wildcard target   目标为通配
      "image/*"   -> "image/png"   wildcard source   源为通配

    The category of a wildcard is the text before its first "/"; the other
    side must start with that category followed by "/".
    通配类型的类别取第一个 "/" 之前的部分；另一端必须以 "类别/" 开头。
    """
    if source == target:
        return True
    if source == ANY_TYPE or target == ANY_TYPE:
        return True
    if target.endswith("/*"):
        return source.startswith(target.split("/", 1)[0] + "/")
    if source.endswith("/*"):
        return target.startswith(source.split("/", 1)[0] + "/")
    return False


def _find_port(ports: list[Port], port_id: str | None) -> Port | None:
    for port in ports:
        if port.id == port_id:
            return port
    return None


def _plural(n: int) -> str:
    return "" if n == 1 else "s"


class ConnectionValidator:
    """
    Stateless validator for connections and graphs.
    无状态的连线 / 整图校验器。
    """

    def validate_connection(
        self,
        source_node: Node,
        target_node: Node,
        source_port_id: str | None,
        target_port_id: str | None,
        existing_edges: Iterable[Edge],
    ) -> ConnectionCheck:
        """
        Check whether source_node.source_port_id -> target_node.target_port_id
        may be added next to `existing_edges`.
        检查在已有边之上新增这条连线是否合法。
        """
        existing = list(existing_edges)

        # 1. 端口存在性
        source_port = _find_port(source_node.outputs, source_port_id)
        target_port = _find_port(target_node.inputs, target_port_id)
        if source_port is None or target_port is None:
            return ConnectionCheck(valid=False, reason="Invalid port connection")

        # 2. 数据类型兼容
        if not is_datatype_compatible(source_port.data_type, target_port.data_type):
            return ConnectionCheck(
                valid=False,
                reason=f"Type mismatch: Cannot connect {source_port.data_type} to {target_port.data_type}",
            )

        # 3. 基数（目标端口与源端口各自的上限）
        target_count = sum(
            1 for e in existing
            if e.target_node_id == target_node.id and e.target_port_id == target_port.id
        )
        if target_count >= target_port.cardinality.max:
            limit = target_port.cardinality.max
            return ConnectionCheck(
                valid=False,
                reason=f'Port "{target_port.name or target_port.id}" '
                       f"accepts maximum {limit} connection{_plural(limit)}",
            )

        source_count = sum(
            1 for e in existing
            if e.source_node_id == source_node.id and e.source_port_id == source_port.id
        )
        if source_count >= source_port.cardinality.max:
            limit = source_port.cardinality.max
            return ConnectionCheck(
                valid=False,
                reason=f'Source port "{source_port.name or source_port.id}" '
                       f"has reached maximum {limit} connection{_plural(limit)}",
            )

        # 4. 环检测
        if self.creates_cycle(source_node.id, target_node.id, existing):
            return ConnectionCheck(valid=False, reason="Connection would create a cycle in the workflow")

        # 5. 自连接
        if source_node.id == target_node.id:
            return ConnectionCheck(valid=False, reason="Cannot connect a node to itself")

        return ConnectionCheck(valid=True)

    @staticmethod
    def creates_cycle(source_id: str, target_id: str, edges: Iterable[Edge]) -> bool:
        """
        BFS from the target along existing edges; if the source is reachable,
        adding source -> target would close a cycle.
        从目标节点出发沿已有边 BFS，若能到达源节点，则新增 source -> target 会成环。
        """
        adjacency: dict[str, list[str]] = {}
        for e in edges:
            adjacency.setdefault(e.source_node_id, []).append(e.target_node_id)

        visited: set[str] = set()
        queue: deque[str] = deque([target_id])
        while queue:
            current = queue.popleft()
            if current == source_id:
                return True
            if current in visited:
                continue
            visited.add(current)
            queue.extend(adjacency.get(current, []))
        return False

    def validate_graph(self, nodes: Iterable[Node], edges: Iterable[Edge]) -> GraphCheck:
        """
        Validate every edge against all the other edges, then report
        unconnected required inputs.
        逐条校验边（以其余所有边作为已有边，保证对合法图重复校验结果不变），
        然后报告未连接的必填输入端口。
        """
        node_map = {n.id: n for n in nodes}
        edge_list = list(edges)
        errors: list[str] = []

        for index, edge in enumerate(edge_list):
            source = node_map.get(edge.source_node_id)
            target = node_map.get(edge.target_node_id)
            if source is None:
                errors.append(f"Edge {edge.id}: Source node {edge.source_node_id} not found")
                continue
            if target is None:
                errors.append(f"Edge {edge.id}: Target node {edge.target_node_id} not found")
                continue

            others = edge_list[:index] + edge_list[index + 1:]
            result = self.validate_connection(source, target, edge.source_port_id, edge.target_port_id, others)
            if not result.valid:
                errors.append(f"Edge {edge.id}: {result.reason}")
                continue

            if edge.data_type:
                source_port = _find_port(source.outputs, edge.source_port_id)
                target_port = _find_port(target.inputs, edge.target_port_id)
                if not (
                    is_datatype_compatible(source_port.data_type, edge.data_type)
                    and is_datatype_compatible(edge.data_type, target_port.data_type)
                ):
                    errors.append(
                        f"Edge {edge.id}: data type {edge.data_type} does not fit "
                        f"{source_port.data_type} -> {target_port.data_type}"
                    )

        for node in node_map.values():
            for port in node.inputs:
                if port.optional:
                    continue
                connected = any(
                    e.target_node_id == node.id and e.target_port_id == port.id for e in edge_list
                )
                if not connected:
                    errors.append(f'Node {node.display_name}: Required input "{port.name or port.id}" is not connected')

        if errors:
            logger.info("[Validator] Graph rejected with %d error(s)", len(errors))
        return GraphCheck(valid=not errors, errors=errors)
