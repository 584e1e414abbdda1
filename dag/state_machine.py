"""
Node State Machine - Validates and enforces node lifecycle transitions.
节点状态机 —— 校验并强制执行节点生命周期的合法状态转移。

The transition table is the single source of truth for what state changes
are legal. Any invalid transition raises InvalidTransitionError, so a node
can never leave a terminal state or skip straight from queued to succeeded.
转移表是合法状态变化的唯一权威来源。
任何非法转移都会抛出 InvalidTransitionError，节点不可能离开终态，也不可能从排队直接变为成功。

Transition graph:
转移图：
    IDLE ──> QUEUED ──> RUNNING ──> SUCCEEDED   (happy path / 正常路径)
                                ──> FAILED
                                ──> CANCELED
    IDLE / QUEUED ──────────────> SKIPPED       (upstream failed or skipped / 上游失败或被跳过)
    IDLE / QUEUED ──────────────> CANCELED      (run canceled before dispatch / 调度前运行被取消)
"""

from __future__ import annotations

import logging

from schema import Node, NodeStatus

logger = logging.getLogger(__name__)


class InvalidTransitionError(Exception):
    """
    Raised when an illegal state transition is attempted.
    当尝试非法状态转移时抛出此异常。
    """
    pass


# Full transition table.
# 完整的状态转移表。
VALID_TRANSITIONS: dict[NodeStatus, set[NodeStatus]] = {
    NodeStatus.IDLE:      {NodeStatus.QUEUED, NodeStatus.RUNNING, NodeStatus.SKIPPED, NodeStatus.CANCELED},
    NodeStatus.QUEUED:    {NodeStatus.RUNNING, NodeStatus.SKIPPED, NodeStatus.CANCELED},
    NodeStatus.RUNNING:   {NodeStatus.SUCCEEDED, NodeStatus.FAILED, NodeStatus.CANCELED},
    # Terminal states: no further transitions
    # 终态：不允许任何进一步转移
    NodeStatus.SUCCEEDED: set(),
    NodeStatus.FAILED:    set(),
    NodeStatus.SKIPPED:   set(),
    NodeStatus.CANCELED:  set(),
}


class NodeStateMachine:
    """
    Validates and applies node state transitions.
    校验并应用节点状态转移。

    Provides a single `transition()` method that checks the VALID_TRANSITIONS
    table and applies the change to the node. Recording the change (run events,
    stream events) is left to the caller, which may need to await a store.

    提供唯一的 `transition()` 方法：查询 VALID_TRANSITIONS 表校验合法性，并将状态变更应用到节点对象。
    变更的记录（运行事件、事件流）由调用方负责，因为记录可能需要等待存储。
    """

    def can_transition(self, node: Node, new_status: NodeStatus) -> bool:
        """
        Check whether transitioning `node` to `new_status` is legal.
        检查将 `node` 转移到 `new_status` 是否合法。
        """
        return new_status in VALID_TRANSITIONS.get(node.status, set())

    def transition(self, node: Node, new_status: NodeStatus) -> NodeStatus:
        """
        Apply a state transition and return the previous status.
        Raises InvalidTransitionError if illegal.
        应用状态转移并返回旧状态；若转移非法则抛出 InvalidTransitionError。
        """
        if not self.can_transition(node, new_status):
            raise InvalidTransitionError(
                f"Node '{node.id}': cannot transition from {node.status.value} to {new_status.value}. "
                f"Valid targets: {sorted(s.value for s in VALID_TRANSITIONS.get(node.status, set()))}"
            )

        old_status = node.status
        node.status = new_status  # 应用状态变更

        logger.debug("[SM] %s: %s -> %s", node.id, old_status.value, new_status.value)
        return old_status
