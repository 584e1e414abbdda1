"""
Store interfaces - where graphs and runs live between requests.
存储接口 —— 图定义与运行记录的持久化边界。

Both stores are async so that a database-backed implementation can be
dropped in without touching the engine. Implementations raise
InfrastructureError for I/O failures and KeyError for unknown ids.
两类存储均为异步接口，替换为数据库实现时无需改动引擎。
实现类在 I/O 失败时抛出 InfrastructureError，查询未知 ID 时抛出 KeyError。
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from typing import Any

from dag.graph import ComputeGraph
from schema import NodeStatus, Run, RunEvent


def new_run_id() -> str:
    return uuid.uuid4().hex


def apply_run_fields(run: Run, fields: dict[str, Any]) -> Run:
    """
    Return a validated copy of `run` with `fields` applied.
    返回应用了 `fields` 的运行记录副本（经过校验，未知字段直接报错）。
    """
    data = run.model_dump()
    unknown = set(fields) - set(data)
    if unknown:
        raise ValueError(f"Unknown run field(s): {sorted(unknown)}")
    if fields.get("completed_nodes", run.completed_nodes) < run.completed_nodes:
        raise ValueError("completed_nodes never decreases")
    return Run.model_validate({**data, **fields})


class RunStore(ABC):
    """
    Run records plus their append-only event log.
    运行记录及其追加式事件日志。
    """

    @abstractmethod
    async def create_run(self, project_id: str) -> str:
        """Create a queued run and return its id. 创建排队中的运行并返回其 ID。"""

    @abstractmethod
    async def update_run(self, run_id: str, **fields: Any) -> Run:
        """Patch run fields (status, completed_nodes, finished_at, ...)."""

    @abstractmethod
    async def append_run_event(
        self,
        run_id: str,
        node_id: str,
        status: NodeStatus,
        payload: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> RunEvent:
        """Append one node status record. 追加一条节点状态记录。"""

    @abstractmethod
    async def get_run(self, run_id: str) -> Run:
        """Raises KeyError for an unknown run."""

    @abstractmethod
    async def list_run_events(self, run_id: str) -> list[RunEvent]:
        """Events in append order. 按追加顺序返回事件。"""


class GraphStore(ABC):
    """
    Latest submitted graph per project.
    每个项目最近一次提交的图。
    """

    @abstractmethod
    async def save_graph(self, project_id: str, graph: ComputeGraph) -> None:
        ...

    @abstractmethod
    async def load_graph(self, project_id: str) -> ComputeGraph:
        """Raises KeyError for an unknown project."""
