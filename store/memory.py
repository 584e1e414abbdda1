"""
In-memory stores, used by tests and by the CLI.
内存存储实现，用于测试与命令行运行。
"""

from __future__ import annotations

import logging
from typing import Any

from dag.graph import ComputeGraph
from schema import NodeStatus, Run, RunEvent
from store.base import GraphStore, RunStore, apply_run_fields, new_run_id

logger = logging.getLogger(__name__)


class InMemoryRunStore(RunStore):

    def __init__(self) -> None:
        self._runs: dict[str, Run] = {}
        self._events: dict[str, list[RunEvent]] = {}

    async def create_run(self, project_id: str) -> str:
        run_id = new_run_id()
        self._runs[run_id] = Run(id=run_id, project_id=project_id)
        self._events[run_id] = []
        logger.debug("[RunStore] Created run %s for project %s", run_id, project_id)
        return run_id

    async def update_run(self, run_id: str, **fields: Any) -> Run:
        run = apply_run_fields(self._runs[run_id], fields)
        self._runs[run_id] = run
        return run

    async def append_run_event(
        self,
        run_id: str,
        node_id: str,
        status: NodeStatus,
        payload: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> RunEvent:
        event = RunEvent(run_id=run_id, node_id=node_id, status=status, payload=payload or {}, error=error)
        self._events[run_id].append(event)
        return event

    async def get_run(self, run_id: str) -> Run:
        return self._runs[run_id]

    async def list_run_events(self, run_id: str) -> list[RunEvent]:
        if run_id not in self._runs:
            raise KeyError(run_id)
        return list(self._events[run_id])


class InMemoryGraphStore(GraphStore):

    def __init__(self) -> None:
        self._graphs: dict[str, dict[str, Any]] = {}

    async def save_graph(self, project_id: str, graph: ComputeGraph) -> None:
        self._graphs[project_id] = graph.to_dict()

    async def load_graph(self, project_id: str) -> ComputeGraph:
        return ComputeGraph.from_dict(self._graphs[project_id])
