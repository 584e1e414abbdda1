"""
JSON-file stores - one file per run / per project.
JSON 文件存储 —— 每个运行、每个项目各对应一个文件。

Files are rewritten in full on every change (write to a temp file, then
os.replace), so a crash never leaves a half-written record behind.
每次变更都整体重写文件（先写临时文件再 os.replace），崩溃时不会留下写了一半的记录。

File I/O runs in a worker thread (asyncio.to_thread) so other runs keep
streaming while a file is written. Changes to one run are serialized by a
per-run lock. Each append still rewrites the whole run file, so the cost
grows with the number of events; this store suits local use, not large runs.
文件读写在工作线程中执行（asyncio.to_thread），写文件时其他运行的事件流不受阻塞；
同一运行的修改由按运行划分的锁串行化。每次追加仍会重写整个运行文件，
开销随事件数增长，适合本地使用而非大规模运行。
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any

import config
from dag.errors import InfrastructureError
from dag.graph import ComputeGraph
from schema import NodeStatus, Run, RunEvent
from store.base import GraphStore, RunStore, apply_run_fields, new_run_id

logger = logging.getLogger(__name__)


def _read_json(path: str) -> Any:
    if not os.path.exists(path):
        raise KeyError(os.path.splitext(os.path.basename(path))[0])
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        raise InfrastructureError(f"Failed to read {path}: {exc}") from exc


def _write_json(path: str, data: Any) -> None:
    tmp = f"{path}.tmp"
    try:
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp, path)
    except OSError as exc:
        raise InfrastructureError(f"Failed to write {path}: {exc}") from exc


class JsonRunStore(RunStore):
    """
    {run_dir}/{run_id}.json = {"run": {...}, "events": [...]}
    """

    def __init__(self, run_dir: str | None = None):
        self._dir = os.path.expanduser(run_dir or config.RUN_STORE_DIR)  # 运行记录目录
        os.makedirs(self._dir, exist_ok=True)
        self._locks: dict[str, asyncio.Lock] = {}  # run_id -> 修改锁

    def _path(self, run_id: str) -> str:
        return os.path.join(self._dir, f"{run_id}.json")

    def _lock(self, run_id: str) -> asyncio.Lock:
        return self._locks.setdefault(run_id, asyncio.Lock())

    def _load(self, run_id: str) -> tuple[Run, list[RunEvent]]:
        data = _read_json(self._path(run_id))
        return Run.model_validate(data["run"]), [RunEvent.model_validate(e) for e in data.get("events", [])]

    def _save(self, run: Run, events: list[RunEvent]) -> None:
        _write_json(self._path(run.id), {
            "run": run.model_dump(mode="json"),
            "events": [e.model_dump(mode="json") for e in events],
        })

    def _update_sync(self, run_id: str, fields: dict[str, Any]) -> Run:
        run, events = self._load(run_id)
        run = apply_run_fields(run, fields)
        self._save(run, events)
        return run

    def _append_sync(self, event: RunEvent) -> None:
        run, events = self._load(event.run_id)
        events.append(event)
        self._save(run, events)

    async def create_run(self, project_id: str) -> str:
        run = Run(id=new_run_id(), project_id=project_id)
        await asyncio.to_thread(self._save, run, [])
        logger.info("[RunStore] Created run %s for project %s", run.id, project_id)
        return run.id

    async def update_run(self, run_id: str, **fields: Any) -> Run:
        async with self._lock(run_id):
            return await asyncio.to_thread(self._update_sync, run_id, fields)

    async def append_run_event(
        self,
        run_id: str,
        node_id: str,
        status: NodeStatus,
        payload: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> RunEvent:
        event = RunEvent(run_id=run_id, node_id=node_id, status=status, payload=payload or {}, error=error)
        async with self._lock(run_id):
            await asyncio.to_thread(self._append_sync, event)
        return event

    async def get_run(self, run_id: str) -> Run:
        return (await asyncio.to_thread(self._load, run_id))[0]

    async def list_run_events(self, run_id: str) -> list[RunEvent]:
        return (await asyncio.to_thread(self._load, run_id))[1]


class JsonGraphStore(GraphStore):
    """
    {graph_dir}/{project_id}.json = ComputeGraph.to_dict()
    """

    def __init__(self, graph_dir: str | None = None):
        self._dir = os.path.expanduser(graph_dir or config.GRAPH_STORE_DIR)  # 图定义目录
        os.makedirs(self._dir, exist_ok=True)

    def _path(self, project_id: str) -> str:
        if os.sep in project_id or project_id.startswith("."):
            raise KeyError(project_id)
        return os.path.join(self._dir, f"{project_id}.json")

    async def save_graph(self, project_id: str, graph: ComputeGraph) -> None:
        await asyncio.to_thread(_write_json, self._path(project_id), graph.to_dict())
        logger.info("[GraphStore] Saved graph for project %s (%d nodes)", project_id, len(graph))

    async def load_graph(self, project_id: str) -> ComputeGraph:
        return ComputeGraph.from_dict(await asyncio.to_thread(_read_json, self._path(project_id)))
