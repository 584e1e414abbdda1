"""
Graph Runner - submit, validate, start and cancel runs.
图运行器 —— 提交图、校验、启动运行与取消运行。

The runner wires the pieces together for one process:
运行器在进程内把各组件串联起来：

  submit_graph()  GraphSubmission -> GraphStore, returns its GraphCheck
  start()         load graph -> validate -> levels -> create run -> executor task
  stream()        start() + framed text, for the HTTP surface
  cancel()        signal a run that is still in flight

Validation problems raise GraphValidationError before any run exists.
A failure to create the run record is reported on the stream itself: the
observer gets a single `error` event and no `meta`.
校验问题会在创建运行之前抛出 GraphValidationError。
若运行记录创建失败，则通过事件流本身报告：观察者只会收到一个 `error` 事件，不会收到 `meta`。
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, AsyncIterator

from dag.context import RunContext
from dag.errors import GraphValidationError
from dag.executor import GraphExecutor
from dag.graph import ComputeGraph
from dag.scheduler import compute_levels, flatten_levels
from dag.validator import ConnectionValidator
from handlers.registry import HandlerRegistry
from schema import GraphCheck, GraphSubmission, Run, StreamEvent
from stream.framing import encode_event
from stream.streamer import ProgressStreamer

if TYPE_CHECKING:
    from store.base import GraphStore, RunStore

logger = logging.getLogger(__name__)


class RunHandle:
    """
    Caller-side view of a started run.
    调用方持有的运行句柄。
    """

    def __init__(
        self,
        run_id: str | None,
        streamer: ProgressStreamer,
        context: RunContext | None = None,
        task: asyncio.Task[Run] | None = None,
    ):
        self.run_id = run_id
        self._streamer = streamer
        self._context = context
        self._task = task

    def events(self) -> AsyncIterator[StreamEvent]:
        """Async iterator of the run's events, ending with complete / error."""
        return self._streamer.__aiter__()

    def cancel(self) -> bool:
        """Request cancellation. Returns False if the run is already over."""
        if self._context is None or self.done:
            return False
        self._context.cancel()
        return True

    @property
    def done(self) -> bool:
        return self._task is None or self._task.done()

    async def wait(self) -> Run | None:
        """Wait for the coordinator to finish and return the final run record."""
        if self._task is None:
            return None
        return await self._task


class GraphRunner:
    """
    Entry point used by the HTTP server and the CLI.
    HTTP 服务与命令行共用的入口。
    """

    def __init__(
        self,
        graph_store: GraphStore,
        run_store: RunStore,
        handlers: HandlerRegistry,
        max_concurrency: int | None = None,
    ):
        self._graph_store = graph_store
        self._run_store = run_store
        self._validator = ConnectionValidator()
        self._executor = GraphExecutor(handlers, run_store, max_concurrency=max_concurrency)
        self._active: dict[str, RunHandle] = {}   # 进行中的运行

    @property
    def run_store(self) -> RunStore:
        return self._run_store

    # ------------------------------------------------------------------
    # Graph submission
    # 图提交
    # ------------------------------------------------------------------

    async def submit_graph(self, submission: GraphSubmission) -> GraphCheck:
        """
        Store the project's graph and report whether it is executable.
        The graph is stored even when invalid, as the editor's working copy.
        保存项目的图并报告其是否可执行；即使不合法也会保存（作为编辑器的工作副本）。
        """
        try:
            graph = ComputeGraph(submission.nodes, submission.edges)
        except GraphValidationError as exc:
            return GraphCheck(valid=False, errors=exc.errors)

        await self._graph_store.save_graph(submission.project_id, graph)
        check = self.check(graph)
        logger.info(
            "[Runner] Graph for %s stored (%d nodes, %d edges, valid=%s)",
            submission.project_id, len(graph), len(graph.edges), check.valid,
        )
        return check

    def check(self, graph: ComputeGraph) -> GraphCheck:
        return self._validator.validate_graph(graph.nodes.values(), graph.edges)

    async def validate(self, project_id: str) -> GraphCheck:
        """Raises KeyError for an unknown project."""
        return self.check(await self._graph_store.load_graph(project_id))

    # ------------------------------------------------------------------
    # Execution
    # 执行
    # ------------------------------------------------------------------

    async def start(self, project_id: str) -> RunHandle:
        """
        Validate the stored graph and start a run in the background.
        校验已保存的图并在后台启动运行。

        Raises:
            KeyError:             unknown project
            GraphValidationError: the graph is not executable (no run is created)
        """
        graph = await self._graph_store.load_graph(project_id)
        if not len(graph):
            raise GraphValidationError("Graph is not executable", ["No nodes to execute"])

        check = self.check(graph)
        if not check.valid:
            raise GraphValidationError("Graph is not executable", check.errors)
        levels = compute_levels(graph.nodes.values(), graph.edges)
        if levels is None:
            raise GraphValidationError("Graph is not executable", ["Graph contains a cycle"])

        streamer = ProgressStreamer()
        try:
            run_id = await self._run_store.create_run(project_id)
        except Exception as exc:
            logger.exception("[Runner] Could not create a run for %s", project_id)
            streamer.error(f"Could not create run: {exc}")
            return RunHandle(None, streamer)

        execution_order = flatten_levels(levels)
        run = Run(
            id=run_id,
            project_id=project_id,
            execution_order=execution_order,
            levels=levels,
            total_nodes=len(execution_order),
        )
        context = RunContext(run, graph.copy_for_run(), levels)
        task = asyncio.create_task(self._executor.execute(context, streamer), name=f"run:{run_id}")

        handle = RunHandle(run_id, streamer, context, task)
        self._active[run_id] = handle
        task.add_done_callback(lambda _: self._active.pop(run_id, None))
        return handle

    async def stream(self, project_id: str) -> AsyncIterator[str]:
        """
        Start a run and yield its framed events.
        启动运行并逐帧输出事件文本。
        """
        handle = await self.start(project_id)
        async for event in handle.events():
            yield encode_event(event)

    def cancel(self, run_id: str) -> bool:
        """
        Cancel an in-flight run. Returns False for unknown / finished runs.
        取消进行中的运行；未知或已结束的运行返回 False。
        """
        handle = self._active.get(run_id)
        if handle is None:
            return False
        logger.info("[Runner] Cancel requested for run %s", run_id)
        return handle.cancel()

    def is_active(self, run_id: str) -> bool:
        return run_id in self._active

    @property
    def active_count(self) -> int:
        return len(self._active)
