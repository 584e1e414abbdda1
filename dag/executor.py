"""
Graph Executor - runs a validated ComputeGraph level by level.
图执行引擎 —— 按层执行已通过校验的 ComputeGraph。

Per run:
单次运行的流程：

  1. emit `meta`, mark the run running
  2. for each level (in order):
       - a node with a failed / skipped upstream is marked SKIPPED (no handler call)
       - every other node is marked RUNNING and dispatched as its own asyncio task
       - results are processed as tasks finish; the level ends when all have
  3. mark the run `completed` and emit `complete` with the final tally

  1. 发出 `meta` 事件，运行标记为 running
  2. 按层依次处理：
       - 上游存在失败 / 跳过节点的节点直接标记为 SKIPPED（不调用处理器）
       - 其余节点标记为 RUNNING，并各自作为独立的 asyncio 任务派发
       - 任务完成一个处理一个；整层全部结束后才进入下一层
  3. 运行标记为 `completed`，发出带最终统计的 `complete` 事件

A handler failure only fails its node. A run store failure or any other
exception in the coordinator is fatal: the run is marked failed and a single
`error` event closes the stream.
处理器失败只影响其节点；运行存储故障或协调协程中的其他异常是致命的：
运行标记为 failed，并以单个 `error` 事件关闭事件流。

Cancellation (RunContext.cancel()) stops dispatching, cancels in-flight
handler tasks, discards their late results and marks every non-terminal
node CANCELED; the stream closes with `complete` / status `canceled`.
取消（RunContext.cancel()）会停止派发、取消进行中的处理器任务并丢弃其迟到结果，
所有未终结的节点标记为 CANCELED；事件流以状态为 `canceled` 的 `complete` 事件结束。
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any, Awaitable, TypeVar

import config
from dag.context import RunContext
from dag.errors import InfrastructureError, NodeExecutionError
from dag.state_machine import NodeStateMachine
from handlers.base import ProgressCallback
from handlers.registry import HandlerRegistry
from schema import TERMINAL_STATUSES, Node, NodeOutput, NodeStatus, Run, RunStatus
from stream.streamer import ProgressStreamer

if TYPE_CHECKING:
    from store.base import RunStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class GraphExecutor:
    """
    Level-by-level executor with bounded handler concurrency.
    逐层执行器，处理器并发数有上限。

    The cap (`max_concurrency`, default MAX_CONCURRENT_HANDLERS) applies per
    run at the handler-dispatch boundary; it bounds simultaneous backend
    calls without changing how nodes are leveled.
    并发上限（`max_concurrency`，默认 MAX_CONCURRENT_HANDLERS）按运行在处理器派发边界生效，
    只限制同时进行的后端调用数，不改变节点分层。
    """

    def __init__(
        self,
        handlers: HandlerRegistry,
        run_store: RunStore,
        max_concurrency: int | None = None,
    ):
        self._handlers = handlers
        self._run_store = run_store
        if max_concurrency is None:
            max_concurrency = config.MAX_CONCURRENT_HANDLERS
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be at least 1, got {max_concurrency}")
        self._max_concurrency = max_concurrency
        self._sm = NodeStateMachine()

    # ------------------------------------------------------------------
    # Main execution loop
    # 主执行循环
    # ------------------------------------------------------------------

    async def execute(self, ctx: RunContext, streamer: ProgressStreamer) -> Run:
        """
        Execute the run described by `ctx` and return its final record.
        Never raises for node or store failures; those end the stream.
        执行 `ctx` 描述的运行并返回最终运行记录。节点或存储故障不会向外抛出，而是结束事件流。
        """
        run = ctx.run
        streamer.meta(run.id, run.project_id, run.total_nodes, ctx.levels)
        slots = asyncio.Semaphore(self._max_concurrency)

        try:
            await self._persist(self._run_store.update_run(
                run.id,
                status=RunStatus.RUNNING,
                execution_order=run.execution_order,
                levels=ctx.levels,
                total_nodes=run.total_nodes,
            ))
            run.status = RunStatus.RUNNING
            logger.info("[Executor] Run %s started: %d node(s) in %d level(s)", run.id, run.total_nodes, len(ctx.levels))

            for index, level in enumerate(ctx.levels):
                if ctx.canceled:
                    break
                await self._run_level(ctx, streamer, level, slots)
                logger.info("[Executor] Level %d done. %s", index, ctx.graph.summary())

            if ctx.canceled:
                await self._finish_canceled(ctx, streamer)
            else:
                await self._finish_completed(ctx, streamer)
        except Exception as exc:
            logger.exception("[Executor] Run %s failed", run.id)
            await self._fail_run(ctx, streamer, str(exc) or type(exc).__name__)

        return run

    # ------------------------------------------------------------------
    # Level processing
    # 单层处理
    # ------------------------------------------------------------------

    async def _run_level(
        self,
        ctx: RunContext,
        streamer: ProgressStreamer,
        level: list[str],
        slots: asyncio.Semaphore,
    ) -> None:
        pending: dict[asyncio.Task[NodeOutput], str] = {}
        try:
            for node_id in level:
                node = ctx.graph.nodes[node_id]
                if node.status in TERMINAL_STATUSES:
                    continue
                if ctx.canceled:
                    break

                # 上游失败或被跳过：级联跳过，不调用处理器
                if ctx.is_blocked(node_id):
                    ctx.skipped_nodes.append(node_id)
                    await self._transition(ctx, streamer, node, NodeStatus.SKIPPED)
                    continue

                inputs = ctx.assemble_inputs(node)
                await self._transition(ctx, streamer, node, NodeStatus.RUNNING)
                ctx.mark_started(node_id)
                task = asyncio.create_task(self._dispatch(ctx, streamer, node, inputs, slots), name=f"node:{node_id}")
                pending[task] = node_id

            await self._collect(ctx, streamer, pending)
        finally:
            # 致命错误或取消时，确保不遗留进行中的处理器任务
            for task in pending:
                task.cancel()

    async def _collect(
        self,
        ctx: RunContext,
        streamer: ProgressStreamer,
        pending: dict[asyncio.Task[NodeOutput], str],
    ) -> None:
        """
        Process task results as they complete, until the level is drained or
        the run is canceled.
        按完成顺序处理任务结果，直到本层全部结束或运行被取消。
        """
        if not pending:
            return
        cancel_waiter = asyncio.create_task(ctx.cancel_event.wait())
        try:
            while pending:
                done, _ = await asyncio.wait({*pending, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED)
                if ctx.canceled:
                    in_flight = list(pending)
                    pending.clear()
                    for task in in_flight:
                        task.cancel()
                    # 等待任务真正结束，迟到的结果直接丢弃
                    await asyncio.gather(*in_flight, return_exceptions=True)
                    logger.info("[Executor] Run %s canceled with %d task(s) in flight", ctx.run.id, len(in_flight))
                    return
                for task in done:
                    node_id = pending.pop(task)
                    await self._settle(ctx, streamer, ctx.graph.nodes[node_id], task)
        finally:
            cancel_waiter.cancel()

    # ------------------------------------------------------------------
    # Node execution
    # 节点执行
    # ------------------------------------------------------------------

    async def _dispatch(
        self,
        ctx: RunContext,
        streamer: ProgressStreamer,
        node: Node,
        inputs: dict[str, Any],
        slots: asyncio.Semaphore,
    ) -> NodeOutput:
        """
        Run one handler; its exception (if any) is read back by _settle().
        执行单个处理器；异常由 _settle() 读取并转换为节点失败。
        """
        if node.kind not in self._handlers:
            raise NodeExecutionError(node.id, f"No handler registered for node kind '{node.kind.value}'")
        handler = self._handlers.get(node.kind)
        params = node.typed_params

        async with slots:
            output = await handler.operate(inputs, params, progress=self._progress_reporter(ctx, streamer, node.id))

        if not isinstance(output, NodeOutput):
            raise NodeExecutionError(node.id, f"Handler returned {type(output).__name__}, expected NodeOutput")
        return output

    @staticmethod
    def _progress_reporter(ctx: RunContext, streamer: ProgressStreamer, node_id: str) -> ProgressCallback:
        def report(progress: float) -> None:
            if ctx.canceled:
                return
            progress = min(max(float(progress), 0.0), 100.0)
            node = ctx.graph.nodes[node_id]
            if node.status == NodeStatus.RUNNING:
                node.progress = progress
                streamer.node_progress(node_id, progress)
        return report

    async def _settle(self, ctx: RunContext, streamer: ProgressStreamer, node: Node, task: asyncio.Task[NodeOutput]) -> None:
        """
        Convert a finished handler task into SUCCEEDED / FAILED.
        将已结束的处理器任务转换为 SUCCEEDED / FAILED。
        """
        elapsed = ctx.elapsed_ms(node.id)
        exc: BaseException | None
        if task.cancelled():
            exc = NodeExecutionError(node.id, "Handler task was cancelled")
        else:
            exc = task.exception()

        if exc is None:
            output = task.result()
            ctx.record_output(node.id, output)
            node.output = output
            node.progress = 100.0
            await self._transition(ctx, streamer, node, NodeStatus.SUCCEEDED, output=output, elapsed_ms=elapsed)
            ctx.run.completed_nodes += 1
            await self._persist(self._run_store.update_run(ctx.run.id, completed_nodes=ctx.run.completed_nodes))
            logger.info("[Executor] %s succeeded in %.0fms", node.id, elapsed or 0)
            return

        message = exc.message if isinstance(exc, NodeExecutionError) else (str(exc) or type(exc).__name__)
        node.error = message
        ctx.failed_nodes.append(node.id)
        await self._transition(ctx, streamer, node, NodeStatus.FAILED, error=message, elapsed_ms=elapsed)
        logger.warning("[Executor] %s failed: %s", node.id, message)

    async def _transition(
        self,
        ctx: RunContext,
        streamer: ProgressStreamer,
        node: Node,
        status: NodeStatus,
        output: NodeOutput | None = None,
        error: str | None = None,
        elapsed_ms: float | None = None,
    ) -> None:
        """
        Apply a status change, record it as a run event, then emit it.
        应用状态变更，写入运行事件，然后发出 node_status 事件。
        """
        self._sm.transition(node, status)
        payload: dict[str, Any] = {}
        if output is not None:
            payload["output"] = output.model_dump(mode="json")
        if elapsed_ms is not None:
            payload["elapsed_ms"] = elapsed_ms
        await self._persist(self._run_store.append_run_event(ctx.run.id, node.id, status, payload, error))
        streamer.node_status(node.id, status, output=output, error=error, elapsed_ms=elapsed_ms)

    # ------------------------------------------------------------------
    # Run completion
    # 运行结束
    # ------------------------------------------------------------------

    async def _finish_completed(self, ctx: RunContext, streamer: ProgressStreamer) -> None:
        run = ctx.run
        run.status = RunStatus.COMPLETED
        run.finished_at = time.time()
        await self._persist(self._run_store.update_run(run.id, status=run.status, finished_at=run.finished_at))
        logger.info(
            "[Executor] Run %s completed: %d/%d succeeded, %d failed, %d skipped",
            run.id, run.completed_nodes, run.total_nodes, len(ctx.failed_nodes), len(ctx.skipped_nodes),
        )
        streamer.complete(
            run.id, run.status, run.completed_nodes, run.total_nodes,
            failed_nodes=ctx.failed_nodes, skipped_nodes=ctx.skipped_nodes,
        )

    async def _finish_canceled(self, ctx: RunContext, streamer: ProgressStreamer) -> None:
        for node in ctx.graph.nodes.values():
            if node.status in TERMINAL_STATUSES:
                continue
            ctx.canceled_nodes.append(node.id)
            await self._transition(ctx, streamer, node, NodeStatus.CANCELED, elapsed_ms=ctx.elapsed_ms(node.id))

        run = ctx.run
        run.status = RunStatus.CANCELED
        run.finished_at = time.time()
        await self._persist(self._run_store.update_run(run.id, status=run.status, finished_at=run.finished_at))
        logger.info("[Executor] Run %s canceled: %d node(s) canceled", run.id, len(ctx.canceled_nodes))
        streamer.complete(
            run.id, run.status, run.completed_nodes, run.total_nodes,
            failed_nodes=ctx.failed_nodes, skipped_nodes=ctx.skipped_nodes,
        )

    async def _fail_run(self, ctx: RunContext, streamer: ProgressStreamer, message: str) -> None:
        run = ctx.run
        run.status = RunStatus.FAILED
        run.error = message
        run.finished_at = time.time()
        try:
            await self._persist(self._run_store.update_run(
                run.id, status=run.status, error=message, finished_at=run.finished_at,
            ))
        except InfrastructureError as exc:
            # 存储本身不可用时，仍须通过事件流告知观察者
            logger.error("[Executor] Could not record failure of run %s: %s", run.id, exc)
        streamer.error(message, run_id=run.id)

    # ------------------------------------------------------------------
    # Store helper
    # 存储辅助方法
    # ------------------------------------------------------------------

    @staticmethod
    async def _persist(call: Awaitable[T]) -> T:
        """
        Await a run store call; any failure becomes InfrastructureError.
        等待运行存储调用；任何异常都包装为 InfrastructureError。
        """
        try:
            return await call
        except InfrastructureError:
            raise
        except Exception as exc:
            raise InfrastructureError(f"Run store failure: {exc}") from exc
