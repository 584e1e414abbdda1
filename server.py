"""
ComputeFlow HTTP service.
ComputeFlow HTTP 服务。

Routes / 路由：
  PUT  /projects/{project_id}/graph      store a graph, returns its GraphCheck
  POST /projects/{project_id}/validate   re-validate the stored graph
  POST /projects/{project_id}/runs       start a run, stream events (text/event-stream)
  POST /runs/{run_id}/cancel             cancel an in-flight run
  GET  /runs/{run_id}                    run record
  GET  /runs/{run_id}/events             replay a run's events (text/event-stream)
  GET  /health

Run with / 启动：  uvicorn server:app   (or `python server.py`)
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

import config
from dag.errors import GraphValidationError, InfrastructureError
from dag.runner import GraphRunner
from handlers.queue_client import QueueClient
from handlers.registry import build_default_registry
from schema import Edge, GraphCheck, GraphSubmission, Node, Run
from store.json_store import JsonGraphStore, JsonRunStore
from stream.framing import encode_event, encode_stream
from stream.streamer import replay_run

logger = logging.getLogger(__name__)

SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


# ----------------------------------------------------------------------
# Request / response models
# 请求 / 响应模型
# ----------------------------------------------------------------------

class GraphBody(BaseModel):
    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)


class CancelResponse(BaseModel):
    run_id: str
    canceled: bool


class HealthResponse(BaseModel):
    status: str
    active_runs: int
    uptime_seconds: float


# ----------------------------------------------------------------------
# Application
# 应用
# ----------------------------------------------------------------------

def create_app(graph_runner: GraphRunner | None = None) -> FastAPI:
    """
    Build the FastAPI app. Without a runner, JSON-file stores and the real
    generation backends are wired from config.py.
    创建 FastAPI 应用；未传入 runner 时，按 config.py 接入 JSON 文件存储与真实生成后端。
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        app.state.started_at = time.time()
        queue_client: QueueClient | None = None
        if graph_runner is None:
            queue_client = QueueClient()
            app.state.runner = GraphRunner(
                JsonGraphStore(),
                JsonRunStore(),
                build_default_registry(queue_client=queue_client),
            )
        else:
            app.state.runner = graph_runner
        logger.info("[Server] Ready")
        yield
        if queue_client is not None:
            await queue_client.aclose()

    app = FastAPI(
        title="ComputeFlow",
        description="Compute graph validation, execution and progress streaming",
        lifespan=lifespan,
    )

    def get_runner(request: Request) -> GraphRunner:
        return request.app.state.runner

    # --- Graphs ---

    @app.put("/projects/{project_id}/graph", response_model=GraphCheck, tags=["Graphs"])
    async def put_graph(project_id: str, body: GraphBody, runner: GraphRunner = Depends(get_runner)) -> GraphCheck:
        submission = GraphSubmission(project_id=project_id, nodes=body.nodes, edges=body.edges)
        return await _guard(runner.submit_graph(submission))

    @app.post("/projects/{project_id}/validate", response_model=GraphCheck, tags=["Graphs"])
    async def validate_graph(project_id: str, runner: GraphRunner = Depends(get_runner)) -> GraphCheck:
        try:
            return await _guard(runner.validate(project_id))
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Project '{project_id}' has no graph")

    # --- Runs ---

    @app.post("/projects/{project_id}/runs", tags=["Runs"])
    async def start_run(project_id: str, runner: GraphRunner = Depends(get_runner)) -> StreamingResponse:
        try:
            handle = await _guard(runner.start(project_id))
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Project '{project_id}' has no graph")
        except GraphValidationError as exc:
            raise HTTPException(status_code=422, detail={"message": "Graph is not executable", "errors": exc.errors})

        headers = dict(SSE_HEADERS)
        if handle.run_id:
            headers["X-Run-Id"] = handle.run_id
        return StreamingResponse(encode_stream(handle.events()), media_type="text/event-stream", headers=headers)

    @app.post("/runs/{run_id}/cancel", response_model=CancelResponse, tags=["Runs"])
    async def cancel_run(run_id: str, runner: GraphRunner = Depends(get_runner)) -> CancelResponse:
        if runner.cancel(run_id):
            return CancelResponse(run_id=run_id, canceled=True)
        try:
            await _guard(runner.run_store.get_run(run_id))
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found")
        raise HTTPException(status_code=409, detail=f"Run '{run_id}' is not in flight")

    @app.get("/runs/{run_id}", response_model=Run, tags=["Runs"])
    async def get_run(run_id: str, runner: GraphRunner = Depends(get_runner)) -> Run:
        try:
            return await _guard(runner.run_store.get_run(run_id))
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found")

    @app.get("/runs/{run_id}/events", tags=["Runs"])
    async def replay_events(run_id: str, runner: GraphRunner = Depends(get_runner)) -> StreamingResponse:
        try:
            events = await _guard(replay_run(runner.run_store, run_id))
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found")

        async def body() -> AsyncIterator[str]:
            for event in events:
                yield encode_event(event)

        return StreamingResponse(body(), media_type="text/event-stream", headers=SSE_HEADERS)

    # --- System ---

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health(request: Request) -> HealthResponse:
        runner: GraphRunner = request.app.state.runner
        return HealthResponse(
            status="healthy",
            active_runs=runner.active_count,
            uptime_seconds=round(time.time() - request.app.state.started_at, 1),
        )

    return app


async def _guard(call: Any) -> Any:
    """
    Await a store-backed call, mapping InfrastructureError to 503.
    等待依赖存储的调用，将 InfrastructureError 映射为 503。
    """
    try:
        return await call
    except InfrastructureError as exc:
        logger.error("[Server] Store failure: %s", exc)
        raise HTTPException(status_code=503, detail=str(exc))


app = create_app()


if __name__ == "__main__":
    import uvicorn

    from main import setup_logging

    setup_logging()
    uvicorn.run(app, host=config.SERVER_HOST, port=config.SERVER_PORT)
