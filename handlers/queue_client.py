"""
Queue Client - async client for queue-style media generation backends.
队列客户端 —— 队列式媒体生成后端的异步客户端。

Long jobs follow a submit / poll / fetch protocol:
长任务遵循 提交 / 轮询 / 获取结果 协议：

  POST {base}/{model}                          -> {"request_id", "status_url"?, "response_url"?}
  GET  {base}/{model}/requests/{id}/status     -> {"status": IN_QUEUE | IN_PROGRESS | COMPLETED | FAILED,
                                                   "queue_position"?}
  GET  {base}/{model}/requests/{id}            -> model result (images / video / audio_file ...)

Polling is a bounded loop with an explicit timeout: a job that never
finishes fails the node instead of hanging the run.
轮询是有上限的循环并带显式超时：永不结束的任务会让节点失败，而不会挂起整个运行。
"""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Any

import httpx

import config
from handlers.base import ProgressCallback

logger = logging.getLogger(__name__)


class MediaBackendError(Exception):
    """The media backend rejected or failed a job."""


class MediaTimeoutError(MediaBackendError):
    """The job did not complete within the configured timeout."""


class QueueClient:
    """
    Thin async wrapper around a queue-style generation API.
    队列式生成 API 的轻量异步封装。所有媒体处理器共享同一个 QueueClient。
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        poll_interval: float | None = None,
        timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._base_url = (base_url or config.MEDIA_BASE_URL).rstrip("/")
        self._poll_interval = config.MEDIA_POLL_INTERVAL if poll_interval is None else poll_interval
        self._timeout = config.MEDIA_TIMEOUT if timeout is None else timeout
        key = api_key if api_key is not None else config.MEDIA_API_KEY
        self._client = http_client or httpx.AsyncClient(
            timeout=config.MEDIA_REQUEST_TIMEOUT,
            headers={"Authorization": f"Key {key}"} if key else {},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Protocol steps
    # 协议步骤
    # ------------------------------------------------------------------

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        try:
            resp = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise MediaBackendError(f"{method} {url} failed: {exc}") from exc
        if resp.status_code >= 400:
            raise MediaBackendError(f"{method} {url} returned {resp.status_code}: {self._error_detail(resp)}")
        try:
            return resp.json()
        except ValueError as exc:
            raise MediaBackendError(f"{method} {url} returned invalid JSON") from exc

    @staticmethod
    def _error_detail(resp: httpx.Response) -> str:
        try:
            body = resp.json()
        except ValueError:
            return resp.text[:200]
        if isinstance(body, dict):
            return str(body.get("detail") or body.get("message") or body.get("error") or body)
        return str(body)

    async def submit(self, model: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """
        Submit a job; returns the queue handle (request_id + URLs).
        提交任务，返回队列句柄（request_id 与状态 / 结果 URL）。
        """
        handle = await self._request("POST", f"{self._base_url}/{model}", json=arguments)
        if "request_id" not in handle:
            raise MediaBackendError(f"Submit to {model} returned no request_id")
        handle.setdefault("status_url", f"{self._base_url}/{model}/requests/{handle['request_id']}/status")
        handle.setdefault("response_url", f"{self._base_url}/{model}/requests/{handle['request_id']}")
        logger.info("[QueueClient] Submitted %s -> %s", model, handle["request_id"])
        return handle

    async def wait(self, handle: dict[str, Any], progress: ProgressCallback | None = None) -> None:
        """
        Poll the job status until COMPLETED, FAILED or timeout.
        轮询任务状态直到 COMPLETED、FAILED 或超时。
        """
        interval = max(self._poll_interval, 0.0)
        max_polls = max(1, math.ceil(self._timeout / interval)) if interval > 0 else max(1, int(self._timeout))
        request_id = handle["request_id"]

        for attempt in range(1, max_polls + 1):
            status = await self._request("GET", handle["status_url"])
            state = str(status.get("status", "")).upper()

            if state == "COMPLETED":
                if status.get("error"):
                    raise MediaBackendError(f"Job {request_id} failed: {status['error']}")
                return
            if state in ("FAILED", "ERROR", "CANCELLED"):
                raise MediaBackendError(f"Job {request_id} failed: {status.get('error') or state}")

            if progress:
                if state == "IN_QUEUE":
                    progress(5.0)
                else:
                    progress(min(90.0, 10.0 + 80.0 * attempt / max_polls))

            logger.debug("[QueueClient] %s: %s (poll %d/%d)", request_id, state or "?", attempt, max_polls)
            await asyncio.sleep(interval)

        raise MediaTimeoutError(f"Job {request_id} did not complete within {self._timeout:g}s")

    async def result(self, handle: dict[str, Any]) -> dict[str, Any]:
        return await self._request("GET", handle["response_url"])

    async def run(self, model: str, arguments: dict[str, Any], progress: ProgressCallback | None = None) -> dict[str, Any]:
        """
        Submit, wait and fetch in one call.
        一次调用完成 提交 -> 等待 -> 获取结果。
        """
        handle = await self.submit(model, arguments)
        await self.wait(handle, progress)
        return await self.result(handle)
