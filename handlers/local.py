"""
Local handlers - node kinds computed in-process (no backend call).
本地处理器 —— 在进程内完成计算、不调用外部后端的节点类型。

  input      emits its static value or URL           输出静态值或 URL
  transform  passthrough / case change / template    透传、大小写转换、模板替换
  combine    merges several upstream results         合并多个上游结果
  output     collects the final result of a branch   汇集分支最终结果

DryRunHandler stands in for a generation kind when the CLI runs a graph
offline: it returns a placeholder output after a short simulated delay.
DryRunHandler 用于命令行离线运行：替代生成类节点，短暂模拟延迟后返回占位输出。
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from handlers.base import BaseHandler, ProgressCallback, text_of
from schema import (
    CombineParams,
    InputParams,
    NodeKind,
    NodeOutput,
    NodeParams,
    TransformOperation,
    TransformParams,
)

logger = logging.getLogger(__name__)


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


class InputHandler(BaseHandler):

    @property
    def kind(self) -> NodeKind:
        return NodeKind.INPUT

    async def operate(self, inputs: dict[str, Any], params: InputParams, progress: ProgressCallback | None = None) -> NodeOutput:
        if params.url:
            return NodeOutput(type=params.output_type, url=params.url)
        value = params.value
        if value is None or value == "":
            raise ValueError("Input node has neither a value nor a URL")
        output_type = params.output_type if isinstance(value, str) else "json"
        return NodeOutput(type=output_type, data=value)


class TransformHandler(BaseHandler):

    @property
    def kind(self) -> NodeKind:
        return NodeKind.TRANSFORM

    async def operate(self, inputs: dict[str, Any], params: TransformParams, progress: ProgressCallback | None = None) -> NodeOutput:
        source = inputs.get("in")
        if params.operation == TransformOperation.PASSTHROUGH:
            if isinstance(source, NodeOutput):
                return source.model_copy(deep=True)
            return NodeOutput(type="json" if isinstance(source, list) else "text", data=text_of(source))

        text = text_of(source) or ""
        if params.operation == TransformOperation.UPPERCASE:
            result = text.upper()
        elif params.operation == TransformOperation.LOWERCASE:
            result = text.lower()
        else:
            # 模板中的 {input} 替换为上游文本
            result = params.template.replace("{input}", text)
        return NodeOutput(type="text", data=result, metadata={"operation": params.operation.value})


class CombineHandler(BaseHandler):

    @property
    def kind(self) -> NodeKind:
        return NodeKind.COMBINE

    async def operate(self, inputs: dict[str, Any], params: CombineParams, progress: ProgressCallback | None = None) -> NodeOutput:
        items = [v for v in _as_list(inputs.get("items")) if isinstance(v, NodeOutput)]
        if not items:
            raise ValueError("Combine node received no inputs")

        if all(item.type == "text" for item in items):
            return NodeOutput(
                type="text",
                data=params.separator.join(text_of(item) or "" for item in items),
                metadata={"count": len(items)},
            )
        return NodeOutput(
            type="collection",
            data=[item.model_dump(mode="json") for item in items],
            metadata={"count": len(items)},
        )


class OutputHandler(BaseHandler):

    @property
    def kind(self) -> NodeKind:
        return NodeKind.OUTPUT

    async def operate(self, inputs: dict[str, Any], params: NodeParams, progress: ProgressCallback | None = None) -> NodeOutput:
        results = [v for v in _as_list(inputs.get("in")) if isinstance(v, NodeOutput)]
        if not results:
            raise ValueError("Output node received no result")
        if len(results) == 1:
            return results[0].model_copy(deep=True)
        return NodeOutput(type="collection", data=[r.model_dump(mode="json") for r in results])


class DryRunHandler(BaseHandler):
    """
    Placeholder generation handler for offline runs.
    离线运行时的占位生成处理器。
    """

    _OUTPUT_TYPES = {
        NodeKind.GENERATE_TEXT: "text",
        NodeKind.GENERATE_IMAGE: "image",
        NodeKind.GENERATE_VIDEO: "video",
        NodeKind.GENERATE_AUDIO: "audio",
    }

    def __init__(self, kind: NodeKind, delay: float = 0.2, steps: int = 4):
        if kind not in self._OUTPUT_TYPES:
            raise ValueError(f"DryRunHandler only serves generation kinds, not {kind.value}")
        self._kind = kind
        self._delay = delay
        self._steps = max(1, steps)

    @property
    def kind(self) -> NodeKind:
        return self._kind

    async def operate(self, inputs: dict[str, Any], params: NodeParams, progress: ProgressCallback | None = None) -> NodeOutput:
        for step in range(1, self._steps + 1):
            await asyncio.sleep(self._delay / self._steps)
            if progress:
                progress(100.0 * step / self._steps)

        output_type = self._OUTPUT_TYPES[self._kind]
        prompt = text_of(inputs.get("prompt")) or ""
        if output_type == "text":
            return NodeOutput(type="text", data=f"[dry-run] {prompt}".strip(), metadata={"dry_run": True})
        return NodeOutput(
            type=output_type,
            url=f"dryrun://{output_type}/{abs(hash(prompt)) % 10**8:08d}",
            metadata={"dry_run": True, "prompt": prompt},
        )
