"""
Base Handler - Abstract interface for every node operation.
BaseHandler —— 所有节点操作处理器的抽象接口。

Each handler exposes:
  - kind:      the NodeKind it executes
  - operate(): turn the assembled inputs + typed params into a NodeOutput

每个处理器暴露：
  - kind：     负责执行的节点类型
  - operate()：根据组装好的输入与强类型参数产出 NodeOutput

`inputs` maps input port ids to upstream NodeOutputs (a list when the port
has several edges), layered over the node's raw params, so `inputs["prompt"]`
is either an upstream result or the static prompt string.
`inputs` 将输入端口 ID 映射到上游 NodeOutput（多条边时为列表），并覆盖在节点原始参数之上，
因此 `inputs["prompt"]` 既可能是上游结果，也可能是静态的提示词字符串。

Handlers raise on failure; the executor turns the exception into a node
failure, so nothing here needs to catch-and-report.
处理器失败时直接抛出异常，由执行器转换为节点失败。
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any, Callable

from schema import NodeKind, NodeOutput, NodeParams

ProgressCallback = Callable[[float], None]


class BaseHandler(ABC):
    """
    Abstract base class for node operation handlers.
    节点操作处理器的抽象基类。
    """

    @property
    @abstractmethod
    def kind(self) -> NodeKind:
        """
        Node kind served by this handler.
        该处理器负责的节点类型。
        """

    @abstractmethod
    async def operate(
        self,
        inputs: dict[str, Any],
        params: NodeParams,
        progress: ProgressCallback | None = None,
    ) -> NodeOutput:
        """
        Run the operation and return its output, or raise.
        执行操作并返回输出；失败时抛出异常。
        """


# ----------------------------------------------------------------------
# Input coercion helpers
# 输入值转换辅助函数
# ----------------------------------------------------------------------

def text_of(value: Any) -> str | None:
    """
    Best text rendering of an input value: inline data first, then URL.
    将输入值转换为文本：优先取内联数据，其次取 URL。
    """
    if value is None:
        return None
    if isinstance(value, NodeOutput):
        if value.data is not None:
            return value.data if isinstance(value.data, str) else json.dumps(value.data, ensure_ascii=False)
        return value.url
    if isinstance(value, list):
        parts = [text_of(v) for v in value]
        return "\n\n".join(p for p in parts if p)
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def url_of(value: Any) -> str | None:
    """
    URL carried by an input value (first one for a list).
    取输入值携带的 URL（列表时取第一个）。
    """
    if isinstance(value, NodeOutput):
        if value.url:
            return value.url
        return value.data if isinstance(value.data, str) and value.data.startswith(("http://", "https://")) else None
    if isinstance(value, list):
        for v in value:
            url = url_of(v)
            if url:
                return url
        return None
    if isinstance(value, str) and value.startswith(("http://", "https://")):
        return value
    return None


def require_text(inputs: dict[str, Any], key: str) -> str:
    text = text_of(inputs.get(key))
    if not text or not text.strip():
        raise ValueError(f"Missing required input '{key}'")
    return text.strip()
