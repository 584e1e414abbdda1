"""
Handler Registry - maps each NodeKind to its operation handler.
处理器注册表 —— 将每种 NodeKind 映射到对应的操作处理器。
"""

from __future__ import annotations

import logging

from openai import AsyncOpenAI

from handlers.base import BaseHandler
from handlers.generation import MediaGenerationHandler, TextGenerationHandler
from handlers.local import CombineHandler, DryRunHandler, InputHandler, OutputHandler, TransformHandler
from handlers.queue_client import QueueClient
from schema import GENERATION_KINDS, NodeKind

logger = logging.getLogger(__name__)


class HandlerRegistry:
    """
    Registry of operation handlers, one per node kind.
    操作处理器注册表，每种节点类型一个处理器。
    """

    def __init__(self, handlers: list[BaseHandler] | None = None):
        self._handlers: dict[NodeKind, BaseHandler] = {}
        for handler in handlers or []:
            self.register(handler)

    def register(self, handler: BaseHandler) -> None:
        """Register (or replace) the handler for its kind. 注册（或替换）处理器。"""
        self._handlers[handler.kind] = handler
        logger.debug("[Registry] %s -> %s", handler.kind.value, type(handler).__name__)

    def get(self, kind: NodeKind) -> BaseHandler:
        """Raises KeyError when no handler serves `kind`."""
        return self._handlers[kind]

    def __contains__(self, kind: NodeKind) -> bool:
        return kind in self._handlers

    @property
    def kinds(self) -> list[NodeKind]:
        return list(self._handlers)


def _local_handlers() -> list[BaseHandler]:
    return [InputHandler(), TransformHandler(), CombineHandler(), OutputHandler()]


def build_default_registry(
    llm_client: AsyncOpenAI | None = None,
    queue_client: QueueClient | None = None,
) -> HandlerRegistry:
    """
    Registry wired to the real generation backends (configured in config.py).
    接入真实生成后端的注册表（后端配置见 config.py）。
    """
    queue_client = queue_client or QueueClient()
    registry = HandlerRegistry(_local_handlers())
    registry.register(TextGenerationHandler(client=llm_client))
    for kind in (NodeKind.GENERATE_IMAGE, NodeKind.GENERATE_VIDEO, NodeKind.GENERATE_AUDIO):
        registry.register(MediaGenerationHandler(kind, queue_client))
    return registry


def build_dry_run_registry(delay: float = 0.2) -> HandlerRegistry:
    """
    Registry that never calls a backend: generation kinds return placeholders.
    不调用任何后端的注册表：生成类节点返回占位输出。
    """
    registry = HandlerRegistry(_local_handlers())
    for kind in sorted(GENERATION_KINDS, key=lambda k: k.value):
        registry.register(DryRunHandler(kind, delay=delay))
    return registry
