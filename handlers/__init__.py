"""
Handlers module - operation handlers for every node kind.
Handlers 模块 —— 各节点类型的操作处理器。

Components:
  - base.py:         BaseHandler interface and input coercion helpers
  - local.py:        input / transform / combine / output (+ dry-run stand-in)
  - generation.py:   text (OpenAI-compatible) and media (queue backend) generation
  - queue_client.py: submit / poll / fetch client for queue-style backends
  - registry.py:     NodeKind -> handler mapping

模块组成：
  - base.py:         处理器接口与输入转换辅助函数
  - local.py:        本地计算的节点类型（及离线占位处理器）
  - generation.py:   文本生成与媒体生成
  - queue_client.py: 队列式后端的 提交 / 轮询 / 获取 客户端
  - registry.py:     节点类型 -> 处理器 映射
"""

from handlers.base import BaseHandler                                         # 处理器抽象基类
from handlers.generation import MediaGenerationHandler, TextGenerationHandler  # 生成类处理器
from handlers.queue_client import MediaBackendError, MediaTimeoutError, QueueClient
from handlers.registry import HandlerRegistry, build_default_registry, build_dry_run_registry
