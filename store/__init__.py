"""
Store module - persistence boundary for graphs and runs.
Store 模块 —— 图定义与运行记录的持久化边界。

Components:
  - base.py:       RunStore / GraphStore async interfaces
  - memory.py:     in-process implementations (tests, CLI)
  - json_store.py: one JSON file per run / per project

模块组成：
  - base.py:       RunStore / GraphStore 异步接口
  - memory.py:     进程内实现（测试、命令行）
  - json_store.py: 每个运行 / 项目一个 JSON 文件
"""

from store.base import GraphStore, RunStore                        # 抽象接口
from store.json_store import JsonGraphStore, JsonRunStore           # JSON 文件实现
from store.memory import InMemoryGraphStore, InMemoryRunStore       # 内存实现
