"""
DAG module - Core engine for compute graph execution.
DAG 模块 —— 计算图执行的核心引擎。

Components:
  - graph.py:         ComputeGraph data structure and lookups
  - templates.py:     default ports / params per node kind
  - validator.py:     ConnectionValidator (edge + whole-graph checks)
  - scheduler.py:     Kahn levels
  - state_machine.py: Node lifecycle state machine
  - context.py:       RunContext (per-run state, single writer)
  - executor.py:      GraphExecutor (level-by-level concurrent execution)
  - runner.py:        GraphRunner (submit / start / stream / cancel)

模块组成：
  - graph.py:         ComputeGraph 数据结构与查询
  - templates.py:     各节点类型的默认端口与参数
  - validator.py:     连线与整图校验
  - scheduler.py:     Kahn 分层调度
  - state_machine.py: 节点生命周期状态机（强制合法状态转移）
  - context.py:       单次运行的状态容器
  - executor.py:      逐层并发执行引擎
  - runner.py:        运行入口（提交 / 启动 / 流式输出 / 取消）
"""

from dag.graph import ComputeGraph              # 计算图
from dag.validator import ConnectionValidator   # 连线校验器
from dag.scheduler import compute_levels        # 分层调度
from dag.state_machine import NodeStateMachine  # 节点状态机
from dag.executor import GraphExecutor          # 执行引擎
from dag.runner import GraphRunner, RunHandle   # 运行入口
