"""
Engine error taxonomy.
引擎异常分类。

  - GraphValidationError: malformed graph, raised before any run is created
  - NodeExecutionError:   one handler failed; scoped to that node, the run goes on
  - InfrastructureError:  run/graph store or transport failure; fatal to the run

  - GraphValidationError：图结构不合法，在创建运行之前同步抛出
  - NodeExecutionError：  单个处理器失败，只影响该节点，运行继续
  - InfrastructureError： 存储或传输层故障，整个运行失败

Cancellation is not an error: a canceled run simply ends in the `canceled` state.
取消不是错误：被取消的运行以 `canceled` 状态结束。
"""

from __future__ import annotations


class GraphValidationError(Exception):
    """Raised when a graph cannot be executed as submitted."""

    def __init__(self, message: str, errors: list[str] | None = None):
        self.errors = list(errors or [])
        detail = f"{message}: {'; '.join(self.errors)}" if self.errors else message
        super().__init__(detail)


class NodeExecutionError(Exception):
    """Raised by an operation handler; converted into a node failure."""

    def __init__(self, node_id: str, message: str):
        self.node_id = node_id
        self.message = message
        super().__init__(message)


class InfrastructureError(Exception):
    """Run store / graph store / transport failure unrelated to any single node."""
