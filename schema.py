"""
Pydantic data models for the ComputeFlow engine.
Defines the core data structures shared by the graph model, validator,
scheduler, executor, handlers, stores and the progress stream.
ComputeFlow 引擎的 Pydantic 数据模型。
定义了贯穿图模型、校验器、调度器、执行器、处理器、存储与进度流各层的核心数据结构。
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, Field, ConfigDict, model_validator


# ======================================================================
# Ports
# 端口模型
# ======================================================================

class PortDirection(str, Enum):
    """Which side of a node a port sits on. 端口方向。"""
    INPUT = "input"
    OUTPUT = "output"


class Cardinality(BaseModel):
    """
    Minimum / maximum number of edges a port may carry.
    端口可连接的边数上下限。
    """
    min: int = Field(default=0, ge=0)
    max: int = Field(default=1, ge=1)

    @model_validator(mode="after")
    def _check_bounds(self) -> Cardinality:
        if self.min > self.max:
            raise ValueError(f"cardinality min ({self.min}) exceeds max ({self.max})")
        return self


class Port(BaseModel):
    """
    A typed input or output slot on a node.
    节点上的类型化输入/输出槽位。

    data_type is a MIME-like string: exact ("image/png"), wildcard ("image/*")
    or the universal "any".
    data_type 为类 MIME 字符串：精确类型、通配类型（"image/*"）或通用类型 "any"。
    """
    id: str
    name: str = ""
    data_type: str = "any"
    direction: PortDirection
    cardinality: Cardinality = Field(default_factory=Cardinality)
    optional: bool = False


# ======================================================================
# Node kinds and typed params
# 节点类型与按类型区分的参数模型
# ======================================================================

class NodeKind(str, Enum):
    """
    Compute operation families. Generation kinds call an external backend,
    the rest are computed locally.
    计算操作类别。generate-* 调用外部生成后端，其余在本地计算。
    """
    INPUT = "input"
    GENERATE_TEXT = "generate-text"
    GENERATE_IMAGE = "generate-image"
    GENERATE_VIDEO = "generate-video"
    GENERATE_AUDIO = "generate-audio"
    TRANSFORM = "transform"
    COMBINE = "combine"
    OUTPUT = "output"


GENERATION_KINDS = frozenset({
    NodeKind.GENERATE_TEXT,
    NodeKind.GENERATE_IMAGE,
    NodeKind.GENERATE_VIDEO,
    NodeKind.GENERATE_AUDIO,
})


class NodeParams(BaseModel):
    """
    Base for per-kind params. Unknown keys are kept (the editor stores UI
    hints alongside real params) but known keys are type-checked.
    各类型参数模型的基类。保留未知字段（编辑器会附带 UI 信息），已知字段强类型校验。
    """
    model_config = ConfigDict(extra="allow")


class InputParams(NodeParams):
    value: Any = None
    url: str | None = None
    output_type: str = "text"  # text / image / video / audio / json


class TextGenerateParams(NodeParams):
    prompt: str = ""
    system_prompt: str = ""
    model: str | None = None
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1024, gt=0)


class ImageGenerateParams(NodeParams):
    prompt: str = ""
    model: str | None = None
    steps: int = Field(default=20, ge=1)
    aspect_ratio: str = "1:1"
    num_images: int = Field(default=1, ge=1)


class VideoGenerateParams(NodeParams):
    prompt: str = ""
    model: str | None = None
    duration: float = Field(default=4.0, gt=0)
    aspect_ratio: str = "16:9"


class AudioGenerateParams(NodeParams):
    prompt: str = ""
    model: str | None = None
    duration: float = Field(default=10.0, gt=0)


class TransformOperation(str, Enum):
    PASSTHROUGH = "passthrough"
    UPPERCASE = "uppercase"
    LOWERCASE = "lowercase"
    TEMPLATE = "template"


class TransformParams(NodeParams):
    operation: TransformOperation = TransformOperation.PASSTHROUGH
    template: str = ""


class CombineParams(NodeParams):
    separator: str = "\n\n"


class OutputParams(NodeParams):
    pass


PARAMS_BY_KIND: dict[NodeKind, type[NodeParams]] = {
    NodeKind.INPUT: InputParams,
    NodeKind.GENERATE_TEXT: TextGenerateParams,
    NodeKind.GENERATE_IMAGE: ImageGenerateParams,
    NodeKind.GENERATE_VIDEO: VideoGenerateParams,
    NodeKind.GENERATE_AUDIO: AudioGenerateParams,
    NodeKind.TRANSFORM: TransformParams,
    NodeKind.COMBINE: CombineParams,
    NodeKind.OUTPUT: OutputParams,
}


# ======================================================================
# Node status / results
# 节点状态与执行结果
# ======================================================================

class NodeStatus(str, Enum):
    """
    Node lifecycle states, managed by NodeStateMachine.
    节点生命周期状态，由 NodeStateMachine 强制管理合法转移。

    Transition graph:
    转移图：
        IDLE -> QUEUED -> RUNNING -> SUCCEEDED
                                  -> FAILED
                                  -> CANCELED
        IDLE / QUEUED            -> SKIPPED / CANCELED
    """
    IDLE = "idle"             # 尚未进入任何运行
    QUEUED = "queued"         # 已纳入本次运行，等待所在层被调度
    RUNNING = "running"       # 正在执行
    SUCCEEDED = "succeeded"   # 成功（终态）
    FAILED = "failed"         # 处理器报错（终态）
    SKIPPED = "skipped"       # 上游失败或被跳过，未执行（终态）
    CANCELED = "canceled"     # 运行被取消（终态）


TERMINAL_STATUSES = frozenset({
    NodeStatus.SUCCEEDED,
    NodeStatus.FAILED,
    NodeStatus.SKIPPED,
    NodeStatus.CANCELED,
})


class NodeOutput(BaseModel):
    """
    What an operation handler hands back: a typed payload carried either as
    a URL (media) or inline data (text / json).
    处理器的返回值：媒体以 url 形式，文本/JSON 以 data 形式携带。
    """
    type: str = Field(description="text / image / video / audio / json / collection")
    url: str | None = None
    data: Any = None
    metadata: dict[str, Any] = Field(default_factory=dict)


# ======================================================================
# Core graph structures
# 核心图结构
# ======================================================================

class Node(BaseModel):
    """
    One compute operation in the graph.
    图中的单个计算节点。

    `params` stays a plain dict on the wire, but it is validated against the
    kind's params model at construction, so a node with malformed params can
    never enter a graph. `typed_params` returns the parsed model.
    `params` 在传输层保持普通 dict，但构造时按节点类型校验，
    参数不合法的节点无法进入图；`typed_params` 返回解析后的强类型模型。
    """
    id: str
    kind: NodeKind
    label: str = ""
    inputs: list[Port] = Field(default_factory=list)
    outputs: list[Port] = Field(default_factory=list)
    params: dict[str, Any] = Field(default_factory=dict)
    status: NodeStatus = NodeStatus.IDLE
    progress: float = Field(default=0.0, ge=0.0, le=100.0)
    output: NodeOutput | None = None
    error: str | None = None
    position: dict[str, float] | None = None  # 画布坐标，执行时忽略

    @model_validator(mode="after")
    def _check_ports_and_params(self) -> Node:
        for port in self.inputs:
            if port.direction != PortDirection.INPUT:
                raise ValueError(f"node '{self.id}': port '{port.id}' listed as input but is {port.direction.value}")
        for port in self.outputs:
            if port.direction != PortDirection.OUTPUT:
                raise ValueError(f"node '{self.id}': port '{port.id}' listed as output but is {port.direction.value}")
        for ports, side in ((self.inputs, "input"), (self.outputs, "output")):
            ids = [p.id for p in ports]
            if len(ids) != len(set(ids)):
                raise ValueError(f"node '{self.id}': duplicate {side} port ids")
        PARAMS_BY_KIND[self.kind].model_validate(self.params)
        return self

    @property
    def typed_params(self) -> NodeParams:
        return PARAMS_BY_KIND[self.kind].model_validate(self.params)

    @property
    def display_name(self) -> str:
        return self.label or self.id


class Edge(BaseModel):
    """
    A typed connection from one output port to one input port.
    从一个输出端口到一个输入端口的类型化连线。
    """
    id: str
    source_node_id: str
    source_port_id: str
    target_node_id: str
    target_port_id: str
    data_type: str | None = None


class GraphSubmission(BaseModel):
    """
    What a caller submits for a project. Visual metadata on nodes is accepted
    and ignored.
    调用方为某个项目提交的图定义。
    """
    project_id: str
    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)


# --- Validation results ---
# --- 校验结果 ---

class ConnectionCheck(BaseModel):
    valid: bool
    reason: str | None = None


class GraphCheck(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)


# ======================================================================
# Runs
# 运行记录
# ======================================================================

class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"   # 生命周期结束（即使部分节点失败/跳过）
    FAILED = "failed"         # 致命错误（与单个节点无关）
    CANCELED = "canceled"     # 调用方主动取消


class Run(BaseModel):
    """
    One execution attempt of a graph.
    图的一次执行。`completed_nodes` 单调递增且不超过 `total_nodes`。
    """
    id: str
    project_id: str
    status: RunStatus = RunStatus.QUEUED
    execution_order: list[str] = Field(default_factory=list)
    levels: list[list[str]] = Field(default_factory=list)  # 供断线重放时重建 meta 事件
    total_nodes: int = 0
    completed_nodes: int = 0
    started_at: float = Field(default_factory=time.time)
    finished_at: float | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELED)


class RunEvent(BaseModel):
    """
    Append-only record of a node status transition within a run.
    运行内节点状态转移的追加式记录，用于审计与断线重放。
    """
    run_id: str
    node_id: str
    status: NodeStatus
    timestamp: float = Field(default_factory=time.time)
    payload: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None


# ======================================================================
# Progress stream events
# 进度事件流模型（封闭的事件类型枚举，每种类型对应独立的 payload 模型）
# ======================================================================

class EventType(str, Enum):
    META = "meta"
    NODE_STATUS = "node_status"
    NODE_PROGRESS = "node_progress"
    COMPLETE = "complete"
    ERROR = "error"


class MetaPayload(BaseModel):
    run_id: str
    project_id: str
    total_nodes: int
    levels: list[list[str]] = Field(default_factory=list)


class NodeStatusPayload(BaseModel):
    node_id: str
    status: NodeStatus
    output: NodeOutput | None = None
    error: str | None = None
    elapsed_ms: float | None = None


class NodeProgressPayload(BaseModel):
    node_id: str
    progress: float = Field(ge=0.0, le=100.0)


class CompletePayload(BaseModel):
    run_id: str
    status: RunStatus
    completed_nodes: int
    total_nodes: int
    failed_nodes: list[str] = Field(default_factory=list)
    skipped_nodes: list[str] = Field(default_factory=list)


class ErrorPayload(BaseModel):
    run_id: str | None = None
    error: str


EventPayload = Union[MetaPayload, NodeStatusPayload, NodeProgressPayload, CompletePayload, ErrorPayload]

EVENT_PAYLOADS: dict[EventType, type[BaseModel]] = {
    EventType.META: MetaPayload,
    EventType.NODE_STATUS: NodeStatusPayload,
    EventType.NODE_PROGRESS: NodeProgressPayload,
    EventType.COMPLETE: CompletePayload,
    EventType.ERROR: ErrorPayload,
}


class StreamEvent(BaseModel):
    """
    A type tag plus its structured payload.
    事件 = 类型标签 + 结构化 payload。payload 的模型由 type 唯一确定。
    """
    type: EventType
    payload: EventPayload

    @model_validator(mode="before")
    @classmethod
    def _payload_by_type(cls, data: Any) -> Any:
        # 按 type 选择 payload 模型，避免 Union 的模糊匹配
        if isinstance(data, dict) and isinstance(data.get("payload"), dict):
            event_type = EventType(data["type"])
            data = {**data, "payload": EVENT_PAYLOADS[event_type].model_validate(data["payload"])}
        return data

    @model_validator(mode="after")
    def _check_payload_type(self) -> StreamEvent:
        expected = EVENT_PAYLOADS[self.type]
        if not isinstance(self.payload, expected):
            raise ValueError(f"{self.type.value} event needs a {expected.__name__} payload")
        return self

    @property
    def is_closing(self) -> bool:
        return self.type in (EventType.COMPLETE, EventType.ERROR)
