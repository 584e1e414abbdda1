"""
Node templates - default ports and params for every node kind.
节点模板 —— 每种节点类型的默认端口与默认参数。

The editor creates nodes from these templates; tests and the CLI use
build_node() to get nodes with the same port layout.
编辑器基于这些模板创建节点；测试与 CLI 通过 build_node() 获得相同端口布局的节点。
"""

from __future__ import annotations

from typing import Any

from schema import Cardinality, Node, NodeKind, Port, PortDirection

# 输出端口默认可扇出到最多 100 条边
_FAN_OUT = Cardinality(min=0, max=100)


def _in(port_id: str, name: str, data_type: str, optional: bool = False, max_edges: int = 1) -> Port:
    return Port(
        id=port_id,
        name=name,
        data_type=data_type,
        direction=PortDirection.INPUT,
        cardinality=Cardinality(min=0 if optional else 1, max=max_edges),
        optional=optional,
    )


def _out(port_id: str, name: str, data_type: str) -> Port:
    return Port(id=port_id, name=name, data_type=data_type, direction=PortDirection.OUTPUT, cardinality=_FAN_OUT)


NODE_TEMPLATES: dict[NodeKind, dict[str, Any]] = {
    NodeKind.INPUT: {
        "label": "Input",
        "inputs": [],
        "outputs": [_out("out", "Value", "text/plain")],
        "params": {"value": ""},
    },
    NodeKind.GENERATE_TEXT: {
        "label": "Generate Text",
        "inputs": [_in("prompt", "Prompt", "text/*", optional=True)],
        "outputs": [_out("text", "Generated Text", "text/plain")],
        "params": {"temperature": 0.7},
    },
    NodeKind.GENERATE_IMAGE: {
        "label": "Generate Image",
        "inputs": [_in("prompt", "Prompt", "text/*")],
        "outputs": [_out("image", "Generated Image", "image/*")],
        "params": {"steps": 20, "aspect_ratio": "1:1"},
    },
    NodeKind.GENERATE_VIDEO: {
        "label": "Generate Video",
        "inputs": [
            _in("image", "Source Image", "image/*"),
            _in("prompt", "Motion Prompt", "text/*", optional=True),
        ],
        "outputs": [_out("video", "Generated Video", "video/*")],
        "params": {"duration": 4.0},
    },
    NodeKind.GENERATE_AUDIO: {
        "label": "Generate Audio",
        "inputs": [_in("prompt", "Prompt", "text/*")],
        "outputs": [_out("audio", "Generated Audio", "audio/*")],
        "params": {"duration": 10.0},
    },
    NodeKind.TRANSFORM: {
        "label": "Transform",
        "inputs": [_in("in", "Input", "any")],
        "outputs": [_out("out", "Output", "any")],
        "params": {"operation": "passthrough"},
    },
    NodeKind.COMBINE: {
        "label": "Combine",
        "inputs": [_in("items", "Items", "any", max_edges=2)],
        "outputs": [_out("out", "Combined", "any")],
        "params": {},
    },
    NodeKind.OUTPUT: {
        "label": "Output",
        "inputs": [_in("in", "Result", "any", max_edges=100)],
        "outputs": [],
        "params": {},
    },
}


def build_node(
    kind: NodeKind | str,
    node_id: str,
    label: str | None = None,
    params: dict[str, Any] | None = None,
    **overrides: Any,
) -> Node:
    """
    Create a node of `kind` with the template's ports; `params` are layered
    over the template defaults. `overrides` replace whole fields
    (e.g. inputs=[...] for a combine node with a wider port).
    按模板创建节点；`params` 覆盖模板默认参数，`overrides` 直接替换整个字段。
    """
    kind = NodeKind(kind)
    template = NODE_TEMPLATES[kind]
    fields: dict[str, Any] = {
        "id": node_id,
        "kind": kind,
        "label": label or template["label"],
        "inputs": [p.model_copy(deep=True) for p in template["inputs"]],
        "outputs": [p.model_copy(deep=True) for p in template["outputs"]],
        "params": {**template["params"], **(params or {})},
    }
    fields.update(overrides)
    return Node(**fields)
