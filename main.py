"""
ComputeFlow - command-line entry point.
ComputeFlow —— 命令行入口。

Runs a compute graph from a JSON file (or the built-in demo graph) and renders
the progress stream with a rich console UI: levels, per-node status changes,
progress updates and the final tally.
从 JSON 文件（或内置示例图）运行计算图，并用 Rich 控制台 UI 实时展示进度流：
分层结果、逐节点状态变化、进度更新和最终统计。

Usage / 用法：
    python main.py                    # built-in demo graph, offline handlers
    python main.py graph.json         # real backends (see config.py / .env)
    python main.py graph.json --dry-run
    python main.py graph.json --check # validate only
    -v / --verbose                    # debug logging
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

from dag.errors import GraphValidationError
from dag.runner import GraphRunner
from dag.templates import build_node
from handlers.registry import build_default_registry, build_dry_run_registry
from schema import (
    CompletePayload,
    Edge,
    ErrorPayload,
    EventType,
    GraphSubmission,
    MetaPayload,
    NodeKind,
    NodeProgressPayload,
    NodeStatusPayload,
    StreamEvent,
)
from store.memory import InMemoryGraphStore, InMemoryRunStore

console = Console()
logger = logging.getLogger(__name__)

# Status -> Rich style mapping
# 节点状态 -> Rich 样式映射
_STATUS_STYLES = {
    "idle": "dim",
    "queued": "dim",
    "running": "bold yellow",
    "succeeded": "green",
    "failed": "red",
    "skipped": "dim strike",
    "canceled": "magenta",
}


# ======================================================================
# Demo graph
# 内置示例图
# ======================================================================

def demo_submission() -> GraphSubmission:
    """
    prompt -> image -> video, plus a caption branch merged with the video
    in a combine node.
    提示词 -> 图像 -> 视频，另有一条文案分支与视频在 combine 节点汇合。
    """
    nodes = [
        build_node(NodeKind.INPUT, "prompt", "Scene Prompt", params={"value": "A lighthouse at dawn, cinematic"}),
        build_node(NodeKind.GENERATE_IMAGE, "image", "Key Frame"),
        build_node(NodeKind.GENERATE_VIDEO, "video", "Animate"),
        build_node(NodeKind.GENERATE_TEXT, "caption", "Caption", params={"system_prompt": "Write a one-line caption."}),
        build_node(NodeKind.COMBINE, "bundle", "Bundle"),
        build_node(NodeKind.OUTPUT, "result", "Result"),
    ]
    edges = [
        Edge(id="e1", source_node_id="prompt", source_port_id="out", target_node_id="image", target_port_id="prompt"),
        Edge(id="e2", source_node_id="image", source_port_id="image", target_node_id="video", target_port_id="image"),
        Edge(id="e3", source_node_id="prompt", source_port_id="out", target_node_id="caption", target_port_id="prompt"),
        Edge(id="e4", source_node_id="video", source_port_id="video", target_node_id="bundle", target_port_id="items"),
        Edge(id="e5", source_node_id="caption", source_port_id="text", target_node_id="bundle", target_port_id="items"),
        Edge(id="e6", source_node_id="bundle", source_port_id="out", target_node_id="result", target_port_id="in"),
    ]
    return GraphSubmission(project_id="demo", nodes=nodes, edges=edges)


def load_submission(path: str) -> GraphSubmission:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    data.setdefault("project_id", path.rsplit("/", 1)[-1].rsplit(".", 1)[0])
    return GraphSubmission.model_validate(data)


# ======================================================================
# UI Event Handler - Pretty-prints stream events
# UI 事件渲染
# ======================================================================

def render_event(event: StreamEvent, labels: dict[str, str]) -> None:
    """
    Render one progress event to the console.
    将单个进度事件渲染到控制台。
    """
    if event.type == EventType.META:
        # 运行开始：以树形结构展示分层
        payload: MetaPayload = event.payload
        tree = Tree(f"[bold]Run {payload.run_id[:8]}[/bold]  ({payload.total_nodes} nodes)")
        for index, level in enumerate(payload.levels):
            branch = tree.add(f"[cyan]Level {index}[/cyan]" + (" (parallel)" if len(level) > 1 else ""))
            for nid in level:
                branch.add(f"{labels.get(nid, nid)} [dim]({nid})[/dim]")
        console.print(Panel(tree, title="[bold magenta]Execution Plan[/bold magenta]", border_style="magenta"))

    elif event.type == EventType.NODE_STATUS:
        payload: NodeStatusPayload = event.payload
        style = _STATUS_STYLES.get(payload.status.value, "white")
        name = labels.get(payload.node_id, payload.node_id)
        elapsed = f" [dim]{payload.elapsed_ms:.0f}ms[/dim]" if payload.elapsed_ms is not None else ""
        console.print(f"  [{style}]{payload.status.value:>9}[/{style}]  {name}{elapsed}")
        if payload.output is not None:
            preview = payload.output.url or str(payload.output.data)
            console.print(f"             [dim]-> {payload.output.type}: {preview[:200]}[/dim]")
        if payload.error:
            console.print(f"             [red]{payload.error}[/red]")

    elif event.type == EventType.NODE_PROGRESS:
        payload: NodeProgressPayload = event.payload
        logger.debug("[CLI] %s progress %.0f%%", payload.node_id, payload.progress)

    elif event.type == EventType.COMPLETE:
        # 运行结束：统计表
        payload: CompletePayload = event.payload
        table = Table(title=f"Run {payload.status.value}", border_style="green" if not payload.failed_nodes else "yellow")
        table.add_column("Completed", style="green")
        table.add_column("Failed", style="red")
        table.add_column("Skipped", style="dim")
        table.add_row(
            f"{payload.completed_nodes}/{payload.total_nodes}",
            ", ".join(payload.failed_nodes) or "-",
            ", ".join(payload.skipped_nodes) or "-",
        )
        console.print(table)

    elif event.type == EventType.ERROR:
        payload: ErrorPayload = event.payload
        console.print(Panel(payload.error, title="[bold red]Run Failed[/bold red]", border_style="red"))


# ======================================================================
# Main
# 主函数
# ======================================================================

def setup_logging(verbose: bool = False) -> None:
    """
    Configure logging with rich handler.
    使用 Rich 处理器配置日志系统，并抑制 httpx/openai/httpcore 的低优先级日志。
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, rich_tracebacks=True)],
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


async def run_graph(submission: GraphSubmission, dry_run: bool, check_only: bool = False) -> int:
    """
    Submit, validate and (unless check_only) execute one graph.
    Returns the process exit code.
    提交、校验并执行（check_only 时仅校验）一张图，返回进程退出码。
    """
    handlers = build_dry_run_registry() if dry_run else build_default_registry()
    runner = GraphRunner(InMemoryGraphStore(), InMemoryRunStore(), handlers)
    labels = {n.id: n.display_name for n in submission.nodes}

    check = await runner.submit_graph(submission)
    if not check.valid:
        console.print(Panel("\n".join(check.errors), title="[bold red]Invalid Graph[/bold red]", border_style="red"))
        return 2
    if check_only:
        console.print(f"[green]Graph '{submission.project_id}' is valid ({len(submission.nodes)} nodes).[/green]")
        return 0

    try:
        handle = await runner.start(submission.project_id)
    except GraphValidationError as exc:
        console.print(f"[red]{exc}[/red]")
        return 2

    final: StreamEvent | None = None
    try:
        async for event in handle.events():
            render_event(event, labels)
            final = event
    except asyncio.CancelledError:
        handle.cancel()
        raise

    if final is None or final.type == EventType.ERROR:
        return 1
    return 0


def main() -> None:
    """
    程序入口：解析命令行参数，决定运行模式。
    - 位置参数：图定义 JSON 文件；缺省时运行内置示例图（离线处理器）
    - --dry-run：生成类节点使用占位处理器
    - --check：只校验不执行
    - -v / --verbose：启用调试日志
    """
    verbose = "--verbose" in sys.argv or "-v" in sys.argv
    setup_logging(verbose)

    args = [a for a in sys.argv[1:] if not a.startswith("-")]
    if args:
        submission = load_submission(args[0])
        dry_run = "--dry-run" in sys.argv
    else:
        submission = demo_submission()
        dry_run = True

    try:
        code = asyncio.run(run_graph(submission, dry_run, check_only="--check" in sys.argv))
    except KeyboardInterrupt:
        console.print("\n[yellow]Run interrupted.[/yellow]")
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
