"""
chainstate command line.

Inspect and maintain a state root: queue statistics, context backups,
recovery previews, session reports, and graph exports.

Usage:
    chainstate init --task "Map the checkout flow"
    chainstate backups session-1234 --state-dir ./.chainstate
    chainstate recover session-1234 --strategy progressive --max-tokens 20000
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated, Any, Awaitable, Callable

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from chainstate.app.config import STATE_DIR_ENV, ChainStateConfig
from chainstate.app.context import ChainStateContext
from chainstate.app.operations import CoreOperations
from chainstate.core.models import RecoveryStrategy, RecoveryStrategyType
from chainstate.core.results import OperationResult
from chainstate.utils.logging import setup_logging

app = typer.Typer(
    name="chainstate",
    help="Durable discovery-graph state with token-bounded recovery",
    add_completion=False,
)
console = Console()

StateDirOption = Annotated[
    Path | None,
    typer.Option("--state-dir", "-s", envvar=STATE_DIR_ENV, help="State root directory"),
]
ConfigOption = Annotated[
    Path | None,
    typer.Option("--config", "-c", help="Path to a chainstate JSON config file"),
]


def _load_config(state_dir: Path | None, config_path: Path | None) -> ChainStateConfig:
    config = ChainStateConfig.load(config_path)
    if state_dir is not None:
        config.state_dir = state_dir
    setup_logging(
        level=config.effective_log_level,
        log_dir=config.state_dir / "logs",
        console_output=config.enable_debug_logging,
        file_output=True,
    )
    return config


def _run(
    state_dir: Path | None,
    config_path: Path | None,
    action: Callable[[CoreOperations], Awaitable[OperationResult]],
) -> OperationResult:
    """Build a context, run one operation, and exit non-zero on failure."""
    config = _load_config(state_dir, config_path)

    async def runner() -> OperationResult:
        async with ChainStateContext.create(config) as context:
            return await action(CoreOperations(context))

    result = asyncio.run(runner())
    if not result.success:
        kind = result.kind.value if result.kind else "error"
        console.print(f"[red]Error ({kind}):[/red] {result.message}")
        raise typer.Exit(1)
    return result


def _key_values(title: str, values: dict[str, Any], style: str = "blue") -> Panel:
    body = "\n".join(f"[bold]{key}:[/bold] {value}" for key, value in values.items())
    return Panel(body, title=title, border_style=style)


# ============================================================================
# Commands
# ============================================================================


@app.command("init")
def init_state(
    task: Annotated[str | None, typer.Option("--task", "-t", help="Create a session for this task")] = None,
    workspace: Annotated[str, typer.Option("--workspace", "-w", help="Workspace root for the session")] = "",
    save_config: Annotated[bool, typer.Option("--save-config", help="Write the effective config into the state root")] = False,
    state_dir: StateDirOption = None,
    config: ConfigOption = None,
) -> None:
    """Create the state directories and optionally a discovery session."""

    async def action(ops: CoreOperations) -> OperationResult:
        if save_config:
            ops.context.config.save()
        if task:
            return await ops.create_session(task, workspace_root=workspace)
        return await ops.state_overview()

    result = _run(state_dir, config, action)
    if task:
        session = result.data
        console.print(_key_values("Session Created", {
            "Session": session.session_id,
            "Task": session.task_description,
            "Phase": session.current_phase.value,
        }, "green"))
    else:
        console.print(f"[green]State root ready:[/green] {result.data['state_dir']}")


@app.command("stats")
def show_stats(
    state_dir: StateDirOption = None,
    config: ConfigOption = None,
) -> None:
    """Show work queue and graph statistics."""
    result = _run(state_dir, config, lambda ops: ops.state_overview())
    overview = result.data
    queue = overview["work_queue"]

    console.print(_key_values("Graph", {
        "State root": overview["state_dir"],
        "Entities": overview["entities"],
        "Relationships": overview["relationships"],
        "Chains": overview["chains"],
    }))

    table = Table(title="Work Queue")
    table.add_column("Status")
    table.add_column("Count", justify="right")
    for key in ("total", "pending", "processing", "completed", "failed", "blocked"):
        table.add_row(key, str(queue[key]))
    console.print(table)

    if queue["by_priority"]:
        priorities = Table(title="By Priority")
        priorities.add_column("Priority", justify="right")
        priorities.add_column("Items", justify="right")
        for priority, count in queue["by_priority"].items():
            priorities.add_row(str(priority), str(count))
        console.print(priorities)


@app.command("backups")
def list_backups(
    session_id: Annotated[str, typer.Argument(help="Session id to analyze")],
    state_dir: StateDirOption = None,
    config: ConfigOption = None,
) -> None:
    """List and analyze a session's context backups."""
    result = _run(state_dir, config, lambda ops: ops.analyze_backups(session_id))
    analysis = result.data

    table = Table(title=f"Backups for {session_id}")
    table.add_column("Timestamp")
    table.add_column("Entities", justify="right")
    table.add_column("Relationships", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("File")
    for backup in analysis.available_backups:
        table.add_row(
            backup.timestamp.isoformat(timespec="seconds"),
            str(backup.total_entities),
            str(backup.total_relationships),
            str(backup.estimated_tokens),
            Path(backup.file_path).name,
        )
    console.print(table)
    console.print(_key_values("Totals", {
        "Files": analysis.total_files,
        "Entities": analysis.total_entities,
        "Relationships": analysis.total_relationships,
        "Estimated tokens": analysis.estimated_total_tokens,
    }))
    for rec in analysis.recommendations:
        console.print(f"  • {rec}")


@app.command("recover")
def recover_context(
    session_id: Annotated[str, typer.Argument(help="Session id to recover")],
    strategy: Annotated[
        RecoveryStrategyType, typer.Option("--strategy", help="Recovery strategy")
    ] = RecoveryStrategyType.SELECTIVE,
    max_tokens: Annotated[int, typer.Option("--max-tokens", help="Token budget for the result")] = 50_000,
    continue_from: Annotated[int, typer.Option("--continue-from", help="Resume offset")] = 0,
    entity_type: Annotated[
        list[str] | None, typer.Option("--type", help="Restrict to entity types (repeatable)")
    ] = None,
    state_dir: StateDirOption = None,
    config: ConfigOption = None,
) -> None:
    """Preview a token-bounded recovery from a session's backups."""
    request = RecoveryStrategy(
        type=strategy,
        max_tokens=max_tokens,
        continue_from=continue_from,
        filter={"types": entity_type} if entity_type else None,
    )
    result = _run(state_dir, config, lambda ops: ops.recover_context(session_id, request))
    recovered = result.data

    console.print(_key_values("Recovery", {
        "Strategy": strategy.value,
        "Entities": len(recovered.entities),
        "Relationships": len(recovered.relationships),
        "Tokens": f"{recovered.token_cost} / {max_tokens}",
        "Has more": recovered.has_more,
        "Next offset": recovered.next_offset,
        "Unrecoverable": recovered.unrecoverable,
    }, "yellow" if recovered.unrecoverable else "green"))
    console.print(recovered.summary)
    for line in result.details.get("recommendations", []) + result.details.get("next_steps", []):
        console.print(f"  • {line}")


@app.command("report")
def session_report(
    session_id: Annotated[str, typer.Argument(help="Session id to report on")],
    state_dir: StateDirOption = None,
    config: ConfigOption = None,
) -> None:
    """Generate and save a session analysis report."""
    result = _run(state_dir, config, lambda ops: ops.generate_report(session_id))
    report = result.data

    console.print(_key_values("Report", report["summary"]))
    completeness = report.get("completeness", {})
    if completeness:
        console.print(_key_values("Completeness", completeness))
    for rec in report.get("recommendations", []):
        console.print(f"  • {rec}")


@app.command("export")
def export_graph(
    session_id: Annotated[str, typer.Argument(help="Session id to export")],
    fmt: Annotated[str, typer.Option("--format", "-f", help="yaml, dot, or json")] = "yaml",
    state_dir: StateDirOption = None,
    config: ConfigOption = None,
) -> None:
    """Export the discovery graph."""
    result = _run(state_dir, config, lambda ops: ops.export_graph(session_id, fmt))
    console.print(f"[green]Exported[/green] {result.data['format']} to {result.data['path']}")


def main() -> None:
    """Main entry point."""
    load_dotenv()
    app()


if __name__ == "__main__":
    main()
