"""CLI commands: serve, clear, history."""

from __future__ import annotations

import asyncio
import json
import signal
from pathlib import Path
from typing import Annotated, Any

import typer

from cachemgr.app import Application
from cachemgr.cli.helpers import get_state
from cachemgr.cli.output import console, format_bytes, history_table, operation_progress
from cachemgr.core.config import DELETE_MODES, ServiceConfig
from cachemgr.core.logging import get_logger
from cachemgr.notify.events import NotifierEvent, ProgressEvent
from cachemgr.ops.models import OperationSnapshot, OperationStatus
from cachemgr.state.sqlite import SQLiteStateStore

_logger = get_logger("cli")


# ─── serve ────────────────────────────────────────────────────────────


def serve(ctx: typer.Context) -> None:
    """Run the service until SIGINT or SIGTERM."""
    config = get_state(ctx).config
    asyncio.run(_serve(config))


async def _serve(config: ServiceConfig) -> None:
    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop_requested.set)

    async with Application(config) as app:
        report = app.recovery_report
        console.print(
            f"[green]cachemgr running[/green] "
            f"(cache: {config.paths.cache_dir}, logs: {config.paths.log_dir})"
        )
        if report is not None and report.interrupted_count:
            console.print(
                f"[yellow]{report.interrupted_count} operation(s) were interrupted "
                "by the previous shutdown and marked failed[/yellow]"
            )
        await stop_requested.wait()
        _logger.info("cli.stop_requested")


# ─── clear ────────────────────────────────────────────────────────────


def clear(
    ctx: typer.Context,
    mode: Annotated[
        str | None,
        typer.Option(
            "--mode",
            "-m",
            help="Delete mode: preserve, full, or rsync (default: stored setting)",
        ),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", "-j", help="Print the final status as JSON"),
    ] = False,
) -> None:
    """Clear the whole cache once and wait for the result."""
    if mode is not None and mode not in DELETE_MODES:
        console.print(
            f"[red]Invalid delete mode '{mode}'.[/red] "
            f"Must be one of: {', '.join(DELETE_MODES)}"
        )
        raise typer.Exit(2)

    base = get_state(ctx).config
    config = base.model_copy(update={
        "live_monitor": base.live_monitor.model_copy(update={"enabled": False}),
    })
    result = asyncio.run(_run_clear(config, mode, show_progress=not json_output))

    if json_output:
        console.print_json(json.dumps(result))
    else:
        _print_clear_result(result)
    if result["status"] != OperationStatus.COMPLETED.value:
        raise typer.Exit(1)


async def _run_clear(
    config: ServiceConfig,
    mode: str | None,
    *,
    show_progress: bool,
) -> dict[str, Any]:
    async with Application(config, one_shot=True) as app:
        with operation_progress() as progress:
            task_id = progress.add_task("Clearing cache", total=100, visible=show_progress)

            def on_progress(event: NotifierEvent) -> None:
                if isinstance(event, ProgressEvent):
                    progress.update(
                        task_id,
                        completed=event.percent_complete,
                        description=event.status_message or "Clearing cache",
                    )

            app.notifier.subscribe(
                on_progress, event_filter=lambda e: e.event == "operation.progress",
            )
            operation_id = await app.operations.start_cache_clear(mode)
            await app.orchestrator.wait(operation_id)
            await app.notifier.join()

            operation = app.registry.get(operation_id)
            if operation is None:
                raise RuntimeError(f"Operation {operation_id} vanished from the registry")
            progress.update(task_id, completed=operation.percent_complete)
            return operation.to_dict()


def _print_clear_result(result: dict[str, Any]) -> None:
    status = result["status"]
    if status == OperationStatus.COMPLETED.value:
        console.print(f"[green]{result['status_message']}[/green]")
        console.print(
            f"  Files deleted: {result['files_deleted']}  "
            f"Freed: {format_bytes(result['bytes_deleted'])}  "
            f"Duration: {result['duration_seconds']:.1f}s"
        )
    elif status == OperationStatus.CANCELLED.value:
        console.print(f"[magenta]Cancelled:[/magenta] {result['status_message']}")
    else:
        console.print(f"[red]Failed:[/red] {result.get('error') or result['status_message']}")


# ─── history ──────────────────────────────────────────────────────────


def history(
    ctx: typer.Context,
    limit: Annotated[
        int,
        typer.Option("--limit", "-n", min=1, help="Maximum number of operations"),
    ] = 20,
    json_output: Annotated[
        bool,
        typer.Option("--json", "-j", help="Output as JSON"),
    ] = False,
) -> None:
    """Show persisted operations, newest first."""
    db_path = get_state(ctx).config.resolved_state_db_path()
    if not db_path.exists():
        console.print("[dim]No operations recorded yet.[/dim]")
        return

    snapshots = asyncio.run(_load_history(db_path, limit))
    if json_output:
        console.print_json(json.dumps([s.model_dump(mode="json") for s in snapshots]))
        return
    if not snapshots:
        console.print("[dim]No operations recorded yet.[/dim]")
        return
    console.print(history_table(snapshots))


async def _load_history(db_path: Path, limit: int) -> list[OperationSnapshot]:
    async with SQLiteStateStore(db_path) as store:
        return await store.list_snapshots(limit)
