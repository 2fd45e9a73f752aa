"""Rich output formatting for the cachemgr CLI."""

from __future__ import annotations

from collections.abc import Sequence

from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from cachemgr.ops.models import OperationSnapshot, OperationStatus

console = Console()

STATUS_COLORS: dict[OperationStatus, str] = {
    OperationStatus.PREPARING: "yellow",
    OperationStatus.RUNNING: "blue",
    OperationStatus.COMPLETED: "green",
    OperationStatus.FAILED: "red",
    OperationStatus.CANCELLED: "magenta",
}


def format_status(status: OperationStatus) -> str:
    color = STATUS_COLORS.get(status, "white")
    return f"[{color}]{status.value}[/{color}]"


def format_bytes(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if value < 1024 or unit == "TB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} TB"


def format_duration(seconds: float | None) -> str:
    if seconds is None:
        return "-"
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"


def history_table(snapshots: Sequence[OperationSnapshot]) -> Table:
    table = Table(title="Operation history", show_lines=False)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Kind")
    table.add_column("Status")
    table.add_column("Started", no_wrap=True)
    table.add_column("Duration", justify="right")
    table.add_column("Dirs", justify="right")
    table.add_column("Freed", justify="right")
    table.add_column("Message", overflow="fold")

    for snap in snapshots:
        duration = (
            (snap.end_time - snap.start_time).total_seconds() if snap.end_time else None
        )
        table.add_row(
            snap.id[:12],
            snap.kind.value,
            format_status(snap.status),
            snap.start_time.strftime("%Y-%m-%d %H:%M:%S"),
            format_duration(duration),
            f"{snap.directories_processed}/{snap.total_directories}",
            format_bytes(snap.bytes_deleted),
            snap.error or snap.status_message,
        )
    return table


def operation_progress() -> Progress:
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("[progress.percentage]{task.percentage:>5.1f}%"),
        TimeElapsedColumn(),
        console=console,
    )
