"""cachemgr command-line interface.

Global options (``--config``, ``--log-level``, ``--version``) are handled in
the app callback, which loads the configuration and sets up logging once
before any command runs.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from cachemgr import __version__
from cachemgr.cli.commands import clear, history, serve
from cachemgr.cli.helpers import CliState
from cachemgr.cli.output import console
from cachemgr.core.config import ServiceConfig
from cachemgr.core.logging import configure_logging

app = typer.Typer(
    name="cachemgr",
    help="Maintenance operations for a caching proxy",
    add_completion=False,
)


def version_callback(value: bool) -> None:
    if value:
        console.print(f"cachemgr v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    config: Annotated[
        Path | None,
        typer.Option(
            "--config",
            "-c",
            help="Service configuration file (YAML)",
            envvar="CACHEMGR_CONFIG",
        ),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option(
            "--log-level",
            "-L",
            help="Logging level (DEBUG, INFO, WARNING, ERROR)",
            envvar="CACHEMGR_LOG_LEVEL",
        ),
    ] = None,
) -> None:
    """cachemgr - cache clearing and access-log ingestion service."""
    if config is not None:
        if not config.is_file():
            console.print(f"[red]Config file not found:[/red] {config}")
            raise typer.Exit(2)
        service_config = ServiceConfig.from_yaml(config)
    else:
        service_config = ServiceConfig()

    level = (log_level or service_config.logging.level).upper()
    if level not in ("DEBUG", "INFO", "WARNING", "ERROR"):
        console.print(f"[red]Invalid log level:[/red] {log_level}")
        raise typer.Exit(2)
    configure_logging(
        level=level,  # type: ignore[arg-type]
        format=service_config.logging.format,
        file_path=service_config.logging.file,
    )
    ctx.obj = CliState(config=service_config, config_path=config)


app.command()(serve)
app.command()(clear)
app.command()(history)


__all__ = ["app", "main"]
