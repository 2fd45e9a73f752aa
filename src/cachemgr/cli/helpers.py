"""Shared state and helpers for CLI commands."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import typer

from cachemgr.core.config import ServiceConfig


@dataclass
class CliState:
    config: ServiceConfig
    config_path: Path | None = None


def get_state(ctx: typer.Context) -> CliState:
    """State stored by the app callback, or defaults when run without it."""
    if isinstance(ctx.obj, CliState):
        return ctx.obj
    return CliState(config=ServiceConfig())
