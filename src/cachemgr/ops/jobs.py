"""Job kinds the orchestrator knows how to run.

A job kind owns everything that differs between workers: which binary runs,
which pre-flight checks must pass, how the argument list is built, and how a
successful run is summarised. The orchestrator itself is kind-agnostic.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from cachemgr.core.config import DELETE_MODES
from cachemgr.core.errors import PreconditionError
from cachemgr.ops.models import Operation, OperationKind


def is_cache_subdir(name: str) -> bool:
    """Cache sub-directories are named with two hex digits (00-ff)."""
    return len(name) == 2 and all(c in "0123456789abcdefABCDEF" for c in name)


@dataclass(frozen=True)
class CacheClearParams:
    cache_path: Path
    delete_mode: str = "preserve"


@dataclass(frozen=True)
class LogIngestParams:
    log_path: Path
    start_position: int = 0
    datasource: str = "default"
    log_file_name: str = "access.log"


class JobKind(Protocol):
    """Strategy describing one kind of worker-backed operation."""

    kind: OperationKind
    binary_path: Path

    def validate(self, params: Any) -> None:
        """Raise PreconditionError if the job cannot start."""
        ...

    def build_args(self, params: Any, progress_file: Path) -> list[str]: ...

    def completion_message(self, operation: Operation) -> str: ...


def _require_binary(binary_path: Path, label: str) -> None:
    if not binary_path.is_file():
        raise PreconditionError(f"{label} binary not found at {binary_path}")
    if not os.access(binary_path, os.X_OK):
        raise PreconditionError(f"{label} binary at {binary_path} is not executable")


class CacheClearJob:
    """Bulk cache eviction via the cache cleaner worker."""

    kind = OperationKind.CACHE_CLEAR

    def __init__(self, binary_path: Path) -> None:
        self.binary_path = binary_path

    def validate(self, params: CacheClearParams) -> None:
        path = params.cache_path
        if params.delete_mode not in DELETE_MODES:
            raise PreconditionError(
                f"Unknown delete mode '{params.delete_mode}' "
                f"(expected one of: {', '.join(DELETE_MODES)})"
            )
        if not path.is_dir():
            raise PreconditionError(f"Cache path does not exist: {path}")
        if not os.access(path, os.W_OK):
            raise PreconditionError(
                f"Cannot write to cache directory: {path}. "
                "The directory is mounted read-only or owned by another user."
            )
        if not any(entry.is_dir() and is_cache_subdir(entry.name) for entry in path.iterdir()):
            raise PreconditionError(f"No cache directories (00-ff) found in {path}")
        _require_binary(self.binary_path, "Cache cleaner")

    def build_args(self, params: CacheClearParams, progress_file: Path) -> list[str]:
        return [str(params.cache_path), str(progress_file), params.delete_mode]

    def completion_message(self, operation: Operation) -> str:
        return f"Successfully cleared {operation.directories_processed} cache directories"


class LogIngestJob:
    """Incremental access-log ingestion via the log processor worker."""

    kind = OperationKind.LOG_INGEST

    def __init__(self, binary_path: Path) -> None:
        self.binary_path = binary_path

    def validate(self, params: LogIngestParams) -> None:
        if not params.log_path.is_dir():
            raise PreconditionError(f"Log directory does not exist: {params.log_path}")
        log_file = params.log_path / params.log_file_name
        if not log_file.is_file():
            raise PreconditionError(f"Log file not found: {log_file}")
        if params.start_position < 0:
            raise PreconditionError(
                f"Start position must not be negative (got {params.start_position})"
            )
        _require_binary(self.binary_path, "Log processor")

    def build_args(self, params: LogIngestParams, progress_file: Path) -> list[str]:
        return [str(params.log_path), str(progress_file), str(params.start_position)]

    def completion_message(self, operation: Operation) -> str:
        return f"Processed {operation.lines_parsed} log lines ({operation.entries_saved} entries saved)"
