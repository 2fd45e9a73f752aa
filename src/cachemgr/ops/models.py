"""Operation data model.

``Operation`` is the in-memory record of one tracked maintenance job. It owns
the live cancellation handle and the worker process handle, neither of which
is ever persisted. ``OperationSnapshot`` is the durable projection written to
the state store, and ``ProgressRecord`` is the file a worker writes while it
runs.

Status moves forward only::

    preparing ──> running ──> completed | failed | cancelled
        └──────────────────> failed | cancelled

``preparing -> failed`` covers a failed precondition check. ``preparing ->
cancelled`` is deliberate too: a cancel request or force kill can land
before the worker is spawned, and the operation then ends ``cancelled``
with no process ever started rather than being reported as a failure.

``end_time`` is set exactly when the status becomes terminal, and
``percent_complete`` reaches 100 only on ``completed``.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from cachemgr.core.errors import InvalidTransitionError


class OperationStatus(str, Enum):
    """Status values for tracked operations.

    Inherits from ``str`` so statuses serialize as plain strings.
    """

    PREPARING = "preparing"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset({
    OperationStatus.COMPLETED,
    OperationStatus.FAILED,
    OperationStatus.CANCELLED,
})

_ALLOWED_TRANSITIONS: dict[OperationStatus, frozenset[OperationStatus]] = {
    OperationStatus.PREPARING: frozenset({
        OperationStatus.RUNNING,
        OperationStatus.FAILED,
        OperationStatus.CANCELLED,
    }),
    OperationStatus.RUNNING: _TERMINAL_STATUSES,
    OperationStatus.COMPLETED: frozenset(),
    OperationStatus.FAILED: frozenset(),
    OperationStatus.CANCELLED: frozenset(),
}

# Highest percentage a worker report can set; 100 is reserved for completion
_MAX_RUNNING_PERCENT = 99.9


class OperationKind(str, Enum):
    CACHE_CLEAR = "cache_clear"
    LOG_INGEST = "log_ingest"


def utcnow() -> datetime:
    return datetime.now(UTC)


class ProgressRecord(BaseModel):
    """Progress snapshot written by a worker process.

    The cache cleaner writes camelCase keys and the log ingester writes
    snake_case keys; both spellings are accepted and unknown keys ignored.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    is_processing: bool = Field(
        default=True, validation_alias=AliasChoices("isProcessing", "is_processing"),
    )
    percent_complete: float = Field(
        default=0.0,
        ge=0.0,
        validation_alias=AliasChoices("percentComplete", "percent_complete"),
    )
    status: str = ""
    message: str = ""
    directories_processed: int = Field(
        default=0, ge=0,
        validation_alias=AliasChoices("directoriesProcessed", "directories_processed"),
    )
    total_directories: int = Field(
        default=0, ge=0,
        validation_alias=AliasChoices("totalDirectories", "total_directories"),
    )
    bytes_deleted: int = Field(
        default=0, ge=0, validation_alias=AliasChoices("bytesDeleted", "bytes_deleted"),
    )
    files_deleted: int = Field(
        default=0, ge=0, validation_alias=AliasChoices("filesDeleted", "files_deleted"),
    )
    active_directories: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("activeDirectories", "active_directories"),
    )
    total_lines: int = Field(
        default=0, ge=0, validation_alias=AliasChoices("totalLines", "total_lines"),
    )
    lines_parsed: int = Field(
        default=0, ge=0, validation_alias=AliasChoices("linesParsed", "lines_parsed"),
    )
    entries_saved: int = Field(
        default=0, ge=0, validation_alias=AliasChoices("entriesSaved", "entries_saved"),
    )


class OperationSnapshot(BaseModel):
    """Durable projection of an Operation (no process or cancel handles)."""

    id: str
    kind: OperationKind
    status: OperationStatus
    status_message: str = ""
    error: str | None = None
    percent_complete: float = 0.0
    directories_processed: int = 0
    total_directories: int = 0
    bytes_deleted: int = 0
    files_deleted: int = 0
    start_time: datetime
    end_time: datetime | None = None


@dataclass
class Operation:
    """A tracked unit of background maintenance work.

    Fields are written from more than one task (the poll loop, the process
    exit path, force kill). Every writer holds ``lock`` while mutating, so
    readers never see a half-applied update.
    """

    kind: OperationKind
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: OperationStatus = OperationStatus.PREPARING
    start_time: datetime = field(default_factory=utcnow)
    end_time: datetime | None = None
    status_message: str = ""
    error: str | None = None
    directories_processed: int = 0
    total_directories: int = 0
    bytes_deleted: int = 0
    files_deleted: int = 0
    percent_complete: float = 0.0
    total_lines: int = 0
    lines_parsed: int = 0
    entries_saved: int = 0
    silent: bool = False
    cancel_event: asyncio.Event | None = field(
        default_factory=asyncio.Event, repr=False, compare=False,
    )
    process: asyncio.subprocess.Process | None = field(
        default=None, repr=False, compare=False,
    )
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    # ─── State machine ────────────────────────────────────────────────

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def transition(
        self,
        status: OperationStatus,
        message: str | None = None,
        *,
        error: str | None = None,
    ) -> None:
        """Move to ``status``, enforcing forward-only transitions.

        Raises:
            InvalidTransitionError: If the move is not allowed from the
                current status (including any move out of a terminal one).
        """
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Operation {self.id} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status
        if message is not None:
            self.status_message = message
        if error is not None:
            self.error = error
        if status.is_terminal:
            self.end_time = utcnow()
            if status == OperationStatus.COMPLETED:
                self.percent_complete = 100.0

    def apply_progress(self, record: ProgressRecord) -> bool:
        """Copy worker-reported counters onto this operation.

        Returns False (and changes nothing) once the operation is terminal.
        The percentage never decreases and stays below 100 until completion.
        """
        if self.is_terminal:
            return False
        self.directories_processed = record.directories_processed
        self.total_directories = record.total_directories
        self.bytes_deleted = record.bytes_deleted
        self.files_deleted = record.files_deleted
        self.total_lines = record.total_lines
        self.lines_parsed = record.lines_parsed
        self.entries_saved = record.entries_saved
        reported = min(record.percent_complete, _MAX_RUNNING_PERCENT)
        self.percent_complete = max(self.percent_complete, reported)
        if record.message:
            self.status_message = record.message
        return True

    def apply_final_counters(self, record: ProgressRecord) -> None:
        """Take trailing counters from the worker's last report, before completion."""
        self.directories_processed = record.directories_processed
        self.total_directories = record.total_directories
        self.bytes_deleted = record.bytes_deleted
        self.files_deleted = record.files_deleted
        self.total_lines = record.total_lines
        self.lines_parsed = record.lines_parsed
        self.entries_saved = record.entries_saved

    # ─── Projections ──────────────────────────────────────────────────

    @property
    def duration_seconds(self) -> float:
        end = self.end_time or utcnow()
        return max((end - self.start_time).total_seconds(), 0.0)

    def to_snapshot(self) -> OperationSnapshot:
        return OperationSnapshot(
            id=self.id,
            kind=self.kind,
            status=self.status,
            status_message=self.status_message,
            error=self.error,
            percent_complete=self.percent_complete,
            directories_processed=self.directories_processed,
            total_directories=self.total_directories,
            bytes_deleted=self.bytes_deleted,
            files_deleted=self.files_deleted,
            start_time=self.start_time,
            end_time=self.end_time,
        )

    @classmethod
    def from_snapshot(cls, snapshot: OperationSnapshot) -> Operation:
        """Rebuild a handle-less record from its persisted projection."""
        return cls(
            kind=snapshot.kind,
            id=snapshot.id,
            status=snapshot.status,
            start_time=snapshot.start_time,
            end_time=snapshot.end_time,
            status_message=snapshot.status_message,
            error=snapshot.error,
            directories_processed=snapshot.directories_processed,
            total_directories=snapshot.total_directories,
            bytes_deleted=snapshot.bytes_deleted,
            files_deleted=snapshot.files_deleted,
            percent_complete=snapshot.percent_complete,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize for status queries."""
        result: dict[str, Any] = {
            "operation_id": self.id,
            "kind": self.kind.value,
            "status": self.status.value,
            "status_message": self.status_message,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_seconds": round(self.duration_seconds, 3),
            "percent_complete": self.percent_complete,
            "directories_processed": self.directories_processed,
            "total_directories": self.total_directories,
            "bytes_deleted": self.bytes_deleted,
            "files_deleted": self.files_deleted,
        }
        if self.kind == OperationKind.LOG_INGEST:
            result["total_lines"] = self.total_lines
            result["lines_parsed"] = self.lines_parsed
            result["entries_saved"] = self.entries_saved
        if self.error:
            result["error"] = self.error
        return result
