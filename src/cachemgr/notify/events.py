"""Notifier event payloads.

Two kinds are pushed to subscribers: a periodic ``operation.progress`` event
while a worker runs, and exactly one ``operation.complete`` event when an
operation reaches a terminal status.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from cachemgr.ops.models import Operation, OperationStatus, utcnow


class ProgressEvent(BaseModel):
    event: Literal["operation.progress"] = "operation.progress"
    operation_id: str
    kind: str
    status: str
    status_message: str = ""
    start_time: datetime
    end_time: datetime | None = None
    directories_processed: int = 0
    total_directories: int = 0
    bytes_deleted: int = 0
    files_deleted: int = 0
    percent_complete: float = 0.0
    error: str | None = None

    @classmethod
    def from_operation(cls, operation: Operation) -> ProgressEvent:
        return cls(
            operation_id=operation.id,
            kind=operation.kind.value,
            status=operation.status.value,
            status_message=operation.status_message,
            start_time=operation.start_time,
            end_time=operation.end_time,
            directories_processed=operation.directories_processed,
            total_directories=operation.total_directories,
            bytes_deleted=operation.bytes_deleted,
            files_deleted=operation.files_deleted,
            percent_complete=operation.percent_complete,
            error=operation.error,
        )


class CompletionEvent(BaseModel):
    event: Literal["operation.complete"] = "operation.complete"
    operation_id: str
    kind: str
    success: bool
    cancelled: bool = False
    message: str = ""
    error: str | None = None
    directories_processed: int = 0
    files_deleted: int = 0
    bytes_deleted: int = 0
    lines_parsed: int = 0
    duration_seconds: float = 0.0
    timestamp: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_operation(cls, operation: Operation) -> CompletionEvent:
        return cls(
            operation_id=operation.id,
            kind=operation.kind.value,
            success=operation.status == OperationStatus.COMPLETED,
            cancelled=operation.status == OperationStatus.CANCELLED,
            message=operation.status_message,
            error=operation.error,
            directories_processed=operation.directories_processed,
            files_deleted=operation.files_deleted,
            bytes_deleted=operation.bytes_deleted,
            lines_parsed=operation.lines_parsed,
            duration_seconds=round(operation.duration_seconds, 3),
        )


NotifierEvent = ProgressEvent | CompletionEvent
