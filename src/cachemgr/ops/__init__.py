"""Tracked operations: model, registry, orchestration, cancellation, recovery, retention."""

from cachemgr.ops.models import Operation, OperationKind, OperationSnapshot, OperationStatus

__all__ = ["Operation", "OperationKind", "OperationSnapshot", "OperationStatus"]
