"""In-memory registry of tracked operations.

The map itself is guarded so inserts, lookups and removals are safe from the
event loop and from any thread serving status queries. Fields *inside* an
Operation are not guarded here; writers hold ``Operation.lock``.
"""

from __future__ import annotations

import threading

from cachemgr.core.logging import get_logger
from cachemgr.ops.models import Operation, OperationKind

_logger = get_logger("ops.registry")


class OperationRegistry:
    """Concurrency-safe store of Operation records keyed by id."""

    def __init__(self) -> None:
        self._operations: dict[str, Operation] = {}
        self._lock = threading.Lock()

    def create(self, kind: OperationKind, *, silent: bool = False) -> Operation:
        """Create, register and return a new ``preparing`` operation."""
        operation = Operation(kind=kind, silent=silent)
        self.add(operation)
        _logger.debug("registry.created", operation_id=operation.id, kind=kind.value)
        return operation

    def add(self, operation: Operation) -> None:
        """Register an existing record (used when restoring snapshots)."""
        with self._lock:
            self._operations[operation.id] = operation

    def get(self, operation_id: str) -> Operation | None:
        with self._lock:
            return self._operations.get(operation_id)

    def list_all(self) -> list[Operation]:
        """All tracked operations, most recently started first.

        Returns a copy so callers can iterate while others mutate the map.
        """
        with self._lock:
            operations = list(self._operations.values())
        return sorted(operations, key=lambda op: op.start_time, reverse=True)

    def active(self) -> list[Operation]:
        return [op for op in self.list_all() if not op.is_terminal]

    def remove(self, operation_id: str) -> Operation | None:
        with self._lock:
            return self._operations.pop(operation_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._operations)

    def __contains__(self, operation_id: object) -> bool:
        with self._lock:
            return operation_id in self._operations
