"""Cooperative and forced cancellation of running operations."""

from __future__ import annotations

from cachemgr.core.logging import get_logger
from cachemgr.ops.models import OperationStatus
from cachemgr.ops.orchestrator import ProcessOrchestrator
from cachemgr.ops.process import kill_process_tree

_logger = get_logger("ops.cancellation")

FORCE_KILLED_BY_USER = "Force killed by user"


class CancellationController:
    """Entry point for cancel requests coming from users or the API.

    ``request_cancel`` only raises the operation's cancellation signal; the
    owning poll loop notices it on its next tick and performs the kill and
    the status change. ``force_kill`` is the escalation path for a worker
    that does not react: it kills the process tree and settles the status
    itself, without waiting for the poll loop.
    """

    def __init__(self, orchestrator: ProcessOrchestrator) -> None:
        self._orchestrator = orchestrator
        self._registry = orchestrator.registry

    def request_cancel(self, operation_id: str) -> bool:
        """Signal cancellation. Returns False only for an unknown id."""
        operation = self._registry.get(operation_id)
        if operation is None:
            _logger.debug("cancellation.unknown_operation", operation_id=operation_id)
            return False
        if operation.is_terminal:
            return True
        if operation.cancel_event is not None and not operation.cancel_event.is_set():
            operation.cancel_event.set()
            _logger.info(
                "cancellation.requested",
                operation_id=operation_id,
                kind=operation.kind.value,
            )
        return True

    async def force_kill(self, operation_id: str) -> bool:
        """Kill the worker tree now and mark the operation cancelled.

        Returns False only for an unknown id; an operation that is already
        terminal is left untouched.
        """
        operation = self._registry.get(operation_id)
        if operation is None:
            _logger.debug("cancellation.unknown_operation", operation_id=operation_id)
            return False
        if operation.is_terminal:
            return True

        if operation.cancel_event is not None:
            operation.cancel_event.set()
        process = operation.process
        killed = kill_process_tree(process) if process is not None else False

        settled = await self._orchestrator.mark_terminal(
            operation, OperationStatus.CANCELLED, FORCE_KILLED_BY_USER,
        )
        _logger.warning(
            "cancellation.force_killed",
            operation_id=operation_id,
            pid=process.pid if process is not None else None,
            signal_delivered=killed,
            settled=settled,
        )
        return True
