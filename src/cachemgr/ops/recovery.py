"""Startup reconciliation of persisted operations.

A restart orphans whatever was running: the worker died with the service (or
is no longer ours to watch), yet its last snapshot still says ``running``.
Recovery rewrites every such snapshot to ``failed`` before the orchestrator
accepts new work, so a status query never reports a job nobody is running.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta

from cachemgr.core.logging import get_logger
from cachemgr.ops.models import Operation, OperationSnapshot, OperationStatus, utcnow
from cachemgr.ops.registry import OperationRegistry
from cachemgr.state.base import StateStore

_logger = get_logger("ops.recovery")

INTERRUPTED_MESSAGE = "Operation interrupted by service restart"


@dataclass
class RecoveryReport:
    loaded: int = 0
    interrupted: list[str] = field(default_factory=list)
    store_failed: bool = False

    @property
    def interrupted_count(self) -> int:
        return len(self.interrupted)


class RecoveryCoordinator:
    def __init__(
        self,
        registry: OperationRegistry,
        store: StateStore,
        *,
        window: timedelta = timedelta(hours=24),
    ) -> None:
        self._registry = registry
        self._store = store
        self._window = window

    async def recover(self) -> RecoveryReport:
        """Load recent snapshots, fail the interrupted ones, fill the registry.

        Running it twice is harmless: the second pass finds nothing
        non-terminal to correct.
        """
        report = RecoveryReport()
        try:
            snapshots = await self._store.load_recent(self._window)
        except Exception:
            _logger.exception("recovery.load_failed")
            report.store_failed = True
            return report

        for snapshot in snapshots:
            if not snapshot.status.is_terminal:
                snapshot = self._mark_interrupted(snapshot)
                try:
                    await self._store.upsert(snapshot)
                except Exception:
                    _logger.warning(
                        "recovery.upsert_failed",
                        operation_id=snapshot.id,
                        exc_info=True,
                    )
                report.interrupted.append(snapshot.id)
            self._registry.add(Operation.from_snapshot(snapshot))
            report.loaded += 1

        _logger.info(
            "recovery.complete",
            loaded=report.loaded,
            interrupted=report.interrupted_count,
            window_hours=self._window.total_seconds() / 3600,
        )
        return report

    @staticmethod
    def _mark_interrupted(snapshot: OperationSnapshot) -> OperationSnapshot:
        _logger.warning(
            "recovery.interrupted_operation",
            operation_id=snapshot.id,
            kind=snapshot.kind.value,
            previous_status=snapshot.status.value,
        )
        return snapshot.model_copy(update={
            "status": OperationStatus.FAILED,
            "status_message": INTERRUPTED_MESSAGE,
            "error": INTERRUPTED_MESSAGE,
            "end_time": utcnow(),
        })
