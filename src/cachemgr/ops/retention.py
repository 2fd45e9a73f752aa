"""Periodic eviction of finished operations.

Terminal operations stay queryable for the retention window (24 h by
default), then are dropped from both the registry and the state store.
Operations that are still preparing or running are never evicted, however
old they are.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

from cachemgr.core.logging import get_logger
from cachemgr.core.task_utils import cancel_and_wait, log_task_exception
from cachemgr.ops.models import utcnow
from cachemgr.ops.registry import OperationRegistry
from cachemgr.state.base import StateStore

_logger = get_logger("ops.retention")


class RetentionSweeper:
    """Background loop evicting terminal operations past their retention."""

    def __init__(
        self,
        registry: OperationRegistry,
        store: StateStore,
        *,
        window: timedelta = timedelta(hours=24),
        interval_seconds: float = 300.0,
    ) -> None:
        self._registry = registry
        self._store = store
        self._window = window
        self._interval = interval_seconds
        self._task: asyncio.Task[None] | None = None
        self._running = False

    async def start(self) -> None:
        if self._task is not None:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="retention-sweeper")
        self._task.add_done_callback(self._on_loop_done)
        _logger.info(
            "retention.started",
            interval=self._interval,
            window_hours=self._window.total_seconds() / 3600,
        )

    async def stop(self) -> None:
        self._running = False
        await cancel_and_wait(self._task)
        self._task = None
        _logger.info("retention.stopped")

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep_once(self, now: datetime | None = None) -> list[str]:
        """Evict expired terminal operations and return their ids."""
        cutoff = (now or utcnow()) - self._window
        evicted: list[str] = []
        for operation in self._registry.list_all():
            if not operation.is_terminal or operation.end_time is None:
                continue
            if operation.end_time >= cutoff:
                continue
            self._registry.remove(operation.id)
            operation.cancel_event = None
            try:
                await self._store.remove(operation.id)
            except Exception:
                _logger.warning(
                    "retention.store_remove_failed",
                    operation_id=operation.id,
                    exc_info=True,
                )
            evicted.append(operation.id)

        if evicted:
            _logger.info("retention.evicted", count=len(evicted))
        return evicted

    def _on_loop_done(self, task: asyncio.Task[None]) -> None:
        log_task_exception(task, _logger, "retention.loop_died_unexpectedly")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.sweep_once()
            except asyncio.CancelledError:
                break
            except Exception:
                _logger.exception("retention.sweep_failed")
            await asyncio.sleep(self._interval)
