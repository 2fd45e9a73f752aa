"""Access-log ingestion service.

Owns the one-pass-at-a-time rule for the log processor worker and the
durable per-datasource position that makes ingestion incremental. Both the
API (manual passes) and the live monitor (silent passes) go through here.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from pathlib import Path

from cachemgr.core.logging import get_logger
from cachemgr.core.task_utils import log_task_exception
from cachemgr.monitor.probes import ActivityFlag
from cachemgr.ops.jobs import LogIngestParams
from cachemgr.ops.models import OperationKind, OperationStatus
from cachemgr.ops.orchestrator import ProcessOrchestrator
from cachemgr.state.base import StateStore

_logger = get_logger("services.ingest")


class LogIngestService:
    """Starts log processor passes and records how far they got.

    Each datasource reads its own log directory from ``datasource_dirs``;
    unknown names fall back to ``log_dir``.

    ``activity`` is raised for manual passes only. The live monitor reads it
    as a sibling probe, and must not mistake its own silent passes for
    someone else's work.
    """

    def __init__(
        self,
        orchestrator: ProcessOrchestrator,
        store: StateStore,
        *,
        log_dir: Path,
        log_file_name: str = "access.log",
        default_datasource: str = "default",
        datasource_dirs: Mapping[str, Path] | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._store = store
        self._log_dir = log_dir
        self._log_file_name = log_file_name
        self._default_datasource = default_datasource
        self._datasource_dirs = dict(datasource_dirs or {})
        self._start_lock = asyncio.Lock()
        self._active_id: str | None = None
        self._settle_task: asyncio.Task[bool] | None = None
        self.activity = ActivityFlag("log_ingest")

    @property
    def is_processing(self) -> bool:
        return self._active_id is not None

    @property
    def active_operation_id(self) -> str | None:
        return self._active_id

    @property
    def log_file(self) -> Path:
        return self._log_dir.expanduser() / self._log_file_name

    def log_dir_for(self, datasource: str | None = None) -> Path:
        name = datasource or self._default_datasource
        return self._datasource_dirs.get(name, self._log_dir).expanduser()

    async def submit(
        self,
        start_position: int,
        *,
        silent: bool = False,
        datasource: str | None = None,
    ) -> str | None:
        """Launch a pass and return its operation id without waiting.

        Returns None when a pass is already running.
        """
        started = await self._begin(start_position, silent=silent, datasource=datasource)
        return started[0] if started else None

    async def start_processing(
        self,
        start_position: int,
        *,
        silent: bool = False,
        datasource: str | None = None,
    ) -> bool:
        """Run a pass to completion.

        Returns:
            True if the pass completed and the new position was stored,
            False if it was refused (already running) or did not complete.
        """
        started = await self._begin(start_position, silent=silent, datasource=datasource)
        if started is None:
            return False
        return await asyncio.shield(started[1])

    async def get_position(self, datasource: str | None = None) -> int:
        return await self._store.get_log_position(datasource or self._default_datasource)

    async def reset_position(self, datasource: str | None = None) -> None:
        """Forget the stored position so the next pass starts from line 0."""
        await self._store.reset_log_positions(datasource)
        _logger.info("ingest.position_reset", datasource=datasource or "all")

    # ─── Internal ─────────────────────────────────────────────────────

    async def _begin(
        self,
        start_position: int,
        *,
        silent: bool,
        datasource: str | None,
    ) -> tuple[str, asyncio.Task[bool]] | None:
        async with self._start_lock:
            if self._active_id is not None:
                _logger.info(
                    "ingest.already_running",
                    active_operation_id=self._active_id,
                    silent=silent,
                )
                return None
            name = datasource or self._default_datasource
            params = LogIngestParams(
                log_path=self.log_dir_for(name),
                start_position=start_position,
                datasource=name,
                log_file_name=self._log_file_name,
            )
            if not silent:
                self.activity.set_busy(f"pass from line {start_position}")
            try:
                operation_id = await self._orchestrator.start(
                    OperationKind.LOG_INGEST, params, silent=silent,
                )
            except Exception:
                self.activity.clear()
                raise
            self._active_id = operation_id
            task = asyncio.create_task(
                self._settle(operation_id, params),
                name=f"ingest-settle-{operation_id}",
            )
            task.add_done_callback(
                lambda t: log_task_exception(t, _logger, "ingest.settle_failed"),
            )
            self._settle_task = task
        return operation_id, task

    async def _settle(self, operation_id: str, params: LogIngestParams) -> bool:
        try:
            await self._orchestrator.wait(operation_id)
            operation = self._orchestrator.registry.get(operation_id)
            if operation is None or operation.status != OperationStatus.COMPLETED:
                _logger.warning(
                    "ingest.pass_not_completed",
                    operation_id=operation_id,
                    status=operation.status.value if operation else None,
                )
                return False

            # lines_parsed counts the skipped prefix too, so it is the next start line
            position: int | None = operation.lines_parsed or None
            if position is not None:
                await self._store.set_log_position(params.datasource, position)
            else:
                _logger.warning(
                    "ingest.position_unreported",
                    operation_id=operation_id,
                    datasource=params.datasource,
                )
            await self._store.mark_logs_processed()
            _logger.info(
                "ingest.pass_completed",
                operation_id=operation_id,
                datasource=params.datasource,
                position=position,
                lines_parsed=operation.lines_parsed,
                entries_saved=operation.entries_saved,
            )
            return True
        finally:
            self._active_id = None
            self.activity.clear()
