"""Application wiring and lifecycle.

Builds every component from a ``ServiceConfig`` and starts them in the order
the invariants require: the store opens and recovery reconciles interrupted
operations *before* anything can start a new one; background loops come
last. Shutdown runs in reverse and finishes with a full snapshot write.

A one-shot application (the CLI `clear` command) shares the database of a
running server, so it skips recovery, retention and the final rewrite and
only ever writes snapshots of its own operations.
"""

from __future__ import annotations

from datetime import timedelta

from cachemgr.core.config import ServiceConfig
from cachemgr.core.logging import get_logger
from cachemgr.monitor.live import LiveFileMonitor
from cachemgr.monitor.pause import PauseGate
from cachemgr.monitor.probes import BusyProbe
from cachemgr.notify.bus import Notifier
from cachemgr.ops.cancellation import CancellationController
from cachemgr.ops.jobs import CacheClearJob, LogIngestJob
from cachemgr.ops.models import OperationKind
from cachemgr.ops.orchestrator import ProcessOrchestrator
from cachemgr.ops.recovery import RecoveryCoordinator, RecoveryReport
from cachemgr.ops.registry import OperationRegistry
from cachemgr.ops.retention import RetentionSweeper
from cachemgr.services.ingest import LogIngestService
from cachemgr.services.operations import OperationService
from cachemgr.state.base import StateStore
from cachemgr.state.sqlite import SQLiteStateStore

_logger = get_logger("app")


class Application:
    """Owns the component graph of one running service.

    Usage::

        async with Application(config) as app:
            op_id = await app.operations.start_cache_clear()
    """

    def __init__(
        self,
        config: ServiceConfig,
        *,
        store: StateStore | None = None,
        sibling_probes: list[BusyProbe] | None = None,
        one_shot: bool = False,
    ) -> None:
        self.config = config
        self.one_shot = one_shot
        paths = config.paths
        window = timedelta(hours=config.retention.window_hours)
        datasources = config.resolved_datasources()

        self.store: StateStore = store or SQLiteStateStore(config.resolved_state_db_path())
        self.notifier = Notifier()
        self.registry = OperationRegistry()
        self.pause_gate = PauseGate()

        self.orchestrator = ProcessOrchestrator(
            registry=self.registry,
            store=self.store,
            notifier=self.notifier,
            jobs={
                OperationKind.CACHE_CLEAR: CacheClearJob(paths.cache_cleaner_binary.expanduser()),
                OperationKind.LOG_INGEST: LogIngestJob(paths.log_ingest_binary.expanduser()),
            },
            operations_dir=paths.resolved_operations_dir(),
            config=config.orchestrator,
        )
        self.cancellation = CancellationController(self.orchestrator)
        self.recovery = RecoveryCoordinator(self.registry, self.store, window=window)
        self.retention = RetentionSweeper(
            self.registry,
            self.store,
            window=window,
            interval_seconds=config.retention.sweep_interval_seconds,
        )
        self.ingest = LogIngestService(
            self.orchestrator,
            self.store,
            log_dir=paths.log_dir,
            log_file_name=config.live_monitor.log_file_name,
            default_datasource=config.live_monitor.datasource,
            datasource_dirs={ds.name: ds.log_dir for ds in datasources if ds.log_dir},
        )
        self.monitor = LiveFileMonitor(
            self.ingest,
            self.store,
            self.pause_gate,
            datasources=datasources,
            config=config.live_monitor,
            sibling_probes=[self.ingest.activity, *(sibling_probes or [])],
        )
        self.operations = OperationService(
            config, self.orchestrator, self.cancellation, self.ingest, self.store,
        )
        self.recovery_report: RecoveryReport | None = None
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        await self.store.open()
        await self.notifier.start()
        if self.one_shot:
            self._started = True
            _logger.info("app.started", one_shot=True)
            return
        self.recovery_report = await self.recovery.recover()
        await self.retention.start()
        if self.config.live_monitor.enabled:
            await self.monitor.start()
        self._started = True
        _logger.info(
            "app.started",
            recovered=self.recovery_report.loaded,
            interrupted=self.recovery_report.interrupted_count,
            live_monitor=self.config.live_monitor.enabled,
        )

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        await self.monitor.stop()
        await self.retention.stop()
        await self.orchestrator.shutdown()
        if not self.one_shot:
            try:
                await self.store.replace_all(
                    op.to_snapshot() for op in self.registry.list_all()
                )
            except Exception:
                _logger.exception("app.final_snapshot_failed")
        await self.notifier.shutdown()
        await self.store.close()
        _logger.info("app.stopped")

    async def __aenter__(self) -> Application:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.stop()
