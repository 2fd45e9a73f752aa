"""Live access-log monitor.

Watches each datasource's continuously growing access log and starts a
silent, incremental ingestion pass once enough new data has accumulated.
Each tick walks every enabled datasource through a fixed set of gates; any
gate that fails skips that datasource *without* moving its growth baseline,
so the next eligible tick still sees all the growth since the last
successful pass::

    paused? ─ backing off? ─ missing? ─ grown enough? ─ rate limit ─ siblings idle? ─ trigger

A datasource's baseline (``last_size``) only advances after a pass reports
success. Permission errors put just that datasource into an exponential
backoff; the others keep being watched.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from cachemgr.core.config import DatasourceConfig, LiveMonitorConfig
from cachemgr.core.errors import LineCountError
from cachemgr.core.logging import get_logger
from cachemgr.core.task_utils import cancel_and_wait, log_task_exception
from cachemgr.monitor.lines import count_lines
from cachemgr.monitor.pause import PauseGate
from cachemgr.monitor.probes import BusyProbe, first_busy
from cachemgr.services.ingest import LogIngestService
from cachemgr.state.base import StateStore

_logger = get_logger("monitor.live")

MAX_BACKOFF_SECONDS = 60.0
DENIED_WARNING_INTERVAL_SECONDS = 60.0


class TickOutcome(str, Enum):
    PAUSED = "paused"
    BACKING_OFF = "backing_off"
    ACCESS_DENIED = "access_denied"
    MISSING = "missing"
    BELOW_THRESHOLD = "below_threshold"
    RATE_LIMITED = "rate_limited"
    SIBLING_BUSY = "sibling_busy"
    BUSY = "busy"
    TRIGGERED = "triggered"
    FAILED = "failed"
    ERROR = "error"


class MonitorState(str, Enum):
    IDLE = "idle"
    TRIGGERING = "triggering"


@dataclass
class WatchedLog:
    """Tracking state for one datasource's access log."""

    datasource: str
    path: Path
    last_size: int | None = None
    missing: bool = False
    denied_count: int = 0
    denied_at: float | None = None
    denied_warned_at: float | None = None

    @property
    def backoff_seconds(self) -> float:
        """Skip window after the latest permission error: 1, 2, 4 ... 60 s."""
        if self.denied_count == 0:
            return 0.0
        return min(2.0 ** (self.denied_count - 1), MAX_BACKOFF_SECONDS)


class LiveFileMonitor:
    """Tick-driven trigger for incremental log ingestion.

    Args:
        ingest: Service that runs the pass and stores the new position.
        store: Source of the durable positions and the processed-logs flag.
        pause_gate: Shared gate raised by services that mutate the logs.
        datasources: Resolved datasources; disabled ones are ignored.
        config: Thresholds, cadence, and log file name.
        sibling_probes: Busy flags of services that must not overlap a pass.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        ingest: LogIngestService,
        store: StateStore,
        pause_gate: PauseGate,
        *,
        datasources: Sequence[DatasourceConfig],
        config: LiveMonitorConfig | None = None,
        sibling_probes: Sequence[BusyProbe] = (),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ingest = ingest
        self._store = store
        self._pause_gate = pause_gate
        self._config = config or LiveMonitorConfig()
        self._probes = list(sibling_probes)
        self._clock = clock

        self.logs: dict[str, WatchedLog] = {}
        for ds in datasources:
            if not ds.enabled:
                continue
            if ds.log_dir is None:
                raise ValueError(f"Datasource '{ds.name}' has no log directory")
            self.logs[ds.name] = WatchedLog(
                datasource=ds.name,
                path=ds.log_dir.expanduser() / self._config.log_file_name,
            )

        self.state = MonitorState.IDLE
        self._last_trigger: float | None = None
        self._task: asyncio.Task[None] | None = None
        self._running = False

    def add_probe(self, probe: BusyProbe) -> None:
        self._probes.append(probe)

    # ─── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._task is not None:
            return
        if not self.logs:
            _logger.warning("live_monitor.no_datasources")
            return
        self._running = True
        self._task = asyncio.create_task(self.run(), name="live-file-monitor")
        self._task.add_done_callback(self._on_loop_done)
        _logger.info(
            "live_monitor.started",
            datasources=list(self.logs),
            startup_delay=self._config.startup_delay_seconds,
        )

    async def stop(self) -> None:
        self._running = False
        await cancel_and_wait(self._task)
        self._task = None
        _logger.info("live_monitor.stopped")

    def _on_loop_done(self, task: asyncio.Task[None]) -> None:
        log_task_exception(task, _logger, "live_monitor.loop_died_unexpectedly")

    async def run(self) -> None:
        """Wait out the startup delay, initialise, then tick until stopped."""
        self._running = True
        await asyncio.sleep(self._config.startup_delay_seconds)
        try:
            await self.initialize()
        except Exception:
            _logger.exception("live_monitor.initialize_failed")

        while self._running:
            try:
                await self.tick()
            except Exception:
                _logger.exception("live_monitor.tick_failed")
            await asyncio.sleep(self._config.poll_interval_seconds)

    async def initialize(self) -> None:
        """Record starting sizes and seed positions on a fresh install.

        With no stored position and no completed pass ever, the existing
        backlog is left for a manual bulk ingest; the monitor only follows
        lines written from now on.
        """
        has_processed = await self._store.has_processed_logs()
        for log in self.logs.values():
            try:
                await self._initialize_log(log, has_processed)
            except PermissionError as exc:
                self._record_denied(log, self._clock(), exc)

    async def _initialize_log(self, log: WatchedLog, has_processed: bool) -> None:
        try:
            log.last_size = log.path.stat().st_size
        except FileNotFoundError:
            log.last_size = None
            log.missing = True
            _logger.info(
                "live_monitor.file_missing_at_start",
                datasource=log.datasource,
                file=str(log.path),
            )
            return

        position = await self._store.get_log_position(log.datasource)
        if position == 0 and not has_processed:
            line_count = await count_lines(log.path)
            await self._store.set_log_position(log.datasource, line_count)
            _logger.info(
                "live_monitor.position_initialized",
                datasource=log.datasource,
                position=line_count,
            )

    # ─── Tick ─────────────────────────────────────────────────────────

    async def tick(self) -> dict[str, TickOutcome]:
        """Run one round of gate checks over every watched datasource."""
        if await self._pause_gate.is_paused():
            return dict.fromkeys(self.logs, TickOutcome.PAUSED)

        outcomes: dict[str, TickOutcome] = {}
        for log in self.logs.values():
            try:
                outcomes[log.datasource] = await self.check(log)
            except Exception:
                _logger.exception("live_monitor.check_failed", datasource=log.datasource)
                outcomes[log.datasource] = TickOutcome.ERROR
        return outcomes

    async def check(self, log: WatchedLog) -> TickOutcome:
        """Evaluate one datasource and trigger a pass if every gate passes."""
        now = self._clock()
        if log.denied_at is not None and now - log.denied_at < log.backoff_seconds:
            return TickOutcome.BACKING_OFF

        try:
            outcome = await self._evaluate(log, now)
        except PermissionError as exc:
            self._record_denied(log, now, exc)
            return TickOutcome.ACCESS_DENIED

        if log.denied_count:
            _logger.info(
                "live_monitor.access_restored",
                datasource=log.datasource,
                consecutive_failures=log.denied_count,
            )
            log.denied_count = 0
            log.denied_at = None
        return outcome

    async def _evaluate(self, log: WatchedLog, now: float) -> TickOutcome:
        try:
            size = log.path.stat().st_size
        except FileNotFoundError:
            if not log.missing:
                _logger.info(
                    "live_monitor.file_missing",
                    datasource=log.datasource,
                    file=str(log.path),
                )
            log.missing = True
            log.last_size = None
            return TickOutcome.MISSING

        if log.missing or log.last_size is None:
            if log.missing:
                _logger.info(
                    "live_monitor.file_reappeared",
                    datasource=log.datasource,
                    file=str(log.path),
                )
            log.missing = False
            log.last_size = 0

        growth = size - log.last_size
        if growth < 0:
            # Truncated in place; measure growth from the new start
            _logger.info(
                "live_monitor.file_truncated",
                datasource=log.datasource,
                previous=log.last_size,
                size=size,
            )
            log.last_size = 0
            growth = size
        if growth < self._config.min_growth_bytes:
            return TickOutcome.BELOW_THRESHOLD

        if (
            self._last_trigger is not None
            and now - self._last_trigger < self._config.min_trigger_interval_seconds
        ):
            return TickOutcome.RATE_LIMITED

        busy = first_busy(self._probes)
        if busy is not None:
            _logger.debug(
                "live_monitor.sibling_busy",
                datasource=log.datasource,
                detail=busy.busy_detail,
            )
            return TickOutcome.SIBLING_BUSY

        if self.state == MonitorState.TRIGGERING or self._ingest.is_processing:
            return TickOutcome.BUSY

        return await self._trigger(log, size, growth, now)

    async def _trigger(self, log: WatchedLog, size: int, growth: int, now: float) -> TickOutcome:
        self.state = MonitorState.TRIGGERING
        self._last_trigger = now
        try:
            stored = await self._store.get_log_position(log.datasource)
            try:
                line_count = await count_lines(log.path)
            except (FileNotFoundError, LineCountError) as exc:
                _logger.warning(
                    "live_monitor.line_count_failed",
                    datasource=log.datasource,
                    error=str(exc),
                )
                return TickOutcome.ERROR
            start_position = min(stored, line_count)

            _logger.info(
                "live_monitor.triggered",
                datasource=log.datasource,
                growth_bytes=growth,
                stored_position=stored,
                line_count=line_count,
                start_position=start_position,
            )
            succeeded = await self._ingest.start_processing(
                start_position, silent=True, datasource=log.datasource,
            )
            if not succeeded:
                _logger.warning(
                    "live_monitor.pass_failed",
                    datasource=log.datasource,
                    start_position=start_position,
                )
                return TickOutcome.FAILED

            log.last_size = size
            return TickOutcome.TRIGGERED
        finally:
            self.state = MonitorState.IDLE

    def _record_denied(self, log: WatchedLog, now: float, exc: PermissionError) -> None:
        log.denied_count += 1
        log.denied_at = now
        if (
            log.denied_count == 1
            or log.denied_warned_at is None
            or now - log.denied_warned_at >= DENIED_WARNING_INTERVAL_SECONDS
        ):
            _logger.warning(
                "live_monitor.access_denied",
                datasource=log.datasource,
                file=str(log.path),
                consecutive_failures=log.denied_count,
                backoff_seconds=log.backoff_seconds,
                error=str(exc),
            )
            log.denied_warned_at = now
