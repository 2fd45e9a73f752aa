"""Tests for cachemgr.services.ingest."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from cachemgr.ops.cancellation import CancellationController
from cachemgr.ops.models import OperationStatus
from cachemgr.ops.orchestrator import ProcessOrchestrator
from cachemgr.services.ingest import LogIngestService
from cachemgr.state.memory import InMemoryStateStore
from tests.helpers import FAILING_INGESTER, SUCCESS_INGESTER, wait_until

# Reports the three lines it counted at start, then reads two more that were
# appended while it ran
GROWING_INGESTER = """
printf 'd\\ne\\n' >> "$1/access.log"
printf '{"total_lines": 3, "lines_parsed": 5, "entries_saved": 5, "status": "completed"}' > "$2"
printf 'f\\ng\\n' >> "$1/access.log"
exit 0
"""

SILENT_INGESTER = """
exit 0
"""

SLOW_INGESTER = """
printf '{"percent_complete": 5.0, "lines_parsed": 10}' > "$2"
sleep 30
"""


def _service(
    make_worker: Callable[[str, str], Path],
    build_orchestrator: Callable[..., ProcessOrchestrator],
    store: InMemoryStateStore,
    log_dir: Path,
    body: str,
) -> tuple[LogIngestService, ProcessOrchestrator]:
    orchestrator = build_orchestrator(ingester=make_worker("ingester", body))
    return LogIngestService(orchestrator, store, log_dir=log_dir), orchestrator


class TestPositionTracking:
    @pytest.mark.asyncio
    async def test_position_taken_from_lines_parsed(
        self, make_worker, build_orchestrator, store, log_dir,
    ):
        ingest, _ = _service(make_worker, build_orchestrator, store, log_dir, SUCCESS_INGESTER)

        assert await ingest.start_processing(0) is True
        assert await ingest.get_position() == 3
        assert await store.has_processed_logs() is True
        assert ingest.is_processing is False

    @pytest.mark.asyncio
    async def test_lines_appended_during_pass_are_not_skipped_or_repeated(
        self, make_worker, build_orchestrator, store, log_dir,
    ):
        ingest, _ = _service(make_worker, build_orchestrator, store, log_dir, GROWING_INGESTER)

        assert await ingest.start_processing(0, datasource="edge") is True
        # Seven lines on disk now, but the worker stopped after five
        assert await ingest.get_position("edge") == 5
        assert await ingest.get_position() == 0

    @pytest.mark.asyncio
    async def test_unreported_position_keeps_previous(
        self, make_worker, build_orchestrator, store, log_dir,
    ):
        await store.set_log_position("default", 2)
        ingest, _ = _service(make_worker, build_orchestrator, store, log_dir, SILENT_INGESTER)

        assert await ingest.start_processing(2) is True
        assert await ingest.get_position() == 2
        assert await store.has_processed_logs() is True

    @pytest.mark.asyncio
    async def test_failed_pass_keeps_position(
        self, make_worker, build_orchestrator, store, log_dir,
    ):
        await store.set_log_position("default", 1)
        ingest, orchestrator = _service(
            make_worker, build_orchestrator, store, log_dir, FAILING_INGESTER,
        )

        assert await ingest.start_processing(1) is False
        assert await ingest.get_position() == 1
        assert await store.has_processed_logs() is False
        [op] = orchestrator.registry.list_all()
        assert op.status == OperationStatus.FAILED

    @pytest.mark.asyncio
    async def test_precondition_failure_reported_as_not_completed(
        self, make_worker, build_orchestrator, store, log_dir,
    ):
        (log_dir / "access.log").unlink()
        ingest, orchestrator = _service(
            make_worker, build_orchestrator, store, log_dir, SUCCESS_INGESTER,
        )

        assert await ingest.start_processing(0) is False
        [op] = orchestrator.registry.list_all()
        assert op.status == OperationStatus.FAILED
        assert op.status_message.startswith("Log file not found")
        assert ingest.is_processing is False

    @pytest.mark.asyncio
    async def test_reset_position(self, make_worker, build_orchestrator, store, log_dir):
        ingest, _ = _service(make_worker, build_orchestrator, store, log_dir, SUCCESS_INGESTER)
        await store.set_log_position("default", 10)
        await store.set_log_position("edge", 20)

        await ingest.reset_position("edge")
        assert await ingest.get_position("edge") == 0
        assert await ingest.get_position() == 10

        await ingest.reset_position()
        assert await ingest.get_position() == 0


class TestSinglePass:
    @pytest.mark.asyncio
    async def test_second_pass_refused_while_running(
        self, make_worker, build_orchestrator, store, log_dir,
    ):
        ingest, orchestrator = _service(
            make_worker, build_orchestrator, store, log_dir, SLOW_INGESTER,
        )

        op_id = await ingest.submit(0)
        assert op_id is not None
        assert ingest.is_processing is True
        assert ingest.active_operation_id == op_id

        assert await ingest.submit(0) is None
        assert await ingest.start_processing(0, silent=True) is False
        assert len(orchestrator.registry.list_all()) == 1

        CancellationController(orchestrator).request_cancel(op_id)
        await orchestrator.wait(op_id)
        await wait_until(lambda: not ingest.is_processing)
        assert await ingest.get_position() == 0

        op = orchestrator.registry.get(op_id)
        assert op is not None
        assert op.status == OperationStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_activity_flag_raised_for_manual_pass_only(
        self, make_worker, build_orchestrator, store, log_dir,
    ):
        ingest, orchestrator = _service(
            make_worker, build_orchestrator, store, log_dir, SLOW_INGESTER,
        )
        cancellation = CancellationController(orchestrator)

        manual_id = await ingest.submit(0)
        assert manual_id is not None
        assert ingest.activity.is_busy is True
        assert "pass from line 0" in (ingest.activity.busy_detail or "")
        cancellation.request_cancel(manual_id)
        await wait_until(lambda: not ingest.is_processing)
        assert ingest.activity.is_busy is False

        silent_id = await ingest.submit(0, silent=True)
        assert silent_id is not None
        assert ingest.activity.is_busy is False
        cancellation.request_cancel(silent_id)
        await wait_until(lambda: not ingest.is_processing)

    @pytest.mark.asyncio
    async def test_log_file_path(self, build_orchestrator, store, log_dir):
        ingest = LogIngestService(
            build_orchestrator(), store, log_dir=log_dir, log_file_name="proxy.log",
        )
        assert ingest.log_file == log_dir / "proxy.log"

    @pytest.mark.asyncio
    async def test_log_dir_per_datasource(self, build_orchestrator, store, log_dir, tmp_path):
        ingest = LogIngestService(
            build_orchestrator(),
            store,
            log_dir=log_dir,
            datasource_dirs={"edge": tmp_path / "edge"},
        )
        assert ingest.log_dir_for("edge") == tmp_path / "edge"
        assert ingest.log_dir_for("unknown") == log_dir
        assert ingest.log_dir_for() == log_dir
