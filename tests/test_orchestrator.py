"""Tests for cachemgr.ops.orchestrator.

Exercises real subprocess handling with small shell scripts standing in for
the worker binaries: success, worker failure, precondition failure,
cooperative cancellation, silent runs, and shutdown.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from cachemgr.core.errors import CacheMgrError
from cachemgr.notify.bus import Notifier
from cachemgr.notify.events import CompletionEvent, NotifierEvent, ProgressEvent
from cachemgr.ops.jobs import CacheClearJob, CacheClearParams, LogIngestParams
from cachemgr.ops.models import OperationKind, OperationStatus
from cachemgr.ops.orchestrator import ProcessOrchestrator
from cachemgr.state.memory import InMemoryStateStore
from tests.helpers import (
    FAILING_CLEANER,
    KILLED_CLEANER,
    RELEASED_KILLED_CLEANER,
    SLOW_CLEANER,
    SUCCESS_CLEANER,
    SUCCESS_INGESTER,
    wait_until,
)


@pytest.fixture
async def events(notifier: Notifier) -> list[NotifierEvent]:
    received: list[NotifierEvent] = []
    notifier.subscribe(received.append)
    return received


def _completions(events: list[NotifierEvent], operation_id: str) -> list[CompletionEvent]:
    return [
        e for e in events
        if isinstance(e, CompletionEvent) and e.operation_id == operation_id
    ]


# ─── Successful runs ──────────────────────────────────────────────────


class TestSuccess:
    @pytest.mark.asyncio
    async def test_cache_clear_completes(
        self,
        make_worker: Callable[[str, str], Path],
        build_orchestrator: Callable[..., ProcessOrchestrator],
        cache_dir: Path,
        notifier: Notifier,
        events: list[NotifierEvent],
        store: InMemoryStateStore,
        tmp_path: Path,
    ):
        orchestrator = build_orchestrator(cleaner=make_worker("cleaner", SUCCESS_CLEANER))
        op_id = await orchestrator.start(
            OperationKind.CACHE_CLEAR, CacheClearParams(cache_path=cache_dir),
        )
        await orchestrator.wait(op_id)
        await notifier.join()

        op = orchestrator.registry.get(op_id)
        assert op is not None
        assert op.status == OperationStatus.COMPLETED
        assert op.status_message == "Successfully cleared 2 cache directories"
        assert op.percent_complete == 100.0
        assert op.bytes_deleted == 2048
        assert op.files_deleted == 4
        assert op.end_time is not None
        assert op.process is None
        assert op.error is None

        progress_file = tmp_path / "operations" / f"cache_clear_progress_{op_id}.json"
        assert not progress_file.exists()
        assert store.snapshots[op_id].status == OperationStatus.COMPLETED

        completions = _completions(events, op_id)
        assert len(completions) == 1
        assert completions[0].success is True
        assert completions[0].cancelled is False
        assert completions[0].directories_processed == 2
        assert any(isinstance(e, ProgressEvent) for e in events)

    @pytest.mark.asyncio
    async def test_run_returns_finished_operation(
        self,
        make_worker: Callable[[str, str], Path],
        build_orchestrator: Callable[..., ProcessOrchestrator],
        log_dir: Path,
    ):
        orchestrator = build_orchestrator(ingester=make_worker("ingester", SUCCESS_INGESTER))
        op = await orchestrator.run(
            OperationKind.LOG_INGEST, LogIngestParams(log_path=log_dir, start_position=0),
        )
        assert op.status == OperationStatus.COMPLETED
        assert op.lines_parsed == 3
        assert op.entries_saved == 2
        assert op.total_lines == 3
        assert op.status_message == "Processed 3 log lines (2 entries saved)"

    @pytest.mark.asyncio
    async def test_silent_run_skips_progress_events(
        self,
        make_worker: Callable[[str, str], Path],
        build_orchestrator: Callable[..., ProcessOrchestrator],
        cache_dir: Path,
        notifier: Notifier,
        events: list[NotifierEvent],
    ):
        orchestrator = build_orchestrator(cleaner=make_worker("cleaner", SUCCESS_CLEANER))
        op = await orchestrator.run(
            OperationKind.CACHE_CLEAR, CacheClearParams(cache_path=cache_dir), silent=True,
        )
        await notifier.join()
        assert op.status == OperationStatus.COMPLETED
        assert not [e for e in events if isinstance(e, ProgressEvent)]
        assert len(_completions(events, op.id)) == 1

    @pytest.mark.asyncio
    async def test_worker_receives_arguments(
        self,
        make_worker: Callable[[str, str], Path],
        build_orchestrator: Callable[..., ProcessOrchestrator],
        cache_dir: Path,
        tmp_path: Path,
    ):
        args_file = tmp_path / "args.txt"
        cleaner = make_worker("cleaner", f'echo "$1|$3" > "{args_file}"\nexit 0')
        orchestrator = build_orchestrator(cleaner=cleaner)
        await orchestrator.run(
            OperationKind.CACHE_CLEAR,
            CacheClearParams(cache_path=cache_dir, delete_mode="full"),
        )
        assert args_file.read_text().strip() == f"{cache_dir}|full"


# ─── Failures ─────────────────────────────────────────────────────────


class TestFailures:
    @pytest.mark.asyncio
    async def test_nonzero_exit_fails_with_stderr(
        self,
        make_worker: Callable[[str, str], Path],
        build_orchestrator: Callable[..., ProcessOrchestrator],
        cache_dir: Path,
        notifier: Notifier,
        events: list[NotifierEvent],
    ):
        orchestrator = build_orchestrator(cleaner=make_worker("cleaner", FAILING_CLEANER))
        op = await orchestrator.run(
            OperationKind.CACHE_CLEAR, CacheClearParams(cache_path=cache_dir),
        )
        await notifier.join()

        assert op.status == OperationStatus.FAILED
        assert op.error is not None
        assert "exit code 3" in op.error
        assert "permission denied on /cache/00" in op.error
        assert op.percent_complete < 100.0
        assert op.process is None
        completions = _completions(events, op.id)
        assert len(completions) == 1
        assert completions[0].success is False

    @pytest.mark.asyncio
    async def test_no_cache_subdirectories(
        self,
        make_worker: Callable[[str, str], Path],
        build_orchestrator: Callable[..., ProcessOrchestrator],
        tmp_path: Path,
        notifier: Notifier,
        events: list[NotifierEvent],
        store: InMemoryStateStore,
    ):
        empty = tmp_path / "empty-cache"
        (empty / "not-hex").mkdir(parents=True)
        orchestrator = build_orchestrator(cleaner=make_worker("cleaner", SUCCESS_CLEANER))

        op_id = await orchestrator.start(
            OperationKind.CACHE_CLEAR, CacheClearParams(cache_path=empty),
        )
        await notifier.join()

        op = orchestrator.registry.get(op_id)
        assert op is not None
        assert op.status == OperationStatus.FAILED
        assert op.status_message == f"No cache directories (00-ff) found in {empty}"
        assert op.process is None
        assert store.snapshots[op_id].status == OperationStatus.FAILED
        assert len(_completions(events, op_id)) == 1
        assert not (tmp_path / "operations").exists()

    @pytest.mark.asyncio
    async def test_missing_cache_path(
        self,
        build_orchestrator: Callable[..., ProcessOrchestrator],
        tmp_path: Path,
    ):
        orchestrator = build_orchestrator()
        op = await orchestrator.run(
            OperationKind.CACHE_CLEAR, CacheClearParams(cache_path=tmp_path / "absent"),
        )
        assert op.status == OperationStatus.FAILED
        assert op.status_message.startswith("Cache path does not exist")

    @pytest.mark.asyncio
    async def test_missing_worker_binary(
        self,
        build_orchestrator: Callable[..., ProcessOrchestrator],
        cache_dir: Path,
    ):
        orchestrator = build_orchestrator()
        op = await orchestrator.run(
            OperationKind.CACHE_CLEAR, CacheClearParams(cache_path=cache_dir),
        )
        assert op.status == OperationStatus.FAILED
        assert "Cache cleaner binary not found" in op.status_message

    @pytest.mark.asyncio
    async def test_unknown_delete_mode(
        self,
        make_worker: Callable[[str, str], Path],
        build_orchestrator: Callable[..., ProcessOrchestrator],
        cache_dir: Path,
    ):
        orchestrator = build_orchestrator(cleaner=make_worker("cleaner", SUCCESS_CLEANER))
        op = await orchestrator.run(
            OperationKind.CACHE_CLEAR,
            CacheClearParams(cache_path=cache_dir, delete_mode="shred"),
        )
        assert op.status == OperationStatus.FAILED
        assert "Unknown delete mode 'shred'" in op.status_message

    @pytest.mark.asyncio
    async def test_missing_access_log(
        self,
        make_worker: Callable[[str, str], Path],
        build_orchestrator: Callable[..., ProcessOrchestrator],
        tmp_path: Path,
    ):
        orchestrator = build_orchestrator(ingester=make_worker("ingester", SUCCESS_INGESTER))
        (tmp_path / "nologs").mkdir()
        op = await orchestrator.run(
            OperationKind.LOG_INGEST, LogIngestParams(log_path=tmp_path / "nologs"),
        )
        assert op.status == OperationStatus.FAILED
        assert op.status_message.startswith("Log file not found")

    @pytest.mark.asyncio
    async def test_unreadable_cache_dir_fails_operation(
        self,
        make_worker: Callable[[str, str], Path],
        build_orchestrator: Callable[..., ProcessOrchestrator],
        cache_dir: Path,
        notifier: Notifier,
        events: list[NotifierEvent],
        store: InMemoryStateStore,
        monkeypatch: pytest.MonkeyPatch,
    ):
        def unreadable(self: CacheClearJob, params: CacheClearParams) -> None:
            raise PermissionError(13, "Permission denied", str(params.cache_path))

        monkeypatch.setattr(CacheClearJob, "validate", unreadable)
        orchestrator = build_orchestrator(cleaner=make_worker("cleaner", SUCCESS_CLEANER))

        op_id = await orchestrator.start(
            OperationKind.CACHE_CLEAR, CacheClearParams(cache_path=cache_dir),
        )
        await notifier.join()

        op = orchestrator.registry.get(op_id)
        assert op is not None
        assert op.status == OperationStatus.FAILED
        assert op.status_message.startswith("Operation failed:")
        assert op.error is not None and "Permission denied" in op.error
        assert op.end_time is not None
        assert store.snapshots[op_id].status == OperationStatus.FAILED
        assert len(_completions(events, op_id)) == 1
        assert orchestrator.registry.active() == []


# ─── Cancellation ─────────────────────────────────────────────────────


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_signal_kills_worker(
        self,
        make_worker: Callable[[str, str], Path],
        build_orchestrator: Callable[..., ProcessOrchestrator],
        cache_dir: Path,
        notifier: Notifier,
        events: list[NotifierEvent],
    ):
        orchestrator = build_orchestrator(cleaner=make_worker("cleaner", SLOW_CLEANER))
        op_id = await orchestrator.start(
            OperationKind.CACHE_CLEAR, CacheClearParams(cache_path=cache_dir),
        )
        op = orchestrator.registry.get(op_id)
        assert op is not None
        await wait_until(lambda: op.status == OperationStatus.RUNNING)
        process = op.process
        assert process is not None

        assert op.cancel_event is not None
        op.cancel_event.set()
        await orchestrator.wait(op_id)
        await notifier.join()

        assert op.status == OperationStatus.CANCELLED
        assert op.status_message == "Cancelled by user"
        assert op.error is None
        assert op.process is None
        assert process.returncode is not None
        completions = _completions(events, op_id)
        assert len(completions) == 1
        assert completions[0].cancelled is True

    @pytest.mark.asyncio
    async def test_cancel_before_spawn(
        self,
        make_worker: Callable[[str, str], Path],
        build_orchestrator: Callable[..., ProcessOrchestrator],
        cache_dir: Path,
    ):
        orchestrator = build_orchestrator(cleaner=make_worker("cleaner", SLOW_CLEANER))
        op_id = await orchestrator.start(
            OperationKind.CACHE_CLEAR, CacheClearParams(cache_path=cache_dir),
        )
        op = orchestrator.registry.get(op_id)
        assert op is not None and op.cancel_event is not None
        # The run task has not been scheduled yet
        op.cancel_event.set()
        await orchestrator.wait(op_id)
        assert op.status == OperationStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_exit_137_without_cancel_is_failure(
        self,
        make_worker: Callable[[str, str], Path],
        build_orchestrator: Callable[..., ProcessOrchestrator],
        cache_dir: Path,
        notifier: Notifier,
        events: list[NotifierEvent],
    ):
        orchestrator = build_orchestrator(cleaner=make_worker("cleaner", KILLED_CLEANER))
        op = await orchestrator.run(
            OperationKind.CACHE_CLEAR, CacheClearParams(cache_path=cache_dir),
        )
        await notifier.join()

        assert op.status == OperationStatus.FAILED
        assert op.error is not None
        assert "exit code 137" in op.error
        assert "Killed" in op.error
        completions = _completions(events, op.id)
        assert len(completions) == 1
        assert completions[0].cancelled is False

    @pytest.mark.asyncio
    async def test_exit_137_after_cancel_request_is_cancellation(
        self,
        make_worker: Callable[[str, str], Path],
        build_orchestrator: Callable[..., ProcessOrchestrator],
        cache_dir: Path,
        notifier: Notifier,
        events: list[NotifierEvent],
    ):
        orchestrator = build_orchestrator(
            cleaner=make_worker("cleaner", RELEASED_KILLED_CLEANER),
            poll_interval_seconds=5.0,
        )
        op_id = await orchestrator.start(
            OperationKind.CACHE_CLEAR, CacheClearParams(cache_path=cache_dir),
        )
        op = orchestrator.registry.get(op_id)
        assert op is not None and op.cancel_event is not None
        await wait_until(lambda: op.status == OperationStatus.RUNNING)

        op.cancel_event.set()
        (cache_dir / ".release").touch()
        await orchestrator.wait(op_id)
        await notifier.join()

        assert op.status == OperationStatus.CANCELLED
        assert op.status_message == "Cancelled by user"
        assert op.error is None
        completions = _completions(events, op_id)
        assert len(completions) == 1
        assert completions[0].cancelled is True

    @pytest.mark.asyncio
    async def test_exit_137_seen_before_poll_loop_notices_cancel(
        self,
        build_orchestrator: Callable[..., ProcessOrchestrator],
        tmp_path: Path,
    ):
        orchestrator = build_orchestrator()
        op = orchestrator.registry.create(OperationKind.CACHE_CLEAR)
        op.transition(OperationStatus.RUNNING, "Running")
        assert op.cancel_event is not None
        op.cancel_event.set()

        await orchestrator._handle_exit(
            op,
            CacheClearJob(tmp_path / "cleaner"),
            137,
            b"",
            tmp_path / "progress.json",
        )

        assert op.status == OperationStatus.CANCELLED
        assert op.error is None


# ─── Lifecycle ────────────────────────────────────────────────────────


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_wait_unknown_id_returns(
        self, build_orchestrator: Callable[..., ProcessOrchestrator],
    ):
        await build_orchestrator().wait("does-not-exist")

    @pytest.mark.asyncio
    async def test_shutdown_cancels_running_operations(
        self,
        make_worker: Callable[[str, str], Path],
        build_orchestrator: Callable[..., ProcessOrchestrator],
        cache_dir: Path,
    ):
        orchestrator = build_orchestrator(cleaner=make_worker("cleaner", SLOW_CLEANER))
        op_id = await orchestrator.start(
            OperationKind.CACHE_CLEAR, CacheClearParams(cache_path=cache_dir),
        )
        op = orchestrator.registry.get(op_id)
        assert op is not None
        await wait_until(lambda: op.status == OperationStatus.RUNNING)

        await orchestrator.shutdown()

        assert op.status == OperationStatus.CANCELLED
        assert op.process is None

    @pytest.mark.asyncio
    async def test_start_after_shutdown_refused(
        self,
        build_orchestrator: Callable[..., ProcessOrchestrator],
        cache_dir: Path,
    ):
        orchestrator = build_orchestrator()
        await orchestrator.shutdown()
        with pytest.raises(CacheMgrError, match="shutting down"):
            await orchestrator.start(
                OperationKind.CACHE_CLEAR, CacheClearParams(cache_path=cache_dir),
            )

    @pytest.mark.asyncio
    async def test_snapshot_written_while_running(
        self,
        make_worker: Callable[[str, str], Path],
        build_orchestrator: Callable[..., ProcessOrchestrator],
        cache_dir: Path,
        store: InMemoryStateStore,
    ):
        orchestrator = build_orchestrator(
            cleaner=make_worker("cleaner", SLOW_CLEANER), snapshot_every=1,
        )
        op_id = await orchestrator.start(
            OperationKind.CACHE_CLEAR, CacheClearParams(cache_path=cache_dir),
        )
        await wait_until(
            lambda: op_id in store.snapshots
            and store.snapshots[op_id].directories_processed == 1,
        )
        assert store.snapshots[op_id].status == OperationStatus.RUNNING
        await orchestrator.shutdown()
