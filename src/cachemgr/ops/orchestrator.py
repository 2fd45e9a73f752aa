"""Worker process orchestration.

``ProcessOrchestrator`` turns a start request into a tracked Operation:
validate, spawn the worker, poll its progress file, honour cancellation and
settle on exactly one terminal status. Two tasks touch an operation while
its worker runs::

    run task   ── spawn ── communicate() ──────────────┐
                     └── poll loop (cancel? progress?) ┴─ rendezvous ── exit policy

Both write under ``Operation.lock``. Whoever moves the operation to a
terminal status also emits its single completion event and snapshot; every
later writer sees ``is_terminal`` and backs off.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from cachemgr.core.config import OrchestratorConfig
from cachemgr.core.errors import CacheMgrError, PreconditionError, WorkerFailedError
from cachemgr.core.logging import OperationContext, get_logger, with_context
from cachemgr.core.task_utils import log_task_exception
from cachemgr.notify.bus import Notifier
from cachemgr.notify.events import CompletionEvent, ProgressEvent
from cachemgr.ops.jobs import JobKind
from cachemgr.ops.models import Operation, OperationKind, OperationStatus
from cachemgr.ops.process import (
    decode_output,
    is_sigkill_exit,
    kill_process_tree,
    spawn_worker,
)
from cachemgr.ops.progress import delete_progress_file, read_progress
from cachemgr.ops.registry import OperationRegistry
from cachemgr.state.base import StateStore

_logger = get_logger("ops.orchestrator")

CANCELLED_BY_USER = "Cancelled by user"
CANCELLED_BY_SHUTDOWN = "Cancelled by service shutdown"


class ProcessOrchestrator:
    """Runs worker-backed operations and keeps their records consistent."""

    def __init__(
        self,
        *,
        registry: OperationRegistry,
        store: StateStore,
        notifier: Notifier,
        jobs: Mapping[OperationKind, JobKind],
        operations_dir: Path,
        config: OrchestratorConfig | None = None,
    ) -> None:
        self._registry = registry
        self._store = store
        self._notifier = notifier
        self._jobs = dict(jobs)
        self._operations_dir = operations_dir
        self._config = config or OrchestratorConfig()
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._shutting_down = False

    @property
    def registry(self) -> OperationRegistry:
        return self._registry

    # ─── Public API ───────────────────────────────────────────────────

    async def start(self, kind: OperationKind, params: Any, *, silent: bool = False) -> str:
        """Register and launch an operation, returning its id immediately.

        A failed validation still returns an id: the operation is already
        ``failed`` with the reason and no worker was spawned.
        """
        operation = await self._launch(kind, params, silent=silent)
        return operation.id

    async def run(self, kind: OperationKind, params: Any, *, silent: bool = False) -> Operation:
        """Launch an operation and wait for it to reach a terminal status."""
        operation = await self._launch(kind, params, silent=silent)
        await self.wait(operation.id)
        return operation

    async def wait(self, operation_id: str) -> None:
        """Wait for an operation's run task, if it still has one."""
        task = self._tasks.get(operation_id)
        if task is None or task.done():
            return
        await asyncio.shield(task)

    async def mark_terminal(
        self,
        operation: Operation,
        status: OperationStatus,
        message: str,
        *,
        error: str | None = None,
    ) -> bool:
        """Move ``operation`` to a terminal status and announce it once.

        Returns False when another writer already settled the operation.
        """
        async with operation.lock:
            if operation.is_terminal:
                return False
            operation.process = None
            operation.transition(status, message, error=error)
        await self._finalize(operation)
        return True

    async def shutdown(self) -> None:
        """Cancel every active operation and wait for run tasks to unwind."""
        self._shutting_down = True
        active = self._registry.active()
        _logger.info("orchestrator.shutting_down", active_operations=len(active))

        for operation in active:
            if operation.cancel_event is not None:
                operation.cancel_event.set()
            if operation.process is not None:
                kill_process_tree(operation.process)

        running = [t for t in self._tasks.values() if not t.done()]
        if running:
            _, pending = await asyncio.wait(
                running, timeout=self._config.shutdown_timeout_seconds,
            )
            for task in pending:
                task.cancel(msg="orchestrator shutdown timeout exceeded")
            if pending:
                results = await asyncio.gather(*pending, return_exceptions=True)
                for result in results:
                    if isinstance(result, BaseException) and not isinstance(
                        result, asyncio.CancelledError,
                    ):
                        _logger.warning(
                            "orchestrator.shutdown_task_exception",
                            error=str(result),
                            error_type=type(result).__name__,
                        )
        self._tasks.clear()
        _logger.info("orchestrator.shutdown_complete")

    # ─── Launch ───────────────────────────────────────────────────────

    async def _launch(self, kind: OperationKind, params: Any, *, silent: bool) -> Operation:
        if self._shutting_down:
            raise CacheMgrError("Service is shutting down; no new operations accepted")
        job = self._jobs.get(kind)
        if job is None:
            raise CacheMgrError(f"No job registered for operation kind '{kind.value}'")

        operation = self._registry.create(kind, silent=silent)
        await self._persist(operation)

        try:
            job.validate(params)
        except PreconditionError as exc:
            _logger.warning(
                "orchestrator.precondition_failed",
                operation_id=operation.id,
                kind=kind.value,
                reason=str(exc),
            )
            await self.mark_terminal(
                operation, OperationStatus.FAILED, str(exc), error=str(exc),
            )
            return operation
        except Exception as exc:
            _logger.exception(
                "orchestrator.validate_failed",
                operation_id=operation.id,
                kind=kind.value,
                error=str(exc),
            )
            await self.mark_terminal(
                operation,
                OperationStatus.FAILED,
                f"Operation failed: {exc}",
                error=str(exc),
            )
            return operation

        task = asyncio.create_task(
            self._run_operation(operation, job, params),
            name=f"operation-{operation.id}",
        )
        self._tasks[operation.id] = task
        task.add_done_callback(lambda t: self._on_task_done(operation.id, t))
        _logger.info(
            "orchestrator.operation_scheduled",
            operation_id=operation.id,
            kind=kind.value,
            silent=silent,
        )
        return operation

    def _on_task_done(self, operation_id: str, task: asyncio.Task[None]) -> None:
        self._tasks.pop(operation_id, None)
        log_task_exception(task, _logger, "orchestrator.task_failed")

    # ─── Run task ─────────────────────────────────────────────────────

    async def _run_operation(self, operation: Operation, job: JobKind, params: Any) -> None:
        progress_file = (
            self._operations_dir / f"{operation.kind.value}_progress_{operation.id}.json"
        )
        ctx = OperationContext(
            operation_id=operation.id,
            kind=operation.kind.value,
            silent=operation.silent,
        )
        with with_context(ctx):
            try:
                await self._execute(operation, job, params, progress_file)
            except asyncio.CancelledError:
                self._kill_if_alive(operation)
                await self.mark_terminal(
                    operation, OperationStatus.CANCELLED, CANCELLED_BY_SHUTDOWN,
                )
                raise
            except WorkerFailedError as exc:
                _logger.error(
                    "orchestrator.worker_failed",
                    exit_code=exc.exit_code,
                    stderr=exc.stderr[-2000:],
                )
                await self.mark_terminal(
                    operation, OperationStatus.FAILED, str(exc), error=str(exc),
                )
            except Exception as exc:
                _logger.exception("orchestrator.unexpected_error", error=str(exc))
                self._kill_if_alive(operation)
                await self.mark_terminal(
                    operation,
                    OperationStatus.FAILED,
                    f"Operation failed: {exc}",
                    error=str(exc),
                )
            finally:
                delete_progress_file(progress_file)

    async def _execute(
        self,
        operation: Operation,
        job: JobKind,
        params: Any,
        progress_file: Path,
    ) -> None:
        if operation.cancel_requested:
            await self.mark_terminal(operation, OperationStatus.CANCELLED, CANCELLED_BY_USER)
            return

        self._operations_dir.mkdir(parents=True, exist_ok=True)
        delete_progress_file(progress_file)
        args = job.build_args(params, progress_file)
        process = await spawn_worker(job.binary_path, args)

        async with operation.lock:
            if operation.is_terminal:
                # Force-killed while the worker was being spawned
                kill_process_tree(process)
                settled_early = True
            else:
                settled_early = False
                operation.process = process
                operation.transition(OperationStatus.RUNNING, "Running")
        if settled_early:
            await process.communicate()
            return

        _logger.info(
            "orchestrator.worker_started",
            pid=process.pid,
            binary=str(job.binary_path),
        )
        await self._persist(operation)
        if not operation.silent:
            await self._publish_progress(operation)

        exited = asyncio.Event()
        poll_task = asyncio.create_task(
            self._poll_loop(operation, process, progress_file, exited),
            name=f"operation-poll-{operation.id}",
        )
        try:
            _, stderr = await process.communicate()
        finally:
            exited.set()
            if not poll_task.done() and process.returncode is None:
                poll_task.cancel()
        await poll_task

        await self._handle_exit(operation, job, process.returncode, stderr, progress_file)

    async def _poll_loop(
        self,
        operation: Operation,
        process: asyncio.subprocess.Process,
        progress_file: Path,
        exited: asyncio.Event,
    ) -> None:
        """Read progress until the worker exits or a cancel request is handled."""
        applied = 0
        interval = self._config.poll_interval_seconds
        while True:
            if operation.cancel_requested:
                kill_process_tree(process)
                if await self.mark_terminal(
                    operation, OperationStatus.CANCELLED, CANCELLED_BY_USER,
                ):
                    _logger.info("orchestrator.cancelled", pid=process.pid)
                return
            if exited.is_set():
                return

            record = read_progress(progress_file)
            if record is not None:
                async with operation.lock:
                    changed = operation.apply_progress(record)
                if changed:
                    applied += 1
                    if not operation.silent:
                        await self._publish_progress(operation)
                    if applied % self._config.snapshot_every == 0:
                        await self._persist(operation)

            try:
                await asyncio.wait_for(exited.wait(), timeout=interval)
            except TimeoutError:
                pass

    async def _handle_exit(
        self,
        operation: Operation,
        job: JobKind,
        returncode: int | None,
        stderr: bytes | None,
        progress_file: Path,
    ) -> None:
        if operation.status == OperationStatus.CANCELLED and is_sigkill_exit(returncode):
            _logger.info("orchestrator.worker_killed_after_cancel", exit_code=returncode)
            return
        if operation.cancel_requested and is_sigkill_exit(returncode):
            # Cancel arrived after the poll loop's last check
            if await self.mark_terminal(
                operation, OperationStatus.CANCELLED, CANCELLED_BY_USER,
            ):
                _logger.info("orchestrator.worker_killed_after_cancel", exit_code=returncode)
            return
        if operation.is_terminal:
            _logger.debug(
                "orchestrator.exit_after_terminal",
                status=operation.status.value,
                exit_code=returncode,
            )
            return
        if returncode != 0:
            raise WorkerFailedError(job.binary_path.name, returncode, decode_output(stderr))

        final = read_progress(progress_file)
        delete_progress_file(progress_file)
        async with operation.lock:
            if operation.is_terminal:
                return
            if final is not None:
                operation.apply_final_counters(final)
            operation.process = None
            operation.transition(OperationStatus.COMPLETED, job.completion_message(operation))
        await self._finalize(operation)

    def _kill_if_alive(self, operation: Operation) -> None:
        process = operation.process
        if process is not None and process.returncode is None:
            kill_process_tree(process)

    # ─── Side effects ─────────────────────────────────────────────────

    async def _finalize(self, operation: Operation) -> None:
        """Emit the single completion event and snapshot for a terminal operation."""
        try:
            await self._notifier.publish(CompletionEvent.from_operation(operation))
        except Exception:
            _logger.warning(
                "orchestrator.completion_notify_failed",
                operation_id=operation.id,
                exc_info=True,
            )
        await self._persist(operation)
        _logger.info(
            "orchestrator.operation_finished",
            operation_id=operation.id,
            kind=operation.kind.value,
            status=operation.status.value,
            duration_seconds=round(operation.duration_seconds, 3),
        )

    async def _publish_progress(self, operation: Operation) -> None:
        try:
            await self._notifier.publish(ProgressEvent.from_operation(operation))
        except Exception:
            _logger.warning(
                "orchestrator.progress_notify_failed",
                operation_id=operation.id,
                exc_info=True,
            )

    async def _persist(self, operation: Operation) -> None:
        try:
            await self._store.upsert(operation.to_snapshot())
        except Exception:
            _logger.warning(
                "orchestrator.snapshot_failed",
                operation_id=operation.id,
                exc_info=True,
            )
