"""Pytest fixtures for cachemgr tests."""

from __future__ import annotations

import logging
import stat
from collections.abc import AsyncIterator, Callable, Generator
from pathlib import Path

import pytest
import structlog

from cachemgr.core.config import OrchestratorConfig
from cachemgr.notify.bus import Notifier
from cachemgr.ops.jobs import CacheClearJob, LogIngestJob
from cachemgr.ops.models import OperationKind
from cachemgr.ops.orchestrator import ProcessOrchestrator
from cachemgr.ops.registry import OperationRegistry
from cachemgr.state.memory import InMemoryStateStore

WorkerFactory = Callable[[str, str], Path]


@pytest.fixture(autouse=True)
def reset_logging_state() -> Generator[None, None, None]:
    """Reset structlog and root handlers around each test."""
    structlog.reset_defaults()
    root_logger = logging.getLogger()
    original_handlers = root_logger.handlers[:]
    for handler in original_handlers:
        root_logger.removeHandler(handler)

    yield

    structlog.reset_defaults()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in original_handlers:
        root_logger.addHandler(handler)


@pytest.fixture
def make_worker(tmp_path: Path) -> WorkerFactory:
    """Write an executable shell script standing in for a worker binary.

    The script receives the worker's positional arguments, so ``$2`` is
    always the progress file path.
    """
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(exist_ok=True)

    def _make(name: str, body: str) -> Path:
        path = bin_dir / name
        path.write_text("#!/bin/sh\n" + body.strip() + "\n")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path

    return _make


@pytest.fixture
def cache_dir(tmp_path: Path) -> Path:
    """A cache root with two hashed sub-directories."""
    root = tmp_path / "cache"
    for sub in ("00", "a1"):
        (root / sub).mkdir(parents=True)
        (root / sub / "object").write_bytes(b"x" * 64)
    return root


@pytest.fixture
def log_dir(tmp_path: Path) -> Path:
    root = tmp_path / "logs"
    root.mkdir()
    (root / "access.log").write_text("line one\nline two\nline three\n")
    return root


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
async def notifier() -> AsyncIterator[Notifier]:
    bus = Notifier()
    await bus.start()
    yield bus
    await bus.shutdown()


@pytest.fixture
def build_orchestrator(
    tmp_path: Path,
    store: InMemoryStateStore,
    notifier: Notifier,
) -> Callable[..., ProcessOrchestrator]:
    """Factory for an orchestrator wired to in-memory collaborators."""

    def _build(
        cleaner: Path | None = None,
        ingester: Path | None = None,
        **config: float | int,
    ) -> ProcessOrchestrator:
        settings = {"poll_interval_seconds": 0.05, "shutdown_timeout_seconds": 2.0}
        settings.update(config)
        return ProcessOrchestrator(
            registry=OperationRegistry(),
            store=store,
            notifier=notifier,
            jobs={
                OperationKind.CACHE_CLEAR: CacheClearJob(
                    cleaner or tmp_path / "bin" / "missing_cleaner",
                ),
                OperationKind.LOG_INGEST: LogIngestJob(
                    ingester or tmp_path / "bin" / "missing_ingester",
                ),
            },
            operations_dir=tmp_path / "operations",
            config=OrchestratorConfig(**settings),
        )

    return _build
