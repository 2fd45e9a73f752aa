"""Public operation API consumed by transports (HTTP, WebSocket hub, CLI)."""

from __future__ import annotations

import shutil
import sys
from typing import Any

from cachemgr.core.config import DELETE_MODES, ServiceConfig
from cachemgr.core.logging import get_logger
from cachemgr.ops.cancellation import CancellationController
from cachemgr.ops.jobs import CacheClearParams
from cachemgr.ops.models import OperationKind
from cachemgr.ops.orchestrator import ProcessOrchestrator
from cachemgr.services.ingest import LogIngestService
from cachemgr.state.base import StateStore

_logger = get_logger("services.operations")

DELETE_MODE_SETTING = "cache_clear.delete_mode"


def is_rsync_available() -> bool:
    """rsync mode needs Linux and an ``rsync`` binary on PATH."""
    return sys.platform.startswith("linux") and shutil.which("rsync") is not None


class OperationService:
    def __init__(
        self,
        config: ServiceConfig,
        orchestrator: ProcessOrchestrator,
        cancellation: CancellationController,
        ingest: LogIngestService,
        store: StateStore,
    ) -> None:
        self._config = config
        self._orchestrator = orchestrator
        self._cancellation = cancellation
        self._ingest = ingest
        self._store = store

    # ─── Start ────────────────────────────────────────────────────────

    async def start_cache_clear(self, delete_mode: str | None = None) -> str:
        """Start clearing the whole cache. Returns the operation id.

        A precondition failure still returns an id; the operation is
        already ``failed`` with the reason as its message.
        """
        mode = delete_mode or await self.get_delete_mode()
        params = CacheClearParams(
            cache_path=self._config.paths.cache_dir.expanduser(),
            delete_mode=mode,
        )
        return await self._orchestrator.start(OperationKind.CACHE_CLEAR, params)

    async def start_log_processing(
        self,
        start_position: int | None = None,
        *,
        datasource: str | None = None,
    ) -> str | None:
        """Start a manual ingestion pass.

        Without ``start_position`` the pass resumes from the stored position.
        Returns None when a pass is already running.
        """
        if start_position is None:
            start_position = await self._ingest.get_position(datasource)
        return await self._ingest.submit(start_position, datasource=datasource)

    # ─── Query ────────────────────────────────────────────────────────

    def get_status(self, operation_id: str) -> dict[str, Any] | None:
        operation = self._orchestrator.registry.get(operation_id)
        return operation.to_dict() if operation else None

    def list_operations(self, *, active_only: bool = False) -> list[dict[str, Any]]:
        registry = self._orchestrator.registry
        operations = registry.active() if active_only else registry.list_all()
        return [op.to_dict() for op in operations]

    # ─── Cancel ───────────────────────────────────────────────────────

    def cancel(self, operation_id: str) -> bool:
        return self._cancellation.request_cancel(operation_id)

    async def force_kill(self, operation_id: str) -> bool:
        return await self._cancellation.force_kill(operation_id)

    # ─── Settings ─────────────────────────────────────────────────────

    async def get_delete_mode(self) -> str:
        stored = await self._store.get_setting(DELETE_MODE_SETTING)
        if stored in DELETE_MODES:
            return stored
        return self._config.orchestrator.delete_mode

    async def set_delete_mode(self, mode: str) -> None:
        if mode not in DELETE_MODES:
            raise ValueError(
                f"Invalid delete mode '{mode}'. Must be one of: {', '.join(DELETE_MODES)}"
            )
        if mode == "rsync" and not is_rsync_available():
            _logger.warning("operations.rsync_unavailable", mode=mode)
        await self._store.set_setting(DELETE_MODE_SETTING, mode)
        _logger.info("operations.delete_mode_set", mode=mode)

    def is_rsync_available(self) -> bool:
        return is_rsync_available()
