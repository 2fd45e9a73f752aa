"""Shared pause switch for the live monitor.

Services that rewrite or remove log files (log removal, corruption repair,
a manual full reprocess) raise the gate so the monitor does not start an
ingestion pass against a file that is being changed underneath it.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from cachemgr.core.logging import get_logger

_logger = get_logger("monitor.pause")


class PauseGate:
    """A lock-guarded boolean shared between the monitor and its siblings.

    One instance is created by the application and handed to every party
    that needs it; there is no module-level flag.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._paused = False

    async def pause(self, reason: str | None = None) -> None:
        async with self._lock:
            if not self._paused:
                self._paused = True
                _logger.info("pause_gate.paused", reason=reason)

    async def resume(self) -> None:
        async with self._lock:
            if self._paused:
                self._paused = False
                _logger.info("pause_gate.resumed")

    async def is_paused(self) -> bool:
        async with self._lock:
            return self._paused

    @asynccontextmanager
    async def paused(self, reason: str | None = None) -> AsyncIterator[None]:
        """Hold the gate for the duration of a block, resuming on any exit."""
        await self.pause(reason)
        try:
            yield
        finally:
            await self.resume()
