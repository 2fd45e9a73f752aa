"""In-memory state store.

Keeps snapshots and settings in dicts without filesystem I/O. Used by unit
tests and by embedders that do not need state to survive a restart.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import timedelta

from cachemgr.ops.models import OperationSnapshot, utcnow
from cachemgr.state.base import StateStore

_LOGS_PROCESSED_KEY = "log_ingest.has_processed"


class InMemoryStateStore(StateStore):
    def __init__(self) -> None:
        self.snapshots: dict[str, OperationSnapshot] = {}
        self.positions: dict[str, int] = {}
        self.settings: dict[str, str] = {}

    async def load_recent(self, window: timedelta) -> list[OperationSnapshot]:
        cutoff = utcnow() - window
        recent = [s for s in self.snapshots.values() if s.start_time >= cutoff]
        return sorted(recent, key=lambda s: s.start_time, reverse=True)

    async def upsert(self, snapshot: OperationSnapshot) -> None:
        self.snapshots[snapshot.id] = snapshot.model_copy()

    async def remove(self, operation_id: str) -> bool:
        return self.snapshots.pop(operation_id, None) is not None

    async def replace_all(self, snapshots: Iterable[OperationSnapshot]) -> None:
        self.snapshots = {s.id: s.model_copy() for s in snapshots}

    async def list_snapshots(self, limit: int | None = None) -> list[OperationSnapshot]:
        ordered = sorted(self.snapshots.values(), key=lambda s: s.start_time, reverse=True)
        return ordered[:limit] if limit is not None else ordered

    async def get_log_position(self, datasource: str) -> int:
        return self.positions.get(datasource, 0)

    async def set_log_position(self, datasource: str, position: int) -> None:
        self.positions[datasource] = position

    async def reset_log_positions(self, datasource: str | None = None) -> None:
        if datasource is None:
            self.positions.clear()
        else:
            self.positions.pop(datasource, None)

    async def has_processed_logs(self) -> bool:
        return self.settings.get(_LOGS_PROCESSED_KEY) == "1"

    async def mark_logs_processed(self) -> None:
        self.settings[_LOGS_PROCESSED_KEY] = "1"

    async def get_setting(self, key: str) -> str | None:
        return self.settings.get(key)

    async def set_setting(self, key: str, value: str) -> None:
        self.settings[key] = value
