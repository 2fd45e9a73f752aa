"""Abstract base for durable state stores."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import timedelta

from cachemgr.ops.models import OperationSnapshot


class StateStore(ABC):
    """Durable storage for operation snapshots and service settings.

    Snapshots are last-write-wins per operation id. Settings hold the
    per-datasource log positions and small key/value preferences such as
    the cache clear delete mode.
    """

    async def open(self) -> None:
        """Acquire resources. No-op for stores that need none."""

    async def close(self) -> None:
        """Release resources. No-op for stores that need none."""

    # ─── Operation snapshots ──────────────────────────────────────────

    @abstractmethod
    async def load_recent(self, window: timedelta) -> list[OperationSnapshot]:
        """Snapshots whose operation started within ``window`` of now.

        Args:
            window: How far back to look, measured from the start time.

        Returns:
            Matching snapshots, most recently started first.
        """
        ...

    @abstractmethod
    async def upsert(self, snapshot: OperationSnapshot) -> None:
        """Insert or overwrite the snapshot stored for ``snapshot.id``."""
        ...

    @abstractmethod
    async def remove(self, operation_id: str) -> bool:
        """Delete a snapshot.

        Returns:
            True if deleted, False if not found
        """
        ...

    @abstractmethod
    async def replace_all(self, snapshots: Iterable[OperationSnapshot]) -> None:
        """Overwrite the whole snapshot set (used at shutdown)."""
        ...

    @abstractmethod
    async def list_snapshots(self, limit: int | None = None) -> list[OperationSnapshot]:
        """All stored snapshots, most recently started first."""
        ...

    # ─── Settings ─────────────────────────────────────────────────────

    @abstractmethod
    async def get_log_position(self, datasource: str) -> int:
        """Last ingested line for ``datasource``; 0 when never stored."""
        ...

    @abstractmethod
    async def set_log_position(self, datasource: str, position: int) -> None: ...

    @abstractmethod
    async def reset_log_positions(self, datasource: str | None = None) -> None:
        """Forget the stored position for one datasource, or for all of them."""
        ...

    @abstractmethod
    async def has_processed_logs(self) -> bool:
        """True once any ingestion pass has completed successfully."""
        ...

    @abstractmethod
    async def mark_logs_processed(self) -> None: ...

    @abstractmethod
    async def get_setting(self, key: str) -> str | None: ...

    @abstractmethod
    async def set_setting(self, key: str, value: str) -> None: ...
