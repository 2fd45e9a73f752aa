"""SQLite-backed state store.

Holds operation snapshots (so history and interrupted jobs survive a
restart), per-datasource log positions, and small service settings.

All database methods are async (via ``aiosqlite``) so they never block the
event loop that also drives worker polling and the live monitor.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import timedelta
from pathlib import Path

import aiosqlite

from cachemgr.core.errors import StateStoreError
from cachemgr.core.logging import get_logger
from cachemgr.ops.models import OperationSnapshot, utcnow
from cachemgr.state.base import StateStore

_logger = get_logger("state.sqlite")

_LOGS_PROCESSED_KEY = "log_ingest.has_processed"

_UPSERT_SQL = """
    INSERT INTO operations (operation_id, kind, status, started_at, ended_at, snapshot_json)
    VALUES (?, ?, ?, ?, ?, ?)
    ON CONFLICT(operation_id) DO UPDATE SET
        kind = excluded.kind,
        status = excluded.status,
        started_at = excluded.started_at,
        ended_at = excluded.ended_at,
        snapshot_json = excluded.snapshot_json
"""


class SQLiteStateStore(StateStore):
    """Async SQLite state store.

    Usage::

        store = SQLiteStateStore(db_path)
        await store.open()   # creates tables, sets WAL mode
        ...
        await store.close()

    Or as an async context manager::

        async with SQLiteStateStore(db_path) as store:
            await store.upsert(snapshot)
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    @property
    def path(self) -> Path:
        return self._db_path

    async def open(self) -> None:
        """Open the database connection and create tables."""
        if self._conn is not None:
            return
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(str(self._db_path))
        try:
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA journal_mode=WAL")
            await self._create_tables(conn)
        except Exception:
            await conn.close()
            raise
        self._conn = conn
        _logger.info("store.opened", path=str(self._db_path))

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> SQLiteStateStore:
        await self.open()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    @property
    def _db(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StateStoreError("SQLiteStateStore not opened; call open() first")
        return self._conn

    @staticmethod
    async def _create_tables(conn: aiosqlite.Connection) -> None:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS operations (
                operation_id TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                status TEXT NOT NULL,
                started_at REAL NOT NULL,
                ended_at REAL,
                snapshot_json TEXT NOT NULL
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_operations_started
            ON operations (started_at DESC)
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS log_positions (
                datasource TEXT PRIMARY KEY,
                position INTEGER NOT NULL,
                updated_at REAL NOT NULL
            )
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        await conn.commit()

    # ─── Operation snapshots ──────────────────────────────────────────

    async def load_recent(self, window: timedelta) -> list[OperationSnapshot]:
        cutoff = (utcnow() - window).timestamp()
        async with self._db.execute(
            "SELECT snapshot_json FROM operations WHERE started_at >= ? "
            "ORDER BY started_at DESC",
            (cutoff,),
        ) as cursor:
            rows = await cursor.fetchall()
        return self._rows_to_snapshots(rows)

    async def upsert(self, snapshot: OperationSnapshot) -> None:
        await self._db.execute(_UPSERT_SQL, self._snapshot_params(snapshot))
        await self._db.commit()

    async def remove(self, operation_id: str) -> bool:
        cursor = await self._db.execute(
            "DELETE FROM operations WHERE operation_id = ?", (operation_id,),
        )
        await self._db.commit()
        return cursor.rowcount > 0

    async def replace_all(self, snapshots: Iterable[OperationSnapshot]) -> None:
        params = [self._snapshot_params(s) for s in snapshots]
        await self._db.execute("DELETE FROM operations")
        if params:
            await self._db.executemany(_UPSERT_SQL, params)
        await self._db.commit()
        _logger.info("store.replaced_all", count=len(params))

    async def list_snapshots(self, limit: int | None = None) -> list[OperationSnapshot]:
        sql = "SELECT snapshot_json FROM operations ORDER BY started_at DESC"
        args: tuple[int, ...] = ()
        if limit is not None:
            sql += " LIMIT ?"
            args = (limit,)
        async with self._db.execute(sql, args) as cursor:
            rows = await cursor.fetchall()
        return self._rows_to_snapshots(rows)

    @staticmethod
    def _snapshot_params(snapshot: OperationSnapshot) -> tuple[object, ...]:
        return (
            snapshot.id,
            snapshot.kind.value,
            snapshot.status.value,
            snapshot.start_time.timestamp(),
            snapshot.end_time.timestamp() if snapshot.end_time else None,
            snapshot.model_dump_json(),
        )

    @staticmethod
    def _rows_to_snapshots(rows: Iterable[aiosqlite.Row]) -> list[OperationSnapshot]:
        snapshots: list[OperationSnapshot] = []
        for row in rows:
            try:
                snapshots.append(OperationSnapshot.model_validate_json(row["snapshot_json"]))
            except ValueError:
                _logger.warning("store.corrupt_snapshot_skipped", exc_info=True)
        return snapshots

    # ─── Settings ─────────────────────────────────────────────────────

    async def get_log_position(self, datasource: str) -> int:
        async with self._db.execute(
            "SELECT position FROM log_positions WHERE datasource = ?", (datasource,),
        ) as cursor:
            row = await cursor.fetchone()
        return int(row["position"]) if row else 0

    async def set_log_position(self, datasource: str, position: int) -> None:
        await self._db.execute(
            """
            INSERT INTO log_positions (datasource, position, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(datasource) DO UPDATE SET
                position = excluded.position,
                updated_at = excluded.updated_at
            """,
            (datasource, position, utcnow().timestamp()),
        )
        await self._db.commit()
        _logger.debug("store.log_position_set", datasource=datasource, position=position)

    async def reset_log_positions(self, datasource: str | None = None) -> None:
        if datasource is None:
            await self._db.execute("DELETE FROM log_positions")
        else:
            await self._db.execute(
                "DELETE FROM log_positions WHERE datasource = ?", (datasource,),
            )
        await self._db.commit()

    async def has_processed_logs(self) -> bool:
        return await self.get_setting(_LOGS_PROCESSED_KEY) == "1"

    async def mark_logs_processed(self) -> None:
        await self.set_setting(_LOGS_PROCESSED_KEY, "1")

    async def get_setting(self, key: str) -> str | None:
        async with self._db.execute(
            "SELECT value FROM settings WHERE key = ?", (key,),
        ) as cursor:
            row = await cursor.fetchone()
        return row["value"] if row else None

    async def set_setting(self, key: str, value: str) -> None:
        await self._db.execute(
            "INSERT INTO settings (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, value),
        )
        await self._db.commit()
