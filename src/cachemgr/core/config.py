"""Configuration models for the cachemgr service.

Defines Pydantic v2 models for paths, orchestration cadence, retention,
the live log monitor, the watched datasources, and logging. A single ``ServiceConfig`` is loaded from
YAML at startup and handed to every component that needs it.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

DeleteMode = Literal["preserve", "full", "rsync"]
DELETE_MODES: tuple[str, ...] = ("preserve", "full", "rsync")


class PathsConfig(BaseModel):
    """Filesystem locations used by the service and its workers."""

    cache_dir: Path = Field(
        default=Path("/cache"),
        description="Root of the proxy cache. Must contain the 00-ff hashed "
        "sub-directories for a cache clear to start.",
    )
    data_dir: Path = Field(
        default=Path("/data"),
        description="Service data directory. Holds the state database.",
    )
    operations_dir: Path | None = Field(
        default=None,
        description="Directory for transient worker progress files. "
        "Defaults to <data_dir>/operations.",
    )
    log_dir: Path = Field(
        default=Path("/logs"),
        description="Directory containing the proxy's access.log.",
    )
    cache_cleaner_binary: Path = Field(
        default=Path("/app/bin/cache_cleaner"),
        description="Worker executable that evicts cache contents.",
    )
    log_ingest_binary: Path = Field(
        default=Path("/app/bin/log_processor"),
        description="Worker executable that ingests access log lines.",
    )

    def resolved_operations_dir(self) -> Path:
        """Progress-file directory with tilde expansion applied."""
        base = self.operations_dir or (self.data_dir / "operations")
        return base.expanduser()


class OrchestratorConfig(BaseModel):
    """Cadence of the per-operation poll loop."""

    poll_interval_seconds: float = Field(
        default=0.5,
        gt=0,
        description="Delay between progress-file reads while a worker runs.",
    )
    snapshot_every: int = Field(
        default=10,
        ge=1,
        description="Persist a snapshot every Nth applied progress update.",
    )
    shutdown_timeout_seconds: float = Field(
        default=10.0,
        ge=0,
        description="Max seconds to wait for running operations to unwind "
        "after cancellation during shutdown.",
    )
    delete_mode: DeleteMode = Field(
        default="preserve",
        description="Default cache clear mode passed to the cleaner worker. "
        "Overridden at runtime by the persisted setting.",
    )


class RetentionConfig(BaseModel):
    """How long finished operations stay queryable."""

    window_hours: float = Field(
        default=24.0,
        gt=0,
        description="Terminal operations older than this are evicted, and "
        "recovery only loads snapshots started within this window.",
    )
    sweep_interval_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Interval between retention sweeps.",
    )


class DatasourceConfig(BaseModel):
    """One proxy access log followed by the live monitor.

    Example:
        datasources:
          - name: steam
            log_dir: /logs/steam
          - name: epic
            log_dir: /logs/epic
            enabled: false
    """

    name: str = Field(min_length=1, description="Key of the durable log position.")
    log_dir: Path | None = Field(
        default=None,
        description="Directory holding this datasource's access log. "
        "Defaults to paths.log_dir.",
    )
    enabled: bool = Field(default=True, description="Watch this datasource.")


class LiveMonitorConfig(BaseModel):
    """Settings for the live access-log monitor."""

    enabled: bool = Field(default=True, description="Run the live monitor.")
    datasource: str = Field(
        default="default",
        description="Name of the implicit datasource used when none are "
        "configured, and the default for manual passes.",
    )
    log_file_name: str = Field(default="access.log")
    poll_interval_seconds: float = Field(default=1.0, gt=0)
    startup_delay_seconds: float = Field(
        default=20.0,
        ge=0,
        description="Wait after service start before the first tick.",
    )
    min_growth_bytes: int = Field(
        default=10_000,
        ge=1,
        description="Minimum file growth since the last pass to trigger ingestion.",
    )
    min_trigger_interval_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Minimum time between two triggered passes.",
    )

    @field_validator("log_file_name")
    @classmethod
    def _validate_log_file_name(cls, v: str) -> str:
        if not v or "/" in v:
            raise ValueError("log_file_name must be a bare file name")
        return v


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["console", "json"] = "console"
    file: Path | None = Field(
        default=None,
        description="Optional rotating log file. None logs to the console only.",
    )


class ServiceConfig(BaseModel):
    """Top-level configuration for the cachemgr service."""

    paths: PathsConfig = Field(default_factory=PathsConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    live_monitor: LiveMonitorConfig = Field(default_factory=LiveMonitorConfig)
    datasources: list[DatasourceConfig] = Field(
        default_factory=list,
        description="Access logs to ingest. Empty means a single datasource "
        "named live_monitor.datasource reading paths.log_dir.",
    )
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    state_db_path: Path | None = Field(
        default=None,
        description="SQLite state database. Defaults to <data_dir>/state.db. "
        "Tilde is expanded at runtime.",
    )

    @model_validator(mode="after")
    def _check_unique_datasources(self) -> ServiceConfig:
        names = [ds.name for ds in self.datasources]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate datasource names: {', '.join(duplicates)}")
        return self

    def resolved_state_db_path(self) -> Path:
        path = self.state_db_path or (self.paths.data_dir / "state.db")
        return path.expanduser()

    def resolved_datasources(self) -> list[DatasourceConfig]:
        """Configured datasources with log directories filled in and expanded."""
        configured = self.datasources or [
            DatasourceConfig(name=self.live_monitor.datasource),
        ]
        return [
            ds.model_copy(update={"log_dir": (ds.log_dir or self.paths.log_dir).expanduser()})
            for ds in configured
        ]

    @classmethod
    def from_yaml(cls, path: Path) -> ServiceConfig:
        """Load service configuration from a YAML file.

        An empty file yields the defaults.
        """
        with open(path) as f:
            data = yaml.safe_load(f)
        return cls.model_validate(data or {})
