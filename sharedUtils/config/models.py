"""Type-safe Pydantic models for configuration."""

import re
from typing import Dict, List
from pydantic import BaseModel, Field, field_validator, model_validator
from sharedUtils.sources.models import Source

KNOWN_COLLECTORS = [
    "cpu",
    "memory",
    "file_io",
    "wait_stats",
    "query_stats",
    "procedure_stats",
    "perfmon",
    "deadlocks",
    "running_jobs",
    "memory_grants",
    "blocked_process_report",
    "waiting_tasks",
    "tempdb_stats",
    "memory_clerks",
]

# Seconds between runs of each collector; anything not listed runs every cycle
DEFAULT_INTERVALS: Dict[str, int] = {
    "cpu": 60,
    "memory": 60,
    "file_io": 60,
    "wait_stats": 60,
    "query_stats": 120,
    "procedure_stats": 120,
    "perfmon": 300,
    "deadlocks": 60,
    "running_jobs": 60,
    "memory_grants": 60,
    "blocked_process_report": 60,
    "waiting_tasks": 60,
    "tempdb_stats": 60,
    "memory_clerks": 300,
}

_SESSION_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,127}$")


class LoggingConfig(BaseModel):
    """Configuration for logging settings."""
    level: str = Field(default="INFO", description="Logging level")
    file: str = Field(default="logs/sqlmon.log", description="Log file path")
    format: str = Field(
        default="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        description="Log message format",
    )
    console_export: bool = Field(default=True, description="Enable console output")
    max_file_mb: int = Field(default=20, ge=1, description="Rotate the log file past this size")
    backup_count: int = Field(default=5, ge=0, description="Rotated log files kept")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v.upper()


class CollectionConfig(BaseModel):
    """Timer and connection settings for the collection cycle."""
    interval_seconds: int = Field(default=60, description="Seconds between collection cycles")
    max_parallel_sources: int = Field(default=7, description="Sources collected concurrently")
    query_timeout_seconds: int = Field(default=30, description="Per-query timeout")
    connect_timeout_seconds: int = Field(default=15, description="Login timeout")
    default_lookback_minutes: int = Field(default=10, description="History fetched when no cursor exists")
    startup_delay_seconds: int = Field(default=5, description="Delay before the first cycle")

    @field_validator("interval_seconds", "max_parallel_sources", "query_timeout_seconds",
                     "connect_timeout_seconds", "default_lookback_minutes")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("startup_delay_seconds")
    @classmethod
    def validate_delay(cls, v: int) -> int:
        if v < 0:
            raise ValueError("startup_delay_seconds cannot be negative")
        return v


class CollectorsConfig(BaseModel):
    """Per-collector switches and tuning."""
    enabled_collectors: List[str] = Field(
        default_factory=lambda: list(KNOWN_COLLECTORS),
        description="Enabled collector names",
    )
    ignored_wait_types: List[str] = Field(default_factory=list, description="Benign wait types to skip")
    top_queries: int = Field(default=200, description="Query stats rows fetched per cycle")
    top_procedures: int = Field(default=150, description="Procedure stats rows fetched per cycle")
    intervals: Dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_INTERVALS),
        description="Per-collector run interval in seconds, merged over the defaults",
    )

    @field_validator("enabled_collectors")
    @classmethod
    def validate_collectors(cls, v: List[str]) -> List[str]:
        unknown = [name for name in v if name not in KNOWN_COLLECTORS]
        if unknown:
            raise ValueError(f"Unknown collectors: {unknown}. Must be among {KNOWN_COLLECTORS}")
        return v

    @field_validator("intervals")
    @classmethod
    def validate_intervals(cls, v: Dict[str, int]) -> Dict[str, int]:
        unknown = [name for name in v if name not in KNOWN_COLLECTORS]
        if unknown:
            raise ValueError(f"Intervals for unknown collectors: {unknown}")
        if any(seconds < 1 for seconds in v.values()):
            raise ValueError("collector intervals must be at least 1 second")
        return {**DEFAULT_INTERVALS, **v}

    def interval_for(self, name: str) -> int:
        """Seconds between runs of a collector, 0 when it runs every cycle."""
        return self.intervals.get(name, 0)

    @field_validator("ignored_wait_types")
    @classmethod
    def normalise_wait_types(cls, v: List[str]) -> List[str]:
        return sorted({w.strip().upper() for w in v if w.strip()})

    @field_validator("top_queries", "top_procedures")
    @classmethod
    def validate_top(cls, v: int) -> int:
        if not 1 <= v <= 5000:
            raise ValueError("top row counts must be between 1 and 5000")
        return v


class StorageConfig(BaseModel):
    """Hot store, archive and maintenance schedule settings."""
    database_path: str = Field(default="data/sqlmon.duckdb", description="DuckDB file")
    archive_path: str = Field(default="", description="Parquet archive directory (next to the database when empty)")
    hot_data_days: int = Field(default=7, description="Days kept in the hot store")
    archive_interval_minutes: int = Field(default=60, description="Minutes between archive cycles")
    archive_retention_days: int = Field(default=90, description="Days archive files are kept")
    retention_interval_hours: int = Field(default=24, description="Hours between retention sweeps")
    compaction_interval_hours: int = Field(default=24, description="Hours between compactions")
    size_warning_mb: int = Field(default=1024, description="Warn when the hot store passes this size")
    reset_threshold_mb: int = Field(default=4096, description="Archive everything and reset past this size")
    min_free_disk_mb: int = Field(default=512, description="Warn when the volume has less free space")

    @field_validator("hot_data_days", "archive_interval_minutes", "archive_retention_days",
                     "retention_interval_hours", "compaction_interval_hours", "size_warning_mb")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @model_validator(mode="after")
    def validate_thresholds(self) -> "StorageConfig":
        if self.reset_threshold_mb <= self.size_warning_mb:
            raise ValueError("reset_threshold_mb must be larger than size_warning_mb")
        if self.archive_retention_days < self.hot_data_days:
            raise ValueError("archive_retention_days cannot be shorter than hot_data_days")
        return self


class DiagnosticsConfig(BaseModel):
    """Event capture session settings."""
    session_name: str = Field(default="SqlMon_Deadlock", description="Deadlock event session name")
    blocked_process_session_name: str = Field(
        default="SqlMon_BlockedProcess", description="Blocked process event session name"
    )
    ring_buffer_kb: int = Field(default=4096, description="Ring buffer target and session memory size")
    blocked_process_threshold_seconds: int = Field(
        default=5, description="Threshold set when the server has none (0 leaves it alone)"
    )

    @field_validator("session_name", "blocked_process_session_name")
    @classmethod
    def validate_session_name(cls, v: str) -> str:
        if not _SESSION_NAME_PATTERN.match(v):
            raise ValueError("session_name must be a plain identifier")
        return v

    @field_validator("ring_buffer_kb")
    @classmethod
    def validate_ring_buffer(cls, v: int) -> int:
        if v < 512:
            raise ValueError("ring_buffer_kb must be at least 512")
        return v

    @field_validator("blocked_process_threshold_seconds")
    @classmethod
    def validate_threshold(cls, v: int) -> int:
        if v != 0 and not 5 <= v <= 86400:
            raise ValueError("blocked_process_threshold_seconds must be 0 or between 5 and 86400")
        return v

    @model_validator(mode="after")
    def validate_distinct_sessions(self) -> "DiagnosticsConfig":
        if self.session_name == self.blocked_process_session_name:
            raise ValueError("the deadlock and blocked process sessions need different names")
        return self


class AppConfig(BaseModel):
    """Root configuration model containing all sections."""
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    collection: CollectionConfig = Field(default_factory=CollectionConfig)
    collectors: CollectorsConfig = Field(default_factory=CollectorsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    diagnostics: DiagnosticsConfig = Field(default_factory=DiagnosticsConfig)
    sources: List[Source] = Field(default_factory=list)

    @field_validator("sources")
    @classmethod
    def validate_unique_ids(cls, v: List[Source]) -> List[Source]:
        seen = set()
        for source in v:
            if source.id in seen:
                raise ValueError(f"Duplicate source id: {source.id} ({source.name})")
            seen.add(source.id)
        return v
