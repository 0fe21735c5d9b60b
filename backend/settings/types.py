from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class CacheInvalidationRules(BaseModel):
    """
    Which map events clear the spatial-query cache.
    """

    on_edit: bool = True
    on_zoom: bool = False
    on_pan: bool = False


class CacheSettings(BaseModel):
    # Seconds.
    default_ttl: float = Field(default=300.0, gt=0.0)
    cleanup_interval: float = Field(default=60.0, gt=0.0)
    max_size: int = Field(default=1000, ge=1)
    invalidation: CacheInvalidationRules = Field(default_factory=CacheInvalidationRules)


class ThrottleSettings(BaseModel):
    max_concurrent: int = Field(default=5, ge=1)
    max_per_second: int = Field(default=10, ge=1)
    max_burst_size: int = Field(default=20, ge=1)
    cooldown_period: float = Field(default=1.0, ge=0.0)
    # Per-operation timeout for `execute_operation`; None waits forever.
    timeout: float | None = Field(default=None, gt=0.0)


class BatchSettings(BaseModel):
    max_size: int = Field(default=100, ge=1)
    max_delay: float = Field(default=1.0, ge=0.0)
    retry_attempts: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=1.0, ge=0.0)


class WorkerSettings(BaseModel):
    # None -> one worker per CPU.
    pool_size: int | None = Field(default=None, ge=1)
    timeout: float | None = Field(default=None, gt=0.0)


class ClusterSettings(BaseModel):
    radius: float = Field(default=40.0, gt=0.0)
    max_zoom: int = Field(default=16, ge=0, le=30)
    min_zoom: int = Field(default=0, ge=0, le=30)
    min_points: int = Field(default=2, ge=2)
    extent: int = Field(default=512, ge=1)


class HistorySettings(BaseModel):
    max_history_size: int = Field(default=50, ge=1)


class PersistenceSettings(BaseModel):
    enabled: bool = True
    # Directory for the file sink; relative paths are resolved against the repo root.
    state_dir: str = "data/state"
    key: str = "map-chat-state"
    auto_save_interval: float = Field(default=30.0, gt=0.0)


class TelemetrySettings(BaseModel):
    enabled: bool = True
    path: str = "data/telemetry/commands.duckdb"


LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class AppSettings(BaseModel):
    log_level: LogLevel = "INFO"
    cache: CacheSettings = Field(default_factory=CacheSettings)
    throttle: ThrottleSettings = Field(default_factory=ThrottleSettings)
    batch: BatchSettings = Field(default_factory=BatchSettings)
    worker: WorkerSettings = Field(default_factory=WorkerSettings)
    cluster: ClusterSettings = Field(default_factory=ClusterSettings)
    history: HistorySettings = Field(default_factory=HistorySettings)
    persistence: PersistenceSettings = Field(default_factory=PersistenceSettings)
    telemetry: TelemetrySettings = Field(default_factory=TelemetrySettings)
