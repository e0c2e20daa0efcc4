from __future__ import annotations

"""Runtime settings for a tandem process, read from ``TANDEM_*`` variables."""

import tempfile
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tandem.core.timer import (
    DEFAULT_LONG_BREAK_DURATION,
    DEFAULT_LONG_BREAK_INTERVAL,
    DEFAULT_SHORT_BREAK_DURATION,
    DEFAULT_WORK_DURATION,
    TimerSnapshot,
)


def default_registry_path() -> Path:
    return Path(tempfile.gettempdir()) / "tandem-rendezvous.db"


class TandemSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="TANDEM_", env_file=".env", extra="ignore")

    work_duration: int = Field(DEFAULT_WORK_DURATION, gt=0)
    short_break_duration: int = Field(DEFAULT_SHORT_BREAK_DURATION, gt=0)
    long_break_duration: int = Field(DEFAULT_LONG_BREAK_DURATION, gt=0)
    long_break_interval: int = Field(DEFAULT_LONG_BREAK_INTERVAL, ge=1)

    connect_timeout_ms: int = Field(3000, gt=0)
    tick_interval_ms: int = Field(1000, gt=0)
    rejoin_delay_ms: int = Field(1000, ge=0)
    max_rejoin_attempts: int = Field(3, ge=0)
    reconnect_delay_ms: int = Field(500, gt=0)

    bind_host: str = "127.0.0.1"
    registry_path: Path = Field(default_factory=default_registry_path)
    registry_ttl_seconds: float = Field(15.0, gt=0)
    registry_refresh_ms: int = Field(5000, gt=0)

    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {value}")
        return level

    def initial_snapshot(self) -> TimerSnapshot:
        return TimerSnapshot.initial(
            work_duration=self.work_duration,
            short_break_duration=self.short_break_duration,
            long_break_duration=self.long_break_duration,
            long_break_interval=self.long_break_interval,
        )


@lru_cache(maxsize=1)
def _cached_settings() -> TandemSettings:
    return TandemSettings()


def get_settings(**overrides: object) -> TandemSettings:
    """Returns the process settings; overrides build a fresh uncached instance."""
    if overrides:
        return TandemSettings(**overrides)
    return _cached_settings()
