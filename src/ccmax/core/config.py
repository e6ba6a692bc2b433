"""Configuration management with Pydantic and YAML support."""

from __future__ import annotations

import os
import socket
import uuid
from contextvars import ContextVar
from functools import lru_cache
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

from ccmax.analyzer.schemas import AnalyzerSettings
from ccmax.utils.time import ALL_WEEKDAYS, Weekday, is_valid_time_string

# YAML file read by Config.load; unset for directly constructed configs
_yaml_file: ContextVar[Path | None] = ContextVar("ccmax_yaml_file", default=None)

DEFAULT_WORK_DAYS = [
    Weekday.MONDAY,
    Weekday.TUESDAY,
    Weekday.WEDNESDAY,
    Weekday.THURSDAY,
    Weekday.FRIDAY,
]


class AnalyzerConfig(BaseModel):
    """Tunables for the window optimizer and recommendation engine."""

    window_minutes: int = Field(default=300, ge=15, description="Quota window length")
    lead_in_minutes: int = Field(default=15, ge=0, lt=60, description="Start this long before activity")
    confidence_saturation_days: int = Field(default=5, ge=1, description="Days of data for full confidence")
    trigger_granularity_minutes: int = Field(default=15, ge=1, le=60)
    quota: float = Field(default=100.0, gt=0, description="Usage allowed per window (percent)")
    min_useful_minutes: int = Field(default=30, ge=0, description="Smallest window overlap worth keeping")
    calibration_days: int = Field(default=7, ge=1)
    adjustment_interval_days: int = Field(default=7, ge=1, description="Re-run adaptive adjustment every N days")
    profile_lookback_days: int = Field(default=14, ge=1)
    min_profile_records: int = Field(default=10, ge=1)

    def to_settings(self) -> AnalyzerSettings:
        """Settings object passed explicitly into the pure algorithms."""
        return AnalyzerSettings(
            window_minutes=self.window_minutes,
            lead_in_minutes=self.lead_in_minutes,
            confidence_saturation_days=self.confidence_saturation_days,
            trigger_granularity_minutes=self.trigger_granularity_minutes,
            quota=self.quota,
            min_useful_minutes=self.min_useful_minutes,
            calibration_days=self.calibration_days,
        )


class WorkingHoursDay(BaseModel):
    """Start and end of the workday in HH:MM."""

    start: str = "09:00"
    end: str = "17:00"

    @field_validator("start", "end")
    @classmethod
    def _check_time(cls, value: str) -> str:
        if not is_valid_time_string(value):
            raise ValueError(f"expected HH:MM, got {value!r}")
        return value


class WorkingHoursConfig(BaseModel):
    """Manually configured working hours."""

    enabled: bool = False
    work_days: list[Weekday] = Field(default_factory=lambda: list(DEFAULT_WORK_DAYS))
    hours: dict[Weekday, WorkingHoursDay] = Field(default_factory=dict)
    auto_adjust_from_usage: bool = Field(default=True, description="Blend with usage data analysis")


class SyncConfig(BaseModel):
    """Cross-machine sync through a private GitHub gist."""

    gist_id: str | None = None
    last_sync: str | None = None
    last_sync_hash: str | None = None
    machine_id: str | None = None
    github_token: str | None = Field(default=None, description="Falls back to `gh auth token`")
    api_url: str = Field(default="https://api.github.com")
    history_days: int = Field(default=30, ge=1, description="Days of local windows to publish")
    hourly_history_hours: int = Field(default=48, ge=1, description="Hours of local usage to publish")

    @property
    def configured(self) -> bool:
        return self.gist_id is not None


class Config(BaseSettings):
    """Main application configuration."""

    model_config = SettingsConfigDict(
        env_prefix="CCMAX_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Paths
    data_dir: Path = Field(default_factory=lambda: Path.home() / ".local/share/ccmax")
    config_dir: Path = Field(default_factory=lambda: Path.home() / ".config/ccmax")

    log_level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")

    learning_period_days: int = Field(default=7, ge=1, le=365)
    auto_adjust_enabled: bool = True
    optimal_start_times: dict[Weekday, str | None] = Field(
        default_factory=lambda: {day: None for day in ALL_WEEKDAYS}
    )

    # Sub-configurations
    analyzer: AnalyzerConfig = Field(default_factory=AnalyzerConfig)
    working_hours: WorkingHoursConfig = Field(default_factory=WorkingHoursConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)

    @field_validator("optimal_start_times")
    @classmethod
    def _check_start_times(cls, value: dict[Weekday, str | None]) -> dict[Weekday, str | None]:
        times: dict[Weekday, str | None] = {day: None for day in ALL_WEEKDAYS}
        for day, time_str in value.items():
            if time_str is not None and not is_valid_time_string(time_str):
                raise ValueError(f"{day.value}: expected HH:MM, got {time_str!r}")
            times[day] = time_str
        return times

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Keyword arguments, then environment, then the YAML file, then defaults."""
        sources: list[PydanticBaseSettingsSource] = [init_settings, env_settings]
        yaml_file = _yaml_file.get()
        if yaml_file is not None:
            sources.append(YamlConfigSettingsSource(settings_cls, yaml_file=yaml_file))
        return tuple(sources)

    @property
    def db_path(self) -> Path:
        """Path to SQLite database."""
        return self.data_dir / "ccmax.db"

    @property
    def sync_cache_path(self) -> Path:
        """Last sync document seen, for offline aggregate views."""
        return self.data_dir / "sync-cache.json"

    @property
    def log_file(self) -> Path:
        return self.data_dir / "ccmax.log"

    @property
    def config_file(self) -> Path:
        """Path to YAML config file."""
        return self.config_dir / "config.yaml"

    def ensure_directories(self) -> None:
        """Create all required directories."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.config_dir.mkdir(parents=True, exist_ok=True)

        # Set restrictive permissions on data directory
        os.chmod(self.data_dir, 0o700)

    def get_machine_id(self) -> str:
        """Return this machine's sync identity, generating one on first use."""
        if not self.sync.machine_id:
            self.sync.machine_id = f"{socket.gethostname()}-{uuid.uuid4().hex[:6]}"
            self.save()
        return self.sync.machine_id

    @classmethod
    def load(cls, config_path: Path | None = None) -> Config:
        """Load configuration from YAML file, environment variables, and defaults.

        Priority (highest to lowest):
        1. Environment variables
        2. YAML config file
        3. Default values
        """
        config_path = config_path or Path.home() / ".config/ccmax/config.yaml"

        token = _yaml_file.set(config_path)
        try:
            return cls()
        finally:
            _yaml_file.reset(token)

    def save(self, config_path: Path | None = None) -> None:
        """Save current configuration to YAML file."""
        config_path = config_path or self.config_file
        config_path.parent.mkdir(parents=True, exist_ok=True)

        # Tokens stay in the environment
        data = self.model_dump(mode="json", exclude={"sync": {"github_token"}})

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

        os.chmod(config_path, 0o600)


@lru_cache
def get_config() -> Config:
    """Get cached configuration instance."""
    return Config.load()
