"""Tests for ccmax/core/config.py

Configuration is loaded from YAML with environment overrides and written
back by the analyze and adjust commands, so round-tripping matters.
"""

import pytest
import yaml
from pydantic import ValidationError

from ccmax.analyzer.schemas import AnalyzerSettings
from ccmax.core.config import Config, WorkingHoursDay
from ccmax.utils.time import ALL_WEEKDAYS, Weekday


class TestDefaults:
    """Tests for default configuration values."""

    def test_every_weekday_has_a_start_time_slot(self, config):
        assert set(config.optimal_start_times) == set(ALL_WEEKDAYS)
        assert all(value is None for value in config.optimal_start_times.values())

    def test_paths_derive_from_directories(self, config):
        assert config.db_path == config.data_dir / "ccmax.db"
        assert config.config_file == config.config_dir / "config.yaml"

    def test_sync_not_configured(self, config):
        assert config.sync.configured is False

    def test_analyzer_settings(self, config):
        settings = config.analyzer.to_settings()
        assert isinstance(settings, AnalyzerSettings)
        assert settings == AnalyzerSettings()


class TestValidation:
    """Tests for field validators."""

    def test_rejects_bad_start_time(self, tmp_path):
        with pytest.raises(ValidationError):
            Config(config_dir=tmp_path, optimal_start_times={"monday": "8am"})

    def test_partial_start_times_are_filled(self, tmp_path):
        config = Config(config_dir=tmp_path, optimal_start_times={"friday": "08:45"})
        assert config.optimal_start_times[Weekday.FRIDAY] == "08:45"
        assert config.optimal_start_times[Weekday.MONDAY] is None

    def test_rejects_bad_working_hours(self):
        with pytest.raises(ValidationError):
            WorkingHoursDay(start="9", end="17:00")

    def test_rejects_unknown_weekday(self, tmp_path):
        with pytest.raises(ValidationError):
            Config(config_dir=tmp_path, optimal_start_times={"funday": "08:00"})


class TestPersistence:
    """Tests for Config.save and Config.load."""

    def test_round_trip(self, config):
        config.optimal_start_times[Weekday.MONDAY] = "07:45"
        config.working_hours.enabled = True
        config.save()

        loaded = Config.load(config.config_file)
        assert loaded.optimal_start_times[Weekday.MONDAY] == "07:45"
        assert loaded.working_hours.enabled is True

    def test_token_is_not_written(self, config):
        config.sync.github_token = "ghp_secret"
        config.save()

        data = yaml.safe_load(config.config_file.read_text())
        assert "github_token" not in data["sync"]

    def test_file_is_private(self, config):
        config.save()
        assert config.config_file.stat().st_mode & 0o777 == 0o600

    def test_missing_file_gives_defaults(self, tmp_path):
        loaded = Config.load(tmp_path / "missing.yaml")
        assert loaded.auto_adjust_enabled is True

    def test_environment_overrides_saved_file(self, config, monkeypatch):
        """A saved file holds every field; env vars must still win over it."""
        config.analyzer.lead_in_minutes = 30
        config.save()
        monkeypatch.setenv("CCMAX_ANALYZER__QUOTA", "80")
        monkeypatch.setenv("CCMAX_AUTO_ADJUST_ENABLED", "false")

        loaded = Config.load(config.config_file)

        assert loaded.analyzer.quota == 80
        assert loaded.auto_adjust_enabled is False
        assert loaded.analyzer.lead_in_minutes == 30

    def test_saved_file_overrides_defaults(self, config):
        config.learning_period_days = 21
        config.save()

        assert Config.load(config.config_file).learning_period_days == 21


class TestMachineId:
    """Tests for Config.get_machine_id."""

    def test_generated_once_and_saved(self, config):
        first = config.get_machine_id()
        assert first == config.get_machine_id()
        assert config.config_file.exists()

        loaded = Config.load(config.config_file)
        assert loaded.sync.machine_id == first
