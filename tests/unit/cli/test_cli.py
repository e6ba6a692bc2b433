"""Tests for ccmax/cli/main.py

Commands run through Typer's CliRunner against a configuration rooted in a
temporary directory.
"""

import asyncio
import csv
import json
from datetime import timedelta
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from ccmax import __version__
from ccmax.cli.main import app
from ccmax.storage.database import Database
from ccmax.utils.time import get_day_of_week, utcnow


# ─────────────────────────────────────────────────────────────────────────────
# Setup
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner(env={"COLUMNS": "200"})


@pytest.fixture
def cli_config(config):
    with patch("ccmax.cli.main.get_config", return_value=config):
        yield config


def fetch_all(config, query: str) -> list[dict]:
    async def run():
        async with Database(config.db_path) as db:
            return await db.fetch_all(query)

    return asyncio.run(run())


# ─────────────────────────────────────────────────────────────────────────────
# Command Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestVersion:
    def test_prints_version(self, runner, cli_config):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert __version__ in result.output


class TestOptimize:
    """Tests for the optimize command."""

    def test_json_output(self, runner, cli_config):
        result = runner.invoke(app, ["optimize", "09:00", "17:00", "--json"])

        assert result.exit_code == 0
        assert json.loads(result.output)["windows"] == ["05:30", "10:30", "15:30"]

    def test_table_output(self, runner, cli_config):
        result = runner.invoke(app, ["optimize", "06:00", "18:00"])

        assert result.exit_code == 0
        for time_str in ("02:00", "07:00", "12:00", "17:00"):
            assert time_str in result.output

    def test_invalid_time(self, runner, cli_config):
        result = runner.invoke(app, ["optimize", "9am", "17:00"])

        assert result.exit_code == 1
        assert "Invalid time" in result.output

    def test_history_without_data_falls_back(self, runner, cli_config):
        result = runner.invoke(app, ["optimize", "09:00", "12:00", "--history"])

        assert result.exit_code == 0
        assert "default profile" in result.output
        assert "09:00" in result.output


class TestRecord:
    """Tests for the record command."""

    def test_records_usage_and_opens_window(self, runner, cli_config):
        result = runner.invoke(app, ["record", "40", "--at", "2025-01-15T09:20:00Z"])

        assert result.exit_code == 0
        assert "new window" in result.output

        rows = fetch_all(cli_config, "SELECT date_hour, usage_pct FROM hourly_usage")
        assert rows == [{"date_hour": "2025-01-15-09", "usage_pct": 40.0}]

    def test_later_samples_reuse_window(self, runner, cli_config):
        runner.invoke(app, ["record", "40", "--at", "2025-01-15T09:20:00Z"])
        result = runner.invoke(app, ["record", "65", "--at", "2025-01-15T10:50:00Z"])

        assert result.exit_code == 0
        assert "new window" not in result.output

        windows = fetch_all(cli_config, "SELECT active_minutes, quota_usage_pct FROM usage_windows")
        assert windows == [{"active_minutes": 90, "quota_usage_pct": 65.0}]

    def test_rejects_bad_timestamp(self, runner, cli_config):
        result = runner.invoke(app, ["record", "40", "--at", "yesterday"])
        assert result.exit_code == 1


class TestAnalyze:
    """Tests for the analyze command."""

    def test_no_data(self, runner, cli_config):
        result = runner.invoke(app, ["analyze"])

        assert result.exit_code == 0
        assert "No usage data" in result.output

    def test_saves_recommendations(self, runner, cli_config):
        day = (utcnow() - timedelta(days=2)).replace(hour=9, minute=10, second=0, microsecond=0)
        for hour, usage in ((0, 20), (1, 40), (2, 60)):
            at = (day + timedelta(hours=hour)).isoformat()
            assert runner.invoke(app, ["record", str(usage), "--at", at]).exit_code == 0

        result = runner.invoke(app, ["analyze", "--save"])

        assert result.exit_code == 0
        assert "08:45" in result.output
        assert cli_config.optimal_start_times[get_day_of_week(day)] == "08:45"
        assert cli_config.config_file.exists()


class TestAdjust:
    """Tests for the adjust command."""

    def test_status_before_first_run(self, runner, cli_config):
        result = runner.invoke(app, ["adjust", "--status"])

        assert result.exit_code == 0
        assert "not run yet" in result.output

    def test_force_without_history(self, runner, cli_config):
        result = runner.invoke(app, ["adjust", "--force"])

        assert result.exit_code == 0
        assert "Insufficient usage data" in result.output


class TestStatsAndConfig:
    """Tests for stats and config-show."""

    def test_stats(self, runner, cli_config):
        runner.invoke(app, ["record", "40", "--at", utcnow().isoformat()])
        result = runner.invoke(app, ["stats"])

        assert result.exit_code == 0
        assert "Hourly records" in result.output

    def test_config_show(self, runner, cli_config):
        result = runner.invoke(app, ["config-show"])

        assert result.exit_code == 0
        assert "ccmax Configuration" in result.output
        assert str(cli_config.db_path) in result.output


class TestSyncCommands:
    """Tests for the sync sub-commands."""

    def test_status_unconfigured(self, runner, cli_config):
        result = runner.invoke(app, ["sync", "status"])

        assert result.exit_code == 0
        assert "not configured" in result.output

    def test_push_unconfigured_fails(self, runner, cli_config):
        result = runner.invoke(app, ["sync", "push"])

        assert result.exit_code == 1
        assert "not configured" in result.output

    def test_status_configured(self, runner, cli_config):
        cli_config.sync.gist_id = "gist123"
        cli_config.sync.machine_id = "this-machine"
        result = runner.invoke(app, ["sync", "status"])

        assert result.exit_code == 0
        assert "gist123" in result.output
        assert "never" in result.output


class TestExport:
    """Tests for the export command."""

    def test_json_export(self, runner, cli_config, tmp_path):
        cli_config.sync.github_token = "ghp_secret"
        runner.invoke(app, ["record", "40", "--at", "2025-01-15T09:20:00Z"])
        runner.invoke(app, ["record", "65", "--at", "2025-01-15T10:50:00Z"])
        output = tmp_path / "export.json"

        result = runner.invoke(app, ["export", str(output)])

        assert result.exit_code == 0
        assert "Exported 2 hourly records and 1 windows." in result.output

        data = json.loads(output.read_text())
        assert [r["date_hour"] for r in data["hourly_usage"]] == ["2025-01-15-09", "2025-01-15-10"]
        assert data["windows"][0]["quota_usage_pct"] == 65.0
        assert data["baseline"] == {}
        assert "github_token" not in data["config"]["sync"]
        assert "ghp_secret" not in output.read_text()
        assert data["exported_at"]

    def test_csv_export(self, runner, cli_config, tmp_path):
        runner.invoke(app, ["record", "40", "--at", "2025-01-15T09:20:00Z"])

        result = runner.invoke(app, ["export", str(tmp_path / "usage.json"), "--csv"])

        assert result.exit_code == 0
        assert not (tmp_path / "usage.json").exists()

        with open(tmp_path / "usage-hourly.csv", newline="") as f:
            hourly = list(csv.DictReader(f))
        assert [(r["date_hour"], r["usage_pct"]) for r in hourly] == [("2025-01-15-09", "40.0")]

        with open(tmp_path / "usage-windows.csv", newline="") as f:
            reader = csv.DictReader(f)
            windows = list(reader)
        assert reader.fieldnames[:3] == ["id", "window_start", "window_end"]
        assert len(windows) == 1

    def test_empty_export(self, runner, cli_config, tmp_path):
        output = tmp_path / "empty.json"
        result = runner.invoke(app, ["export", str(output)])

        assert result.exit_code == 0
        assert "Exported 0 hourly records and 0 windows." in result.output
        assert json.loads(output.read_text())["hourly_usage"] == []


class TestClear:
    """Tests for the clear command."""

    def _seed(self, runner, config) -> None:
        runner.invoke(app, ["record", "40", "--at", "2025-01-15T09:20:00Z"])

        async def run():
            async with Database(config.db_path) as db:
                await db.set_baseline_stat("adjustment_count", 2)

        asyncio.run(run())

    def test_nothing_recorded(self, runner, cli_config):
        result = runner.invoke(app, ["clear"])

        assert result.exit_code == 0
        assert "No data to clear." in result.output

    def test_force_deletes_everything(self, runner, cli_config):
        self._seed(runner, cli_config)

        result = runner.invoke(app, ["clear", "--force"])

        assert result.exit_code == 0
        assert "Data cleared successfully." in result.output
        assert fetch_all(cli_config, "SELECT * FROM hourly_usage") == []
        assert fetch_all(cli_config, "SELECT * FROM usage_windows") == []
        assert fetch_all(cli_config, "SELECT * FROM baseline_stats") == []

    def test_declined_keeps_data(self, runner, cli_config):
        self._seed(runner, cli_config)

        result = runner.invoke(app, ["clear"], input="n\n")

        assert result.exit_code == 0
        assert "1 hourly usage records" in result.output
        assert "Cancelled." in result.output
        assert len(fetch_all(cli_config, "SELECT * FROM hourly_usage")) == 1
        assert len(fetch_all(cli_config, "SELECT * FROM baseline_stats")) == 1

    def test_confirmed_deletes(self, runner, cli_config):
        self._seed(runner, cli_config)

        result = runner.invoke(app, ["clear"], input="y\n")

        assert result.exit_code == 0
        assert "Data cleared successfully." in result.output
        assert fetch_all(cli_config, "SELECT * FROM usage_windows") == []

    def test_all_removes_config_and_cache(self, runner, cli_config):
        self._seed(runner, cli_config)
        cli_config.save()
        cli_config.sync_cache_path.write_text("{}")

        result = runner.invoke(app, ["clear", "--all", "--force"])

        assert result.exit_code == 0
        assert not cli_config.config_file.exists()
        assert not cli_config.sync_cache_path.exists()
        assert cli_config.db_path.exists()

    def test_without_all_keeps_config(self, runner, cli_config):
        self._seed(runner, cli_config)
        cli_config.save()

        runner.invoke(app, ["clear", "--force"])

        assert cli_config.config_file.exists()
