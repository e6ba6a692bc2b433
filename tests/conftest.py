"""Shared test fixtures for ccmax tests.

This module provides common fixtures used across all test modules:
- Isolated configuration rooted in a temporary directory
- A connected usage database per test
- Builders for hourly records and daily aggregates

Usage:
    async def test_something(db):
        # db is connected and closed automatically
        ...
"""

from collections.abc import AsyncIterator
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from ccmax.analyzer.schemas import DailyUsage, HourlyActivity
from ccmax.core.config import Config
from ccmax.storage.database import Database


# ─────────────────────────────────────────────────────────────────────────────
# Configuration Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Config:
    """Configuration with data and config directories under tmp_path."""
    for key in ("GITHUB_TOKEN", "CCMAX_LOG_LEVEL", "CCMAX_AUTO_ADJUST_ENABLED"):
        monkeypatch.delenv(key, raising=False)

    return Config(
        data_dir=tmp_path / "data",
        config_dir=tmp_path / "config",
    )


# ─────────────────────────────────────────────────────────────────────────────
# Database Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
async def db(tmp_path: Path) -> AsyncIterator[Database]:
    """Connected database in a temporary file."""
    database = Database(tmp_path / "usage.db")
    await database.connect()

    yield database

    await database.close()


# ─────────────────────────────────────────────────────────────────────────────
# Data Builders
# ─────────────────────────────────────────────────────────────────────────────


def make_day(date: str, usage: dict[int, float]) -> DailyUsage:
    """DailyUsage for ``date`` from an {hour: usage_pct} mapping."""
    return DailyUsage.from_hours(
        date, [HourlyActivity(hour=h, usage_pct=u) for h, u in usage.items()]
    )


def make_records(date: str, usage: dict[int, float]) -> list[dict]:
    """Hourly storage rows for ``date`` from an {hour: usage_pct} mapping."""
    return [{"date_hour": f"{date}-{h:02d}", "usage_pct": u} for h, u in usage.items()]


@pytest.fixture
def fixed_now() -> datetime:
    """A Wednesday at noon UTC."""
    return datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def week_of_records(fixed_now: datetime) -> list[dict]:
    """Five weekdays of steady usage from 09:00 to 16:59 before fixed_now."""
    records: list[dict] = []
    for days_back in range(1, 8):
        day = fixed_now - timedelta(days=days_back)
        if day.weekday() >= 5:
            continue
        date = day.strftime("%Y-%m-%d")
        records.extend(make_records(date, {h: 10.0 for h in range(9, 17)}))
    return records
