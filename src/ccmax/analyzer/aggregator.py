"""Aggregate stored hourly usage records into per-day summaries."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Iterable

from ccmax.analyzer.schemas import DailyUsage, HourlyActivity
from ccmax.utils.time import ALL_WEEKDAYS, Weekday, parse_date_hour, weekday_for_date

logger = logging.getLogger(__name__)


def aggregate_by_day(records: Iterable[dict[str, Any]]) -> dict[str, DailyUsage]:
    """Group hourly records ("date_hour", "usage_pct") by calendar day.

    Several machines can report the same hour; the highest usage wins.
    The result is ordered by date.
    """
    by_day: dict[str, dict[int, float]] = defaultdict(dict)

    for record in records:
        try:
            date, hour = parse_date_hour(record["date_hour"])
        except ValueError:
            logger.warning(f"Skipping malformed hourly record: {record.get('date_hour')!r}")
            continue
        if not 0 <= hour < 24:
            continue

        usage = float(record["usage_pct"])
        hours = by_day[date]
        hours[hour] = max(usage, hours.get(hour, usage))

    return {
        date: DailyUsage.from_hours(
            date, [HourlyActivity(hour=h, usage_pct=u) for h, u in by_day[date].items()]
        )
        for date in sorted(by_day)
    }


def get_hourly_distribution(records: Iterable[dict[str, Any]]) -> list[int]:
    """Count of records per clock hour (24 buckets)."""
    counts = [0] * 24
    for record in records:
        _, hour = parse_date_hour(record["date_hour"])
        if 0 <= hour < 24:
            counts[hour] += 1
    return counts


def get_hourly_avg_usage(records: Iterable[dict[str, Any]]) -> list[float]:
    """Average usage per clock hour (24 buckets, 0 where no data)."""
    totals = [0.0] * 24
    counts = [0] * 24
    for record in records:
        _, hour = parse_date_hour(record["date_hour"])
        if 0 <= hour < 24:
            totals[hour] += float(record["usage_pct"])
            counts[hour] += 1
    return [total / count if count else 0.0 for total, count in zip(totals, counts)]


def get_weekday_distribution(
    daily_usage: dict[str, DailyUsage],
) -> dict[Weekday, list[DailyUsage]]:
    """Bucket daily aggregates by UTC weekday; every weekday is present."""
    result: dict[Weekday, list[DailyUsage]] = {day: [] for day in ALL_WEEKDAYS}
    for date, usage in daily_usage.items():
        result[weekday_for_date(date)].append(usage)
    return result
