"""Recommend start times from historical usage.

Both entry points are pure functions of their inputs: the same list of
``DailyUsage`` always yields the same recommendation, whichever machine the
days came from.
"""

from __future__ import annotations

from typing import Sequence

from ccmax.analyzer.schemas import (
    DEFAULT_SETTINGS,
    AnalyzerSettings,
    DailyUsage,
    DayRecommendation,
    HourlyActivity,
    RecommendedWindow,
    StartTimeRecommendation,
    Weekday,
)
from ccmax.utils.time import MINUTES_PER_DAY, format_time_from_hour_minute

__all__ = [
    "calculate_day_recommendation",
    "calculate_optimal_start_time",
    "format_time_from_hour_minute",
    "lead_in_start",
]


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def lead_in_start(hour: int, settings: AnalyzerSettings = DEFAULT_SETTINGS) -> tuple[int, int]:
    """Start time ``lead_in_minutes`` before ``hour``, wrapping past midnight."""
    minutes = (hour * 60 - settings.lead_in_minutes) % MINUTES_PER_DAY
    return minutes // 60, minutes % 60


def _confidence(active_days: int, settings: AnalyzerSettings) -> float:
    return min(1.0, active_days / settings.confidence_saturation_days)


def _active_entries(usage_data: Sequence[DailyUsage]) -> list[tuple[str, HourlyActivity]]:
    return [(day.date, h) for day in usage_data for h in day.hours if h.usage_pct > 0]


def calculate_optimal_start_time(
    usage_data: Sequence[DailyUsage],
    settings: AnalyzerSettings = DEFAULT_SETTINGS,
) -> StartTimeRecommendation | None:
    """Recommend one daily start time, just before the earliest active hour.

    Returns ``None`` when there is no history or no hour with usage.
    """
    entries = _active_entries(usage_data)
    if not entries:
        return None

    earliest = min(h.hour for _, h in entries)
    start_hour, start_minute = lead_in_start(earliest, settings)

    avg_usage = sum(h.usage_pct for _, h in entries) / len(entries)
    active_days = len({date for date, _ in entries})

    return StartTimeRecommendation(
        start_hour=start_hour,
        start_minute=start_minute,
        expected_utilization=_clamp(avg_usage, 0.0, 100.0),
        confidence=_confidence(active_days, settings),
        data_points=len(entries),
    )


def _contiguous_runs(hours: list[int]) -> list[tuple[int, int]]:
    """Collapse sorted unique hours into inclusive (first, last) runs."""
    runs: list[tuple[int, int]] = []
    for hour in hours:
        if runs and hour == runs[-1][1] + 1:
            runs[-1] = (runs[-1][0], hour)
        else:
            runs.append((hour, hour))
    return runs


def calculate_day_recommendation(
    day: Weekday | str,
    usage_data: Sequence[DailyUsage],
    settings: AnalyzerSettings = DEFAULT_SETTINGS,
) -> DayRecommendation:
    """Summarize the history of one weekday.

    ``usage_data`` is expected to hold only days that fall on ``day``. Each
    contiguous run of active hours becomes one recommended window.
    """
    day = Weekday(day)
    if not usage_data:
        return DayRecommendation(day=day)

    entries = _active_entries(usage_data)
    windows: list[RecommendedWindow] = []

    for first, last in _contiguous_runs(sorted({h.hour for _, h in entries})):
        in_run = [(date, h) for date, h in entries if first <= h.hour <= last]
        start_hour, start_minute = lead_in_start(first, settings)
        windows.append(
            RecommendedWindow(
                start_hour=start_hour,
                start_minute=start_minute,
                expected_utilization=_clamp(
                    sum(h.usage_pct for _, h in in_run) / len(in_run), 0.0, 100.0
                ),
                confidence=_confidence(len({date for date, _ in in_run}), settings),
                data_points=len(in_run),
                first_active_hour=first,
                last_active_hour=last,
            )
        )

    return DayRecommendation(
        day=day,
        windows=tuple(windows),
        total_expected_hours=sum(u.total_active_hours for u in usage_data),
        avg_usage=sum(u.avg_usage for u in usage_data) / len(usage_data),
    )
