"""Weekly usage pattern analysis."""

from __future__ import annotations

from typing import Mapping, Sequence

from ccmax.analyzer.optimizer import calculate_day_recommendation
from ccmax.analyzer.schemas import (
    DEFAULT_SETTINGS,
    AnalyzerSettings,
    DailyUsage,
    WeeklyPattern,
)
from ccmax.utils.time import ALL_WEEKDAYS, Weekday


def analyze_weekly_patterns(
    weekday_data: Mapping[Weekday, Sequence[DailyUsage]],
    settings: AnalyzerSettings = DEFAULT_SETTINGS,
) -> WeeklyPattern:
    """Recommend windows for every weekday and summarize the week.

    Most/least active days are ranked by total active hours; weekdays with
    no history are left out of the ranking and the daily average.
    """
    pattern = WeeklyPattern()

    total_hours = 0
    days_with_data = 0
    most_hours = 0
    least_hours: int | None = None

    for day in ALL_WEEKDAYS:
        day_data = weekday_data.get(day, [])
        recommendation = calculate_day_recommendation(day, day_data, settings)
        pattern.recommendations[day] = recommendation

        if not day_data:
            continue

        hours = recommendation.total_expected_hours
        total_hours += hours
        days_with_data += 1

        if hours > most_hours:
            most_hours = hours
            pattern.most_active_day = day
        if least_hours is None or hours < least_hours:
            least_hours = hours
            pattern.least_active_day = day

    pattern.average_daily_hours = total_hours / days_with_data if days_with_data else 0.0

    hour_counts = [0] * 24
    for day_data in weekday_data.values():
        for usage in day_data:
            for activity in usage.hours:
                hour_counts[activity.hour] += 1
    if any(hour_counts):
        pattern.peak_hour = max(range(24), key=lambda h: (hour_counts[h], -h))

    return pattern
