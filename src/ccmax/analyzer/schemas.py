"""Value objects shared by the aggregator, optimizer and recommendation engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ccmax.utils.time import WINDOW_DURATION_MINUTES, Weekday, format_time_from_hour_minute

__all__ = [
    "AnalyzerSettings",
    "DEFAULT_SETTINGS",
    "DailyUsage",
    "DayRecommendation",
    "HourlyActivity",
    "OptimizationResult",
    "Phase",
    "RecommendedWindow",
    "StartTimeRecommendation",
    "TriggerWindow",
    "Weekday",
    "WeeklyPattern",
]


@dataclass(frozen=True)
class AnalyzerSettings:
    """Constants for the window and recommendation algorithms.

    Passed explicitly so the same logic runs for other quota/window sizes.
    """

    window_minutes: int = WINDOW_DURATION_MINUTES
    lead_in_minutes: int = 15
    confidence_saturation_days: int = 5
    trigger_granularity_minutes: int = 15
    quota: float = 100.0
    min_useful_minutes: int = 30
    calibration_days: int = 7


DEFAULT_SETTINGS = AnalyzerSettings()


class Phase(str, Enum):
    """Learning phase, by number of days with recorded data."""

    BOOTSTRAP = "bootstrap"
    STEADY_STATE = "steady_state"


@dataclass(frozen=True)
class HourlyActivity:
    """Observed utilization in one clock hour of one day."""

    hour: int
    usage_pct: float


@dataclass(frozen=True)
class DailyUsage:
    """One calendar day of activity reduced to summary statistics."""

    date: str
    hours: tuple[HourlyActivity, ...]
    peak_hour: int
    peak_usage: float
    total_active_hours: int
    avg_usage: float

    @classmethod
    def from_hours(cls, date: str, hours: list[HourlyActivity]) -> DailyUsage:
        """Build the aggregate for a day, sorting hours chronologically."""
        ordered = tuple(sorted(hours, key=lambda h: h.hour))

        peak_hour = ordered[0].hour if ordered else 0
        peak_usage = 0.0
        total = 0.0
        for activity in ordered:
            total += activity.usage_pct
            if activity.usage_pct > peak_usage:
                peak_usage = activity.usage_pct
                peak_hour = activity.hour

        return cls(
            date=date,
            hours=ordered,
            peak_hour=peak_hour,
            peak_usage=peak_usage,
            total_active_hours=len(ordered),
            avg_usage=total / len(ordered) if ordered else 0.0,
        )

    @property
    def active_hours(self) -> list[HourlyActivity]:
        """Hours with non-zero usage."""
        return [h for h in self.hours if h.usage_pct > 0]


@dataclass(frozen=True)
class StartTimeRecommendation:
    """Recommended daily start time derived from usage history."""

    start_hour: int
    start_minute: int
    expected_utilization: float  # 0-100
    confidence: float  # reaches 1.0 at the saturation day count
    data_points: int = 0

    @property
    def time_string(self) -> str:
        return format_time_from_hour_minute(self.start_hour, self.start_minute)

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_hour": self.start_hour,
            "start_minute": self.start_minute,
            "start_time": self.time_string,
            "expected_utilization": self.expected_utilization,
            "confidence": self.confidence,
            "data_points": self.data_points,
        }


@dataclass(frozen=True)
class RecommendedWindow(StartTimeRecommendation):
    """Start time for one contiguous run of active hours on a weekday."""

    first_active_hour: int = 0
    last_active_hour: int = 0

    @property
    def active_span_hours(self) -> int:
        return self.last_active_hour - self.first_active_hour + 1

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["first_active_hour"] = self.first_active_hour
        data["last_active_hour"] = self.last_active_hour
        return data


@dataclass(frozen=True)
class DayRecommendation:
    """Per-weekday summary of history and recommended windows."""

    day: Weekday
    windows: tuple[RecommendedWindow, ...] = ()
    total_expected_hours: int = 0
    avg_usage: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "day": self.day.value,
            "windows": [w.to_dict() for w in self.windows],
            "total_expected_hours": self.total_expected_hours,
            "avg_usage": self.avg_usage,
        }


@dataclass(frozen=True)
class TriggerWindow:
    """One quota window, in minutes relative to the workday's midnight.

    ``start``/``end`` may fall outside the workday; the overlap fields hold
    the part of the window that lies inside it.
    """

    start: int
    end: int
    overlap_start: int
    overlap_end: int

    @property
    def overlap_minutes(self) -> int:
        return self.overlap_end - self.overlap_start


@dataclass(frozen=True)
class OptimizationResult:
    """Outcome of a window placement search."""

    trigger_time: int  # minutes from midnight, may be negative (previous day)
    trigger_time_formatted: str
    bucket_count: int
    min_slack: float  # quota points left in the fullest window
    edge_margin: int  # smallest boundary overlap in minutes
    is_valid: bool
    windows: tuple[TriggerWindow, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "trigger_time": self.trigger_time,
            "trigger_time_formatted": self.trigger_time_formatted,
            "bucket_count": self.bucket_count,
            "min_slack": self.min_slack,
            "edge_margin": self.edge_margin,
            "is_valid": self.is_valid,
            "windows": [
                {
                    "start": w.start,
                    "end": w.end,
                    "overlap_start": w.overlap_start,
                    "overlap_end": w.overlap_end,
                }
                for w in self.windows
            ],
        }


@dataclass
class WeeklyPattern:
    """Weekly summary built from per-weekday recommendations."""

    recommendations: dict[Weekday, DayRecommendation] = field(default_factory=dict)
    most_active_day: Weekday = Weekday.MONDAY
    least_active_day: Weekday = Weekday.MONDAY
    average_daily_hours: float = 0.0
    peak_hour: int = 0
