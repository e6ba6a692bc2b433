"""Adaptive adjustment of saved start times.

Every ``adjustment_interval_days`` the optimizer is re-run for each configured
work day against a profile built from recent history, and any start time that
changed is written back to the config.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from ccmax.analyzer.trigger_optimizer import build_profile_from_records, find_optimal_trigger
from ccmax.utils.time import MINUTES_PER_DAY, Weekday, minutes_to_time_string, parse_time_to_minutes, utcnow

if TYPE_CHECKING:
    from ccmax.core.config import Config
    from ccmax.storage.database import Database

logger = logging.getLogger(__name__)

LAST_ADJUSTMENT_KEY = "last_adjustment_timestamp"
ADJUSTMENT_COUNT_KEY = "adjustment_count"


@dataclass
class StartTimeChange:
    day: Weekday
    old_time: str | None
    new_time: str | None


@dataclass
class OptimizationInfo:
    profile_built: bool = False
    bucket_count: int = 0
    min_slack: float = 0.0
    is_valid: bool = False


@dataclass
class AdjustmentResult:
    adjusted: bool
    reason: str
    changes: list[StartTimeChange] = field(default_factory=list)
    optimization: OptimizationInfo = field(default_factory=OptimizationInfo)

    def to_dict(self) -> dict[str, Any]:
        return {
            "adjusted": self.adjusted,
            "reason": self.reason,
            "changes": [
                {"day": c.day.value, "old_time": c.old_time, "new_time": c.new_time}
                for c in self.changes
            ],
            "optimization": {
                "profile_built": self.optimization.profile_built,
                "bucket_count": self.optimization.bucket_count,
                "min_slack": self.optimization.min_slack,
                "is_valid": self.optimization.is_valid,
            },
        }


async def should_run_adjustment(db: Database, config: Config, now: datetime | None = None) -> bool:
    """True when auto-adjust is on and the last run is old enough."""
    if not config.auto_adjust_enabled:
        return False

    last = await db.get_baseline_stat(LAST_ADJUSTMENT_KEY)
    if last is None:
        return True

    now = now or utcnow()
    elapsed = now - datetime.fromtimestamp(last, tz=timezone.utc)
    return elapsed >= timedelta(days=config.analyzer.adjustment_interval_days)


async def run_adaptive_adjustment(
    db: Database, config: Config, now: datetime | None = None
) -> AdjustmentResult:
    """Re-optimize each configured work day and save changed start times.

    A work end earlier than its start is a shift that crosses midnight and is
    optimized as such; days whose start equals their end are skipped.
    """
    if not config.auto_adjust_enabled:
        return AdjustmentResult(False, "Auto-adjustment is disabled")

    working_hours = config.working_hours
    if working_hours.enabled and not working_hours.auto_adjust_from_usage:
        return AdjustmentResult(False, "Manual working hours configured without usage blending")

    now = now or utcnow()
    since = now - timedelta(days=config.analyzer.profile_lookback_days)
    hourly = await db.get_hourly_usage_since(since)
    if len(hourly) < config.analyzer.min_profile_records:
        return AdjustmentResult(False, "Insufficient usage data for optimization")

    windows = await db.get_windows_since(since)
    profile = build_profile_from_records(hourly, windows)
    settings = config.analyzer.to_settings()

    changes: list[StartTimeChange] = []
    info = OptimizationInfo(profile_built=True)

    for day in working_hours.work_days:
        day_hours = working_hours.hours.get(day)
        if day_hours is None:
            continue

        start = parse_time_to_minutes(day_hours.start)
        end = parse_time_to_minutes(day_hours.end)
        if end == start:
            logger.warning(f"Skipping {day.value}: work start and end are both {day_hours.start}")
            continue

        result = find_optimal_trigger(profile, start, end, settings)
        info = OptimizationInfo(True, result.bucket_count, result.min_slack, result.is_valid)

        new_time = (
            minutes_to_time_string(result.windows[0].start % MINUTES_PER_DAY)
            if result.windows
            else None
        )
        old_time = config.optimal_start_times.get(day)
        if new_time != old_time:
            changes.append(StartTimeChange(day, old_time, new_time))
            config.optimal_start_times[day] = new_time

    if not changes:
        return AdjustmentResult(False, "No changes needed - current times are optimal", [], info)

    config.save()
    await db.set_baseline_stat(LAST_ADJUSTMENT_KEY, now.timestamp())
    count = await db.get_baseline_stat(ADJUSTMENT_COUNT_KEY) or 0
    await db.set_baseline_stat(ADJUSTMENT_COUNT_KEY, count + 1)

    logger.info(f"Adjusted start times for {len(changes)} day(s)")
    return AdjustmentResult(True, f"Adjusted {len(changes)} day(s)", changes, info)


async def get_last_adjustment_info(db: Database, now: datetime | None = None) -> dict[str, Any]:
    """When the last adjustment ran and how many have run."""
    last = await db.get_baseline_stat(LAST_ADJUSTMENT_KEY)
    if last is None:
        return {"timestamp": None, "count": 0, "days_since": None}

    count = await db.get_baseline_stat(ADJUSTMENT_COUNT_KEY) or 0
    timestamp = datetime.fromtimestamp(last, tz=timezone.utc)
    days_since = ((now or utcnow()) - timestamp).days
    return {"timestamp": timestamp, "count": int(count), "days_since": days_since}
