"""Window placement optimizer.

Chooses when to trigger the first quota window of a workday. Windows then
follow back to back, one every ``window_minutes``. A placement is judged by,
in order:

1. Validity: no window's expected usage exceeds the quota.
2. Bucket count: how many windows carry useful work time.
3. Minimum slack: quota headroom in the fullest window, then the smallest
   boundary overlap, so spare time is spread over both ends of the day.
4. The earliest first window wins any remaining tie.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Sequence

from ccmax.analyzer.schemas import (
    DEFAULT_SETTINGS,
    AnalyzerSettings,
    OptimizationResult,
    Phase,
    TriggerWindow,
)
from ccmax.utils.time import (
    MINUTES_PER_DAY,
    date_hour_to_datetime,
    from_iso,
    minutes_to_time_string,
    parse_date_hour,
    parse_time_to_minutes,
)

logger = logging.getLogger(__name__)

# Expected usage points per clock hour (0-23)
HourlyProfile = dict[int, float]


@dataclass(frozen=True)
class UsageLogEntry:
    """Actual usage in one hour bucket of one recorded day."""

    day: int  # index of the day in the recorded history
    hour: int
    usage: float


def get_default_profile(settings: AnalyzerSettings = DEFAULT_SETTINGS) -> HourlyProfile:
    """Uniform profile spreading the quota over ten hours of work."""
    return {hour: settings.quota / 10 for hour in range(24)}


def _clamp(x: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, x))


def windows_for_trigger(
    trigger: int,
    work_start: int,
    work_end: int,
    settings: AnalyzerSettings = DEFAULT_SETTINGS,
) -> list[TriggerWindow]:
    """Windows produced by triggering at ``trigger`` that carry useful work time.

    All values are minutes relative to the workday's midnight; ``work_end``
    may exceed 1440 for workdays that cross midnight. A window is kept when
    its overlap with the workday is at least ``min_useful_minutes``.
    """
    length = settings.window_minutes
    min_overlap = max(1, settings.min_useful_minutes)
    windows: list[TriggerWindow] = []

    start = trigger
    while start < work_end:
        end = start + length
        overlap_start = _clamp(start, work_start, work_end)
        overlap_end = _clamp(end, work_start, work_end)
        if overlap_end - overlap_start >= min_overlap:
            windows.append(TriggerWindow(start, end, overlap_start, overlap_end))
        start = end

    return windows


def expected_window_usage(profile: HourlyProfile, window: TriggerWindow) -> float:
    """Profile usage over the window's work overlap, weighted by hour fraction."""
    total = 0.0
    first_slot = window.overlap_start // 60
    last_slot = -(-window.overlap_end // 60)  # ceil

    for slot in range(first_slot, last_slot):
        overlap = min((slot + 1) * 60, window.overlap_end) - max(slot * 60, window.overlap_start)
        if overlap > 0:
            total += profile.get(slot % 24, 0.0) * overlap / 60

    return total


def is_valid_trigger(
    profile: HourlyProfile,
    trigger: int,
    work_start: int,
    work_end: int,
    settings: AnalyzerSettings = DEFAULT_SETTINGS,
) -> bool:
    """A trigger is valid if it yields windows and none of them exceeds quota."""
    windows = windows_for_trigger(trigger, work_start, work_end, settings)
    if not windows:
        return False
    return all(expected_window_usage(profile, w) <= settings.quota for w in windows)


def min_slack(
    profile: HourlyProfile,
    trigger: int,
    work_start: int,
    work_end: int,
    settings: AnalyzerSettings = DEFAULT_SETTINGS,
) -> float:
    """Quota headroom left in the fullest window (negative when overrun)."""
    windows = windows_for_trigger(trigger, work_start, work_end, settings)
    if not windows:
        return 0.0
    return min(settings.quota - expected_window_usage(profile, w) for w in windows)


def edge_margin(windows: Sequence[TriggerWindow]) -> int:
    """Smaller of the first and last window's overlap with the workday."""
    if not windows:
        return 0
    return min(windows[0].overlap_minutes, windows[-1].overlap_minutes)


def _result(
    profile: HourlyProfile,
    trigger: int,
    windows: Sequence[TriggerWindow],
    settings: AnalyzerSettings,
    is_valid: bool,
) -> OptimizationResult:
    slack = (
        min(settings.quota - expected_window_usage(profile, w) for w in windows)
        if windows
        else 0.0
    )
    return OptimizationResult(
        trigger_time=trigger,
        trigger_time_formatted=minutes_to_time_string(trigger % MINUTES_PER_DAY),
        bucket_count=len(windows),
        min_slack=slack,
        edge_margin=edge_margin(windows),
        is_valid=is_valid,
        windows=tuple(windows),
    )


def find_optimal_trigger(
    profile: HourlyProfile,
    work_start: int,
    work_end: int,
    settings: AnalyzerSettings = DEFAULT_SETTINGS,
) -> OptimizationResult:
    """Search trigger times for the best window placement over a workday.

    Candidates start at ``work_start`` and step back by the trigger
    granularity, as long as the first window still overlaps the workday by
    ``min_useful_minutes``. Workdays shorter than one window get a single
    window at ``work_start``; if no candidate is valid the result also falls
    back to ``work_start`` with ``is_valid=False``.
    """
    if work_end < work_start:
        work_end += MINUTES_PER_DAY

    length = settings.window_minutes
    if work_end - work_start < length:
        window = TriggerWindow(work_start, work_start + length, work_start, work_end)
        usage = expected_window_usage(profile, window)
        return _result(profile, work_start, [window], settings, usage <= settings.quota)

    earliest = work_start - (length - settings.min_useful_minutes)
    step = settings.trigger_granularity_minutes
    offsets = range(0, work_start - earliest + 1, step)
    candidates = sorted(work_start - offset for offset in offsets)

    best: tuple[int, list[TriggerWindow]] | None = None
    best_key: tuple[int, float, int] | None = None

    for trigger in candidates:
        windows = windows_for_trigger(trigger, work_start, work_end, settings)
        if not windows:
            continue
        usages = [expected_window_usage(profile, w) for w in windows]
        if max(usages) > settings.quota:
            continue

        key = (len(windows), round(settings.quota - max(usages), 6), edge_margin(windows))
        if best_key is None or key > best_key:
            best, best_key = (trigger, windows), key

    if best is None:
        logger.debug(
            f"No valid trigger for {work_start}-{work_end}, falling back to work start"
        )
        windows = windows_for_trigger(work_start, work_start, work_end, settings)
        return _result(profile, work_start, windows, settings, False)

    trigger, windows = best
    return _result(profile, trigger, windows, settings, True)


def calculate_optimal_start_times(
    work_start: str,
    work_end: str,
    profile: HourlyProfile | None = None,
    settings: AnalyzerSettings = DEFAULT_SETTINGS,
) -> list[str]:
    """Window start times ("HH:MM", chronological) for a workday.

    Always returns at least one time. A zero-length interval returns its
    start; an end before the start is read as crossing midnight.
    """
    start = parse_time_to_minutes(work_start)
    end = parse_time_to_minutes(work_end)

    if start == end:
        return [minutes_to_time_string(start)]

    result = find_optimal_trigger(profile or get_default_profile(settings), start, end, settings)
    if not result.windows:
        return [minutes_to_time_string(start)]
    return [minutes_to_time_string(w.start % MINUTES_PER_DAY) for w in result.windows]


# Profile building from recorded history


def compute_hourly_mean(log: Iterable[UsageLogEntry], hour: int) -> float:
    """Mean usage of one hour bucket across the logged days."""
    values = [entry.usage for entry in log if entry.hour == hour]
    if not values:
        return 0.0
    return sum(values) / len(values)


def build_profile(log: Sequence[UsageLogEntry]) -> HourlyProfile:
    return {hour: compute_hourly_mean(log, hour) for hour in range(24)}


def _find_window_id(timestamp: datetime, windows: Sequence[dict[str, Any]]) -> int | None:
    for window in windows:
        if from_iso(window["window_start"]) <= timestamp < from_iso(window["window_end"]):
            return window["id"]
    return None


def compute_actual_hourly_usage(
    hourly_records: Sequence[dict[str, Any]],
    windows: Sequence[dict[str, Any]],
) -> list[UsageLogEntry]:
    """Turn cumulative per-hour maxima into the usage spent in each hour.

    Stored usage is the cumulative quota percentage reached in a window, so
    the usage of an hour is the increase over the previous hour of the same
    window. The counter resets whenever a new window starts; hours that fall
    in no recorded window keep their stored value.
    """
    if not hourly_records:
        return []

    records = sorted(hourly_records, key=lambda r: r["date_hour"])
    ordered_windows = sorted(windows, key=lambda w: w["window_start"])

    days = sorted({parse_date_hour(r["date_hour"])[0] for r in records})
    day_index = {day: i for i, day in enumerate(days)}

    result: list[UsageLogEntry] = []
    prev_window: int | None = None
    prev_cumulative = 0.0

    for record in records:
        date, hour = parse_date_hour(record["date_hour"])
        window_id = _find_window_id(date_hour_to_datetime(record["date_hour"]), ordered_windows)

        # Rows outside any known window are taken as-is
        if window_id is None or window_id != prev_window:
            prev_cumulative = 0.0
        prev_window = window_id

        usage = float(record["usage_pct"])
        result.append(
            UsageLogEntry(day=day_index[date], hour=hour, usage=max(0.0, usage - prev_cumulative))
        )
        prev_cumulative = usage

    return result


def build_profile_from_records(
    hourly_records: Sequence[dict[str, Any]],
    windows: Sequence[dict[str, Any]],
) -> HourlyProfile:
    """Usage profile for ``find_optimal_trigger`` from stored history."""
    return build_profile(compute_actual_hourly_usage(hourly_records, windows))


def count_wait_events(
    hourly_records: Sequence[dict[str, Any]],
    windows: Sequence[dict[str, Any]],
) -> int:
    """Windows where usage reached 100% before the window reset."""
    hour = timedelta(hours=1)
    waits = 0

    for window in windows:
        start = from_iso(window["window_start"])
        end = from_iso(window["window_end"])
        peak = None
        for record in hourly_records:
            ts = date_hour_to_datetime(record["date_hour"])
            if ts >= start and ts + hour < end:
                peak = max(peak or 0.0, float(record["usage_pct"]))
        if peak is not None and peak >= 100:
            waits += 1

    return waits


def calculate_wasted_quota(
    hourly_records: Sequence[dict[str, Any]],
    windows: Sequence[dict[str, Any]],
) -> float:
    """Quota left unused when windows reset, summed over all windows."""
    wasted = 0.0

    for window in windows:
        start = from_iso(window["window_start"])
        end = from_iso(window["window_end"])
        last_usage = None
        for record in sorted(hourly_records, key=lambda r: r["date_hour"]):
            if start <= date_hour_to_datetime(record["date_hour"]) < end:
                last_usage = float(record["usage_pct"])
        if last_usage is not None and last_usage < 100:
            wasted += 100 - last_usage

    return wasted


def determine_phase(day_count: int, calibration_days: int = DEFAULT_SETTINGS.calibration_days) -> Phase:
    """Bootstrap until enough days are recorded, then steady state."""
    if day_count < calibration_days:
        return Phase.BOOTSTRAP
    return Phase.STEADY_STATE
