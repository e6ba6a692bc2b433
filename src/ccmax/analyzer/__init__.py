"""Usage analysis: aggregation, window placement and start-time recommendations.

Everything in this package is pure: functions take fully loaded history or
explicit interval bounds and return new values.
"""

from ccmax.analyzer.aggregator import aggregate_by_day, get_weekday_distribution
from ccmax.analyzer.optimizer import calculate_day_recommendation, calculate_optimal_start_time
from ccmax.analyzer.patterns import analyze_weekly_patterns
from ccmax.analyzer.schemas import (
    AnalyzerSettings,
    DailyUsage,
    DayRecommendation,
    HourlyActivity,
    OptimizationResult,
    RecommendedWindow,
    StartTimeRecommendation,
    WeeklyPattern,
)
from ccmax.analyzer.trigger_optimizer import calculate_optimal_start_times, find_optimal_trigger

__all__ = [
    "AnalyzerSettings",
    "DailyUsage",
    "DayRecommendation",
    "HourlyActivity",
    "OptimizationResult",
    "RecommendedWindow",
    "StartTimeRecommendation",
    "WeeklyPattern",
    "aggregate_by_day",
    "analyze_weekly_patterns",
    "calculate_day_recommendation",
    "calculate_optimal_start_time",
    "calculate_optimal_start_times",
    "find_optimal_trigger",
    "get_weekday_distribution",
]
