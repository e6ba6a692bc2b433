"""Cross-machine sync of usage history."""

from ccmax.sync.gist_sync import (
    GIST_FILENAME,
    GistSync,
    HourlyUsageData,
    MachineData,
    SyncDocument,
    SyncResult,
    WindowData,
    aggregate_hourly_usage,
)

__all__ = [
    "GIST_FILENAME",
    "GistSync",
    "HourlyUsageData",
    "MachineData",
    "SyncDocument",
    "SyncResult",
    "WindowData",
    "aggregate_hourly_usage",
]
