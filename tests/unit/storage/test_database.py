"""Tests for ccmax/storage/database.py

The store keeps local rows under machine id '' and synced rows under the
sending machine's id. Local upserts keep the highest usage seen in an hour;
imports never touch rows belonging to another machine.
"""

from datetime import datetime, timedelta, timezone

import pytest

from ccmax.core.errors import StorageError
from ccmax.storage.database import LOCAL_MACHINE, Database, open_database


AT = datetime(2025, 1, 15, 9, 20, tzinfo=timezone.utc)


# ─────────────────────────────────────────────────────────────────────────────
# Connection Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestConnection:
    """Tests for connecting and schema setup."""

    async def test_creates_file_and_schema(self, tmp_path):
        async with Database(tmp_path / "nested" / "usage.db") as db:
            assert db.db_path.exists()
            row = await db.fetch_one("SELECT MAX(version) AS version FROM schema_version")
            assert row["version"] == 1

    async def test_reconnect_is_idempotent(self, tmp_path):
        db = await open_database(tmp_path / "usage.db")
        await db.connect()
        await db.close()

        db = await open_database(tmp_path / "usage.db")
        assert await db.check_integrity()
        await db.close()

    async def test_queries_need_a_connection(self, tmp_path):
        with pytest.raises(StorageError):
            await Database(tmp_path / "usage.db").fetch_all("SELECT 1")

    async def test_transaction_rolls_back(self, db):
        with pytest.raises(RuntimeError):
            async with db.transaction():
                await db.set_baseline_stat("k", 1.0)
                raise RuntimeError("boom")

        assert await db.get_baseline_stat("k") is None


# ─────────────────────────────────────────────────────────────────────────────
# Hourly Usage Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestHourlyUsage:
    """Tests for hourly usage rows."""

    async def test_upsert_keeps_hour_max(self, db):
        await db.upsert_hourly_usage(40.0, AT)
        await db.upsert_hourly_usage(25.0, AT + timedelta(minutes=10))
        await db.upsert_hourly_usage(55.0, AT + timedelta(minutes=20))

        rows = await db.get_hourly_usage_since(AT - timedelta(hours=1))
        assert len(rows) == 1
        assert rows[0]["date_hour"] == "2025-01-15-09"
        assert rows[0]["usage_pct"] == 55.0
        assert rows[0]["machine_id"] == LOCAL_MACHINE

    async def test_since_and_until(self, db):
        for hours in range(4):
            await db.upsert_hourly_usage(10.0, AT + timedelta(hours=hours))

        rows = await db.get_hourly_usage_since(AT + timedelta(hours=1), until=AT + timedelta(hours=3))
        assert [r["date_hour"] for r in rows] == ["2025-01-15-10", "2025-01-15-11"]
        assert await db.get_hourly_usage_count() == 4

    async def test_import_keeps_machines_apart(self, db):
        await db.upsert_hourly_usage(30.0, AT)
        imported = await db.import_synced_hourly_usage(
            "laptop-abc123", [{"date_hour": "2025-01-15-09", "usage_pct": 80.0}]
        )

        assert imported == 1
        rows = await db.get_hourly_usage_since(AT - timedelta(hours=1))
        assert {(r["machine_id"], r["usage_pct"]) for r in rows} == {("", 30.0), ("laptop-abc123", 80.0)}

        local = await db.get_hourly_usage_since(AT - timedelta(hours=1), local_only=True)
        assert [r["usage_pct"] for r in local] == [30.0]

    async def test_reimport_replaces_remote_value(self, db):
        rows = [{"date_hour": "2025-01-15-09", "usage_pct": 80.0}]
        await db.import_synced_hourly_usage("laptop-abc123", rows)
        await db.import_synced_hourly_usage("laptop-abc123", [{"date_hour": "2025-01-15-09", "usage_pct": 20.0}])

        stored = await db.get_hourly_usage_since(AT - timedelta(hours=1))
        assert [r["usage_pct"] for r in stored] == [20.0]

    async def test_import_refuses_local_id(self, db):
        with pytest.raises(StorageError):
            await db.import_synced_hourly_usage(LOCAL_MACHINE, [])

    async def test_clear(self, db):
        await db.upsert_hourly_usage(10.0, AT)
        await db.clear_hourly_usage()
        assert await db.get_hourly_usage_count() == 0


# ─────────────────────────────────────────────────────────────────────────────
# Window Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestWindows:
    """Tests for usage windows."""

    async def test_create_and_find_current(self, db):
        window_id = await db.create_window(AT, AT + timedelta(hours=5))

        current = await db.get_current_window(AT + timedelta(hours=2))
        assert current["id"] == window_id
        assert await db.get_current_window(AT + timedelta(hours=5)) is None

    async def test_update_utilization(self, db):
        window_id = await db.create_window(AT, AT + timedelta(hours=5))
        await db.update_window_utilization(window_id, 150, quota_usage_pct=42.0)

        window = await db.get_current_window(AT)
        assert window["active_minutes"] == 150
        assert window["utilization_pct"] == 50.0
        assert window["quota_usage_pct"] == 42.0

        await db.update_window_utilization(window_id, 300)
        window = await db.get_current_window(AT)
        assert window["utilization_pct"] == 100.0
        assert window["quota_usage_pct"] == 42.0

    async def test_windows_since(self, db):
        await db.create_window(AT - timedelta(days=2), AT - timedelta(days=2) + timedelta(hours=5))
        await db.create_window(AT, AT + timedelta(hours=5))

        windows = await db.get_windows_since(AT - timedelta(days=1))
        assert len(windows) == 1
        assert await db.get_window_count() == 2

    async def test_import_replaces_from_oldest_window(self, db):
        remote = "desktop-def456"
        old = {"window_start": "2025-01-10T09:00:00.000Z", "window_end": "2025-01-10T14:00:00.000Z"}
        recent = {"window_start": "2025-01-14T09:00:00.000Z", "window_end": "2025-01-14T14:00:00.000Z"}
        await db.import_synced_windows(remote, [old, recent])
        await db.import_synced_windows(remote, [dict(recent, active_minutes=120)])

        windows = await db.get_windows_since(datetime(2025, 1, 1, tzinfo=timezone.utc))
        assert [(w["window_start"], w["active_minutes"]) for w in windows] == [
            (old["window_start"], 0),
            (recent["window_start"], 120),
        ]

    async def test_import_never_touches_local_windows(self, db):
        await db.create_window(AT, AT + timedelta(hours=5))
        await db.import_synced_windows(
            "desktop-def456",
            [{"window_start": "2025-01-01T00:00:00.000Z", "window_end": "2025-01-01T05:00:00.000Z"}],
        )

        local = await db.get_windows_since(datetime(2025, 1, 1, tzinfo=timezone.utc), local_only=True)
        assert len(local) == 1
        assert await db.get_window_count() == 2

    async def test_import_nothing(self, db):
        assert await db.import_synced_windows("desktop-def456", []) == 0

    async def test_clear(self, db):
        await db.create_window(AT, AT + timedelta(hours=5))
        await db.clear_windows()
        assert await db.get_window_count() == 0


# ─────────────────────────────────────────────────────────────────────────────
# Stats & Maintenance Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestBaselineStats:
    """Tests for baseline stats and maintenance helpers."""

    async def test_set_and_get(self, db):
        await db.set_baseline_stat("adjustment_count", 1)
        await db.set_baseline_stat("adjustment_count", 2)

        assert await db.get_baseline_stat("adjustment_count") == 2
        assert await db.get_all_baseline_stats() == {"adjustment_count": 2}
        assert await db.get_baseline_stat("missing") is None

    async def test_clear(self, db):
        await db.set_baseline_stat("adjustment_count", 3)
        await db.clear_baseline_stats()
        assert await db.get_all_baseline_stats() == {}

    async def test_backup(self, db, tmp_path):
        backup = db.backup(tmp_path / "backups")
        assert backup.exists()
        assert backup.parent == tmp_path / "backups"
