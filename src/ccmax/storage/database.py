"""SQLite usage store with WAL mode, built on aiosqlite.

Every row carries a ``machine_id``: ``''`` for rows recorded on this machine,
the remote machine's id for rows imported through sync. Imports only ever
touch rows tagged with the importing machine's id, so one device can never
overwrite another device's history.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Iterable

import aiosqlite

from ccmax.core.errors import StorageError
from ccmax.utils.time import (
    WINDOW_DURATION_MINUTES,
    format_date_hour,
    to_iso,
    utcnow,
)

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 1

LOCAL_MACHINE = ""

SCHEMA = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

-- Highest quota usage seen in each UTC hour, per machine
CREATE TABLE IF NOT EXISTS hourly_usage (
    date_hour TEXT NOT NULL,
    usage_pct REAL NOT NULL,
    updated_at TEXT NOT NULL,
    machine_id TEXT NOT NULL DEFAULT '',
    PRIMARY KEY (date_hour, machine_id)
);

CREATE INDEX IF NOT EXISTS idx_hourly_machine ON hourly_usage(machine_id);

-- 5-hour quota windows
CREATE TABLE IF NOT EXISTS usage_windows (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    window_start TEXT NOT NULL,
    window_end TEXT NOT NULL,
    active_minutes INTEGER DEFAULT 0,
    utilization_pct REAL DEFAULT 0,
    quota_usage_pct REAL DEFAULT 0,
    machine_id TEXT NOT NULL DEFAULT ''
);

CREATE INDEX IF NOT EXISTS idx_windows_start ON usage_windows(window_start);
CREATE INDEX IF NOT EXISTS idx_windows_machine ON usage_windows(machine_id);

-- Baseline and bookkeeping statistics
CREATE TABLE IF NOT EXISTS baseline_stats (
    key TEXT PRIMARY KEY,
    value REAL
);
"""


class Database:
    """SQLite usage store with WAL mode."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        """Initialize database connection with WAL mode."""
        if self._connection is not None:
            return

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(
            self.db_path,
            isolation_level=None,  # Autocommit mode, we handle transactions manually
        )

        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA synchronous=NORMAL")
        await self._connection.execute("PRAGMA busy_timeout=5000")

        self._connection.row_factory = aiosqlite.Row

        await self._init_schema()

        logger.info(f"Database connected: {self.db_path}")

    async def _init_schema(self) -> None:
        conn = self._require_connection()

        await conn.executescript(SCHEMA)

        async with conn.execute("SELECT MAX(version) FROM schema_version") as cursor:
            row = await cursor.fetchone()
            current_version = row[0] if row and row[0] else 0

        if current_version < SCHEMA_VERSION:
            await conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            logger.info(f"Schema updated to version {SCHEMA_VERSION}")

    def _require_connection(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise StorageError("Database not connected")
        return self._connection

    async def close(self) -> None:
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None
            logger.info("Database connection closed")

    async def __aenter__(self) -> Database:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """Context manager for database transactions."""
        conn = self._require_connection()

        async with self._lock:
            await conn.execute("BEGIN")
            try:
                yield
                await conn.execute("COMMIT")
            except Exception:
                await conn.execute("ROLLBACK")
                raise

    async def execute(self, query: str, params: tuple[Any, ...] = ()) -> int:
        """Execute a query and return last row ID."""
        conn = self._require_connection()
        cursor = await conn.execute(query, params)
        return cursor.lastrowid or 0

    async def execute_many(self, query: str, params_list: list[tuple[Any, ...]]) -> None:
        """Execute a query with multiple parameter sets."""
        conn = self._require_connection()
        await conn.executemany(query, params_list)

    async def fetch_one(self, query: str, params: tuple[Any, ...] = ()) -> dict[str, Any] | None:
        """Fetch a single row."""
        conn = self._require_connection()
        async with conn.execute(query, params) as cursor:
            row = await cursor.fetchone()
            if row:
                return dict(row)
            return None

    async def fetch_all(self, query: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
        """Fetch all rows."""
        conn = self._require_connection()
        async with conn.execute(query, params) as cursor:
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]

    # Hourly usage

    async def upsert_hourly_usage(self, usage_pct: float, at: datetime | None = None) -> None:
        """Record local usage for the hour containing ``at``, keeping the hour's max."""
        at = at or utcnow()
        await self.execute(
            """INSERT INTO hourly_usage (date_hour, usage_pct, updated_at, machine_id)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(date_hour, machine_id) DO UPDATE SET
                 usage_pct = MAX(usage_pct, excluded.usage_pct),
                 updated_at = excluded.updated_at""",
            (format_date_hour(at), usage_pct, to_iso(at), LOCAL_MACHINE),
        )

    async def get_hourly_usage_since(
        self,
        since: datetime,
        until: datetime | None = None,
        local_only: bool = False,
    ) -> list[dict[str, Any]]:
        """Hourly rows from ``since`` (inclusive) to ``until`` (exclusive), oldest first."""
        query = "SELECT * FROM hourly_usage WHERE date_hour >= ?"
        params: list[Any] = [format_date_hour(since)]
        if until is not None:
            query += " AND date_hour < ?"
            params.append(format_date_hour(until))
        if local_only:
            query += " AND machine_id = ?"
            params.append(LOCAL_MACHINE)
        query += " ORDER BY date_hour, machine_id"
        return await self.fetch_all(query, tuple(params))

    async def get_hourly_usage_count(self) -> int:
        row = await self.fetch_one("SELECT COUNT(*) AS count FROM hourly_usage")
        return row["count"] if row else 0

    async def clear_hourly_usage(self) -> None:
        await self.execute("DELETE FROM hourly_usage")

    async def import_synced_hourly_usage(
        self, machine_id: str, rows: Iterable[dict[str, Any]]
    ) -> int:
        """Store another machine's hourly rows under its own id."""
        if machine_id == LOCAL_MACHINE:
            raise StorageError("Synced rows need a machine id")

        timestamp = to_iso(utcnow())
        params = [(r["date_hour"], float(r["usage_pct"]), timestamp, machine_id) for r in rows]
        async with self.transaction():
            await self.execute_many(
                """INSERT INTO hourly_usage (date_hour, usage_pct, updated_at, machine_id)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(date_hour, machine_id) DO UPDATE SET
                     usage_pct = excluded.usage_pct,
                     updated_at = excluded.updated_at""",
                params,
            )
        return len(params)

    # Usage windows

    async def create_window(self, window_start: datetime, window_end: datetime) -> int:
        return await self.execute(
            """INSERT INTO usage_windows (window_start, window_end, active_minutes, utilization_pct, machine_id)
               VALUES (?, ?, 0, 0, ?)""",
            (to_iso(window_start), to_iso(window_end), LOCAL_MACHINE),
        )

    async def update_window_utilization(
        self,
        window_id: int,
        active_minutes: int,
        quota_usage_pct: float | None = None,
    ) -> None:
        utilization = active_minutes / WINDOW_DURATION_MINUTES * 100
        if quota_usage_pct is None:
            await self.execute(
                "UPDATE usage_windows SET active_minutes = ?, utilization_pct = ? WHERE id = ?",
                (active_minutes, utilization, window_id),
            )
        else:
            await self.execute(
                """UPDATE usage_windows
                   SET active_minutes = ?, utilization_pct = ?, quota_usage_pct = ?
                   WHERE id = ?""",
                (active_minutes, utilization, quota_usage_pct, window_id),
            )

    async def get_current_window(self, at: datetime | None = None) -> dict[str, Any] | None:
        """The local window containing ``at``, if any."""
        current = to_iso(at or utcnow())
        return await self.fetch_one(
            """SELECT * FROM usage_windows
               WHERE window_start <= ? AND window_end > ? AND machine_id = ?
               ORDER BY window_start DESC LIMIT 1""",
            (current, current, LOCAL_MACHINE),
        )

    async def get_windows_since(
        self, since: datetime, local_only: bool = False
    ) -> list[dict[str, Any]]:
        query = "SELECT * FROM usage_windows WHERE window_start >= ?"
        params: list[Any] = [to_iso(since)]
        if local_only:
            query += " AND machine_id = ?"
            params.append(LOCAL_MACHINE)
        query += " ORDER BY window_start ASC"
        return await self.fetch_all(query, tuple(params))

    async def get_window_count(self) -> int:
        row = await self.fetch_one("SELECT COUNT(*) AS count FROM usage_windows")
        return row["count"] if row else 0

    async def clear_windows(self) -> None:
        await self.execute("DELETE FROM usage_windows")

    async def import_synced_windows(self, machine_id: str, rows: list[dict[str, Any]]) -> int:
        """Replace another machine's windows from its oldest published window onward."""
        if machine_id == LOCAL_MACHINE:
            raise StorageError("Synced rows need a machine id")
        if not rows:
            return 0

        oldest = min(r["window_start"] for r in rows)
        async with self.transaction():
            await self.execute(
                "DELETE FROM usage_windows WHERE machine_id = ? AND window_start >= ?",
                (machine_id, oldest),
            )
            await self.execute_many(
                """INSERT INTO usage_windows
                   (window_start, window_end, active_minutes, utilization_pct, quota_usage_pct, machine_id)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                [
                    (
                        r["window_start"],
                        r["window_end"],
                        r.get("active_minutes", 0),
                        r.get("utilization_pct", 0.0),
                        r.get("quota_usage_pct", 0.0),
                        machine_id,
                    )
                    for r in rows
                ],
            )
        return len(rows)

    # Baseline stats

    async def set_baseline_stat(self, key: str, value: float) -> None:
        await self.execute(
            "INSERT OR REPLACE INTO baseline_stats (key, value) VALUES (?, ?)",
            (key, value),
        )

    async def get_baseline_stat(self, key: str) -> float | None:
        row = await self.fetch_one("SELECT value FROM baseline_stats WHERE key = ?", (key,))
        return row["value"] if row else None

    async def get_all_baseline_stats(self) -> dict[str, float]:
        rows = await self.fetch_all("SELECT key, value FROM baseline_stats")
        return {row["key"]: row["value"] for row in rows}

    async def clear_baseline_stats(self) -> None:
        await self.execute("DELETE FROM baseline_stats")

    # Maintenance

    async def check_integrity(self) -> bool:
        """Check database integrity."""
        conn = self._require_connection()
        async with conn.execute("PRAGMA integrity_check") as cursor:
            row = await cursor.fetchone()
            is_ok = row is not None and row[0] == "ok"

        if not is_ok:
            logger.error("Database integrity check failed!")
        return is_ok

    async def get_size_mb(self) -> float:
        """Get database file size in MB."""
        if self.db_path.exists():
            return self.db_path.stat().st_size / (1024 * 1024)
        return 0.0

    def backup(self, backup_dir: Path | None = None) -> Path:
        """Create a backup of the database (synchronous)."""
        backup_dir = backup_dir or self.db_path.parent / "backups"
        backup_dir.mkdir(parents=True, exist_ok=True)

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        backup_path = backup_dir / f"ccmax_{timestamp}.db"

        shutil.copy2(self.db_path, backup_path)
        logger.info(f"Database backed up to: {backup_path}")
        return backup_path


async def open_database(db_path: Path | None = None) -> Database:
    """Connect to the usage database (default location from config)."""
    if db_path is None:
        from ccmax.core.config import get_config
        db_path = get_config().db_path
    db = Database(db_path)
    await db.connect()
    return db
