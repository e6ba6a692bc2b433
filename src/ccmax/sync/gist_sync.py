"""Cross-machine sync through a private GitHub gist.

The gist holds one JSON document, ``ccmax-sync.json``, with a sub-record per
machine. A push fetches the document, replaces only this machine's record and
writes it back; a pull imports every other machine's rows into the local
database under that machine's id. Recommendations built afterwards do not
care which machine a row came from.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import socket
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any

import aiohttp
from pydantic import BaseModel, Field, ValidationError

from ccmax.core.errors import SyncError
from ccmax.utils.time import Weekday, from_iso, now, parse_date_hour, utcnow

if TYPE_CHECKING:
    from ccmax.core.config import Config
    from ccmax.storage.database import Database

logger = logging.getLogger(__name__)

GIST_FILENAME = "ccmax-sync.json"
GIST_DESCRIPTION = "ccmax usage data sync"
DOCUMENT_VERSION = 1


class WindowData(BaseModel):
    window_start: str
    window_end: str
    active_minutes: int = 0
    utilization_pct: float = 0.0
    quota_usage_pct: float = 0.0


class HourlyUsageData(BaseModel):
    date_hour: str
    usage_pct: float


class MachineData(BaseModel):
    machine_id: str
    hostname: str
    last_update: str
    windows: list[WindowData] = Field(default_factory=list)
    hourly_usage: list[HourlyUsageData] = Field(default_factory=list)


class SyncDocument(BaseModel):
    """The shared document, keyed by machine id."""

    version: int = DOCUMENT_VERSION
    updated_at: str = Field(default_factory=now)
    optimal_start_times: dict[Weekday, str | None] | None = None
    optimal_start_times_updated_at: str | None = None
    machines: dict[str, MachineData] = Field(default_factory=dict)

    def with_machine(self, data: MachineData) -> SyncDocument:
        """Copy of the document with one machine's record replaced.

        Other machines' records are carried over untouched.
        """
        machines = dict(self.machines)
        machines[data.machine_id] = data
        return self.model_copy(update={"machines": machines, "updated_at": now()})

    def to_json(self) -> str:
        return self.model_dump_json(indent=2)


@dataclass
class SyncResult:
    success: bool
    message: str
    document: SyncDocument | None = None


def hash_payload(windows: list[WindowData], hourly: list[HourlyUsageData]) -> str:
    """Fingerprint of this machine's published rows, for change detection."""
    parts = [f"{w.window_start}:{w.active_minutes}:{w.quota_usage_pct}" for w in windows]
    parts.append("|")
    parts.extend(f"{h.date_hour}:{h.usage_pct}" for h in hourly)
    return hashlib.sha1("|".join(parts).encode()).hexdigest()[:16]


def aggregate_hourly_usage(
    document: SyncDocument,
    machine_id: str,
    local_hourly: list[HourlyUsageData],
    since_key: str,
) -> dict[int, float]:
    """Highest usage per clock hour across all machines since ``since_key``.

    This machine's rows come from ``local_hourly`` rather than the document,
    which may be stale.
    """
    sources = [
        local_hourly if mid == machine_id else machine.hourly_usage
        for mid, machine in document.machines.items()
    ]
    if machine_id not in document.machines:
        sources.append(local_hourly)

    peak: dict[int, float] = {}
    for rows in sources:
        for row in rows:
            if row.date_hour < since_key:
                continue
            try:
                _, hour = parse_date_hour(row.date_hour)
            except ValueError:
                logger.warning(f"Skipping malformed synced hour: {row.date_hour!r}")
                continue
            peak[hour] = max(peak.get(hour, 0.0), row.usage_pct)
    return dict(sorted(peak.items()))


class GistSync:
    """Pushes and pulls usage snapshots through a GitHub gist."""

    def __init__(self, config: Config, db: Database):
        self.config = config
        self.db = db
        self.api_url = config.sync.api_url.rstrip("/")

    async def get_token(self) -> str | None:
        """GitHub token from config, ``GITHUB_TOKEN``, or the gh CLI."""
        token = self.config.sync.github_token or os.environ.get("GITHUB_TOKEN")
        if token:
            return token

        try:
            proc = await asyncio.create_subprocess_exec(
                "gh", "auth", "token",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, _ = await proc.communicate()
        except OSError as e:
            logger.warning(f"gh CLI not available: {e}")
            return None

        if proc.returncode == 0 and stdout.strip():
            return stdout.decode().strip()
        return None

    def _headers(self, token: str) -> dict[str, str]:
        return {
            "Authorization": f"token {token}",
            "Accept": "application/vnd.github+json",
            "User-Agent": "ccmax",
        }

    # Gist API

    async def find_existing_gist(self, session: aiohttp.ClientSession, token: str) -> str | None:
        """Look through the user's first 100 gists for the sync file."""
        async with session.get(
            f"{self.api_url}/gists",
            params={"per_page": "100"},
            headers=self._headers(token),
        ) as resp:
            if resp.status != 200:
                raise SyncError(f"Failed to list gists: {resp.status}")
            gists = await resp.json()

        for gist in gists:
            if GIST_FILENAME in (gist.get("files") or {}):
                return gist["id"]
        return None

    async def create_gist(self, session: aiohttp.ClientSession, token: str) -> str:
        payload = {
            "description": GIST_DESCRIPTION,
            "public": False,
            "files": {GIST_FILENAME: {"content": SyncDocument().to_json()}},
        }
        async with session.post(
            f"{self.api_url}/gists", json=payload, headers=self._headers(token)
        ) as resp:
            if resp.status not in (200, 201):
                text = await resp.text()
                raise SyncError(f"Failed to create gist: {resp.status} - {text}")
            data = await resp.json()
        return data["id"]

    async def fetch_document(
        self, session: aiohttp.ClientSession, token: str, gist_id: str
    ) -> SyncDocument:
        async with session.get(
            f"{self.api_url}/gists/{gist_id}", headers=self._headers(token)
        ) as resp:
            if resp.status != 200:
                raise SyncError(f"Failed to fetch gist {gist_id}: {resp.status}")
            data = await resp.json()

        file = (data.get("files") or {}).get(GIST_FILENAME)
        if not file:
            raise SyncError("Sync file not found in gist")

        try:
            return SyncDocument.model_validate_json(file["content"])
        except ValidationError as e:
            raise SyncError(f"Malformed sync document: {e}") from e

    async def update_document(
        self,
        session: aiohttp.ClientSession,
        token: str,
        gist_id: str,
        document: SyncDocument,
    ) -> None:
        payload = {"files": {GIST_FILENAME: {"content": document.to_json()}}}
        async with session.patch(
            f"{self.api_url}/gists/{gist_id}", json=payload, headers=self._headers(token)
        ) as resp:
            if resp.status != 200:
                text = await resp.text()
                raise SyncError(f"Failed to update gist: {resp.status} - {text}")

    # Local data

    async def local_windows(self) -> list[WindowData]:
        since = utcnow() - timedelta(days=self.config.sync.history_days)
        rows = await self.db.get_windows_since(since, local_only=True)
        return [WindowData.model_validate(row) for row in rows]

    async def local_hourly_usage(self) -> list[HourlyUsageData]:
        since = utcnow() - timedelta(hours=self.config.sync.hourly_history_hours)
        rows = await self.db.get_hourly_usage_since(since, local_only=True)
        return [HourlyUsageData(date_hour=r["date_hour"], usage_pct=r["usage_pct"]) for r in rows]

    def save_cache(self, document: SyncDocument) -> None:
        path = self.config.sync_cache_path
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(document.to_json())
        except OSError as e:
            logger.warning(f"Could not write sync cache: {e}")

    def load_cache(self) -> SyncDocument | None:
        """Last document seen, without touching the network."""
        path = self.config.sync_cache_path
        if not path.exists():
            return None
        try:
            return SyncDocument.model_validate_json(path.read_text())
        except (OSError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable sync cache: {e}")
            return None

    # Operations

    async def push(self) -> SyncResult:
        """Publish this machine's recent rows, keeping everyone else's."""
        gist_id = self.config.sync.gist_id
        if not gist_id:
            return SyncResult(False, "Sync not configured. Run 'ccmax sync setup' first.")

        token = await self.get_token()
        if not token:
            return SyncResult(False, "GitHub token not found. Run 'gh auth login' first.")

        windows = await self.local_windows()
        hourly = await self.local_hourly_usage()
        if not windows and not hourly:
            return SyncResult(True, "Nothing to sync.")

        payload_hash = hash_payload(windows, hourly)
        if payload_hash == self.config.sync.last_sync_hash:
            return SyncResult(True, "No changes to sync.")

        machine_id = self.config.get_machine_id()
        try:
            async with aiohttp.ClientSession() as session:
                document = await self.fetch_document(session, token, gist_id)
                document = document.with_machine(
                    MachineData(
                        machine_id=machine_id,
                        hostname=socket.gethostname(),
                        last_update=now(),
                        windows=windows,
                        hourly_usage=hourly,
                    )
                )
                document = self._merge_start_times(document)
                await self.update_document(session, token, gist_id, document)
        except (SyncError, aiohttp.ClientError) as e:
            logger.error(f"Sync push failed: {e}")
            return SyncResult(False, str(e))

        self.save_cache(document)
        self.config.sync.last_sync = now()
        self.config.sync.last_sync_hash = payload_hash
        self.config.save()

        return SyncResult(
            True,
            f"Pushed {len(windows)} windows, {len(hourly)} hourly records to sync.",
            document,
        )

    def _merge_start_times(self, document: SyncDocument) -> SyncDocument:
        """Publish local start times when they are newer than the shared ones."""
        local_times = self.config.optimal_start_times
        if not any(local_times.values()):
            return document

        remote_updated = document.optimal_start_times_updated_at
        last_sync = self.config.sync.last_sync
        newer = (
            document.optimal_start_times is None
            or remote_updated is None
            or (last_sync is not None and from_iso(last_sync) > from_iso(remote_updated))
        )
        if not newer:
            return document

        return document.model_copy(
            update={
                "optimal_start_times": dict(local_times),
                "optimal_start_times_updated_at": now(),
            }
        )

    async def pull(self) -> SyncResult:
        """Import other machines' rows and apply the shared start times."""
        gist_id = self.config.sync.gist_id
        if not gist_id:
            return SyncResult(False, "Sync not configured. Run 'ccmax sync setup' first.")

        token = await self.get_token()
        if not token:
            return SyncResult(False, "GitHub token not found. Run 'gh auth login' first.")

        try:
            async with aiohttp.ClientSession() as session:
                document = await self.fetch_document(session, token, gist_id)
        except (SyncError, aiohttp.ClientError) as e:
            logger.error(f"Sync pull failed: {e}")
            return SyncResult(False, str(e))

        imported_windows, imported_hourly, imported_machines = await self.import_document(document)

        if document.optimal_start_times:
            self.config.optimal_start_times.update(document.optimal_start_times)

        self.save_cache(document)
        self.config.sync.last_sync = now()
        self.config.save()

        total_windows = sum(len(m.windows) for m in document.machines.values())
        message = (
            f"Pulled data from {len(document.machines)} machine(s), {total_windows} total windows."
        )
        if imported_machines:
            message += (
                f" Imported {imported_windows} windows, {imported_hourly} hourly records"
                f" from {imported_machines} other machine(s)."
            )
        return SyncResult(True, message, document)

    async def import_document(self, document: SyncDocument) -> tuple[int, int, int]:
        """Store every other machine's rows locally under its own id."""
        machine_id = self.config.get_machine_id()
        windows = hourly = machines = 0

        for other_id, data in document.machines.items():
            if other_id == machine_id:
                continue
            if not data.windows and not data.hourly_usage:
                continue

            windows += await self.db.import_synced_windows(
                other_id, [w.model_dump() for w in data.windows]
            )
            hourly += await self.db.import_synced_hourly_usage(
                other_id, [h.model_dump() for h in data.hourly_usage]
            )
            machines += 1

        return windows, hourly, machines

    async def setup(self, existing_gist_id: str | None = None) -> SyncResult:
        """Point this machine at a sync gist, creating one if none exists."""
        token = await self.get_token()
        if not token:
            return SyncResult(False, "GitHub token not found. Run 'gh auth login' first.")

        try:
            async with aiohttp.ClientSession() as session:
                if existing_gist_id:
                    await self.fetch_document(session, token, existing_gist_id)
                    gist_id, existing = existing_gist_id, True
                else:
                    gist_id = await self.find_existing_gist(session, token)
                    existing = gist_id is not None
                    if gist_id is None:
                        gist_id = await self.create_gist(session, token)
        except (SyncError, aiohttp.ClientError) as e:
            logger.error(f"Sync setup failed: {e}")
            return SyncResult(False, str(e))

        self.config.sync.gist_id = gist_id
        machine_id = self.config.get_machine_id()
        self.config.save()

        lines = [
            "Sync configured!",
            f"  {'Using existing' if existing else 'Created new'} gist: {gist_id}",
            f"  Machine ID: {machine_id}",
        ]
        if existing:
            pulled = await self.pull()
            if pulled.success:
                lines.append(f"  {pulled.message}")
        lines.append("")
        lines.append("Run 'ccmax sync push' to upload this machine's data.")
        return SyncResult(True, "\n".join(lines))

    def status(self) -> dict[str, Any]:
        cache = self.load_cache()
        return {
            "configured": self.config.sync.configured,
            "gist_id": self.config.sync.gist_id,
            "machine_id": self.config.sync.machine_id,
            "last_sync": self.config.sync.last_sync,
            "machines": sorted(cache.machines) if cache else [],
        }
