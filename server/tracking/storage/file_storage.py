"""File-journaled records store.

Devices, assignments and settings form a small catalog that is held in
memory and rewritten to ``catalog.json`` when it changes. A device update
that only moves its heartbeat forward is written at most once per
``heartbeat_flush_seconds`` of heartbeat time, and on ``close``.

Canonical locations and their vehicle/driver projections are journaled to
``canonical.jsonl``, one line per accepted fix. The journal is replayed
and compacted on open so the reconciler's ordering survives a restart.

Tracking history and sync logs are append-only, so they are journaled to
disk as JSON Lines and read back by scanning:

Directory structure: base_dir/YYYY/MM/DD/HH/{history,sync_logs}.jsonl

History is partitioned by the sample's observed_at hour so date-range
queries can skip whole partitions.
"""

from __future__ import annotations

import json
import os
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

import structlog

from tracking.core.models import (
    CanonicalLocation,
    DeviceAssignment,
    GPSDevice,
    LocationSample,
    SyncLogEntry,
)
from tracking.storage.memory_storage import MemoryRecordsStore, history_matches

log = structlog.get_logger()

_CATALOG_FILE = "catalog.json"
_CANONICAL_FILE = "canonical.jsonl"
_HISTORY_FILE = "history.jsonl"
_SYNC_LOG_FILE = "sync_logs.jsonl"


class FileRecordsStore(MemoryRecordsStore):
    """RecordsStore with history and sync logs journaled to hour-partitioned files."""

    def __init__(self, base_dir: str | Path, *, heartbeat_flush_seconds: float = 60.0) -> None:
        super().__init__()
        self._base_dir = Path(base_dir)
        self._base_dir.mkdir(parents=True, exist_ok=True)
        self._heartbeat_flush = timedelta(seconds=heartbeat_flush_seconds)
        # Heartbeat of each device as last written to catalog.json.
        self._flushed_heartbeats: dict[str, datetime | None] = {}
        self._catalog_dirty = False
        self._load_catalog()
        self._load_canonical()

    def _load_catalog(self) -> None:
        path = self._base_dir / _CATALOG_FILE
        if not path.exists():
            return
        try:
            raw = json.loads(path.read_text())
        except json.JSONDecodeError:
            log.error("catalog_corrupt", path=str(path))
            raise
        for entry in raw.get("devices", []):
            device = GPSDevice.from_dict(entry)
            self._devices[device.device_id] = device
            self._flushed_heartbeats[device.device_id] = device.last_heartbeat
        for entry in raw.get("assignments", []):
            assignment = DeviceAssignment.from_dict(entry)
            self._assignments[assignment.device_id] = assignment
        self._settings.update(raw.get("settings", {}))
        log.info("catalog_loaded", devices=len(self._devices), assignments=len(self._assignments))

    def _save_catalog(self) -> None:
        path = self._base_dir / _CATALOG_FILE
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps({
            "devices": [d.to_dict() for d in self._devices.values()],
            "assignments": [a.to_dict() for a in self._assignments.values()],
            "settings": self._settings,
        }, indent=1))
        os.replace(tmp, path)
        self._flushed_heartbeats = {d.device_id: d.last_heartbeat for d in self._devices.values()}
        self._catalog_dirty = False

    def _load_canonical(self) -> None:
        path = self._base_dir / _CANONICAL_FILE
        if not path.exists():
            return
        for entry in self._read_lines(path):
            try:
                location = CanonicalLocation.from_dict(entry["location"])
            except (KeyError, TypeError, ValueError):
                log.warning("canonical_entry_corrupt", path=str(path))
                continue
            if device_id := entry.get("device_id"):
                self._canonical[device_id] = location
            if vehicle_id := entry.get("vehicle_id"):
                self._entity_locations[("vehicle", vehicle_id)] = location
            if driver_id := entry.get("driver_id"):
                self._entity_locations[("driver", driver_id)] = location
        self._compact_canonical()
        log.info("canonical_loaded", devices=len(self._canonical), entities=len(self._entity_locations))

    def _compact_canonical(self) -> None:
        """Rewrite the journal with one line per device and per projected entity."""
        path = self._base_dir / _CANONICAL_FILE
        tmp = path.with_suffix(".tmp")
        with open(tmp, "w") as f:
            for device_id, location in self._canonical.items():
                f.write(json.dumps({"device_id": device_id, "location": location.to_dict()}) + "\n")
            for (kind, entity_id), location in self._entity_locations.items():
                f.write(json.dumps({f"{kind}_id": entity_id, "location": location.to_dict()}) + "\n")
        os.replace(tmp, path)

    def _heartbeat_deferrable(self, previous: GPSDevice, device: GPSDevice) -> bool:
        if replace(previous, last_heartbeat=device.last_heartbeat, updated_at=device.updated_at) != device:
            return False
        flushed = self._flushed_heartbeats.get(device.device_id)
        if flushed is None or device.last_heartbeat is None:
            return False
        return device.last_heartbeat - flushed < self._heartbeat_flush

    async def insert_device(self, device: GPSDevice) -> None:
        await super().insert_device(device)
        self._save_catalog()

    async def update_device(self, device: GPSDevice) -> None:
        previous = self._devices.get(device.device_id)
        await super().update_device(device)
        if previous is not None and self._heartbeat_deferrable(previous, device):
            self._catalog_dirty = True
            return
        self._save_catalog()

    async def save_assignment(self, assignment: DeviceAssignment) -> None:
        await super().save_assignment(assignment)
        self._save_catalog()

    async def set_setting(self, key: str, value: str) -> None:
        await super().set_setting(key, value)
        self._save_catalog()

    async def save_canonical(
        self,
        device_id: str,
        location: CanonicalLocation,
        assignment: DeviceAssignment | None,
    ) -> None:
        await super().save_canonical(device_id, location, assignment)
        entry = {"device_id": device_id, "location": location.to_dict()}
        if assignment is not None:
            if assignment.vehicle_id:
                entry["vehicle_id"] = assignment.vehicle_id
            if assignment.driver_id:
                entry["driver_id"] = assignment.driver_id
        self._append_line(self._base_dir / _CANONICAL_FILE, entry)

    async def close(self) -> None:
        if self._catalog_dirty:
            self._save_catalog()
            log.debug("catalog_flushed", path=str(self._base_dir / _CATALOG_FILE))

    def _hour_dir(self, dt: datetime) -> Path:
        """Return the directory for a given timestamp."""
        dt = dt.astimezone(timezone.utc)
        path = self._base_dir / f"{dt.year:04d}" / f"{dt.month:02d}" / f"{dt.day:02d}" / f"{dt.hour:02d}"
        path.mkdir(parents=True, exist_ok=True)
        return path

    def _partitions(self, start: datetime | None = None, end: datetime | None = None) -> list[Path]:
        """All hour directories, optionally pruned to those overlapping [start, end]."""
        result = []
        for path in sorted(self._base_dir.glob("*/*/*/*")):
            if not path.is_dir():
                continue
            try:
                year, month, day, hour = (int(p) for p in path.relative_to(self._base_dir).parts)
                hour_start = datetime(year, month, day, hour, tzinfo=timezone.utc)
            except ValueError:
                continue
            if start is not None and hour_start + timedelta(hours=1) <= start:
                continue
            if end is not None and hour_start > end:
                continue
            result.append(path)
        return result

    @staticmethod
    def _append_line(path: Path, entry: dict) -> None:
        with open(path, "a") as f:
            f.write(json.dumps(entry, separators=(",", ":")) + "\n")

    @staticmethod
    def _read_lines(path: Path) -> list[dict]:
        entries = []
        with open(path) as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    log.warning("journal_line_corrupt", path=str(path))
        return entries

    async def append_history(self, sample: LocationSample) -> None:
        hour_dir = self._hour_dir(sample.observed_at)
        self._append_line(hour_dir / _HISTORY_FILE, sample.to_dict())
        log.debug("history_written", device_id=sample.device_id, path=str(hour_dir))

    async def query_history(
        self,
        device_id: str,
        *,
        route_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 1000,
    ) -> list[LocationSample]:
        matches: list[LocationSample] = []
        for hour_dir in self._partitions(start, end):
            path = hour_dir / _HISTORY_FILE
            if not path.exists():
                continue
            for entry in self._read_lines(path):
                if entry.get("device_id") != device_id:
                    continue
                sample = LocationSample.from_dict(entry)
                if history_matches(sample, device_id, route_id, start, end):
                    matches.append(sample)
        matches.sort(key=lambda s: s.observed_at, reverse=True)
        return matches[:limit]

    async def append_sync_log(self, entry: SyncLogEntry) -> None:
        hour_dir = self._hour_dir(entry.sync_time)
        self._append_line(hour_dir / _SYNC_LOG_FILE, entry.to_dict())

    async def list_sync_logs(self, *, service: str | None = None, limit: int = 100) -> list[SyncLogEntry]:
        entries: list[SyncLogEntry] = []
        for hour_dir in self._partitions():
            path = hour_dir / _SYNC_LOG_FILE
            if not path.exists():
                continue
            for raw in self._read_lines(path):
                if service is not None and raw.get("service") != service:
                    continue
                entries.append(SyncLogEntry.from_dict(raw))
        entries.sort(key=lambda e: e.sync_time, reverse=True)
        return entries[:limit]
