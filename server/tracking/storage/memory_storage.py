"""In-process implementation of RecordsStore.

Backs tests and standalone runs. Everything lives in dicts and lists
guarded by the event loop; no call awaits while mutating.
"""

from __future__ import annotations

import copy
from datetime import datetime
from typing import TYPE_CHECKING

from tracking.core.errors import DuplicateDevice

if TYPE_CHECKING:
    from tracking.core.models import (
        CanonicalLocation,
        DeviceAssignment,
        GPSDevice,
        LocationSample,
        SyncLogEntry,
    )


def normalize_registration(value: str) -> str:
    return "".join(value.split()).upper()


def history_matches(
    sample: LocationSample,
    device_id: str,
    route_id: str | None,
    start: datetime | None,
    end: datetime | None,
) -> bool:
    if sample.device_id != device_id:
        return False
    if route_id is not None and sample.route_id != route_id:
        return False
    if start is not None and sample.observed_at < start:
        return False
    if end is not None and sample.observed_at > end:
        return False
    return True


class MemoryRecordsStore:
    """RecordsStore backed by plain dicts."""

    def __init__(self) -> None:
        self._devices: dict[str, GPSDevice] = {}
        self._assignments: dict[str, DeviceAssignment] = {}
        self._canonical: dict[str, CanonicalLocation] = {}
        # (kind, entity_id) -> denormalized copy on vehicle/driver records
        self._entity_locations: dict[tuple[str, str], CanonicalLocation] = {}
        self._history: list[LocationSample] = []
        self._sync_logs: list[SyncLogEntry] = []
        self._settings: dict[str, str] = {}

    # -- devices --------------------------------------------------------

    async def get_device(self, device_id: str) -> GPSDevice | None:
        device = self._devices.get(device_id)
        return copy.copy(device) if device else None

    async def find_device_by_imei(self, imei: str) -> GPSDevice | None:
        for device in self._devices.values():
            if device.imei and device.imei == imei:
                return copy.copy(device)
        return None

    async def list_devices(self) -> list[GPSDevice]:
        devices = sorted(self._devices.values(), key=lambda d: d.created_at, reverse=True)
        return [copy.copy(d) for d in devices]

    async def insert_device(self, device: GPSDevice) -> None:
        if device.device_id in self._devices:
            raise DuplicateDevice(device.device_id)
        self._devices[device.device_id] = copy.copy(device)

    async def update_device(self, device: GPSDevice) -> None:
        self._devices[device.device_id] = copy.copy(device)

    # -- assignments ----------------------------------------------------

    async def get_assignment(self, device_id: str) -> DeviceAssignment | None:
        assignment = self._assignments.get(device_id)
        return copy.copy(assignment) if assignment else None

    async def find_assignment_by_registration(self, registration_number: str) -> DeviceAssignment | None:
        wanted = normalize_registration(registration_number)
        for assignment in self._assignments.values():
            if assignment.registration_number and normalize_registration(assignment.registration_number) == wanted:
                return copy.copy(assignment)
        return None

    async def save_assignment(self, assignment: DeviceAssignment) -> None:
        self._assignments[assignment.device_id] = copy.copy(assignment)

    # -- canonical locations --------------------------------------------

    async def get_canonical(self, device_id: str) -> CanonicalLocation | None:
        location = self._canonical.get(device_id)
        return copy.copy(location) if location else None

    async def save_canonical(
        self,
        device_id: str,
        location: CanonicalLocation,
        assignment: DeviceAssignment | None,
    ) -> None:
        self._canonical[device_id] = copy.copy(location)
        if assignment is None:
            return
        if assignment.vehicle_id:
            self._entity_locations[("vehicle", assignment.vehicle_id)] = copy.copy(location)
        if assignment.driver_id:
            self._entity_locations[("driver", assignment.driver_id)] = copy.copy(location)

    async def get_entity_location(self, kind: str, entity_id: str) -> CanonicalLocation | None:
        location = self._entity_locations.get((kind, entity_id))
        return copy.copy(location) if location else None

    # -- history --------------------------------------------------------

    async def append_history(self, sample: LocationSample) -> None:
        self._history.append(sample)

    async def query_history(
        self,
        device_id: str,
        *,
        route_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 1000,
    ) -> list[LocationSample]:
        matches = [
            s for s in self._history
            if history_matches(s, device_id, route_id, start, end)
        ]
        matches.sort(key=lambda s: s.observed_at, reverse=True)
        return matches[:limit]

    # -- sync logs ------------------------------------------------------

    async def append_sync_log(self, entry: SyncLogEntry) -> None:
        self._sync_logs.append(copy.deepcopy(entry))

    async def list_sync_logs(self, *, service: str | None = None, limit: int = 100) -> list[SyncLogEntry]:
        entries = [e for e in self._sync_logs if service is None or e.service == service]
        entries.sort(key=lambda e: e.sync_time, reverse=True)
        return [copy.deepcopy(e) for e in entries[:limit]]

    # -- settings -------------------------------------------------------

    async def get_setting(self, key: str) -> str | None:
        return self._settings.get(key)

    async def set_setting(self, key: str, value: str) -> None:
        self._settings[key] = value

    async def close(self) -> None:
        pass
