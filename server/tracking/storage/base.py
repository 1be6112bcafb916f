"""Records store interface (port).

The records store is the system of record for devices, their assignments,
denormalized current locations, tracking history, sync logs and settings.
The engine never talks to a database directly; it goes through this port.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, TYPE_CHECKING

if TYPE_CHECKING:
    from tracking.core.models import (
        CanonicalLocation,
        DeviceAssignment,
        GPSDevice,
        LocationSample,
        SyncLogEntry,
    )


class RecordsStore(Protocol):
    """Port: durable, queryable storage for tracking records."""

    async def get_device(self, device_id: str) -> GPSDevice | None: ...

    async def find_device_by_imei(self, imei: str) -> GPSDevice | None: ...

    async def list_devices(self) -> list[GPSDevice]: ...

    async def insert_device(self, device: GPSDevice) -> None:
        """Insert a new device. Raises DuplicateDevice if the id exists."""
        ...

    async def update_device(self, device: GPSDevice) -> None: ...

    async def get_assignment(self, device_id: str) -> DeviceAssignment | None: ...

    async def find_assignment_by_registration(self, registration_number: str) -> DeviceAssignment | None: ...

    async def save_assignment(self, assignment: DeviceAssignment) -> None: ...

    async def get_canonical(self, device_id: str) -> CanonicalLocation | None: ...

    async def save_canonical(
        self,
        device_id: str,
        location: CanonicalLocation,
        assignment: DeviceAssignment | None,
    ) -> None:
        """Store the device's canonical fix and project it onto its vehicle/driver."""
        ...

    async def get_entity_location(self, kind: str, entity_id: str) -> CanonicalLocation | None: ...

    async def append_history(self, sample: LocationSample) -> None: ...

    async def query_history(
        self,
        device_id: str,
        *,
        route_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 1000,
    ) -> list[LocationSample]:
        """Return samples newest first (by observed_at)."""
        ...

    async def append_sync_log(self, entry: SyncLogEntry) -> None: ...

    async def list_sync_logs(self, *, service: str | None = None, limit: int = 100) -> list[SyncLogEntry]: ...

    async def get_setting(self, key: str) -> str | None: ...

    async def set_setting(self, key: str, value: str) -> None: ...

    async def close(self) -> None:
        """Flush anything buffered. Called once at shutdown."""
        ...
