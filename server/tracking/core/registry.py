"""Device registry — authoritative catalog of tracking devices.

All adapters consult the registry to decide whether a device is known.
Only the registry mutates device records; the reconciler asks it to
refresh heartbeats.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import TYPE_CHECKING

import structlog

from tracking.core.errors import NotFound, ValidationError
from tracking.core.models import (
    DEVICE_ACTIVE,
    DEVICE_INACTIVE,
    DeviceAssignment,
    GPSDevice,
    utcnow,
)

if TYPE_CHECKING:
    from tracking.storage.base import RecordsStore

log = structlog.get_logger()


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


class DeviceRegistry:
    def __init__(self, store: RecordsStore) -> None:
        self._store = store

    async def register(
        self,
        device_id: str,
        name: str,
        model: str | None = None,
        sim: str | None = None,
        imei: str | None = None,
        notes: str | None = None,
    ) -> GPSDevice:
        """Register a new device. Raises DuplicateDevice if the id is taken."""
        device_id = (device_id or "").strip()
        name = (name or "").strip()
        if not device_id or not name:
            raise ValidationError("Device ID and device name are required")

        device = GPSDevice(
            device_id=device_id,
            device_name=name,
            model=_clean(model),
            sim_number=_clean(sim),
            imei=_clean(imei),
            notes=_clean(notes),
            status=DEVICE_INACTIVE,
        )
        await self._store.insert_device(device)
        log.info("device_registered", device_id=device_id, has_sim=device.has_sim)
        return device

    async def upsert(
        self,
        device_id: str,
        name: str,
        model: str | None = None,
        sim: str | None = None,
        imei: str | None = None,
        notes: str | None = None,
    ) -> GPSDevice:
        """Register, or update the descriptive fields of an existing device."""
        existing = await self.find(device_id)
        if existing is None:
            return await self.register(device_id, name, model=model, sim=sim, imei=imei, notes=notes)
        updated = replace(
            existing,
            device_name=name.strip() or existing.device_name,
            model=_clean(model) or existing.model,
            sim_number=_clean(sim) or existing.sim_number,
            imei=_clean(imei) or existing.imei,
            notes=_clean(notes) or existing.notes,
            updated_at=utcnow(),
        )
        await self._store.update_device(updated)
        return updated

    async def activate(self, device_id: str) -> GPSDevice:
        return await self._set_status(device_id, DEVICE_ACTIVE)

    async def deactivate(self, device_id: str) -> GPSDevice:
        return await self._set_status(device_id, DEVICE_INACTIVE)

    async def _set_status(self, device_id: str, status: str) -> GPSDevice:
        device = await self.find(device_id)
        if device is None:
            raise NotFound(f"GPS device {device_id} not found", key=device_id)
        if device.status == status:
            return device
        device = replace(device, status=status, updated_at=utcnow())
        await self._store.update_device(device)
        log.info("device_status_changed", device_id=device_id, status=status)
        return device

    async def find(self, device_id: str) -> GPSDevice | None:
        return await self._store.get_device(device_id)

    async def resolve(self, identifier: str) -> GPSDevice | None:
        """Find a device by its device_id, falling back to its IMEI."""
        if not identifier:
            return None
        device = await self._store.get_device(identifier)
        if device is None:
            device = await self._store.find_device_by_imei(identifier)
        return device

    async def list_devices(self) -> list[GPSDevice]:
        return await self._store.list_devices()

    async def list_with_sim(self) -> list[GPSDevice]:
        """Devices reachable over the SMS channel."""
        return [d for d in await self._store.list_devices() if d.has_sim]

    async def record_heartbeat(self, device_id: str, at: datetime) -> None:
        device = await self._store.get_device(device_id)
        if device is None:
            return
        if device.last_heartbeat is not None and device.last_heartbeat >= at:
            return
        await self._store.update_device(replace(device, last_heartbeat=at, updated_at=utcnow()))

    async def assign(
        self,
        device_id: str,
        *,
        vehicle_id: str | None = None,
        registration_number: str | None = None,
        driver_id: str | None = None,
        route_id: str | None = None,
        sharing_enabled: bool = True,
    ) -> DeviceAssignment:
        """Bind a device to the vehicle/driver/route it reports for."""
        if await self.find(device_id) is None:
            raise NotFound(f"GPS device {device_id} not found", key=device_id)
        assignment = DeviceAssignment(
            device_id=device_id,
            vehicle_id=_clean(vehicle_id),
            registration_number=_clean(registration_number),
            driver_id=_clean(driver_id),
            route_id=_clean(route_id),
            sharing_enabled=sharing_enabled,
        )
        await self._store.save_assignment(assignment)
        log.info("device_assigned", device_id=device_id,
                 vehicle_id=assignment.vehicle_id, driver_id=assignment.driver_id,
                 sharing_enabled=sharing_enabled)
        return assignment

    async def assignment_for(self, device_id: str) -> DeviceAssignment | None:
        return await self._store.get_assignment(device_id)

    async def find_by_registration(self, registration_number: str) -> GPSDevice | None:
        assignment = await self._store.find_assignment_by_registration(registration_number)
        if assignment is None:
            return None
        return await self.find(assignment.device_id)
