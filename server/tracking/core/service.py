"""Administrative facade over the tracking engine.

Every operation returns an Outcome; engine errors are turned into failed
outcomes with an error code here so the HTTP layer never sees a raw
exception.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

import structlog

from tracking.core.errors import (
    AlreadyRunning,
    DuplicateDevice,
    NotFound,
    TrackingError,
    TransportError,
    ValidationError,
)
from tracking.core.models import SYNC_ERROR, Outcome
from tracking.transport.sms import MSG_BAD_INTERVAL, MSG_DEVICE_NOT_FOUND, MSG_NO_SIM

if TYPE_CHECKING:
    from tracking.core.reconciler import LocationReconciler
    from tracking.core.registry import DeviceRegistry
    from tracking.core.scheduler import SyncScheduler
    from tracking.transport.cloud import CloudPollAdapter
    from tracking.transport.listener import SocketListener
    from tracking.transport.sms import SmsCommandChannel

log = structlog.get_logger()

# Outcome.error codes.
ERR_NOT_FOUND = "not_found"
ERR_DUPLICATE = "duplicate"
ERR_VALIDATION = "validation"
ERR_ALREADY_RUNNING = "already_running"
ERR_TRANSPORT = "transport"
ERR_INTERNAL = "internal"


def _failure(e: TrackingError) -> Outcome:
    if isinstance(e, NotFound):
        code = ERR_NOT_FOUND
    elif isinstance(e, DuplicateDevice):
        code = ERR_DUPLICATE
    elif isinstance(e, ValidationError):
        code = ERR_VALIDATION
    elif isinstance(e, AlreadyRunning):
        code = ERR_ALREADY_RUNNING
    elif isinstance(e, TransportError):
        code = ERR_TRANSPORT
    else:
        code = ERR_INTERNAL
    return Outcome(success=False, message=str(e), error=code)


def _mask(sim_number: str | None) -> str | None:
    return f"***{sim_number[-4:]}" if sim_number else None


class TrackingService:
    def __init__(
        self,
        registry: DeviceRegistry,
        reconciler: LocationReconciler,
        listeners: SocketListener,
        sms: SmsCommandChannel,
        cloud: CloudPollAdapter,
        scheduler: SyncScheduler,
        *,
        public_server_ip: str = "",
    ) -> None:
        self._registry = registry
        self._reconciler = reconciler
        self._listeners = listeners
        self._sms = sms
        self._cloud = cloud
        self._scheduler = scheduler
        self._public_server_ip = public_server_ip

    # -- devices -----------------------------------------------------------

    async def register_device(
        self,
        device_id: str,
        name: str,
        model: str | None = None,
        sim: str | None = None,
        imei: str | None = None,
        notes: str | None = None,
    ) -> Outcome:
        try:
            device = await self._registry.register(device_id, name, model=model, sim=sim, imei=imei, notes=notes)
        except TrackingError as e:
            return _failure(e)
        return Outcome(success=True, message="GPS device registered successfully", data=device.to_dict())

    async def activate_device(self, device_id: str) -> Outcome:
        try:
            device = await self._registry.activate(device_id)
        except TrackingError as e:
            return _failure(e)
        return Outcome(success=True, message="GPS device activated", data=device.to_dict())

    async def deactivate_device(self, device_id: str) -> Outcome:
        try:
            device = await self._registry.deactivate(device_id)
        except TrackingError as e:
            return _failure(e)
        return Outcome(success=True, message="GPS device deactivated", data=device.to_dict())

    async def list_devices(self, *, sms_only: bool = False) -> Outcome:
        if sms_only:
            devices = await self._registry.list_with_sim()
        else:
            devices = await self._registry.list_devices()
        return Outcome(success=True, message=f"{len(devices)} devices", data=[d.to_dict() for d in devices])

    async def assign_device(
        self,
        device_id: str,
        *,
        vehicle_id: str | None = None,
        registration_number: str | None = None,
        driver_id: str | None = None,
        route_id: str | None = None,
        sharing_enabled: bool = True,
    ) -> Outcome:
        try:
            assignment = await self._registry.assign(
                device_id,
                vehicle_id=vehicle_id,
                registration_number=registration_number,
                driver_id=driver_id,
                route_id=route_id,
                sharing_enabled=sharing_enabled,
            )
        except TrackingError as e:
            return _failure(e)
        return Outcome(success=True, message="GPS device assigned", data=assignment.to_dict())

    # -- reads -------------------------------------------------------------

    async def current_location(self, device_id: str) -> Outcome:
        if await self._registry.find(device_id) is None:
            return _failure(NotFound(f"GPS device {device_id} not found", key=device_id))
        location = await self._reconciler.current_location(device_id)
        if location is None:
            return Outcome(success=True, message="No location available", data=None)
        return Outcome(success=True, message="Current location", data=location.to_dict())

    async def location_history(
        self,
        device_id: str,
        *,
        route_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
    ) -> Outcome:
        if await self._registry.find(device_id) is None:
            return _failure(NotFound(f"GPS device {device_id} not found", key=device_id))
        if start is not None and end is not None and start > end:
            return _failure(ValidationError("start must not be after end"))
        samples = await self._reconciler.history(device_id, route_id=route_id, start=start, end=end, limit=limit)
        return Outcome(success=True, message=f"{len(samples)} samples", data=[s.to_dict() for s in samples])

    # -- SMS ---------------------------------------------------------------

    async def request_sms_location(self, device_id: str) -> Outcome:
        result = await self._sms.request_location(device_id)
        return Outcome(
            success=result.success,
            message=result.message,
            data=result.to_dict(),
            error=None if result.success else _sms_error(result.message),
        )

    async def enable_realtime(self, device_id: str, interval_seconds: int = 30) -> Outcome:
        result = await self._sms.enable_realtime(device_id, interval_seconds)
        return Outcome(
            success=result.success,
            message=result.message,
            error=None if result.success else _sms_error(result.message),
        )

    async def configure_direct_connection(
        self, sim_number: str, server_ip: str | None = None, port: int | None = None,
    ) -> Outcome:
        server_ip = server_ip or self._public_server_ip
        if not sim_number or not server_ip:
            return _failure(ValidationError("Phone number and server IP are required"))
        ok = await self._sms.configure_direct_connection(sim_number, server_ip, port)
        if not ok:
            return Outcome(success=False, message="Device configuration failed")
        return Outcome(success=True, message="Device configured successfully")

    async def sms_devices(self) -> Outcome:
        devices = await self._registry.list_with_sim()
        return Outcome(
            success=True,
            message=f"{len(devices)} devices with SIM",
            data=[
                {
                    "device_id": d.device_id,
                    "device_name": d.device_name,
                    "sim_number": _mask(d.sim_number),
                    "has_imei": bool(d.imei),
                }
                for d in devices
            ],
        )

    # -- listeners ---------------------------------------------------------

    async def start_listeners(self) -> Outcome:
        try:
            await self._listeners.start()
        except OSError as e:
            log.error("listener_start_failed", error=str(e))
            return Outcome(success=False, message=f"Could not start listeners: {e}", error=ERR_TRANSPORT)
        return Outcome(success=True, message="TCP/UDP listeners started", data=self._listeners.status())

    async def stop_listeners(self) -> Outcome:
        await self._listeners.stop()
        return Outcome(success=True, message="TCP/UDP listeners stopped", data=self._listeners.status())

    def listener_status(self) -> Outcome:
        return Outcome(success=True, message="Listener status", data=self._listeners.status())

    # -- cloud sync --------------------------------------------------------

    async def test_cloud_connection(self) -> Outcome:
        return await self._cloud.test_connection()

    async def manual_sync(self, service: str | None = None) -> Outcome:
        return await self._trigger(service or self._cloud.service_name, manual=True)

    async def automatic_sync(self, service: str | None = None) -> Outcome:
        return await self._trigger(service or self._cloud.service_name, manual=False)

    async def _trigger(self, service: str, *, manual: bool) -> Outcome:
        try:
            entry = await self._scheduler.trigger(service, manual=manual)
        except TrackingError as e:
            return _failure(e)
        if entry is None:
            return Outcome(success=True, message="Auto sync is disabled", data={"skipped": True})
        return Outcome(
            success=entry.status != SYNC_ERROR,
            message=f"Sync {entry.status}: {entry.devices_updated} devices updated",
            data=entry.to_dict(),
        )

    async def toggle_auto_sync(self, enabled: bool) -> Outcome:
        await self._scheduler.settings.set_enabled(enabled)
        state = "enabled" if enabled else "disabled"
        return Outcome(success=True, message=f"Auto sync {state}", data={"auto_sync_enabled": enabled})

    def sync_status(self) -> Outcome:
        return Outcome(success=True, message="Sync status", data=self._scheduler.status())

    async def sync_logs(self, service: str | None = None, limit: int = 50) -> Outcome:
        entries = await self._scheduler.logs(service, limit)
        return Outcome(success=True, message=f"{len(entries)} sync log entries",
                       data=[e.to_dict() for e in entries])


def _sms_error(message: str) -> str | None:
    """Error code for SMS failures that are caller mistakes; delivery failures get none."""
    if message == MSG_DEVICE_NOT_FOUND:
        return ERR_NOT_FOUND
    if message in (MSG_NO_SIM, MSG_BAD_INTERVAL):
        return ERR_VALIDATION
    return None
