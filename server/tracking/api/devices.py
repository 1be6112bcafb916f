"""Device administration, location query and SMS command endpoints.

Thin FastAPI adapter over TrackingService: parse the request, call the
service, map the Outcome to an HTTP response.
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from tracking.api.responses import BadRequest, bad_request, json_body, outcome_response

router = APIRouter(prefix="/api/v1")


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise BadRequest(f"invalid timestamp {value!r}") from None
    # Times without an offset are UTC, like everything stored.
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@router.get("/devices")
async def list_devices(sms_only: bool = Query(False)) -> JSONResponse:
    from tracking.main import get_service

    return outcome_response(await get_service().list_devices(sms_only=sms_only))


@router.post("/devices")
async def register_device(request: Request) -> JSONResponse:
    """Register a GPS device.

    Body: {"device_id", "device_name", "model"?, "sim_number"?, "imei"?, "notes"?}
    """
    from tracking.main import get_service

    try:
        body = await json_body(request)
    except BadRequest as e:
        return bad_request(str(e))

    outcome = await get_service().register_device(
        str(body.get("device_id") or ""),
        str(body.get("device_name") or ""),
        model=body.get("model"),
        sim=body.get("sim_number"),
        imei=body.get("imei"),
        notes=body.get("notes"),
    )
    return outcome_response(outcome, success_status=201)


@router.post("/devices/{device_id}/activate")
async def activate_device(device_id: str) -> JSONResponse:
    from tracking.main import get_service

    return outcome_response(await get_service().activate_device(device_id))


@router.post("/devices/{device_id}/deactivate")
async def deactivate_device(device_id: str) -> JSONResponse:
    from tracking.main import get_service

    return outcome_response(await get_service().deactivate_device(device_id))


@router.put("/devices/{device_id}/assignment")
async def assign_device(device_id: str, request: Request) -> JSONResponse:
    """Bind a device to a vehicle/driver/route.

    Body: {"vehicle_id"?, "registration_number"?, "driver_id"?, "route_id"?, "sharing_enabled"?}
    """
    from tracking.main import get_service

    try:
        body = await json_body(request)
    except BadRequest as e:
        return bad_request(str(e))

    outcome = await get_service().assign_device(
        device_id,
        vehicle_id=body.get("vehicle_id"),
        registration_number=body.get("registration_number"),
        driver_id=body.get("driver_id"),
        route_id=body.get("route_id"),
        sharing_enabled=bool(body.get("sharing_enabled", True)),
    )
    return outcome_response(outcome)


@router.get("/devices/{device_id}/location")
async def current_location(device_id: str) -> JSONResponse:
    from tracking.main import get_service

    return outcome_response(await get_service().current_location(device_id))


@router.get("/devices/{device_id}/history")
async def location_history(
    device_id: str,
    route_id: str | None = Query(None),
    start: str | None = Query(None),
    end: str | None = Query(None),
    limit: int | None = Query(None, ge=1),
) -> JSONResponse:
    """Tracking history, newest first, optionally filtered by route and time range."""
    from tracking.main import get_service

    try:
        start_dt, end_dt = _parse_time(start), _parse_time(end)
    except BadRequest as e:
        return bad_request(str(e))

    outcome = await get_service().location_history(
        device_id, route_id=route_id, start=start_dt, end=end_dt, limit=limit,
    )
    return outcome_response(outcome)


@router.post("/devices/{device_id}/sms-location")
async def request_sms_location(device_id: str) -> JSONResponse:
    """Ask the device for a fix over SMS and wait for its reply."""
    from tracking.main import get_service

    return outcome_response(await get_service().request_sms_location(device_id))


@router.post("/devices/{device_id}/realtime")
async def enable_realtime(device_id: str, request: Request) -> JSONResponse:
    from tracking.main import get_service

    try:
        body = await json_body(request)
        interval = int(body.get("interval_seconds", 30))
    except BadRequest as e:
        return bad_request(str(e))
    except (TypeError, ValueError):
        return bad_request("interval_seconds must be an integer")

    return outcome_response(await get_service().enable_realtime(device_id, interval))


@router.post("/devices/configure-direct")
async def configure_direct_connection(request: Request) -> JSONResponse:
    """Reprogram a device over SMS to report straight to the socket listener.

    Body: {"phone_number", "server_ip"?, "port"?}
    """
    from tracking.main import get_service

    try:
        body = await json_body(request)
        port = int(body["port"]) if body.get("port") else None
    except BadRequest as e:
        return bad_request(str(e))
    except (TypeError, ValueError):
        return bad_request("port must be an integer")

    outcome = await get_service().configure_direct_connection(
        str(body.get("phone_number") or ""), body.get("server_ip"), port,
    )
    return outcome_response(outcome)


@router.get("/devices/sms")
async def sms_devices() -> JSONResponse:
    """Devices reachable over SMS, with SIM numbers masked."""
    from tracking.main import get_service

    return outcome_response(await get_service().sms_devices())
