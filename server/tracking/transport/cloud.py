"""Fleet cloud poll adapter.

Authenticates against the fleet provider, fetches the current vehicle
list, and forwards matched vehicles to the reconciler as ``http_poll``
samples. Provider payloads vary between accounts, so parsing is tolerant
about envelope and field names.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Callable, TYPE_CHECKING

import httpx
import structlog

from tracking.core.errors import ParseError, TransportError, TransportTimeout, TransportUnreachable
from tracking.core.models import SOURCE_HTTP_POLL, LocationSample, Outcome, RawVehicleFix, SyncResult, utcnow
from tracking.transport.decoders import parse_timestamp, validate_coordinates

if TYPE_CHECKING:
    from tracking.core.models import GPSDevice
    from tracking.core.reconciler import LocationReconciler
    from tracking.core.registry import DeviceRegistry

log = structlog.get_logger()

PRIMARY_ENDPOINT = "/vehicles/locations"
ALTERNATIVE_ENDPOINTS = ("/vehicles", "/tracking/vehicles", "/api/vehicles", "/gps/vehicles", "/devices")

# Provider fixes carry no accuracy; this is the provider's nominal figure.
CLOUD_ACCURACY_METERS = 10.0


def _first(item: dict, *keys: str):
    for key in keys:
        value = item.get(key)
        if value is not None and value != "":
            return value
    return None


def _number(value, default: float = 0.0) -> float:
    """Lenient float for optional fields; junk becomes ``default``."""
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    return result if math.isfinite(result) else default


def parse_vehicle_payload(payload: object) -> list[RawVehicleFix]:
    """Extract vehicles from any of the envelopes the provider uses.

    Entries without usable coordinates are dropped.
    """
    if isinstance(payload, list):
        items = payload
    elif isinstance(payload, dict):
        items = _first(payload, "data", "vehicles", "devices") or []
    else:
        raise ParseError("vehicle payload is neither a list nor an object")
    if not isinstance(items, list):
        raise ParseError("vehicle list is not an array")

    vehicles = []
    for item in items:
        if not isinstance(item, dict):
            continue
        location = item.get("location") if isinstance(item.get("location"), dict) else {}
        lat = _first(item, "latitude", "lat")
        if lat is None:
            lat = _first(location, "latitude", "lat")
        lon = _first(item, "longitude", "lng", "lon")
        if lon is None:
            lon = _first(location, "longitude", "lng", "lon")
        lat, lon = _number(lat, math.nan), _number(lon, math.nan)
        if not (math.isfinite(lat) and math.isfinite(lon)):
            continue
        if (lat == 0 and lon == 0) or not validate_coordinates(lat, lon):
            continue
        try:
            timestamp = parse_timestamp(_first(item, "timestamp", "last_update", "updated_at"))
        except ParseError:
            timestamp = None
        vehicles.append(RawVehicleFix(
            id=str(_first(item, "id", "device_id", "vehicle_id", "imei") or ""),
            name=str(_first(item, "name", "vehicle_name", "device_name") or ""),
            latitude=lat,
            longitude=lon,
            speed=_number(_first(item, "speed", "velocity")),
            heading=_number(_first(item, "heading", "direction", "course")) % 360,
            timestamp=timestamp,
            status=str(item.get("status") or "unknown"),
        ))
    return vehicles


class CloudPollAdapter:
    def __init__(
        self,
        registry: DeviceRegistry,
        reconciler: LocationReconciler,
        client: httpx.AsyncClient,
        *,
        base_url: str,
        username: str = "",
        password: str = "",
        timeout_seconds: float = 15.0,
        service_name: str = "fleet_cloud",
        quality: int = 40,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._registry = registry
        self._reconciler = reconciler
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._username = username
        self._password = password
        self._timeout = timeout_seconds
        self._quality = quality
        self._clock = clock
        self.service_name = service_name
        self._token: str | None = None

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        url = self._base_url + path
        try:
            return await self._client.request(method, url, timeout=self._timeout, **kwargs)
        except httpx.TimeoutException as e:
            raise TransportTimeout(f"{self.service_name} timed out after {self._timeout}s", endpoint=url) from e
        except httpx.HTTPError as e:
            raise TransportUnreachable(f"{type(e).__name__}: {e}", endpoint=url) from e

    async def authenticate(self) -> str:
        """Log in and cache the bearer token."""
        if not self._username or not self._password:
            raise TransportUnreachable(f"{self.service_name} credentials not configured")
        resp = await self._request("POST", "/auth/login",
                                   json={"username": self._username, "password": self._password})
        if resp.status_code >= 400:
            raise TransportUnreachable(
                f"authentication failed: HTTP {resp.status_code}",
                endpoint=str(resp.request.url), status_code=resp.status_code,
            )
        try:
            data = resp.json()
        except ValueError:
            raise TransportUnreachable("authentication response is not JSON") from None
        token = (data.get("token") or data.get("access_token")) if isinstance(data, dict) else None
        if not token:
            raise TransportUnreachable("authentication response carries no token")
        self._token = token
        log.info("cloud_authenticated", service=self.service_name)
        return token

    async def _get(self, path: str) -> httpx.Response:
        if self._token is None:
            await self.authenticate()
        resp = await self._request("GET", path, headers={"Authorization": f"Bearer {self._token}"})
        if resp.status_code == 401:
            log.info("cloud_token_expired", service=self.service_name)
            await self.authenticate()
            resp = await self._request("GET", path, headers={"Authorization": f"Bearer {self._token}"})
        return resp

    async def get_vehicle_locations(self) -> list[RawVehicleFix]:
        """Fetch current vehicle fixes, trying the alternative endpoints in turn."""
        last_status = None
        for path in (PRIMARY_ENDPOINT, *ALTERNATIVE_ENDPOINTS):
            resp = await self._get(path)
            if resp.status_code >= 400:
                last_status = resp.status_code
                log.debug("cloud_endpoint_rejected", service=self.service_name,
                          path=path, status=resp.status_code)
                continue
            try:
                payload = resp.json()
            except ValueError:
                log.warning("cloud_payload_not_json", service=self.service_name, path=path)
                continue
            try:
                vehicles = parse_vehicle_payload(payload)
            except ParseError as e:
                log.warning("cloud_payload_unparseable", service=self.service_name, path=path, error=str(e))
                continue
            log.info("cloud_vehicles_fetched", service=self.service_name, path=path, count=len(vehicles))
            return vehicles
        raise TransportUnreachable(
            f"no {self.service_name} vehicle endpoint answered", status_code=last_status,
        )

    async def test_connection(self) -> Outcome:
        try:
            await self.authenticate()
            vehicles = await self.get_vehicle_locations()
        except TransportError as e:
            return Outcome(success=False, message=f"Connection test failed: {e}")
        return Outcome(
            success=True,
            message=f"Successfully connected to {self.service_name}. Found {len(vehicles)} vehicles.",
            data=[v.to_dict() for v in vehicles],
        )

    async def _match(self, vehicle: RawVehicleFix) -> GPSDevice | None:
        device = await self._registry.resolve(vehicle.id) if vehicle.id else None
        if device is None and vehicle.name:
            device = await self._registry.find_by_registration(vehicle.name)
        return device

    async def sync_with_local_devices(self) -> SyncResult:
        """One poll: fetch, join to local devices, forward samples.

        A failing vehicle only adds to ``errors``; a failed fetch fails the sync.
        """
        try:
            vehicles = await self.get_vehicle_locations()
        except TransportError as e:
            log.warning("cloud_sync_fetch_failed", service=self.service_name, error=str(e))
            return SyncResult(success=False, errors=[f"Sync error: {e}"])

        if not vehicles:
            return SyncResult(success=True, errors=[f"No vehicle data received from {self.service_name}"])

        result = SyncResult(success=True)
        received_at = self._clock()
        for vehicle in vehicles:
            try:
                device = await self._match(vehicle)
                if device is None:
                    log.debug("cloud_vehicle_unmatched", service=self.service_name,
                              vehicle=vehicle.id, name=vehicle.name)
                    result.errors.append(f"No local device matches vehicle {vehicle.name or vehicle.id}")
                    continue
                await self._reconciler.ingest(LocationSample(
                    device_id=device.device_id,
                    latitude=vehicle.latitude,
                    longitude=vehicle.longitude,
                    source=SOURCE_HTTP_POLL,
                    observed_at=vehicle.timestamp or received_at,
                    received_at=received_at,
                    accuracy=CLOUD_ACCURACY_METERS,
                    speed=vehicle.speed,
                    heading=vehicle.heading,
                    quality=self._quality,
                    raw=vehicle.id,
                ))
                result.updated += 1
            except Exception as e:
                log.warning("cloud_vehicle_failed", service=self.service_name,
                            vehicle=vehicle.id, error=str(e), exc_info=True)
                result.errors.append(f"Error updating vehicle {vehicle.name or vehicle.id}: {e}")
        log.info("cloud_sync_finished", service=self.service_name,
                 updated=result.updated, errors=len(result.errors))
        return result
