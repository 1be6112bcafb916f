"""Tests for the fleet cloud poll adapter against a mocked provider."""

from __future__ import annotations

import json

import httpx
import pytest

from tracking.core.errors import ParseError, TransportTimeout, TransportUnreachable
from tracking.transport.cloud import CloudPollAdapter, parse_vehicle_payload

BASE = "https://fleet.example.com/api"

VEHICLES = [
    {"id": "GPS-001", "name": "Bus 12", "latitude": 13.0827, "longitude": 80.2707,
     "speed": 32, "heading": 180, "timestamp": "2025-01-22T12:00:00Z", "status": "moving"},
    {"id": "359710045678901", "name": "Bus 13", "lat": 13.05, "lng": 80.25},
    {"id": "remote-77", "name": "TN 09 AB 1234", "location": {"latitude": 13.01, "longitude": 80.21}},
    {"id": "remote-99", "name": "Unknown van", "lat": 12.9, "lng": 80.1},
    {"id": "remote-00", "name": "No fix", "lat": 0, "lng": 0},
]


class FakeProvider:
    """Programmable fleet provider behind httpx.MockTransport."""

    def __init__(self, vehicles=None):
        self.vehicles = VEHICLES if vehicles is None else vehicles
        self.logins = 0
        self.expire_next = False
        self.routes: dict[str, httpx.Response] = {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.removeprefix("/api")
        if path == "/auth/login":
            body = json.loads(request.content)
            if body["password"] != "secret":
                return httpx.Response(401, json={"error": "bad credentials"})
            self.logins += 1
            return httpx.Response(200, json={"access_token": f"token-{self.logins}"})
        if request.headers.get("authorization") != f"Bearer token-{self.logins}":
            return httpx.Response(401)
        if self.expire_next:
            self.expire_next = False
            self.logins += 1
            return httpx.Response(401)
        if path in self.routes:
            return self.routes[path]
        if path == "/vehicles/locations":
            return httpx.Response(200, json={"success": True, "data": self.vehicles})
        return httpx.Response(404)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
async def http_client(provider):
    async with httpx.AsyncClient(transport=httpx.MockTransport(provider)) as client:
        yield client


@pytest.fixture
def make_adapter(registry, reconciler, http_client, clock):
    def _make(password: str = "secret") -> CloudPollAdapter:
        return CloudPollAdapter(
            registry, reconciler, http_client,
            base_url=BASE, username="ops", password=password,
            service_name="fleet_cloud", quality=40, clock=clock,
        )

    return _make


@pytest.fixture
async def local_devices(registry):
    await registry.register("GPS-001", "Bus 12")
    await registry.register("GPS-002", "Bus 13", imei="359710045678901")
    await registry.register("GPS-003", "Bus 14")
    await registry.assign("GPS-003", vehicle_id="V3", registration_number="TN09AB1234")
    return registry


def test_parse_vehicle_payload_envelopes():
    assert len(parse_vehicle_payload(VEHICLES)) == 4
    assert len(parse_vehicle_payload({"vehicles": VEHICLES})) == 4
    assert parse_vehicle_payload({"devices": []}) == []

    vehicle = parse_vehicle_payload([{"device_id": "A", "lat": "13.1", "lng": "80.2",
                                      "velocity": 20, "direction": 370}])[0]
    assert (vehicle.id, vehicle.latitude, vehicle.speed, vehicle.heading) == ("A", 13.1, 20.0, 10.0)
    assert vehicle.timestamp is None

    with pytest.raises(ParseError):
        parse_vehicle_payload("nope")


def test_parse_vehicle_payload_tolerates_bad_optional_fields():
    vehicles = parse_vehicle_payload([
        {"id": "V1", "lat": 13.1, "lng": 80.2, "speed": "n/a", "heading": "north"},
        {"id": "V2", "lat": 13.1, "lng": 80.2, "timestamp": 1e30},
        {"id": "V3", "lat": "abc", "lng": 80.2},
    ])
    assert [v.id for v in vehicles] == ["V1", "V2"]
    assert (vehicles[0].speed, vehicles[0].heading) == (0.0, 0.0)
    assert vehicles[1].timestamp is None


def test_parse_vehicle_payload_keeps_zero_coordinates():
    vehicles = parse_vehicle_payload([
        {"id": "equator", "lat": 0.0, "lng": 32.58, "location": {"latitude": 9.0}},
        {"id": "greenwich", "latitude": 51.48, "longitude": 0},
    ])
    assert [(v.latitude, v.longitude) for v in vehicles] == [(0.0, 32.58), (51.48, 0.0)]


@pytest.mark.asyncio
async def test_authenticate_caches_token(make_adapter, provider):
    adapter = make_adapter()
    assert await adapter.authenticate() == "token-1"

    await adapter.get_vehicle_locations()
    await adapter.get_vehicle_locations()
    assert provider.logins == 1


@pytest.mark.asyncio
async def test_expired_token_refreshed_once(make_adapter, provider):
    adapter = make_adapter()
    await adapter.authenticate()
    provider.expire_next = True

    vehicles = await adapter.get_vehicle_locations()
    assert len(vehicles) == 4


@pytest.mark.asyncio
async def test_alternative_endpoints(make_adapter, provider):
    provider.routes["/vehicles/locations"] = httpx.Response(404)
    provider.routes["/vehicles"] = httpx.Response(500)
    provider.routes["/tracking/vehicles"] = httpx.Response(200, json={"vehicles": VEHICLES[:1]})

    vehicles = await make_adapter().get_vehicle_locations()
    assert [v.id for v in vehicles] == ["GPS-001"]
    paths = [r.url.path for r in provider.requests if r.method == "GET"]
    assert paths == ["/api/vehicles/locations", "/api/vehicles", "/api/tracking/vehicles"]


@pytest.mark.asyncio
async def test_all_endpoints_failing(make_adapter, provider):
    for path in ("/vehicles/locations", "/vehicles", "/tracking/vehicles", "/api/vehicles",
                 "/gps/vehicles", "/devices"):
        provider.routes[path] = httpx.Response(503)
    with pytest.raises(TransportUnreachable):
        await make_adapter().get_vehicle_locations()


@pytest.mark.asyncio
async def test_bad_credentials(make_adapter):
    with pytest.raises(TransportUnreachable) as exc:
        await make_adapter(password="wrong").authenticate()
    assert exc.value.status_code == 401


@pytest.mark.asyncio
async def test_timeout_is_reported(registry, reconciler, clock):
    def slow(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(slow)) as client:
        adapter = CloudPollAdapter(registry, reconciler, client, base_url=BASE,
                                   username="ops", password="secret", clock=clock)
        with pytest.raises(TransportTimeout):
            await adapter.get_vehicle_locations()


@pytest.mark.asyncio
async def test_sync_joins_by_id_imei_and_registration(local_devices, make_adapter, reconciler):
    result = await make_adapter().sync_with_local_devices()

    assert result.success
    assert result.updated == 3
    assert len(result.errors) == 1
    assert "Unknown van" in result.errors[0]

    for device_id in ("GPS-001", "GPS-002", "GPS-003"):
        history = await reconciler.history(device_id)
        assert len(history) == 1
        assert history[0].source == "http_poll"
        assert history[0].quality == 40
        assert history[0].accuracy == 10.0

    assert (await reconciler.history("GPS-003"))[0].vehicle_id == "V3"


@pytest.mark.asyncio
async def test_sync_empty_fleet(local_devices, make_adapter, provider):
    provider.vehicles = []
    result = await make_adapter().sync_with_local_devices()
    assert result.success
    assert result.updated == 0
    assert result.errors == ["No vehicle data received from fleet_cloud"]


@pytest.mark.asyncio
async def test_sync_fetch_failure(local_devices, make_adapter):
    result = await make_adapter(password="wrong").sync_with_local_devices()
    assert not result.success
    assert result.updated == 0
    assert len(result.errors) == 1


@pytest.mark.asyncio
async def test_test_connection(make_adapter, reconciler):
    ok = await make_adapter().test_connection()
    assert ok.success
    assert "Found 4 vehicles" in ok.message
    assert await reconciler.history("GPS-001") == []

    failed = await make_adapter(password="wrong").test_connection()
    assert not failed.success
    assert "authentication failed" in failed.message


@pytest.mark.asyncio
async def test_sync_bad_entry_does_not_fail_batch(local_devices, make_adapter, provider, reconciler):
    provider.vehicles = [
        {"id": "GPS-001", "lat": 13.0827, "lng": 80.2707},
        {"id": "GPS-002", "lat": 13.05, "lng": 80.25, "speed": "n/a"},
    ]

    result = await make_adapter().sync_with_local_devices()

    assert result.success is True
    assert result.updated == 2
    assert result.errors == []
    assert (await reconciler.current_location("GPS-002")).speed == 0.0
