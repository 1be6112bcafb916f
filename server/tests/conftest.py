"""Shared test fixtures."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

import tracking.main as main_module
from tracking.config import AppConfig
from tracking.core.models import LocationSample
from tracking.core.reconciler import LocationReconciler
from tracking.core.registry import DeviceRegistry
from tracking.core.stats import IngestStats
from tracking.storage.memory_storage import MemoryRecordsStore

T0 = datetime(2025, 1, 22, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock for components that take a ``clock`` callable."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture(autouse=True)
def _init_server(tmp_path):
    """Initialize server singletons for every test, using a temp directory."""
    config = AppConfig()
    config.storage.base_dir = str(tmp_path / "data")
    config.logging.level = "warning"
    config.listener.host = "127.0.0.1"
    config.listener.tcp_port = 0
    config.listener.udp_port = 0
    config.sms.reply_timeout_seconds = 0.1
    config.sms.command_gap_seconds = 0
    config.sms.public_server_ip = "203.0.113.10"

    # No SMS gateway or cloud credentials are configured; nothing leaves the process.
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
    store = MemoryRecordsStore()
    stats, listeners, sms_channel, _, service = main_module.build_components(config, store, http_client)

    # Patch module-level singletons
    main_module._config = config
    main_module._stats = stats
    main_module._listeners = listeners
    main_module._sms_channel = sms_channel
    main_module._service = service

    yield

    # Cleanup
    main_module._config = None
    main_module._stats = None
    main_module._listeners = None
    main_module._sms_channel = None
    main_module._service = None


@pytest.fixture
async def client():
    from tracking.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryRecordsStore:
    return MemoryRecordsStore()


@pytest.fixture
def stats() -> IngestStats:
    return IngestStats()


@pytest.fixture
def registry(store) -> DeviceRegistry:
    return DeviceRegistry(store)


@pytest.fixture
def reconciler(store, registry, stats, clock) -> LocationReconciler:
    return LocationReconciler(store, registry, stats, clock=clock)


@pytest.fixture
def make_sample(clock):
    """Build a LocationSample observed ``offset`` seconds after T0."""

    def _make(
        device_id: str = "D1",
        offset: float = 0.0,
        *,
        source: str = "tcp",
        accuracy: float | None = 5.0,
        quality: int = 80,
        lat: float = 13.0827,
        lon: float = 80.2707,
        received_at: datetime | None = None,
    ) -> LocationSample:
        return LocationSample(
            device_id=device_id,
            latitude=lat,
            longitude=lon,
            source=source,
            observed_at=T0 + timedelta(seconds=offset),
            received_at=received_at or clock(),
            accuracy=accuracy,
            quality=quality,
        )

    return _make
