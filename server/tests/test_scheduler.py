"""Tests for the sync scheduler and its audit log."""

from __future__ import annotations

import asyncio

import pytest

from tracking.core.errors import AlreadyRunning, NotFound
from tracking.core.models import SYNC_ERROR, SYNC_PARTIAL, SYNC_SUCCESS, SyncResult
from tracking.core.scheduler import STATE_IDLE, STATE_RUNNING, AutoSyncSettings, SyncScheduler
from tracking.storage.memory_storage import MemoryRecordsStore


class FakeTarget:
    service_name = "fleet_cloud"

    def __init__(self, result: SyncResult | None = None, error: Exception | None = None):
        self.result = result or SyncResult(success=True, updated=3)
        self.error = error
        self.calls = 0
        self.release = asyncio.Event()
        self.release.set()

    async def sync_with_local_devices(self) -> SyncResult:
        self.calls += 1
        await self.release.wait()
        if self.error is not None:
            raise self.error
        return self.result


class UnwritableLogStore(MemoryRecordsStore):
    async def append_sync_log(self, entry) -> None:
        raise OSError("disk full")


@pytest.fixture
def target() -> FakeTarget:
    return FakeTarget()


@pytest.fixture
def settings(store) -> AutoSyncSettings:
    return AutoSyncSettings(store, enabled=False)


@pytest.fixture
def scheduler(store, settings, target, clock) -> SyncScheduler:
    return SyncScheduler(store, settings, [target], interval_seconds=0.01, clock=clock)


@pytest.mark.asyncio
async def test_manual_run_writes_one_entry(scheduler, store, target):
    entry = await scheduler.trigger("fleet_cloud", manual=True)

    assert entry.status == SYNC_SUCCESS
    assert entry.devices_updated == 3
    assert entry.trigger == "manual"
    logs = await store.list_sync_logs()
    assert len(logs) == 1
    assert scheduler.state_of("fleet_cloud") == STATE_IDLE


@pytest.mark.asyncio
@pytest.mark.parametrize("result, status", [
    (SyncResult(success=True, updated=2), SYNC_SUCCESS),
    (SyncResult(success=True, updated=2, errors=["No local device matches vehicle X"]), SYNC_PARTIAL),
    (SyncResult(success=True, errors=["No vehicle data received"]), SYNC_PARTIAL),
    (SyncResult(success=False, errors=["Sync error: HTTP 503"]), SYNC_ERROR),
])
async def test_status_mapping(scheduler, target, result, status):
    target.result = result
    entry = await scheduler.trigger("fleet_cloud", manual=True)
    assert entry.status == status
    assert entry.error_count == len(result.errors)


@pytest.mark.asyncio
async def test_adapter_exception_is_captured(scheduler, target, store):
    target.error = RuntimeError("provider exploded")
    entry = await scheduler.trigger("fleet_cloud", manual=True)

    assert entry.status == SYNC_ERROR
    assert entry.errors == ["provider exploded"]
    assert entry.error_count == 1
    assert len(await store.list_sync_logs()) == 1
    assert scheduler.state_of("fleet_cloud") == STATE_IDLE


@pytest.mark.asyncio
async def test_audit_write_failure_still_completes_run(target, clock):
    store = UnwritableLogStore()
    scheduler = SyncScheduler(store, AutoSyncSettings(store), [target], clock=clock)

    entry = await scheduler.trigger("fleet_cloud", manual=True)

    assert entry.status == SYNC_SUCCESS
    assert scheduler.state_of("fleet_cloud") == STATE_IDLE
    status = scheduler.status()["services"]["fleet_cloud"]
    assert status["runs"] == 1
    assert status["last_run"]["devices_updated"] == 3

    # The next run is not blocked.
    assert (await scheduler.trigger("fleet_cloud", manual=True)) is not None


@pytest.mark.asyncio
async def test_overlapping_trigger_rejected_without_audit_entry(scheduler, target, store):
    target.release.clear()
    first = asyncio.create_task(scheduler.trigger("fleet_cloud", manual=True))
    await asyncio.sleep(0)
    assert scheduler.state_of("fleet_cloud") == STATE_RUNNING

    with pytest.raises(AlreadyRunning):
        await scheduler.trigger("fleet_cloud", manual=True)

    target.release.set()
    await first
    assert target.calls == 1
    assert len(await store.list_sync_logs()) == 1
    assert scheduler.status()["services"]["fleet_cloud"]["rejected"] == 1


@pytest.mark.asyncio
async def test_automatic_trigger_gated_by_flag(scheduler, settings, store, target):
    assert await scheduler.trigger("fleet_cloud") is None
    assert target.calls == 0
    assert await store.list_sync_logs() == []

    await settings.set_enabled(True)
    entry = await scheduler.trigger("fleet_cloud")
    assert entry.trigger == "auto"
    assert target.calls == 1


@pytest.mark.asyncio
async def test_manual_trigger_bypasses_flag(scheduler, settings, target):
    assert not settings.enabled
    assert await scheduler.trigger("fleet_cloud", manual=True) is not None
    assert target.calls == 1


@pytest.mark.asyncio
async def test_unknown_service(scheduler):
    with pytest.raises(NotFound):
        await scheduler.trigger("nope", manual=True)


@pytest.mark.asyncio
async def test_settings_persist_and_override_config(store):
    settings = AutoSyncSettings(store, enabled=False)
    await settings.set_enabled(True)

    reloaded = AutoSyncSettings(store, enabled=False)
    assert not reloaded.enabled
    assert await reloaded.load() is True
    assert reloaded.enabled


@pytest.mark.asyncio
async def test_settings_default_from_config(store):
    settings = AutoSyncSettings(store, enabled=True)
    assert await settings.load() is True


@pytest.mark.asyncio
async def test_periodic_loop(scheduler, settings, target, store):
    await settings.set_enabled(True)
    task = asyncio.create_task(scheduler.run_periodic())
    try:
        for _ in range(200):
            if target.calls >= 2:
                break
            await asyncio.sleep(0.01)
    finally:
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
    assert target.calls >= 2
    assert all(e.trigger == "auto" for e in await store.list_sync_logs())


@pytest.mark.asyncio
async def test_status_and_logs(scheduler, target):
    await scheduler.trigger("fleet_cloud", manual=True)
    target.result = SyncResult(success=False, errors=["boom"])
    await scheduler.trigger("fleet_cloud", manual=True)

    status = scheduler.status()
    assert status["auto_sync_enabled"] is False
    service = status["services"]["fleet_cloud"]
    assert service["state"] == STATE_IDLE
    assert service["runs"] == 2
    assert service["last_run"]["status"] == SYNC_ERROR

    logs = await scheduler.logs("fleet_cloud", limit=1)
    assert len(logs) == 1
