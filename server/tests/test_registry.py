"""Tests for the device registry."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from tracking.core.errors import DuplicateDevice, NotFound, ValidationError
from tracking.core.models import DEVICE_ACTIVE, DEVICE_INACTIVE


@pytest.mark.asyncio
async def test_register_starts_inactive(registry):
    device = await registry.register("GPS-001", "Bus 12", model="TK103", sim="+919876543210")
    assert device.status == DEVICE_INACTIVE
    assert device.has_sim

    found = await registry.find("GPS-001")
    assert found.device_name == "Bus 12"
    assert found.model == "TK103"


@pytest.mark.asyncio
async def test_register_duplicate_rejected(registry):
    await registry.register("GPS-001", "Bus 12")
    with pytest.raises(DuplicateDevice) as exc:
        await registry.register("GPS-001", "Bus 13")
    assert "GPS-001" in str(exc.value)
    assert (await registry.find("GPS-001")).device_name == "Bus 12"


@pytest.mark.asyncio
async def test_register_requires_id_and_name(registry):
    with pytest.raises(ValidationError):
        await registry.register("  ", "Bus 12")
    with pytest.raises(ValidationError):
        await registry.register("GPS-001", "")
    assert await registry.list_devices() == []


@pytest.mark.asyncio
async def test_activate_deactivate_idempotent(registry):
    await registry.register("GPS-001", "Bus 12")

    first = await registry.activate("GPS-001")
    second = await registry.activate("GPS-001")
    assert first.status == second.status == DEVICE_ACTIVE

    await registry.deactivate("GPS-001")
    again = await registry.deactivate("GPS-001")
    assert again.status == DEVICE_INACTIVE


@pytest.mark.asyncio
async def test_activate_unknown_device(registry):
    with pytest.raises(NotFound):
        await registry.activate("nope")
    with pytest.raises(NotFound):
        await registry.deactivate("nope")


@pytest.mark.asyncio
async def test_resolve_by_imei(registry):
    await registry.register("GPS-001", "Bus 12", imei="359710045678901")
    assert (await registry.resolve("GPS-001")).device_id == "GPS-001"
    assert (await registry.resolve("359710045678901")).device_id == "GPS-001"
    assert await registry.resolve("000000000000000") is None
    assert await registry.resolve("") is None


@pytest.mark.asyncio
async def test_list_with_sim(registry):
    await registry.register("GPS-001", "Bus 12", sim="+919876543210")
    await registry.register("GPS-002", "Bus 13")
    await registry.register("GPS-003", "Bus 14", sim="   ")

    with_sim = await registry.list_with_sim()
    assert [d.device_id for d in with_sim] == ["GPS-001"]


@pytest.mark.asyncio
async def test_heartbeat_only_moves_forward(registry):
    await registry.register("GPS-001", "Bus 12")
    t = datetime(2025, 1, 22, 12, 0, tzinfo=timezone.utc)

    await registry.record_heartbeat("GPS-001", t)
    await registry.record_heartbeat("GPS-001", t - timedelta(minutes=5))
    assert (await registry.find("GPS-001")).last_heartbeat == t

    await registry.record_heartbeat("GPS-001", t + timedelta(seconds=1))
    assert (await registry.find("GPS-001")).last_heartbeat == t + timedelta(seconds=1)


@pytest.mark.asyncio
async def test_heartbeat_for_unknown_device_is_ignored(registry):
    await registry.record_heartbeat("ghost", datetime.now(timezone.utc))
    assert await registry.find("ghost") is None


@pytest.mark.asyncio
async def test_upsert_registers_then_updates(registry):
    created = await registry.upsert("GPS-001", "Bus 12")
    assert created.status == DEVICE_INACTIVE

    await registry.activate("GPS-001")
    updated = await registry.upsert("GPS-001", "Bus 12A", sim="+919876543210")
    assert updated.device_name == "Bus 12A"
    assert updated.sim_number == "+919876543210"
    assert updated.status == DEVICE_ACTIVE


@pytest.mark.asyncio
async def test_assign_and_find_by_registration(registry):
    await registry.register("GPS-001", "Bus 12")
    await registry.assign("GPS-001", vehicle_id="V1", registration_number="TN 09 AB 1234",
                          driver_id="DR7", route_id="R3")

    assignment = await registry.assignment_for("GPS-001")
    assert assignment.vehicle_id == "V1"
    assert assignment.sharing_enabled is True

    device = await registry.find_by_registration("tn09ab1234")
    assert device.device_id == "GPS-001"
    assert await registry.find_by_registration("TN 10 ZZ 0000") is None


@pytest.mark.asyncio
async def test_assign_unknown_device(registry):
    with pytest.raises(NotFound):
        await registry.assign("ghost", vehicle_id="V1")
