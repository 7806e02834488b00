from datetime import date
from decimal import Decimal

import pytest

from conftest import FRONT_DOOR, POD_1_DOOR, future_day
from studio_access.core.credentials import fallback_passcode
from studio_access.core.errors import PermissionDeniedError, ValidationError
from studio_access.core.manager import StudioManager


async def test_initialize_seeds_room_catalog_once(manager, settings, gateway):
    rooms = await manager.get_rooms()
    assert [r["key"] for r in rooms] == ["pod_1", "pod_2", "studio"]
    assert Decimal(rooms[0]["day_price_per_hour"]) == Decimal("7")
    assert rooms[2]["day_hours"] is None

    again = StudioManager(settings, gateway=gateway)
    await again.initialize()
    assert len(await again.get_rooms()) == 3


async def test_create_booking_returns_working_passcode(manager, rooms, gateway):
    booking = await manager.create_booking(1, rooms["pod_1"], future_day(), "15:00", "19:00")

    assert booking["status"] == "confirmed"
    assert booking["start_time"] == "15:00"
    assert booking["end_time"] == "19:00"
    assert Decimal(booking["total_price"]) == Decimal("32")
    assert booking["credential_enabled"] is True
    assert booking["credential_state"] == "provisioned"
    assert len(booking["passcode"]) == 6
    assert {lock for lock, _, _ in gateway.created} == {FRONT_DOOR, POD_1_DOOR}


async def test_gateway_outage_does_not_block_booking(manager, rooms, gateway, settings):
    gateway.failing = {FRONT_DOOR, POD_1_DOOR}

    booking = await manager.create_booking(1, rooms["pod_1"], future_day(), "10:00", "12:00")

    assert booking["status"] == "confirmed"
    assert booking["credential_enabled"] is False
    assert booking["passcode"] == fallback_passcode(booking["id"], settings.passcode_secret)


async def test_unexpected_gateway_crash_does_not_block_booking(manager, rooms, gateway):
    async def crash(*args, **kwargs):
        raise RuntimeError("socket closed")

    gateway.create_passcode = crash

    booking = await manager.create_booking(1, rooms["pod_1"], future_day(), "10:00", "12:00")

    assert booking["status"] == "confirmed"
    assert booking["credential_enabled"] is False


async def test_booking_survives_provisioning_crash_and_is_repaired(manager, rooms, gateway, settings):
    record_outcomes = manager.credentials._record_outcomes
    crashes = []

    def crash_once(*args, **kwargs):
        if not crashes:
            crashes.append(True)
            raise RuntimeError("database is locked")
        return record_outcomes(*args, **kwargs)

    manager.credentials._record_outcomes = crash_once

    booking = await manager.create_booking(1, rooms["pod_1"], future_day(), "10:00", "12:00")

    assert booking["status"] == "confirmed"
    assert booking["passcode"] == fallback_passcode(booking["id"], settings.passcode_secret)
    assert booking["credential_enabled"] is False

    stats = await manager.reconciler.daily_resync()

    assert stats["synced"] == 1
    repaired = await manager.get_booking(booking["id"], user_id=1)
    assert repaired["passcode"] == booking["passcode"]
    assert repaired["credential_enabled"] is True


async def test_cancel_booking_revokes_passcode(manager, rooms, gateway):
    booking = await manager.create_booking(1, rooms["pod_1"], future_day(), "10:00", "12:00")

    cancelled = await manager.cancel_booking(booking["id"], user_id=1)

    assert cancelled["status"] == "cancelled"
    assert cancelled["credential_state"] == "revoked"
    assert cancelled["credential_enabled"] is False
    assert len(gateway.deleted) == 2


async def test_cancel_survives_lock_outage(manager, rooms, gateway):
    booking = await manager.create_booking(1, rooms["pod_1"], future_day(), "10:00", "12:00")
    gateway.fail_delete = {FRONT_DOOR, POD_1_DOOR}

    cancelled = await manager.cancel_booking(booking["id"], user_id=1)

    assert cancelled["status"] == "cancelled"
    assert cancelled["credential_enabled"] is True


async def test_cancel_user_bookings_revokes_each(manager, rooms, gateway):
    for days in (2, 3):
        await manager.create_booking(8, rooms["pod_1"], future_day(days), "10:00", "12:00")

    result = await manager.cancel_user_bookings(8)

    assert len(result["cancelled"]) == 2
    assert len(gateway.deleted) == 4


async def test_get_booking_checks_ownership(manager, rooms):
    booking = await manager.create_booking(1, rooms["studio"], future_day(), "10:00", "12:00")

    assert (await manager.get_booking(booking["id"], user_id=1))["id"] == booking["id"]
    assert (await manager.get_booking(booking["id"], user_id=2, is_admin=True))["id"] == booking["id"]
    with pytest.raises(PermissionDeniedError):
        await manager.get_booking(booking["id"], user_id=2)


async def test_availability_formats_hours(manager, rooms):
    day = future_day()
    await manager.create_booking(1, rooms["studio"], day, "22:00", "24:00")

    availability = await manager.get_availability(rooms["studio"], day.isoformat())

    assert availability["booked"] == [{"start_time": "22:00", "end_time": "24:00"}]
    assert availability["blocked"] == []


async def test_lock_status_reports_each_lock(manager, rooms, gateway):
    gateway.failing = {POD_1_DOOR}

    statuses = await manager.get_lock_status(rooms["pod_1"])

    assert statuses[0] == {
        "lock_role": "front", "lock_id": FRONT_DOOR, "online": True, "battery_level": 80, "error": None,
    }
    assert statuses[1]["online"] is False
    assert statuses[1]["error"]


async def test_access_log_merges_locks(manager, rooms):
    events = await manager.get_access_log(rooms["pod_1"], start="2025-01-06", end="2025-01-06")

    assert {e["lock_role"] for e in events} == {"front", "interior"}
    with pytest.raises(ValidationError):
        await manager.get_access_log(rooms["pod_1"], start="2025-01-07", end="2025-01-06")


async def test_run_reconciliation(manager):
    result = await manager.run_reconciliation("expire")
    assert result["task"] == "expire"
    assert result["checked"] == 0

    with pytest.raises(ValidationError):
        await manager.run_reconciliation("vacuum")


async def test_blocks_round_trip_through_manager(manager, rooms):
    created = await manager.create_block(
        rooms["studio"], date(2025, 1, 6), "10:00", "12:00", recurring=True, recur_until="2025-01-20"
    )
    assert [b["series"] for b in created] == [
        "series head (until 2025-01-20)",
        f"repeat of #{created[0]['id']}",
        f"repeat of #{created[0]['id']}",
    ]

    result = await manager.delete_block(created[0]["id"])
    assert result == {"id": created[0]["id"], "removed": 3}
    assert await manager.get_blocks() == []


async def test_health_check(manager):
    health = await manager.health_check()

    assert health["gateway_configured"] is True
    assert health["gateway"] is True
    assert health["running"] is False


async def test_stop_closes_gateway(manager, gateway):
    await manager.stop()
    assert gateway.closed is True
