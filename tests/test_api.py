import httpx
import pytest

from conftest import future_day
from studio_access.api.routes import set_manager
from studio_access.core.manager import StudioManager
from studio_access.main import app


@pytest.fixture
async def client(manager):
    set_manager(manager)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    set_manager(None)


async def auth(manager: StudioManager, user_id: int = 1, is_admin: bool = False) -> dict:
    session = await manager.sessions.create(user_id=user_id, is_admin=is_admin)
    return {"Authorization": f"Bearer {session.session_id}"}


def booking_payload(room_id: int, start: str = "10:00", end: str = "12:00", day=None) -> dict:
    return {
        "room_id": room_id,
        "date": (day or future_day()).isoformat(),
        "start_time": start,
        "end_time": end,
    }


async def test_health_and_rooms_are_public(client):
    response = await client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["gateway_configured"] is True

    response = await client.get("/api/rooms")
    assert response.status_code == 200
    assert len(response.json()) == 3

    response = await client.get("/api/rooms/999")
    assert response.status_code == 404


async def test_booking_requires_session(client, manager, rooms):
    response = await client.post("/api/bookings", json=booking_payload(rooms["pod_1"]))
    assert response.status_code == 401

    response = await client.post(
        "/api/bookings",
        json=booking_payload(rooms["pod_1"]),
        headers={"Authorization": "Bearer not-a-session"},
    )
    assert response.status_code == 401


async def test_create_booking_and_conflict(client, manager, rooms):
    headers = await auth(manager, user_id=1)

    response = await client.post("/api/bookings", json=booking_payload(rooms["pod_1"]), headers=headers)
    assert response.status_code == 201
    booking = response.json()
    assert booking["user_id"] == 1
    assert booking["credential_enabled"] is True

    other = await auth(manager, user_id=2)
    response = await client.post(
        "/api/bookings", json=booking_payload(rooms["pod_1"], "11:00", "13:00"), headers=other
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "slot already booked"

    response = await client.post(
        "/api/bookings", json=booking_payload(rooms["pod_1"], "13:30", "15:00"), headers=other
    )
    assert response.status_code == 400


async def test_availability_endpoint(client, manager, rooms):
    day = future_day()
    headers = await auth(manager)
    await client.post("/api/bookings", json=booking_payload(rooms["studio"], day=day), headers=headers)

    response = await client.get(f"/api/rooms/{rooms['studio']}/availability", params={"date": day.isoformat()})

    assert response.status_code == 200
    assert response.json()["booked"] == [{"start_time": "10:00", "end_time": "12:00"}]

    response = await client.get(f"/api/rooms/{rooms['studio']}/availability", params={"date": "tomorrow"})
    assert response.status_code == 400


async def test_list_and_get_own_bookings(client, manager, rooms):
    owner = await auth(manager, user_id=1)
    stranger = await auth(manager, user_id=2)
    created = (await client.post("/api/bookings", json=booking_payload(rooms["pod_2"]), headers=owner)).json()

    response = await client.get("/api/bookings", headers=owner)
    assert [b["id"] for b in response.json()] == [created["id"]]

    response = await client.get("/api/bookings", headers=stranger)
    assert response.json() == []

    response = await client.get(f"/api/bookings/{created['id']}", headers=stranger)
    assert response.status_code == 403


async def test_cancel_booking_status_codes(client, manager, rooms):
    owner = await auth(manager, user_id=1)
    stranger = await auth(manager, user_id=2)
    created = (await client.post("/api/bookings", json=booking_payload(rooms["pod_2"]), headers=owner)).json()

    response = await client.patch(f"/api/bookings/{created['id']}/cancel", headers=stranger)
    assert response.status_code == 403

    response = await client.patch(f"/api/bookings/{created['id']}/cancel", headers=owner)
    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"

    response = await client.patch(f"/api/bookings/{created['id']}/cancel", headers=owner)
    assert response.status_code == 400

    response = await client.patch("/api/bookings/9999/cancel", headers=owner)
    assert response.status_code == 404


async def test_admin_endpoints_require_admin(client, manager):
    headers = await auth(manager, user_id=1)

    for method, path in [
        ("GET", "/api/admin/bookings"),
        ("GET", "/api/admin/blocked-slots"),
        ("POST", "/api/admin/reconcile/expire"),
        ("POST", "/api/admin/users/1/cancel-bookings"),
    ]:
        response = await client.request(method, path, headers=headers)
        assert response.status_code == 403, path


async def test_admin_blocked_slot_lifecycle(client, manager, rooms):
    admin = await auth(manager, user_id=99, is_admin=True)

    response = await client.post(
        "/api/admin/blocked-slots",
        json={
            "room_id": rooms["studio"],
            "date": "2025-01-06",
            "start_time": "10:00",
            "end_time": "12:00",
            "reason": "Lessons",
            "is_recurring": True,
            "recurring_until": "2025-01-27",
        },
        headers=admin,
    )
    assert response.status_code == 201
    body = response.json()
    assert body["created"] == 4
    head_id = body["blocks"][0]["id"]
    child_id = body["blocks"][1]["id"]

    response = await client.patch(
        f"/api/admin/blocked-slots/{child_id}", json={"end_time": "13:00"}, headers=admin
    )
    assert response.status_code == 200
    assert response.json()["end_time"] == "13:00"

    response = await client.get("/api/admin/blocked-slots", headers=admin)
    assert len(response.json()) == 4

    response = await client.delete(f"/api/admin/blocked-slots/{head_id}", headers=admin)
    assert response.json()["removed"] == 4

    response = await client.delete(f"/api/admin/blocked-slots/{head_id}", headers=admin)
    assert response.status_code == 404


async def test_admin_bookings_resync_and_bulk_cancel(client, manager, rooms, gateway):
    user = await auth(manager, user_id=5)
    admin = await auth(manager, user_id=99, is_admin=True)
    created = (await client.post("/api/bookings", json=booking_payload(rooms["pod_1"]), headers=user)).json()

    response = await client.get("/api/admin/bookings", params={"user_id": 5}, headers=admin)
    assert [b["id"] for b in response.json()] == [created["id"]]

    response = await client.post(f"/api/admin/bookings/{created['id']}/resync", headers=admin)
    assert response.status_code == 200
    assert response.json()["enabled"] is True

    response = await client.post("/api/admin/users/5/cancel-bookings", headers=admin)
    assert response.json()["cancelled"] == [created["id"]]


async def test_reconcile_endpoint(client, manager):
    admin = await auth(manager, is_admin=True)

    response = await client.post("/api/admin/reconcile/purge", headers=admin)
    assert response.status_code == 200
    assert response.json()["task"] == "purge"

    response = await client.post("/api/admin/reconcile/vacuum", headers=admin)
    assert response.status_code == 400


async def test_smart_lock_endpoints(client, manager, rooms):
    admin = await auth(manager, is_admin=True)

    response = await client.get("/api/smart-lock/status", params={"room_id": rooms["pod_1"]}, headers=admin)
    assert response.status_code == 200
    assert [s["lock_role"] for s in response.json()] == ["front", "interior"]

    response = await client.get(
        "/api/smart-lock/logs",
        params={"room_id": rooms["pod_1"], "start": "2025-01-06", "end": "2025-01-07"},
        headers=admin,
    )
    assert response.status_code == 200
    assert len(response.json()) == 2


async def test_smart_lock_unavailable_without_gateway(db, settings):
    manager = StudioManager(settings)
    await manager.initialize()
    set_manager(manager)
    admin = await auth(manager, is_admin=True)
    try:
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
            response = await client.get("/api/smart-lock/status", params={"room_id": 1}, headers=admin)
    finally:
        set_manager(None)

    assert response.status_code == 503
