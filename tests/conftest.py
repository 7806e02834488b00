"""Shared fixtures: a throwaway SQLite database and a fake lock gateway."""

from datetime import date, datetime, timedelta, timezone
from typing import Optional

import pytest
from sqlalchemy import select

from studio_access.config import Settings
from studio_access.core.errors import GatewayError
from studio_access.core.manager import StudioManager
from studio_access.db.database import configure_engine, dispose_db, get_session_context, init_db
from studio_access.db.models import Room
from studio_access.gateway.client import AccessEvent, LockStatus

FRONT_DOOR = "front-door"
POD_1_DOOR = "pod-1-door"


class FakeGateway:
    """In-memory stand-in for TTLockClient that records every call."""

    def __init__(self):
        self.failing: set[str] = set()
        self.fail_delete: set[str] = set()
        self.created: list[tuple[str, str, str]] = []
        self.deleted: list[tuple[str, str]] = []
        self.closed = False
        self._next_id = 1000

    async def create_passcode(
        self, lock_id: str, code: str, start: datetime, end: datetime, label: str
    ) -> tuple[str, str]:
        if lock_id in self.failing:
            raise GatewayError(f"lock {lock_id} offline", errcode=-2012)
        self._next_id += 1
        self.created.append((lock_id, code, label))
        return str(self._next_id), code

    async def delete_passcode(self, lock_id: str, credential_id: str) -> None:
        if lock_id in self.fail_delete:
            raise GatewayError(f"lock {lock_id} offline", errcode=-2012)
        self.deleted.append((lock_id, credential_id))

    async def get_lock_status(self, lock_id: str) -> LockStatus:
        if lock_id in self.failing:
            raise GatewayError(f"lock {lock_id} offline")
        return LockStatus(lock_id=lock_id, online=True, battery_level=80)

    async def get_access_log(
        self, lock_id: str, start: datetime, end: datetime, page_size: int = 100
    ) -> list[AccessEvent]:
        return [
            AccessEvent(
                record_id=f"{lock_id}-1",
                lock_id=lock_id,
                occurred_at=start + timedelta(hours=10),
                success=True,
                passcode="123456",
                record_type=4,
            )
        ]

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        self.closed = True


def future_day(days: int = 14) -> date:
    return date.today() + timedelta(days=days)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'studio.db'}",
        timezone="Europe/London",
        passcode_secret="test-secret",
        front_door_lock_id=FRONT_DOOR,
        room_lock_ids={"pod_1": POD_1_DOOR, "pod_2": "pod-2-door", "studio": "studio-door"},
        provision_deadline_seconds=2,
        resync_delay_seconds=0,
        revoke_max_attempts=3,
    )


@pytest.fixture
async def db(settings):
    configure_engine(settings.database_url)
    await init_db()
    yield
    await dispose_db()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
async def manager(db, settings, gateway) -> StudioManager:
    manager = StudioManager(settings, gateway=gateway)
    await manager.initialize()
    return manager


@pytest.fixture
async def rooms(manager) -> dict[str, int]:
    """Room ids by catalog key."""
    async with get_session_context() as session:
        result = await session.execute(select(Room))
        return {room.key: room.id for room in result.scalars().all()}


async def load(model, record_id: int) -> Optional[object]:
    async with get_session_context() as session:
        return await session.get(model, record_id)
