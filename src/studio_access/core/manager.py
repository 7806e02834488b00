"""Main studio manager that orchestrates all components."""

import asyncio
import logging
from datetime import date, datetime, timedelta
from typing import Any, Optional, Union

from sqlalchemy import select

from studio_access.config import Settings, build_rooms
from studio_access.core.blocks import BlockGenerator, series_label
from studio_access.core.credentials import AccessCredentialManager
from studio_access.core.errors import GatewayError, NotFoundError, PermissionDeniedError, ValidationError
from studio_access.core.reconciliation import Reconciler
from studio_access.core.reservations import ReservationEngine
from studio_access.core.sessions import InMemorySessionStore, SessionStore
from studio_access.core.slots import format_hour, local_today, parse_date, slot_instant
from studio_access.db.database import get_session_context
from studio_access.db.models import BlockedSlot, Booking, Room
from studio_access.gateway.client import TTLockClient
from studio_access.scheduler.scheduler import ReconciliationScheduler

logger = logging.getLogger(__name__)

RECONCILE_TASKS = ("expire", "purge", "resync")


def booking_to_dict(booking: Booking) -> dict:
    return {
        "id": booking.id,
        "user_id": booking.user_id,
        "room_id": booking.room_id,
        "date": booking.date.isoformat(),
        "start_time": format_hour(booking.start_hour),
        "end_time": format_hour(booking.end_hour),
        "duration": booking.duration,
        "status": booking.status,
        "total_price": str(booking.total_price),
        "passcode": booking.passcode,
        "credential_enabled": booking.credential_enabled,
        "credential_state": booking.credential_state,
        "created_at": booking.created_at.isoformat() if booking.created_at else None,
        "cancelled_at": booking.cancelled_at.isoformat() if booking.cancelled_at else None,
    }


def room_to_dict(room: Room) -> dict:
    return {
        "id": room.id,
        "key": room.key,
        "name": room.name,
        "description": room.description,
        "max_capacity": room.max_capacity,
        "price_per_hour": str(room.price_per_hour),
        "day_price_per_hour": (
            str(room.day_price_per_hour) if room.day_price_per_hour is not None else None
        ),
        "evening_price_per_hour": (
            str(room.evening_price_per_hour) if room.evening_price_per_hour is not None else None
        ),
        "day_hours": [room.day_hours_start, room.day_hours_end] if room.has_split_pricing else None,
        "lock_name": room.lock_name,
    }


def block_to_dict(block: BlockedSlot, label: Optional[str] = None) -> dict:
    return {
        "id": block.id,
        "room_id": block.room_id,
        "date": block.date.isoformat(),
        "start_time": format_hour(block.start_hour),
        "end_time": format_hour(block.end_hour),
        "reason": block.reason,
        "kind": block.kind,
        "is_recurring": block.is_recurring,
        "recurring_until": block.recurring_until.isoformat() if block.recurring_until else None,
        "parent_block_id": block.parent_block_id,
        "series": label,
    }


class StudioManager:
    """Main studio manager coordinating bookings, blocks and lock credentials."""

    def __init__(
        self,
        settings: Settings,
        gateway: Optional[TTLockClient] = None,
        session_store: Optional[SessionStore] = None,
    ):
        self.settings = settings
        self._gateway = gateway if gateway is not None else TTLockClient.from_settings(settings)
        if self._gateway is None:
            logger.warning("TTLock credentials not set, bookings will get unsynced passcodes")
        self.sessions = session_store or InMemorySessionStore(
            ttl=timedelta(days=settings.session_ttl_days)
        )
        self.reservations = ReservationEngine(settings)
        self.blocks = BlockGenerator(settings)
        self.credentials = AccessCredentialManager(settings, self._gateway)
        self.reconciler = Reconciler(settings, self.credentials)
        self._scheduler: Optional[ReconciliationScheduler] = None
        self._running = False

    @property
    def gateway_configured(self) -> bool:
        return self._gateway is not None

    async def initialize(self) -> None:
        """Initialize the manager and all components."""
        logger.info("Initializing studio manager...")

        self._scheduler = ReconciliationScheduler(
            on_expire_credentials=self.reconciler.expire_credentials,
            on_purge_old_records=self.reconciler.purge_old_records,
            on_daily_resync=self.reconciler.daily_resync,
            expire_interval_minutes=self.settings.expire_interval_minutes,
            purge_hour=self.settings.purge_hour,
            resync_hour=self.settings.resync_hour,
            timezone=self.settings.timezone,
        )

        await self._ensure_default_config()

        logger.info("Studio manager initialized")

    async def start(self, run_startup_tasks: bool = True) -> None:
        """Start the manager."""
        if self._running:
            return

        self._running = True

        if self._scheduler:
            self._scheduler.start()
            # Catch up on expiry and purges missed while we were down
            if run_startup_tasks:
                await self._scheduler.run_startup_tasks()

        logger.info("Studio manager started")

    async def stop(self) -> None:
        """Stop the manager."""
        self._running = False

        if self._scheduler:
            self._scheduler.stop()

        if self._gateway:
            await self._gateway.close()

        logger.info("Studio manager stopped")

    async def _ensure_default_config(self) -> None:
        """Seed the room catalog if the database is empty."""
        async with get_session_context() as session:
            result = await session.execute(select(Room))
            if result.scalars().first() is not None:
                return

            logger.info("Creating default room catalog...")
            for room_config in build_rooms():
                session.add(Room(
                    key=room_config.key,
                    name=room_config.name,
                    description=room_config.description,
                    max_capacity=room_config.max_capacity,
                    price_per_hour=room_config.price_per_hour,
                    day_price_per_hour=room_config.day_price_per_hour,
                    evening_price_per_hour=room_config.evening_price_per_hour,
                    day_hours_start=room_config.day_hours_start,
                    day_hours_end=room_config.day_hours_end,
                    front_lock_id=self.settings.front_door_lock_id or None,
                    interior_lock_id=self.settings.room_lock_ids.get(room_config.key),
                    lock_name=room_config.lock_name,
                ))

    # Rooms

    async def get_rooms(self) -> list[dict]:
        async with get_session_context() as session:
            result = await session.execute(
                select(Room).where(Room.is_active.is_(True)).order_by(Room.id)
            )
            return [room_to_dict(r) for r in result.scalars().all()]

    async def _get_room(self, room_id: int) -> Room:
        async with get_session_context() as session:
            room = await session.get(Room, room_id)
            if room is None or not room.is_active:
                raise NotFoundError("Room not found")
            return room

    async def get_room(self, room_id: int) -> dict:
        return room_to_dict(await self._get_room(room_id))

    async def get_availability(self, room_id: int, day: Union[str, date]) -> dict:
        """Booked and blocked time ranges for a room on one date."""
        availability = await self.reservations.get_availability(room_id, day)
        return {
            "room_id": availability["room_id"],
            "date": availability["date"],
            "booked": [
                {"start_time": format_hour(s), "end_time": format_hour(e)}
                for s, e in availability["booked"]
            ],
            "blocked": [
                {"start_time": format_hour(s), "end_time": format_hour(e)}
                for s, e in availability["blocked"]
            ],
        }

    # Bookings

    async def create_booking(
        self,
        user_id: int,
        room_id: int,
        day: Union[str, date],
        start: Union[str, int],
        end: Union[str, int],
    ) -> dict:
        """Create a booking, then provision its passcode.

        The booking is committed before any lock is contacted; a provisioning
        failure leaves it confirmed with an unsynced passcode.
        """
        booking = await self.reservations.create_booking(room_id, day, start, end, user_id)

        try:
            await self.credentials.provision(booking.id)
        except Exception as e:
            logger.error("Passcode provisioning failed for booking %d: %s", booking.id, e)
            try:
                await self.credentials.issue_fallback(booking.id)
            except Exception as e:
                # Daily resync provisions bookings still missing a passcode
                logger.error("Could not issue fallback passcode for booking %d: %s", booking.id, e)

        booking = await self.reservations.get_booking(booking.id)
        return booking_to_dict(booking)

    async def get_booking(self, booking_id: int, user_id: int, is_admin: bool = False) -> dict:
        booking = await self.reservations.get_booking(booking_id)
        if booking.user_id != user_id and not is_admin:
            raise PermissionDeniedError("Access denied")
        return booking_to_dict(booking)

    async def get_bookings(
        self,
        user_id: Optional[int] = None,
        room_id: Optional[int] = None,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
    ) -> list[dict]:
        bookings = await self.reservations.list_bookings(
            user_id=user_id, room_id=room_id, from_date=from_date, to_date=to_date
        )
        return [booking_to_dict(b) for b in bookings]

    async def _revoke_quietly(self, booking_id: int) -> None:
        # Anything left active is picked up by the next expiry run
        try:
            await self.credentials.revoke(booking_id)
        except Exception as e:
            logger.error("Passcode revocation failed for booking %d: %s", booking_id, e)

    async def cancel_booking(self, booking_id: int, user_id: int, is_admin: bool = False) -> dict:
        """Cancel a booking and remove its passcode from the locks."""
        await self.reservations.cancel_booking(booking_id, user_id, is_admin=is_admin)
        await self._revoke_quietly(booking_id)
        booking = await self.reservations.get_booking(booking_id)
        return booking_to_dict(booking)

    async def cancel_user_bookings(self, user_id: int) -> dict:
        """Cancel all of a user's upcoming bookings."""
        cancelled = await self.reservations.cancel_user_bookings(user_id)
        for index, booking_id in enumerate(cancelled):
            if index:
                await asyncio.sleep(self.settings.resync_delay_seconds)
            await self._revoke_quietly(booking_id)
        return {"user_id": user_id, "cancelled": cancelled}

    async def resync_booking(self, booking_id: int) -> dict:
        """Re-push one booking's passcode to its locks."""
        result = await self.credentials.resync(booking_id)
        return {
            "booking_id": booking_id,
            "enabled": result.enabled,
            "skipped": result.skipped,
            "locks": [
                {
                    "lock_role": o.lock_role,
                    "lock_id": o.lock_id,
                    "success": o.success,
                    "error": o.error,
                }
                for o in result.outcomes
            ],
        }

    # Blocked slots

    async def create_block(
        self,
        room_id: int,
        day: Union[str, date],
        start: Union[str, int],
        end: Union[str, int],
        reason: Optional[str] = None,
        recurring: bool = False,
        recur_until: Optional[Union[str, date]] = None,
    ) -> list[dict]:
        created = await self.blocks.create_block(
            room_id, day, start, end,
            reason=reason, recurring=recurring, recur_until=recur_until,
        )
        known_ids = {b.id for b in created}
        return [block_to_dict(b, series_label(b, known_ids)) for b in created]

    async def update_block(
        self,
        block_id: int,
        start: Optional[Union[str, int]] = None,
        end: Optional[Union[str, int]] = None,
        reason: Optional[str] = None,
    ) -> dict:
        block = await self.blocks.update_block(block_id, start=start, end=end, reason=reason)
        return block_to_dict(block)

    async def delete_block(self, block_id: int) -> dict:
        removed = await self.blocks.delete_block(block_id)
        return {"id": block_id, "removed": removed}

    async def get_blocks(
        self,
        room_id: Optional[int] = None,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
    ) -> list[dict]:
        blocks = await self.blocks.list_blocks(room_id=room_id, from_date=from_date, to_date=to_date)
        return [block_to_dict(block, label) for block, label in blocks]

    # Lock monitoring

    async def get_lock_status(self, room_id: int) -> list[dict]:
        """Connectivity and battery of each lock guarding a room."""
        room = await self._get_room(room_id)
        statuses = []
        for role, lock_id in room.lock_ids():
            entry: dict[str, Any] = {"lock_role": role, "lock_id": lock_id}
            try:
                status = await self._gateway.get_lock_status(lock_id)
                entry.update(online=status.online, battery_level=status.battery_level, error=None)
            except GatewayError as e:
                logger.warning("Could not read status of lock %s: %s", lock_id, e)
                entry.update(online=False, battery_level=None, error=str(e))
            statuses.append(entry)
        return statuses

    async def get_access_log(
        self,
        room_id: int,
        start: Optional[Union[str, date]] = None,
        end: Optional[Union[str, date]] = None,
    ) -> list[dict]:
        """Unlock records for a room's locks, newest first.

        Defaults to the last seven local days.
        """
        room = await self._get_room(room_id)
        tz = self.settings.timezone
        end_day = parse_date(end) if end is not None else local_today(tz)
        start_day = parse_date(start) if start is not None else end_day - timedelta(days=7)
        if start_day > end_day:
            raise ValidationError("Start date must not be after end date")
        since = slot_instant(start_day, 0, tz)
        until = slot_instant(end_day, 24, tz)

        events = []
        for role, lock_id in room.lock_ids():
            for event in await self._gateway.get_access_log(lock_id, since, until):
                events.append({
                    "record_id": event.record_id,
                    "lock_role": role,
                    "lock_id": lock_id,
                    "occurred_at": event.occurred_at.isoformat(),
                    "success": event.success,
                    "passcode": event.passcode,
                    "record_type": event.record_type,
                    "username": event.username,
                })
        events.sort(key=lambda e: e["occurred_at"], reverse=True)
        return events

    # Reconciliation

    async def run_reconciliation(self, task: str) -> dict:
        """Run one reconciliation task now and return its stats."""
        if task == "expire":
            stats = await self.reconciler.expire_credentials()
        elif task == "purge":
            stats = await self.reconciler.purge_old_records()
        elif task == "resync":
            stats = await self.reconciler.daily_resync()
        else:
            raise ValidationError(f"Unknown task, expected one of {', '.join(RECONCILE_TASKS)}")
        return {"task": task, "ran_at": datetime.utcnow().isoformat(), **stats}

    async def health_check(self) -> dict:
        """Perform a health check on all components."""
        gateway_healthy = await self._gateway.health_check() if self._gateway else None

        return {
            "running": self._running,
            "gateway_configured": self.gateway_configured,
            "gateway": gateway_healthy,
            "scheduler_running": self._scheduler is not None,
            "scheduled_jobs": [
                {
                    "id": job.job_id,
                    "next_run_at": job.next_run_at.isoformat() if job.next_run_at else None,
                }
                for job in (self._scheduler.get_scheduled_jobs() if self._scheduler else [])
            ],
        }
