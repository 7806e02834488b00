"""Booking creation with transactional conflict checking."""

import logging
from datetime import date, datetime
from typing import Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from studio_access.config import Settings
from studio_access.core.errors import (
    AlreadyCancelledError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from studio_access.core.pricing import calculate_booking_price
from studio_access.core.slots import (
    intervals_overlap,
    local_today,
    parse_date,
    parse_interval,
    slot_instant,
    utcnow,
)
from studio_access.db.database import get_session_context
from studio_access.db.models import BlockedSlot, Booking, BookingStatus, CredentialState, Room

logger = logging.getLogger(__name__)


async def confirmed_bookings_for(session: AsyncSession, room_id: int, day: date) -> list[Booking]:
    result = await session.execute(
        select(Booking).where(
            Booking.room_id == room_id,
            Booking.date == day,
            Booking.status == BookingStatus.CONFIRMED.value,
        )
    )
    return list(result.scalars().all())


async def blocks_for(session: AsyncSession, room_id: int, day: date) -> list[BlockedSlot]:
    result = await session.execute(
        select(BlockedSlot).where(BlockedSlot.room_id == room_id, BlockedSlot.date == day)
    )
    return list(result.scalars().all())


class ReservationEngine:
    """Creates and cancels bookings.

    The no-overlap guarantee comes from doing the conflict check and the
    insert in the same transaction: the room row is locked first (FOR UPDATE
    on PostgreSQL, BEGIN IMMEDIATE on SQLite), then the room's bookings and
    blocks for the date are re-read before inserting.
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    def _parse_request(
        self, day: Union[str, date], start: Union[str, int], end: Union[str, int]
    ) -> tuple[date, int, int]:
        day = parse_date(day)
        start_hour, end_hour = parse_interval(
            start,
            end,
            open_hour=self.settings.business_open_hour,
            close_hour=self.settings.business_close_hour,
        )
        return day, start_hour, end_hour

    async def create_booking(
        self,
        room_id: int,
        day: Union[str, date],
        start: Union[str, int],
        end: Union[str, int],
        user_id: int,
        now: Optional[datetime] = None,
    ) -> Booking:
        """Create a confirmed booking if the slot is free.

        Raises:
            ValidationError: malformed times, slot in the past or unknown room
            ConflictError: slot overlaps a confirmed booking or a block
        """
        day, start_hour, end_hour = self._parse_request(day, start, end)
        now = now or utcnow()
        if slot_instant(day, end_hour, self.settings.timezone) <= now:
            raise ValidationError("Slot is in the past")

        async with get_session_context() as session:
            result = await session.execute(
                select(Room).where(Room.id == room_id).with_for_update()
            )
            room = result.scalar_one_or_none()
            if room is None or not room.is_active:
                raise ValidationError("Room not found")

            for existing in await confirmed_bookings_for(session, room_id, day):
                if intervals_overlap(start_hour, end_hour, existing.start_hour, existing.end_hour):
                    raise ConflictError(ConflictError.SLOT_BOOKED)

            for block in await blocks_for(session, room_id, day):
                if intervals_overlap(start_hour, end_hour, block.start_hour, block.end_hour):
                    raise ConflictError(ConflictError.SLOT_BLOCKED)

            booking = Booking(
                user_id=user_id,
                room_id=room_id,
                date=day,
                start_hour=start_hour,
                end_hour=end_hour,
                status=BookingStatus.CONFIRMED.value,
                total_price=calculate_booking_price(
                    room,
                    start_hour,
                    end_hour,
                    long_booking_hours=self.settings.long_booking_hours,
                    long_booking_discount=self.settings.long_booking_discount,
                ),
                credential_state=CredentialState.NONE.value,
                credential_enabled=False,
            )
            session.add(booking)
            await session.flush()

        logger.info(
            "Booking %d created: room %d on %s %02d:00-%02d:00 for user %d",
            booking.id, room_id, day, start_hour, end_hour, user_id,
        )
        return booking

    async def get_booking(self, booking_id: int) -> Booking:
        async with get_session_context() as session:
            booking = await session.get(Booking, booking_id)
            if booking is None:
                raise NotFoundError("Booking not found")
            return booking

    async def cancel_booking(self, booking_id: int, user_id: int, is_admin: bool = False) -> Booking:
        """Mark a booking cancelled.

        Raises:
            NotFoundError: booking does not exist
            PermissionDeniedError: caller is neither the owner nor an admin
            AlreadyCancelledError: booking was already cancelled
        """
        async with get_session_context() as session:
            booking = await session.get(Booking, booking_id)
            if booking is None:
                raise NotFoundError("Booking not found")
            if booking.user_id != user_id and not is_admin:
                raise PermissionDeniedError("Access denied")
            if booking.status == BookingStatus.CANCELLED.value:
                raise AlreadyCancelledError("Booking is already cancelled")
            booking.status = BookingStatus.CANCELLED.value
            booking.cancelled_at = datetime.utcnow()

        logger.info("Booking %d cancelled by user %d", booking_id, user_id)
        return booking

    async def cancel_user_bookings(self, user_id: int, now: Optional[datetime] = None) -> list[int]:
        """Cancel every upcoming confirmed booking owned by a user.

        Returns the ids of the bookings that were cancelled.
        """
        today = local_today(self.settings.timezone, now)
        async with get_session_context() as session:
            result = await session.execute(
                select(Booking).where(
                    Booking.user_id == user_id,
                    Booking.status == BookingStatus.CONFIRMED.value,
                    Booking.date >= today,
                )
            )
            cancelled = []
            for booking in result.scalars().all():
                booking.status = BookingStatus.CANCELLED.value
                booking.cancelled_at = datetime.utcnow()
                cancelled.append(booking.id)

        if cancelled:
            logger.info("Cancelled %d bookings for user %d", len(cancelled), user_id)
        return cancelled

    async def list_bookings(
        self,
        user_id: Optional[int] = None,
        room_id: Optional[int] = None,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
    ) -> list[Booking]:
        async with get_session_context() as session:
            query = select(Booking)
            if user_id is not None:
                query = query.where(Booking.user_id == user_id)
            if room_id is not None:
                query = query.where(Booking.room_id == room_id)
            if from_date is not None:
                query = query.where(Booking.date >= from_date)
            if to_date is not None:
                query = query.where(Booking.date <= to_date)
            result = await session.execute(
                query.order_by(Booking.date, Booking.start_hour, Booking.id)
            )
            return list(result.scalars().all())

    async def get_availability(self, room_id: int, day: Union[str, date]) -> dict:
        """Booked and blocked intervals for a room on a date."""
        day = parse_date(day)
        async with get_session_context() as session:
            room = await session.get(Room, room_id)
            if room is None:
                raise NotFoundError("Room not found")
            bookings = await confirmed_bookings_for(session, room_id, day)
            blocks = await blocks_for(session, room_id, day)

        return {
            "room_id": room_id,
            "date": day.isoformat(),
            "booked": sorted((b.start_hour, b.end_hour) for b in bookings),
            "blocked": sorted((b.start_hour, b.end_hour) for b in blocks),
        }
