"""Administrative blocked slots and weekly recurrence series."""

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional, Union

from sqlalchemy import delete, or_, select

from studio_access.config import Settings
from studio_access.core.errors import NotFoundError, ValidationError
from studio_access.core.slots import parse_date, parse_hour, parse_interval
from studio_access.db.database import get_session_context
from studio_access.db.models import BlockedSlot, BlockKind, Room

logger = logging.getLogger(__name__)

RECURRENCE_STEP = timedelta(days=7)


@dataclass(frozen=True)
class Standalone:
    """A one-off block."""


@dataclass(frozen=True)
class RecurrenceHead:
    """First block of a weekly series."""

    until: date


@dataclass(frozen=True)
class RecurrenceChild:
    """A generated weekly repeat of a series head."""

    parent_id: int


SeriesRole = Union[Standalone, RecurrenceHead, RecurrenceChild]


def series_role(block: BlockedSlot) -> SeriesRole:
    """Tagged view of a block's place in its series, from its stored kind."""
    if block.kind == BlockKind.HEAD.value:
        return RecurrenceHead(until=block.recurring_until)
    if block.kind == BlockKind.CHILD.value:
        return RecurrenceChild(parent_id=block.parent_block_id)
    return Standalone()


def series_label(block: BlockedSlot, known_ids: set[int]) -> str:
    """Human-readable series description.

    A child whose head no longer exists is reported as orphaned rather than
    treated as an error.
    """
    role = series_role(block)
    if isinstance(role, RecurrenceHead):
        return f"series head (until {role.until.isoformat()})"
    if isinstance(role, RecurrenceChild):
        if role.parent_id not in known_ids:
            return "orphaned, series ended"
        return f"repeat of #{role.parent_id}"
    return "standalone"


def weekly_dates(start: date, until: date) -> list[date]:
    """Dates one week apart from ``start`` up to and including ``until``."""
    dates = []
    current = start
    while current <= until:
        dates.append(current)
        current += RECURRENCE_STEP
    return dates


class BlockGenerator:
    """Creates, edits and deletes blocked slots.

    Blocks are an administrative override: creating one does not check for
    existing bookings. Booking creation checks blocks instead.
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    async def create_block(
        self,
        room_id: int,
        day: Union[str, date],
        start: Union[str, int],
        end: Union[str, int],
        reason: Optional[str] = None,
        recurring: bool = False,
        recur_until: Optional[Union[str, date]] = None,
    ) -> list[BlockedSlot]:
        """Block a slot, optionally repeating weekly until ``recur_until``.

        Returns the created records, series head first.
        """
        day = parse_date(day)
        start_hour, end_hour = parse_interval(start, end)
        until: Optional[date] = None
        if recurring:
            if recur_until is None:
                raise ValidationError("Recurring blocks need an end date")
            until = parse_date(recur_until)
            if until <= day:
                raise ValidationError("Recurrence end date must be after the start date")

        async with get_session_context() as session:
            room = await session.get(Room, room_id)
            if room is None:
                raise ValidationError("Room not found")

            head = BlockedSlot(
                room_id=room_id,
                date=day,
                start_hour=start_hour,
                end_hour=end_hour,
                reason=reason,
                kind=BlockKind.HEAD.value if recurring else BlockKind.STANDALONE.value,
                is_recurring=recurring,
                recurring_until=until,
                parent_block_id=None,
            )
            session.add(head)
            await session.flush()
            created = [head]

            if recurring:
                for repeat_day in weekly_dates(day + RECURRENCE_STEP, until):
                    child = BlockedSlot(
                        room_id=room_id,
                        date=repeat_day,
                        start_hour=start_hour,
                        end_hour=end_hour,
                        reason=reason,
                        kind=BlockKind.CHILD.value,
                        is_recurring=True,
                        recurring_until=until,
                        parent_block_id=head.id,
                    )
                    session.add(child)
                    created.append(child)
                await session.flush()

        logger.info(
            "Blocked room %d on %s %02d:00-%02d:00 (%d record(s))",
            room_id, day, start_hour, end_hour, len(created),
        )
        return created

    async def delete_block(self, block_id: int) -> int:
        """Delete a block; deleting a series head removes the whole series.

        Returns the number of records removed.
        """
        async with get_session_context() as session:
            block = await session.get(BlockedSlot, block_id)
            if block is None:
                raise NotFoundError("Blocked slot not found")

            if isinstance(series_role(block), RecurrenceHead):
                condition = or_(BlockedSlot.id == block_id, BlockedSlot.parent_block_id == block_id)
            else:
                condition = BlockedSlot.id == block_id
            result = await session.execute(
                delete(BlockedSlot).where(condition).execution_options(synchronize_session=False)
            )
            removed = result.rowcount

        logger.info("Deleted blocked slot %d (%d record(s))", block_id, removed)
        return removed

    async def update_block(
        self,
        block_id: int,
        start: Optional[Union[str, int]] = None,
        end: Optional[Union[str, int]] = None,
        reason: Optional[str] = None,
    ) -> BlockedSlot:
        """Edit a single block without touching the rest of its series."""
        async with get_session_context() as session:
            block = await session.get(BlockedSlot, block_id)
            if block is None:
                raise NotFoundError("Blocked slot not found")

            start_hour = parse_hour(start) if start is not None else block.start_hour
            end_hour = (
                parse_hour(end, allow_midnight_end=True) if end is not None else block.end_hour
            )
            if start_hour >= end_hour:
                raise ValidationError("Start time must be before end time")

            block.start_hour = start_hour
            block.end_hour = end_hour
            if reason is not None:
                block.reason = reason

        return block

    async def list_blocks(
        self,
        room_id: Optional[int] = None,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
    ) -> list[tuple[BlockedSlot, str]]:
        """Blocks with their series label, ordered by date."""
        async with get_session_context() as session:
            query = select(BlockedSlot)
            if room_id is not None:
                query = query.where(BlockedSlot.room_id == room_id)
            if from_date is not None:
                query = query.where(BlockedSlot.date >= from_date)
            if to_date is not None:
                query = query.where(BlockedSlot.date <= to_date)
            result = await session.execute(
                query.order_by(BlockedSlot.date, BlockedSlot.start_hour, BlockedSlot.id)
            )
            blocks = list(result.scalars().all())

            parent_ids = {b.parent_block_id for b in blocks if b.parent_block_id is not None}
            known_ids: set[int] = set()
            if parent_ids:
                found = await session.execute(
                    select(BlockedSlot.id).where(BlockedSlot.id.in_(parent_ids))
                )
                known_ids = set(found.scalars().all())

        return [(block, series_label(block, known_ids)) for block in blocks]
