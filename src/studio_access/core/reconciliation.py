"""Background correction of drift between bookings and lock hardware."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import selectinload

from studio_access.config import Settings
from studio_access.core.credentials import AccessCredentialManager
from studio_access.core.slots import local_today, slot_instant, utcnow
from studio_access.db.database import get_session_context
from studio_access.db.models import (
    BlockedSlot,
    Booking,
    BookingStatus,
    CredentialState,
    LockCredential,
    LockCredentialStatus,
)

logger = logging.getLogger(__name__)


class Reconciler:
    """Expiry, retention purge and daily re-sync of booking passcodes.

    Each task is safe to run alongside live traffic and to re-run: it only
    acts on rows that still need work. A per-task lock stops a slow run from
    overlapping the next scheduled one.
    """

    def __init__(self, settings: Settings, credentials: AccessCredentialManager):
        self.settings = settings
        self._credentials = credentials
        self._expire_lock = asyncio.Lock()
        self._purge_lock = asyncio.Lock()
        self._resync_lock = asyncio.Lock()

    async def _bookings_with_active_credentials(self) -> list[Booking]:
        async with get_session_context() as session:
            query = (
                select(Booking)
                .join(LockCredential, LockCredential.booking_id == Booking.id)
                .where(
                    LockCredential.status == LockCredentialStatus.ACTIVE.value,
                    LockCredential.credential_id.is_not(None),
                )
                .distinct()
            )
            result = await session.execute(query.order_by(Booking.id))
            return list(result.scalars().all())

    async def expire_credentials(self, now: Optional[datetime] = None) -> dict:
        """Revoke passcodes of bookings that ended over the safety buffer ago.

        Cancelled bookings that still hold a passcode are revoked as well.
        Booking rows are never deleted here.
        """
        now = now or utcnow()
        buffer = timedelta(hours=self.settings.expire_buffer_hours)
        stats = {"checked": 0, "revoked": 0, "failed": 0}

        async with self._expire_lock:
            for booking in await self._bookings_with_active_credentials():
                stats["checked"] += 1
                ended_at = slot_instant(booking.date, booking.end_hour, self.settings.timezone)
                cancelled = booking.status == BookingStatus.CANCELLED.value
                if not cancelled and ended_at + buffer > now:
                    continue

                final_state = CredentialState.REVOKED if cancelled else CredentialState.EXPIRED
                result = await self._credentials.revoke(booking.id, final_state=final_state)
                stats["revoked"] += result.revoked
                stats["failed"] += result.failed

        logger.info(
            "Credential expiry: %d checked, %d revoked, %d failed",
            stats["checked"], stats["revoked"], stats["failed"],
        )
        return stats

    async def purge_old_records(self, now: Optional[datetime] = None) -> dict:
        """Delete bookings and blocks older than the retention window.

        Passcodes are revoked before any booking row is deleted; a booking
        whose passcode is still active afterwards is kept for the next run.
        """
        cutoff = local_today(self.settings.timezone, now) - timedelta(days=self.settings.retention_days)
        stats = {"bookings_deleted": 0, "bookings_kept": 0, "blocks_deleted": 0, "revoked": 0}

        async with self._purge_lock:
            async with get_session_context() as session:
                result = await session.execute(
                    select(Booking)
                    .options(selectinload(Booking.lock_credentials))
                    .where(Booking.date < cutoff)
                )
                old_bookings = list(result.scalars().all())

            deletable = []
            for booking in old_bookings:
                has_active = any(
                    lc.status == LockCredentialStatus.ACTIVE.value and lc.credential_id
                    for lc in booking.lock_credentials
                )
                if has_active:
                    revoke = await self._credentials.revoke(
                        booking.id, final_state=CredentialState.EXPIRED
                    )
                    stats["revoked"] += revoke.revoked
                    if revoke.remaining:
                        stats["bookings_kept"] += 1
                        continue
                deletable.append(booking.id)

            async with get_session_context() as session:
                if deletable:
                    await session.execute(
                        delete(LockCredential).where(LockCredential.booking_id.in_(deletable))
                    )
                    result = await session.execute(delete(Booking).where(Booking.id.in_(deletable)))
                    stats["bookings_deleted"] = result.rowcount
                result = await session.execute(delete(BlockedSlot).where(BlockedSlot.date < cutoff))
                stats["blocks_deleted"] = result.rowcount

        logger.info(
            "Purged records before %s: %d bookings, %d blocks (%d bookings kept)",
            cutoff, stats["bookings_deleted"], stats["blocks_deleted"], stats["bookings_kept"],
        )
        return stats

    async def daily_resync(self, now: Optional[datetime] = None) -> dict:
        """Re-push passcodes for every upcoming confirmed booking.

        Guards against the vendor silently dropping codes. Bookings that never
        got a passcode, because provisioning crashed, are provisioned afresh.
        Requests are spaced out to respect the vendor rate limit.
        """
        now = now or utcnow()
        today = local_today(self.settings.timezone, now)
        stats = {"checked": 0, "synced": 0, "unsynced": 0, "skipped": 0}

        async with self._resync_lock:
            async with get_session_context() as session:
                result = await session.execute(
                    select(Booking)
                    .where(
                        Booking.status == BookingStatus.CONFIRMED.value,
                        Booking.date >= today,
                    )
                    .order_by(Booking.date, Booking.start_hour)
                )
                upcoming = [
                    (b.id, b.passcode is None) for b in result.scalars().all()
                    if slot_instant(b.date, b.start_hour, self.settings.timezone) > now
                ]

            for index, (booking_id, missing) in enumerate(upcoming):
                if index:
                    await asyncio.sleep(self.settings.resync_delay_seconds)
                stats["checked"] += 1
                if missing:
                    logger.info("Booking %d has no passcode, provisioning", booking_id)
                    provisioned = await self._credentials.provision(booking_id)
                    stats["synced" if provisioned.enabled else "unsynced"] += 1
                    continue
                result = await self._credentials.resync(booking_id, now=now)
                if result.skipped:
                    stats["skipped"] += 1
                elif result.enabled:
                    stats["synced"] += 1
                else:
                    stats["unsynced"] += 1

        logger.info(
            "Daily resync: %d checked, %d synced, %d unsynced, %d skipped",
            stats["checked"], stats["synced"], stats["unsynced"], stats["skipped"],
        )
        return stats
