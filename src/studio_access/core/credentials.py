"""Passcode generation and lock credential lifecycle."""

import asyncio
import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from studio_access.config import PASSCODE_MAX, PASSCODE_MIN, Settings
from studio_access.core.errors import GatewayError, NotFoundError
from studio_access.core.slots import slot_instant, to_naive_utc, utcnow
from studio_access.db.database import get_session_context
from studio_access.db.models import (
    Booking,
    CredentialAudit,
    CredentialState,
    LockCredential,
    LockCredentialStatus,
)
from studio_access.gateway.client import TTLockClient

logger = logging.getLogger(__name__)


def generate_passcode() -> str:
    """Random 6-digit passcode."""
    return str(PASSCODE_MIN + secrets.randbelow(PASSCODE_MAX - PASSCODE_MIN + 1))


def fallback_passcode(booking_id: int, secret: str) -> str:
    """Stable 6-digit passcode derived from the booking id.

    Shown to the customer when no lock accepted a code so they still have
    something to enter once reconciliation pushes it to the hardware.
    """
    digest = hmac.new(secret.encode(), str(booking_id).encode(), hashlib.sha256).hexdigest()
    span = PASSCODE_MAX - PASSCODE_MIN + 1
    return str(PASSCODE_MIN + int(digest, 16) % span)


@dataclass
class LockOutcome:
    """Result of pushing a passcode to one lock."""

    lock_role: str
    lock_id: str
    success: bool
    credential_id: Optional[str] = None
    code: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ProvisionResult:
    booking_id: int
    passcode: Optional[str]
    enabled: bool
    outcomes: list[LockOutcome] = field(default_factory=list)


@dataclass
class RevokeResult:
    booking_id: int
    revoked: int = 0
    failed: int = 0
    remaining: int = 0


@dataclass
class ResyncResult:
    booking_id: int
    enabled: bool = False
    skipped: Optional[str] = None
    outcomes: list[LockOutcome] = field(default_factory=list)


class AccessCredentialManager:
    """Provisions, revokes and re-syncs booking passcodes on TTLock locks.

    Gateway calls are made outside database transactions: state is read in
    one short session, the locks are called, and the outcome is written back
    in a second session.
    """

    def __init__(self, settings: Settings, gateway: Optional[TTLockClient]):
        self.settings = settings
        self._gateway = gateway

    @property
    def gateway_configured(self) -> bool:
        return self._gateway is not None

    async def _load_booking(self, session: AsyncSession, booking_id: int) -> Booking:
        result = await session.execute(
            select(Booking)
            .options(selectinload(Booking.room), selectinload(Booking.lock_credentials))
            .where(Booking.id == booking_id)
        )
        booking = result.scalar_one_or_none()
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found")
        return booking

    def _validity(self, booking: Booking) -> tuple[datetime, datetime]:
        tz = self.settings.timezone
        return (
            slot_instant(booking.date, booking.start_hour, tz),
            slot_instant(booking.date, booking.end_hour, tz),
        )

    async def _create_on_lock(
        self,
        lock_role: str,
        lock_id: str,
        code: str,
        start: datetime,
        end: datetime,
        label: str,
    ) -> LockOutcome:
        if self._gateway is None:
            return LockOutcome(lock_role, lock_id, False, error="gateway not configured")
        try:
            credential_id, accepted = await asyncio.wait_for(
                self._gateway.create_passcode(lock_id, code, start, end, label),
                timeout=self.settings.provision_deadline_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("Timed out creating passcode on lock %s (%s)", lock_id, label)
            return LockOutcome(lock_role, lock_id, False, error="timed out")
        except GatewayError as e:
            logger.warning("Failed to create passcode on lock %s (%s): %s", lock_id, label, e)
            return LockOutcome(lock_role, lock_id, False, error=str(e))
        return LockOutcome(lock_role, lock_id, True, credential_id=credential_id, code=accepted)

    async def _fan_out(
        self,
        locks: list[tuple[str, str]],
        code: str,
        start: datetime,
        end: datetime,
        label: str,
    ) -> list[LockOutcome]:
        """Create the same passcode on every lock; failures stay per lock."""
        results = await asyncio.gather(
            *(self._create_on_lock(role, lock_id, code, start, end, label) for role, lock_id in locks),
            return_exceptions=True,
        )
        outcomes = []
        for (role, lock_id), result in zip(locks, results):
            if isinstance(result, BaseException):
                logger.error("Unexpected error creating passcode on lock %s: %s", lock_id, result)
                result = LockOutcome(role, lock_id, False, error=str(result))
            outcomes.append(result)
        return outcomes

    def _record_outcomes(
        self,
        session: AsyncSession,
        booking: Booking,
        outcomes: list[LockOutcome],
        start: datetime,
        end: datetime,
        action: str,
    ) -> None:
        """Write per-lock outcomes onto the booking's credential rows."""
        existing = {lc.lock_id: lc for lc in booking.lock_credentials}
        for outcome in outcomes:
            row = existing.get(outcome.lock_id)
            if row is None:
                row = LockCredential(lock_id=outcome.lock_id, lock_role=outcome.lock_role)
                booking.lock_credentials.append(row)
            row.credential_id = outcome.credential_id
            row.status = (
                LockCredentialStatus.ACTIVE.value if outcome.success
                else LockCredentialStatus.FAILED.value
            )
            row.valid_from = to_naive_utc(start)
            row.valid_until = to_naive_utc(end)
            row.last_error = outcome.error
            row.revoke_attempts = 0

            session.add(CredentialAudit(
                action=action,
                booking_id=booking.id,
                lock_id=outcome.lock_id,
                details=f"credential_id={outcome.credential_id}" if outcome.success else None,
                success=outcome.success,
                error_message=outcome.error,
            ))

    async def provision(self, booking_id: int) -> ProvisionResult:
        """Create the booking's passcode on each of its room's locks.

        Never raises for gateway problems: when no lock accepts the code the
        booking gets a fallback passcode with ``credential_enabled`` left false.
        """
        async with get_session_context() as session:
            booking = await self._load_booking(session, booking_id)
            if not booking.is_confirmed:
                return ProvisionResult(booking_id=booking_id, passcode=None, enabled=False)
            booking.credential_state = CredentialState.PENDING.value
            locks = booking.room.lock_ids()
            start, end = self._validity(booking)

        code = generate_passcode()
        outcomes = await self._fan_out(locks, code, start, end, f"Booking-{booking_id}")
        accepted = next((o.code for o in outcomes if o.success), None)

        async with get_session_context() as session:
            booking = await self._load_booking(session, booking_id)
            self._record_outcomes(session, booking, outcomes, start, end, "provision")
            booking.passcode = accepted or fallback_passcode(booking_id, self.settings.passcode_secret)
            booking.credential_enabled = accepted is not None
            booking.credential_state = CredentialState.PROVISIONED.value
            if accepted is not None:
                booking.credential_synced_at = datetime.utcnow()
            passcode = booking.passcode

        if accepted is None:
            logger.warning(
                "No lock accepted a passcode for booking %d, issued unsynced fallback code",
                booking_id,
            )
        else:
            failed = [o.lock_id for o in outcomes if not o.success]
            if failed:
                logger.warning("Booking %d passcode missing on locks %s", booking_id, failed)
            logger.info("Provisioned passcode for booking %d on %d lock(s)",
                        booking_id, len(outcomes) - len(failed))

        return ProvisionResult(
            booking_id=booking_id,
            passcode=passcode,
            enabled=accepted is not None,
            outcomes=outcomes,
        )

    async def revoke(
        self,
        booking_id: int,
        final_state: CredentialState = CredentialState.REVOKED,
    ) -> RevokeResult:
        """Delete the booking's passcode from every lock it is active on.

        Per-lock deletion errors are logged and retried on later calls; after
        ``revoke_max_attempts`` the lock credential is abandoned. Calling this
        again once nothing is active makes no gateway calls.
        """
        async with get_session_context() as session:
            booking = await self._load_booking(session, booking_id)
            targets = [
                (lc.lock_id, lc.credential_id)
                for lc in booking.lock_credentials
                if lc.status == LockCredentialStatus.ACTIVE.value and lc.credential_id
            ]

        errors: dict[str, Optional[str]] = {}
        for lock_id, credential_id in targets:
            if self._gateway is None:
                errors[lock_id] = "gateway not configured"
                continue
            try:
                await self._gateway.delete_passcode(lock_id, credential_id)
                errors[lock_id] = None
            except GatewayError as e:
                logger.warning(
                    "Failed to delete passcode %s from lock %s for booking %d: %s",
                    credential_id, lock_id, booking_id, e,
                )
                errors[lock_id] = str(e)

        result = RevokeResult(booking_id=booking_id)
        async with get_session_context() as session:
            booking = await self._load_booking(session, booking_id)
            for lc in booking.lock_credentials:
                if lc.lock_id not in errors or lc.status != LockCredentialStatus.ACTIVE.value:
                    continue
                error = errors[lc.lock_id]
                if error is None:
                    lc.status = LockCredentialStatus.REVOKED.value
                    lc.last_error = None
                    result.revoked += 1
                else:
                    lc.revoke_attempts += 1
                    lc.last_error = error
                    result.failed += 1
                    if lc.revoke_attempts >= self.settings.revoke_max_attempts:
                        lc.status = LockCredentialStatus.ABANDONED.value
                        logger.error(
                            "Giving up deleting passcode %s from lock %s for booking %d",
                            lc.credential_id, lc.lock_id, booking_id,
                        )
                session.add(CredentialAudit(
                    action=final_state.value,
                    booking_id=booking_id,
                    lock_id=lc.lock_id,
                    details=f"credential_id={lc.credential_id}",
                    success=error is None,
                    error_message=error,
                ))

            result.remaining = sum(
                1 for lc in booking.lock_credentials
                if lc.status == LockCredentialStatus.ACTIVE.value
            )
            if result.remaining == 0:
                booking.credential_enabled = False
                if booking.credential_state not in (
                    CredentialState.EXPIRED.value, CredentialState.REVOKED.value
                ):
                    booking.credential_state = final_state.value

        if targets:
            logger.info(
                "Revoked booking %d passcode: %d deleted, %d failed",
                booking_id, result.revoked, result.failed,
            )
        return result

    async def resync(self, booking_id: int, now: Optional[datetime] = None) -> ResyncResult:
        """Re-create a future booking's passcode on every lock.

        Keeps the passcode the customer already has, so an unsynced fallback
        code becomes a working one once the gateway accepts it. A lock whose
        old credential cannot be deleted keeps that credential on record and
        is not re-created, so later revocation still reaches it.
        """
        now = now or utcnow()

        async with get_session_context() as session:
            booking = await self._load_booking(session, booking_id)
            start, end = self._validity(booking)
            if not booking.is_confirmed:
                return ResyncResult(booking_id, skipped="booking cancelled")
            if start <= now:
                return ResyncResult(booking_id, skipped="booking already started")
            if self._gateway is None:
                return ResyncResult(booking_id, skipped="gateway not configured")
            locks = booking.room.lock_ids()
            code = booking.passcode or generate_passcode()
            stale = [
                (lc.lock_id, lc.credential_id)
                for lc in booking.lock_credentials
                if lc.status == LockCredentialStatus.ACTIVE.value and lc.credential_id
            ]

        retained = set()
        for lock_id, credential_id in stale:
            try:
                await self._gateway.delete_passcode(lock_id, credential_id)
            except GatewayError as e:
                logger.warning(
                    "Could not delete stale passcode %s on lock %s for booking %d, keeping it: %s",
                    credential_id, lock_id, booking_id, e,
                )
                retained.add(lock_id)

        targets = [(role, lock_id) for role, lock_id in locks if lock_id not in retained]
        outcomes = await self._fan_out(targets, code, start, end, f"Booking-{booking_id}")
        accepted = next((o.code for o in outcomes if o.success), None)
        enabled = accepted is not None or bool(retained)

        async with get_session_context() as session:
            booking = await self._load_booking(session, booking_id)
            self._record_outcomes(session, booking, outcomes, start, end, "resync")
            booking.passcode = accepted or code
            booking.credential_enabled = enabled
            booking.credential_state = CredentialState.PROVISIONED.value
            if enabled:
                booking.credential_synced_at = datetime.utcnow()

        return ResyncResult(booking_id, enabled=enabled, outcomes=outcomes)

    async def issue_fallback(self, booking_id: int) -> Optional[str]:
        """Give a confirmed booking with no passcode its fallback code.

        Used when provisioning crashed part way; reconciliation pushes the
        code to the locks later.
        """
        async with get_session_context() as session:
            booking = await self._load_booking(session, booking_id)
            if not booking.is_confirmed:
                return None
            if booking.passcode is None:
                booking.passcode = fallback_passcode(booking_id, self.settings.passcode_secret)
                booking.credential_enabled = False
                booking.credential_state = CredentialState.PROVISIONED.value
            return booking.passcode
