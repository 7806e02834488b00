"""Database models for studio access."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from studio_access.config import LockRole


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class BookingStatus(str, Enum):
    """Lifecycle status of a booking."""

    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class CredentialState(str, Enum):
    """State of a booking's access credential."""

    NONE = "none"
    PENDING = "pending"
    PROVISIONED = "provisioned"
    EXPIRED = "expired"
    REVOKED = "revoked"


class LockCredentialStatus(str, Enum):
    """Outcome of a credential on a single lock."""

    ACTIVE = "active"
    FAILED = "failed"
    REVOKED = "revoked"
    ABANDONED = "abandoned"


class BlockKind(str, Enum):
    """Position of a blocked slot in a recurrence series."""

    STANDALONE = "standalone"
    HEAD = "head"
    CHILD = "child"


class Room(Base):
    """A bookable room."""

    __tablename__ = "rooms"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    key: Mapped[str] = mapped_column(String(50), unique=True)  # e.g., "pod_1"
    name: Mapped[str] = mapped_column(String(100))
    description: Mapped[str] = mapped_column(Text, default="")
    max_capacity: Mapped[int] = mapped_column(Integer, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    price_per_hour: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    day_price_per_hour: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    evening_price_per_hour: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(10, 2), nullable=True
    )
    day_hours_start: Mapped[int] = mapped_column(Integer, default=9)
    day_hours_end: Mapped[int] = mapped_column(Integer, default=17)

    # TTLock ids
    front_lock_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    interior_lock_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    lock_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Relationships
    bookings: Mapped[list["Booking"]] = relationship("Booking", back_populates="room")

    @property
    def has_split_pricing(self) -> bool:
        return self.day_price_per_hour is not None and self.evening_price_per_hour is not None

    def lock_ids(self) -> list[tuple[str, str]]:
        """Return (role, lock_id) pairs, front door first."""
        locks = []
        if self.front_lock_id:
            locks.append((LockRole.FRONT.value, self.front_lock_id))
        if self.interior_lock_id:
            locks.append((LockRole.INTERIOR.value, self.interior_lock_id))
        return locks

    def __repr__(self) -> str:
        return f"<Room {self.key}>"


class Booking(Base):
    """A reservation of a room for an hour range on one date."""

    __tablename__ = "bookings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True)
    room_id: Mapped[int] = mapped_column(ForeignKey("rooms.id"))
    date: Mapped[date] = mapped_column(Date, index=True)
    start_hour: Mapped[int] = mapped_column(Integer)
    end_hour: Mapped[int] = mapped_column(Integer)  # exclusive, 24 = midnight
    status: Mapped[str] = mapped_column(String(20), default=BookingStatus.CONFIRMED.value)
    total_price: Mapped[Decimal] = mapped_column(Numeric(10, 2))

    # Access credential
    passcode: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    credential_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    credential_state: Mapped[str] = mapped_column(
        String(20), default=CredentialState.NONE.value
    )
    credential_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Relationships
    room: Mapped["Room"] = relationship("Room", back_populates="bookings")
    lock_credentials: Mapped[list["LockCredential"]] = relationship(
        "LockCredential", back_populates="booking", cascade="all, delete-orphan"
    )

    @property
    def duration(self) -> int:
        return self.end_hour - self.start_hour

    @property
    def is_confirmed(self) -> bool:
        return self.status == BookingStatus.CONFIRMED.value

    def __repr__(self) -> str:
        return f"<Booking {self.id} room={self.room_id} {self.date} {self.start_hour}-{self.end_hour}>"


class LockCredential(Base):
    """A booking's passcode as provisioned on one physical lock."""

    __tablename__ = "lock_credentials"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id"), index=True)
    lock_id: Mapped[str] = mapped_column(String(50))
    lock_role: Mapped[str] = mapped_column(String(20))  # front, interior
    credential_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=LockCredentialStatus.ACTIVE.value)
    valid_from: Mapped[datetime] = mapped_column(DateTime)
    valid_until: Mapped[datetime] = mapped_column(DateTime)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    revoke_attempts: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    # Relationships
    booking: Mapped["Booking"] = relationship("Booking", back_populates="lock_credentials")

    __table_args__ = (UniqueConstraint("booking_id", "lock_id", name="uq_booking_lock"),)

    def __repr__(self) -> str:
        return f"<LockCredential booking={self.booking_id} lock={self.lock_id} {self.status}>"


class BlockedSlot(Base):
    """An administrator-imposed exclusion on a room for an hour range.

    Recurrence series are stored flat: the head has no parent and every weekly
    repeat points at the head through ``parent_block_id``. The column is a plain
    integer so a child can outlive its head.
    """

    __tablename__ = "blocked_slots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    room_id: Mapped[int] = mapped_column(ForeignKey("rooms.id"))
    date: Mapped[date] = mapped_column(Date, index=True)
    start_hour: Mapped[int] = mapped_column(Integer)
    end_hour: Mapped[int] = mapped_column(Integer)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    kind: Mapped[str] = mapped_column(String(20), default=BlockKind.STANDALONE.value)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False)
    recurring_until: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    parent_block_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<BlockedSlot {self.id} {self.kind} room={self.room_id} {self.date}>"


class CredentialAudit(Base):
    """Audit log for every credential change pushed to a lock."""

    __tablename__ = "credential_audit"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    action: Mapped[str] = mapped_column(String(50))  # provision, revoke, resync, ...
    booking_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    lock_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, default=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<CredentialAudit {self.timestamp} {self.action}>"
