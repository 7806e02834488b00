"""Configuration for the studio access system."""

from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict


class LockRole(str, Enum):
    """Which door a lock secures."""

    FRONT = "front"
    INTERIOR = "interior"


class RoomConfig(BaseModel):
    """Catalog entry for a single bookable room."""

    key: str
    name: str
    description: str = ""
    max_capacity: int = 1
    price_per_hour: Decimal
    # Day/evening split pricing; both must be set to take effect
    day_price_per_hour: Optional[Decimal] = None
    evening_price_per_hour: Optional[Decimal] = None
    day_hours_start: int = 9
    day_hours_end: int = 17
    lock_name: Optional[str] = None


# Passcodes accepted by the lock keypads are exactly 6 digits, no leading zero
PASSCODE_MIN = 100000
PASSCODE_MAX = 999999


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="STUDIO_",
    )

    # Database
    database_url: str = "sqlite+aiosqlite:///./studio_access.db"

    # Server settings
    host: str = "0.0.0.0"
    port: int = 5000
    debug: bool = False

    # All dates and hours are local to this timezone
    timezone: str = "Europe/London"

    # Bookable window within a day; 24 means midnight at the end of the day
    business_open_hour: int = 0
    business_close_hour: int = 24

    # Long-booking discount
    long_booking_hours: int = 4
    long_booking_discount: Decimal = Decimal("0.10")

    # TTLock cloud API
    ttlock_base_url: str = "https://euapi.ttlock.com"
    ttlock_client_id: str = ""
    ttlock_client_secret: str = ""
    ttlock_username: str = ""
    ttlock_password: str = ""

    # Gateway call behaviour
    gateway_timeout_seconds: float = 10.0
    gateway_max_retries: int = 2
    gateway_retry_backoff_seconds: float = 1.0
    gateway_min_interval_seconds: float = 0.5

    # Live-request provisioning budget per lock
    provision_deadline_seconds: float = 15.0

    # Secret mixed into fallback passcodes
    passcode_secret: str = "change-me"

    # Lock ids: shared building front door plus one interior door per room key
    front_door_lock_id: str = ""
    room_lock_ids: dict[str, str] = {}

    # Reconciliation
    expire_buffer_hours: int = 2
    retention_days: int = 30
    expire_interval_minutes: int = 60
    purge_hour: int = 3
    resync_hour: int = 4
    resync_delay_seconds: float = 1.0
    revoke_max_attempts: int = 3

    # Sessions issued by the external auth layer
    session_ttl_days: int = 7

    @property
    def gateway_configured(self) -> bool:
        return bool(
            self.ttlock_client_id
            and self.ttlock_client_secret
            and self.ttlock_username
            and self.ttlock_password
        )


def build_rooms() -> list[RoomConfig]:
    """Build the fixed room catalog.

    Pods are priced by time of day; the studio has a flat hourly rate.
    """
    return [
        RoomConfig(
            key="pod_1",
            name="Pod 1",
            description="Single-person vocal and podcast booth",
            max_capacity=2,
            price_per_hour=Decimal("7"),
            day_price_per_hour=Decimal("7"),
            evening_price_per_hour=Decimal("9"),
            lock_name="Pod 1 Door",
        ),
        RoomConfig(
            key="pod_2",
            name="Pod 2",
            description="Two-person production pod",
            max_capacity=3,
            price_per_hour=Decimal("13"),
            day_price_per_hour=Decimal("13"),
            evening_price_per_hour=Decimal("18"),
            lock_name="Pod 2 Door",
        ),
        RoomConfig(
            key="studio",
            name="Live Room",
            description="Full band live room",
            max_capacity=8,
            price_per_hour=Decimal("40"),
            lock_name="Live Room Door",
        ),
    ]


# Global settings instance
settings = Settings()
