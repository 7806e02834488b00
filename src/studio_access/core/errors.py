"""Exceptions raised by the booking core.

Everything derives from ValueError so callers that only distinguish "bad
request" from "server fault" can keep catching ValueError.
"""


class BookingError(ValueError):
    """Base class for expected, user-facing booking failures."""


class ValidationError(BookingError):
    """Request is malformed or refers to something that does not exist."""


class ConflictError(BookingError):
    """Requested slot overlaps an existing booking or a blocked slot."""

    SLOT_BOOKED = "slot already booked"
    SLOT_BLOCKED = "slot blocked"


class NotFoundError(BookingError):
    """Referenced record does not exist."""


class PermissionDeniedError(BookingError):
    """Caller may not act on this record."""


class AlreadyCancelledError(BookingError):
    """Booking was cancelled earlier."""


class GatewayError(Exception):
    """The lock vendor API failed or returned an error payload."""

    def __init__(self, message: str, errcode: int | None = None):
        super().__init__(message)
        self.errcode = errcode
