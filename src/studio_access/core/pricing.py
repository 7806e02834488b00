"""Booking price calculation."""

from decimal import ROUND_HALF_UP, Decimal

from studio_access.db.models import Room

CENTS = Decimal("0.01")


def calculate_time_based_price(room: Room, start_hour: int, end_hour: int) -> Decimal:
    """Sum day and evening rates hour by hour."""
    total = Decimal("0")
    for hour in range(start_hour, end_hour):
        if room.day_hours_start <= hour < room.day_hours_end:
            total += Decimal(room.day_price_per_hour)
        else:
            total += Decimal(room.evening_price_per_hour)
    return total


def calculate_booking_price(
    room: Room,
    start_hour: int,
    end_hour: int,
    long_booking_hours: int = 4,
    long_booking_discount: Decimal = Decimal("0.10"),
) -> Decimal:
    """Calculate the total price of a booking.

    Rooms with both day and evening rates are priced hour by hour, others at
    the flat hourly rate. Bookings longer than ``long_booking_hours`` get the
    discount applied once to the summed total.
    """
    duration = end_hour - start_hour
    if room.has_split_pricing:
        total = calculate_time_based_price(room, start_hour, end_hour)
    else:
        total = Decimal(room.price_per_hour) * duration

    if duration > long_booking_hours:
        total = total * (Decimal("1") - long_booking_discount)

    return total.quantize(CENTS, rounding=ROUND_HALF_UP)
