"""Booking cascade applied when a ride reaches a terminal status.

Both stores run the same plan inside the transaction that writes the ride
status, and the sweeper re-runs it for rides whose bookings were left open.
Applying a plan twice yields the same state as applying it once.
"""

from dataclasses import dataclass
from typing import Iterable

from ridepool.domain.models import (
    Booking,
    BookingStatus,
    CascadeResult,
    PaymentStatus,
    RideStatus,
    SEAT_HOLDING_STATUSES,
)


@dataclass(frozen=True)
class BookingChange:
    booking_id: str
    status: BookingStatus
    payment_status: PaymentStatus


def plan_cascade(
    ride_status: RideStatus,
    bookings: Iterable[Booking],
    refund_paid: bool,
) -> list[BookingChange]:
    """Return the booking updates implied by ``ride_status``.

    completed: confirmed -> completed, pending -> cancelled.
    cancelled: pending/confirmed -> cancelled, paid -> refunded when
    ``refund_paid`` is set.
    Non-terminal statuses imply no changes.
    """
    changes: list[BookingChange] = []
    for booking in bookings:
        if ride_status == RideStatus.completed:
            if booking.status == BookingStatus.confirmed:
                changes.append(
                    BookingChange(booking.id, BookingStatus.completed, booking.payment_status)
                )
            elif booking.status == BookingStatus.pending:
                changes.append(
                    BookingChange(booking.id, BookingStatus.cancelled, booking.payment_status)
                )
        elif ride_status == RideStatus.cancelled:
            if booking.status in (BookingStatus.pending, BookingStatus.confirmed):
                payment_status = booking.payment_status
                if refund_paid and payment_status == PaymentStatus.paid:
                    payment_status = PaymentStatus.refunded
                changes.append(BookingChange(booking.id, BookingStatus.cancelled, payment_status))
    return changes


def summarize(changes: Iterable[BookingChange], before: dict[str, Booking]) -> CascadeResult:
    completed, cancelled, refunded = [], [], []
    for change in changes:
        if change.status == BookingStatus.completed:
            completed.append(change.booking_id)
        else:
            cancelled.append(change.booking_id)
        if (
            change.payment_status == PaymentStatus.refunded
            and before[change.booking_id].payment_status != PaymentStatus.refunded
        ):
            refunded.append(change.booking_id)
    return CascadeResult(tuple(completed), tuple(cancelled), tuple(refunded))


def held_seats(bookings: Iterable[Booking]) -> int:
    """Seats occupied by bookings that still hold them."""
    return sum(b.seats_booked for b in bookings if b.status in SEAT_HOLDING_STATUSES)
