"""
Payment gate for the ride lifecycle.

A ride may start as soon as any one confirmed passenger has paid; the rest
of the manifest does not need to be settled first.
"""
import logging
from typing import Iterable

from ridepool.domain import Booking, BookingStatus, PaymentStatus
from ridepool.domain.errors import InvalidStateError, NotFoundError
from ridepool.services.notifications import ChangeFeed
from ridepool.services.retry import retry_on_conflict
from ridepool.stores.interfaces import RideStore

logger = logging.getLogger(__name__)


def can_start(bookings: Iterable[Booking]) -> bool:
    """True iff at least one booking is confirmed and paid."""
    return any(
        b.status == BookingStatus.confirmed and b.payment_status == PaymentStatus.paid
        for b in bookings
    )


class PaymentGate:
    def __init__(self, store: RideStore, feed: ChangeFeed, max_retries: int = 3) -> None:
        self._store = store
        self._feed = feed
        self._max_retries = max_retries

    async def can_start(self, ride_id: str) -> bool:
        if await self._store.get_ride(ride_id) is None:
            raise NotFoundError("Ride", ride_id)
        return can_start(await self._store.list_bookings(ride_id, [BookingStatus.confirmed]))

    async def mark_paid(self, booking_id: str) -> Booking:
        """Record a successful gateway charge. Marking a paid booking again is a no-op."""
        changed = False

        async def attempt() -> Booking:
            nonlocal changed
            booking = await self._store.get_booking(booking_id)
            if booking is None:
                raise NotFoundError("Booking", booking_id)
            if booking.payment_status == PaymentStatus.paid:
                return booking
            if booking.payment_status == PaymentStatus.refunded:
                raise InvalidStateError("Booking has already been refunded")
            if booking.status == BookingStatus.cancelled:
                raise InvalidStateError("Cannot pay for a cancelled booking")
            updated = await self._store.set_payment_status(
                booking_id, PaymentStatus.unpaid, PaymentStatus.paid
            )
            changed = True
            return updated

        booking = await retry_on_conflict("mark_paid", attempt, self._max_retries)
        if changed:
            logger.info("Booking %s marked paid", booking_id)
            await self._feed.booking_changed(booking)
        return booking
