"""
Unit tests for the payment gate: the start predicate and marking bookings paid.
"""
import pytest

from ridepool.domain import Booking, BookingStatus, PaymentStatus, RideStatus
from ridepool.domain.errors import InvalidStateError, NotFoundError
from ridepool.services.notifications import CHANNEL_BOOKING_CHANGES
from ridepool.services.payment_gate import can_start
from ridepool.services.seat_ledger import Decision

DRIVER = "driver-001"


def _booking(n: int, status: BookingStatus, payment: PaymentStatus) -> Booking:
    return Booking(
        id=f"b{n}", ride_id="r1", user_id=f"u{n}", seats_booked=1, status=status, payment_status=payment
    )


class TestCanStartPredicate:
    def test_no_bookings(self):
        assert can_start([]) is False

    def test_zero_paid_fails(self):
        bookings = [_booking(i, BookingStatus.confirmed, PaymentStatus.unpaid) for i in range(3)]
        assert can_start(bookings) is False

    def test_one_paid_among_several_unpaid_succeeds(self):
        bookings = [_booking(i, BookingStatus.confirmed, PaymentStatus.unpaid) for i in range(3)]
        bookings.append(_booking(9, BookingStatus.confirmed, PaymentStatus.paid))
        assert can_start(bookings) is True

    def test_paid_but_pending_does_not_count(self):
        assert can_start([_booking(1, BookingStatus.pending, PaymentStatus.paid)]) is False

    def test_refunded_does_not_count(self):
        assert can_start([_booking(1, BookingStatus.confirmed, PaymentStatus.refunded)]) is False


@pytest.mark.asyncio
class TestPaymentGate:
    async def test_can_start_reads_the_store(self, gate, make_ride, confirmed_booking):
        ride = await make_ride(seats=3)
        await confirmed_booking(ride, "rider-a")
        await confirmed_booking(ride, "rider-b")
        assert await gate.can_start(ride.id) is False

        await confirmed_booking(ride, "rider-c", paid=True)
        assert await gate.can_start(ride.id) is True

    async def test_can_start_unknown_ride(self, gate):
        with pytest.raises(NotFoundError):
            await gate.can_start("missing")

    async def test_mark_paid_is_idempotent(self, gate, feed, make_ride, confirmed_booking):
        ride = await make_ride()
        booking = await confirmed_booking(ride, "rider-a")
        feed.messages.clear()

        first = await gate.mark_paid(booking.id)
        second = await gate.mark_paid(booking.id)

        assert first.payment_status == PaymentStatus.paid
        assert second.payment_status == PaymentStatus.paid
        # Only the real change is announced
        assert [channel for channel, _ in feed.messages] == [CHANNEL_BOOKING_CHANGES]

    async def test_pending_booking_can_be_paid(self, gate, ledger, make_ride):
        ride = await make_ride()
        booking = await ledger.request_booking(ride.id, "rider-a", 1)

        paid = await gate.mark_paid(booking.id)
        assert paid.status == BookingStatus.pending
        assert paid.payment_status == PaymentStatus.paid
        # Paying alone does not unlock the start; the driver still has to confirm
        assert await gate.can_start(ride.id) is False

        await ledger.resolve_request(booking.id, Decision.confirm, caller_id=DRIVER)
        assert await gate.can_start(ride.id) is True

    async def test_cancelled_booking_cannot_be_paid(self, gate, ledger, make_ride):
        ride = await make_ride()
        booking = await ledger.request_booking(ride.id, "rider-a", 1)
        await ledger.resolve_request(booking.id, Decision.reject, caller_id=DRIVER)

        with pytest.raises(InvalidStateError):
            await gate.mark_paid(booking.id)

    async def test_refunded_booking_cannot_be_paid_again(
        self, gate, lifecycle, make_ride, confirmed_booking
    ):
        ride = await make_ride()
        booking = await confirmed_booking(ride, "rider-a", paid=True)
        await lifecycle.transition(ride.id, RideStatus.cancelled, caller_id=DRIVER)

        with pytest.raises(InvalidStateError):
            await gate.mark_paid(booking.id)

    async def test_unknown_booking(self, gate):
        with pytest.raises(NotFoundError):
            await gate.mark_paid("missing")
