"""
Unit tests for ride creation, driver transitions, system transitions and cascades.
"""
from datetime import timedelta
from decimal import Decimal

import pytest

from ridepool.domain import BookingStatus, PaymentStatus, PositionSample, RideStatus, Role
from ridepool.domain.errors import (
    InvalidRequestError,
    InvalidStateError,
    NotAuthorizedError,
    NotFoundError,
    PaymentRequiredError,
    TerminalStateError,
)
from ridepool.services.lifecycle import RideLifecycle
from ridepool.services.notifications import CHANNEL_BOOKING_CHANGES, CHANNEL_RIDE_CHANGES

DRIVER = "driver-001"


@pytest.mark.asyncio
class TestCreateRide:
    async def test_new_ride_is_active_with_all_seats_free(self, lifecycle, clock):
        ride = await lifecycle.create_ride(
            DRIVER, "Koramangala", "Chinnaswamy Stadium", clock() + timedelta(hours=1), 4,
            price_per_seat=Decimal("120.00"), event_id="event-42",
        )
        assert ride.status == RideStatus.active
        assert ride.available_seats == 4
        assert ride.event_id == "event-42"
        assert (await lifecycle.get_ride(ride.id)).id == ride.id

    async def test_departure_must_be_in_the_future(self, lifecycle, clock):
        with pytest.raises(InvalidRequestError):
            await lifecycle.create_ride(DRIVER, "A", "B", clock() - timedelta(minutes=1), 2)

    async def test_departure_needs_a_timezone(self, lifecycle, clock):
        naive = (clock() + timedelta(hours=1)).replace(tzinfo=None)
        with pytest.raises(InvalidRequestError):
            await lifecycle.create_ride(DRIVER, "A", "B", naive, 2)

    async def test_needs_a_seat(self, lifecycle, clock):
        with pytest.raises(InvalidRequestError):
            await lifecycle.create_ride(DRIVER, "A", "B", clock() + timedelta(hours=1), 0)

    async def test_unknown_ride(self, lifecycle):
        with pytest.raises(NotFoundError):
            await lifecycle.get_ride("missing")


@pytest.mark.asyncio
class TestStartGate:
    async def test_start_without_paid_passenger_is_refused(
        self, lifecycle, store, make_ride, confirmed_booking
    ):
        ride = await make_ride()
        await confirmed_booking(ride, "rider-a")

        with pytest.raises(PaymentRequiredError):
            await lifecycle.transition(ride.id, RideStatus.in_progress, caller_id=DRIVER)
        # No write happened
        assert (await store.get_ride(ride.id)).status == RideStatus.active

    async def test_one_paid_passenger_is_enough(self, lifecycle, make_ride, confirmed_booking):
        ride = await make_ride(seats=3)
        await confirmed_booking(ride, "rider-a")
        await confirmed_booking(ride, "rider-b")
        await confirmed_booking(ride, "rider-c", paid=True)

        ride = await lifecycle.transition(ride.id, RideStatus.in_progress, caller_id=DRIVER)
        assert ride.status == RideStatus.in_progress


@pytest.mark.asyncio
class TestDriverTransitions:
    async def test_only_driver_transitions(self, lifecycle, make_ride):
        ride = await make_ride()
        with pytest.raises(NotAuthorizedError):
            await lifecycle.transition(ride.id, RideStatus.cancelled, caller_id="rider-a")

    async def test_non_driver_is_refused_before_terminal_check(self, lifecycle, make_ride):
        ride = await make_ride()
        await lifecycle.transition(ride.id, RideStatus.cancelled, caller_id=DRIVER)

        with pytest.raises(NotAuthorizedError):
            await lifecycle.transition(ride.id, RideStatus.cancelled, caller_id="rider-a")

    async def test_terminal_ride_cannot_move(self, lifecycle, make_ride):
        ride = await make_ride()
        await lifecycle.transition(ride.id, RideStatus.cancelled, caller_id=DRIVER)

        with pytest.raises(TerminalStateError):
            await lifecycle.transition(ride.id, RideStatus.in_progress, caller_id=DRIVER)

    async def test_driver_cannot_complete_unstarted_ride(self, lifecycle, make_ride):
        ride = await make_ride()
        with pytest.raises(InvalidStateError):
            await lifecycle.transition(ride.id, RideStatus.completed, caller_id=DRIVER)

    async def test_cannot_move_back_to_active(
        self, lifecycle, make_ride, confirmed_booking
    ):
        ride = await make_ride()
        await confirmed_booking(ride, "rider-a", paid=True)
        await lifecycle.transition(ride.id, RideStatus.in_progress, caller_id=DRIVER)

        with pytest.raises(InvalidStateError):
            await lifecycle.transition(ride.id, RideStatus.active, caller_id=DRIVER)


@pytest.mark.asyncio
class TestCascade:
    async def test_completion_cascade(
        self, lifecycle, ledger, store, make_ride, confirmed_booking
    ):
        ride = await make_ride(seats=3)
        paid = await confirmed_booking(ride, "rider-a", paid=True)
        unpaid = await confirmed_booking(ride, "rider-b")
        pending = await ledger.request_booking(ride.id, "rider-c", 1)
        await lifecycle.transition(ride.id, RideStatus.in_progress, caller_id=DRIVER)

        ride = await lifecycle.transition(ride.id, RideStatus.completed, caller_id=DRIVER)

        assert ride.status == RideStatus.completed
        assert (await store.get_booking(paid.id)).status == BookingStatus.completed
        assert (await store.get_booking(unpaid.id)).status == BookingStatus.completed
        assert (await store.get_booking(pending.id)).status == BookingStatus.cancelled
        assert await store.list_bookings(ride.id, [BookingStatus.pending, BookingStatus.confirmed]) == []
        assert ride.available_seats == 1

    async def test_cancellation_refunds_paid_bookings(
        self, lifecycle, ledger, store, make_ride, confirmed_booking
    ):
        ride = await make_ride(seats=3)
        paid = await confirmed_booking(ride, "rider-a", paid=True)
        unpaid = await confirmed_booking(ride, "rider-b")
        pending = await ledger.request_booking(ride.id, "rider-c", 1)

        ride = await lifecycle.transition(ride.id, RideStatus.cancelled, caller_id=DRIVER)

        paid = await store.get_booking(paid.id)
        assert paid.status == BookingStatus.cancelled
        assert paid.payment_status == PaymentStatus.refunded
        assert (await store.get_booking(unpaid.id)).payment_status == PaymentStatus.unpaid
        assert (await store.get_booking(pending.id)).status == BookingStatus.cancelled
        assert ride.available_seats == ride.seats

    async def test_cancellation_without_refund_policy(
        self, store, gate, feed, hub, clock, make_ride, confirmed_booking
    ):
        lifecycle = RideLifecycle(store, gate, feed, hub=hub, refund_paid_on_cancel=False, clock=clock)
        ride = await make_ride()
        paid = await confirmed_booking(ride, "rider-a", paid=True)

        await lifecycle.transition(ride.id, RideStatus.cancelled, caller_id=DRIVER)

        paid = await store.get_booking(paid.id)
        assert paid.status == BookingStatus.cancelled
        assert paid.payment_status == PaymentStatus.paid

    async def test_cascade_changes_are_published(
        self, lifecycle, feed, make_ride, confirmed_booking
    ):
        ride = await make_ride(seats=2)
        booking = await confirmed_booking(ride, "rider-a")
        feed.messages.clear()

        await lifecycle.transition(ride.id, RideStatus.cancelled, caller_id=DRIVER)

        ride_events = [m for c, m in feed.messages if c == CHANNEL_RIDE_CHANGES]
        booking_events = [m for c, m in feed.messages if c == CHANNEL_BOOKING_CHANGES]
        assert [m.status for m in ride_events] == ["cancelled"]
        assert [(m.id, m.status) for m in booking_events] == [(booking.id, "cancelled")]

    async def test_terminal_transition_clears_live_locations(
        self, lifecycle, hub, locations, make_ride, confirmed_booking
    ):
        ride = await make_ride()
        await confirmed_booking(ride, "rider-a", paid=True)
        await hub.start_sharing(ride.id, DRIVER, Role.driver)
        await hub.publish(ride.id, DRIVER, PositionSample(12.97, 77.59))
        assert len(await locations.snapshot(ride.id)) == 1

        await lifecycle.transition(ride.id, RideStatus.cancelled, caller_id=DRIVER)

        assert await locations.snapshot(ride.id) == []
        assert await locations.current_session(ride.id, DRIVER) is None


@pytest.mark.asyncio
class TestSystemTransitions:
    async def test_system_completes_departed_ride(self, lifecycle, ledger, store, make_ride, clock):
        ride = await make_ride()
        pending = await ledger.request_booking(ride.id, "rider-a", 1)
        clock.advance(hours=3)

        ride = await lifecycle.system_transition(ride.id, RideStatus.completed)

        assert ride.status == RideStatus.completed
        assert (await store.get_booking(pending.id)).status == BookingStatus.cancelled

    async def test_system_does_not_complete_before_departure(self, lifecycle, make_ride):
        ride = await make_ride()
        with pytest.raises(InvalidStateError):
            await lifecycle.system_transition(ride.id, RideStatus.completed)

    async def test_system_leaves_started_rides_to_the_driver(
        self, lifecycle, make_ride, confirmed_booking, clock
    ):
        ride = await make_ride()
        await confirmed_booking(ride, "rider-a", paid=True)
        await lifecycle.transition(ride.id, RideStatus.in_progress, caller_id=DRIVER)
        clock.advance(hours=3)

        with pytest.raises(InvalidStateError):
            await lifecycle.system_transition(ride.id, RideStatus.completed)

    async def test_second_system_completion_sees_terminal_state(self, lifecycle, make_ride, clock):
        ride = await make_ride()
        clock.advance(hours=3)
        await lifecycle.system_transition(ride.id, RideStatus.completed)

        with pytest.raises(TerminalStateError):
            await lifecycle.system_transition(ride.id, RideStatus.completed)
