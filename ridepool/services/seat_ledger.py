"""
Seat ledger: reserves and releases seats on a ride.

Seats are held when a rider requests them, not when the driver confirms:
a pending request is a real hold and a rejection gives the seats back.
Every write is a compare-and-set against the store, so two riders racing
for the last seat cannot both win.
"""
import logging
import uuid
from enum import Enum
from typing import Callable
from datetime import datetime

from ridepool.domain import Booking, BookingStatus, Ride, RideStatus
from ridepool.domain.errors import (
    DuplicateBookingError,
    InvalidRequestError,
    InvalidStateError,
    NotAuthorizedError,
    NotFoundError,
    SeatsUnavailableError,
)
from ridepool.domain.models import utcnow
from ridepool.services.notifications import ChangeFeed
from ridepool.services.retry import retry_on_conflict
from ridepool.stores.interfaces import RideStore

logger = logging.getLogger(__name__)


class Decision(str, Enum):
    confirm = "confirm"
    reject = "reject"


class SeatLedger:
    def __init__(
        self,
        store: RideStore,
        feed: ChangeFeed,
        max_retries: int = 3,
        max_seats_per_booking: int = 4,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._feed = feed
        self._max_retries = max_retries
        self._max_seats = max_seats_per_booking
        self._clock = clock

    async def _ride(self, ride_id: str) -> Ride:
        ride = await self._store.get_ride(ride_id)
        if ride is None:
            raise NotFoundError("Ride", ride_id)
        return ride

    async def request_booking(self, ride_id: str, user_id: str, seats_requested: int) -> Booking:
        """Hold `seats_requested` seats for the user as a pending booking."""
        if not 1 <= seats_requested <= self._max_seats:
            raise InvalidRequestError(
                f"seats_requested must be between 1 and {self._max_seats}"
            )

        async def attempt() -> Booking:
            ride = await self._ride(ride_id)
            if ride.status != RideStatus.active:
                raise InvalidStateError(f"Ride is {ride.status.value} and not accepting bookings")
            if ride.departure_time <= self._clock():
                raise InvalidStateError("Ride has already departed")
            if user_id == ride.driver_id:
                raise NotAuthorizedError("Drivers cannot book seats on their own ride")
            if await self._store.find_open_booking(ride_id, user_id) is not None:
                raise DuplicateBookingError(ride_id, user_id)
            if seats_requested > ride.available_seats:
                raise SeatsUnavailableError(seats_requested, ride.available_seats)

            booking = Booking(
                id=str(uuid.uuid4()),
                ride_id=ride_id,
                user_id=user_id,
                seats_booked=seats_requested,
            )
            return await self._store.insert_booking_with_hold(booking, ride.available_seats)

        booking = await retry_on_conflict("request_booking", attempt, self._max_retries)
        logger.info(
            "Booking %s holds %d seat(s) on ride=%s for user=%s",
            booking.id, booking.seats_booked, ride_id, user_id,
        )
        await self._publish(booking)
        return booking

    async def resolve_request(self, booking_id: str, decision: Decision, caller_id: str) -> Booking:
        """Driver confirms (seats stay held) or rejects (seats released) a pending request."""

        async def attempt() -> Booking:
            booking = await self._store.get_booking(booking_id)
            if booking is None:
                raise NotFoundError("Booking", booking_id)
            ride = await self._ride(booking.ride_id)
            if caller_id != ride.driver_id:
                raise NotAuthorizedError("Only the driver can resolve booking requests")
            if booking.status != BookingStatus.pending:
                raise InvalidStateError(
                    f"Booking is {booking.status.value}; only pending requests can be resolved"
                )
            if decision == Decision.confirm:
                return await self._store.transition_booking(
                    booking_id, BookingStatus.pending, BookingStatus.confirmed, release_seats=False
                )
            return await self._store.transition_booking(
                booking_id, BookingStatus.pending, BookingStatus.cancelled, release_seats=True
            )

        booking = await retry_on_conflict("resolve_request", attempt, self._max_retries)
        logger.info("Booking %s %s by driver=%s", booking_id, booking.status.value, caller_id)
        await self._publish(booking)
        return booking

    async def list_pending(self, ride_id: str, caller_id: str) -> list[Booking]:
        ride = await self._ride(ride_id)
        if caller_id != ride.driver_id:
            raise NotAuthorizedError("Only the driver can view pending requests")
        return await self._store.list_bookings(ride_id, [BookingStatus.pending])

    async def list_passengers(self, ride_id: str) -> list[Booking]:
        await self._ride(ride_id)
        return await self._store.list_bookings(ride_id, [BookingStatus.confirmed])

    async def get_user_booking(self, ride_id: str, user_id: str) -> Booking:
        await self._ride(ride_id)
        booking = await self._store.find_open_booking(ride_id, user_id)
        if booking is None:
            raise NotFoundError("Booking", f"{ride_id}/{user_id}")
        return booking

    async def update_seat_count(self, ride_id: str, caller_id: str, new_seats: int) -> Ride:
        """Driver changes the ride's capacity; seats already held are kept."""
        if new_seats < 1:
            raise InvalidRequestError("A ride needs at least one seat")

        async def attempt() -> Ride:
            ride = await self._ride(ride_id)
            if caller_id != ride.driver_id:
                raise NotAuthorizedError("Only the driver can change the seat count")
            if ride.status != RideStatus.active:
                raise InvalidStateError(f"Seats cannot change while the ride is {ride.status.value}")
            held = ride.seats - ride.available_seats
            if new_seats < held:
                raise SeatsUnavailableError(held, new_seats)
            return await self._store.set_seat_count(ride_id, ride, new_seats)

        ride = await retry_on_conflict("update_seat_count", attempt, self._max_retries)
        logger.info("Ride %s now has %d seat(s), %d available", ride_id, ride.seats, ride.available_seats)
        await self._feed.ride_changed(ride)
        return ride

    async def _publish(self, booking: Booking) -> None:
        await self._feed.booking_changed(booking)
        ride = await self._store.get_ride(booking.ride_id)
        if ride is not None:
            await self._feed.ride_changed(ride)
