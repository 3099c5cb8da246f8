"""
Ride lifecycle state machine.

    active ──► in_progress ──► completed
    active ──► completed               (system only, after departure)
    active | in_progress ──► cancelled

Drivers start, complete and cancel their own rides; starting requires a paid
confirmed passenger. Only the system (CompletionSweeper) may complete a ride
that never started, and only after its departure time. The status write and
the booking cascade commit together.
"""
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Callable

from ridepool.domain import BookingStatus, CascadeResult, Ride, RideStatus
from ridepool.domain.errors import (
    InvalidRequestError,
    InvalidStateError,
    NotAuthorizedError,
    NotFoundError,
    PaymentRequiredError,
    TerminalStateError,
)
from ridepool.domain.models import TERMINAL_RIDE_STATUSES, utcnow
from ridepool.services.notifications import ChangeFeed
from ridepool.services.payment_gate import PaymentGate
from ridepool.services.retry import retry_on_conflict
from ridepool.stores.interfaces import RideStore

if TYPE_CHECKING:
    from ridepool.services.live_location import LiveLocationHub

logger = logging.getLogger(__name__)

# Transitions a driver may request on their own ride
DRIVER_TRANSITIONS: dict[RideStatus, set[RideStatus]] = {
    RideStatus.active: {RideStatus.in_progress, RideStatus.cancelled},
    RideStatus.in_progress: {RideStatus.completed, RideStatus.cancelled},
    RideStatus.completed: set(),
    RideStatus.cancelled: set(),
}

# Transitions applied by the system without a human actor
SYSTEM_TRANSITIONS: dict[RideStatus, set[RideStatus]] = {
    RideStatus.active: {RideStatus.completed, RideStatus.cancelled},
    RideStatus.in_progress: set(),
    RideStatus.completed: set(),
    RideStatus.cancelled: set(),
}


def is_valid_transition(current: RideStatus, target: RideStatus, by_system: bool = False) -> bool:
    table = SYSTEM_TRANSITIONS if by_system else DRIVER_TRANSITIONS
    return target in table.get(current, set())


class RideLifecycle:
    def __init__(
        self,
        store: RideStore,
        gate: PaymentGate,
        feed: ChangeFeed,
        hub: "LiveLocationHub | None" = None,
        refund_paid_on_cancel: bool = True,
        max_retries: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._gate = gate
        self._feed = feed
        self._hub = hub
        self._refund_paid_on_cancel = refund_paid_on_cancel
        self._max_retries = max_retries
        self._clock = clock

    @property
    def refund_paid_on_cancel(self) -> bool:
        return self._refund_paid_on_cancel

    async def create_ride(
        self,
        driver_id: str,
        origin: str,
        destination: str,
        departure_time: datetime,
        seats: int,
        price_per_seat: Decimal = Decimal("0"),
        event_id: str | None = None,
    ) -> Ride:
        if seats < 1:
            raise InvalidRequestError("A ride needs at least one seat")
        if price_per_seat < 0:
            raise InvalidRequestError("price_per_seat cannot be negative")
        if departure_time.tzinfo is None:
            raise InvalidRequestError("departure_time must include a timezone")
        if departure_time <= self._clock():
            raise InvalidRequestError("departure_time must be in the future")

        ride = await self._store.create_ride(
            Ride(
                id=str(uuid.uuid4()),
                driver_id=driver_id,
                origin=origin,
                destination=destination,
                departure_time=departure_time,
                seats=seats,
                available_seats=seats,
                price_per_seat=price_per_seat,
                event_id=event_id,
            )
        )
        logger.info("Ride %s created by driver=%s with %d seat(s)", ride.id, driver_id, seats)
        await self._feed.ride_changed(ride)
        return ride

    async def get_ride(self, ride_id: str) -> Ride:
        ride = await self._store.get_ride(ride_id)
        if ride is None:
            raise NotFoundError("Ride", ride_id)
        return ride

    async def transition(self, ride_id: str, target: RideStatus, caller_id: str) -> Ride:
        """Driver-initiated transition."""

        async def attempt() -> tuple[Ride, CascadeResult]:
            ride = await self.get_ride(ride_id)
            if caller_id != ride.driver_id:
                raise NotAuthorizedError("Only the driver can change the ride status")
            if ride.is_terminal:
                raise TerminalStateError(ride_id, ride.status.value)
            if not is_valid_transition(ride.status, target):
                raise InvalidStateError(
                    f"Cannot move ride from {ride.status.value} to {target.value}"
                )
            if target == RideStatus.in_progress and not await self._gate.can_start(ride_id):
                raise PaymentRequiredError(ride_id)
            return await self._store.transition_ride(
                ride_id, ride.status, target, self._refund_paid_on_cancel
            )

        ride, cascade = await retry_on_conflict("transition_ride", attempt, self._max_retries)
        await self._after_transition(ride, cascade, actor=caller_id)
        return ride

    async def system_transition(
        self, ride_id: str, target: RideStatus, now: datetime | None = None
    ) -> Ride:
        """Transition applied by the system (time-based completion, policy cancellation).

        The write is conditioned on the status read here, so two overlapping
        callers cannot both apply it; the loser sees a TerminalStateError.
        """
        now = now or self._clock()

        async def attempt() -> tuple[Ride, CascadeResult]:
            ride = await self.get_ride(ride_id)
            if ride.is_terminal:
                raise TerminalStateError(ride_id, ride.status.value)
            if not is_valid_transition(ride.status, target, by_system=True):
                raise InvalidStateError(
                    f"Cannot move ride from {ride.status.value} to {target.value}"
                )
            if target == RideStatus.completed and ride.departure_time >= now:
                raise InvalidStateError("Ride has not departed yet")
            return await self._store.transition_ride(
                ride_id, ride.status, target, self._refund_paid_on_cancel
            )

        ride, cascade = await retry_on_conflict("system_transition", attempt, self._max_retries)
        await self._after_transition(ride, cascade, actor="system")
        return ride

    async def _after_transition(self, ride: Ride, cascade: CascadeResult, actor: str) -> None:
        logger.info(
            "Ride %s -> %s by %s (completed=%d cancelled=%d refunded=%d)",
            ride.id, ride.status.value, actor,
            len(cascade.completed), len(cascade.cancelled), len(cascade.refunded),
        )
        await self._feed.ride_changed(ride)
        if cascade.touched:
            touched = set(cascade.completed) | set(cascade.cancelled)
            for booking in await self._store.list_bookings(
                ride.id, [BookingStatus.completed, BookingStatus.cancelled]
            ):
                if booking.id in touched:
                    await self._feed.booking_changed(booking)

        if ride.status in TERMINAL_RIDE_STATUSES and self._hub is not None:
            try:
                await self._hub.clear_ride(ride.id)
            except Exception as exc:
                # The sweeper's cleanup pass removes whatever is left behind.
                logger.error("Failed to clear live locations for ride=%s: %s", ride.id, exc)
