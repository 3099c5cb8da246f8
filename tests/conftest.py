"""
Shared fixtures: in-memory stores and services wired the way
ridepool.dependencies wires them, plus a mutable clock.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from ridepool.domain import Booking, BookingStatus, PaymentStatus, Ride
from ridepool.services.lifecycle import RideLifecycle
from ridepool.services.live_location import LiveLocationHub, SharingTasks
from ridepool.services.notifications import MemoryChangeFeed
from ridepool.services.payment_gate import PaymentGate
from ridepool.services.seat_ledger import Decision, SeatLedger
from ridepool.services.sweeper import CompletionSweeper
from ridepool.stores.memory_store import MemoryLocationStore, MemoryRideStore

DRIVER = "driver-001"
START = datetime(2026, 7, 1, 18, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return Clock(START)


@pytest.fixture
def store():
    return MemoryRideStore()


@pytest.fixture
def locations():
    return MemoryLocationStore()


@pytest.fixture
def feed():
    return MemoryChangeFeed()


@pytest.fixture
def ledger(store, feed, clock):
    return SeatLedger(store, feed, max_retries=3, max_seats_per_booking=4, clock=clock)


@pytest.fixture
def gate(store, feed):
    return PaymentGate(store, feed)


@pytest.fixture
def hub(store, locations, clock):
    return LiveLocationHub(store, locations, tasks=SharingTasks(), clock=clock)


@pytest.fixture
def lifecycle(store, gate, feed, hub, clock):
    return RideLifecycle(store, gate, feed, hub=hub, refund_paid_on_cancel=True, clock=clock)


@pytest.fixture
def sweeper(store, lifecycle, locations, clock):
    return CompletionSweeper(store, lifecycle, locations, clock=clock)


@pytest.fixture
def make_ride(lifecycle, clock):
    """Create an active ride departing two hours after the clock."""

    async def _make(seats: int = 3, driver_id: str = DRIVER, price: str = "250.00") -> Ride:
        return await lifecycle.create_ride(
            driver_id=driver_id,
            origin="Indiranagar",
            destination="Palace Grounds",
            departure_time=clock() + timedelta(hours=2),
            seats=seats,
            price_per_seat=Decimal(price),
        )

    return _make


@pytest.fixture
def confirmed_booking(ledger, gate):
    """Request, confirm and optionally pay a booking for `user_id`."""

    async def _confirm(ride: Ride, user_id: str, seats: int = 1, paid: bool = False) -> Booking:
        booking = await ledger.request_booking(ride.id, user_id, seats)
        booking = await ledger.resolve_request(booking.id, Decision.confirm, caller_id=ride.driver_id)
        if paid:
            booking = await gate.mark_paid(booking.id)
        assert booking.status == BookingStatus.confirmed
        assert booking.payment_status == (PaymentStatus.paid if paid else PaymentStatus.unpaid)
        return booking

    return _confirm
