"""Domain records shared by the services and the stores.

These are plain frozen dataclasses. ORM models live in ridepool/models/ and
the stores convert between the two.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RideStatus(str, Enum):
    active = "active"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"


class BookingStatus(str, Enum):
    pending = "pending"
    confirmed = "confirmed"
    cancelled = "cancelled"
    completed = "completed"


class PaymentStatus(str, Enum):
    unpaid = "unpaid"
    paid = "paid"
    refunded = "refunded"


class Role(str, Enum):
    driver = "driver"
    passenger = "passenger"


TERMINAL_RIDE_STATUSES = frozenset({RideStatus.completed, RideStatus.cancelled})
LIVE_RIDE_STATUSES = frozenset({RideStatus.active, RideStatus.in_progress})

# A user may hold at most one booking in these states per ride.
OPEN_BOOKING_STATUSES = frozenset({BookingStatus.pending, BookingStatus.confirmed})

# Bookings in these states occupy seats on the ride.
SEAT_HOLDING_STATUSES = frozenset(
    {BookingStatus.pending, BookingStatus.confirmed, BookingStatus.completed}
)


@dataclass(frozen=True)
class Ride:
    id: str
    driver_id: str
    origin: str
    destination: str
    departure_time: datetime
    seats: int
    available_seats: int
    price_per_seat: Decimal
    status: RideStatus = RideStatus.active
    event_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RIDE_STATUSES


@dataclass(frozen=True)
class Booking:
    id: str
    ride_id: str
    user_id: str
    seats_booked: int
    status: BookingStatus = BookingStatus.pending
    payment_status: PaymentStatus = PaymentStatus.unpaid
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class CascadeResult:
    """Bookings touched by a ride status cascade."""

    completed: tuple[str, ...] = ()
    cancelled: tuple[str, ...] = ()
    refunded: tuple[str, ...] = ()

    @property
    def touched(self) -> int:
        return len(self.completed) + len(self.cancelled)


@dataclass(frozen=True)
class PositionSample:
    latitude: float
    longitude: float
    recorded_at: datetime | None = None


@dataclass(frozen=True)
class LiveLocation:
    ride_id: str
    user_id: str
    latitude: float
    longitude: float
    role: Role
    updated_at: datetime


@dataclass(frozen=True)
class Participant:
    user_id: str
    role: Role
    is_sharing: bool
    location: LiveLocation | None = None


@dataclass(frozen=True)
class PaymentRecord:
    """Audit row for one gateway charge against a booking."""

    id: str
    booking_id: str
    user_id: str
    amount: Decimal
    currency: str = "INR"
    # PENDING | SUCCESS | FAILED
    status: str = "PENDING"
    psp_ref: str | None = None
    idempotency_key: str | None = None
    created_at: datetime | None = None
