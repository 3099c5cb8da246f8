"""Store interfaces (repository pattern).

Stores must be swappable and return domain records. Every write method is a
single atomic unit against the backing store; conditional writes raise
TransientStoreConflict when the row no longer matches what the caller observed.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import AsyncIterator, Iterable

from ridepool.domain import (
    Booking,
    BookingStatus,
    CascadeResult,
    LiveLocation,
    PaymentRecord,
    PaymentStatus,
    Ride,
    RideStatus,
)


class RideStore(ABC):
    """Interface for ride and booking persistence."""

    @abstractmethod
    async def create_ride(self, ride: Ride) -> Ride:
        ...

    @abstractmethod
    async def get_ride(self, ride_id: str) -> Ride | None:
        """Return a ride by ID, or None if not found."""
        ...

    @abstractmethod
    async def get_booking(self, booking_id: str) -> Booking | None:
        ...

    @abstractmethod
    async def list_bookings(
        self, ride_id: str, statuses: Iterable[BookingStatus] | None = None
    ) -> list[Booking]:
        """Return bookings for a ride ordered by created_at ascending."""
        ...

    @abstractmethod
    async def find_open_booking(self, ride_id: str, user_id: str) -> Booking | None:
        """Return the user's pending or confirmed booking on the ride, if any."""
        ...

    @abstractmethod
    async def insert_booking_with_hold(self, booking: Booking, observed_available: int) -> Booking:
        """Insert a pending booking and take its seats off the ride.

        Succeeds only if the ride is still active with ``observed_available``
        seats. Raises TransientStoreConflict otherwise and
        DuplicateBookingError if the user already holds an open booking.
        """
        ...

    @abstractmethod
    async def transition_booking(
        self,
        booking_id: str,
        from_status: BookingStatus,
        to_status: BookingStatus,
        release_seats: bool,
    ) -> Booking:
        """Move a booking between statuses, optionally returning its seats to the ride."""
        ...

    @abstractmethod
    async def set_payment_status(
        self, booking_id: str, from_status: PaymentStatus, to_status: PaymentStatus
    ) -> Booking:
        ...

    @abstractmethod
    async def set_seat_count(self, ride_id: str, observed: Ride, new_seats: int) -> Ride:
        """Change a ride's capacity, keeping seats already held."""
        ...

    @abstractmethod
    async def transition_ride(
        self,
        ride_id: str,
        from_status: RideStatus,
        to_status: RideStatus,
        refund_paid: bool,
    ) -> tuple[Ride, CascadeResult]:
        """Write the ride status and its booking cascade in one transaction."""
        ...

    @abstractmethod
    async def apply_cascade(self, ride_id: str, refund_paid: bool) -> CascadeResult:
        """Re-apply the cascade for the ride's current status. Idempotent."""
        ...

    @abstractmethod
    async def list_elapsed_active_rides(self, now: datetime) -> list[Ride]:
        ...

    @abstractmethod
    async def list_rides_pending_cascade(self) -> list[Ride]:
        """Terminal rides that still have pending or confirmed bookings."""
        ...


class LocationStore(ABC):
    """Interface for the ephemeral per-ride location documents."""

    @abstractmethod
    async def upsert_if_session(self, location: LiveLocation, session_id: str) -> bool:
        """Write the record only while session_id is the participant's open session.

        The check and the write are atomic, so a record can never land after
        close_session. Returns False when the session is no longer current.
        """
        ...

    @abstractmethod
    async def delete(self, ride_id: str, user_id: str) -> None:
        """Delete a participant's record. Deleting a missing record is a no-op."""
        ...

    @abstractmethod
    async def snapshot(self, ride_id: str) -> list[LiveLocation]:
        ...

    @abstractmethod
    def watch(self, ride_id: str) -> AsyncIterator[list[LiveLocation]]:
        """Yield the current snapshot, then a fresh snapshot after every change."""
        ...

    @abstractmethod
    async def open_session(self, ride_id: str, user_id: str) -> str:
        """Register a sharing session for the participant, replacing any previous one."""
        ...

    @abstractmethod
    async def current_session(self, ride_id: str, user_id: str) -> str | None:
        """Return the participant's open sharing session id, if any."""
        ...

    @abstractmethod
    async def close_session(self, ride_id: str, user_id: str) -> None:
        ...

    @abstractmethod
    async def clear_ride(self, ride_id: str) -> None:
        """Drop every record and session of a ride."""
        ...

    @abstractmethod
    async def live_ride_ids(self) -> list[str]:
        """IDs of rides that currently have records or sessions."""
        ...


class PaymentStore(ABC):
    """Interface for the payment audit trail."""

    @abstractmethod
    async def save_payment(self, payment: PaymentRecord) -> PaymentRecord:
        """Insert the record, or update it if the id already exists.

        Raises IdempotencyKeyInUseError when another payment of the same user already
        holds the idempotency key.
        """
        ...

    @abstractmethod
    async def list_payments(self, booking_id: str) -> list[PaymentRecord]:
        ...

    @abstractmethod
    async def find_by_idempotency_key(self, user_id: str, key: str) -> PaymentRecord | None:
        ...
