"""In-process implementations of RideStore and LocationStore.

Used by the "memory" store backend and by the test suite. Writes are
serialized by an asyncio lock, which gives the same compare-and-set
semantics the SQL store gets from conditional UPDATEs. Reads yield to the
event loop first so concurrent callers interleave the way they would
against a remote database.
"""

import asyncio
import uuid
from collections import defaultdict
from dataclasses import replace
from datetime import datetime, timezone
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
from ridepool.domain.cascade import held_seats, plan_cascade, summarize
from ridepool.domain.errors import (
    DuplicateBookingError,
    IdempotencyKeyInUseError,
    NotFoundError,
    SeatsUnavailableError,
    TransientStoreConflict,
)
from ridepool.domain.models import OPEN_BOOKING_STATUSES, TERMINAL_RIDE_STATUSES
from ridepool.stores.interfaces import LocationStore, PaymentStore, RideStore


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MemoryRideStore(RideStore):
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._rides: dict[str, Ride] = {}
        self._bookings: dict[str, Booking] = {}

    async def create_ride(self, ride: Ride) -> Ride:
        now = _now()
        stored = replace(ride, created_at=ride.created_at or now, updated_at=now)
        async with self._lock:
            self._rides[stored.id] = stored
        return stored

    async def get_ride(self, ride_id: str) -> Ride | None:
        await asyncio.sleep(0)
        return self._rides.get(ride_id)

    async def get_booking(self, booking_id: str) -> Booking | None:
        await asyncio.sleep(0)
        return self._bookings.get(booking_id)

    async def list_bookings(
        self, ride_id: str, statuses: Iterable[BookingStatus] | None = None
    ) -> list[Booking]:
        await asyncio.sleep(0)
        wanted = set(statuses) if statuses is not None else None
        return [
            b for b in self._bookings.values()
            if b.ride_id == ride_id and (wanted is None or b.status in wanted)
        ]

    async def find_open_booking(self, ride_id: str, user_id: str) -> Booking | None:
        await asyncio.sleep(0)
        return self._open_booking(ride_id, user_id)

    def _open_booking(self, ride_id: str, user_id: str) -> Booking | None:
        for booking in self._bookings.values():
            if (
                booking.ride_id == ride_id
                and booking.user_id == user_id
                and booking.status in OPEN_BOOKING_STATUSES
            ):
                return booking
        return None

    def _require_ride(self, ride_id: str) -> Ride:
        ride = self._rides.get(ride_id)
        if ride is None:
            raise NotFoundError("Ride", ride_id)
        return ride

    def _require_booking(self, booking_id: str) -> Booking:
        booking = self._bookings.get(booking_id)
        if booking is None:
            raise NotFoundError("Booking", booking_id)
        return booking

    async def insert_booking_with_hold(self, booking: Booking, observed_available: int) -> Booking:
        async with self._lock:
            ride = self._require_ride(booking.ride_id)
            if ride.status != RideStatus.active or ride.available_seats != observed_available:
                raise TransientStoreConflict(f"ride {ride.id} changed since it was read")
            if self._open_booking(ride.id, booking.user_id) is not None:
                raise DuplicateBookingError(ride.id, booking.user_id)
            remaining = observed_available - booking.seats_booked
            if remaining < 0:
                raise SeatsUnavailableError(booking.seats_booked, observed_available)

            now = _now()
            self._rides[ride.id] = replace(ride, available_seats=remaining, updated_at=now)
            stored = replace(
                booking,
                status=BookingStatus.pending,
                created_at=now,
                updated_at=now,
            )
            self._bookings[stored.id] = stored
            return stored

    async def transition_booking(
        self,
        booking_id: str,
        from_status: BookingStatus,
        to_status: BookingStatus,
        release_seats: bool,
    ) -> Booking:
        async with self._lock:
            booking = self._require_booking(booking_id)
            if booking.status != from_status:
                raise TransientStoreConflict(f"booking {booking_id} is {booking.status.value}")
            now = _now()
            if release_seats:
                ride = self._require_ride(booking.ride_id)
                self._rides[ride.id] = replace(
                    ride,
                    available_seats=min(ride.seats, ride.available_seats + booking.seats_booked),
                    updated_at=now,
                )
            updated = replace(booking, status=to_status, updated_at=now)
            self._bookings[booking_id] = updated
            return updated

    async def set_payment_status(
        self, booking_id: str, from_status: PaymentStatus, to_status: PaymentStatus
    ) -> Booking:
        async with self._lock:
            booking = self._require_booking(booking_id)
            if booking.payment_status != from_status:
                raise TransientStoreConflict(
                    f"booking {booking_id} payment is {booking.payment_status.value}"
                )
            updated = replace(booking, payment_status=to_status, updated_at=_now())
            self._bookings[booking_id] = updated
            return updated

    async def set_seat_count(self, ride_id: str, observed: Ride, new_seats: int) -> Ride:
        async with self._lock:
            ride = self._require_ride(ride_id)
            if (ride.status, ride.seats, ride.available_seats) != (
                observed.status, observed.seats, observed.available_seats
            ):
                raise TransientStoreConflict(f"ride {ride_id} changed since it was read")
            held = ride.seats - ride.available_seats
            if new_seats < held:
                raise SeatsUnavailableError(held, new_seats)
            updated = replace(
                ride, seats=new_seats, available_seats=new_seats - held, updated_at=_now()
            )
            self._rides[ride_id] = updated
            return updated

    async def transition_ride(
        self,
        ride_id: str,
        from_status: RideStatus,
        to_status: RideStatus,
        refund_paid: bool,
    ) -> tuple[Ride, CascadeResult]:
        async with self._lock:
            ride = self._require_ride(ride_id)
            if ride.status != from_status:
                raise TransientStoreConflict(f"ride {ride_id} is {ride.status.value}")
            self._rides[ride_id] = replace(ride, status=to_status, updated_at=_now())
            result = self._cascade(ride_id, refund_paid)
            return self._rides[ride_id], result

    async def apply_cascade(self, ride_id: str, refund_paid: bool) -> CascadeResult:
        async with self._lock:
            self._require_ride(ride_id)
            return self._cascade(ride_id, refund_paid)

    def _cascade(self, ride_id: str, refund_paid: bool) -> CascadeResult:
        ride = self._rides[ride_id]
        bookings = {b.id: b for b in self._bookings.values() if b.ride_id == ride_id}
        changes = plan_cascade(ride.status, bookings.values(), refund_paid)
        if not changes:
            return CascadeResult()
        now = _now()
        for change in changes:
            self._bookings[change.booking_id] = replace(
                bookings[change.booking_id],
                status=change.status,
                payment_status=change.payment_status,
                updated_at=now,
            )
        remaining = [b for b in self._bookings.values() if b.ride_id == ride_id]
        self._rides[ride_id] = replace(
            ride, available_seats=ride.seats - held_seats(remaining), updated_at=now
        )
        return summarize(changes, bookings)

    async def list_elapsed_active_rides(self, now: datetime) -> list[Ride]:
        await asyncio.sleep(0)
        return [
            r for r in self._rides.values()
            if r.status == RideStatus.active and r.departure_time < now
        ]

    async def list_rides_pending_cascade(self) -> list[Ride]:
        await asyncio.sleep(0)
        open_rides = {
            b.ride_id for b in self._bookings.values() if b.status in OPEN_BOOKING_STATUSES
        }
        return [
            r for r in self._rides.values()
            if r.id in open_rides and r.status in TERMINAL_RIDE_STATUSES
        ]


class MemoryLocationStore(LocationStore):
    def __init__(self) -> None:
        self._records: dict[str, dict[str, LiveLocation]] = defaultdict(dict)
        self._sessions: dict[str, dict[str, str]] = defaultdict(dict)
        self._watchers: dict[str, set[asyncio.Queue]] = defaultdict(set)

    def _notify(self, ride_id: str) -> None:
        for queue in list(self._watchers.get(ride_id, ())):
            # Watchers re-read the full snapshot, so one queued wakeup is enough.
            if queue.empty():
                queue.put_nowait(None)

    async def upsert_if_session(self, location: LiveLocation, session_id: str) -> bool:
        # No await between the check and the write
        if self._sessions.get(location.ride_id, {}).get(location.user_id) != session_id:
            return False
        self._records[location.ride_id][location.user_id] = location
        self._notify(location.ride_id)
        return True

    async def delete(self, ride_id: str, user_id: str) -> None:
        records = self._records.get(ride_id)
        if records and records.pop(user_id, None) is not None:
            self._notify(ride_id)

    async def snapshot(self, ride_id: str) -> list[LiveLocation]:
        return list(self._records.get(ride_id, {}).values())

    async def watch(self, ride_id: str) -> AsyncIterator[list[LiveLocation]]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        self._watchers[ride_id].add(queue)
        try:
            yield await self.snapshot(ride_id)
            while True:
                await queue.get()
                yield await self.snapshot(ride_id)
        finally:
            self._watchers[ride_id].discard(queue)

    async def open_session(self, ride_id: str, user_id: str) -> str:
        session_id = uuid.uuid4().hex
        self._sessions[ride_id][user_id] = session_id
        return session_id

    async def current_session(self, ride_id: str, user_id: str) -> str | None:
        return self._sessions.get(ride_id, {}).get(user_id)

    async def close_session(self, ride_id: str, user_id: str) -> None:
        self._sessions.get(ride_id, {}).pop(user_id, None)

    async def clear_ride(self, ride_id: str) -> None:
        self._sessions.pop(ride_id, None)
        if self._records.pop(ride_id, None):
            self._notify(ride_id)

    async def live_ride_ids(self) -> list[str]:
        return sorted(
            {rid for rid, recs in self._records.items() if recs}
            | {rid for rid, sess in self._sessions.items() if sess}
        )


class MemoryPaymentStore(PaymentStore):
    def __init__(self) -> None:
        self._payments: dict[str, PaymentRecord] = {}

    async def save_payment(self, payment: PaymentRecord) -> PaymentRecord:
        if payment.idempotency_key is not None:
            holder = await self.find_by_idempotency_key(payment.user_id, payment.idempotency_key)
            if holder is not None and holder.id != payment.id:
                raise IdempotencyKeyInUseError(payment.idempotency_key)
        existing = self._payments.get(payment.id)
        stored = replace(
            payment,
            created_at=existing.created_at if existing else (payment.created_at or _now()),
        )
        self._payments[stored.id] = stored
        return stored

    async def list_payments(self, booking_id: str) -> list[PaymentRecord]:
        return [p for p in self._payments.values() if p.booking_id == booking_id]

    async def find_by_idempotency_key(self, user_id: str, key: str) -> PaymentRecord | None:
        for payment in self._payments.values():
            if payment.user_id == user_id and payment.idempotency_key == key:
                return payment
        return None
