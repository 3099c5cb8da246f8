"""
SQLAlchemy (async, PostgreSQL) implementation of RideStore.

Compare-and-set is a conditional UPDATE whose WHERE clause repeats what the
caller observed; a rowcount of zero means another writer got there first.
Cascades lock the ride's booking rows (SELECT ... FOR UPDATE) and commit
together with the ride status write.
"""
import functools
import logging
from datetime import datetime
from decimal import Decimal
from typing import Iterable

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ridepool.domain import (
    Booking,
    BookingStatus,
    CascadeResult,
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
from ridepool.models.booking import Booking as BookingRow
from ridepool.models.payment import Payment as PaymentRow
from ridepool.models.ride import Ride as RideRow
from ridepool.stores.interfaces import PaymentStore, RideStore

logger = logging.getLogger(__name__)

_OPEN = [s.value for s in OPEN_BOOKING_STATUSES]
_TERMINAL = [s.value for s in TERMINAL_RIDE_STATUSES]

# serialization_failure, deadlock_detected
RETRYABLE_SQLSTATES = {"40001", "40P01"}


def _sqlstate(exc: DBAPIError) -> str | None:
    return getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)


def lock_conflicts_are_transient(method):
    """Roll back on database errors; deadlocks and serialization failures become TransientStoreConflict."""

    @functools.wraps(method)
    async def wrapper(self, *args, **kwargs):
        try:
            return await method(self, *args, **kwargs)
        except DBAPIError as exc:
            await self._db.rollback()
            if _sqlstate(exc) not in RETRYABLE_SQLSTATES:
                raise
            logger.warning("Lock conflict in %s: %s", method.__name__, _sqlstate(exc))
            raise TransientStoreConflict(f"{method.__name__} lost a lock conflict") from exc

    return wrapper


def _to_ride(row: RideRow) -> Ride:
    return Ride(
        id=row.id,
        driver_id=row.driver_id,
        origin=row.origin,
        destination=row.destination,
        departure_time=row.departure_time,
        seats=row.seats,
        available_seats=row.available_seats,
        price_per_seat=Decimal(row.price_per_seat or 0),
        status=RideStatus(row.status),
        event_id=row.event_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _to_booking(row: BookingRow) -> Booking:
    return Booking(
        id=row.id,
        ride_id=row.ride_id,
        user_id=row.user_id,
        seats_booked=row.seats_booked,
        status=BookingStatus(row.status),
        payment_status=PaymentStatus(row.payment_status),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SqlRideStore(RideStore):
    """PostgreSQL-backed ride store using one AsyncSession per request."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _ride_row(self, ride_id: str, for_update: bool = False) -> RideRow | None:
        stmt = select(RideRow).where(RideRow.id == ride_id).execution_options(populate_existing=True)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def _booking_row(self, booking_id: str) -> BookingRow | None:
        result = await self._db.execute(
            select(BookingRow)
            .where(BookingRow.id == booking_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_ride(self, ride_id: str) -> Ride | None:
        row = await self._ride_row(ride_id)
        return _to_ride(row) if row else None

    async def get_booking(self, booking_id: str) -> Booking | None:
        row = await self._booking_row(booking_id)
        return _to_booking(row) if row else None

    async def list_bookings(
        self, ride_id: str, statuses: Iterable[BookingStatus] | None = None
    ) -> list[Booking]:
        stmt = select(BookingRow).where(BookingRow.ride_id == ride_id)
        if statuses is not None:
            stmt = stmt.where(BookingRow.status.in_([s.value for s in statuses]))
        stmt = stmt.order_by(BookingRow.created_at.asc()).execution_options(populate_existing=True)
        result = await self._db.execute(stmt)
        return [_to_booking(row) for row in result.scalars().all()]

    async def find_open_booking(self, ride_id: str, user_id: str) -> Booking | None:
        result = await self._db.execute(
            select(BookingRow)
            .where(
                BookingRow.ride_id == ride_id,
                BookingRow.user_id == user_id,
                BookingRow.status.in_(_OPEN),
            )
            .execution_options(populate_existing=True)
        )
        row = result.scalars().first()
        return _to_booking(row) if row else None

    async def list_elapsed_active_rides(self, now: datetime) -> list[Ride]:
        result = await self._db.execute(
            select(RideRow).where(
                RideRow.status == RideStatus.active.value,
                RideRow.departure_time < now,
            )
        )
        return [_to_ride(row) for row in result.scalars().all()]

    async def list_rides_pending_cascade(self) -> list[Ride]:
        result = await self._db.execute(
            select(RideRow)
            .join(BookingRow, BookingRow.ride_id == RideRow.id)
            .where(RideRow.status.in_(_TERMINAL), BookingRow.status.in_(_OPEN))
            .distinct()
        )
        return [_to_ride(row) for row in result.scalars().all()]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_ride(self, ride: Ride) -> Ride:
        row = RideRow(
            id=ride.id,
            driver_id=ride.driver_id,
            event_id=ride.event_id,
            origin=ride.origin,
            destination=ride.destination,
            departure_time=ride.departure_time,
            seats=ride.seats,
            available_seats=ride.available_seats,
            price_per_seat=ride.price_per_seat,
            status=ride.status.value,
        )
        self._db.add(row)
        await self._db.commit()
        await self._db.refresh(row)
        return _to_ride(row)

    @lock_conflicts_are_transient
    async def insert_booking_with_hold(self, booking: Booking, observed_available: int) -> Booking:
        if booking.seats_booked > observed_available:
            raise SeatsUnavailableError(booking.seats_booked, observed_available)

        result = await self._db.execute(
            update(RideRow)
            .where(
                RideRow.id == booking.ride_id,
                RideRow.status == RideStatus.active.value,
                RideRow.available_seats == observed_available,
            )
            .values(available_seats=observed_available - booking.seats_booked)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self._db.rollback()
            raise TransientStoreConflict(f"ride {booking.ride_id} changed since it was read")

        row = BookingRow(
            id=booking.id,
            ride_id=booking.ride_id,
            user_id=booking.user_id,
            seats_booked=booking.seats_booked,
            status=BookingStatus.pending.value,
            payment_status=PaymentStatus.unpaid.value,
        )
        self._db.add(row)
        try:
            await self._db.flush()
        except IntegrityError:
            # Partial unique index on (ride_id, user_id) for open bookings
            await self._db.rollback()
            raise DuplicateBookingError(booking.ride_id, booking.user_id)
        await self._db.commit()
        await self._db.refresh(row)
        return _to_booking(row)

    @lock_conflicts_are_transient
    async def transition_booking(
        self,
        booking_id: str,
        from_status: BookingStatus,
        to_status: BookingStatus,
        release_seats: bool,
    ) -> Booking:
        row = await self._booking_row(booking_id)
        if row is None:
            raise NotFoundError("Booking", booking_id)

        # Ride row first, the same lock order as ride transitions and cascades
        await self._ride_row(row.ride_id, for_update=True)

        result = await self._db.execute(
            update(BookingRow)
            .where(BookingRow.id == booking_id, BookingRow.status == from_status.value)
            .values(status=to_status.value)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self._db.rollback()
            raise TransientStoreConflict(f"booking {booking_id} is no longer {from_status.value}")

        if release_seats:
            await self._db.execute(
                update(RideRow)
                .where(RideRow.id == row.ride_id)
                .values(available_seats=RideRow.available_seats + row.seats_booked)
                .execution_options(synchronize_session=False)
            )
        await self._db.commit()
        return await self.get_booking(booking_id)  # type: ignore[return-value]

    async def set_payment_status(
        self, booking_id: str, from_status: PaymentStatus, to_status: PaymentStatus
    ) -> Booking:
        result = await self._db.execute(
            update(BookingRow)
            .where(BookingRow.id == booking_id, BookingRow.payment_status == from_status.value)
            .values(payment_status=to_status.value)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self._db.rollback()
            if await self._booking_row(booking_id) is None:
                raise NotFoundError("Booking", booking_id)
            raise TransientStoreConflict(f"booking {booking_id} payment is no longer {from_status.value}")
        await self._db.commit()
        return await self.get_booking(booking_id)  # type: ignore[return-value]

    @lock_conflicts_are_transient
    async def set_seat_count(self, ride_id: str, observed: Ride, new_seats: int) -> Ride:
        held = observed.seats - observed.available_seats
        if new_seats < held:
            raise SeatsUnavailableError(held, new_seats)
        result = await self._db.execute(
            update(RideRow)
            .where(
                RideRow.id == ride_id,
                RideRow.status == observed.status.value,
                RideRow.seats == observed.seats,
                RideRow.available_seats == observed.available_seats,
            )
            .values(seats=new_seats, available_seats=new_seats - held)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self._db.rollback()
            raise TransientStoreConflict(f"ride {ride_id} changed since it was read")
        await self._db.commit()
        return await self.get_ride(ride_id)  # type: ignore[return-value]

    @lock_conflicts_are_transient
    async def transition_ride(
        self,
        ride_id: str,
        from_status: RideStatus,
        to_status: RideStatus,
        refund_paid: bool,
    ) -> tuple[Ride, CascadeResult]:
        result = await self._db.execute(
            update(RideRow)
            .where(RideRow.id == ride_id, RideRow.status == from_status.value)
            .values(status=to_status.value)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self._db.rollback()
            if await self._ride_row(ride_id) is None:
                raise NotFoundError("Ride", ride_id)
            raise TransientStoreConflict(f"ride {ride_id} is no longer {from_status.value}")

        cascade = await self._cascade(ride_id, refund_paid)
        await self._db.commit()
        ride = await self.get_ride(ride_id)
        return ride, cascade  # type: ignore[return-value]

    @lock_conflicts_are_transient
    async def apply_cascade(self, ride_id: str, refund_paid: bool) -> CascadeResult:
        cascade = await self._cascade(ride_id, refund_paid)
        await self._db.commit()
        return cascade

    async def _cascade(self, ride_id: str, refund_paid: bool) -> CascadeResult:
        """Apply the cascade inside the caller's transaction."""
        ride_row = await self._ride_row(ride_id, for_update=True)
        if ride_row is None:
            raise NotFoundError("Ride", ride_id)

        result = await self._db.execute(
            select(BookingRow)
            .where(BookingRow.ride_id == ride_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        rows = {row.id: row for row in result.scalars().all()}
        before = {row_id: _to_booking(row) for row_id, row in rows.items()}

        changes = plan_cascade(RideStatus(ride_row.status), before.values(), refund_paid)
        if not changes:
            return CascadeResult()

        for change in changes:
            row = rows[change.booking_id]
            row.status = change.status.value
            row.payment_status = change.payment_status.value
        await self._db.flush()

        after = [_to_booking(row) for row in rows.values()]
        ride_row.available_seats = ride_row.seats - held_seats(after)
        await self._db.flush()

        logger.info("Cascade ride=%s applied to %d booking(s)", ride_id, len(changes))
        return summarize(changes, before)


def _to_payment(row: PaymentRow) -> PaymentRecord:
    return PaymentRecord(
        id=row.id,
        booking_id=row.booking_id,
        user_id=row.user_id,
        amount=Decimal(row.amount),
        currency=row.currency,
        status=row.status,
        psp_ref=row.psp_ref,
        idempotency_key=row.idempotency_key,
        created_at=row.created_at,
    )


class SqlPaymentStore(PaymentStore):
    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def save_payment(self, payment: PaymentRecord) -> PaymentRecord:
        row = await self._db.get(PaymentRow, payment.id)
        if row is None:
            row = PaymentRow(id=payment.id, booking_id=payment.booking_id, user_id=payment.user_id)
            self._db.add(row)
        row.amount = payment.amount
        row.currency = payment.currency
        row.status = payment.status
        row.psp_ref = payment.psp_ref
        row.idempotency_key = payment.idempotency_key
        try:
            await self._db.commit()
        except IntegrityError:
            # uq_payments_user_idempotency_key
            await self._db.rollback()
            raise IdempotencyKeyInUseError(payment.idempotency_key)
        await self._db.refresh(row)
        return _to_payment(row)

    async def list_payments(self, booking_id: str) -> list[PaymentRecord]:
        result = await self._db.execute(
            select(PaymentRow)
            .where(PaymentRow.booking_id == booking_id)
            .order_by(PaymentRow.created_at.asc())
        )
        return [_to_payment(row) for row in result.scalars().all()]

    async def find_by_idempotency_key(self, user_id: str, key: str) -> PaymentRecord | None:
        result = await self._db.execute(
            select(PaymentRow).where(
                PaymentRow.user_id == user_id, PaymentRow.idempotency_key == key
            )
        )
        row = result.scalar_one_or_none()
        return _to_payment(row) if row else None
