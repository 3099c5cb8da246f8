"""
PSP payment adapter and the pay-for-booking flow.

Amounts are charged in the smallest currency unit (paise for INR). Without a
configured PSP key the adapter simulates a successful charge so local and
test environments work offline.
"""
import asyncio
import logging
import uuid
from dataclasses import replace
from decimal import Decimal

import httpx

from ridepool.config import get_settings
from ridepool.domain import Booking, BookingStatus, PaymentRecord, PaymentStatus
from ridepool.domain.errors import (
    IdempotencyKeyInUseError,
    InvalidRequestError,
    InvalidStateError,
    NotAuthorizedError,
    NotFoundError,
)
from ridepool.services.payment_gate import PaymentGate
from ridepool.stores.interfaces import PaymentStore, RideStore

logger = logging.getLogger(__name__)
settings = get_settings()

PSP_ATTEMPTS = 3


class PSPError(Exception):
    pass


async def charge(
    user_id: str,
    amount: Decimal,
    payment_method: str,
    idempotency_key: str,
) -> dict:
    """
    Sends payment to PSP with up to 3 attempts (exponential backoff).
    Returns: {"psp_ref": str | None, "status": "SUCCESS"/"FAILED"}
    """
    for attempt in range(1, PSP_ATTEMPTS + 1):
        try:
            result = await _call_psp(user_id, amount, payment_method, idempotency_key)
            logger.info("PSP charge success: ref=%s amount=%s", result["psp_ref"], amount)
            return result
        except PSPError as e:
            if attempt == PSP_ATTEMPTS:
                logger.error("PSP charge failed after %d attempts: %s", PSP_ATTEMPTS, e)
                break
            logger.warning("PSP charge attempt %d failed: %s", attempt, e)
            await asyncio.sleep(2 ** attempt)

    return {"psp_ref": None, "status": "FAILED"}


async def _call_psp(user_id: str, amount: Decimal, payment_method: str, idempotency_key: str) -> dict:
    if amount <= 0:
        raise PSPError("Amount must be positive")

    if not settings.psp_api_key:
        return {
            "psp_ref": f"PSP-{uuid.uuid4().hex[:12].upper()}",
            "status": "SUCCESS",
        }

    try:
        async with httpx.AsyncClient(timeout=settings.psp_timeout_seconds) as client:
            resp = await client.post(
                f"{settings.psp_base_url}/charges",
                headers={
                    "Authorization": f"Bearer {settings.psp_api_key}",
                    "Idempotency-Key": idempotency_key,
                },
                json={
                    "amount": int(amount * 100),
                    "currency": settings.currency,
                    "source": payment_method,
                    "notes": {"user_id": user_id},
                },
            )
    except httpx.HTTPError as e:
        raise PSPError(f"PSP unreachable: {e}") from e

    if resp.status_code >= 400:
        raise PSPError(f"PSP error {resp.status_code}: {resp.text}")
    return {"psp_ref": resp.json()["id"], "status": "SUCCESS"}


def amount_due(booking: Booking, price_per_seat: Decimal) -> Decimal:
    return (price_per_seat * booking.seats_booked).quantize(Decimal("0.01"))


class PaymentService:
    """Charges a passenger for their confirmed booking and records the result."""

    def __init__(self, rides: RideStore, payments: PaymentStore, gate: PaymentGate) -> None:
        self._rides = rides
        self._payments = payments
        self._gate = gate

    async def pay(
        self,
        booking_id: str,
        user_id: str,
        amount: Decimal,
        payment_method: str,
        idempotency_key: str | None = None,
    ) -> tuple[PaymentRecord, Booking]:
        booking = await self._rides.get_booking(booking_id)
        if booking is None:
            raise NotFoundError("Booking", booking_id)
        if booking.user_id != user_id:
            raise NotAuthorizedError("You can only pay for your own booking")

        if idempotency_key is not None:
            earlier = await self._payments.find_by_idempotency_key(user_id, idempotency_key)
            if earlier is not None:
                if earlier.booking_id != booking_id:
                    raise IdempotencyKeyInUseError(idempotency_key)
                return earlier, booking

        if booking.payment_status == PaymentStatus.paid:
            for payment in reversed(await self._payments.list_payments(booking_id)):
                if payment.status == "SUCCESS":
                    return payment, booking
        if booking.status != BookingStatus.confirmed:
            raise InvalidStateError("Payment opens once the driver confirms your booking")

        ride = await self._rides.get_ride(booking.ride_id)
        if ride is None:
            raise NotFoundError("Ride", booking.ride_id)

        # Server-side amount validation (never trust client)
        server_amount = amount_due(booking, ride.price_per_seat)
        if abs(amount - server_amount) > Decimal("0.01"):
            raise InvalidRequestError(f"Amount mismatch. Expected {server_amount}")

        payment = await self._payments.save_payment(
            PaymentRecord(
                id=str(uuid.uuid4()),
                booking_id=booking_id,
                user_id=user_id,
                amount=server_amount,
                currency=settings.currency,
                idempotency_key=idempotency_key,
            )
        )
        if server_amount == 0:
            # Free seats settle without a gateway round trip
            psp_result = {"psp_ref": None, "status": "SUCCESS"}
        else:
            psp_result = await charge(
                user_id=user_id,
                amount=server_amount,
                payment_method=payment_method,
                idempotency_key=idempotency_key or payment.id,
            )
        payment = await self._payments.save_payment(
            replace(payment, status=psp_result["status"], psp_ref=psp_result.get("psp_ref"))
        )

        if payment.status == "SUCCESS":
            booking = await self._gate.mark_paid(booking_id)
        else:
            logger.warning("Payment %s for booking=%s failed", payment.id, booking_id)
        return payment, booking
