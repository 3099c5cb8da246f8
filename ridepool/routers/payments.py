"""
Payments router: POST /v1/payments and the gateway callback.
"""
import hmac
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from ridepool.config import get_settings
from ridepool.dependencies import Engine, get_engine
from ridepool.middleware.auth import get_current_user_id
from ridepool.middleware.idempotency import check_idempotency, store_idempotency_result
from ridepool.schemas.schemas import (
    BookingResponse,
    PaymentCallbackRequest,
    PaymentRequest,
    PaymentResponse,
)

settings = get_settings()
logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/payments", tags=["Payments"])


@router.post("", response_model=PaymentResponse)
async def create_payment(
    payload: PaymentRequest,
    request: Request,
    engine: Engine = Depends(get_engine),
    user_id: str = Depends(get_current_user_id),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    """
    Pay for a confirmed booking.
    - Idempotent: repeated calls with the same key return the same result.
    - Amount must match price_per_seat x seats_booked (no client-side override).
    - A successful charge marks the booking paid, which can unlock the ride start.
    """
    if idempotency_key:
        cached = await check_idempotency(request, engine.idempotency, user_id)
        if cached:
            return cached

    payment, booking = await engine.payments.pay(
        booking_id=payload.booking_id,
        user_id=user_id,
        amount=payload.amount,
        payment_method=payload.payment_method.value,
        idempotency_key=idempotency_key,
    )
    response = PaymentResponse.from_domain(payment, booking)

    if idempotency_key:
        await store_idempotency_result(
            engine.idempotency, user_id, idempotency_key, 200, response.model_dump(mode="json")
        )
    return response


@router.post("/callback", response_model=BookingResponse)
async def payment_callback(
    payload: PaymentCallbackRequest,
    engine: Engine = Depends(get_engine),
    webhook_secret: str | None = Header(default=None, alias="X-Webhook-Secret"),
):
    """Gateway notification that a charge for the booking succeeded."""
    if not webhook_secret or not hmac.compare_digest(webhook_secret, settings.psp_webhook_secret):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook secret")

    booking = await engine.gate.mark_paid(payload.booking_id)
    logger.info("Gateway confirmed payment psp_ref=%s for booking=%s", payload.psp_ref, booking.id)
    return BookingResponse.from_domain(booking)
