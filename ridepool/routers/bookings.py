"""
Bookings router: seat requests, driver decisions and passenger lists.
"""
import logging

from fastapi import APIRouter, Depends, Header, Request, status

from ridepool.dependencies import Engine, get_engine
from ridepool.middleware.auth import get_current_user_id
from ridepool.middleware.idempotency import check_idempotency, store_idempotency_result
from ridepool.schemas.schemas import BookingRequest, BookingResponse, ResolveRequest

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1", tags=["Bookings"])


@router.post(
    "/rides/{ride_id}/bookings",
    status_code=status.HTTP_201_CREATED,
    response_model=BookingResponse,
)
async def request_booking(
    ride_id: str,
    payload: BookingRequest,
    request: Request,
    engine: Engine = Depends(get_engine),
    user_id: str = Depends(get_current_user_id),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    """
    Request seats on a ride. The seats are held immediately; the booking
    stays pending until the driver confirms or rejects it.
    """
    if idempotency_key:
        cached = await check_idempotency(request, engine.idempotency, user_id)
        if cached:
            return cached

    booking = await engine.ledger.request_booking(ride_id, user_id, payload.seats)
    response = BookingResponse.from_domain(booking)

    if idempotency_key:
        await store_idempotency_result(
            engine.idempotency, user_id, idempotency_key, 201, response.model_dump(mode="json")
        )
    return response


@router.get("/rides/{ride_id}/bookings/pending", response_model=list[BookingResponse])
async def list_pending(
    ride_id: str,
    engine: Engine = Depends(get_engine),
    user_id: str = Depends(get_current_user_id),
):
    bookings = await engine.ledger.list_pending(ride_id, user_id)
    return [BookingResponse.from_domain(b) for b in bookings]


@router.get("/rides/{ride_id}/passengers", response_model=list[BookingResponse])
async def list_passengers(
    ride_id: str,
    engine: Engine = Depends(get_engine),
    _user_id: str = Depends(get_current_user_id),
):
    bookings = await engine.ledger.list_passengers(ride_id)
    return [BookingResponse.from_domain(b) for b in bookings]


@router.get("/rides/{ride_id}/bookings/me", response_model=BookingResponse)
async def get_my_booking(
    ride_id: str,
    engine: Engine = Depends(get_engine),
    user_id: str = Depends(get_current_user_id),
):
    return BookingResponse.from_domain(await engine.ledger.get_user_booking(ride_id, user_id))


@router.post("/bookings/{booking_id}/resolve", response_model=BookingResponse)
async def resolve_request(
    booking_id: str,
    payload: ResolveRequest,
    engine: Engine = Depends(get_engine),
    user_id: str = Depends(get_current_user_id),
):
    booking = await engine.ledger.resolve_request(booking_id, payload.decision, caller_id=user_id)
    return BookingResponse.from_domain(booking)
