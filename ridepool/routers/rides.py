"""
Rides router: create, read, status transitions, seat count and the start gate.
"""
import logging

from fastapi import APIRouter, Depends, status

from ridepool.dependencies import Engine, get_engine
from ridepool.middleware.auth import get_current_user_id
from ridepool.schemas.schemas import (
    CanStartResponse,
    RideCreateRequest,
    RideResponse,
    SeatCountRequest,
    TransitionRequest,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/rides", tags=["Rides"])


@router.post("", status_code=status.HTTP_201_CREATED, response_model=RideResponse)
async def create_ride(
    payload: RideCreateRequest,
    engine: Engine = Depends(get_engine),
    driver_id: str = Depends(get_current_user_id),
):
    ride = await engine.lifecycle.create_ride(
        driver_id=driver_id,
        origin=payload.origin,
        destination=payload.destination,
        departure_time=payload.departure_time,
        seats=payload.seats,
        price_per_seat=payload.price_per_seat,
        event_id=payload.event_id,
    )
    return RideResponse.from_domain(ride)


@router.get("/{ride_id}", response_model=RideResponse)
async def get_ride(
    ride_id: str,
    engine: Engine = Depends(get_engine),
    _user_id: str = Depends(get_current_user_id),
):
    return RideResponse.from_domain(await engine.lifecycle.get_ride(ride_id))


@router.post("/{ride_id}/transition", response_model=RideResponse)
async def transition_ride(
    ride_id: str,
    payload: TransitionRequest,
    engine: Engine = Depends(get_engine),
    user_id: str = Depends(get_current_user_id),
):
    """
    Driver moves the ride through its lifecycle:
    - in_progress requires at least one confirmed passenger who has paid (402 otherwise)
    - completed / cancelled settle every booking on the ride
    """
    ride = await engine.lifecycle.transition(ride_id, payload.status, caller_id=user_id)
    return RideResponse.from_domain(ride)


@router.patch("/{ride_id}/seats", response_model=RideResponse)
async def update_seat_count(
    ride_id: str,
    payload: SeatCountRequest,
    engine: Engine = Depends(get_engine),
    user_id: str = Depends(get_current_user_id),
):
    ride = await engine.ledger.update_seat_count(ride_id, user_id, payload.seats)
    return RideResponse.from_domain(ride)


@router.get("/{ride_id}/can-start", response_model=CanStartResponse)
async def can_start(
    ride_id: str,
    engine: Engine = Depends(get_engine),
    _user_id: str = Depends(get_current_user_id),
):
    return CanStartResponse(ride_id=ride_id, can_start=await engine.gate.can_start(ride_id))
