from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, field_validator

from ridepool.domain import (
    Booking,
    BookingStatus,
    LiveLocation,
    Participant,
    PaymentRecord,
    PaymentStatus,
    Ride,
    RideStatus,
    Role,
)
from ridepool.services.seat_ledger import Decision


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class PaymentMethodEnum(str, Enum):
    card = "card"
    upi = "upi"
    wallet = "wallet"


class ChargeStatusEnum(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


# ---------------------------------------------------------------------------
# Ride schemas
# ---------------------------------------------------------------------------

class RideCreateRequest(BaseModel):
    origin: str = Field(..., min_length=1, max_length=255)
    destination: str = Field(..., min_length=1, max_length=255)
    departure_time: datetime
    seats: int = Field(..., ge=1, le=12)
    price_per_seat: Decimal = Field(default=Decimal("0"), ge=0)
    event_id: Optional[str] = None

    @field_validator("departure_time")
    @classmethod
    def require_timezone(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("departure_time must include a timezone offset")
        return value


class RideResponse(BaseModel):
    id: str
    driver_id: str
    event_id: Optional[str] = None
    origin: str
    destination: str
    departure_time: datetime
    seats: int
    available_seats: int
    price_per_seat: float
    status: RideStatus
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, ride: Ride) -> "RideResponse":
        return cls(
            id=ride.id,
            driver_id=ride.driver_id,
            event_id=ride.event_id,
            origin=ride.origin,
            destination=ride.destination,
            departure_time=ride.departure_time,
            seats=ride.seats,
            available_seats=ride.available_seats,
            price_per_seat=float(ride.price_per_seat),
            status=ride.status,
            created_at=ride.created_at,
            updated_at=ride.updated_at,
        )


class TransitionRequest(BaseModel):
    status: RideStatus


class SeatCountRequest(BaseModel):
    seats: int = Field(..., ge=1, le=12)


class CanStartResponse(BaseModel):
    ride_id: str
    can_start: bool


# ---------------------------------------------------------------------------
# Booking schemas
# ---------------------------------------------------------------------------

class BookingRequest(BaseModel):
    seats: int = Field(default=1, ge=1)


class ResolveRequest(BaseModel):
    decision: Decision


class BookingResponse(BaseModel):
    id: str
    ride_id: str
    user_id: str
    seats_booked: int
    status: BookingStatus
    payment_status: PaymentStatus
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, booking: Booking) -> "BookingResponse":
        return cls(
            id=booking.id,
            ride_id=booking.ride_id,
            user_id=booking.user_id,
            seats_booked=booking.seats_booked,
            status=booking.status,
            payment_status=booking.payment_status,
            created_at=booking.created_at,
            updated_at=booking.updated_at,
        )


# ---------------------------------------------------------------------------
# Payment schemas
# ---------------------------------------------------------------------------

class PaymentRequest(BaseModel):
    booking_id: str
    payment_method: PaymentMethodEnum
    amount: Decimal = Field(..., ge=0)


class PaymentCallbackRequest(BaseModel):
    booking_id: str
    psp_ref: str


class PaymentResponse(BaseModel):
    payment_id: str
    booking_id: str
    status: ChargeStatusEnum
    psp_ref: Optional[str] = None
    amount: float
    currency: str
    payment_status: PaymentStatus

    @classmethod
    def from_domain(cls, payment: PaymentRecord, booking: Booking) -> "PaymentResponse":
        return cls(
            payment_id=payment.id,
            booking_id=payment.booking_id,
            status=payment.status,
            psp_ref=payment.psp_ref,
            amount=float(payment.amount),
            currency=payment.currency,
            payment_status=booking.payment_status,
        )


# ---------------------------------------------------------------------------
# Live location schemas
# ---------------------------------------------------------------------------

class LocationSampleRequest(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    timestamp: Optional[datetime] = None


class LiveLocationResponse(BaseModel):
    user_id: str
    role: Role
    lat: float
    lng: float
    updated_at: datetime

    @classmethod
    def from_domain(cls, location: LiveLocation) -> "LiveLocationResponse":
        return cls(
            user_id=location.user_id,
            role=location.role,
            lat=location.latitude,
            lng=location.longitude,
            updated_at=location.updated_at,
        )


class ParticipantResponse(BaseModel):
    user_id: str
    role: Role
    is_sharing: bool
    location: Optional[LiveLocationResponse] = None

    @classmethod
    def from_domain(cls, participant: Participant) -> "ParticipantResponse":
        return cls(
            user_id=participant.user_id,
            role=participant.role,
            is_sharing=participant.is_sharing,
            location=(
                LiveLocationResponse.from_domain(participant.location)
                if participant.location
                else None
            ),
        )
