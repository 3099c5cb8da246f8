from ridepool.domain.models import (
    Booking,
    BookingStatus,
    CascadeResult,
    LiveLocation,
    Participant,
    PaymentRecord,
    PaymentStatus,
    PositionSample,
    Ride,
    RideStatus,
    Role,
)

__all__ = [
    "Ride",
    "Booking",
    "CascadeResult",
    "LiveLocation",
    "Participant",
    "PaymentRecord",
    "PositionSample",
    "RideStatus",
    "BookingStatus",
    "PaymentStatus",
    "Role",
]
