from ridepool.models.ride import Ride
from ridepool.models.booking import Booking
from ridepool.models.payment import Payment

__all__ = ["Ride", "Booking", "Payment"]
