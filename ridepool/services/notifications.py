"""Change notifications for committed ride and booking mutations.

Other parts of the application (chat walls, dashboards) subscribe to these
channels instead of re-fetching after every write. Publishing happens after
commit, so a failed publish is logged and never undoes the mutation.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone

import redis.asyncio as aioredis
from pydantic import BaseModel

from ridepool.domain import Booking, Ride

logger = logging.getLogger(__name__)

# Channel names
CHANNEL_RIDE_CHANGES = "changes:rides"
CHANNEL_BOOKING_CHANGES = "changes:bookings"


class RideChangeMessage(BaseModel):
    """Ride row after a status or seat change."""

    table: str = "rides"
    id: str
    status: str
    seats: int
    available_seats: int
    timestamp: str


class BookingChangeMessage(BaseModel):
    """Booking row after a status or payment change."""

    table: str = "bookings"
    id: str
    ride_id: str
    user_id: str
    status: str
    payment_status: str
    timestamp: str


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def ride_message(ride: Ride) -> RideChangeMessage:
    return RideChangeMessage(
        id=ride.id,
        status=ride.status.value,
        seats=ride.seats,
        available_seats=ride.available_seats,
        timestamp=_timestamp(),
    )


def booking_message(booking: Booking) -> BookingChangeMessage:
    return BookingChangeMessage(
        id=booking.id,
        ride_id=booking.ride_id,
        user_id=booking.user_id,
        status=booking.status.value,
        payment_status=booking.payment_status.value,
        timestamp=_timestamp(),
    )


class ChangeFeed(ABC):
    async def ride_changed(self, ride: Ride) -> None:
        await self.publish(CHANNEL_RIDE_CHANGES, ride_message(ride))

    async def booking_changed(self, booking: Booking) -> None:
        await self.publish(CHANNEL_BOOKING_CHANGES, booking_message(booking))

    @abstractmethod
    async def publish(self, channel: str, message: BaseModel) -> None:
        ...


class RedisChangeFeed(ChangeFeed):
    def __init__(self, redis: aioredis.Redis) -> None:
        self._redis = redis

    async def publish(self, channel: str, message: BaseModel) -> None:
        try:
            await self._redis.publish(channel, message.model_dump_json())
        except aioredis.RedisError as exc:
            logger.error("Failed to publish change on %s: %s", channel, exc)


class MemoryChangeFeed(ChangeFeed):
    """Keeps published messages in order; used by the memory backend and tests."""

    def __init__(self) -> None:
        self.messages: list[tuple[str, BaseModel]] = []

    async def publish(self, channel: str, message: BaseModel) -> None:
        self.messages.append((channel, message))
