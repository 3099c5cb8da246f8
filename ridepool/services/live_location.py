"""
Live location hub.

Participants (the driver and confirmed passengers) share positions while the
ride is active or in progress. Each participant has a single record keyed by
(ride_id, user_id); every sample overwrites it, so late or reordered samples
only matter until the next one lands. Presence is simply "a record exists".

Flow:
  1. start_sharing opens a sharing session in the location store
  2. samples from a PositionSource (or publish()) upsert the record, only
     while that session is still the open one
  3. stop_sharing, the source ending, or the ride leaving the live states
     closes the session and deletes the record
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator, Callable
from datetime import datetime

from ridepool.domain import (
    BookingStatus,
    LiveLocation,
    Participant,
    PositionSample,
    Ride,
    Role,
)
from ridepool.domain.errors import InvalidStateError, NotAuthorizedError, NotFoundError
from ridepool.domain.models import LIVE_RIDE_STATUSES, utcnow
from ridepool.stores.interfaces import LocationStore, RideStore

logger = logging.getLogger(__name__)


class PositionSource(ABC):
    """Produces position samples for one participant until it is exhausted."""

    @abstractmethod
    def __aiter__(self) -> AsyncIterator[PositionSample]:
        ...


class QueuePositionSource(PositionSource):
    """A source fed by push(); close() ends the stream."""

    _CLOSED = object()

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()

    def push(self, sample: PositionSample) -> None:
        self._queue.put_nowait(sample)

    def close(self) -> None:
        self._queue.put_nowait(self._CLOSED)

    async def __aiter__(self) -> AsyncIterator[PositionSample]:
        while True:
            item = await self._queue.get()
            if item is self._CLOSED:
                return
            yield item


class SharingTasks:
    """Process-local registry of the tasks pumping PositionSources."""

    def __init__(self) -> None:
        self._tasks: dict[tuple[str, str], asyncio.Task] = {}

    def add(self, ride_id: str, user_id: str, task: asyncio.Task) -> None:
        self.cancel(ride_id, user_id)
        key = (ride_id, user_id)
        self._tasks[key] = task
        task.add_done_callback(lambda t: self._forget(key, t))

    def get(self, ride_id: str, user_id: str) -> asyncio.Task | None:
        return self._tasks.get((ride_id, user_id))

    def cancel(self, ride_id: str, user_id: str) -> bool:
        task = self._tasks.pop((ride_id, user_id), None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def cancel_ride(self, ride_id: str) -> int:
        keys = [key for key in self._tasks if key[0] == ride_id]
        return sum(self.cancel(*key) for key in keys)

    def _forget(self, key: tuple[str, str], task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]
        if not task.cancelled() and task.exception() is not None:
            logger.error("Location sharing for %s/%s failed: %s", key[0], key[1], task.exception())


class LiveLocationHub:
    def __init__(
        self,
        rides: RideStore,
        locations: LocationStore,
        tasks: SharingTasks | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._rides = rides
        self._locations = locations
        self._tasks = tasks or SharingTasks()
        self._clock = clock

    async def _participant_role(self, ride_id: str, user_id: str) -> tuple[Ride, Role]:
        ride = await self._rides.get_ride(ride_id)
        if ride is None:
            raise NotFoundError("Ride", ride_id)
        if user_id == ride.driver_id:
            return ride, Role.driver
        booking = await self._rides.find_open_booking(ride_id, user_id)
        if booking is None or booking.status != BookingStatus.confirmed:
            raise NotAuthorizedError("Only the driver and confirmed passengers can see this ride live")
        return ride, Role.passenger

    @staticmethod
    def _require_live(ride: Ride) -> None:
        if ride.status not in LIVE_RIDE_STATUSES:
            raise InvalidStateError(
                "Location sharing is only available while the ride is active or in progress"
            )

    async def start_sharing(
        self,
        ride_id: str,
        user_id: str,
        role: Role,
        source: PositionSource | None = None,
    ) -> str:
        """Open a sharing session; returns its id.

        With a source, its samples are written in a background task until the
        source ends or stop_sharing is called.
        """
        ride, actual_role = await self._participant_role(ride_id, user_id)
        if role != actual_role:
            raise NotAuthorizedError(f"You cannot share your location as {role.value} on this ride")
        self._require_live(ride)

        session_id = await self._locations.open_session(ride_id, user_id)
        if source is not None:
            task = asyncio.create_task(self._pump(ride_id, user_id, role, session_id, source))
            self._tasks.add(ride_id, user_id, task)
        logger.info("User %s started sharing on ride=%s as %s", user_id, ride_id, role.value)
        return session_id

    def sharing_task(self, ride_id: str, user_id: str) -> asyncio.Task | None:
        return self._tasks.get(ride_id, user_id)

    async def _pump(
        self,
        ride_id: str,
        user_id: str,
        role: Role,
        session_id: str,
        source: PositionSource,
    ) -> None:
        try:
            async for sample in source:
                # Another session (or stop_sharing from elsewhere) took over.
                if await self._write(ride_id, user_id, role, session_id, sample) is None:
                    break
        finally:
            if await self._locations.current_session(ride_id, user_id) == session_id:
                await self._locations.close_session(ride_id, user_id)
                await self._locations.delete(ride_id, user_id)
                logger.info("Sharing source ended for user=%s on ride=%s", user_id, ride_id)

    async def publish(self, ride_id: str, user_id: str, sample: PositionSample) -> LiveLocation:
        """Write one sample for a participant with an open sharing session."""
        ride, role = await self._participant_role(ride_id, user_id)
        self._require_live(ride)
        session_id = await self._locations.current_session(ride_id, user_id)
        location = None
        if session_id is not None:
            location = await self._write(ride_id, user_id, role, session_id, sample)
        if location is None:
            raise InvalidStateError("Start sharing before publishing positions")
        return location

    async def _write(
        self,
        ride_id: str,
        user_id: str,
        role: Role,
        session_id: str,
        sample: PositionSample,
    ) -> LiveLocation | None:
        """Store the sample unless the session has been closed or replaced."""
        location = LiveLocation(
            ride_id=ride_id,
            user_id=user_id,
            latitude=sample.latitude,
            longitude=sample.longitude,
            role=role,
            updated_at=sample.recorded_at or self._clock(),
        )
        if not await self._locations.upsert_if_session(location, session_id):
            return None
        return location

    async def stop_sharing(self, ride_id: str, user_id: str) -> None:
        """Idempotent; safe to call from any session, including after a restart."""
        await self._locations.close_session(ride_id, user_id)
        await self._locations.delete(ride_id, user_id)
        self._tasks.cancel(ride_id, user_id)
        logger.info("User %s stopped sharing on ride=%s", user_id, ride_id)

    async def subscribe(self, ride_id: str, viewer_id: str) -> AsyncIterator[list[LiveLocation]]:
        """Authorize the viewer and return the ride's snapshot feed.

        The feed yields the current records first, then a fresh snapshot after
        every change. Close it (aclose) to unsubscribe.
        """
        await self._participant_role(ride_id, viewer_id)
        return self._locations.watch(ride_id)

    async def participants(self, ride_id: str, viewer_id: str) -> list[Participant]:
        ride, _ = await self._participant_role(ride_id, viewer_id)
        records = {loc.user_id: loc for loc in await self._locations.snapshot(ride_id)}
        passengers = await self._rides.list_bookings(ride_id, [BookingStatus.confirmed])

        people = [(ride.driver_id, Role.driver)] + [(b.user_id, Role.passenger) for b in passengers]
        return [
            Participant(
                user_id=user_id,
                role=role,
                is_sharing=user_id in records,
                location=records.get(user_id),
            )
            for user_id, role in people
        ]

    async def clear_ride(self, ride_id: str) -> None:
        cancelled = self._tasks.cancel_ride(ride_id)
        await self._locations.clear_ride(ride_id)
        if cancelled:
            logger.info("Stopped %d sharing task(s) for ride=%s", cancelled, ride_id)
