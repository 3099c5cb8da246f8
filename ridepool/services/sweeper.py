"""
Completion sweeper.

Rides whose departure time has passed but were never started are completed
by the system. Each pass also repairs terminal rides whose booking cascade
did not land, and drops live-location records left behind by rides that are
no longer live. Every step is idempotent, so overlapping passes (several
replicas, or a manual run next to the scheduled one) are safe.
"""
import asyncio
import logging
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from ridepool.domain import RideStatus
from ridepool.domain.errors import InvalidStateError, StoreConflictError, TerminalStateError
from ridepool.domain.models import LIVE_RIDE_STATUSES, utcnow
from ridepool.services.lifecycle import RideLifecycle
from ridepool.stores.interfaces import LocationStore, RideStore

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    completed: list[str] = field(default_factory=list)
    repaired: list[str] = field(default_factory=list)
    cleared: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class CompletionSweeper:
    def __init__(
        self,
        store: RideStore,
        lifecycle: RideLifecycle,
        locations: LocationStore | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._lifecycle = lifecycle
        self._locations = locations
        self._clock = clock

    async def run_once(self, now: datetime | None = None) -> SweepReport:
        now = now or self._clock()
        report = SweepReport()

        for ride in await self._store.list_elapsed_active_rides(now):
            try:
                await self._lifecycle.system_transition(ride.id, RideStatus.completed, now=now)
            except (TerminalStateError, InvalidStateError, StoreConflictError) as exc:
                # Another sweep or the driver got there first
                logger.info("Skipping ride=%s: %s", ride.id, exc)
                continue
            except Exception as exc:
                logger.error("Could not complete ride=%s: %s", ride.id, exc, exc_info=True)
                report.failed.append(ride.id)
                continue
            report.completed.append(ride.id)

        for ride in await self._store.list_rides_pending_cascade():
            try:
                result = await self._store.apply_cascade(ride.id, self._lifecycle.refund_paid_on_cancel)
            except Exception as exc:
                logger.error("Could not repair cascade for ride=%s: %s", ride.id, exc, exc_info=True)
                report.failed.append(ride.id)
                continue
            if result.touched:
                logger.warning(
                    "Repaired cascade for %s ride=%s (%d booking(s))",
                    ride.status.value, ride.id, len(result.completed) + len(result.cancelled),
                )
                report.repaired.append(ride.id)

        if self._locations is not None:
            for ride_id in await self._locations.live_ride_ids():
                try:
                    ride = await self._store.get_ride(ride_id)
                    if ride is not None and ride.status in LIVE_RIDE_STATUSES:
                        continue
                    await self._locations.clear_ride(ride_id)
                except Exception as exc:
                    logger.error("Could not clear locations of ride=%s: %s", ride_id, exc, exc_info=True)
                    report.failed.append(ride_id)
                    continue
                report.cleared.append(ride_id)

        logger.info(
            "Sweep done: completed=%d repaired=%d cleared=%d failed=%d",
            len(report.completed), len(report.repaired), len(report.cleared), len(report.failed),
        )
        return report


async def run_forever(
    interval_seconds: float,
    sweeper_scope: Callable[[], AbstractAsyncContextManager[CompletionSweeper]],
) -> None:
    """Run a sweep every `interval_seconds` until cancelled.

    `sweeper_scope` yields a sweeper bound to fresh store sessions per pass.
    A failed pass is logged and the loop carries on.
    """
    while True:
        try:
            async with sweeper_scope() as sweeper:
                await sweeper.run_once()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Completion sweep failed: %s", exc, exc_info=True)
        await asyncio.sleep(interval_seconds)
