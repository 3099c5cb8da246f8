"""
Integration tests for the full ride lifecycle over HTTP.
Uses pytest-asyncio + HTTPX AsyncClient against the app with the in-memory engine.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from httpx import AsyncClient, ASGITransport

from ridepool.config import get_settings
from ridepool.dependencies import build_engine, get_engine
from ridepool.main import app
from ridepool.middleware.auth import create_access_token
from ridepool.middleware.idempotency import MemoryIdempotencyCache
from ridepool.services.live_location import SharingTasks
from ridepool.services.notifications import MemoryChangeFeed
from ridepool.stores.memory_store import MemoryLocationStore, MemoryPaymentStore, MemoryRideStore

DRIVER_ID = "driver-test-001"


def _headers(user_id: str) -> dict:
    return {
        "Authorization": f"Bearer {create_access_token({'sub': user_id})}",
        "Content-Type": "application/json",
    }


@pytest.fixture
def engine():
    engine = build_engine(
        MemoryRideStore(),
        MemoryPaymentStore(),
        MemoryLocationStore(),
        MemoryChangeFeed(),
        MemoryIdempotencyCache(),
        tasks=SharingTasks(),
    )
    app.dependency_overrides[get_engine] = lambda: engine
    yield engine
    app.dependency_overrides.clear()


@pytest.fixture
def driver_headers():
    return _headers(DRIVER_ID)


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


async def _create_ride(c: AsyncClient, headers: dict, seats: int = 1, price: str = "250.00") -> dict:
    departure = datetime.now(timezone.utc) + timedelta(days=1)
    resp = await c.post("/v1/rides", headers=headers, json={
        "origin": "Indiranagar",
        "destination": "Palace Grounds",
        "departure_time": departure.isoformat(),
        "seats": seats,
        "price_per_seat": price,
        "event_id": "event-001",
    })
    assert resp.status_code == 201, resp.text
    return resp.json()


@pytest.mark.asyncio
class TestRideAPI:
    async def test_health_check(self, monkeypatch):
        monkeypatch.setattr(get_settings(), "store_backend", "memory")
        async with _client() as c:
            resp = await c.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    async def test_health_reports_redis_outage(self, monkeypatch):
        monkeypatch.setattr(get_settings(), "store_backend", "sql")
        monkeypatch.setattr("ridepool.main.ping_redis", AsyncMock(return_value=False))
        async with _client() as c:
            resp = await c.get("/health")
        assert resp.json() == {"status": "degraded", "backend": "sql", "redis": False}

    async def test_create_ride_missing_auth(self, engine):
        async with _client() as c:
            resp = await c.post("/v1/rides", json={
                "origin": "A", "destination": "B",
                "departure_time": "2030-01-01T10:00:00+05:30", "seats": 2,
            })
        assert resp.status_code == 401  # No auth header

    async def test_create_ride_needs_timezone(self, engine, driver_headers):
        async with _client() as c:
            resp = await c.post("/v1/rides", headers=driver_headers, json={
                "origin": "A", "destination": "B",
                "departure_time": "2030-01-01T10:00:00",  # no offset
                "seats": 2,
            })
        assert resp.status_code == 422

    async def test_create_ride_in_the_past(self, engine, driver_headers):
        async with _client() as c:
            resp = await c.post("/v1/rides", headers=driver_headers, json={
                "origin": "A", "destination": "B",
                "departure_time": "2020-01-01T10:00:00+00:00", "seats": 2,
            })
        assert resp.status_code == 400
        assert resp.json()["code"] == "INVALID_REQUEST"

    async def test_create_and_get_ride(self, engine, driver_headers):
        async with _client() as c:
            ride = await _create_ride(c, driver_headers, seats=3)
            resp = await c.get(f"/v1/rides/{ride['id']}", headers=_headers("rider-a"))
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "active"
        assert body["available_seats"] == 3
        assert body["driver_id"] == DRIVER_ID

    async def test_get_nonexistent_ride(self, engine, driver_headers):
        async with _client() as c:
            resp = await c.get("/v1/rides/nonexistent-uuid", headers=driver_headers)
        assert resp.status_code == 404
        assert resp.json()["code"] == "NOT_FOUND"

    async def test_seat_count_update(self, engine, driver_headers):
        async with _client() as c:
            ride = await _create_ride(c, driver_headers, seats=2)
            resp = await c.patch(f"/v1/rides/{ride['id']}/seats", headers=driver_headers, json={"seats": 4})
            other = await c.patch(
                f"/v1/rides/{ride['id']}/seats", headers=_headers("rider-a"), json={"seats": 1}
            )
        assert resp.status_code == 200
        assert resp.json()["available_seats"] == 4
        assert other.status_code == 403


@pytest.mark.asyncio
class TestBookingFlow:
    async def test_last_seat_then_reject_then_rebook(self, engine, driver_headers):
        async with _client() as c:
            ride = await _create_ride(c, driver_headers, seats=1)
            url = f"/v1/rides/{ride['id']}/bookings"

            a = await c.post(url, headers=_headers("rider-a"), json={"seats": 1})
            b = await c.post(url, headers=_headers("rider-b"), json={"seats": 1})
            assert a.status_code == 201
            assert b.status_code == 409
            assert b.json()["code"] == "SEATS_UNAVAILABLE"

            pending = await c.get(f"{url}/pending", headers=driver_headers)
            assert [p["user_id"] for p in pending.json()] == ["rider-a"]

            rejected = await c.post(
                f"/v1/bookings/{a.json()['id']}/resolve",
                headers=driver_headers, json={"decision": "reject"},
            )
            assert rejected.json()["status"] == "cancelled"

            c_resp = await c.post(url, headers=_headers("rider-c"), json={"seats": 1})
            assert c_resp.status_code == 201
            ride_now = await c.get(f"/v1/rides/{ride['id']}", headers=driver_headers)
            assert ride_now.json()["available_seats"] == 0

    async def test_duplicate_booking(self, engine, driver_headers):
        async with _client() as c:
            ride = await _create_ride(c, driver_headers, seats=3)
            url = f"/v1/rides/{ride['id']}/bookings"
            await c.post(url, headers=_headers("rider-a"), json={"seats": 1})
            resp = await c.post(url, headers=_headers("rider-a"), json={"seats": 1})
        assert resp.status_code == 409
        assert resp.json()["code"] == "DUPLICATE_BOOKING"

    async def test_booking_request_replay(self, engine, driver_headers):
        async with _client() as c:
            ride = await _create_ride(c, driver_headers, seats=3)
            url = f"/v1/rides/{ride['id']}/bookings"
            headers = {**_headers("rider-a"), "Idempotency-Key": "book-1"}

            first = await c.post(url, headers=headers, json={"seats": 1})
            second = await c.post(url, headers=headers, json={"seats": 1})

        assert first.status_code == second.status_code == 201
        assert second.headers["X-Idempotency-Replay"] == "true"
        assert second.json()["id"] == first.json()["id"]

    async def test_non_driver_cannot_resolve(self, engine, driver_headers):
        async with _client() as c:
            ride = await _create_ride(c, driver_headers, seats=2)
            booking = await c.post(
                f"/v1/rides/{ride['id']}/bookings", headers=_headers("rider-a"), json={"seats": 1}
            )
            resp = await c.post(
                f"/v1/bookings/{booking.json()['id']}/resolve",
                headers=_headers("rider-a"), json={"decision": "confirm"},
            )
        assert resp.status_code == 403
        assert resp.json()["code"] == "NOT_AUTHORIZED"

    async def test_my_booking(self, engine, driver_headers):
        async with _client() as c:
            ride = await _create_ride(c, driver_headers, seats=2)
            await c.post(f"/v1/rides/{ride['id']}/bookings", headers=_headers("rider-a"), json={"seats": 2})
            mine = await c.get(f"/v1/rides/{ride['id']}/bookings/me", headers=_headers("rider-a"))
            none = await c.get(f"/v1/rides/{ride['id']}/bookings/me", headers=_headers("rider-b"))
        assert mine.json()["seats_booked"] == 2
        assert none.status_code == 404


@pytest.mark.asyncio
class TestLifecycleFlow:
    async def test_pay_start_complete(self, engine, driver_headers):
        rider = _headers("rider-a")
        async with _client() as c:
            ride = await _create_ride(c, driver_headers, seats=2, price="300.00")
            ride_id = ride["id"]
            booking = (await c.post(f"/v1/rides/{ride_id}/bookings", headers=rider, json={"seats": 1})).json()
            await c.post(f"/v1/bookings/{booking['id']}/resolve", headers=driver_headers, json={"decision": "confirm"})

            # Start is gated on payment
            gate = await c.get(f"/v1/rides/{ride_id}/can-start", headers=driver_headers)
            assert gate.json()["can_start"] is False
            start = await c.post(f"/v1/rides/{ride_id}/transition", headers=driver_headers, json={"status": "in_progress"})
            assert start.status_code == 402
            assert start.json()["code"] == "PAYMENT_REQUIRED"

            # Wrong amount
            bad = await c.post("/v1/payments", headers=rider, json={
                "booking_id": booking["id"], "payment_method": "upi", "amount": "10.00",
            })
            assert bad.status_code == 400

            pay_headers = {**rider, "Idempotency-Key": "pay-1"}
            paid = await c.post("/v1/payments", headers=pay_headers, json={
                "booking_id": booking["id"], "payment_method": "upi", "amount": "300.00",
            })
            assert paid.status_code == 200
            assert paid.json()["status"] == "SUCCESS"
            assert paid.json()["payment_status"] == "paid"

            replay = await c.post("/v1/payments", headers=pay_headers, json={
                "booking_id": booking["id"], "payment_method": "upi", "amount": "300.00",
            })
            assert replay.headers["X-Idempotency-Replay"] == "true"
            assert replay.json()["payment_id"] == paid.json()["payment_id"]

            start = await c.post(f"/v1/rides/{ride_id}/transition", headers=driver_headers, json={"status": "in_progress"})
            assert start.json()["status"] == "in_progress"

            done = await c.post(f"/v1/rides/{ride_id}/transition", headers=driver_headers, json={"status": "completed"})
            assert done.json()["status"] == "completed"

            again = await c.post(f"/v1/rides/{ride_id}/transition", headers=driver_headers, json={"status": "cancelled"})
            assert again.status_code == 409
            assert again.json()["code"] == "TERMINAL_STATE"

        settled = await engine.rides.get_booking(booking["id"])
        assert settled.status.value == "completed"

    async def test_free_ride_can_start(self, engine, driver_headers):
        rider = _headers("rider-a")
        async with _client() as c:
            ride = await _create_ride(c, driver_headers, price="0")
            booking = (await c.post(f"/v1/rides/{ride['id']}/bookings", headers=rider, json={"seats": 1})).json()
            await c.post(f"/v1/bookings/{booking['id']}/resolve", headers=driver_headers, json={"decision": "confirm"})

            paid = await c.post("/v1/payments", headers=rider, json={
                "booking_id": booking["id"], "payment_method": "wallet", "amount": "0",
            })
            start = await c.post(
                f"/v1/rides/{ride['id']}/transition", headers=driver_headers, json={"status": "in_progress"}
            )

        assert paid.status_code == 200
        assert paid.json()["payment_status"] == "paid"
        assert start.json()["status"] == "in_progress"

    async def test_riders_may_share_an_idempotency_key(self, engine, driver_headers):
        async with _client() as c:
            ride = await _create_ride(c, driver_headers, seats=2, price="120.00")
            bookings = {}
            for rider_id in ("rider-a", "rider-b"):
                booking = (await c.post(
                    f"/v1/rides/{ride['id']}/bookings", headers=_headers(rider_id), json={"seats": 1}
                )).json()
                await c.post(
                    f"/v1/bookings/{booking['id']}/resolve",
                    headers=driver_headers, json={"decision": "confirm"},
                )
                bookings[rider_id] = booking["id"]

            responses = [
                await c.post(
                    "/v1/payments",
                    headers={**_headers(rider_id), "Idempotency-Key": "checkout"},
                    json={"booking_id": booking_id, "payment_method": "upi", "amount": "120.00"},
                )
                for rider_id, booking_id in bookings.items()
            ]

        assert [r.status_code for r in responses] == [200, 200]
        assert responses[0].json()["payment_id"] != responses[1].json()["payment_id"]
        assert "X-Idempotency-Replay" not in responses[1].headers

    async def test_only_driver_transitions(self, engine, driver_headers):
        async with _client() as c:
            ride = await _create_ride(c, driver_headers)
            resp = await c.post(
                f"/v1/rides/{ride['id']}/transition",
                headers=_headers("rider-a"), json={"status": "cancelled"},
            )
        assert resp.status_code == 403

    async def test_gateway_callback(self, engine, driver_headers):
        async with _client() as c:
            ride = await _create_ride(c, driver_headers)
            booking = (await c.post(
                f"/v1/rides/{ride['id']}/bookings", headers=_headers("rider-a"), json={"seats": 1}
            )).json()
            body = {"booking_id": booking["id"], "psp_ref": "pay_abc"}

            forged = await c.post("/v1/payments/callback", json=body, headers={"X-Webhook-Secret": "nope"})
            ok = await c.post(
                "/v1/payments/callback", json=body,
                headers={"X-Webhook-Secret": get_settings().psp_webhook_secret},
            )
        assert forged.status_code == 401
        assert ok.status_code == 200
        assert ok.json()["payment_status"] == "paid"


@pytest.mark.asyncio
class TestLiveLocationAPI:
    async def test_share_publish_stop(self, engine, driver_headers):
        async with _client() as c:
            ride = await _create_ride(c, driver_headers)
            base = f"/v1/rides/{ride['id']}/live"

            early = await c.put(f"{base}/me", headers=driver_headers, json={"lat": 12.97, "lng": 77.59})
            assert early.status_code == 409

            started = await c.post(f"{base}/me", headers=driver_headers, params={"role": "driver"})
            assert started.status_code == 201

            sample = await c.put(f"{base}/me", headers=driver_headers, json={"lat": 12.97, "lng": 77.59})
            assert sample.status_code == 200
            assert sample.json()["role"] == "driver"

            people = await c.get(f"{base}/participants", headers=driver_headers)
            assert people.json() == [{
                "user_id": DRIVER_ID,
                "role": "driver",
                "is_sharing": True,
                "location": sample.json(),
            }]

            stopped = await c.delete(f"{base}/me", headers=driver_headers)
            assert stopped.status_code == 204
            people = await c.get(f"{base}/participants", headers=driver_headers)
            assert people.json()[0]["is_sharing"] is False

    async def test_outsider_cannot_see_participants(self, engine, driver_headers):
        async with _client() as c:
            ride = await _create_ride(c, driver_headers)
            resp = await c.get(f"/v1/rides/{ride['id']}/live/participants", headers=_headers("stranger"))
        assert resp.status_code == 403

    async def test_invalid_coordinates(self, engine, driver_headers):
        async with _client() as c:
            ride = await _create_ride(c, driver_headers)
            resp = await c.put(
                f"/v1/rides/{ride['id']}/live/me", headers=driver_headers, json={"lat": 999, "lng": 77.59}
            )
        assert resp.status_code == 422
