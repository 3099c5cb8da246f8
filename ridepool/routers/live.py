"""
Live location router.

WebSockets authenticate with ?token=<JWT> because browsers cannot set an
Authorization header on the upgrade request.

  WS     /v1/rides/{id}/live/share?token=&role=  stream own positions
  WS     /v1/rides/{id}/live/feed?token=         receive location snapshots
  POST   /v1/rides/{id}/live/me?role=            open a sharing session (REST clients)
  PUT    /v1/rides/{id}/live/me                  publish one position
  DELETE /v1/rides/{id}/live/me                  stop sharing
  GET    /v1/rides/{id}/live/participants        driver + confirmed passengers
"""
import asyncio
import logging
from contextlib import aclosing
from typing import AsyncIterator

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError
from starlette.websockets import WebSocketState

from ridepool.dependencies import Engine, get_engine
from ridepool.domain import PositionSample, Role
from ridepool.domain.errors import EngineError
from ridepool.middleware.auth import get_current_user_id, user_id_from_token
from ridepool.schemas.schemas import (
    LiveLocationResponse,
    LocationSampleRequest,
    ParticipantResponse,
)
from ridepool.services.live_location import PositionSource

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/rides", tags=["Live location"])


class WebSocketPositionSource(PositionSource):
    """Samples sent by the client as {"lat", "lng", "timestamp"?} JSON frames."""

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket

    async def __aiter__(self) -> AsyncIterator[PositionSample]:
        while True:
            try:
                data = await self._websocket.receive_json()
            except WebSocketDisconnect:
                return
            try:
                sample = LocationSampleRequest.model_validate(data)
            except ValidationError as exc:
                await self._websocket.send_json({"error": "invalid_sample", "detail": exc.errors()})
                continue
            yield PositionSample(sample.lat, sample.lng, sample.timestamp)


async def _close(websocket: WebSocket, code: int = status.WS_1000_NORMAL_CLOSURE) -> None:
    if websocket.client_state == WebSocketState.CONNECTED:
        await websocket.close(code=code)


async def _reject(websocket: WebSocket, exc: EngineError) -> None:
    await websocket.send_json({"detail": exc.message, "code": exc.code.value})
    await websocket.close(code=status.WS_1008_POLICY_VIOLATION)


@router.websocket("/{ride_id}/live/share")
async def share_location(
    websocket: WebSocket,
    ride_id: str,
    token: str = Query(...),
    role: Role = Query(...),
    engine: Engine = Depends(get_engine),
):
    user_id = user_id_from_token(token)
    if user_id is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    try:
        await engine.hub.start_sharing(ride_id, user_id, role, WebSocketPositionSource(websocket))
    except EngineError as exc:
        await _reject(websocket, exc)
        return

    task = engine.hub.sharing_task(ride_id, user_id)
    try:
        # Ends on disconnect, stop_sharing, or the ride leaving the live states
        if task is not None:
            await asyncio.wait({task})
    finally:
        if task is not None:
            task.cancel()
        await _close(websocket)


async def _until_disconnect(websocket: WebSocket) -> None:
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return


@router.websocket("/{ride_id}/live/feed")
async def location_feed(
    websocket: WebSocket,
    ride_id: str,
    token: str = Query(...),
    engine: Engine = Depends(get_engine),
):
    user_id = user_id_from_token(token)
    if user_id is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    try:
        feed = await engine.hub.subscribe(ride_id, user_id)
    except EngineError as exc:
        await _reject(websocket, exc)
        return

    async def forward() -> None:
        async with aclosing(feed):
            async for snapshot in feed:
                await websocket.send_json(
                    [LiveLocationResponse.from_domain(loc).model_dump(mode="json") for loc in snapshot]
                )

    forwarder = asyncio.create_task(forward())
    listener = asyncio.create_task(_until_disconnect(websocket))
    try:
        done, _ = await asyncio.wait({forwarder, listener}, return_when=asyncio.FIRST_COMPLETED)
        if forwarder in done and not forwarder.cancelled() and forwarder.exception():
            logger.error("Location feed for ride=%s failed: %s", ride_id, forwarder.exception())
    finally:
        forwarder.cancel()
        listener.cancel()
        await _close(websocket)


@router.post("/{ride_id}/live/me", status_code=status.HTTP_201_CREATED)
async def start_sharing(
    ride_id: str,
    role: Role = Query(...),
    engine: Engine = Depends(get_engine),
    user_id: str = Depends(get_current_user_id),
):
    session_id = await engine.hub.start_sharing(ride_id, user_id, role)
    return {"ride_id": ride_id, "session_id": session_id}


@router.put("/{ride_id}/live/me", response_model=LiveLocationResponse)
async def publish_location(
    ride_id: str,
    payload: LocationSampleRequest,
    engine: Engine = Depends(get_engine),
    user_id: str = Depends(get_current_user_id),
):
    location = await engine.hub.publish(
        ride_id, user_id, PositionSample(payload.lat, payload.lng, payload.timestamp)
    )
    return LiveLocationResponse.from_domain(location)


@router.delete("/{ride_id}/live/me", status_code=status.HTTP_204_NO_CONTENT)
async def stop_sharing(
    ride_id: str,
    engine: Engine = Depends(get_engine),
    user_id: str = Depends(get_current_user_id),
):
    await engine.hub.stop_sharing(ride_id, user_id)


@router.get("/{ride_id}/live/participants", response_model=list[ParticipantResponse])
async def participants(
    ride_id: str,
    engine: Engine = Depends(get_engine),
    user_id: str = Depends(get_current_user_id),
):
    return [ParticipantResponse.from_domain(p) for p in await engine.hub.participants(ride_id, user_id)]
