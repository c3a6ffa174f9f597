"""WebSocket relay for room notifications.

Clients connect to `/api/realtime/ws?token=<access token>&rooms=a,b` and
receive every `{"event", "data"}` message published to the rooms they may
join. Rooms the user is not allowed in are skipped.
"""
from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status
from fastapi.concurrency import run_in_threadpool
from fastapi.websockets import WebSocketState

from cbt.connections.redis import get_async_redis
from cbt.models.base import reference_id
from cbt.models.exam import Exam
from cbt.models.session import Session
from cbt.models.user import User
from cbt.services.auth import InvalidToken, user_from_token
from cbt.services.lookup import object_id
from cbt.services.notifications import channel_for


logger = logging.getLogger(__name__)

router = APIRouter()

SESSION_PREFIX = "session_"
EXAM_PREFIX = "exam_"
MONITOR_PREFIX = "monitor_exam_"


def _exam(exam_id: str) -> Exam | None:
    oid = object_id(exam_id)
    return Exam.objects(id=oid).first() if oid else None


def can_join(user: User, room: str) -> bool:
    """Students join their own session room and exam rooms of their school; teachers their own exams."""
    if room.startswith(MONITOR_PREFIX):
        exam = _exam(room[len(MONITOR_PREFIX):])
        return bool(exam and exam.is_owned_by(user))

    if room.startswith(EXAM_PREFIX):
        exam = _exam(room[len(EXAM_PREFIX):])
        return bool(exam and reference_id(exam, "school") == reference_id(user, "school"))

    if room.startswith(SESSION_PREFIX):
        oid = object_id(room[len(SESSION_PREFIX):])
        session: Session | None = Session.objects(id=oid).first() if oid else None
        if not session:
            return False
        if session.user_id == user.id:
            return True
        exam = _exam(str(session.exam_id))
        return bool(exam and exam.is_owned_by(user))

    return False


def authorized_rooms(user: User, rooms: list[str]) -> list[str]:
    return [room for room in rooms if can_join(user, room)]


@router.websocket("/ws")
async def room_relay(websocket: WebSocket, token: str = Query(...), rooms: str = Query(...)):
    try:
        user = await run_in_threadpool(user_from_token, token)
    except InvalidToken:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    requested = [room.strip() for room in rooms.split(",") if room.strip()]
    allowed = await run_in_threadpool(authorized_rooms, user, requested)
    if not allowed:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    client = get_async_redis()
    pubsub = client.pubsub()
    await pubsub.subscribe(*[channel_for(room) for room in allowed])
    await websocket.send_json({"event": "joined", "data": {"rooms": allowed}})
    logger.info("User %s joined rooms %s", user.id, allowed)

    async def forward() -> None:
        async for message in pubsub.listen():
            if message["type"] == "message":
                await websocket.send_text(message["data"])

    async def receive() -> None:
        # Inbound frames are ignored; receiving only detects the disconnect
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.info("User %s left rooms %s", user.id, allowed)

    forwarder = asyncio.create_task(forward())
    receiver = asyncio.create_task(receive())
    try:
        done, _ = await asyncio.wait({forwarder, receiver}, return_when=asyncio.FIRST_COMPLETED)
        if forwarder in done:
            error = forwarder.exception()
            if error is not None:
                logger.error("Relay for user %s failed: %r", user.id, error)
            if websocket.client_state == WebSocketState.CONNECTED:
                await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
    finally:
        forwarder.cancel()
        receiver.cancel()
        await pubsub.unsubscribe()
        await pubsub.aclose()
        await client.aclose()
