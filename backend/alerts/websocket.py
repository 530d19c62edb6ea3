"""
WebSocket endpoint for real-time notification delivery.

Connect: ws://host/ws/notifications?token=<jwt>&since=<iso timestamp>

On connect the client receives one catch-up batch of notifications created
after `since`, then live pushes from the fanout. No polling.

Messages sent to client:
    {"type": "notification", "payload": {...}}
    {"type": "heartbeat", "payload": {}}
"""

import asyncio
import json
from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alerts.fanout import NotificationFanout, get_fanout, serialize_notification
from api.deps import DEV_USER_ID, get_session_factory, user_id_from_claims
from core.config import get_settings
from db.store import fetch_since

settings = get_settings()
logger = structlog.get_logger()
router = APIRouter()

HEARTBEAT_SECONDS = 30
CATCH_UP_PAGE_SIZE = 200


async def authenticate_ws(token: str) -> dict | None:
    """Validate JWT token from WebSocket query param."""
    if settings.debug:
        return {"sub": DEV_USER_ID, "role": "admin"}
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
        )
        return payload
    except JWTError:
        return None


def _parse_since(since: str | None) -> datetime | None:
    if not since:
        return None
    try:
        parsed = datetime.fromisoformat(since)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


async def _catch_up(
    websocket: WebSocket,
    session_factory: async_sessionmaker[AsyncSession],
    recipient_id,
    since: datetime | None,
) -> int:
    """
    Replay missed notifications, oldest first. With `since` every page after
    it is sent; without it only the newest page is.
    """
    sent = 0
    async with session_factory() as db:
        while True:
            page = await fetch_since(db, recipient_id, since, limit=CATCH_UP_PAGE_SIZE, offset=sent)
            for notification in page:
                await websocket.send_text(json.dumps(serialize_notification(notification)))
            sent += len(page)
            if since is None or len(page) < CATCH_UP_PAGE_SIZE:
                return sent


@router.websocket("/ws/notifications")
async def websocket_notifications(
    websocket: WebSocket,
    token: str = Query(""),
    since: str | None = Query(None),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    fanout: NotificationFanout = Depends(get_fanout),
):
    user = await authenticate_ws(token)
    recipient_id = user_id_from_claims(user) if user else None
    if recipient_id is None:
        await websocket.close(code=4001, reason="Unauthorized")
        return

    await websocket.accept()

    # Subscribe before the catch-up read so nothing created in between is missed
    async def forward(message: dict):
        await websocket.send_text(json.dumps(message))

    subscription = await fanout.subscribe(recipient_id, forward)

    async def send_heartbeat():
        while True:
            await asyncio.sleep(HEARTBEAT_SECONDS)
            try:
                await websocket.send_json({"type": "heartbeat", "payload": {}})
            except Exception:  # noqa: BLE001
                break

    async def receive_until_closed():
        while True:
            await websocket.receive_text()

    try:
        replayed = await _catch_up(websocket, session_factory, recipient_id, _parse_since(since))
        logger.debug("ws.caught_up", recipient_id=str(recipient_id), replayed=replayed)
        tasks = [
            asyncio.create_task(subscription.wait_closed()),
            asyncio.create_task(send_heartbeat()),
            asyncio.create_task(receive_until_closed()),
        ]
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            if not task.cancelled() and isinstance(task.exception(), WebSocketDisconnect):
                logger.debug("ws.disconnected", recipient_id=str(recipient_id))
    except WebSocketDisconnect:
        pass
    finally:
        await subscription.close()
