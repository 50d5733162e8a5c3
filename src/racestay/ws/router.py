"""WebSocket endpoint with JWT authentication and channel multiplexing."""

import json
import uuid

import jwt
import structlog
from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from racestay.auth.jwt import verify_token
from racestay.config import get_settings
from racestay.database import get_session
from racestay.db.models import Booking
from racestay.ws.manager import is_valid_channel, manager, parse_booking_channel

logger = structlog.get_logger()

router = APIRouter()


async def _is_booking_party(db: AsyncSession, booking_id: int, user_id: int) -> bool:
    result = await db.execute(
        select(Booking.guest_id, Booking.host_id).where(Booking.id == booking_id)
    )
    row = result.one_or_none()
    # Never hold a pooled connection for the lifetime of the socket.
    await db.rollback()
    return row is not None and user_id in (row.guest_id, row.host_id)


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: str = Query(...),
    db: AsyncSession = Depends(get_session),
) -> None:
    """Single WebSocket endpoint carrying the change feed.

    Protocol:
        Client -> Server:
            {"action": "subscribe", "channel": "bookings"}
            {"action": "subscribe", "channel": "messages:42"}
            {"action": "unsubscribe", "channel": "bookings"}
            {"action": "ping"}

        Server -> Client:
            {"channel": "bookings", "data": {"table": ..., "op": ..., "row": {...}}}
            {"type": "pong"}
            {"type": "error", "message": "..."}
            {"type": "subscribed", "channel": "bookings"}
            {"type": "unsubscribed", "channel": "bookings"}
    """
    try:
        user_id = verify_token(token).user_id
    except jwt.InvalidTokenError as e:
        await websocket.close(code=4001, reason=f"Authentication failed: {e}")
        return

    settings = get_settings()
    if manager.user_connection_count(user_id) >= settings.ws_max_connections_per_user:
        await websocket.close(code=4008, reason="Too many connections")
        return

    conn_id = str(uuid.uuid4())
    await manager.connect(websocket, conn_id, user_id)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "message": "Invalid JSON"})
                continue

            action = msg.get("action")
            channel = str(msg.get("channel", ""))

            if action == "subscribe":
                if not is_valid_channel(channel):
                    await websocket.send_json({"type": "error", "message": f"Invalid channel: {channel}"})
                    continue
                booking_id = parse_booking_channel(channel)
                if booking_id is not None and not await _is_booking_party(db, booking_id, user_id):
                    await websocket.send_json({"type": "error", "message": f"Not allowed: {channel}"})
                    continue
                await manager.subscribe(conn_id, channel)
                await websocket.send_json({"type": "subscribed", "channel": channel})

            elif action == "unsubscribe":
                await manager.unsubscribe(conn_id, channel)
                await websocket.send_json({"type": "unsubscribed", "channel": channel})

            elif action == "ping":
                await websocket.send_json({"type": "pong"})

            else:
                await websocket.send_json({"type": "error", "message": f"Unknown action: {action}"})

    except WebSocketDisconnect:
        await manager.disconnect(conn_id)
    except Exception:
        logger.exception("ws_error", conn_id=conn_id)
        await manager.disconnect(conn_id)
