"""Chat router providing WebSocket and HTTP endpoints.

This module provides:
    - WebSocket /ws: Authenticated realtime session
    - GET /messages/room/{room}: Paginated room history
    - GET /messages/dm/{user_id}: Paginated DM history with the caller
    - GET /users/online: Presence snapshot

The WebSocket protocol:
    1. Client connects with a token (``?token=``, ``x-auth`` or
       ``Authorization: Bearer``). No valid token -> closed with 1008.
    2. Server sends {type: "connected", user: {id, name, email}}
       and broadcasts {type: "users:online", users: [...]} to everyone.
    3. Client sends {type: <event>, ...}; see chatline.chat.events for the
       event table and error replies.
    4. On disconnect the session's subscriptions are torn down and presence
       is re-announced once the principal has no sessions left.
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, WebSocket, WebSocketDisconnect

from chatline.auth.dependencies import require_principal
from chatline.auth.schemas import Principal
from chatline.errors import PersistenceError, ValidationError

from .events import MESSAGE_ERROR, EventDispatcher
from .gateway import SessionGateway
from .history import HistoryService
from .presence import PresenceTable
from .schemas import direct_payload, room_payload

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])


def get_history(request: Request) -> HistoryService:
    return request.app.state.history


def get_presence(request: Request) -> PresenceTable:
    return request.app.state.presence


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """Realtime chat session for one authenticated client."""
    gateway: SessionGateway = websocket.app.state.gateway
    dispatcher: EventDispatcher = websocket.app.state.dispatcher

    session = await gateway.open(websocket)
    if session is None:
        return

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                await dispatcher.reply_error(session, MESSAGE_ERROR, "Invalid JSON")
                continue
            if not isinstance(frame, dict):
                await dispatcher.reply_error(session, MESSAGE_ERROR, "Invalid payload")
                continue
            logger.debug("[WS] %s received: type=%s", session.id, frame.get("type", "?"))
            await dispatcher.dispatch(session, frame)
    except WebSocketDisconnect:
        logger.info(f"[WS] Session {session.id} disconnected")
    finally:
        await gateway.close(session)


@router.get("/messages/room/{room}")
async def get_room_messages(
    room: str,
    limit: Optional[int] = Query(None, description="Page size (clamped to 1..max)"),
    skip: Optional[int] = Query(None, description="Messages to skip, newest first"),
    history: HistoryService = Depends(get_history),
) -> dict:
    """Get one page of room history, oldest message first.

    Example:
        GET /messages/room/general?limit=50&skip=50
    """
    try:
        page = await history.room_page(room, limit, skip)
    except ValidationError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except PersistenceError as e:
        logger.error(f"[History] Room {room} query failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch history")

    return {
        "room": room,
        "messages": [room_payload(m) for m in page.messages],
        "hasMore": page.hasMore,
        "empty": page.empty,
    }


@router.get("/messages/dm/{user_id}")
async def get_direct_messages(
    user_id: str,
    limit: Optional[int] = Query(None, description="Page size (clamped to 1..max)"),
    skip: Optional[int] = Query(None, description="Messages to skip, newest first"),
    principal: Principal = Depends(require_principal),
    history: HistoryService = Depends(get_history),
) -> dict:
    """Get one page of the caller's DM history with *user_id*.

    Raises:
        HTTPException 400: Self-DM or negative skip
        HTTPException 401: Missing or invalid token
    """
    try:
        page = await history.direct_page(principal.id, user_id, limit, skip)
    except ValidationError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except PersistenceError as e:
        logger.error(f"[History] DM query {principal.id}/{user_id} failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch history")

    return {
        "recipientId": user_id,
        "roomId": page.room,
        "messages": [direct_payload(m) for m in page.messages],
        "hasMore": page.hasMore,
        "empty": page.empty,
    }


@router.get("/users/online")
async def online_users(presence: PresenceTable = Depends(get_presence)) -> dict:
    """Current presence snapshot (same shape as the users:online event)."""
    return {"users": [entry.public() for entry in presence.snapshot_all()]}
