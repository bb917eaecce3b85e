"""Realtime event dispatch.

Inbound frames are JSON objects ``{"type": <event>, ...fields}``. Each event
type maps to a payload model and a handler; the payload is validated before
the handler runs. Failures are reported to the originating session only:

    - chat:msg, dm:send, chat:join, chat:leave, dm:start, typing:*
      -> message:error
    - history:room, history:dm -> history:error

No error ever escapes dispatch(), so one bad frame cannot take down the
connection or affect other sessions.
"""
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Type

from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from chatline.errors import ChatError, PersistenceError, ValidationError

from .broadcast import Broadcaster
from .history import HistoryService
from .manager import Session
from .schemas import (
    DirectHistoryIn,
    DirectMessageIn,
    DirectStartIn,
    RoomHistoryIn,
    RoomMessageIn,
    RoomRef,
    direct_payload,
    room_payload,
)

logger = logging.getLogger(__name__)

MESSAGE_ERROR = "message:error"
HISTORY_ERROR = "history:error"


@dataclass(frozen=True)
class EventRoute:
    payload_model: Type[BaseModel]
    handler: Callable[[Session, BaseModel], Awaitable[None]]
    error_event: str = MESSAGE_ERROR
    persistence_message: str = "Failed to send message"


class EventDispatcher:
    """Routes inbound realtime events to the broadcaster and history service."""

    def __init__(self, broadcaster: Broadcaster, history: HistoryService) -> None:
        self.broadcaster = broadcaster
        self.history = history
        self.routes: Dict[str, EventRoute] = {
            "chat:msg": EventRoute(RoomMessageIn, self._on_room_message),
            "dm:send": EventRoute(DirectMessageIn, self._on_direct_message),
            "chat:join": EventRoute(RoomRef, self._on_join),
            "chat:leave": EventRoute(RoomRef, self._on_leave),
            "dm:start": EventRoute(DirectStartIn, self._on_direct_start),
            "typing:start": EventRoute(RoomRef, self._on_typing_start),
            "typing:stop": EventRoute(RoomRef, self._on_typing_stop),
            "history:room": EventRoute(
                RoomHistoryIn, self._on_room_history, HISTORY_ERROR, "Failed to fetch history"
            ),
            "history:dm": EventRoute(
                DirectHistoryIn, self._on_direct_history, HISTORY_ERROR, "Failed to fetch history"
            ),
        }

    async def dispatch(self, session: Session, frame: dict) -> None:
        """Validate and handle one inbound frame."""
        event_type = frame.get("type") if isinstance(frame, dict) else None
        route = self.routes.get(event_type) if isinstance(event_type, str) else None
        if route is None:
            logger.warning(f"[Events] Unknown event {event_type!r} from {session.principal.id}")
            await self.reply_error(session, MESSAGE_ERROR, f"Unknown event type: {event_type}")
            return

        fields = {k: v for k, v in frame.items() if k != "type"}
        try:
            payload = route.payload_model.model_validate(fields)
        except SchemaError as e:
            logger.info(f"[Events] Invalid {event_type} payload from {session.principal.id}: {e.error_count()} errors")
            await self.reply_error(session, route.error_event, "Invalid payload")
            return

        try:
            await route.handler(session, payload)
        except ValidationError as e:
            await self.reply_error(session, route.error_event, str(e))
        except PersistenceError as e:
            logger.error(f"[Events] {event_type} failed for {session.principal.id}: {e}")
            await self.reply_error(session, route.error_event, route.persistence_message)
        except ChatError as e:
            logger.warning(f"[Events] {event_type} failed for {session.principal.id}: {e}")
            await self.reply_error(session, route.error_event, str(e))

    async def reply_error(self, session: Session, event: str, error: str) -> None:
        """Send an error event to *session* only."""
        await self.broadcaster.manager.deliver([session], {"type": event, "error": error})

    # =========================================================================
    # Handlers
    # =========================================================================

    async def _on_room_message(self, session: Session, payload: RoomMessageIn) -> None:
        await self.broadcaster.send_room_message(
            session, payload.room, text=payload.text, attachment=payload.attachment
        )

    async def _on_direct_message(self, session: Session, payload: DirectMessageIn) -> None:
        await self.broadcaster.send_direct_message(
            session, payload.recipientId, text=payload.text, attachment=payload.attachment
        )

    async def _on_join(self, session: Session, payload: RoomRef) -> None:
        self.broadcaster.join(session, payload.room)

    async def _on_leave(self, session: Session, payload: RoomRef) -> None:
        self.broadcaster.leave(session, payload.room)

    async def _on_direct_start(self, session: Session, payload: DirectStartIn) -> None:
        await self.broadcaster.start_direct(session, payload.recipientId)

    async def _on_typing_start(self, session: Session, payload: RoomRef) -> None:
        await self.broadcaster.publish_typing(session, payload.room, started=True)

    async def _on_typing_stop(self, session: Session, payload: RoomRef) -> None:
        await self.broadcaster.publish_typing(session, payload.room, started=False)

    async def _on_room_history(self, session: Session, payload: RoomHistoryIn) -> None:
        page = await self.history.room_page(
            payload.room, payload.limit, payload.skip, session=session
        )
        await self.broadcaster.manager.deliver([session], {
            "type": "history:room",
            "room": payload.room,
            "messages": [room_payload(m) for m in page.messages],
            "hasMore": page.hasMore,
            "empty": page.empty,
        })

    async def _on_direct_history(self, session: Session, payload: DirectHistoryIn) -> None:
        page = await self.history.direct_page(
            session.principal.id, payload.recipientId, payload.limit, payload.skip, session=session
        )
        await self.broadcaster.manager.deliver([session], {
            "type": "history:dm",
            "recipientId": payload.recipientId,
            "roomId": page.room,
            "messages": [direct_payload(m) for m in page.messages],
            "hasMore": page.hasMore,
            "empty": page.empty,
        })
