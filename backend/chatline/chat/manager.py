"""WebSocket connection registry for real-time chat.

This module tracks every authenticated WebSocket session, which rooms each
session is subscribed to, and which sessions belong to each principal (the
principal channel used for direct messages and invitations).

Key features:
    - Connection-scoped room subscriptions (join/leave)
    - Principal channels: every session of a user, addressed by user ID
    - Concurrent fan-out with asyncio.gather()
    - Automatic dead connection cleanup
    - Per-session replay log (LRU) used to suppress live duplicates of
      messages a session already received through history replay

Thread Safety:
    Registry mutations and snapshots are guarded by a threading.Lock.
    Fan-out always works on a snapshot taken under the lock; no network
    I/O happens while it is held.

Performance Notes:
    - Broadcasting uses asyncio.gather() for concurrent message delivery
    - A failing recipient never blocks delivery to the others
    - Uvicorn handles ping/pong at the protocol level (default 20s interval)
"""
import asyncio
import logging
import threading
import uuid
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional, Set

from fastapi import WebSocket

from chatline.auth.schemas import Principal
from chatline.errors import TransportError

logger = logging.getLogger(__name__)

# Maximum number of replayed message IDs remembered per session
REPLAY_LOG_SIZE = 1000


class Session:
    """One authenticated WebSocket connection.

    The principal is fixed for the lifetime of the connection; every event
    received on it executes as that principal.
    """

    def __init__(self, websocket: WebSocket, principal: Principal) -> None:
        self.id = str(uuid.uuid4())
        self.websocket = websocket
        self.principal = principal
        self.rooms: Set[str] = set()
        self._replayed: "OrderedDict[str, bool]" = OrderedDict()

    def __repr__(self) -> str:
        return f"Session(id={self.id!r}, principal={self.principal.id!r})"

    async def send(self, payload: dict) -> None:
        """Send one JSON frame.

        Raises:
            TransportError: If the peer is gone.
        """
        try:
            await self.websocket.send_json(payload)
        except Exception as e:
            raise TransportError(f"send to {self.id} failed: {e}") from e

    # -----------------------------------------------------------------------
    # Replay log
    # -----------------------------------------------------------------------

    def remember_replayed(self, message_ids: Iterable[str]) -> None:
        """Record message IDs sent to this session by a history replay."""
        for message_id in message_ids:
            self._replayed[message_id] = True
            self._replayed.move_to_end(message_id)
        while len(self._replayed) > REPLAY_LOG_SIZE:
            self._replayed.popitem(last=False)

    def was_replayed(self, message_id: Optional[str]) -> bool:
        """True if *message_id* already reached this session via replay.

        The ID is forgotten once checked: a message is broadcast live once.
        """
        if not message_id:
            return False
        return self._replayed.pop(message_id, None) is not None


class ConnectionManager:
    """Registry of live sessions, room subscriptions and principal channels.

    One instance is created per application (see chatline.main) and shared by
    the gateway, the broadcaster and the history service.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()

        # session_id -> Session
        self.sessions: Dict[str, Session] = {}

        # room -> set of subscribed session IDs
        self.room_subscribers: Dict[str, Set[str]] = {}

        # principal_id -> set of session IDs (principal channel)
        self.principal_sessions: Dict[str, Set[str]] = {}

    # =========================================================================
    # Registration
    # =========================================================================

    def register(self, session: Session) -> None:
        """Add a session and attach it to its principal channel."""
        with self._lock:
            self.sessions[session.id] = session
            self.principal_sessions.setdefault(session.principal.id, set()).add(session.id)
        logger.info(
            f"[Manager] Registered session {session.id} for {session.principal.id} "
            f"({len(self.sessions)} live)"
        )

    def unregister(self, session: Session) -> List[str]:
        """Remove a session and tear down all its subscriptions.

        Idempotent.

        Returns:
            The rooms the session was subscribed to.
        """
        with self._lock:
            if self.sessions.pop(session.id, None) is None:
                return []
            rooms = list(session.rooms)
            for room in rooms:
                self._unsubscribe_locked(session, room)
            session.rooms.clear()
            owned = self.principal_sessions.get(session.principal.id)
            if owned is not None:
                owned.discard(session.id)
                if not owned:
                    del self.principal_sessions[session.principal.id]
        logger.info(f"[Manager] Unregistered session {session.id} (left {len(rooms)} rooms)")
        return rooms

    # =========================================================================
    # Room membership
    # =========================================================================

    def join(self, session: Session, room: str) -> bool:
        """Subscribe a session to a room. Returns False if already joined."""
        with self._lock:
            if session.id not in self.sessions:
                return False
            subscribers = self.room_subscribers.setdefault(room, set())
            if session.id in subscribers:
                return False
            subscribers.add(session.id)
            session.rooms.add(room)
        return True

    def leave(self, session: Session, room: str) -> bool:
        """Unsubscribe a session from a room. Returns False if not joined."""
        with self._lock:
            if room not in session.rooms:
                return False
            self._unsubscribe_locked(session, room)
            session.rooms.discard(room)
        return True

    def _unsubscribe_locked(self, session: Session, room: str) -> None:
        subscribers = self.room_subscribers.get(room)
        if subscribers is None:
            return
        subscribers.discard(session.id)
        if not subscribers:
            del self.room_subscribers[room]

    # =========================================================================
    # Snapshots
    # =========================================================================

    def room_members(self, room: str) -> List[Session]:
        """Sessions subscribed to *room* right now."""
        with self._lock:
            return [self.sessions[sid] for sid in self.room_subscribers.get(room, ()) if sid in self.sessions]

    def sessions_of(self, principal_id: str) -> List[Session]:
        """Every live session of a principal (their principal channel)."""
        with self._lock:
            return [self.sessions[sid] for sid in self.principal_sessions.get(principal_id, ()) if sid in self.sessions]

    def all_sessions(self) -> List[Session]:
        with self._lock:
            return list(self.sessions.values())

    def get_room_size(self, room: str) -> int:
        """Get the number of sessions subscribed to a room."""
        with self._lock:
            return len(self.room_subscribers.get(room, ()))

    def is_online(self, principal_id: str) -> bool:
        with self._lock:
            return bool(self.principal_sessions.get(principal_id))

    # =========================================================================
    # Fan-out
    # =========================================================================

    async def deliver(self, sessions: Iterable[Session], message: dict) -> int:
        """Send a message to each session concurrently.

        Sessions that fail are dropped from the registry; delivery to the
        others is unaffected.

        Returns:
            Number of sessions the message reached.
        """
        targets = list({s.id: s for s in sessions}.values())
        if not targets:
            return 0

        results = await asyncio.gather(
            *[self._safe_send(s, message) for s in targets],
            return_exceptions=True
        )

        failed = [s for s, ok in zip(targets, results) if ok is not True]
        for session in failed:
            self.unregister(session)
            logger.debug(f"Removed dead session {session.id}")
        return len(targets) - len(failed)

    async def _safe_send(self, session: Session, message: dict) -> bool:
        """Send to one session; a TransportError means the peer is gone."""
        try:
            await session.send(message)
            return True
        except TransportError as e:
            logger.debug(f"Failed to send to session: {e}")
            return False
