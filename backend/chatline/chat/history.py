"""History replay.

Pages are read newest-first from the store (``ORDER BY created_at DESC LIMIT
limit OFFSET skip``) and returned oldest-first for display. ``skip`` walks
backwards into older pages.

Offset pagination drifts when messages are inserted between two page
requests (a message can shift into the next page). History is a best-effort
snapshot, not a transactional cursor; message IDs are creation-sortable so a
client can merge pages and live messages by ID.

Replay/live reconciliation: when a page is replayed to a session, the IDs are
recorded on the session; if the live broadcast of one of those messages
arrives afterwards (persisted before the query, broadcast after it) it is
not sent to that session a second time.
The reverse overlap is not suppressed: a message delivered live after
chat:join and before a history request also appears in the replayed page.
Clients merge pages and live messages by ID, which absorbs both cases.
"""
import logging
from typing import Optional, Tuple

from chatline.config import HistorySettings
from chatline.errors import ValidationError

from .identity import derive_dm_room_id
from .manager import Session
from .schemas import HistoryPage
from .store import MessageStore

logger = logging.getLogger(__name__)

# Largest OFFSET the store accepts (BIGINT)
MAX_SKIP = 2 ** 63 - 1


class HistoryService:
    """Serves paginated room and DM history."""

    def __init__(self, store: MessageStore, settings: Optional[HistorySettings] = None) -> None:
        self.store = store
        self.settings = settings or HistorySettings()

    def clamp(self, limit: Optional[int], skip: Optional[int]) -> Tuple[int, int]:
        """Normalize paging arguments.

        ``limit`` defaults to the configured page size and is clamped into
        ``[1, max_limit]``.

        Raises:
            ValidationError: If skip is negative or past the store's range.
        """
        if limit is None:
            limit = self.settings.default_limit
        limit = max(1, min(int(limit), self.settings.max_limit))
        skip = 0 if skip is None else int(skip)
        if skip < 0:
            raise ValidationError("skip must be >= 0")
        if skip > MAX_SKIP:
            raise ValidationError("skip is too large")
        return limit, skip

    async def room_page(
        self,
        room: str,
        limit: Optional[int] = None,
        skip: Optional[int] = None,
        session: Optional[Session] = None,
    ) -> HistoryPage:
        """Oldest-first page of room history."""
        limit, skip = self.clamp(limit, skip)
        rows = await self.store.query_room(room, limit + 1, skip)
        return self._page(room, rows, limit, session)

    async def direct_page(
        self,
        requester_id: str,
        other_id: str,
        limit: Optional[int] = None,
        skip: Optional[int] = None,
        session: Optional[Session] = None,
    ) -> HistoryPage:
        """Oldest-first page of the DM history between requester and other.

        The requester is always one half of the pair.

        Raises:
            ValidationError: If other_id is the requester.
        """
        if not other_id:
            raise ValidationError("recipientId is required")
        if other_id == requester_id:
            raise ValidationError("Cannot request direct message history with yourself")

        limit, skip = self.clamp(limit, skip)
        rows = await self.store.query_participant_pair(requester_id, other_id, limit + 1, skip)
        return self._page(derive_dm_room_id(requester_id, other_id), rows, limit, session)

    def _page(self, room: str, rows: list, limit: int, session: Optional[Session]) -> HistoryPage:
        has_more = len(rows) > limit
        messages = list(reversed(rows[:limit]))
        if session is not None:
            session.remember_replayed(m.id for m in messages)
        logger.debug(f"[History] {room}: {len(messages)} messages (hasMore={has_more})")
        return HistoryPage(room=room, messages=messages, hasMore=has_more)
