"""Process-wide presence table.

Maps each connected principal to the connection that registered it. At most
one entry exists per principal: a reconnect replaces the previous entry
instead of adding a ghost. The table is owned by the application lifespan
and handed to the gateway and broadcaster by reference.

Thread Safety:
    Every mutation and snapshot happens under one lock; callers broadcast
    from the snapshot after the lock is released.
"""
import logging
import threading
from collections import OrderedDict
from typing import List, Optional

from pydantic import BaseModel

from chatline.auth.schemas import Principal

logger = logging.getLogger(__name__)


class PresenceEntry(BaseModel):
    """Presence record for one connected principal."""
    principalId: str
    connectionId: str
    displayName: str
    email: str = ""

    def public(self) -> dict:
        """Wire shape used in users:online."""
        return {"id": self.principalId, "name": self.displayName, "email": self.email}


class PresenceTable:
    """Lock-guarded principal ID -> PresenceEntry map (insertion ordered)."""

    def __init__(self) -> None:
        self._entries: "OrderedDict[str, PresenceEntry]" = OrderedDict()
        self._lock = threading.Lock()

    def upsert(self, principal: Principal, connection_id: str) -> PresenceEntry:
        """Register *principal* as connected via *connection_id*.

        Replaces any prior entry for the same principal.
        """
        entry = PresenceEntry(
            principalId=principal.id,
            connectionId=connection_id,
            displayName=principal.displayName,
            email=principal.email,
        )
        with self._lock:
            replaced = self._entries.pop(principal.id, None)
            self._entries[principal.id] = entry
        if replaced is not None:
            logger.info(
                f"[Presence] {principal.id} reconnected; replaced connection {replaced.connectionId}"
            )
        return entry

    def remove(self, principal_id: str, connection_id: Optional[str] = None) -> bool:
        """Remove a principal's entry.

        When *connection_id* is given, the entry is only removed if it still
        belongs to that connection; a stale connection closing after a
        reconnect leaves the live entry alone.

        Returns:
            True if an entry was removed.
        """
        with self._lock:
            entry = self._entries.get(principal_id)
            if entry is None:
                return False
            if connection_id is not None and entry.connectionId != connection_id:
                return False
            del self._entries[principal_id]
        return True

    def get(self, principal_id: str) -> Optional[PresenceEntry]:
        with self._lock:
            return self._entries.get(principal_id)

    def snapshot_all(self) -> List[PresenceEntry]:
        """Current entries in insertion order (consumers treat it as a set)."""
        with self._lock:
            return list(self._entries.values())

    def __contains__(self, principal_id: str) -> bool:
        with self._lock:
            return principal_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
