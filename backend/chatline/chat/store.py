"""DuckDB-backed message store.

Messages are append-only. Reads are newest-first (``ORDER BY created_at DESC``)
so "most recent N" is a cheap index scan; callers that display history
reverse the result.

Database Schema:
    messages table:
        - seq: Store-local sequence (tie-breaker for equal timestamps)
        - id: Public message ID, sortable by creation
        - room: Room name or canonical DM room ID
        - is_direct: DM flag
        - participant_a / participant_b: DM participants (sender, recipient)
        - attachment: JSON-encoded attachment, NULL when absent
        - created_at: Server-assigned UTC timestamp, non-decreasing

Thread Safety:
    The DuckDB connection is NOT thread-safe. All access goes through one
    lock; the public coroutines run the SQL in the default executor so the
    event loop stays free while the store works.
"""
import asyncio
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import duckdb

from chatline.errors import PersistenceError

from .schemas import Attachment, Message, NewMessage

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS messages (
    seq            BIGINT PRIMARY KEY,
    id             VARCHAR NOT NULL UNIQUE,
    text           VARCHAR,
    sender_id      VARCHAR NOT NULL,
    sender_name    VARCHAR NOT NULL,
    sender_email   VARCHAR NOT NULL,
    room           VARCHAR NOT NULL,
    is_direct      BOOLEAN NOT NULL DEFAULT FALSE,
    participant_a  VARCHAR,
    participant_b  VARCHAR,
    has_attachment BOOLEAN NOT NULL DEFAULT FALSE,
    attachment     VARCHAR,
    created_at     TIMESTAMP NOT NULL
)
"""

_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_messages_room ON messages(room, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_messages_pair ON messages(participant_a, participant_b, created_at)",
)

_SELECT_COLUMNS = """
    id, text, sender_id, sender_name, sender_email, room, is_direct,
    participant_a, participant_b, attachment, created_at
"""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def make_message_id(created_at: datetime, seq: int) -> str:
    """24 hex chars: creation seconds (8) + store sequence (16)."""
    seconds = int(created_at.replace(tzinfo=timezone.utc).timestamp())
    return f"{seconds:08x}{seq:016x}"


class MessageStore:
    """Persists chat messages and serves newest-first pages."""

    def __init__(self, db_path: str = ":memory:") -> None:
        """Open (or create) the message database.

        Args:
            db_path: Path to DuckDB file, ":memory:" for an ephemeral store.
        """
        self._db_path = db_path
        self._lock = threading.Lock()
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            if self._db_path != ":memory:":
                Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        conn = self._get_connection()
        conn.execute(_CREATE_TABLE)
        for statement in _INDEXES:
            conn.execute(statement)
        seq, last = conn.execute(
            "SELECT coalesce(max(seq), 0), max(created_at) FROM messages"
        ).fetchone()
        self._seq: int = seq
        self._last_created_at: Optional[datetime] = last
        logger.info("[MessageStore] Initialized with db=%s (seq=%d)", self._db_path, seq)

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    async def append(self, draft: NewMessage) -> Message:
        """Persist a message, assigning its ID and timestamp.

        Raises:
            PersistenceError: If the database write fails.
        """
        return await self._run(self._append_sync, draft)

    def _append_sync(self, draft: NewMessage) -> Message:
        with self._lock:
            created_at = _utcnow()
            if self._last_created_at is not None and created_at < self._last_created_at:
                created_at = self._last_created_at
            seq = self._seq + 1
            message = Message(
                **draft.model_dump(),
                id=make_message_id(created_at, seq),
                createdAt=created_at,
            )
            participant_a, participant_b = (message.participants + [None, None])[:2]
            try:
                self._get_connection().execute(
                    """
                    INSERT INTO messages
                      (seq, id, text, sender_id, sender_name, sender_email, room,
                       is_direct, participant_a, participant_b, has_attachment,
                       attachment, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        seq,
                        message.id,
                        message.text,
                        message.senderId,
                        message.senderName,
                        message.senderEmail,
                        message.room,
                        message.isDirect,
                        participant_a,
                        participant_b,
                        message.hasAttachment,
                        message.attachment.model_dump_json() if message.attachment else None,
                        created_at,
                    ],
                )
            except duckdb.Error as e:
                logger.error(f"[MessageStore] Append to {message.room} failed: {e}")
                raise PersistenceError("Failed to save message") from e

            self._seq = seq
            self._last_created_at = created_at
        return message

    # -----------------------------------------------------------------------
    # Reads (newest first)
    # -----------------------------------------------------------------------

    async def query_room(self, room: str, limit: int, skip: int = 0) -> List[Message]:
        """Room messages, newest first. DM messages are never included."""
        return await self._run(
            self._query_sync,
            "room = ? AND NOT is_direct",
            [room],
            limit,
            skip,
        )

    async def query_participant_pair(
        self, user_a: str, user_b: str, limit: int, skip: int = 0
    ) -> List[Message]:
        """Direct messages exchanged between two principals, newest first."""
        return await self._run(
            self._query_sync,
            "is_direct AND ((participant_a = ? AND participant_b = ?) "
            "OR (participant_a = ? AND participant_b = ?))",
            [user_a, user_b, user_b, user_a],
            limit,
            skip,
        )

    def _query_sync(self, where: str, params: list, limit: int, skip: int) -> List[Message]:
        try:
            with self._lock:
                rows = self._get_connection().execute(
                    f"""
                    SELECT {_SELECT_COLUMNS}
                    FROM messages
                    WHERE {where}
                    ORDER BY created_at DESC, seq DESC
                    LIMIT {int(limit)} OFFSET {int(skip)}
                    """,
                    params,
                ).fetchall()
        except duckdb.Error as e:
            logger.error(f"[MessageStore] Query failed: {e}")
            raise PersistenceError("Failed to fetch messages") from e
        return [self._row_to_message(r) for r in rows]

    @staticmethod
    def _row_to_message(row) -> Message:
        participants = [p for p in (row[7], row[8]) if p is not None]
        return Message(
            id=row[0],
            text=row[1],
            senderId=row[2],
            senderName=row[3],
            senderEmail=row[4],
            room=row[5],
            isDirect=row[6],
            participants=participants,
            attachment=Attachment.model_validate_json(row[9]) if row[9] else None,
            createdAt=row[10],
        )
