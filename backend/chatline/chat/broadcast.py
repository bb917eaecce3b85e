"""Broadcast router: who receives what.

Fan-out policy per event kind:
    - Room message: persisted, then sent to every session subscribed to the
      room at send time (late joiners use history).
    - Direct message: persisted, then unicast to the recipient's principal
      channel and echoed to the sender's principal channel.
    - Typing: not persisted; sent to the target's current subscribers except
      the sender's own sessions.
    - Presence: full users:online snapshot to every live session.

Messages from one session are handled one at a time (persist, then send),
so subscribers see a sender's messages in send order.
"""
import logging
from typing import List, Optional

from pydantic import ValidationError as SchemaError

from chatline.errors import ValidationError
from chatline.files.service import BlobStore

from .identity import derive_dm_room_id
from .manager import ConnectionManager, Session
from .presence import PresenceTable
from .schemas import (
    Attachment,
    Message,
    NewMessage,
    direct_payload,
    normalize_text,
    room_payload,
)
from .store import MessageStore

logger = logging.getLogger(__name__)


class Broadcaster:
    """Implements the send operations and their fan-out rules."""

    def __init__(
        self,
        manager: ConnectionManager,
        presence: PresenceTable,
        store: MessageStore,
        blob_store: Optional[BlobStore] = None,
    ) -> None:
        self.manager = manager
        self.presence = presence
        self.store = store
        self.blob_store = blob_store

    # =========================================================================
    # Message composition
    # =========================================================================

    async def _compose(
        self,
        session: Session,
        room: str,
        text: Optional[str],
        attachment: Optional[Attachment],
        participants: Optional[List[str]] = None,
    ) -> NewMessage:
        """Validate content and build the message to persist.

        The attachment is rebuilt from the stored blob metadata; only its
        blobId is taken from the client.

        Raises:
            ValidationError: Neither (or both) of text and attachment, or an
                attachment that does not reference a stored blob.
        """
        text = normalize_text(text)
        if text is None and attachment is None:
            raise ValidationError("Either text or attachment must be provided")
        if text is not None and attachment is not None:
            raise ValidationError("Send text or an attachment, not both")
        if attachment is not None and self.blob_store is not None:
            attachment = await self._resolve_attachment(attachment)

        principal = session.principal
        try:
            return NewMessage(
                text=text,
                senderId=principal.id,
                senderName=principal.displayName,
                senderEmail=principal.email,
                room=room,
                isDirect=participants is not None,
                participants=participants or [],
                attachment=attachment,
            )
        except SchemaError as e:
            raise ValidationError(f"Invalid message: {e.errors()[0]['msg']}")

    async def _resolve_attachment(self, attachment: Attachment) -> Attachment:
        metadata = await self.blob_store.get_metadata(attachment.blobId)
        if metadata is None:
            raise ValidationError("Attachment not found")
        return Attachment(
            blobId=metadata.id,
            filename=metadata.filename,
            originalName=metadata.original_filename,
            mimeType=metadata.mime_type,
            sizeBytes=metadata.size_bytes,
            category=metadata.category,
            url=f"/files/{metadata.id}",
        )

    def _live_targets(self, sessions: List[Session], message: Message) -> List[Session]:
        """Skip sessions that already received this message via replay."""
        return [s for s in sessions if not s.was_replayed(message.id)]

    # =========================================================================
    # Send operations
    # =========================================================================

    async def send_room_message(
        self,
        session: Session,
        room: str,
        text: Optional[str] = None,
        attachment: Optional[Attachment] = None,
    ) -> Message:
        """Persist a room message and deliver chat:msg to current subscribers.

        Raises:
            ValidationError: Content invalid; nothing persisted or sent.
            PersistenceError: Store failed; nothing sent.
        """
        draft = await self._compose(session, room, text, attachment)
        message = await self.store.append(draft)

        targets = self._live_targets(self.manager.room_members(room), message)
        delivered = await self.manager.deliver(targets, {"type": "chat:msg", **room_payload(message)})
        logger.info(
            f"[Broadcast] chat:msg {message.id} from {session.principal.id} "
            f"to room {room} ({delivered} sessions)"
        )
        return message

    async def send_direct_message(
        self,
        session: Session,
        recipient_id: str,
        text: Optional[str] = None,
        attachment: Optional[Attachment] = None,
    ) -> Message:
        """Persist a DM and unicast dm:receive to recipient and sender.

        Each session of either principal receives exactly one copy.

        Raises:
            ValidationError: Self-DM or invalid content.
            PersistenceError: Store failed; nothing sent.
        """
        sender_id = session.principal.id
        if recipient_id == sender_id:
            raise ValidationError("Cannot send a direct message to yourself")

        room_id = derive_dm_room_id(sender_id, recipient_id)
        draft = await self._compose(
            session, room_id, text, attachment, participants=[sender_id, recipient_id]
        )
        message = await self.store.append(draft)

        sessions = self.manager.sessions_of(recipient_id) + self.manager.sessions_of(sender_id)
        targets = self._live_targets(sessions, message)
        delivered = await self.manager.deliver(targets, {"type": "dm:receive", **direct_payload(message)})
        logger.info(
            f"[Broadcast] dm:receive {message.id} {sender_id} -> {recipient_id} "
            f"({delivered} sessions)"
        )
        return message

    async def publish_typing(self, session: Session, target: str, started: bool) -> int:
        """Fire-and-forget typing indicator.

        *target* is a room name or a principal ID; both the room's
        subscribers and that principal's sessions are addressed. The sender's
        own sessions never receive it. There is no server-side timeout; a
        ``stop`` for an idle user is harmless.

        Returns:
            Number of sessions reached.
        """
        sender = session.principal
        candidates = self.manager.room_members(target) + self.manager.sessions_of(target)
        targets = [s for s in candidates if s.principal.id != sender.id]

        if started:
            payload = {
                "type": "typing:start",
                "room": target,
                "user": sender.displayName,
                "userId": sender.id,
            }
        else:
            payload = {"type": "typing:stop", "room": target, "userId": sender.id}
        return await self.manager.deliver(targets, payload)

    async def announce_presence(self) -> int:
        """Send the full presence snapshot to every live session."""
        users = [entry.public() for entry in self.presence.snapshot_all()]
        delivered = await self.manager.deliver(
            self.manager.all_sessions(), {"type": "users:online", "users": users}
        )
        logger.info(f"[Presence] Announced {len(users)} online users to {delivered} sessions")
        return delivered

    # =========================================================================
    # Membership
    # =========================================================================

    def join(self, session: Session, room: str) -> None:
        if self.manager.join(session, room):
            logger.info(f"[Broadcast] {session.principal.id} joined room {room}")

    def leave(self, session: Session, room: str) -> None:
        if self.manager.leave(session, room):
            logger.info(f"[Broadcast] {session.principal.id} left room {room}")

    async def start_direct(self, session: Session, recipient_id: str) -> str:
        """Open a DM: subscribe the caller to the DM room and invite the peer.

        Returns:
            The canonical DM room ID.
        """
        principal = session.principal
        if recipient_id == principal.id:
            raise ValidationError("Cannot start a direct message with yourself")

        room_id = derive_dm_room_id(principal.id, recipient_id)
        self.join(session, room_id)
        await self.manager.deliver(self.manager.sessions_of(recipient_id), {
            "type": "dm:invitation",
            "roomId": room_id,
            "from": principal.public(),
        })
        return room_id
