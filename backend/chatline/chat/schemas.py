"""Data models for chat messages and realtime events.

Stored models:
    - Attachment: Uploaded blob referenced by a message
    - NewMessage: Validated message content before the store assigns id/ts
    - Message: Persisted message (immutable once stored)

Inbound event payloads (one model per realtime event type) are validated
with pydantic before any handler runs. Outbound payloads are plain dicts
built by room_payload() / direct_payload().
"""
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from chatline.files.schemas import FileCategory


# =============================================================================
# Stored models
# =============================================================================


class Attachment(BaseModel):
    """Uploaded blob attached to a message (shape returned by POST /upload)."""
    blobId: str = Field(..., min_length=1, description="Blob store ID")
    filename: str = Field(default="", description="Stored filename")
    originalName: str = Field(default="", description="Original filename")
    mimeType: str = Field(default="", description="MIME type")
    sizeBytes: int = Field(default=0, ge=0, description="File size in bytes")
    category: FileCategory = Field(default=FileCategory.OTHER, description="File category")
    url: Optional[str] = Field(default=None, description="Download URL")


def normalize_text(text: Optional[str]) -> Optional[str]:
    """Trim text; empty-after-trim counts as absent."""
    if text is None:
        return None
    text = text.strip()
    return text or None


class NewMessage(BaseModel):
    """Message content as composed by the sender, before persistence.

    Exactly one of ``text`` (non-empty after trimming) or ``attachment``
    must be present.
    """
    model_config = ConfigDict(frozen=True)

    text: Optional[str] = None
    senderId: str
    senderName: str
    senderEmail: str = ""
    room: str = Field(..., min_length=1)
    isDirect: bool = False
    participants: List[str] = Field(default_factory=list)
    attachment: Optional[Attachment] = None

    @property
    def hasAttachment(self) -> bool:
        return self.attachment is not None

    @model_validator(mode="before")
    @classmethod
    def _trim_text(cls, data):
        if isinstance(data, dict) and "text" in data:
            data = {**data, "text": normalize_text(data["text"])}
        return data

    @model_validator(mode="after")
    def _check_content(self):
        if self.text is None and self.attachment is None:
            raise ValueError("Either text or attachment must be provided")
        if self.text is not None and self.attachment is not None:
            raise ValueError("A message carries either text or an attachment, not both")
        if self.isDirect and len(set(self.participants)) != 2:
            raise ValueError("Direct messages need exactly two participants")
        if not self.isDirect and self.participants:
            raise ValueError("Room messages have no participants")
        return self


class Message(NewMessage):
    """Persisted chat message.

    Attributes:
        id: Store-assigned ID, sortable by creation order.
        createdAt: Server-assigned UTC timestamp (naive), non-decreasing.
    """
    id: str
    createdAt: datetime


def iso_timestamp(value: datetime) -> str:
    """Render a naive-UTC or aware datetime as ISO-8601 with a Z suffix."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(timespec="milliseconds") + "Z"


def _attachment_payload(message: Message) -> Optional[dict]:
    return message.attachment.model_dump(mode="json") if message.attachment else None


def room_payload(message: Message) -> dict:
    """Normalized chat:msg payload (also used for room history entries)."""
    return {
        "id": message.id,
        "sender": message.senderName,
        "senderId": message.senderId,
        "text": message.text,
        "room": message.room,
        "ts": iso_timestamp(message.createdAt),
        "hasAttachment": message.hasAttachment,
        "attachment": _attachment_payload(message),
    }


def direct_payload(message: Message) -> dict:
    """Normalized dm:receive payload (also used for DM history entries)."""
    return {
        "id": message.id,
        "sender": message.senderName,
        "senderId": message.senderId,
        "text": message.text,
        "ts": iso_timestamp(message.createdAt),
        "isDirect": True,
        "roomId": message.room,
        "hasAttachment": message.hasAttachment,
        "attachment": _attachment_payload(message),
        "from": {
            "id": message.senderId,
            "name": message.senderName,
            "email": message.senderEmail,
        },
    }


# =============================================================================
# Inbound realtime events
# =============================================================================


class RoomMessageIn(BaseModel):
    """chat:msg"""
    room: str = Field(..., min_length=1)
    text: Optional[str] = None
    attachment: Optional[Attachment] = None


class DirectMessageIn(BaseModel):
    """dm:send"""
    recipientId: str = Field(..., min_length=1)
    text: Optional[str] = None
    attachment: Optional[Attachment] = None


class RoomRef(BaseModel):
    """chat:join, chat:leave, typing:start, typing:stop"""
    room: str = Field(..., min_length=1)


class DirectStartIn(BaseModel):
    """dm:start"""
    recipientId: str = Field(..., min_length=1)


class RoomHistoryIn(BaseModel):
    """history:room"""
    room: str = Field(..., min_length=1)
    limit: Optional[int] = None
    skip: Optional[int] = None


class DirectHistoryIn(BaseModel):
    """history:dm"""
    recipientId: str = Field(..., min_length=1)
    limit: Optional[int] = None
    skip: Optional[int] = None


# =============================================================================
# History pages
# =============================================================================


class HistoryPage(BaseModel):
    """One page of history, oldest message first."""
    room: str
    messages: List[Message] = Field(default_factory=list)
    hasMore: bool = False

    @property
    def empty(self) -> bool:
        return not self.messages
