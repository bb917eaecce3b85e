"""Pydantic schemas for file attachments.

This module defines the data models for file sharing in Chatline:
- BlobMetadata: Complete blob information stored in DuckDB
- UploadResponse: API response after successful upload
- FileCategory: Enum for categorizing files (images, videos, documents, audio)

Blobs are stored under the upload directory with ID-based filenames to prevent
collisions. Metadata is tracked in DuckDB for lookup.
"""
import time
import uuid
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class FileCategory(str, Enum):
    """Supported file type categories.

    Files are categorized by MIME type into these groups:
    - IMAGES: JPEG, PNG, GIF, WebP
    - VIDEOS: MP4, WebM, Ogg, QuickTime
    - DOCUMENTS: PDF, Office documents, plain text
    - AUDIO: MP3, WAV, Ogg, WebM
    - OTHER: Anything else (rejected on upload)
    """
    IMAGES = "images"
    VIDEOS = "videos"
    DOCUMENTS = "documents"
    AUDIO = "audio"
    OTHER = "other"


class BlobMetadata(BaseModel):
    """Metadata for a stored blob."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex, description="Unique blob ID")
    filename: str = Field(..., description="Timestamped name the blob was stored under")
    original_filename: str = Field(..., description="Filename supplied by the uploader")
    stored_filename: str = Field(..., description="Filename on disk (ID-based)")
    category: FileCategory = Field(..., description="File type category")
    mime_type: str = Field(..., description="MIME type of the file")
    size_bytes: int = Field(..., description="File size in bytes")
    uploaded_by: str = Field(default="", description="Principal ID of the uploader")
    uploaded_at: float = Field(default_factory=time.time, description="Upload timestamp")

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")


class UploadResponse(BaseModel):
    """Response after successful upload.

    The same shape is what clients attach to chat:msg / dm:send events.
    """
    blobId: str = Field(..., description="Blob ID")
    filename: str = Field(..., description="Stored filename")
    originalName: str = Field(..., description="Original filename")
    mimeType: str = Field(..., description="MIME type")
    sizeBytes: int = Field(..., description="File size in bytes")
    category: FileCategory = Field(..., description="File type category")
    url: str = Field(..., description="URL to fetch the file")


# Allowed MIME types by category
ALLOWED_MIME_TYPES = {
    FileCategory.IMAGES: [
        "image/jpeg",
        "image/jpg",
        "image/png",
        "image/gif",
        "image/webp",
    ],
    FileCategory.VIDEOS: [
        "video/mp4",
        "video/webm",
        "video/ogg",
        "video/quicktime",
    ],
    FileCategory.DOCUMENTS: [
        "application/pdf",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.ms-excel",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/vnd.ms-powerpoint",
        "application/vnd.openxmlformats-officedocument.presentationml.presentation",
        "text/plain",
    ],
    FileCategory.AUDIO: [
        "audio/mpeg",
        "audio/wav",
        "audio/ogg",
        "audio/webm",
    ],
}


def get_file_category(mime_type: Optional[str]) -> FileCategory:
    """Determine file category from MIME type.

    Examples:
        >>> get_file_category("image/png")
        <FileCategory.IMAGES: 'images'>
        >>> get_file_category("application/zip")
        <FileCategory.OTHER: 'other'>
    """
    for category, mime_types in ALLOWED_MIME_TYPES.items():
        if mime_type in mime_types:
            return category
    return FileCategory.OTHER


def is_allowed(mime_type: Optional[str]) -> bool:
    return get_file_category(mime_type) is not FileCategory.OTHER
