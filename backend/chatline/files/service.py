"""Blob storage service for Chatline.

Handles blob bytes on disk and metadata tracking in DuckDB.
Blobs are stored in: {upload_dir}/{blob_id}.{ext}

All public operations are awaitable: the DuckDB and filesystem work runs in
the default executor so the event loop never blocks on it.
"""
import asyncio
import logging
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Optional, Tuple

import duckdb

from chatline.errors import NotFoundError, PersistenceError, ValidationError

from .schemas import BlobMetadata, FileCategory, get_file_category, is_allowed

logger = logging.getLogger(__name__)

_SELECT_COLUMNS = """
    id, filename, original_filename, stored_filename, category,
    mime_type, size_bytes, uploaded_by, uploaded_at
"""


class BlobStore:
    """Content store for uploaded attachments, keyed by blob ID."""

    def __init__(self, upload_dir: str, db_path: str, max_size_bytes: int) -> None:
        """Initialize the blob store.

        Args:
            upload_dir: Directory that holds blob bytes.
            db_path: DuckDB file for metadata (":memory:" for tests).
            max_size_bytes: Hard ceiling for a single blob.
        """
        self._upload_dir = Path(upload_dir)
        self._db_path = db_path
        self.max_size_bytes = max_size_bytes
        self._lock = threading.Lock()
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._upload_dir.mkdir(parents=True, exist_ok=True)
        self._initialize_db()

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """Get or create database connection."""
        if self._connection is None:
            if self._db_path != ":memory:":
                Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Initialize the database schema."""
        conn = self._get_connection()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS blobs (
                id VARCHAR PRIMARY KEY,
                filename VARCHAR NOT NULL,
                original_filename VARCHAR NOT NULL,
                stored_filename VARCHAR NOT NULL,
                category VARCHAR NOT NULL,
                mime_type VARCHAR NOT NULL,
                size_bytes BIGINT NOT NULL,
                uploaded_by VARCHAR NOT NULL,
                uploaded_at TIMESTAMP NOT NULL
            )
        """)

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None

    # -----------------------------------------------------------------------
    # Operations
    # -----------------------------------------------------------------------

    async def store(
        self,
        content: bytes,
        mime_type: str,
        original_name: str,
        uploaded_by: str = "",
    ) -> BlobMetadata:
        """Store blob bytes and record metadata.

        Raises:
            ValidationError: If the media type is not allowed (400) or the
                content exceeds the size ceiling (413).
            PersistenceError: If writing bytes or metadata fails.
        """
        size_bytes = len(content)
        if size_bytes > self.max_size_bytes:
            raise ValidationError(
                f"File size ({size_bytes} bytes) exceeds limit "
                f"({self.max_size_bytes} bytes)",
                status_code=413,
            )
        if not is_allowed(mime_type):
            raise ValidationError(f"File type not allowed: {mime_type}")

        original_name = Path(original_name or "unnamed").name or "unnamed"
        metadata = BlobMetadata(
            filename=f"{int(time.time() * 1000)}-{original_name}",
            original_filename=original_name,
            stored_filename="",
            category=get_file_category(mime_type),
            mime_type=mime_type,
            size_bytes=size_bytes,
            uploaded_by=uploaded_by,
        )
        metadata.stored_filename = f"{metadata.id}{Path(original_name).suffix.lower()}"
        return await self._run(self._store_sync, metadata, content)

    def _store_sync(self, metadata: BlobMetadata, content: bytes) -> BlobMetadata:
        file_path = self._upload_dir / metadata.stored_filename
        try:
            file_path.write_bytes(content)
            with self._lock:
                self._get_connection().execute(
                    """
                    INSERT INTO blobs
                    (id, filename, original_filename, stored_filename, category,
                     mime_type, size_bytes, uploaded_by, uploaded_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        metadata.id,
                        metadata.filename,
                        metadata.original_filename,
                        metadata.stored_filename,
                        metadata.category.value,
                        metadata.mime_type,
                        metadata.size_bytes,
                        metadata.uploaded_by,
                        datetime.fromtimestamp(metadata.uploaded_at),
                    ],
                )
        except (OSError, duckdb.Error) as e:
            file_path.unlink(missing_ok=True)
            logger.error(f"Failed to store blob {metadata.id}: {e}")
            raise PersistenceError("Failed to store file") from e

        logger.info(f"Stored blob {metadata.id}: {metadata.original_filename} ({metadata.size_bytes} bytes)")
        return metadata

    def _get_sync(self, blob_id: str) -> Optional[BlobMetadata]:
        try:
            with self._lock:
                row = self._get_connection().execute(
                    f"SELECT {_SELECT_COLUMNS} FROM blobs WHERE id = ?",
                    [blob_id],
                ).fetchone()
        except duckdb.Error as e:
            raise PersistenceError("Failed to read file metadata") from e

        if not row:
            return None

        return BlobMetadata(
            id=row[0],
            filename=row[1],
            original_filename=row[2],
            stored_filename=row[3],
            category=FileCategory(row[4]),
            mime_type=row[5],
            size_bytes=row[6],
            uploaded_by=row[7],
            uploaded_at=row[8].timestamp() if row[8] else 0,
        )

    async def get_metadata(self, blob_id: str) -> Optional[BlobMetadata]:
        """Get blob metadata by ID."""
        return await self._run(self._get_sync, blob_id)

    async def retrieve(self, blob_id: str) -> Tuple[Path, BlobMetadata]:
        """Return the on-disk path and metadata for a blob.

        Raises:
            NotFoundError: If the blob is unknown or its bytes are gone.
        """
        metadata = await self.get_metadata(blob_id)
        if metadata is None:
            raise NotFoundError("File not found")

        file_path = self._upload_dir / metadata.stored_filename
        if not file_path.exists():
            logger.warning(f"Blob {blob_id} has metadata but no bytes on disk")
            raise NotFoundError("File not found")
        return file_path, metadata

    async def exists(self, blob_id: str) -> bool:
        return await self.get_metadata(blob_id) is not None
