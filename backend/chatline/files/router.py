"""FastAPI router for file upload and download endpoints.

Endpoints:
    POST /upload              - Upload an attachment (authenticated)
    GET  /files/{blob_id}       - Stream a stored file
    GET  /files/{blob_id}/thumb - Stream a stored image (400 for non-images)
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile
from fastapi.responses import FileResponse

from chatline.auth.dependencies import require_principal
from chatline.auth.schemas import Principal
from chatline.errors import NotFoundError, PersistenceError, ValidationError

from .schemas import UploadResponse, is_allowed
from .service import BlobStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["files"])


def get_blob_store(request: Request) -> BlobStore:
    return request.app.state.blob_store


def get_download_url(request: Request, blob_id: str) -> str:
    """Generate download URL for a blob."""
    base_url = str(request.base_url).rstrip("/")
    return f"{base_url}/files/{blob_id}"


@router.post("/upload", response_model=UploadResponse)
async def upload_file(
    request: Request,
    file: Optional[UploadFile] = File(None),
    principal: Principal = Depends(require_principal),
    store: BlobStore = Depends(get_blob_store),
):
    """Upload a file attachment.

    The body is read at most one byte past the size ceiling, so an oversized
    upload is rejected without buffering all of it and before anything is
    stored.

    Returns:
        UploadResponse with blob metadata and download URL

    Raises:
        HTTPException 400: If no file was sent or its type is not allowed
        HTTPException 401: If the token is missing or invalid
        HTTPException 413: If the file exceeds the size ceiling
        HTTPException 500: If storing the file fails
    """
    if file is None:
        raise HTTPException(status_code=400, detail="No file uploaded")

    mime_type = file.content_type or "application/octet-stream"
    if not is_allowed(mime_type):
        raise HTTPException(status_code=400, detail="File type not allowed")

    content = await file.read(store.max_size_bytes + 1)
    if len(content) > store.max_size_bytes:
        logger.info(
            f"[upload] Rejected oversized file {file.filename!r} from {principal.id}"
        )
        raise HTTPException(
            status_code=413,
            detail=f"File size exceeds limit of {store.max_size_bytes} bytes",
        )

    try:
        metadata = await store.store(
            content=content,
            mime_type=mime_type,
            original_name=file.filename or "unnamed",
            uploaded_by=principal.id,
        )
    except ValidationError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))

    logger.info(
        f"File uploaded: {metadata.original_filename} "
        f"({metadata.size_bytes} bytes) by {principal.id}"
    )

    return UploadResponse(
        blobId=metadata.id,
        filename=metadata.filename,
        originalName=metadata.original_filename,
        mimeType=metadata.mime_type,
        sizeBytes=metadata.size_bytes,
        category=metadata.category,
        url=get_download_url(request, metadata.id),
    )


@router.get("/files/{blob_id}")
async def download_file(blob_id: str, store: BlobStore = Depends(get_blob_store)):
    """Stream a stored file inline with its media type.

    Raises:
        HTTPException 404: If file not found
        HTTPException 500: If the metadata store fails
    """
    try:
        path, metadata = await store.retrieve(blob_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PersistenceError as e:
        logger.error(f"[files] Reading blob {blob_id} failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to read file")

    return FileResponse(
        path=path,
        filename=metadata.original_filename,
        media_type=metadata.mime_type,
        content_disposition_type="inline",
    )


@router.get("/files/{blob_id}/thumb")
async def thumbnail(blob_id: str, store: BlobStore = Depends(get_blob_store)):
    """Stream a stored image for thumbnail display.

    Raises:
        HTTPException 400: If the file is not an image
        HTTPException 404: If file not found
        HTTPException 500: If the metadata store fails
    """
    try:
        path, metadata = await store.retrieve(blob_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PersistenceError as e:
        logger.error(f"[files] Reading blob {blob_id} failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to read file")

    if not metadata.is_image:
        raise HTTPException(status_code=400, detail="Not an image file")

    return FileResponse(path=path, media_type=metadata.mime_type)
