"""Upload and local storage API endpoints."""

import asyncio
import logging
import tempfile
from pathlib import Path

from fastapi import APIRouter, File, HTTPException, UploadFile, status
from fastapi.responses import FileResponse

from slidereel.api.deps import Storage
from slidereel.config import get_settings
from slidereel.exceptions import UploadRejectedError
from slidereel.schemas.storage import ErrorResponse, UploadResponse
from slidereel.services.storage_service import (
    LocalStorageService,
    extension_for_content_type,
    generate_storage_key,
)
from slidereel.utils.media_info import get_media_duration

router = APIRouter()
logger = logging.getLogger(__name__)

MEDIA_TYPES = {
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".pdf": "application/pdf",
}


UPLOAD_CHUNK_SIZE = 1024 * 1024


def _too_large(max_mb: int) -> UploadRejectedError:
    return UploadRejectedError(
        f"File exceeds {max_mb}MB limit",
        status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
    )


async def _spool_upload(file: UploadFile, destination: Path, max_bytes: int, max_mb: int) -> int:
    """Copy the upload to disk chunk by chunk, stopping as soon as it is too large."""
    size = 0
    with destination.open("wb") as out:
        while True:
            chunk = await file.read(UPLOAD_CHUNK_SIZE)
            if not chunk:
                break
            size += len(chunk)
            if size > max_bytes:
                raise _too_large(max_mb)
            await asyncio.to_thread(out.write, chunk)
    return size


def _probe_duration(path: Path) -> float | None:
    try:
        return get_media_duration(str(path))
    except RuntimeError as e:
        logger.warning(f"[UPLOAD] Could not probe audio duration: {e}")
        return None


@router.post(
    "/upload",
    response_model=UploadResponse,
    response_model_exclude_none=True,
    responses={400: {"model": ErrorResponse}, 413: {"model": ErrorResponse}, 415: {"model": ErrorResponse}},
)
async def upload_file(storage: Storage, file: UploadFile | None = File(default=None)) -> UploadResponse:
    """Store one file and return its durable URL (and duration, for audio)."""
    settings = get_settings()
    if file is None:
        raise UploadRejectedError()

    content_type = file.content_type or ""
    if content_type not in settings.allowed_upload_types:
        raise UploadRejectedError(
            f"Unsupported file type: {content_type or 'unknown'}",
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
        )

    max_bytes = settings.max_upload_size_mb * 1024 * 1024
    # Size from the multipart headers, when the client sent one
    if file.size is not None and file.size > max_bytes:
        raise _too_large(settings.max_upload_size_mb)

    extension = extension_for_content_type(content_type)
    storage_key = generate_storage_key(extension)
    with tempfile.TemporaryDirectory(prefix="slidereel_upload_") as temp_dir:
        local_path = Path(temp_dir) / f"upload.{extension}"
        size = await _spool_upload(file, local_path, max_bytes, settings.max_upload_size_mb)
        if size == 0:
            raise UploadRejectedError("Uploaded file is empty")

        url = await asyncio.to_thread(storage.upload_file, str(local_path), storage_key, content_type)
        logger.info(f"[UPLOAD] Stored {file.filename} ({size} bytes) as {storage_key}")

        duration = None
        if content_type.startswith("audio/"):
            duration = await asyncio.to_thread(_probe_duration, local_path)
    return UploadResponse(url=url, duration_sec=duration)


@router.get("/storage/files/{storage_key:path}")
async def get_file(storage_key: str, storage: Storage):
    """Serve files from local storage."""
    if not isinstance(storage, LocalStorageService):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Local storage not enabled",
        )

    try:
        file_path = storage.get_file_path(storage_key)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")
    if not file_path.is_file():
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="File not found",
        )

    media_type = MEDIA_TYPES.get(Path(file_path).suffix.lower(), "application/octet-stream")
    return FileResponse(
        path=str(file_path),
        media_type=media_type,
        filename=file_path.name,
    )
