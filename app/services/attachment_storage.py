"""
File storage for uploaded receipts.

Files land under ``ATTACHMENT_STORAGE_DIR`` with a generated name; the
lifecycle core only ever records the resulting metadata.
"""

from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass
from pathlib import Path

from fastapi import UploadFile
from fastapi.concurrency import run_in_threadpool

from app.core.config import settings
from app.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024


@dataclass
class StoredFile:
    filename: str
    original_filename: str
    content_type: str
    size_bytes: int
    storage_path: str


def _storage_dir() -> Path:
    path = Path(settings.ATTACHMENT_STORAGE_DIR)
    path.mkdir(parents=True, exist_ok=True)
    return path


async def save_upload(upload: UploadFile) -> StoredFile:
    """Validate and persist an uploaded file; returns its stored metadata."""
    original = os.path.basename(upload.filename or "").strip()
    if not original:
        raise ValidationError("file name is required")

    extension = os.path.splitext(original)[1].lower()
    allowed = [e.lower() for e in settings.ATTACHMENT_ALLOWED_EXTENSIONS]
    if extension not in allowed:
        raise ValidationError(f"file type '{extension or original}' is not allowed")

    stored_name = f"{uuid.uuid4().hex}{extension}"
    storage_dir = await run_in_threadpool(_storage_dir)
    target = storage_dir / stored_name

    size = 0
    fh = await run_in_threadpool(target.open, "wb")
    try:
        while chunk := await upload.read(_CHUNK_SIZE):
            size += len(chunk)
            if size > settings.ATTACHMENT_MAX_BYTES:
                raise ValidationError(
                    f"file exceeds the maximum size of {settings.ATTACHMENT_MAX_BYTES} bytes"
                )
            await run_in_threadpool(fh.write, chunk)
    except Exception:
        await run_in_threadpool(fh.close)
        await run_in_threadpool(target.unlink, missing_ok=True)
        raise
    await run_in_threadpool(fh.close)

    logger.info("Stored upload %s as %s (%d bytes)", original, stored_name, size)
    return StoredFile(
        filename=stored_name,
        original_filename=original,
        content_type=upload.content_type or "application/octet-stream",
        size_bytes=size,
        storage_path=str(target),
    )


async def discard(stored: StoredFile) -> None:
    """Remove a stored file whose metadata could not be recorded."""
    try:
        await run_in_threadpool(Path(stored.storage_path).unlink, missing_ok=True)
    except OSError as e:
        logger.warning("Could not remove orphaned upload %s: %s", stored.storage_path, e)
