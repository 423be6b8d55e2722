"""
shared/utils/media.py
Local storage for job photos uploaded by sevaks.
Files land under UPLOAD_DIR/<folder>/ and are served from UPLOAD_URL_PREFIX.
"""

import logging
import uuid
from pathlib import Path
from typing import List

from fastapi import UploadFile
from starlette.concurrency import run_in_threadpool

from config.settings import settings
from shared.utils.errors import ValidationError

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_TYPES = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
}


def _write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


async def save_image(file: UploadFile, folder: str) -> str:
    """Validate and store one image. Returns its public URL."""
    content_type = (file.content_type or "").lower()
    extension = ALLOWED_IMAGE_TYPES.get(content_type)
    if extension is None:
        raise ValidationError(f"Unsupported image type: {content_type or 'unknown'}")

    max_bytes = settings.MAX_UPLOAD_SIZE_MB * 1024 * 1024
    data = await file.read(max_bytes + 1)
    await file.close()
    if not data:
        raise ValidationError("Empty file")
    if len(data) > max_bytes:
        raise ValidationError(f"File exceeds {settings.MAX_UPLOAD_SIZE_MB}MB limit")

    name = f"{uuid.uuid4().hex}{extension}"
    await run_in_threadpool(_write, Path(settings.UPLOAD_DIR) / folder / name, data)
    return f"{settings.UPLOAD_URL_PREFIX}/{folder}/{name}"


async def save_images(files: List[UploadFile], folder: str) -> List[str]:
    if len(files) > settings.MAX_JOB_PHOTOS:
        raise ValidationError(f"At most {settings.MAX_JOB_PHOTOS} images are allowed")
    urls = []
    for upload in files:
        urls.append(await save_image(upload, folder))
    logger.info("Stored %d image(s) under %s", len(urls), folder)
    return urls
