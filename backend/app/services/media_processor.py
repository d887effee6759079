"""Media processing: metadata extraction and thumbnails for images and videos."""
import asyncio
import hashlib
import io
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from PIL import Image, UnidentifiedImageError

from app.config import settings
from app.services.errors import ProcessingError
from app.services.file_storage import ObjectStorage, get_thumbnail_key

logger = logging.getLogger(__name__)

THUMBNAIL_CONTENT_TYPE = "image/jpeg"
THUMBNAIL_URL_TTL_SECONDS = 86400


@dataclass
class ProcessedFile:
    data: bytes
    metadata: dict = field(default_factory=dict)
    thumbnail_data: Optional[bytes] = None


@dataclass
class ProcessedUpload:
    storage_key: str
    storage_location: str
    thumbnail_key: Optional[str] = None
    thumbnail_url: Optional[str] = None


def needs_processing(content_type: str) -> bool:
    return content_type.startswith("image/") or content_type.startswith("video/")


def _checksum(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _render_image(data: bytes, max_dimension: int, quality: int) -> tuple[dict, bytes]:
    """Blocking Pillow work: read dimensions and encode a bounded JPEG thumbnail."""
    with Image.open(io.BytesIO(data)) as image:
        metadata = {
            "width": image.width,
            "height": image.height,
            "format": (image.format or "").lower() or None,
        }
        thumb = image.copy()
    # thumbnail() preserves aspect ratio and never enlarges.
    thumb.thumbnail((max_dimension, max_dimension))
    if thumb.mode not in ("RGB", "L"):
        thumb = thumb.convert("RGB")
    buffer = io.BytesIO()
    thumb.save(buffer, format="JPEG", quality=quality)
    return metadata, buffer.getvalue()


async def process_image(data: bytes) -> ProcessedFile:
    try:
        metadata, thumbnail = await asyncio.to_thread(
            _render_image, data, settings.THUMBNAIL_MAX_DIMENSION, settings.THUMBNAIL_QUALITY
        )
    except (UnidentifiedImageError, OSError, ValueError) as e:
        logger.error(f"Image processing error: {e}")
        raise ProcessingError(f"Failed to process image: {e}") from e

    metadata.update(size=len(data), checksum=_checksum(data))
    return ProcessedFile(data=data, metadata=metadata, thumbnail_data=thumbnail)


async def process_video(data: bytes, content_type: str = "video/mp4") -> ProcessedFile:
    """Videos get metadata only; frame extraction would need ffmpeg."""
    return ProcessedFile(
        data=data,
        metadata={
            "format": content_type.split("/", 1)[-1],
            "size": len(data),
            "checksum": _checksum(data),
        },
    )


def get_processor(content_type: str) -> Optional[Callable[[bytes], Awaitable[ProcessedFile]]]:
    if content_type.startswith("image/"):
        return process_image
    if content_type.startswith("video/"):
        return lambda data: process_video(data, content_type)
    return None


async def upload_processed_file(
    storage: ObjectStorage,
    processed: ProcessedFile,
    storage_key: str,
    user_id,
    file_name: str,
    content_type: str,
) -> ProcessedUpload:
    """Store the original and, if one was produced, its thumbnail under the derived key."""
    stored = await storage.put(
        storage_key,
        processed.data,
        content_type,
        {"userId": str(user_id), "originalName": file_name},
    )

    upload = ProcessedUpload(storage_key=stored.key, storage_location=stored.location)
    if processed.thumbnail_data is not None:
        thumbnail_key = get_thumbnail_key(stored.key)
        await storage.put(
            thumbnail_key,
            processed.thumbnail_data,
            THUMBNAIL_CONTENT_TYPE,
            {"userId": str(user_id), "originalFile": stored.key, "type": "thumbnail"},
        )
        upload.thumbnail_key = thumbnail_key
        upload.thumbnail_url = await storage.get_signed_download_url(thumbnail_key, THUMBNAIL_URL_TTL_SECONDS)
    return upload
