"""Upload intake pipeline.

Per batch:
    validate (all-or-nothing) -> reserve the batch total (all-or-nothing)
    -> for each file, in submission order:
         pending -> scanning -> blocked(infected)
                             -> processing -> stored -> recorded
                             -> failed(upload error)
    -> one atomic storage_used decrement giving back what was not recorded
    -> summary with uploaded and blocked files

Partial success is a normal outcome: a file that is blocked or fails never
stops its siblings, and nothing already recorded is undone.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.file_record import FileRecord, SCAN_CLEAN, SCAN_INFECTED, SCAN_PENDING
from app.models.user import User
from app.services.errors import QuotaExceeded, ScanBlocked, ValidationError
from app.services.file_storage import ObjectStorage, generate_storage_key
from app.services.file_validator import Candidate, validate_batch
from app.services.media_processor import get_processor, needs_processing, upload_processed_file
from app.services.quota import reserve_storage, settle_reservation
from app.services.virus_scanner import scan_buffer, schedule_background_scan

logger = logging.getLogger(__name__)

BLOCKED_INFECTED = "Virus/malware detected"
BLOCKED_UPLOAD_ERROR = "Upload error"


class FileState(str, Enum):
    PENDING = "pending"
    SCANNING = "scanning"
    BLOCKED = "blocked"
    PROCESSING = "processing"
    STORED = "stored"
    RECORDED = "recorded"
    FAILED = "failed"


@dataclass
class UploadCandidate:
    name: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class DeclaredFile:
    """A part as announced by the multipart form, before its bytes are read."""
    name: str
    content_type: str
    size: int


def reject_invalid_batch(candidates: list[Candidate]):
    """Raise ValidationError unless the batch passes every validation rule."""
    if not candidates:
        raise ValidationError("No files provided")
    validation = validate_batch(candidates)
    if not validation.is_valid:
        logger.info(f"Upload batch rejected: {len(validation.errors)} validation error(s)")
        raise ValidationError("File validation failed", validation.errors)


def _transition(name: str, state: FileState):
    logger.debug(f"upload {name!r} -> {state.value}")


def _scan(candidate: UploadCandidate, scanner: Callable[[bytes, str], str]) -> str:
    """Run the inline scan. Raises ScanBlocked for infected content."""
    _transition(candidate.name, FileState.SCANNING)
    result = scanner(candidate.data, candidate.name)
    if result == SCAN_INFECTED:
        raise ScanBlocked(BLOCKED_INFECTED)
    return result


async def _store_file(
    storage: ObjectStorage,
    user_id,
    candidate: UploadCandidate,
    written_keys: list[str],
) -> dict:
    """Process (if needed) and store one file. Returns the pieces of its FileRecord."""
    storage_key = generate_storage_key(user_id, candidate.name)
    media_info = {"size": candidate.size}
    thumbnail_url = None

    processor = get_processor(candidate.content_type) if needs_processing(candidate.content_type) else None
    if processor is not None:
        _transition(candidate.name, FileState.PROCESSING)
        processed = await processor(candidate.data)
        written_keys.append(storage_key)
        upload = await upload_processed_file(
            storage, processed, storage_key, user_id, candidate.name, candidate.content_type
        )
        if upload.thumbnail_key:
            written_keys.append(upload.thumbnail_key)
        media_info.update(processed.metadata)
        media_info["thumbnail_key"] = upload.thumbnail_key
        media_info["thumbnail_url"] = upload.thumbnail_url
        location = upload.storage_location
        thumbnail_url = upload.thumbnail_url
    else:
        written_keys.append(storage_key)
        stored = await storage.put(
            storage_key,
            candidate.data,
            candidate.content_type,
            {"userId": str(user_id), "originalName": candidate.name},
        )
        location = stored.location

    _transition(candidate.name, FileState.STORED)
    return {
        "storage_key": storage_key,
        "storage_location": location,
        "media_info": media_info,
        "thumbnail_url": thumbnail_url,
    }


async def _discard_objects(storage: ObjectStorage, keys: list[str]):
    for key in keys:
        try:
            await storage.delete(key)
        except Exception as e:
            logger.error(f"Could not remove orphaned object {key}: {e}")


async def run_upload_batch(
    db: AsyncSession,
    storage: ObjectStorage,
    user: User,
    candidates: list[UploadCandidate],
    rescan_delay_seconds: int | None = None,
    scanner: Callable[[bytes, str], str] = scan_buffer,
) -> dict:
    """Run one upload batch for `user`. Raises ValidationError / QuotaExceeded before any I/O."""
    if rescan_delay_seconds is None:
        rescan_delay_seconds = settings.RESCAN_DELAY_SECONDS

    reject_invalid_batch(candidates)

    # Plain values: a per-file rollback expires ORM instances in the session.
    user_id = user.id
    total_size = sum(c.size for c in candidates)
    try:
        reservation_id = await reserve_storage(db, user_id, total_size)
    except QuotaExceeded as e:
        logger.info(f"Upload batch rejected for user {user_id}: {total_size} bytes requested, {e.available} available")
        raise

    uploaded_files = []
    blocked_files = []
    total_uploaded_size = 0

    for candidate in candidates:
        _transition(candidate.name, FileState.PENDING)
        try:
            scan_result = _scan(candidate, scanner)
        except ScanBlocked as blocked:
            logger.warning(f"Infected file blocked: {candidate.name}")
            _transition(candidate.name, FileState.BLOCKED)
            blocked_files.append({
                "name": candidate.name,
                "reason": blocked.message,
                "size": candidate.size,
            })
            continue

        written_keys = []
        try:
            stored = await _store_file(storage, user_id, candidate, written_keys)

            record = FileRecord(
                user_id=user_id,
                name=candidate.name,
                original_name=candidate.name,
                size_bytes=candidate.size,
                mime_type=candidate.content_type,
                storage_key=stored["storage_key"],
                storage_location=stored["storage_location"],
                media_info=stored["media_info"],
                virus_scan_status=SCAN_CLEAN if scan_result == SCAN_CLEAN else SCAN_PENDING,
                is_shared=False,
                reservation_id=reservation_id,
                tags=[],
            )
            db.add(record)
            await db.flush()
            if scan_result == SCAN_CLEAN:
                await schedule_background_scan(db, record, rescan_delay_seconds)
            await db.commit()
            _transition(candidate.name, FileState.RECORDED)

            uploaded_files.append({
                "id": record.id,
                "name": record.name,
                "size": record.size_bytes,
                "type": record.mime_type,
                "uploaded_at": record.created_at,
                "download_url": f"/api/files/{record.id}/download",
                "thumbnail_url": stored["thumbnail_url"],
                "is_shared": record.is_shared,
                "virus_scan_status": record.virus_scan_status,
            })
            total_uploaded_size += candidate.size
        except Exception as e:
            logger.error(f"Error uploading file {candidate.name}: {e}")
            _transition(candidate.name, FileState.FAILED)
            await db.rollback()
            await _discard_objects(storage, written_keys)
            blocked_files.append({
                "name": candidate.name,
                "reason": BLOCKED_UPLOAD_ERROR,
                "size": candidate.size,
            })

    await settle_reservation(db, user_id, reservation_id, total_size - total_uploaded_size)
    await db.commit()

    if len(uploaded_files) == len(candidates):
        message = f"Successfully uploaded {len(uploaded_files)} files"
    else:
        message = (
            f"Successfully uploaded {len(uploaded_files)} of {len(candidates)} files. "
            f"{len(blocked_files)} files were blocked."
        )
    logger.info(f"User {user_id} batch done: {len(uploaded_files)} uploaded, {len(blocked_files)} blocked")

    return {
        "success": True,
        "files": uploaded_files,
        "uploaded_count": len(uploaded_files),
        "blocked_count": len(blocked_files),
        "blocked_files": blocked_files,
        "total_size": total_uploaded_size,
        "message": message,
    }
