"""Heuristic content scanner.

Two entry points:
- scan_buffer(): synchronous upload gate, classifies bytes as
  clean / infected / error from the file extension and embedded executable
  headers.
- schedule_background_scan() / run_background_rescan(): a delayed re-check
  of a file already accepted as clean, executed by the job worker through
  the metadata store and object storage only.
"""
import logging
import random
import uuid
from datetime import timedelta
from typing import Protocol

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.base import utcnow
from app.models.file_record import FileRecord, SCAN_CLEAN, SCAN_ERROR, SCAN_INFECTED
from app.services.file_storage import ObjectNotFound, ObjectStorage
from app.services.quota import release_storage

logger = logging.getLogger(__name__)

CLEAN = SCAN_CLEAN
INFECTED = SCAN_INFECTED
ERROR = SCAN_ERROR

DANGEROUS_EXTENSIONS = frozenset({
    ".exe", ".bat", ".cmd", ".scr", ".pif", ".com",
    ".vbs", ".js", ".jar", ".msi", ".deb", ".rpm",
})

SAFE_IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".gif", ".bmp", ".webp", ".svg", ".ico"})
SAFE_DOCUMENT_EXTENSIONS = frozenset({".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx", ".txt", ".rtf"})
SAFE_MEDIA_EXTENSIONS = frozenset({".mp3", ".mp4", ".avi", ".mov", ".wmv", ".wav", ".ogg", ".flac"})
SAFE_CONTAINER_EXTENSIONS = SAFE_IMAGE_EXTENSIONS | SAFE_DOCUMENT_EXTENSIONS | SAFE_MEDIA_EXTENSIONS

PE_HEADER = b"\x4d\x5a"
ELF_HEADER = b"\x7f\x45\x4c\x46"
EXECUTABLE_SIGNATURES = (PE_HEADER, ELF_HEADER)

# Mach-O 32/64-bit, both byte orders
MACHO_HEADERS = (b"\xfe\xed\xfa\xce", b"\xfe\xed\xfa\xcf", b"\xce\xfa\xed\xfe", b"\xcf\xfa\xed\xfe")
EXTENDED_SIGNATURES = EXECUTABLE_SIGNATURES + MACHO_HEADERS


def get_extension(file_name: str) -> str:
    """Lower-cased extension including the dot, or '' when there is none."""
    dot = file_name.rfind(".")
    if dot == -1:
        return ""
    return file_name[dot:].lower()


def contains_signature(data: bytes, signature: bytes) -> bool:
    """Sliding exact-match search; stops at the first hit."""
    if not signature or len(signature) > len(data):
        return False
    first = signature[0]
    last_start = len(data) - len(signature)
    i = data.find(first)
    while i != -1 and i <= last_start:
        if data[i:i + len(signature)] == signature:
            return True
        i = data.find(first, i + 1)
    return False


def _has_any_signature(data: bytes, signatures) -> bytes | None:
    for signature in signatures:
        if contains_signature(data, signature):
            return signature
    return None


def scan_buffer(data: bytes, file_name: str, signatures=EXECUTABLE_SIGNATURES) -> str:
    """Classify an upload as clean, infected or error."""
    try:
        extension = get_extension(file_name)

        if extension in DANGEROUS_EXTENSIONS:
            logger.warning(f"Dangerous file extension detected: {file_name}")
            return INFECTED

        # Safe containers and unknown types get the same narrow header check.
        # ZIP headers are not matched: office documents are ZIP containers.
        hit = _has_any_signature(data, signatures)
        if hit is not None:
            if extension in SAFE_CONTAINER_EXTENSIONS:
                logger.warning(f"Executable signature found in safe file type: {file_name}")
            else:
                logger.warning(f"Suspicious signature detected in file: {file_name}")
            return INFECTED

        return CLEAN
    except Exception as e:
        logger.error(f"Virus scan error for {file_name}: {e}")
        return ERROR


# ── Background rescan ────────────────────────────────────────────

class RescanPolicy(Protocol):
    """Detection policy applied by the delayed rescan."""

    def scan(self, data: bytes, file_name: str) -> str:
        ...


class SignatureRescanPolicy:
    """Re-applies the signature scan with the extended executable header set."""

    def scan(self, data: bytes, file_name: str) -> str:
        return scan_buffer(data, file_name, signatures=EXTENDED_SIGNATURES)


class SimulatedRescanPolicy:
    """Flags a fixed small fraction of files. Stand-in for an external engine in demos."""

    def __init__(self, infection_rate: float = 0.001, rng: random.Random | None = None):
        self.infection_rate = infection_rate
        self.rng = rng or random.Random()

    def scan(self, data: bytes, file_name: str) -> str:
        if self.rng.random() < self.infection_rate:
            return INFECTED
        return CLEAN


def build_rescan_policy(name: str, infection_rate: float = 0.001) -> RescanPolicy:
    if name == "signature":
        return SignatureRescanPolicy()
    if name == "simulated":
        return SimulatedRescanPolicy(infection_rate)
    raise ValueError(f"Unknown rescan policy: {name}")


async def schedule_background_scan(db: AsyncSession, file_record: FileRecord, delay_seconds: int) -> None:
    """Queue a delayed rescan job for a file accepted as clean. Caller commits."""
    from app.services.job_worker import enqueue_job

    await enqueue_job(
        db,
        "virus-rescan",
        {"file_id": str(file_record.id), "storage_key": file_record.storage_key},
        user_id=file_record.user_id,
        run_after=utcnow() + timedelta(seconds=delay_seconds),
    )


async def run_background_rescan(
    session_factory: async_sessionmaker,
    storage: ObjectStorage,
    policy: RescanPolicy,
    file_id: uuid.UUID,
) -> dict:
    """Re-check a stored file against current state and quarantine it if infected.

    Reads everything fresh: the upload request that queued this may be long gone.
    """
    async with session_factory() as db:
        file_rec = (
            await db.execute(select(FileRecord).where(FileRecord.id == file_id))
        ).scalar_one_or_none()

        if file_rec is None or file_rec.is_deleted:
            logger.info(f"Rescan skipped: file {file_id} no longer exists")
            return {"file_id": str(file_id), "result": "skipped"}
        if file_rec.virus_scan_status != CLEAN:
            logger.info(f"Rescan skipped: file {file_id} is {file_rec.virus_scan_status}")
            return {"file_id": str(file_id), "result": "skipped"}

        try:
            data = await storage.get(file_rec.storage_key)
            result = policy.scan(data, file_rec.name)
        except ObjectNotFound:
            logger.error(f"Rescan could not find stored object {file_rec.storage_key} for file {file_id}")
            result = ERROR

        if result != INFECTED:
            file_rec.virus_scan_status = result
            file_rec.virus_scanned_at = utcnow()
            await db.commit()
            return {"file_id": str(file_id), "result": result}

        # A delete that lands after the read above has already released the bytes.
        quarantined = await db.execute(
            update(FileRecord)
            .where(FileRecord.id == file_id, FileRecord.is_deleted.is_(False), FileRecord.virus_scan_status == CLEAN)
            .values(virus_scan_status=INFECTED, virus_scanned_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if quarantined.rowcount != 1:
            await db.rollback()
            logger.info(f"Rescan skipped: file {file_id} changed while it was being scanned")
            return {"file_id": str(file_id), "result": "skipped"}

        logger.error(
            f"SECURITY ALERT: infected file detected on rescan - file={file_id} "
            f"user={file_rec.user_id} key={file_rec.storage_key}"
        )
        keys = [file_rec.storage_key]
        thumbnail_key = (file_rec.media_info or {}).get("thumbnail_key")
        if thumbnail_key:
            keys.append(thumbnail_key)
        for key in keys:
            try:
                await storage.delete(key)
            except Exception as e:
                logger.error(f"Failed to purge infected object {key}: {e}")
        await release_storage(db, file_rec.user_id, file_rec.size_bytes)
        await db.commit()
        return {"file_id": str(file_id), "result": result}
