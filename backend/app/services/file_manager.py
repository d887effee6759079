"""Owner-side file operations: listing, search, stats, download and delete."""
import logging
import uuid

from sqlalchemy import String, cast, desc, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.base import utcnow
from app.models.file_record import FileRecord, SCAN_INFECTED
from app.models.user import User
from app.services.errors import Forbidden, InternalFault, NotFound
from app.services.file_storage import ObjectStorage
from app.services.quota import release_storage
from app.services.share_links import count_share_links, deactivate_links_for_file

logger = logging.getLogger(__name__)


async def get_owned_file(db: AsyncSession, file_id: uuid.UUID, owner_id: uuid.UUID) -> FileRecord:
    result = await db.execute(
        select(FileRecord).where(FileRecord.id == file_id, FileRecord.is_deleted.is_(False))
    )
    file_rec = result.scalar_one_or_none()
    if file_rec is None:
        raise NotFound("File not found")
    if file_rec.user_id != owner_id:
        raise Forbidden("Access denied")
    return file_rec


async def list_files(
    db: AsyncSession,
    owner_id: uuid.UUID,
    limit: int = 50,
    skip: int = 0,
    search: str | None = None,
) -> list[FileRecord]:
    """Owner's live files, newest first, optionally filtered by name or tag."""
    query = (
        select(FileRecord)
        .where(FileRecord.user_id == owner_id, FileRecord.is_deleted.is_(False))
        .order_by(desc(FileRecord.created_at))
        .limit(limit)
        .offset(skip)
    )
    if search:
        pattern = f"%{search}%"
        query = query.where(
            or_(
                FileRecord.name.ilike(pattern),
                cast(FileRecord.tags, String).ilike(pattern),
            )
        )
    result = await db.execute(query)
    return list(result.scalars().all())


async def get_download_url(db: AsyncSession, storage: ObjectStorage, file_rec: FileRecord) -> dict:
    if file_rec.virus_scan_status == SCAN_INFECTED:
        raise Forbidden("File is infected and cannot be downloaded")

    ttl = settings.SIGNED_URL_TTL_SECONDS
    try:
        download_url = await storage.get_signed_download_url(file_rec.storage_key, ttl)
    except Exception as e:
        logger.error(f"Signed URL failed for {file_rec.storage_key}: {e}")
        raise InternalFault("Failed to generate download URL") from e
    file_rec.last_accessed_at = utcnow()
    await db.commit()
    return {
        "download_url": download_url,
        "file_name": file_rec.name,
        "size": file_rec.size_bytes,
        "type": file_rec.mime_type,
        "expires_in": ttl,
    }


async def delete_file(db: AsyncSession, storage: ObjectStorage, file_id: uuid.UUID, owner_id: uuid.UUID) -> None:
    """Remove stored objects, soft-delete the record, close its links and release quota.

    Object deletion is best effort: a storage failure is logged and the
    record is still deleted, which can leave an orphaned object behind.
    """
    file_rec = await get_owned_file(db, file_id, owner_id)

    keys = [file_rec.storage_key]
    thumbnail_key = (file_rec.media_info or {}).get("thumbnail_key")
    if thumbnail_key:
        keys.append(thumbnail_key)
    for key in keys:
        try:
            await storage.delete(key)
        except Exception as e:
            logger.error(f"Storage deletion error for {key} (file {file_id}): {e}")

    now = utcnow()
    tombstone = {"is_deleted": True, "deleted_at": now, "is_shared": False, "share_settings": None, "updated_at": now}
    live = (FileRecord.id == file_rec.id, FileRecord.is_deleted.is_(False))

    # Quarantined files already gave their bytes back; the status is read by the UPDATE itself.
    charged = await db.execute(
        update(FileRecord)
        .where(*live, FileRecord.virus_scan_status != SCAN_INFECTED)
        .values(**tombstone)
        .execution_options(synchronize_session=False)
    )
    if charged.rowcount == 1:
        await release_storage(db, owner_id, file_rec.size_bytes)
    else:
        await db.execute(
            update(FileRecord).where(*live).values(**tombstone).execution_options(synchronize_session=False)
        )
    await deactivate_links_for_file(db, file_rec.id)
    await db.commit()
    logger.info(f"Deleted file {file_id} for user {owner_id}")


async def get_storage_stats(db: AsyncSession, user: User) -> dict:
    live = (FileRecord.user_id == user.id, FileRecord.is_deleted.is_(False))

    totals = await db.execute(
        select(func.count(FileRecord.id), func.coalesce(func.sum(FileRecord.size_bytes), 0)).where(*live)
    )
    total_files, total_size = totals.one()

    by_type = await db.execute(
        select(FileRecord.mime_type, func.count(FileRecord.id)).where(*live).group_by(FileRecord.mime_type)
    )
    shares = await count_share_links(db, user.id)

    percentage = round(user.storage_used / user.storage_limit * 100) if user.storage_limit else 0
    return {
        "storage": {
            "used": user.storage_used,
            "limit": user.storage_limit,
            "percentage": percentage,
        },
        "files": {
            "total": total_files,
            "total_size": int(total_size),
            "by_type": {mime: count for mime, count in by_type.all()},
        },
        "sharing": shares,
    }
