"""Share links: expiring, optionally password-protected access to one file.

Link lifecycle: active -> expired | revoked. Both end states refuse every
further access. Expiry is checked against ShareLink.expires_at on every
call; the share_settings snapshot on FileRecord is a read cache, refreshed
on every link mutation and never consulted here.
"""
import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import desc, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.base import as_utc, utcnow
from app.models.file_record import FileRecord, SCAN_INFECTED
from app.models.share_link import ShareAccessLog, ShareLink
from app.services.auth import hash_password_async, verify_password_async
from app.services.errors import Expired, Forbidden, NotFound, Unauthorized, ValidationError
from app.services.file_storage import ObjectStorage

logger = logging.getLogger(__name__)

_DURATION_PATTERN = re.compile(r"^\s*(\d+)\s*([A-Za-z]*)\s*$")


@dataclass(frozen=True)
class ShareDuration:
    """hours(n), days(n) or never. Parsed once at the API boundary."""
    unit: str
    amount: int = 0

    @classmethod
    def hours(cls, n: int) -> "ShareDuration":
        return cls("hours", n)

    @classmethod
    def days(cls, n: int) -> "ShareDuration":
        return cls("days", n)

    @classmethod
    def never(cls) -> "ShareDuration":
        return cls("never")

    @classmethod
    def parse(cls, value: str | None) -> "ShareDuration":
        """Parse "<N>h", "<N>d" or "never". Unknown units are read as days."""
        if value is None or value.strip() == "" or value.strip().lower() == "never":
            return cls.never()
        match = _DURATION_PATTERN.match(value)
        if not match:
            raise ValidationError(f"Invalid expiry duration: {value}")
        amount, unit = int(match.group(1)), match.group(2).lower()
        if amount <= 0:
            raise ValidationError(f"Invalid expiry duration: {value}")
        if unit == "h":
            return cls.hours(amount)
        return cls.days(amount)

    def expires_at(self, now: datetime) -> datetime | None:
        if self.unit == "hours":
            return now + timedelta(hours=self.amount)
        if self.unit == "days":
            return now + timedelta(days=self.amount)
        return None


def is_expired(link: ShareLink, now: datetime | None = None) -> bool:
    expires_at = as_utc(link.expires_at)
    return expires_at is not None and expires_at <= (now or utcnow())


def _snapshot(link: ShareLink) -> dict:
    expires_at = as_utc(link.expires_at)
    return {
        "shareId": str(link.id),
        "expiresAt": expires_at.isoformat() if expires_at else None,
        "allowDownload": link.allow_download,
        "allowPreview": link.allow_preview,
        "requiresPassword": link.password_hash is not None,
    }


async def refresh_share_snapshot(db: AsyncSession, file_rec: FileRecord, now: datetime | None = None) -> None:
    """Point the file's snapshot at its newest live link, or clear it."""
    now = now or utcnow()
    result = await db.execute(
        select(ShareLink)
        .where(
            ShareLink.file_id == file_rec.id,
            ShareLink.is_active.is_(True),
            or_(ShareLink.expires_at.is_(None), ShareLink.expires_at > now),
        )
        .order_by(desc(ShareLink.created_at))
        .limit(1)
    )
    link = result.scalar_one_or_none()
    file_rec.is_shared = link is not None
    file_rec.share_settings = _snapshot(link) if link is not None else None


async def _get_live_file(db: AsyncSession, file_id: uuid.UUID) -> FileRecord | None:
    result = await db.execute(
        select(FileRecord).where(FileRecord.id == file_id, FileRecord.is_deleted.is_(False))
    )
    return result.scalar_one_or_none()


async def _get_active_link(db: AsyncSession, share_id: uuid.UUID) -> ShareLink:
    result = await db.execute(
        select(ShareLink).where(ShareLink.id == share_id, ShareLink.is_active.is_(True))
    )
    link = result.scalar_one_or_none()
    if link is None:
        raise NotFound("Share link not found")
    return link


def _check_not_expired(link: ShareLink, now: datetime):
    if is_expired(link, now):
        raise Expired("Share link has expired")


async def _check_password(link: ShareLink, password: str | None):
    if link.password_hash is None:
        return
    if not password or not await verify_password_async(password, link.password_hash):
        raise Unauthorized("Invalid password")


async def create_share_link(
    db: AsyncSession,
    file_id: uuid.UUID,
    owner_id: uuid.UUID,
    password: str | None = None,
    expires_in: ShareDuration | str | None = None,
    allow_download: bool = True,
    allow_preview: bool = True,
    now: datetime | None = None,
) -> ShareLink:
    """Create a link for a file the caller owns and refresh the file's snapshot."""
    now = now or utcnow()
    duration = expires_in if isinstance(expires_in, ShareDuration) else ShareDuration.parse(expires_in)

    file_rec = await _get_live_file(db, file_id)
    if file_rec is None:
        raise NotFound("File not found")
    if file_rec.user_id != owner_id:
        raise Forbidden("Access denied")
    if file_rec.virus_scan_status == SCAN_INFECTED:
        raise Forbidden("File is infected and cannot be shared")

    password_hash = None
    if password:
        password_hash = await hash_password_async(password, settings.SHARE_PASSWORD_BCRYPT_ROUNDS)

    link = ShareLink(
        file_id=file_rec.id,
        user_id=owner_id,
        password_hash=password_hash,
        expires_at=duration.expires_at(now),
        allow_download=allow_download,
        allow_preview=allow_preview,
        access_count=0,
        is_active=True,
        created_at=now,
    )
    db.add(link)
    await db.flush()

    file_rec.is_shared = True
    file_rec.share_settings = _snapshot(link)
    await db.commit()
    logger.info(f"Created share link {link.id} for file {file_rec.id} (expires {link.expires_at})")
    return link


async def resolve_share(db: AsyncSession, share_id: uuid.UUID, now: datetime | None = None) -> dict:
    """Public landing-page view of a shared file. Read-only; never counts as an access."""
    now = now or utcnow()
    link = await _get_active_link(db, share_id)
    _check_not_expired(link, now)

    file_rec = await _get_live_file(db, link.file_id)
    if file_rec is None:
        raise NotFound("File not found")

    media_info = file_rec.media_info or {}
    return {
        "id": file_rec.id,
        "name": file_rec.name,
        "size": file_rec.size_bytes,
        "type": file_rec.mime_type,
        "uploaded_at": file_rec.created_at,
        "thumbnail_url": media_info.get("thumbnail_url") if link.allow_preview else None,
        "allow_download": link.allow_download,
        "allow_preview": link.allow_preview,
        "requires_password": link.password_hash is not None,
        "expires_at": as_utc(link.expires_at),
        "virus_scan_status": file_rec.virus_scan_status,
    }


async def verify_share_password(
    db: AsyncSession,
    share_id: uuid.UUID,
    password: str | None,
    now: datetime | None = None,
) -> bool:
    """Check a password against the link. Succeeds trivially for unprotected links."""
    now = now or utcnow()
    link = await _get_active_link(db, share_id)
    _check_not_expired(link, now)
    await _check_password(link, password)
    return True


async def download_shared_file(
    db: AsyncSession,
    storage: ObjectStorage,
    share_id: uuid.UUID,
    password: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    now: datetime | None = None,
) -> dict:
    """Grant a download through a link.

    Expiry, password and download permission are each checked on every call.
    A granted access bumps access_count and appends one access-log row in the
    same transaction.
    """
    now = now or utcnow()
    link = await _get_active_link(db, share_id)
    _check_not_expired(link, now)
    await _check_password(link, password)
    if not link.allow_download:
        raise Forbidden("Download not allowed")

    file_rec = await _get_live_file(db, link.file_id)
    if file_rec is None:
        raise NotFound("File not found")
    if file_rec.virus_scan_status == SCAN_INFECTED:
        raise Forbidden("File is infected and cannot be downloaded")

    await db.execute(
        update(ShareLink)
        .where(ShareLink.id == link.id)
        .values(access_count=ShareLink.access_count + 1, last_accessed_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.add(ShareAccessLog(
        share_link_id=link.id,
        accessed_at=now,
        ip_address=ip_address,
        user_agent=(user_agent or "")[:500] or None,
    ))
    file_rec.last_accessed_at = now
    await db.commit()
    await db.refresh(link)

    ttl = settings.SIGNED_URL_TTL_SECONDS
    download_url = await storage.get_signed_download_url(file_rec.storage_key, ttl)
    return {
        "download_url": download_url,
        "file_name": file_rec.name,
        "size": file_rec.size_bytes,
        "type": file_rec.mime_type,
        "expires_in": ttl,
        "access_count": link.access_count,
    }


async def revoke_share_link(db: AsyncSession, share_id: uuid.UUID, owner_id: uuid.UUID) -> None:
    link = await _get_active_link(db, share_id)
    if link.user_id != owner_id:
        raise Forbidden("Access denied")
    link.is_active = False
    await db.flush()

    file_rec = await _get_live_file(db, link.file_id)
    if file_rec is not None:
        await refresh_share_snapshot(db, file_rec)
    await db.commit()
    logger.info(f"Revoked share link {share_id}")


async def deactivate_links_for_file(db: AsyncSession, file_id: uuid.UUID) -> int:
    """Deactivate every link to a file. Caller commits."""
    result = await db.execute(
        update(ShareLink)
        .where(ShareLink.file_id == file_id, ShareLink.is_active.is_(True))
        .values(is_active=False, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def deactivate_expired_links(db: AsyncSession, now: datetime | None = None) -> int:
    """Deactivate links past expiry and refresh the affected snapshots. Caller commits."""
    now = now or utcnow()
    result = await db.execute(
        select(ShareLink).where(
            ShareLink.is_active.is_(True),
            ShareLink.expires_at.is_not(None),
            ShareLink.expires_at <= now,
        )
    )
    expired = result.scalars().all()
    for link in expired:
        link.is_active = False
    await db.flush()

    for file_id in {link.file_id for link in expired}:
        file_rec = await _get_live_file(db, file_id)
        if file_rec is not None:
            await refresh_share_snapshot(db, file_rec, now)
    return len(expired)


async def get_share_access_log(db: AsyncSession, share_id: uuid.UUID) -> list[ShareAccessLog]:
    result = await db.execute(
        select(ShareAccessLog)
        .where(ShareAccessLog.share_link_id == share_id)
        .order_by(ShareAccessLog.id)
    )
    return list(result.scalars().all())


async def count_share_links(db: AsyncSession, owner_id: uuid.UUID, now: datetime | None = None) -> dict:
    now = now or utcnow()
    total = await db.execute(
        select(func.count(ShareLink.id)).where(ShareLink.user_id == owner_id)
    )
    active = await db.execute(
        select(func.count(ShareLink.id)).where(
            ShareLink.user_id == owner_id,
            ShareLink.is_active.is_(True),
            or_(ShareLink.expires_at.is_(None), ShareLink.expires_at > now),
        )
    )
    return {"total_shares": total.scalar_one(), "active_shares": active.scalar_one()}
