"""Storage quota accounting.

storage_used only ever moves through single UPDATE statements so that
concurrent batches from the same user cannot lose each other's increments.

An upload batch reserves its whole size up front (the reservation is part of
storage_used from then on), records its files against that reservation, and
settles it at the end by handing back whatever was not stored. Reconciliation
counts open reservations, so it can run in the middle of a batch.
"""
import logging
import uuid
from datetime import timedelta

from sqlalchemy import case, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.base import utcnow
from app.models.file_record import FileRecord, SCAN_INFECTED
from app.models.quota_reservation import QuotaReservation
from app.models.user import User
from app.services.errors import QuotaExceeded

logger = logging.getLogger(__name__)


async def reserve_storage(db: AsyncSession, user_id: uuid.UUID, num_bytes: int) -> uuid.UUID:
    """Hold ``num_bytes`` of the user's quota for one upload batch and commit.

    The limit check and the increment are the same conditional UPDATE.
    Raises QuotaExceeded, with attempted and available byte counts, when the
    hold does not fit.
    """
    result = await db.execute(
        update(User)
        .where(User.id == user_id, User.storage_used + num_bytes <= User.storage_limit)
        .values(storage_used=User.storage_used + num_bytes)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        used, limit = (
            await db.execute(select(User.storage_used, User.storage_limit).where(User.id == user_id))
        ).one()
        raise QuotaExceeded(attempted=num_bytes, available=max(limit - used, 0))

    reservation = QuotaReservation(user_id=user_id, num_bytes=num_bytes)
    db.add(reservation)
    await db.flush()
    reservation_id = reservation.id
    await db.commit()
    return reservation_id


async def settle_reservation(
    db: AsyncSession, user_id: uuid.UUID, reservation_id: uuid.UUID, unused_bytes: int
) -> None:
    """Close a batch's reservation. Caller commits.

    ``unused_bytes`` (blocked and failed files) go back in one UPDATE and the
    batch's records become ordinary charged files.
    """
    await release_storage(db, user_id, unused_bytes)
    await db.execute(
        update(FileRecord)
        .where(FileRecord.reservation_id == reservation_id)
        .values(reservation_id=None)
        .execution_options(synchronize_session=False)
    )
    await db.execute(delete(QuotaReservation).where(QuotaReservation.id == reservation_id))


async def release_storage(db: AsyncSession, user_id: uuid.UUID, num_bytes: int) -> None:
    """Atomically subtract ``num_bytes``, never going below zero. Caller commits."""
    if num_bytes <= 0:
        return
    remaining = User.storage_used - num_bytes
    await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(storage_used=case((remaining < 0, 0), else_=remaining))
        .execution_options(synchronize_session=False)
    )


def expected_storage_used():
    """SQL expression for what a user's storage_used should be, correlated to User."""
    settled = select(func.coalesce(func.sum(FileRecord.size_bytes), 0)).where(
        FileRecord.user_id == User.id,
        FileRecord.reservation_id.is_(None),
        FileRecord.is_deleted.is_(False),
        FileRecord.virus_scan_status != SCAN_INFECTED,
    )
    held = select(func.coalesce(func.sum(QuotaReservation.num_bytes), 0)).where(
        QuotaReservation.user_id == User.id
    )
    # Files of a still-open batch that a delete or a quarantine already gave back.
    returned = select(func.coalesce(func.sum(FileRecord.size_bytes), 0)).where(
        FileRecord.user_id == User.id,
        FileRecord.reservation_id.is_not(None),
        or_(FileRecord.is_deleted.is_(True), FileRecord.virus_scan_status == SCAN_INFECTED),
    )
    return (
        settled.correlate(User).scalar_subquery()
        + held.correlate(User).scalar_subquery()
        - returned.correlate(User).scalar_subquery()
    )


async def reconcile_all_users(db: AsyncSession, stale_after: timedelta = timedelta(hours=1)) -> dict:
    """Bring every user's storage_used back in line with their records and commit.

    Reservations older than ``stale_after`` belong to batches that died before
    settling: their recorded files count as charged and the rest of the hold
    is dropped. User rows are locked first, so quota writes that arrive
    meanwhile wait instead of being overwritten.
    """
    user_ids = (
        await db.execute(select(User.id).order_by(User.id).with_for_update())
    ).scalars().all()

    cutoff = utcnow() - stale_after
    stale = (
        await db.execute(select(QuotaReservation.id).where(QuotaReservation.created_at < cutoff))
    ).scalars().all()
    if stale:
        logger.warning(f"Settling {len(stale)} abandoned quota reservation(s)")
        await db.execute(
            update(FileRecord)
            .where(FileRecord.reservation_id.in_(stale))
            .values(reservation_id=None)
            .execution_options(synchronize_session=False)
        )
        await db.execute(delete(QuotaReservation).where(QuotaReservation.id.in_(stale)))

    expected = expected_storage_used()
    drifted = (
        await db.execute(select(User.id, User.storage_used, expected).where(User.storage_used != expected))
    ).all()
    for user_id, recorded, actual in drifted:
        logger.warning(f"Storage drift for user {user_id}: recorded={recorded} actual={actual}, correcting")
    if drifted:
        await db.execute(
            update(User)
            .where(User.id.in_([row[0] for row in drifted]))
            .values(storage_used=expected)
            .execution_options(synchronize_session=False)
        )
    await db.commit()
    return {"users_checked": len(user_ids), "users_corrected": len(drifted)}
