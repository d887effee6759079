"""Background job worker.

Polls the jobs table for due 'queued' jobs and processes them.
Runs as an asyncio task within the FastAPI process; jobs are rows, so a
rescan queued before a restart is picked up after it.

For production scale: run worker_loop() in a separate process against the
same database. Claims are conditional updates, so several workers can share
the queue.
"""
import asyncio
import logging
import traceback
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.base import utcnow
from app.models.job import Job
from app.services.file_storage import ObjectStorage

logger = logging.getLogger(__name__)

MAINTENANCE_JOBS = ("cleanup-expired-shares", "reconcile-storage")


@dataclass
class WorkerContext:
    """Handles the worker needs; built once at startup."""
    session_factory: async_sessionmaker
    storage: ObjectStorage
    rescan_policy: object
    poll_interval: float = 5.0
    share_cleanup_interval: timedelta = timedelta(minutes=60)
    storage_reconcile_interval: timedelta = timedelta(days=1)
    quota_reservation_ttl: timedelta = timedelta(hours=1)


async def enqueue_job(
    db: AsyncSession,
    job_type: str,
    params: dict,
    user_id: uuid.UUID | None = None,
    run_after: datetime | None = None,
) -> Job:
    """Add a job row to the session. Caller commits."""
    job = Job(job_type=job_type, params=params, user_id=user_id, run_after=run_after, status="queued")
    db.add(job)
    return job


async def recover_stale_jobs(session_factory: async_sessionmaker, stale_minutes: int = 15):
    """Requeue jobs stuck in 'running' for longer than `stale_minutes`.

    Call on startup to recover from process crashes that left jobs stranded.
    Every handler re-reads current state, so running one twice is harmless.
    """
    cutoff = utcnow() - timedelta(minutes=stale_minutes)
    async with session_factory() as db:
        result = await db.execute(
            select(Job).where(
                and_(
                    Job.status == "running",
                    Job.started_at < cutoff,
                )
            )
        )
        stale_jobs = result.scalars().all()
        for job in stale_jobs:
            logger.warning(f"Requeued stale job {job.id} (type={job.job_type}, started at {job.started_at})")
            job.status = "queued"
            job.started_at = None
        if stale_jobs:
            await db.commit()
            logger.info(f"Recovered {len(stale_jobs)} stale job(s)")


async def ensure_maintenance_jobs(session_factory: async_sessionmaker):
    """Queue one instance of each recurring maintenance job if none is pending."""
    async with session_factory() as db:
        for job_type in MAINTENANCE_JOBS:
            pending = await db.execute(
                select(Job.id)
                .where(Job.job_type == job_type, Job.status.in_(["queued", "running"]))
                .limit(1)
            )
            if pending.scalar_one_or_none() is None:
                await enqueue_job(db, job_type, {})
                logger.info(f"Scheduled maintenance job {job_type}")
        await db.commit()


def safe_error_message(e: Exception, fallback: str = "Job interrupted") -> str:
    """Extract a meaningful error message from an exception.

    Some exceptions produce an empty str(e). This helper falls back to the
    exception class name.
    """
    msg = str(e).strip()
    if not msg:
        msg = f"{type(e).__name__}: {fallback}"
    return msg


# Job handler registry - add new job types here
JOB_HANDLERS = {}


def register_job_handler(job_type: str):
    """Decorator to register a job handler function."""
    def decorator(func):
        JOB_HANDLERS[job_type] = func
        return func
    return decorator


async def process_job(ctx: WorkerContext, job_id, job_type: str, params: dict) -> dict:
    """Dispatch job to the appropriate handler."""
    handler = JOB_HANDLERS.get(job_type)
    if not handler:
        raise ValueError(f"Unknown job type: {job_type}")
    return await handler(ctx, job_id, params)


async def _claim_next_job(db: AsyncSession) -> Job | None:
    """Pick the oldest due queued job and mark it running, or return None."""
    now = utcnow()
    result = await db.execute(
        select(Job)
        .where(Job.status == "queued")
        .where(or_(Job.run_after.is_(None), Job.run_after <= now))
        .order_by(Job.created_at)
        .limit(1)
    )
    job = result.scalar_one_or_none()
    if job is None:
        return None

    claimed = await db.execute(
        update(Job)
        .where(Job.id == job.id, Job.status == "queued")
        .values(status="running", started_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if claimed.rowcount != 1:
        # another worker got there first
        return None
    await db.refresh(job)
    return job


async def _mark_failed(ctx: WorkerContext, job_id, e: Exception):
    # Retry up to 3 times so a transient DB error doesn't
    # leave the job stuck in "running" forever.
    for attempt in range(3):
        try:
            async with ctx.session_factory() as db2:
                j = await db2.get(Job, job_id)
                if j and j.status != "completed":
                    j.status = "failed"
                    j.error_message = safe_error_message(e)[:2000]
                    j.completed_at = utcnow()
                    await db2.commit()
            break
        except Exception as db_err:
            logger.error(
                f"Failed to mark job {job_id} as failed "
                f"(attempt {attempt + 1}/3): {db_err}"
            )
            if attempt < 2:
                await asyncio.sleep(1)


async def run_pending_jobs(ctx: WorkerContext, limit: int | None = None) -> int:
    """Process due jobs until none are left (or `limit` is reached). Returns the count."""
    processed = 0
    while limit is None or processed < limit:
        async with ctx.session_factory() as db:
            job = await _claim_next_job(db)
            if job is None:
                break

            logger.info(f"Processing job {job.id} (type={job.job_type})")
            try:
                result_data = await process_job(ctx, job.id, job.job_type, job.params or {})
                job.status = "completed"
                job.result = result_data or {}
                job.completed_at = utcnow()
                await db.commit()
                logger.info(f"Job {job.id} completed")
            except Exception as e:
                logger.error(f"Job {job.id} failed: {e}")
                logger.error(traceback.format_exc())
                await db.rollback()
                await _mark_failed(ctx, job.id, e)
        processed += 1
    return processed


async def worker_loop(ctx: WorkerContext):
    """Main worker loop. Polls for due jobs every `poll_interval` seconds."""
    logger.info("Job worker started")
    while True:
        try:
            await run_pending_jobs(ctx)
        except Exception as e:
            logger.error(f"Worker loop error: {e}")

        await asyncio.sleep(ctx.poll_interval)


# ── Job Handlers ─────────────────────────────────────────────────

@register_job_handler("virus-rescan")
async def handle_virus_rescan(ctx: WorkerContext, job_id, params: dict) -> dict:
    """Re-scan a stored file and quarantine it if the policy flags it."""
    from app.services.virus_scanner import run_background_rescan

    return await run_background_rescan(
        ctx.session_factory,
        ctx.storage,
        ctx.rescan_policy,
        uuid.UUID(params["file_id"]),
    )


@register_job_handler("cleanup-expired-shares")
async def handle_cleanup_expired_shares(ctx: WorkerContext, job_id, params: dict) -> dict:
    """Deactivate share links past their expiry, then schedule the next run."""
    from app.services.share_links import deactivate_expired_links

    async with ctx.session_factory() as db:
        count = await deactivate_expired_links(db)
        await enqueue_job(
            db, "cleanup-expired-shares", {}, run_after=utcnow() + ctx.share_cleanup_interval
        )
        await db.commit()
    logger.info(f"Cleaned up {count} expired share links")
    return {"deactivated": count}


@register_job_handler("reconcile-storage")
async def handle_reconcile_storage(ctx: WorkerContext, job_id, params: dict) -> dict:
    """Recompute every user's storage_used from their files, then schedule the next run."""
    from app.services.quota import reconcile_all_users

    async with ctx.session_factory() as db:
        summary = await reconcile_all_users(db, stale_after=ctx.quota_reservation_ttl)
        await enqueue_job(
            db, "reconcile-storage", {}, run_after=utcnow() + ctx.storage_reconcile_interval
        )
        await db.commit()
    return summary
