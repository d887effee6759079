"""Tests for the job queue, background rescans and maintenance jobs"""

from datetime import timedelta

import pytest
from sqlalchemy import select

from app.models.base import utcnow
from app.models.file_record import FileRecord
from app.models.job import Job
from app.models.quota_reservation import QuotaReservation
from app.models.user import User
from app.services.errors import Forbidden
from app.services.file_manager import delete_file, get_download_url
from app.services.job_worker import (
    JOB_HANDLERS,
    MAINTENANCE_JOBS,
    enqueue_job,
    ensure_maintenance_jobs,
    recover_stale_jobs,
    run_pending_jobs,
    safe_error_message,
)
from app.services.share_links import create_share_link, download_shared_file
from app.services.upload_orchestrator import UploadCandidate, run_upload_batch
from app.services.virus_scanner import SimulatedRescanPolicy

MACHO_PAYLOAD = b"\xcf\xfa\xed\xfe\x07\x00\x00\x01 tucked into notes"


async def jobs_of_type(session_factory, job_type):
    async with session_factory() as db:
        result = await db.execute(select(Job).where(Job.job_type == job_type).order_by(Job.created_at))
        return result.scalars().all()


class TestQueue:
    @pytest.mark.asyncio
    async def test_future_jobs_are_not_claimed(self, db, worker_ctx):
        await enqueue_job(db, "reconcile-storage", {}, run_after=utcnow() + timedelta(hours=1))
        await db.commit()
        assert await run_pending_jobs(worker_ctx) == 0

    @pytest.mark.asyncio
    async def test_unknown_job_type_is_marked_failed(self, db, worker_ctx):
        job = await enqueue_job(db, "does-not-exist", {})
        await db.commit()

        assert await run_pending_jobs(worker_ctx) == 1

        await db.refresh(job)
        assert job.status == "failed"
        assert job.error_message == "Unknown job type: does-not-exist"
        assert job.completed_at is not None

    @pytest.mark.asyncio
    async def test_recover_stale_jobs(self, db, session_factory):
        job = Job(job_type="reconcile-storage", params={}, status="running",
                  started_at=utcnow() - timedelta(hours=1))
        db.add(job)
        await db.commit()

        await recover_stale_jobs(session_factory)

        await db.refresh(job)
        assert job.status == "queued"
        assert job.started_at is None

    @pytest.mark.asyncio
    async def test_ensure_maintenance_jobs_is_idempotent(self, session_factory):
        await ensure_maintenance_jobs(session_factory)
        await ensure_maintenance_jobs(session_factory)
        for job_type in MAINTENANCE_JOBS:
            assert len(await jobs_of_type(session_factory, job_type)) == 1

    def test_handlers_registered(self):
        assert {"virus-rescan", "cleanup-expired-shares", "reconcile-storage"} <= set(JOB_HANDLERS)

    def test_safe_error_message(self):
        assert safe_error_message(ValueError("boom")) == "boom"
        assert safe_error_message(TimeoutError()) == "TimeoutError: Job interrupted"


class TestBackgroundRescan:
    @pytest.mark.asyncio
    async def test_rescan_quarantines_infected_file(self, db, storage, user, worker_ctx):
        summary = await run_upload_batch(
            db, storage, user, [UploadCandidate("notes.txt", "text/plain", MACHO_PAYLOAD)], rescan_delay_seconds=0
        )
        file_id = summary["files"][0]["id"]
        record = await db.get(FileRecord, file_id)
        link = await create_share_link(db, file_id, user.id)
        assert record.virus_scan_status == "clean"

        assert await run_pending_jobs(worker_ctx) == 1

        await db.refresh(record)
        await db.refresh(user)
        assert record.virus_scan_status == "infected"
        assert record.virus_scanned_at is not None
        assert not await storage.exists(record.storage_key)
        assert user.storage_used == 0
        assert record.share_settings["allowDownload"] is True
        with pytest.raises(Forbidden):
            await get_download_url(db, storage, record)
        with pytest.raises(Forbidden):
            await download_shared_file(db, storage, link.id)

        job = (await jobs_of_type(worker_ctx.session_factory, "virus-rescan"))[0]
        assert job.status == "completed"
        assert job.result == {"file_id": str(file_id), "result": "infected"}

    @pytest.mark.asyncio
    async def test_clean_rescan_keeps_file(self, db, storage, user, worker_ctx):
        summary = await run_upload_batch(
            db, storage, user, [UploadCandidate("notes.txt", "text/plain", b"plain notes")], rescan_delay_seconds=0
        )
        await run_pending_jobs(worker_ctx)

        record = await db.get(FileRecord, summary["files"][0]["id"])
        await db.refresh(record)
        assert record.virus_scan_status == "clean"
        assert await storage.exists(record.storage_key)

    @pytest.mark.asyncio
    async def test_pluggable_policy(self, db, storage, user, worker_ctx):
        worker_ctx.rescan_policy = SimulatedRescanPolicy(infection_rate=1.0)
        summary = await run_upload_batch(
            db, storage, user, [UploadCandidate("notes.txt", "text/plain", b"plain notes")], rescan_delay_seconds=0
        )
        await run_pending_jobs(worker_ctx)

        record = await db.get(FileRecord, summary["files"][0]["id"])
        await db.refresh(record)
        assert record.virus_scan_status == "infected"

    @pytest.mark.asyncio
    async def test_missing_object_marks_error(self, db, storage, user, worker_ctx):
        summary = await run_upload_batch(
            db, storage, user, [UploadCandidate("notes.txt", "text/plain", b"plain notes")], rescan_delay_seconds=0
        )
        record = await db.get(FileRecord, summary["files"][0]["id"])
        await storage.delete(record.storage_key)

        await run_pending_jobs(worker_ctx)

        await db.refresh(record)
        assert record.virus_scan_status == "error"

    @pytest.mark.asyncio
    async def test_deleted_file_is_skipped(self, db, storage, user, worker_ctx):
        summary = await run_upload_batch(
            db, storage, user, [UploadCandidate("notes.txt", "text/plain", MACHO_PAYLOAD)], rescan_delay_seconds=0
        )
        record = await db.get(FileRecord, summary["files"][0]["id"])
        record.is_deleted = True
        await db.commit()

        await run_pending_jobs(worker_ctx)

        job = (await jobs_of_type(worker_ctx.session_factory, "virus-rescan"))[0]
        assert job.result["result"] == "skipped"

    @pytest.mark.asyncio
    async def test_delete_after_quarantine_from_a_stale_read_releases_once(self, db, storage, user, worker_ctx):
        summary = await run_upload_batch(
            db, storage, user,
            [UploadCandidate("notes.txt", "text/plain", MACHO_PAYLOAD), UploadCandidate("keep.txt", "text/plain", b"k" * 100)],
            rescan_delay_seconds=0,
        )
        infected_id = summary["files"][0]["id"]
        loaded = await db.get(FileRecord, infected_id)
        assert loaded.virus_scan_status == "clean"

        await run_pending_jobs(worker_ctx)
        await delete_file(db, storage, infected_id, user.id)

        await db.refresh(user)
        assert user.storage_used == 100
        deleted = (await db.execute(select(FileRecord.is_deleted).where(FileRecord.id == infected_id))).scalar_one()
        assert deleted is True

    @pytest.mark.asyncio
    async def test_file_deleted_during_rescan_is_not_released_again(
        self, db, session_factory, storage, user, worker_ctx, monkeypatch
    ):
        await run_upload_batch(
            db, storage, user, [UploadCandidate("keep.txt", "text/plain", b"k" * 100)], rescan_delay_seconds=3600
        )
        summary = await run_upload_batch(
            db, storage, user, [UploadCandidate("notes.txt", "text/plain", MACHO_PAYLOAD)], rescan_delay_seconds=0
        )
        infected_id = summary["files"][0]["id"]
        original_get = storage.get

        async def get_then_owner_deletes(key):
            data = await original_get(key)
            async with session_factory() as other:
                await delete_file(other, storage, infected_id, user.id)
            return data

        monkeypatch.setattr(storage, "get", get_then_owner_deletes)

        assert await run_pending_jobs(worker_ctx) == 1

        await db.refresh(user)
        assert user.storage_used == 100
        job = (await jobs_of_type(worker_ctx.session_factory, "virus-rescan"))[-1]
        assert job.result == {"file_id": str(infected_id), "result": "skipped"}


class TestMaintenanceJobs:
    @pytest.mark.asyncio
    async def test_reconcile_storage_repairs_drift(self, db, storage, user, worker_ctx):
        await run_upload_batch(
            db, storage, user, [UploadCandidate("notes.txt", "text/plain", b"x" * 40)], rescan_delay_seconds=3600
        )
        await db.execute(User.__table__.update().where(User.id == user.id).values(storage_used=999))
        await db.commit()
        await enqueue_job(db, "reconcile-storage", {})
        await db.commit()

        assert await run_pending_jobs(worker_ctx) == 1

        await db.refresh(user)
        assert user.storage_used == 40
        runs = await jobs_of_type(worker_ctx.session_factory, "reconcile-storage")
        assert runs[0].result == {"users_checked": 1, "users_corrected": 1}
        assert runs[1].status == "queued"
        assert runs[1].run_after is not None

    @pytest.mark.asyncio
    async def test_reconcile_settles_abandoned_reservation(self, db, user, worker_ctx):
        # A batch reserved 300 bytes, recorded one 40 byte file and died before settling.
        reservation = QuotaReservation(user_id=user.id, num_bytes=300, created_at=utcnow() - timedelta(hours=2))
        db.add(reservation)
        await db.flush()
        db.add(FileRecord(
            user_id=user.id,
            name="notes.txt",
            original_name="notes.txt",
            mime_type="text/plain",
            size_bytes=40,
            storage_key="files/orphan/notes.txt",
            storage_location="local",
            virus_scan_status="clean",
            reservation_id=reservation.id,
        ))
        await db.execute(User.__table__.update().where(User.id == user.id).values(storage_used=300))
        await enqueue_job(db, "reconcile-storage", {})
        await db.commit()

        await run_pending_jobs(worker_ctx)

        await db.refresh(user)
        assert user.storage_used == 40
        assert (await db.execute(select(QuotaReservation))).scalars().all() == []
        assert (await db.execute(select(FileRecord.reservation_id))).scalars().all() == [None]

    @pytest.mark.asyncio
    async def test_open_reservation_is_left_alone(self, db, user, worker_ctx):
        db.add(QuotaReservation(user_id=user.id, num_bytes=70))
        await db.execute(User.__table__.update().where(User.id == user.id).values(storage_used=70))
        await enqueue_job(db, "reconcile-storage", {})
        await db.commit()

        await run_pending_jobs(worker_ctx)

        await db.refresh(user)
        assert user.storage_used == 70
        runs = await jobs_of_type(worker_ctx.session_factory, "reconcile-storage")
        assert runs[0].result == {"users_checked": 1, "users_corrected": 0}

    @pytest.mark.asyncio
    async def test_cleanup_expired_shares(self, db, storage, user, worker_ctx):
        summary = await run_upload_batch(
            db, storage, user, [UploadCandidate("notes.txt", "text/plain", b"hi")], rescan_delay_seconds=3600
        )
        file_id = summary["files"][0]["id"]
        link = await create_share_link(
            db, file_id, user.id, expires_in="1h", now=utcnow() - timedelta(hours=2)
        )
        await enqueue_job(db, "cleanup-expired-shares", {})
        await db.commit()

        await run_pending_jobs(worker_ctx)

        await db.refresh(link)
        record = await db.get(FileRecord, file_id)
        await db.refresh(record)
        assert link.is_active is False
        assert record.is_shared is False
        runs = await jobs_of_type(worker_ctx.session_factory, "cleanup-expired-shares")
        assert runs[0].result == {"deactivated": 1}
        assert runs[1].status == "queued"
