"""Tests for share link creation, gating and bookkeeping"""

import uuid
from datetime import timedelta

import pytest
from sqlalchemy import select

from app.models.base import as_utc, utcnow
from app.models.file_record import FileRecord, SCAN_INFECTED
from app.models.share_link import ShareLink
from app.services.errors import Expired, Forbidden, NotFound, Unauthorized, ValidationError
from app.services.share_links import (
    ShareDuration,
    create_share_link,
    deactivate_expired_links,
    download_shared_file,
    get_share_access_log,
    resolve_share,
    revoke_share_link,
    verify_share_password,
)


async def make_file(db, storage, owner, name="doc.pdf", data=b"%PDF-1.7 body"):
    key = f"files/{owner.id}/1-{name}"
    stored = await storage.put(key, data, "application/pdf")
    record = FileRecord(
        user_id=owner.id,
        name=name,
        original_name=name,
        mime_type="application/pdf",
        size_bytes=len(data),
        storage_key=key,
        storage_location=stored.location,
        media_info={"size": len(data)},
        virus_scan_status="clean",
        tags=[],
    )
    db.add(record)
    await db.commit()
    return record


class TestShareDuration:
    @pytest.mark.parametrize("raw, expected", [
        ("1h", ShareDuration.hours(1)),
        ("24h", ShareDuration.hours(24)),
        ("7d", ShareDuration.days(7)),
        ("3w", ShareDuration.days(3)),
        ("5", ShareDuration.days(5)),
        ("never", ShareDuration.never()),
        ("", ShareDuration.never()),
        (None, ShareDuration.never()),
    ])
    def test_parse(self, raw, expected):
        assert ShareDuration.parse(raw) == expected

    @pytest.mark.parametrize("raw", ["soon", "-1h", "0d", "h"])
    def test_parse_rejects_garbage(self, raw):
        with pytest.raises(ValidationError):
            ShareDuration.parse(raw)

    def test_expires_at(self):
        now = utcnow()
        assert ShareDuration.hours(2).expires_at(now) == now + timedelta(hours=2)
        assert ShareDuration.never().expires_at(now) is None


class TestCreateShareLink:
    @pytest.mark.asyncio
    async def test_one_hour_window(self, db, storage, user):
        record = await make_file(db, storage, user)
        now = utcnow()

        link = await create_share_link(db, record.id, user.id, expires_in="1h")

        expires_at = as_utc(link.expires_at)
        assert now + timedelta(minutes=59) <= expires_at <= now + timedelta(minutes=61)

    @pytest.mark.asyncio
    async def test_never_expiring_link_stays_usable(self, db, storage, user):
        record = await make_file(db, storage, user)
        link = await create_share_link(db, record.id, user.id, expires_in="never")

        assert link.expires_at is None
        far_future = utcnow() + timedelta(days=3650)
        info = await download_shared_file(db, storage, link.id, now=far_future)
        assert info["access_count"] == 1

    @pytest.mark.asyncio
    async def test_snapshot_is_written_without_password_hash(self, db, storage, user):
        record = await make_file(db, storage, user)
        link = await create_share_link(db, record.id, user.id, password="secret123", allow_download=False)

        await db.refresh(record)
        assert record.is_shared
        assert record.share_settings["shareId"] == str(link.id)
        assert record.share_settings["requiresPassword"] is True
        assert record.share_settings["allowDownload"] is False
        assert "secret123" not in str(record.share_settings)
        assert link.password_hash not in str(record.share_settings)

    @pytest.mark.asyncio
    async def test_only_owner_can_share(self, db, storage, user, other_user):
        record = await make_file(db, storage, user)
        with pytest.raises(Forbidden):
            await create_share_link(db, record.id, other_user.id)

    @pytest.mark.asyncio
    async def test_infected_file_cannot_be_shared(self, db, storage, user):
        record = await make_file(db, storage, user)
        record.virus_scan_status = SCAN_INFECTED
        await db.commit()
        with pytest.raises(Forbidden):
            await create_share_link(db, record.id, user.id)

    @pytest.mark.asyncio
    async def test_unknown_file(self, db, user):
        with pytest.raises(NotFound):
            await create_share_link(db, uuid.uuid4(), user.id)


class TestResolveAndDownload:
    @pytest.mark.asyncio
    async def test_resolve_is_idempotent(self, db, storage, user):
        record = await make_file(db, storage, user)
        link = await create_share_link(db, record.id, user.id)

        first = await resolve_share(db, link.id)
        second = await resolve_share(db, link.id)

        assert first == second
        await db.refresh(link)
        assert link.access_count == 0

    @pytest.mark.asyncio
    async def test_password_protected_flow(self, db, storage, user):
        record = await make_file(db, storage, user)
        link = await create_share_link(db, record.id, user.id, password="secret123")

        with pytest.raises(Unauthorized):
            await verify_share_password(db, link.id, "wrong")
        assert await verify_share_password(db, link.id, "secret123") is True

        info = await download_shared_file(db, storage, link.id, password="secret123", ip_address="10.0.0.1")

        assert info["access_count"] == 1
        assert info["file_name"] == "doc.pdf"
        assert "/api/files/serve/" in info["download_url"]
        log = await get_share_access_log(db, link.id)
        assert [entry.ip_address for entry in log] == ["10.0.0.1"]

    @pytest.mark.asyncio
    async def test_download_without_password_is_unauthorized(self, db, storage, user):
        record = await make_file(db, storage, user)
        link = await create_share_link(db, record.id, user.id, password="secret123")
        with pytest.raises(Unauthorized):
            await download_shared_file(db, storage, link.id)

    @pytest.mark.asyncio
    async def test_expired_link(self, db, storage, user):
        record = await make_file(db, storage, user)
        link = await create_share_link(db, record.id, user.id, expires_in="1h", password="secret123")
        later = utcnow() + timedelta(hours=2)

        with pytest.raises(Expired):
            await resolve_share(db, link.id, now=later)
        # Expiry wins over a wrong password.
        with pytest.raises(Expired):
            await download_shared_file(db, storage, link.id, password="wrong", now=later)

    @pytest.mark.asyncio
    async def test_download_disabled(self, db, storage, user):
        record = await make_file(db, storage, user)
        link = await create_share_link(db, record.id, user.id, allow_download=False)
        with pytest.raises(Forbidden, match="Download not allowed"):
            await download_shared_file(db, storage, link.id)

    @pytest.mark.asyncio
    async def test_infected_file_blocks_download_despite_cached_settings(self, db, storage, user):
        record = await make_file(db, storage, user)
        link = await create_share_link(db, record.id, user.id)
        record.virus_scan_status = SCAN_INFECTED
        await db.commit()

        assert record.share_settings["allowDownload"] is True
        with pytest.raises(Forbidden):
            await download_shared_file(db, storage, link.id)

    @pytest.mark.asyncio
    async def test_access_count_accumulates(self, db, storage, user):
        record = await make_file(db, storage, user)
        link = await create_share_link(db, record.id, user.id)
        for _ in range(3):
            info = await download_shared_file(db, storage, link.id)
        assert info["access_count"] == 3
        assert len(await get_share_access_log(db, link.id)) == 3


class TestLinkLifecycle:
    @pytest.mark.asyncio
    async def test_revoke(self, db, storage, user, other_user):
        record = await make_file(db, storage, user)
        link = await create_share_link(db, record.id, user.id)

        with pytest.raises(Forbidden):
            await revoke_share_link(db, link.id, other_user.id)
        await revoke_share_link(db, link.id, user.id)

        with pytest.raises(NotFound):
            await resolve_share(db, link.id)
        await db.refresh(record)
        assert record.is_shared is False
        assert record.share_settings is None

    @pytest.mark.asyncio
    async def test_revoking_newest_falls_back_to_older_link(self, db, storage, user):
        record = await make_file(db, storage, user)
        older = await create_share_link(db, record.id, user.id, now=utcnow() - timedelta(minutes=5))
        newer = await create_share_link(db, record.id, user.id)

        await revoke_share_link(db, newer.id, user.id)

        await db.refresh(record)
        assert record.share_settings["shareId"] == str(older.id)

    @pytest.mark.asyncio
    async def test_deactivate_expired_links(self, db, storage, user):
        record = await make_file(db, storage, user)
        expiring = await create_share_link(db, record.id, user.id, expires_in="1h")
        lasting = await create_share_link(db, record.id, user.id, expires_in="never")

        count = await deactivate_expired_links(db, now=utcnow() + timedelta(hours=2))
        await db.commit()

        assert count == 1
        links = {l.id: l for l in (await db.execute(select(ShareLink))).scalars().all()}
        assert links[expiring.id].is_active is False
        assert links[lasting.id].is_active is True
        await db.refresh(record)
        assert record.share_settings["shareId"] == str(lasting.id)
