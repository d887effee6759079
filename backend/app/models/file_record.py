"""FileRecord model - file metadata (actual bytes live in object storage)."""
import uuid
from datetime import datetime
from sqlalchemy import String, BigInteger, Boolean, JSON, DateTime, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from app.models.base import Base, TimestampMixin, UserMixin

SCAN_PENDING = "pending"
SCAN_CLEAN = "clean"
SCAN_INFECTED = "infected"
SCAN_ERROR = "error"


class FileRecord(Base, TimestampMixin, UserMixin):
    __tablename__ = "files"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(500), nullable=False, index=True)
    original_name: Mapped[str] = mapped_column(String(500), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    storage_key: Mapped[str] = mapped_column(String(1000), nullable=False, index=True)
    storage_location: Mapped[str] = mapped_column(String(1000), nullable=False)

    # width, height, format, size, checksum, thumbnail_key
    media_info: Mapped[dict] = mapped_column("metadata", JSON, default=dict)

    virus_scan_status: Mapped[str] = mapped_column(String(20), default=SCAN_PENDING, index=True)
    virus_scanned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Read-side cache of the newest active ShareLink. Never consulted for access checks.
    is_shared: Mapped[bool] = mapped_column(Boolean, default=False)
    share_settings: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    # Set while the uploading batch's quota reservation is still open.
    reservation_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)

    tags: Mapped[list] = mapped_column(JSON, default=list)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_accessed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
