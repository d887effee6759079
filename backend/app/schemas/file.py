"""File request/response schemas."""
import uuid
from typing import Optional

from app.schemas.base import CamelModel, CamelORMModel, UtcDatetime


class FileResponse(CamelORMModel):
    id: uuid.UUID
    name: str
    size: int
    type: str
    uploaded_at: UtcDatetime
    is_shared: bool
    virus_scan_status: str
    metadata: dict = {}
    share_settings: Optional[dict] = None
    tags: list[str] = []
    download_url: str
    thumbnail_url: Optional[str] = None


class UploadedFile(CamelModel):
    id: uuid.UUID
    name: str
    size: int
    type: str
    uploaded_at: UtcDatetime
    download_url: str
    thumbnail_url: Optional[str] = None
    is_shared: bool = False
    virus_scan_status: str


class BlockedFile(CamelModel):
    name: str
    reason: str
    size: int


class UploadSummary(CamelModel):
    success: bool = True
    files: list[UploadedFile]
    uploaded_count: int
    blocked_count: int
    blocked_files: list[BlockedFile]
    total_size: int
    message: str


class Pagination(CamelModel):
    limit: int
    skip: int
    has_more: bool


class FileListResponse(CamelModel):
    files: list[FileResponse]
    pagination: Pagination


class DownloadResponse(CamelModel):
    download_url: str
    file_name: str
    size: int
    type: str
    expires_in: int


class StorageUsage(CamelModel):
    used: int
    limit: int
    percentage: int


class FileCounts(CamelModel):
    total: int
    total_size: int
    by_type: dict[str, int]


class SharingCounts(CamelModel):
    total_shares: int
    active_shares: int


class StatsResponse(CamelModel):
    storage: StorageUsage
    files: FileCounts
    sharing: SharingCounts
