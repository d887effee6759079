"""Share link request/response schemas."""
import uuid
from typing import Optional

from app.schemas.base import CamelModel, UtcDatetime


class ShareCreate(CamelModel):
    password: Optional[str] = None
    expires_in: Optional[str] = None  # "24h", "7d", "never"
    allow_download: bool = True
    allow_preview: bool = True


class ShareCreateResponse(CamelModel):
    share_url: str
    share_id: uuid.UUID
    expires_at: Optional[UtcDatetime] = None


class SharedFile(CamelModel):
    id: uuid.UUID
    name: str
    size: int
    type: str
    uploaded_at: UtcDatetime
    thumbnail_url: Optional[str] = None
    allow_download: bool
    allow_preview: bool
    requires_password: bool
    expires_at: Optional[UtcDatetime] = None
    virus_scan_status: str


class SharedFileResponse(CamelModel):
    file: SharedFile


class SharePasswordBody(CamelModel):
    password: Optional[str] = None


class SharedDownloadResponse(CamelModel):
    download_url: str
    file_name: str
    size: int
    type: str
    expires_in: int
    access_count: int
