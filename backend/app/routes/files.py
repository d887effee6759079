"""Files API routes."""
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, UploadFile, File as FastAPIFile
from fastapi.responses import FileResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.dependencies import get_current_user, get_current_user_for_download, get_storage
from app.models.file_record import FileRecord
from app.models.user import User
from app.schemas.file import (
    DownloadResponse,
    FileListResponse,
    FileResponse as FileResponseSchema,
    StatsResponse,
    UploadSummary,
)
from app.schemas.share import ShareCreate, ShareCreateResponse
from app.services import file_manager
from app.services.file_storage import LocalObjectStorage, ObjectNotFound, ObjectStorage
from app.services.share_links import ShareDuration, create_share_link
from app.services.upload_orchestrator import DeclaredFile, UploadCandidate, reject_invalid_batch, run_upload_batch

router = APIRouter(prefix="/api/files", tags=["files"])


def _to_response(file_rec: FileRecord) -> dict:
    media_info = file_rec.media_info or {}
    return {
        "id": file_rec.id,
        "name": file_rec.name,
        "size": file_rec.size_bytes,
        "type": file_rec.mime_type,
        "uploaded_at": file_rec.created_at,
        "is_shared": file_rec.is_shared,
        "virus_scan_status": file_rec.virus_scan_status,
        "metadata": media_info,
        "share_settings": file_rec.share_settings,
        "tags": file_rec.tags or [],
        "download_url": f"/api/files/{file_rec.id}/download",
        "thumbnail_url": media_info.get("thumbnail_url"),
    }


@router.post("/upload", response_model=UploadSummary)
async def upload_files(
    files: Optional[list[UploadFile]] = FastAPIFile(None),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    storage: ObjectStorage = Depends(get_storage),
):
    """Upload a batch of files. Per-file blocks are reported, not raised."""
    uploads = files or []
    # Declared sizes are checked before any part is read into memory.
    reject_invalid_batch([
        DeclaredFile(
            name=upload.filename or "unnamed",
            content_type=upload.content_type or "application/octet-stream",
            size=upload.size or 0,
        )
        for upload in uploads
    ])

    candidates = []
    for upload in uploads:
        candidates.append(UploadCandidate(
            name=upload.filename or "unnamed",
            content_type=upload.content_type or "application/octet-stream",
            data=await upload.read(),
        ))
    return await run_upload_batch(db, storage, user, candidates)


@router.get("", response_model=FileListResponse)
async def list_files(
    limit: int = Query(50, ge=1, le=200),
    skip: int = Query(0, ge=0),
    search: Optional[str] = Query(None),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """List the caller's files, newest first."""
    files = await file_manager.list_files(db, user.id, limit=limit, skip=skip, search=search)
    return {
        "files": [_to_response(f) for f in files],
        "pagination": {"limit": limit, "skip": skip, "has_more": len(files) == limit},
    }


@router.get("/stats", response_model=StatsResponse)
async def get_stats(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Storage usage, file counts by type and share counts."""
    return await file_manager.get_storage_stats(db, user)


@router.get("/serve/{key:path}")
async def serve_file(
    key: str,
    token: str = Query(...),
    storage: ObjectStorage = Depends(get_storage),
):
    """Serve bytes behind a signed URL (local storage backend only)."""
    if not isinstance(storage, LocalObjectStorage):
        raise HTTPException(status_code=404, detail="Not found")
    if not storage.verify_download_token(key, token):
        raise HTTPException(status_code=403, detail="Invalid or expired link")
    try:
        meta = await storage.head_metadata(key)
    except (ObjectNotFound, ValueError):
        raise HTTPException(status_code=404, detail="File not found")

    return FileResponse(
        path=storage.local_path(key),
        filename=(meta.metadata or {}).get("originalName") or key.rsplit("/", 1)[-1],
        media_type=meta.content_type,
    )


@router.get("/{file_id}", response_model=FileResponseSchema)
async def get_file_metadata(
    file_id: UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get file metadata by ID."""
    file_rec = await file_manager.get_owned_file(db, file_id, user.id)
    return _to_response(file_rec)


@router.get("/{file_id}/download", response_model=DownloadResponse)
async def download_file(
    file_id: UUID,
    user: User = Depends(get_current_user_for_download),
    db: AsyncSession = Depends(get_db),
    storage: ObjectStorage = Depends(get_storage),
):
    """Return a short-lived signed URL for the file."""
    file_rec = await file_manager.get_owned_file(db, file_id, user.id)
    return await file_manager.get_download_url(db, storage, file_rec)


@router.delete("/{file_id}")
async def delete_file(
    file_id: UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    storage: ObjectStorage = Depends(get_storage),
):
    """Delete a file: objects removed, record soft-deleted, quota released."""
    await file_manager.delete_file(db, storage, file_id, user.id)
    return {"success": True, "id": str(file_id)}


@router.post("/{file_id}/share", response_model=ShareCreateResponse, status_code=201)
async def share_file(
    file_id: UUID,
    body: ShareCreate,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Create a share link for one of the caller's files."""
    link = await create_share_link(
        db,
        file_id,
        user.id,
        password=body.password,
        expires_in=ShareDuration.parse(body.expires_in),
        allow_download=body.allow_download,
        allow_preview=body.allow_preview,
    )
    origin = settings.PUBLIC_BASE_URL.rstrip("/") or str(request.base_url).rstrip("/")
    return {
        "share_url": f"{origin}/shared/{link.id}",
        "share_id": link.id,
        "expires_at": link.expires_at,
    }
