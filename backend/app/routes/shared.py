"""Public share link routes (no login required, except revoke)."""
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import get_current_user, get_storage
from app.models.user import User
from app.schemas.share import SharedDownloadResponse, SharedFileResponse, SharePasswordBody
from app.services.file_storage import ObjectStorage
from app.services.share_links import (
    download_shared_file,
    resolve_share,
    revoke_share_link,
    verify_share_password,
)

router = APIRouter(prefix="/api/shared", tags=["shared"])


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


@router.get("/{share_id}", response_model=SharedFileResponse)
async def get_shared_file(
    share_id: UUID,
    db: AsyncSession = Depends(get_db),
):
    """Landing-page metadata for a shared file. Does not count as an access."""
    return {"file": await resolve_share(db, share_id)}


@router.post("/{share_id}/verify")
async def verify_shared_file(
    share_id: UUID,
    body: Optional[SharePasswordBody] = None,
    db: AsyncSession = Depends(get_db),
):
    """Check the link password."""
    await verify_share_password(db, share_id, body.password if body else None)
    return {"success": True}


@router.post("/{share_id}/download", response_model=SharedDownloadResponse)
async def download_shared(
    share_id: UUID,
    request: Request,
    body: Optional[SharePasswordBody] = None,
    db: AsyncSession = Depends(get_db),
    storage: ObjectStorage = Depends(get_storage),
):
    """Gate a download on expiry, password and download permission."""
    return await download_shared_file(
        db,
        storage,
        share_id,
        password=body.password if body else None,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


@router.delete("/{share_id}")
async def revoke_shared(
    share_id: UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Revoke one of the caller's share links."""
    await revoke_share_link(db, share_id, user.id)
    return {"success": True, "id": str(share_id)}
