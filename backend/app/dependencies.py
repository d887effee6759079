"""Request-scoped dependencies: object storage handle and the authenticated user.

The storage backend is built once in the lifespan and kept on app.state;
tests swap it through app.dependency_overrides[get_storage].
"""
import uuid

from fastapi import Depends, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.models.user import User
from app.services.auth import decode_access_token
from app.services.errors import NotFound, Unauthorized
from app.services.file_storage import ObjectStorage

AUTH_COOKIE = "auth-token"


def get_storage(request: Request) -> ObjectStorage:
    return request.app.state.storage


def _extract_token(request: Request, allow_query: bool = False) -> str | None:
    header = request.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    token = request.cookies.get(AUTH_COOKIE)
    if token:
        return token
    if allow_query:
        return request.query_params.get("token")
    return None


async def _load_user(db: AsyncSession, token: str | None) -> User:
    if not token:
        raise Unauthorized("Unauthorized")
    claims = decode_access_token(token)
    try:
        user_id = uuid.UUID(claims["sub"])
    except ValueError as e:
        raise Unauthorized("Invalid token") from e

    result = await db.execute(
        select(User).where(User.id == user_id, User.is_active.is_(True))
    )
    user = result.scalar_one_or_none()
    if user is None:
        raise NotFound("User not found")
    return user


async def get_current_user(request: Request, db: AsyncSession = Depends(get_db)) -> User:
    return await _load_user(db, _extract_token(request))


async def get_current_user_for_download(request: Request, db: AsyncSession = Depends(get_db)) -> User:
    """Like get_current_user, but also accepts ?token= so plain links work."""
    return await _load_user(db, _extract_token(request, allow_query=True))
