"""Signup, login and current-user routes."""
from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.dependencies import AUTH_COOKIE, get_current_user
from app.models.user import User
from app.schemas.auth import AuthResponse, LoginRequest, SignupRequest, UserResponse
from app.services import auth as auth_service

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _issue(response: Response, user: User) -> dict:
    token = auth_service.create_access_token(user.id, user.email)
    response.set_cookie(
        AUTH_COOKIE,
        token,
        httponly=True,
        secure=settings.COOKIE_SECURE,
        samesite="strict",
        max_age=settings.JWT_EXPIRE_DAYS * 24 * 60 * 60,
    )
    return {"user": UserResponse.model_validate(user), "token": token}


@router.post("/signup", response_model=AuthResponse, status_code=201)
async def signup(
    body: SignupRequest,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    """Create an account and log it in."""
    user = await auth_service.signup(db, body.name, body.email, body.password)
    return _issue(response, user)


@router.post("/login", response_model=AuthResponse)
async def login(
    body: LoginRequest,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    """Exchange credentials for a token."""
    user = await auth_service.login(db, body.email, body.password)
    return _issue(response, user)


@router.get("/me", response_model=UserResponse)
async def me(user: User = Depends(get_current_user)):
    return user
