"""Password hashing, access tokens and signup/login rules."""
import asyncio
import logging
import re
import uuid
from datetime import timedelta

import bcrypt
from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.base import utcnow
from app.models.user import User
from app.services.errors import Conflict, Unauthorized, ValidationError

logger = logging.getLogger(__name__)

# bcrypt only looks at the first 72 bytes; longer inputs are rejected outright.
BCRYPT_MAX_BYTES = 72

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
SPECIAL_CHARS = re.compile(r"[!@#$%^&*(),.?\":{}|<>]")

# Compared against on unknown-email logins so both paths cost one bcrypt check.
_DUMMY_HASH = bcrypt.hashpw(b"not-a-real-password", bcrypt.gensalt(4)).decode()


def hash_password(password: str, rounds: int | None = None) -> str:
    encoded = password.encode("utf-8")
    if len(encoded) > BCRYPT_MAX_BYTES:
        raise ValidationError(f"Password must be at most {BCRYPT_MAX_BYTES} bytes")
    return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds or settings.BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """Constant-time comparison through bcrypt. Never raises on bad input."""
    encoded = (password or "").encode("utf-8")
    if not encoded or len(encoded) > BCRYPT_MAX_BYTES:
        return False
    try:
        return bcrypt.checkpw(encoded, password_hash.encode("utf-8"))
    except ValueError:
        logger.error("Stored password hash is malformed")
        return False


async def hash_password_async(password: str, rounds: int | None = None) -> str:
    return await asyncio.to_thread(hash_password, password, rounds)


async def verify_password_async(password: str, password_hash: str) -> bool:
    return await asyncio.to_thread(verify_password, password, password_hash)


def create_access_token(user_id: uuid.UUID, email: str) -> str:
    now = utcnow()
    claims = {
        "sub": str(user_id),
        "email": email,
        "iat": now,
        "nbf": now,
        "exp": now + timedelta(days=settings.JWT_EXPIRE_DAYS),
    }
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> dict:
    try:
        claims = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as e:
        logger.info(f"Token verification failed: {e}")
        raise Unauthorized("Invalid token") from e
    if "sub" not in claims:
        raise Unauthorized("Invalid token")
    return claims


def validate_email(email: str) -> bool:
    return bool(EMAIL_PATTERN.match(email))


def validate_password_strength(password: str) -> list[str]:
    errors = []
    if len(password) < 8:
        errors.append("Password must be at least 8 characters long")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"\d", password):
        errors.append("Password must contain at least one number")
    if not SPECIAL_CHARS.search(password):
        errors.append("Password must contain at least one special character")
    return errors


async def get_user_by_email(db: AsyncSession, email: str) -> User | None:
    result = await db.execute(
        select(User).where(User.email == email.lower(), User.is_active.is_(True))
    )
    return result.scalar_one_or_none()


async def signup(db: AsyncSession, name: str, email: str, password: str) -> User:
    name = name.strip()
    email = email.strip().lower()

    if not validate_email(email):
        raise ValidationError("Invalid email format")
    if len(name) < 2:
        raise ValidationError("Name must be at least 2 characters long")
    problems = validate_password_strength(password)
    if problems:
        raise ValidationError("Password does not meet requirements", problems)

    existing = await db.execute(select(User.id).where(User.email == email))
    if existing.scalar_one_or_none() is not None:
        raise Conflict("An account with this email already exists")

    user = User(
        name=name,
        email=email,
        password_hash=await hash_password_async(password),
        storage_used=0,
        storage_limit=settings.DEFAULT_STORAGE_LIMIT,
    )
    db.add(user)
    await db.commit()
    logger.info(f"Created user {user.id}")
    return user


async def login(db: AsyncSession, email: str, password: str) -> User:
    user = await get_user_by_email(db, email)
    if user is None:
        await verify_password_async(password, _DUMMY_HASH)
        raise Unauthorized("Invalid credentials")
    if not await verify_password_async(password, user.password_hash):
        raise Unauthorized("Invalid credentials")

    user.last_login_at = utcnow()
    await db.commit()
    return user
