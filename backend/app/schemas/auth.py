"""Auth request/response schemas."""
import uuid

from app.schemas.base import CamelModel, CamelORMModel


class SignupRequest(CamelModel):
    name: str
    email: str
    password: str


class LoginRequest(CamelModel):
    email: str
    password: str


class UserResponse(CamelORMModel):
    id: uuid.UUID
    email: str
    name: str
    storage_used: int
    storage_limit: int


class AuthResponse(CamelModel):
    user: UserResponse
    token: str
