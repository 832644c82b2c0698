"""Pydantic schemas for the administration API."""

from pydantic import BaseModel, EmailStr, Field

from app.models.user import UserStatus
from app.schemas.auth import UserResponse
from app.services.rbac import Role


class UserCreate(BaseModel):
    username: str = Field(
        ...,
        min_length=3,
        max_length=64,
        pattern=r"^[a-zA-Z][a-zA-Z0-9_.-]*$",
        description="Username (3-64 chars, must start with a letter)",
    )
    email: EmailStr
    password: str = Field(..., min_length=12, max_length=128)
    role: Role = Role.EDITOR


class UserUpdate(BaseModel):
    email: EmailStr | None = None
    role: Role | None = None
    status: UserStatus | None = None


class UserListResponse(BaseModel):
    items: list[UserResponse]
    total: int
    page: int
    page_size: int


class PasswordResetResponse(BaseModel):
    """The temporary password is shown once; the user must change it at login."""

    temporary_password: str
    sessions_revoked: bool = True


class SessionUpdate(BaseModel):
    metadata: dict = Field(default_factory=dict)


class RateLimitResetRequest(BaseModel):
    """Reset one identifier's buckets, or purge idle buckets with ``cleanup``."""

    identifier: str | None = None
    endpoint: str | None = None
    cleanup: bool = False
    max_age_seconds: int = Field(default=3600, ge=0)
