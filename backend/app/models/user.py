"""User model - the credential store behind portal authentication."""

from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import BaseModel


class UserStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class User(BaseModel):
    """Portal back-office user.

    The password is stored as an Argon2id hash only. ``password_version`` is
    embedded in issued tokens and bumped on every password change or reset,
    which makes outstanding refresh tokens unusable. Users are suspended
    rather than deleted.
    """

    __tablename__ = "users"

    username: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    # Value of app.services.rbac.Role
    role: Mapped[str] = mapped_column(String(32), nullable=False, default="editor")
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=UserStatus.ACTIVE.value, index=True
    )

    # Forces the password-change flow on next login
    is_first_login: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    password_version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    # Two-factor authentication
    two_factor_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    two_factor_secret: Mapped[str | None] = mapped_column(String(64), nullable=True)
    two_factor_activated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE.value

    def __repr__(self) -> str:
        return f"<User {self.username} ({self.role})>"
