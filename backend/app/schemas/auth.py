"""Pydantic schemas for authentication API."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator


class LoginRequest(BaseModel):
    """Request for login.

    When the account has two-factor enabled, one of ``totp_code`` or
    ``backup_code`` must accompany the password.
    """

    username: str = Field(..., min_length=1, max_length=64)
    password: str = Field(..., min_length=1, max_length=128)
    totp_code: str | None = Field(None, max_length=16)
    backup_code: str | None = Field(None, max_length=32)

    @model_validator(mode="after")
    def _one_second_factor(self) -> "LoginRequest":
        if self.totp_code and self.backup_code:
            raise ValueError("Provide either totp_code or backup_code, not both")
        return self


class UserResponse(BaseModel):
    """Response with user information."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    username: str
    email: str
    role: str
    status: str
    is_first_login: bool
    two_factor_enabled: bool
    last_login_at: datetime | None
    created_at: datetime


class LoginResponse(BaseModel):
    """Response after a login attempt.

    ``two_factor_required`` is returned alone, with no cookies set, when the
    password was right but the second factor is still missing.
    """

    two_factor_required: bool = False
    user: UserResponse | None = None
    csrf_token: str | None = None
    must_change_password: bool = False
    expires_in: int | None = Field(None, description="Access token expiry in seconds")


class RefreshResponse(BaseModel):
    message: str
    expires_in: int = Field(description="Access token expiry in seconds")


class ChangePasswordRequest(BaseModel):
    """Request for password change."""

    current_password: str = Field(..., min_length=1)
    new_password: str = Field(
        ...,
        min_length=12,
        max_length=128,
        description="New password (minimum 12 characters)",
    )


class ChangePasswordResponse(BaseModel):
    message: str
    csrf_token: str


class MessageResponse(BaseModel):
    """Generic message response."""

    message: str


class IdentityResponse(BaseModel):
    """The caller as seen by the gate, plus its expanded permissions."""

    user: UserResponse
    session_id: str
    permissions: dict[str, list[str]]


class SessionResponse(BaseModel):
    session_id: str
    user_id: UUID
    created_at: datetime
    last_activity: datetime
    ip_address: str
    user_agent: str
    is_active: bool
    invalidated_at: datetime | None = None
    is_current: bool = False


class SessionListResponse(BaseModel):
    sessions: list[SessionResponse]
    total: int


class CsrfTokenResponse(BaseModel):
    """A fresh CSRF token for a client that no longer holds the login one."""

    csrf_token: str
