# Portal gate Pydantic schemas
from app.schemas.admin import (
    PasswordResetResponse,
    RateLimitResetRequest,
    SessionUpdate,
    UserCreate,
    UserListResponse,
    UserUpdate,
)
from app.schemas.auth import (
    ChangePasswordRequest,
    ChangePasswordResponse,
    IdentityResponse,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    RefreshResponse,
    SessionListResponse,
    SessionResponse,
    UserResponse,
)
from app.schemas.two_factor import (
    BackupCodesResponse,
    TwoFactorConfirmRequest,
    TwoFactorEnableRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    TwoFactorVerifyRequest,
)

__all__ = [
    "BackupCodesResponse",
    "ChangePasswordRequest",
    "ChangePasswordResponse",
    "IdentityResponse",
    "LoginRequest",
    "LoginResponse",
    "MessageResponse",
    "PasswordResetResponse",
    "RateLimitResetRequest",
    "RefreshResponse",
    "SessionListResponse",
    "SessionResponse",
    "SessionUpdate",
    "TwoFactorConfirmRequest",
    "TwoFactorEnableRequest",
    "TwoFactorSetupResponse",
    "TwoFactorStatusResponse",
    "TwoFactorVerifyRequest",
    "UserCreate",
    "UserListResponse",
    "UserResponse",
    "UserUpdate",
]
