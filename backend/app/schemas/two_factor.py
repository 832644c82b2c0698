"""Pydantic schemas for two-factor authentication API."""

from datetime import datetime

from pydantic import BaseModel, Field


class TwoFactorStatusResponse(BaseModel):
    enabled: bool
    activated_at: datetime | None
    backup_codes_remaining: int


class TwoFactorSetupResponse(BaseModel):
    """Fresh secret for enrolment. Nothing is stored until it is confirmed."""

    secret: str
    otp_uri: str


class TwoFactorEnableRequest(BaseModel):
    secret: str = Field(..., min_length=16, max_length=64)
    code: str = Field(..., min_length=6, max_length=16)


class TwoFactorVerifyRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=32)
    use_backup_code: bool = False


class TwoFactorConfirmRequest(BaseModel):
    """Password plus live code, required to disable or regenerate codes."""

    current_password: str = Field(..., min_length=1)
    code: str = Field(..., min_length=6, max_length=16)


class BackupCodesResponse(BaseModel):
    backup_codes: list[str] = Field(description="Shown once; only hashes are stored")
    message: str
