"""Two-factor authentication API endpoints."""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import get_db
from app.core.exceptions import InvalidCode, ValidationError
from app.core.request_utils import get_client_ip
from app.middleware.gate import Gate, Identity, RoutePolicy
from app.schemas.auth import MessageResponse
from app.schemas.two_factor import (
    BackupCodesResponse,
    TwoFactorConfirmRequest,
    TwoFactorEnableRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    TwoFactorVerifyRequest,
)
from app.services.security_events import SecurityEventType, get_security_event_logger
from app.services.two_factor import TwoFactorService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth/2fa", tags=["two-factor"])

authenticated = Gate(RoutePolicy.protected())


def get_two_factor_service(db: AsyncSession = Depends(get_db)) -> TwoFactorService:
    """Dependency to get two-factor service."""
    return TwoFactorService(db)


@router.get("/status", response_model=TwoFactorStatusResponse)
async def get_status(
    identity: Identity = Depends(authenticated),
    service: TwoFactorService = Depends(get_two_factor_service),
) -> TwoFactorStatusResponse:
    return TwoFactorStatusResponse(**await service.status(identity.user_id))


@router.post("/setup", response_model=TwoFactorSetupResponse)
async def setup(
    identity: Identity = Depends(authenticated),
    service: TwoFactorService = Depends(get_two_factor_service),
) -> TwoFactorSetupResponse:
    """Generate a secret and provisioning URI for an authenticator app."""
    current = await service.status(identity.user_id)
    if current["enabled"]:
        raise ValidationError("Two-factor authentication is already enabled")
    return TwoFactorSetupResponse(**service.generate_secret(identity.username))


@router.post("/enable", response_model=BackupCodesResponse)
async def enable(
    body: TwoFactorEnableRequest,
    request: Request,
    identity: Identity = Depends(authenticated),
    service: TwoFactorService = Depends(get_two_factor_service),
) -> BackupCodesResponse:
    """Confirm the secret with a live code and turn two-factor on."""
    codes = await service.enable(identity.user_id, body.secret, body.code)
    await get_security_event_logger().log(
        SecurityEventType.TWO_FACTOR_ENABLED,
        f"{identity.username} enabled two-factor authentication",
        user_id=identity.user_id,
        username=identity.username,
        ip_address=get_client_ip(request),
    )
    return BackupCodesResponse(
        backup_codes=codes,
        message="Two-factor authentication enabled. Store these backup codes safely.",
    )


@router.post("/verify", response_model=MessageResponse)
async def verify(
    body: TwoFactorVerifyRequest,
    request: Request,
    identity: Identity = Depends(authenticated),
    service: TwoFactorService = Depends(get_two_factor_service),
) -> MessageResponse:
    """Step-up check of a live or backup code for an already signed-in user."""
    try:
        await service.verify(identity.user_id, body.code, use_backup_code=body.use_backup_code)
    except InvalidCode:
        await get_security_event_logger().log(
            SecurityEventType.TWO_FACTOR_FAILED,
            f"Second factor rejected for {identity.username}",
            level="warning",
            user_id=identity.user_id,
            username=identity.username,
            ip_address=get_client_ip(request),
        )
        raise
    return MessageResponse(message="Code verified")


@router.post("/disable", response_model=MessageResponse)
async def disable(
    body: TwoFactorConfirmRequest,
    request: Request,
    identity: Identity = Depends(authenticated),
    service: TwoFactorService = Depends(get_two_factor_service),
) -> MessageResponse:
    await service.disable(identity.user_id, body.current_password, body.code)
    await get_security_event_logger().log(
        SecurityEventType.TWO_FACTOR_DISABLED,
        f"{identity.username} disabled two-factor authentication",
        level="warning",
        user_id=identity.user_id,
        username=identity.username,
        ip_address=get_client_ip(request),
    )
    return MessageResponse(message="Two-factor authentication disabled")


@router.post("/backup-codes", response_model=BackupCodesResponse)
async def regenerate_backup_codes(
    body: TwoFactorConfirmRequest,
    request: Request,
    identity: Identity = Depends(authenticated),
    service: TwoFactorService = Depends(get_two_factor_service),
) -> BackupCodesResponse:
    """Replace every backup code; the previous ones stop working."""
    codes = await service.regenerate_backup_codes(
        identity.user_id, body.current_password, body.code
    )
    await get_security_event_logger().log(
        SecurityEventType.BACKUP_CODES_REGENERATED,
        f"{identity.username} regenerated backup codes",
        user_id=identity.user_id,
        username=identity.username,
        ip_address=get_client_ip(request),
    )
    return BackupCodesResponse(backup_codes=codes, message="Backup codes regenerated")
