"""Two-factor authentication with TOTP (pyotp) and one-time backup codes."""

import hashlib
import logging
import re
import secrets
from typing import Any
from uuid import UUID

import pyotp
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import InvalidCode, InvalidCredentials, NotFound, ValidationError
from app.models import BackupCode, User
from app.models.base import utcnow
from app.services.auth import verify_password

logger = logging.getLogger(__name__)

# Accepted clock drift, in 30 second steps on either side
TOTP_VALID_WINDOW = 1

_LIVE_CODE = re.compile(r"^\d{6}$")
_SEPARATORS = re.compile(r"[\s-]")


def normalize_code(code: str) -> str:
    """Strip spaces and dashes and upper-case the code."""
    return _SEPARATORS.sub("", code or "").upper()


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(normalize_code(code).encode()).hexdigest()


def generate_backup_codes(count: int) -> list[str]:
    """Generate ``count`` codes of eight upper-case hex characters."""
    return [secrets.token_hex(4).upper() for _ in range(count)]


def verify_totp(secret: str, code: str) -> bool:
    """Check a live code against ``secret``, tolerating one step of drift."""
    code = normalize_code(code)
    if not secret or not _LIVE_CODE.match(code):
        return False
    return pyotp.TOTP(secret).verify(code, valid_window=TOTP_VALID_WINDOW)


class TwoFactorService:
    """Service for two-factor enrolment and verification."""

    def __init__(self, db: AsyncSession):
        self.db = db

    @staticmethod
    def generate_secret(label: str) -> dict[str, str]:
        """Create a fresh base32 secret and its provisioning URI.

        Nothing is persisted until ``enable`` confirms a code generated from
        the secret.
        """
        secret = pyotp.random_base32()
        otp_uri = pyotp.TOTP(secret).provisioning_uri(
            name=label, issuer_name=settings.two_factor_issuer
        )
        return {"secret": secret, "otp_uri": otp_uri}

    async def _get_user(self, user_id: UUID) -> User:
        result = await self.db.execute(select(User).where(User.id == user_id))
        user = result.scalar_one_or_none()
        if user is None:
            raise NotFound("User not found")
        return user

    async def _replace_backup_codes(self, user_id: UUID) -> list[str]:
        codes = generate_backup_codes(settings.two_factor_backup_code_count)
        await self.db.execute(delete(BackupCode).where(BackupCode.user_id == user_id))
        self.db.add_all(
            BackupCode(user_id=user_id, code_hash=hash_backup_code(code)) for code in codes
        )
        await self.db.flush()
        return codes

    async def enable(self, user_id: UUID, secret: str, code: str) -> list[str]:
        """Confirm ``code`` against ``secret`` and turn two-factor on.

        Returns:
            The plaintext backup codes. They are only ever shown here.

        Raises:
            ValidationError: Two-factor is already enabled.
            InvalidCode: The code does not match the secret.
        """
        user = await self._get_user(user_id)
        if user.two_factor_enabled:
            raise ValidationError("Two-factor authentication is already enabled")
        if not verify_totp(secret, code):
            raise InvalidCode()

        user.two_factor_secret = secret
        user.two_factor_enabled = True
        user.two_factor_activated_at = utcnow()
        codes = await self._replace_backup_codes(user_id)

        logger.info(f"Two-factor enabled for user {user.username}")
        return codes

    async def consume_backup_code(self, user_id: UUID, code: str) -> bool:
        """Mark one matching unused code as used.

        The conditional update on ``used_at IS NULL`` is the only guard, so
        concurrent submissions of the same code let exactly one through.
        """
        candidate = (
            select(BackupCode.id)
            .where(
                BackupCode.user_id == user_id,
                BackupCode.code_hash == hash_backup_code(code),
                BackupCode.used_at.is_(None),
            )
            .limit(1)
            .scalar_subquery()
        )
        result = await self.db.execute(
            update(BackupCode)
            .where(BackupCode.id == candidate, BackupCode.used_at.is_(None))
            .values(used_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def verify(self, user_id: UUID, code: str, use_backup_code: bool = False) -> None:
        """Verify a live code or consume a backup code.

        Raises:
            InvalidCode: Two-factor is not enabled or the code is wrong.
        """
        user = await self._get_user(user_id)
        if not user.two_factor_enabled or not user.two_factor_secret:
            raise InvalidCode("Two-factor authentication is not enabled")

        if use_backup_code:
            if not await self.consume_backup_code(user_id, code):
                raise InvalidCode("Invalid or already used backup code")
            logger.info(f"Backup code used by {user.username}")
            return

        if not verify_totp(user.two_factor_secret, code):
            raise InvalidCode()

    async def _confirm_owner(self, user: User, current_password: str, code: str) -> None:
        if not user.two_factor_enabled or not user.two_factor_secret:
            raise ValidationError("Two-factor authentication is not enabled")
        if not verify_password(current_password, user.password_hash):
            raise InvalidCredentials("Current password is incorrect")
        if not verify_totp(user.two_factor_secret, code):
            raise InvalidCredentials("Invalid verification code")

    async def disable(self, user_id: UUID, current_password: str, code: str) -> None:
        """Turn two-factor off. Requires the password and a live code."""
        user = await self._get_user(user_id)
        await self._confirm_owner(user, current_password, code)

        user.two_factor_enabled = False
        user.two_factor_secret = None
        user.two_factor_activated_at = None
        await self.db.execute(delete(BackupCode).where(BackupCode.user_id == user_id))
        await self.db.flush()

        logger.info(f"Two-factor disabled for user {user.username}")

    async def regenerate_backup_codes(
        self, user_id: UUID, current_password: str, code: str
    ) -> list[str]:
        """Replace every backup code. Requires the password and a live code."""
        user = await self._get_user(user_id)
        await self._confirm_owner(user, current_password, code)
        return await self._replace_backup_codes(user_id)

    async def status(self, user_id: UUID) -> dict[str, Any]:
        user = await self._get_user(user_id)
        remaining = 0
        if user.two_factor_enabled:
            result = await self.db.execute(
                select(func.count(BackupCode.id)).where(
                    BackupCode.user_id == user_id, BackupCode.used_at.is_(None)
                )
            )
            remaining = result.scalar() or 0
        return {
            "enabled": user.two_factor_enabled,
            "activated_at": user.two_factor_activated_at,
            "backup_codes_remaining": remaining,
        }

    async def clear(self, user: User) -> None:
        """Remove two-factor state without confirmation (administrative reset)."""
        user.two_factor_enabled = False
        user.two_factor_secret = None
        user.two_factor_activated_at = None
        await self.db.execute(delete(BackupCode).where(BackupCode.user_id == user.id))
        await self.db.flush()
