"""Authentication service - credential store, login sessions and token refresh."""

import logging
import secrets
from dataclasses import dataclass
from uuid import UUID

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    InvalidCredentials,
    InvalidRefreshToken,
    InvalidToken,
    NotFound,
    UserInactive,
    ValidationError,
)
from app.models import User, UserStatus
from app.models.base import utcnow
from app.services.rbac import Role
from app.services.sessions import SessionStore, get_session_store
from app.services.tokens import TokenService, get_token_service, new_jti

logger = logging.getLogger(__name__)

# Argon2 password hasher with recommended parameters
# Memory: 64 MiB, Time: 3 iterations, Parallelism: 4
ph = PasswordHasher(
    time_cost=3,
    memory_cost=65536,
    parallelism=4,
    hash_len=32,
    salt_len=16,
)

# Verified against when the user does not exist, so both paths cost the same
_DUMMY_HASH = ph.hash(secrets.token_urlsafe(16))


def hash_password(password: str) -> str:
    """Hash a password using Argon2id."""
    return ph.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its hash using constant-time comparison."""
    try:
        return ph.verify(password_hash, password)
    except (VerificationError, InvalidHashError):
        return False


def generate_password(length: int = 20) -> str:
    """Random password for administrative resets."""
    return secrets.token_urlsafe(length)[:length]


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    session_id: str


@dataclass(frozen=True)
class RefreshResult:
    """Outcome of a successful refresh.

    ``refresh_token`` is None when rotation is disabled and the presented
    refresh token stays in use.
    """

    user: User
    session_id: str
    access_token: str
    refresh_token: str | None


class AuthService:
    """Service for authentication operations."""

    def __init__(
        self,
        session: AsyncSession,
        sessions: SessionStore | None = None,
        tokens: TokenService | None = None,
    ):
        self.session = session
        self.sessions = sessions or get_session_store()
        self.tokens = tokens or get_token_service()

    async def user_count(self) -> int:
        result = await self.session.execute(select(func.count(User.id)))
        return result.scalar() or 0

    async def get_user_by_username(self, username: str) -> User | None:
        """Get user by username."""
        result = await self.session.execute(select(User).where(User.username == username))
        return result.scalar_one_or_none()

    async def get_user_by_id(self, user_id: UUID) -> User | None:
        """Get user by ID."""
        result = await self.session.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def require_user(self, user_id: UUID) -> User:
        user = await self.get_user_by_id(user_id)
        if user is None:
            raise NotFound("User not found")
        return user

    async def list_users(
        self,
        *,
        role: str | None = None,
        status: str | None = None,
        search: str | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[User], int]:
        query = select(User)
        count_query = select(func.count(User.id))
        filters = []
        if role:
            filters.append(User.role == role)
        if status:
            filters.append(User.status == status)
        if search:
            pattern = f"%{search}%"
            filters.append(or_(User.username.ilike(pattern), User.email.ilike(pattern)))
        if filters:
            query = query.where(*filters)
            count_query = count_query.where(*filters)

        total = (await self.session.execute(count_query)).scalar() or 0
        result = await self.session.execute(
            query.order_by(User.created_at.desc()).offset((page - 1) * page_size).limit(page_size)
        )
        return list(result.scalars().all()), total

    async def create_user(
        self,
        username: str,
        email: str,
        password: str,
        role: Role | str = Role.EDITOR,
        is_first_login: bool = True,
    ) -> User:
        """Create a user.

        Raises:
            ValidationError: Unknown role, or username/email already taken.
        """
        try:
            role = Role(role)
        except ValueError as e:
            raise ValidationError(f"Unknown role: {role}") from e

        existing = await self.session.execute(
            select(User.id).where(or_(User.username == username, User.email == email))
        )
        if existing.first() is not None:
            raise ValidationError("Username or email already in use")

        user = User(
            username=username,
            email=email,
            password_hash=hash_password(password),
            role=role.value,
            status=UserStatus.ACTIVE.value,
            is_first_login=is_first_login,
            password_version=1,
        )
        self.session.add(user)
        await self.session.flush()
        await self.session.refresh(user)

        logger.info(f"Created user: {username} ({role.value})")
        return user

    async def authenticate(self, username: str, password: str) -> User:
        """Authenticate a user and return the user object.

        Raises InvalidCredentials for both "user not found" and "wrong
        password" to prevent user enumeration. The account status is only
        revealed once the password is known to be right.
        """
        user = await self.get_user_by_username(username)

        if user is None:
            verify_password(password, _DUMMY_HASH)
            raise InvalidCredentials("Invalid username or password")

        if not verify_password(password, user.password_hash):
            raise InvalidCredentials("Invalid username or password")

        if not user.is_active:
            raise UserInactive()

        return user

    async def _issue_pair(self, user: User, session_id: str) -> TokenPair:
        jti = new_jti()
        await self.sessions.bind_refresh(session_id, jti)
        return TokenPair(
            access_token=self.tokens.issue_access_token(user, session_id),
            refresh_token=self.tokens.issue_refresh_token(user, session_id, jti=jti),
            session_id=session_id,
        )

    async def start_session(self, user: User, ip_address: str, user_agent: str) -> TokenPair:
        """Open a session for an authenticated user and issue its token pair."""
        session_id = await self.sessions.create(
            user.id,
            ip_address,
            user_agent,
            metadata={"username": user.username, "role": user.role},
        )
        user.last_login_at = utcnow()
        await self.session.flush()
        return await self._issue_pair(user, session_id)

    async def refresh(self, refresh_token: str) -> RefreshResult:
        """Issue a new access token from a refresh token.

        The user is re-loaded so that suspension and password changes take
        effect here even though the access path never touches the database.
        Only the refresh token most recently issued for the session is
        accepted; presenting a rotated-out one ends the session.

        Raises:
            InvalidRefreshToken: Token invalid or already rotated out, session
                gone, or password changed since issue.
            UserInactive: The account has been suspended.
        """
        try:
            claims = self.tokens.verify(refresh_token, "refresh")
        except InvalidToken as e:
            raise InvalidRefreshToken(f"Invalid refresh token: {e.reason}") from e

        if await self.sessions.get(claims.session_id) is None:
            raise InvalidRefreshToken("Session is no longer active")

        user = await self.get_user_by_id(claims.user_id)
        if user is None:
            await self.sessions.invalidate(claims.session_id)
            raise InvalidRefreshToken("User not found")

        if not user.is_active:
            await self.sessions.invalidate(claims.session_id)
            raise UserInactive()

        if user.password_version != claims.password_version:
            await self.sessions.invalidate(claims.session_id)
            raise InvalidRefreshToken("Token invalidated by password change")

        next_jti = new_jti() if settings.rotate_refresh_tokens else claims.jti
        if not await self.sessions.rotate_refresh(claims.session_id, claims.jti, next_jti):
            await self.sessions.invalidate(claims.session_id)
            logger.warning(f"Refresh token reuse for {user.username}, session revoked")
            raise InvalidRefreshToken("Refresh token already used")

        await self.sessions.touch(claims.session_id)
        new_refresh = None
        if settings.rotate_refresh_tokens:
            new_refresh = self.tokens.issue_refresh_token(user, claims.session_id, jti=next_jti)

        return RefreshResult(
            user=user,
            session_id=claims.session_id,
            access_token=self.tokens.issue_access_token(user, claims.session_id),
            refresh_token=new_refresh,
        )

    async def logout(self, session_id: str) -> None:
        """End the session. Its refresh token is retired with it."""
        await self.sessions.invalidate(session_id)

    async def change_password(
        self,
        user: User,
        current_password: str,
        new_password: str,
        session_id: str,
    ) -> TokenPair:
        """Change a user's password and revoke every other session.

        The calling session survives with a freshly issued token pair that
        carries the new password version.
        """
        if not verify_password(current_password, user.password_hash):
            raise InvalidCredentials("Current password is incorrect")
        if verify_password(new_password, user.password_hash):
            raise ValidationError("New password must differ from the current password")

        user.password_hash = hash_password(new_password)
        user.password_version += 1
        user.is_first_login = False
        await self.session.flush()

        await self.sessions.invalidate_user(user.id, except_id=session_id)
        logger.info(f"Password changed for user: {user.username}")
        return await self._issue_pair(user, session_id)

    async def set_status(self, user: User, status: UserStatus | str) -> User:
        """Activate or suspend a user. Suspension revokes every session."""
        status = UserStatus(status)
        user.status = status.value
        await self.session.flush()
        if status is UserStatus.SUSPENDED:
            await self.sessions.invalidate_user(user.id)
            logger.info(f"Suspended user: {user.username}")
        return user

    async def update_user(
        self,
        user: User,
        *,
        email: str | None = None,
        role: Role | str | None = None,
        status: UserStatus | str | None = None,
    ) -> User:
        """Update profile fields.

        A role change revokes every session of the user, since access tokens
        carry the role they were issued with.
        """
        if email is not None and email != user.email:
            taken = await self.session.execute(
                select(User.id).where(User.email == email, User.id != user.id)
            )
            if taken.first() is not None:
                raise ValidationError("Email already in use")
            user.email = email
        role_changed = False
        if role is not None:
            try:
                new_role = Role(role).value
            except ValueError as e:
                raise ValidationError(f"Unknown role: {role}") from e
            role_changed = new_role != user.role
            user.role = new_role
        if status is not None:
            await self.set_status(user, status)
        await self.session.flush()
        if role_changed:
            await self.sessions.invalidate_user(user.id)
            logger.info(f"Role of {user.username} changed to {user.role}, sessions revoked")
        return user

    async def reset_password(self, user: User, new_password: str | None = None) -> str:
        """Set a new password, force a change at next login and revoke sessions."""
        password = new_password or generate_password()
        user.password_hash = hash_password(password)
        user.password_version += 1
        user.is_first_login = True
        await self.session.flush()
        await self.sessions.invalidate_user(user.id)
        logger.info(f"Password reset for user: {user.username}")
        return password
