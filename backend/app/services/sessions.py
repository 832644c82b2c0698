"""Session registry - the authoritative record of which logins are still valid.

A token is only honoured while the session named by its ``sid`` claim is
active here. Logout, password changes and account suspension invalidate
sessions, which revokes every token bound to them.

The registry is an interface (``SessionStore``) so deployments running
several workers can back it with a shared store. ``InMemorySessionStore`` is
the single-process implementation.
"""

import asyncio
import logging
import secrets
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Optional, Protocol
from uuid import UUID

from app.core.config import settings

logger = logging.getLogger(__name__)


@dataclass
class Session:
    session_id: str
    user_id: UUID
    created_at: datetime
    last_activity: datetime
    ip_address: str
    user_agent: str
    is_active: bool = True
    invalidated_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    # jti of the only refresh token this session still honours
    refresh_jti: str | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "user_id": str(self.user_id),
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "is_active": self.is_active,
            "invalidated_at": self.invalidated_at.isoformat() if self.invalidated_at else None,
            "metadata": dict(self.metadata),
        }


class SessionStore(Protocol):
    """Storage interface for the session registry."""

    async def create(
        self,
        user_id: UUID,
        ip_address: str,
        user_agent: str,
        metadata: dict[str, Any] | None = None,
    ) -> str: ...

    async def get(self, session_id: str) -> Session | None: ...

    async def touch(self, session_id: str) -> None: ...

    async def bind_refresh(self, session_id: str, jti: str) -> bool: ...

    async def rotate_refresh(self, session_id: str, presented: str, new: str) -> bool: ...

    async def invalidate(self, session_id: str) -> None: ...

    async def invalidate_user(self, user_id: UUID, except_id: str | None = None) -> int: ...

    async def list_active_for_user(self, user_id: UUID) -> list[Session]: ...

    async def list_active(self) -> list[Session]: ...

    async def find(self, session_id: str) -> Session | None: ...

    async def update_metadata(self, session_id: str, metadata: dict[str, Any]) -> Session | None: ...

    async def stats(self) -> dict[str, int]: ...

    async def cleanup_expired(self) -> int: ...


class InMemorySessionStore:
    """Process-local session registry.

    Features:
    - Idle and absolute expiry, evaluated lazily on lookup
    - Idempotent invalidation
    - Periodic purge of expired and invalidated entries
    """

    _instance: Optional["InMemorySessionStore"] = None
    _instance_lock: threading.Lock = threading.Lock()

    # Invalidated sessions are kept this long for the admin listing
    RETAIN_INVALIDATED = timedelta(hours=1)

    def __init__(
        self,
        idle_timeout: timedelta | None = None,
        absolute_timeout: timedelta | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()
        self._idle_timeout = idle_timeout
        self._absolute_timeout = absolute_timeout
        self._clock = clock or (lambda: datetime.now(UTC))

    @classmethod
    def get_instance(cls) -> "InMemorySessionStore":
        """Get or create singleton instance (thread-safe)."""
        if cls._instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @property
    def idle_timeout(self) -> timedelta:
        return self._idle_timeout or timedelta(minutes=settings.session_idle_timeout_minutes)

    @property
    def absolute_timeout(self) -> timedelta:
        return self._absolute_timeout or timedelta(hours=settings.session_absolute_timeout_hours)

    def _is_expired(self, session: Session, now: datetime) -> bool:
        return (
            now - session.last_activity > self.idle_timeout
            or now - session.created_at > self.absolute_timeout
        )

    def _retention_over(self, session: Session, now: datetime) -> bool:
        return (
            session.invalidated_at is None
            or now - session.invalidated_at > self.RETAIN_INVALIDATED
        )

    def _deactivate(self, session: Session, now: datetime) -> None:
        session.is_active = False
        session.invalidated_at = now
        session.refresh_jti = None

    def _live(self, session: Session | None, now: datetime) -> Session | None:
        """Return the session if usable, marking it inactive once expired."""
        if session is None or not session.is_active:
            return None
        if self._is_expired(session, now):
            self._deactivate(session, now)
            return None
        return session

    async def create(
        self,
        user_id: UUID,
        ip_address: str,
        user_agent: str,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Open a new session and return its identifier."""
        session_id = secrets.token_urlsafe(32)
        now = self._clock()
        async with self._lock:
            self._sessions[session_id] = Session(
                session_id=session_id,
                user_id=user_id,
                created_at=now,
                last_activity=now,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata=dict(metadata or {}),
            )
        logger.debug(f"Session created for user {user_id}")
        return session_id

    async def get(self, session_id: str) -> Session | None:
        """Return the session when it is active and not expired."""
        async with self._lock:
            return self._live(self._sessions.get(session_id), self._clock())

    async def touch(self, session_id: str) -> None:
        """Record activity. Unknown or inactive sessions are left alone."""
        now = self._clock()
        async with self._lock:
            session = self._live(self._sessions.get(session_id), now)
            if session is not None and now > session.last_activity:
                session.last_activity = now

    async def bind_refresh(self, session_id: str, jti: str) -> bool:
        """Make ``jti`` the session's current refresh token, retiring any other."""
        async with self._lock:
            session = self._live(self._sessions.get(session_id), self._clock())
            if session is None:
                return False
            session.refresh_jti = jti
            return True

    async def rotate_refresh(self, session_id: str, presented: str, new: str) -> bool:
        """Swap the current refresh jti for ``new`` if ``presented`` is current.

        Returns False for a retired jti or a dead session. Passing the same
        value twice checks the jti without rotating it.
        """
        async with self._lock:
            session = self._live(self._sessions.get(session_id), self._clock())
            if session is None or session.refresh_jti is None:
                return False
            if not secrets.compare_digest(session.refresh_jti, presented):
                return False
            session.refresh_jti = new
            return True

    async def invalidate(self, session_id: str) -> None:
        """Deactivate a session. Invalidating twice is a no-op."""
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is not None and session.is_active:
                self._deactivate(session, self._clock())

    async def invalidate_user(self, user_id: UUID, except_id: str | None = None) -> int:
        """Deactivate every active session of ``user_id`` except ``except_id``."""
        now = self._clock()
        count = 0
        async with self._lock:
            for session in self._sessions.values():
                if (
                    session.user_id == user_id
                    and session.is_active
                    and session.session_id != except_id
                ):
                    self._deactivate(session, now)
                    count += 1
        if count:
            logger.info(f"Invalidated {count} session(s) for user {user_id}")
        return count

    async def list_active_for_user(self, user_id: UUID) -> list[Session]:
        now = self._clock()
        async with self._lock:
            sessions = [
                s
                for s in self._sessions.values()
                if s.user_id == user_id and self._live(s, now) is not None
            ]
        return sorted(sessions, key=lambda s: s.last_activity, reverse=True)

    async def list_active(self) -> list[Session]:
        now = self._clock()
        async with self._lock:
            sessions = [s for s in self._sessions.values() if self._live(s, now) is not None]
        return sorted(sessions, key=lambda s: s.last_activity, reverse=True)

    async def find(self, session_id: str) -> Session | None:
        """Return the session whatever its state (admin inspection)."""
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                self._live(session, self._clock())
            return session

    async def update_metadata(self, session_id: str, metadata: dict[str, Any]) -> Session | None:
        """Merge ``metadata`` into an active session's metadata."""
        async with self._lock:
            session = self._live(self._sessions.get(session_id), self._clock())
            if session is None:
                return None
            session.metadata.update(metadata)
            return session

    async def stats(self) -> dict[str, int]:
        now = self._clock()
        async with self._lock:
            active = sum(1 for s in self._sessions.values() if self._live(s, now) is not None)
            return {"total_sessions": len(self._sessions), "active_sessions": active}

    async def cleanup_expired(self) -> int:
        """Drop expired sessions and invalidated ones past the retention period."""
        now = self._clock()
        async with self._lock:
            stale = [
                session_id
                for session_id, session in self._sessions.items()
                if (session.is_active and self._is_expired(session, now))
                or (not session.is_active and self._retention_over(session, now))
            ]
            for session_id in stale:
                del self._sessions[session_id]
        if stale:
            logger.debug(f"Removed {len(stale)} stale sessions")
        return len(stale)

    async def reset(self) -> None:
        """Drop every session (tests and emergency revocation)."""
        async with self._lock:
            self._sessions.clear()


def get_session_store() -> SessionStore:
    """Get the session registry singleton."""
    return InMemorySessionStore.get_instance()
