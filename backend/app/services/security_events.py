"""Security Event Logger - async audit trail for authentication and access control."""

import asyncio
import logging
import threading
import uuid
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import SecurityEvent

logger = logging.getLogger(__name__)


class SecurityEventType(str, Enum):
    """Security event types."""

    LOGIN_SUCCESS = "auth.login_success"
    LOGIN_FAILED = "auth.login_failed"
    LOGOUT = "auth.logout"
    TOKEN_REFRESHED = "auth.token_refreshed"
    REFRESH_FAILED = "auth.refresh_failed"
    PASSWORD_CHANGED = "auth.password_changed"

    TWO_FACTOR_ENABLED = "2fa.enabled"
    TWO_FACTOR_DISABLED = "2fa.disabled"
    TWO_FACTOR_FAILED = "2fa.failed"
    BACKUP_CODE_USED = "2fa.backup_code_used"
    BACKUP_CODES_REGENERATED = "2fa.backup_codes_regenerated"

    ACCESS_DENIED = "access.denied"
    CSRF_REJECTED = "access.csrf_rejected"
    RATE_LIMITED = "access.rate_limited"

    USER_CREATED = "admin.user_created"
    USER_UPDATED = "admin.user_updated"
    PASSWORD_RESET = "admin.password_reset"
    SESSION_INVALIDATED = "admin.session_invalidated"
    RATE_LIMIT_RESET = "admin.rate_limit_reset"


# Keys whose values never reach the audit trail
SENSITIVE_KEYS = frozenset(
    {"password", "secret", "token", "code", "cookie", "authorization", "csrf"}
)


def _redact(details: dict[str, Any] | None) -> dict[str, Any] | None:
    if not details:
        return details

    def redact_value(key: str, value: Any) -> Any:
        key_lower = key.lower()
        if any(sensitive in key_lower for sensitive in SENSITIVE_KEYS):
            return "[REDACTED]"
        if isinstance(value, dict):
            return {k: redact_value(k, v) for k, v in value.items()}
        if isinstance(value, str) and len(value) > 200:
            return value[:200] + "...[truncated]"
        return value

    return {k: redact_value(k, v) for k, v in details.items()}


class SecurityEventLogger:
    """Non-blocking security event recorder with batched persistence.

    Events are mirrored to the application log immediately, kept in a small
    in-memory buffer, and written to ``security_events`` in batches. A failed
    flush is logged and never surfaces to the request that emitted the event.
    """

    _instance: Optional["SecurityEventLogger"] = None
    _instance_lock: threading.Lock = threading.Lock()

    BATCH_INTERVAL_MS = 100
    RECENT_BUFFER_SIZE = 500
    MAX_PENDING = 1000

    def __init__(self):
        self._pending: list[dict[str, Any]] = []
        self._batch_lock = asyncio.Lock()
        # Serialises writers so a flush returns only once earlier batches are committed
        self._flush_lock = asyncio.Lock()
        self._batch_task: asyncio.Task | None = None
        self._batch_task_scheduled = False
        self._recent: deque = deque(maxlen=self.RECENT_BUFFER_SIZE)
        self._db_session_factory: Callable | None = None

    @classmethod
    def get_instance(cls) -> "SecurityEventLogger":
        """Get or create singleton instance (thread-safe)."""
        if cls._instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    def set_db_session_factory(self, factory: Callable | None) -> None:
        """Set the database session factory used for flushing."""
        self._db_session_factory = factory

    def get_recent(self, count: int = 100) -> list[dict[str, Any]]:
        """Get recent events from the in-memory buffer, newest last."""
        return list(self._recent)[-count:]

    async def log(
        self,
        event_type: SecurityEventType | str,
        message: str,
        *,
        level: str = "info",
        user_id: UUID | None = None,
        username: str | None = None,
        ip_address: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Record a security event.

        Returns:
            The event entry with generated ID and timestamp.
        """
        event_type = (
            event_type.value if isinstance(event_type, SecurityEventType) else event_type
        )
        entry = {
            "id": str(uuid.uuid4()),
            "event_type": event_type,
            "level": level,
            "message": message,
            "user_id": str(user_id) if user_id else None,
            "username": username,
            "ip_address": ip_address,
            "details": _redact(details),
            "created_at": datetime.now(UTC).isoformat(),
        }

        logger.log(
            logging.getLevelName(level.upper()),
            f"{event_type}: {message}",
            extra={"event_type": event_type, "user_id": entry["user_id"], "ip": ip_address},
        )

        async with self._batch_lock:
            self._recent.append(entry)
            if self._db_session_factory is None:
                return entry
            if len(self._pending) < self.MAX_PENDING:
                self._pending.append(entry)
            else:
                logger.error("Security event queue full, dropping event")

            if not self._batch_task_scheduled:
                self._batch_task_scheduled = True
                self._batch_task = asyncio.create_task(self._flush_batch_safe())

        return entry

    @staticmethod
    def _to_model(entry: dict[str, Any]) -> SecurityEvent:
        return SecurityEvent(
            id=uuid.UUID(entry["id"]),
            event_type=entry["event_type"],
            level=entry["level"],
            message=entry["message"],
            user_id=uuid.UUID(entry["user_id"]) if entry["user_id"] else None,
            username=entry["username"],
            ip_address=entry["ip_address"],
            details=entry["details"],
            created_at=datetime.fromisoformat(entry["created_at"]),
        )

    async def flush(self) -> int:
        """Write pending events now. Returns the number persisted."""
        if not self._db_session_factory:
            return 0

        async with self._flush_lock:
            async with self._batch_lock:
                if not self._pending:
                    return 0
                entries = self._pending.copy()
                self._pending.clear()

            try:
                async with self._db_session_factory() as db:
                    db.add_all(self._to_model(entry) for entry in entries)
                    await db.commit()
            except Exception as e:
                logger.error(f"Failed to persist {len(entries)} security events: {e}")
                return 0

        logger.debug(f"Flushed {len(entries)} security events to database")
        return len(entries)

    async def _flush_batch(self) -> None:
        try:
            await asyncio.sleep(self.BATCH_INTERVAL_MS / 1000)
            await self.flush()
        finally:
            async with self._batch_lock:
                self._batch_task_scheduled = False
                self._batch_task = None
                if self._pending and self._db_session_factory:
                    self._batch_task_scheduled = True
                    self._batch_task = asyncio.create_task(self._flush_batch_safe())

    async def _flush_batch_safe(self) -> None:
        """Safe wrapper for _flush_batch that catches unhandled exceptions."""
        try:
            await self._flush_batch()
        except Exception as e:
            logger.error(f"Unhandled error in security event flush task: {e}")

    async def shutdown(self) -> None:
        """Cancel the scheduled flush and write whatever is pending."""
        task = self._batch_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._batch_task_scheduled = False
        self._batch_task = None
        await self.flush()

    async def list_events(
        self,
        db: AsyncSession,
        *,
        event_type: str | None = None,
        user_id: UUID | None = None,
        since: datetime | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[SecurityEvent], int]:
        """Query persisted events, newest first, with the total match count."""
        query = select(SecurityEvent)
        count_query = select(func.count(SecurityEvent.id))
        filters = []
        if event_type:
            filters.append(SecurityEvent.event_type == event_type)
        if user_id:
            filters.append(SecurityEvent.user_id == user_id)
        if since:
            filters.append(SecurityEvent.created_at >= since)
        if filters:
            query = query.where(*filters)
            count_query = count_query.where(*filters)

        total = (await db.execute(count_query)).scalar() or 0
        result = await db.execute(
            query.order_by(SecurityEvent.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars().all()), total


def get_security_event_logger() -> SecurityEventLogger:
    """Get the security event logger singleton."""
    return SecurityEventLogger.get_instance()
