"""SecurityEvent model - audit trail of authentication and authorization events."""

from typing import Any
from uuid import UUID

from sqlalchemy import JSON, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import BaseModel


class SecurityEvent(BaseModel):
    """A single security event.

    Written in batches by the security event logger. ``user_id`` is a plain
    column rather than a foreign key so events survive whatever happens to the
    user row.
    """

    __tablename__ = "security_events"

    event_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    level: Mapped[str] = mapped_column(String(16), nullable=False, default="info")
    message: Mapped[str] = mapped_column(Text, nullable=False)

    user_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    username: Mapped[str | None] = mapped_column(String(64), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        Index("ix_security_events_type_created", "event_type", "created_at"),
        Index("ix_security_events_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<SecurityEvent {self.event_type} {self.level}: {self.message[:50]}>"

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "id": str(self.id),
            "event_type": self.event_type,
            "level": self.level,
            "message": self.message,
            "user_id": str(self.user_id) if self.user_id else None,
            "username": self.username,
            "ip_address": self.ip_address,
            "details": self.details,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
