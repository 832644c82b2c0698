"""Two-factor backup codes - one-time fallback credentials, hashed at rest."""

from datetime import datetime
from uuid import UUID

from sqlalchemy import DateTime, ForeignKey, Index, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import BaseModel


class BackupCode(BaseModel):
    """A single backup code.

    ``used_at`` is set exactly once, through a conditional update on
    ``used_at IS NULL``, so two concurrent submissions of the same code cannot
    both succeed.
    """

    __tablename__ = "two_factor_backup_codes"

    user_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    code_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_backup_codes_user_hash", "user_id", "code_hash"),)

    def __repr__(self) -> str:
        state = "used" if self.used_at else "unused"
        return f"<BackupCode {self.user_id} {state}>"
