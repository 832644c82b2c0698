# Portal gate models
from app.models.backup_code import BackupCode
from app.models.base import BaseModel
from app.models.security_event import SecurityEvent
from app.models.user import User, UserStatus

__all__ = [
    "BackupCode",
    "BaseModel",
    "SecurityEvent",
    "User",
    "UserStatus",
]
