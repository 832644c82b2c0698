# Portal gate services
from app.services.auth import AuthService, hash_password, verify_password
from app.services.security_events import SecurityEventLogger, get_security_event_logger
from app.services.sessions import InMemorySessionStore, Session, SessionStore, get_session_store
from app.services.tokens import TokenClaims, TokenService, get_token_service
from app.services.two_factor import TwoFactorService

__all__ = [
    "AuthService",
    "InMemorySessionStore",
    "SecurityEventLogger",
    "Session",
    "SessionStore",
    "TokenClaims",
    "TokenService",
    "TwoFactorService",
    "get_security_event_logger",
    "get_session_store",
    "get_token_service",
    "hash_password",
    "verify_password",
]
