"""Token issuer and verifier for JWT-based authentication.

Access and refresh tokens are HS256 JWTs carrying the user, the session they
belong to and the password version at issue time. The ``type`` claim is
checked on every verification so a refresh token can never be presented as
an access token (or the reverse).
"""

import logging
import secrets
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Literal, Optional, Protocol
from uuid import UUID

import jwt
from jwt.exceptions import ExpiredSignatureError, PyJWTError

from app.core.config import settings
from app.core.exceptions import InvalidToken

logger = logging.getLogger(__name__)

TokenType = Literal["access", "refresh"]

REQUIRED_CLAIMS = ["sub", "sid", "pv", "type", "iat", "exp", "jti"]


def new_jti() -> str:
    return secrets.token_hex(16)


class TokenSubject(Protocol):
    id: UUID
    username: str
    role: str
    password_version: int


@dataclass(frozen=True)
class TokenClaims:
    """Verified claims of an access or refresh token."""

    user_id: UUID
    username: str
    role: str
    session_id: str
    password_version: int
    token_type: TokenType
    issued_at: datetime
    expires_at: datetime
    jti: str

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TokenClaims":
        try:
            return cls(
                user_id=UUID(payload["sub"]),
                username=str(payload.get("username", "")),
                role=str(payload.get("role", "")),
                session_id=str(payload["sid"]),
                password_version=int(payload["pv"]),
                token_type=payload["type"],
                issued_at=datetime.fromtimestamp(payload["iat"], UTC),
                expires_at=datetime.fromtimestamp(payload["exp"], UTC),
                jti=str(payload["jti"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidToken("malformed") from e


class TokenService:
    """Issue and verify signed tokens.

    Signing parameters default to the application settings and are read at
    call time. ``clock`` supplies the issue time, which lets tests mint tokens
    that are already expired.
    """

    _instance: Optional["TokenService"] = None
    _instance_lock: threading.Lock = threading.Lock()

    def __init__(
        self,
        secret_key: str | None = None,
        algorithm: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._secret_key = secret_key
        self._algorithm = algorithm
        self._clock = clock or (lambda: datetime.now(UTC))

    @classmethod
    def get_instance(cls) -> "TokenService":
        """Get or create singleton instance (thread-safe)."""
        if cls._instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @property
    def secret_key(self) -> str:
        return self._secret_key or settings.jwt_secret_key

    @property
    def algorithm(self) -> str:
        return self._algorithm or settings.jwt_algorithm

    @property
    def access_token_ttl(self) -> timedelta:
        return timedelta(minutes=settings.access_token_expire_minutes)

    @property
    def refresh_token_ttl(self) -> timedelta:
        return timedelta(days=settings.refresh_token_expire_days)

    def _issue(
        self,
        user: TokenSubject,
        session_id: str,
        token_type: TokenType,
        jti: str | None = None,
    ) -> str:
        now = self._clock()
        ttl = self.access_token_ttl if token_type == "access" else self.refresh_token_ttl
        payload = {
            "sub": str(user.id),
            "username": user.username,
            "role": user.role,
            "sid": session_id,
            "pv": user.password_version,
            "type": token_type,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
            "jti": jti or new_jti(),
        }
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

    def issue_access_token(self, user: TokenSubject, session_id: str) -> str:
        """Create a short-lived access token bound to ``session_id``."""
        return self._issue(user, session_id, "access")

    def issue_refresh_token(
        self, user: TokenSubject, session_id: str, jti: str | None = None
    ) -> str:
        """Create a long-lived refresh token bound to ``session_id``.

        Pass ``jti`` when the caller records it in the session registry.
        """
        return self._issue(user, session_id, "refresh", jti)

    def verify(self, token: str, expected_type: TokenType) -> TokenClaims:
        """Verify signature, expiry and type tag and return the claims.

        Raises:
            InvalidToken: with ``reason`` set to ``expired``, ``malformed``
                or ``wrong_type``.
        """
        if not token:
            raise InvalidToken("malformed")
        try:
            payload = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                options={"require": REQUIRED_CLAIMS},
            )
        except ExpiredSignatureError as e:
            raise InvalidToken("expired") from e
        except PyJWTError as e:
            logger.debug(f"Token rejected: {e}")
            raise InvalidToken("malformed") from e

        if payload.get("type") != expected_type:
            raise InvalidToken("wrong_type")

        return TokenClaims.from_payload(payload)


def get_token_service() -> TokenService:
    """Get the token service singleton."""
    return TokenService.get_instance()
