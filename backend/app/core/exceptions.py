"""Error taxonomy shared by the gate, the services and the API layer.

Every error carries the HTTP status it maps to and a stable machine-readable
code. The API layer turns them into JSON bodies of the form
``{"error": code, "message": message, **extra}``.
"""

from typing import Any, Literal

TokenFailure = Literal["expired", "malformed", "wrong_type"]


class PortalError(Exception):
    """Base error for the portal gate."""

    status_code: int = 500
    code: str = "internal_error"
    default_message: str = "An internal error occurred"

    def __init__(
        self,
        message: str | None = None,
        *,
        headers: dict[str, str] | None = None,
        extra: dict[str, Any] | None = None,
        clear_cookies: bool = False,
    ) -> None:
        self.message = message or self.default_message
        self.headers = headers or {}
        self.extra = extra or {}
        # Authentication cookies are removed from the error response
        self.clear_cookies = clear_cookies
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.extra}


class InvalidToken(PortalError):
    """Signed token failed verification."""

    status_code = 401
    code = "invalid_token"
    default_message = "Invalid token"

    def __init__(self, reason: TokenFailure, message: str | None = None) -> None:
        self.reason = reason
        super().__init__(message or f"Token is {reason.replace('_', ' ')}")

    @property
    def expired(self) -> bool:
        return self.reason == "expired"


class InvalidRefreshToken(PortalError):
    status_code = 401
    code = "invalid_refresh_token"
    default_message = "Invalid refresh token"


class Unauthenticated(PortalError):
    status_code = 401
    code = "unauthenticated"
    default_message = "Authentication required"


class UserInactive(Unauthenticated):
    code = "user_inactive"
    default_message = "User account is suspended"


class Forbidden(PortalError):
    status_code = 403
    code = "forbidden"
    default_message = "You do not have permission to perform this action"


class InvalidCode(PortalError):
    status_code = 400
    code = "invalid_code"
    default_message = "Invalid verification code"


class InvalidCredentials(PortalError):
    status_code = 400
    code = "invalid_credentials"
    default_message = "Invalid credentials"


class TooManyRequests(PortalError):
    status_code = 429
    code = "too_many_requests"
    default_message = "Too many requests. Please try again later."

    def __init__(
        self,
        retry_after: int,
        reset_at: int,
        limit: int,
        message: str | None = None,
    ) -> None:
        self.retry_after = retry_after
        self.reset_at = reset_at
        self.limit = limit
        super().__init__(
            message,
            headers={
                "Retry-After": str(retry_after),
                "X-RateLimit-Limit": str(limit),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(reset_at),
            },
            extra={"retry_after": retry_after, "reset_at": reset_at, "limit": limit},
        )


class ValidationError(PortalError):
    status_code = 400
    code = "validation_error"
    default_message = "Invalid request"


class NotFound(PortalError):
    status_code = 404
    code = "not_found"
    default_message = "Resource not found"


class MethodNotAllowed(PortalError):
    status_code = 405
    code = "method_not_allowed"
    default_message = "Method not allowed"

    def __init__(self, method: str, allowed: list[str]) -> None:
        super().__init__(
            f"Method {method} not allowed",
            headers={"Allow": ", ".join(allowed)},
        )


class InternalError(PortalError):
    status_code = 500
    code = "internal_error"
