"""Middleware module for the portal gate backend."""

from app.middleware.gate import (
    Gate,
    Identity,
    RequestGate,
    RoutePolicy,
    RouteType,
    api_handler,
    require_permission,
    verify_request,
    with_auth_rate_limit,
)
from app.middleware.rate_limit import RateLimiter, get_rate_limiter
from app.middleware.rate_limit_cleanup import rate_limit_cleanup_loop, session_cleanup_loop
from app.middleware.security_headers import SecurityHeadersMiddleware

__all__ = [
    "Gate",
    "Identity",
    "RateLimiter",
    "RequestGate",
    "RoutePolicy",
    "RouteType",
    "SecurityHeadersMiddleware",
    "api_handler",
    "get_rate_limiter",
    "rate_limit_cleanup_loop",
    "require_permission",
    "session_cleanup_loop",
    "verify_request",
    "with_auth_rate_limit",
]
