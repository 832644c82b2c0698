"""Request gate - the access check every protected route runs through.

Each request is evaluated in a fixed order and either proceeds with an
``Identity`` or is rejected with a ``PortalError``:

1. Rate limit on (client IP, normalised route).
2. Identity from the ``accessToken`` cookie, falling back to a transparent
   refresh with the ``refreshToken`` cookie.
3. The session named by the token must still be active.
4. RBAC for the route's (resource, action), plus the administrative role set
   on ADMIN routes.
5. Double-submit CSRF check on state-changing methods.

Routes declare what they need with a ``RoutePolicy`` and consume the gate
either as a FastAPI dependency (``Gate``) or by building their endpoint with
``api_handler``.
"""

import functools
import logging
import secrets
import threading
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, TypeVar
from uuid import UUID

from fastapi import Depends, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.error_handling import error_response, internal_error_response
from app.core import database
from app.core.config import settings
from app.core.cookies import (
    ACCESS_TOKEN_COOKIE,
    CSRF_HEADER,
    CSRF_TOKEN_COOKIE,
    REFRESH_TOKEN_COOKIE,
    CookieUpdate,
)
from app.core.database import get_db
from app.core.exceptions import (
    Forbidden,
    InvalidRefreshToken,
    InvalidToken,
    MethodNotAllowed,
    PortalError,
    TooManyRequests,
    Unauthenticated,
    UserInactive,
    ValidationError,
)
from app.core.request_utils import get_client_ip
from app.middleware.rate_limit import (
    RateLimiter,
    RateLimitResult,
    RateLimitRule,
    get_rate_limiter,
    normalize_endpoint,
    rule_for,
)
from app.services.auth import AuthService
from app.services.rbac import Action, Resource, has_permission, is_admin
from app.services.security_events import SecurityEventType, get_security_event_logger
from app.services.sessions import SessionStore, get_session_store
from app.services.tokens import TokenClaims, TokenService, get_token_service

logger = logging.getLogger(__name__)

STATE_CHANGING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

ModelT = TypeVar("ModelT", bound=BaseModel)


class RouteType(str, Enum):
    """How sensitive a route is."""

    PUBLIC = "public"
    # Login and refresh: rate limited with the authentication rules, no identity
    AUTH = "auth"
    PROTECTED = "protected"
    ADMIN = "admin"


@dataclass(frozen=True)
class RoutePolicy:
    """Declarative description of what a route requires."""

    route_type: RouteType = RouteType.PROTECTED
    resource: Resource | None = None
    action: Action | None = None
    # PUBLIC routes only: resolve an identity when cookies allow it
    optional_auth: bool = False
    # Overrides the rules table
    rate_limit: RateLimitRule | None = None
    csrf: bool = True

    @classmethod
    def public(cls, optional_auth: bool = False) -> "RoutePolicy":
        return cls(route_type=RouteType.PUBLIC, optional_auth=optional_auth)

    @classmethod
    def auth(cls, rate_limit: RateLimitRule | None = None) -> "RoutePolicy":
        return cls(route_type=RouteType.AUTH, rate_limit=rate_limit)

    @classmethod
    def protected(
        cls, resource: Resource | None = None, action: Action | None = None
    ) -> "RoutePolicy":
        return cls(route_type=RouteType.PROTECTED, resource=resource, action=action)

    @classmethod
    def admin(cls, resource: Resource, action: Action) -> "RoutePolicy":
        return cls(route_type=RouteType.ADMIN, resource=resource, action=action)

    @property
    def requires_identity(self) -> bool:
        return self.route_type in (RouteType.PROTECTED, RouteType.ADMIN)


@dataclass(frozen=True)
class Identity:
    """The authenticated caller, as recovered from its tokens."""

    user_id: UUID
    username: str
    role: str
    session_id: str

    @classmethod
    def from_claims(cls, claims: TokenClaims) -> "Identity":
        return cls(
            user_id=claims.user_id,
            username=claims.username,
            role=claims.role,
            session_id=claims.session_id,
        )

    @classmethod
    def from_user(cls, user: Any, session_id: str) -> "Identity":
        return cls(
            user_id=user.id,
            username=user.username,
            role=user.role,
            session_id=session_id,
        )


@dataclass
class GateResult:
    """Outcome of a successful evaluation."""

    identity: Identity | None = None
    cookies: CookieUpdate = field(default_factory=CookieUpdate)
    rate_limit: RateLimitResult | None = None

    def apply(self, response: Response) -> None:
        """Write queued cookies and rate limit headers onto ``response``."""
        if self.cookies.pending:
            self.cookies.apply(response)
        if self.rate_limit is not None:
            for name, value in self.rate_limit.headers.items():
                response.headers[name] = value


class RequestGate:
    """Composes rate limiter, token verifier, session registry and RBAC.

    Collaborators default to the process-wide singletons and are resolved on
    every call, so replacing a singleton takes effect immediately.
    """

    _instance: Optional["RequestGate"] = None
    _instance_lock: threading.Lock = threading.Lock()

    def __init__(
        self,
        tokens: TokenService | None = None,
        sessions: SessionStore | None = None,
        rate_limiter: RateLimiter | None = None,
    ):
        self._tokens = tokens
        self._sessions = sessions
        self._rate_limiter = rate_limiter

    @classmethod
    def get_instance(cls) -> "RequestGate":
        """Get or create singleton instance (thread-safe)."""
        if cls._instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @property
    def tokens(self) -> TokenService:
        return self._tokens or get_token_service()

    @property
    def sessions(self) -> SessionStore:
        return self._sessions or get_session_store()

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter or get_rate_limiter()

    async def enforce_rate_limit(
        self, request: Request, rule: RateLimitRule | None = None
    ) -> RateLimitResult | None:
        """Count the request against its rule.

        Raises:
            TooManyRequests: The window for this client and route is used up.
        """
        if not settings.rate_limit_enabled:
            return None

        client_ip = get_client_ip(request)
        endpoint = normalize_endpoint(request.url.path)
        rule = rule or rule_for(endpoint)
        result = await self.rate_limiter.check(
            f"ip:{client_ip}", endpoint, rule.limit, rule.window_seconds
        )
        if not result.allowed:
            await get_security_event_logger().log(
                SecurityEventType.RATE_LIMITED,
                f"Rate limit exceeded on {endpoint}",
                level="warning",
                ip_address=client_ip,
                details={"endpoint": endpoint, "limit": result.limit},
            )
            raise TooManyRequests(result.retry_after, result.reset_at, result.limit)
        return result

    async def verify_access_token(self, request: Request) -> Identity | None:
        """Identity from a valid access cookie whose session is still active.

        Never refreshes and never touches the database.
        """
        token = request.cookies.get(ACCESS_TOKEN_COOKIE)
        if not token:
            return None
        try:
            claims = self.tokens.verify(token, "access")
        except InvalidToken as e:
            logger.debug(f"Access token rejected: {e.reason}")
            return None
        if await self.sessions.get(claims.session_id) is None:
            return None
        return Identity.from_claims(claims)

    async def authenticate(
        self, request: Request, db: AsyncSession, cookies: CookieUpdate
    ) -> Identity | None:
        """Recover the caller's identity, refreshing transparently if needed.

        Returns None when the request carries no authentication cookies at
        all. New tokens minted by a refresh are queued on ``cookies``.

        Raises:
            Unauthenticated: Cookies are present but no valid session backs them.
        """
        access_token = request.cookies.get(ACCESS_TOKEN_COOKIE)
        refresh_token = request.cookies.get(REFRESH_TOKEN_COOKIE)
        if not access_token and not refresh_token:
            return None

        if access_token:
            try:
                claims = self.tokens.verify(access_token, "access")
            except InvalidToken as e:
                logger.debug(f"Access token rejected ({e.reason}), trying refresh")
            else:
                if await self.sessions.get(claims.session_id) is None:
                    cookies.clear = True
                    raise Unauthenticated("Session expired or revoked", clear_cookies=True)
                await self.sessions.touch(claims.session_id)
                return Identity.from_claims(claims)

        if not refresh_token:
            cookies.clear = True
            raise Unauthenticated("Session expired, please log in again", clear_cookies=True)

        try:
            refreshed = await AuthService(db, self.sessions, self.tokens).refresh(refresh_token)
        except (InvalidRefreshToken, UserInactive) as e:
            cookies.clear = True
            await get_security_event_logger().log(
                SecurityEventType.REFRESH_FAILED,
                e.message,
                level="warning",
                ip_address=get_client_ip(request),
            )
            if isinstance(e, UserInactive):
                raise UserInactive(clear_cookies=True) from e
            raise Unauthenticated(
                "Session expired, please log in again", clear_cookies=True
            ) from e

        cookies.access_token = refreshed.access_token
        cookies.refresh_token = refreshed.refresh_token
        logger.debug(f"Transparently refreshed tokens for {refreshed.user.username}")
        return Identity.from_user(refreshed.user, refreshed.session_id)

    async def authorize(self, request: Request, identity: Identity, policy: RoutePolicy) -> None:
        """Apply the route's RBAC requirements.

        Raises:
            Forbidden: The role lacks the permission or administrative rank.
        """
        denied = None
        if policy.route_type is RouteType.ADMIN and not is_admin(identity):
            denied = "Administrator access required"
        elif (
            policy.resource is not None
            and policy.action is not None
            and not has_permission(identity, policy.resource, policy.action)
        ):
            denied = f"Missing permission {policy.resource.value}:{policy.action.value}"

        if denied:
            await get_security_event_logger().log(
                SecurityEventType.ACCESS_DENIED,
                f"{denied} on {request.method} {request.url.path}",
                level="warning",
                user_id=identity.user_id,
                username=identity.username,
                ip_address=get_client_ip(request),
                details={"role": identity.role},
            )
            raise Forbidden()

    async def check_csrf(self, request: Request, identity: Identity, policy: RoutePolicy) -> None:
        """Double-submit check: the header must echo the csrfToken cookie."""
        if not settings.csrf_protection or not policy.csrf:
            return
        if request.method.upper() not in STATE_CHANGING_METHODS:
            return

        cookie = request.cookies.get(CSRF_TOKEN_COOKIE)
        header = request.headers.get(CSRF_HEADER)
        if cookie and header and secrets.compare_digest(cookie, header):
            return

        await get_security_event_logger().log(
            SecurityEventType.CSRF_REJECTED,
            f"CSRF token mismatch on {request.method} {request.url.path}",
            level="warning",
            user_id=identity.user_id,
            username=identity.username,
            ip_address=get_client_ip(request),
        )
        raise Forbidden("Invalid or missing CSRF token")

    async def evaluate(
        self, request: Request, policy: RoutePolicy, db: AsyncSession
    ) -> GateResult:
        """Run the full check sequence for ``request`` under ``policy``."""
        result = GateResult()
        result.rate_limit = await self.enforce_rate_limit(request, policy.rate_limit)

        if not policy.requires_identity:
            if policy.optional_auth:
                try:
                    result.identity = await self.authenticate(request, db, result.cookies)
                except Unauthenticated:
                    result.identity = None
            return result

        identity = await self.authenticate(request, db, result.cookies)
        if identity is None:
            raise Unauthenticated()

        await self.authorize(request, identity, policy)
        await self.check_csrf(request, identity, policy)
        result.identity = identity
        request.state.identity = identity
        return result


def get_request_gate() -> RequestGate:
    """Get the request gate singleton."""
    return RequestGate.get_instance()


async def verify_request(request: Request) -> Identity | None:
    """Identity behind the request's access cookie, or None."""
    return await get_request_gate().verify_access_token(request)


def require_permission(
    identity: Identity | None, resource: Resource | str, action: Action | str
) -> bool:
    """Return True when ``identity`` may perform ``action`` on ``resource``."""
    return identity is not None and has_permission(identity, resource, action)


def with_auth_rate_limit(handler: Callable, rule: RateLimitRule | None = None) -> Callable:
    """Wrap an endpoint that takes a ``request`` argument with rate limiting.

    Used on login-type routes that run before any identity exists. Without
    ``rule`` the rules table entry for the route applies.
    """

    @functools.wraps(handler)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        request = kwargs.get("request")
        if request is None:
            request = next((arg for arg in args if isinstance(arg, Request)), None)
        if request is None:
            raise TypeError(f"{handler.__name__} must accept a 'request' argument")
        await get_request_gate().enforce_rate_limit(request, rule)
        return await handler(*args, **kwargs)

    return wrapper


class Gate:
    """FastAPI dependency form of the gate.

    Usage::

        @router.get("/me")
        async def me(identity: Identity = Depends(Gate(RoutePolicy.protected()))):
            ...

    Cookies minted by a transparent refresh and rate limit headers are written
    to the response FastAPI builds from the route's return value.
    """

    def __init__(self, policy: RoutePolicy | None = None):
        self.policy = policy or RoutePolicy.protected()

    async def __call__(
        self,
        request: Request,
        response: Response,
        db: AsyncSession = Depends(get_db),
    ) -> Identity | None:
        result = await get_request_gate().evaluate(request, self.policy, db)
        result.apply(response)
        return result.identity


@dataclass
class HandlerContext:
    """What an ``api_handler`` method handler receives."""

    request: Request
    identity: Identity | None
    db: AsyncSession

    @property
    def path_params(self) -> dict[str, Any]:
        return self.request.path_params

    async def parse(self, model: type[ModelT]) -> ModelT:
        """Validate the JSON body against ``model``.

        Raises:
            ValidationError: The body is not JSON or does not fit the model.
        """
        try:
            data = await self.request.json()
        except ValueError as e:
            raise ValidationError("Request body must be valid JSON") from e
        try:
            return model.model_validate(data)
        except PydanticValidationError as e:
            errors = e.errors(include_url=False, include_context=False)
            raise ValidationError(
                "Invalid request body", extra={"details": jsonable_encoder(errors)}
            ) from e


MethodHandler = Callable[[HandlerContext], Awaitable[Any]]


def api_handler(
    method_handlers: Mapping[str, MethodHandler],
    method_policies: Mapping[str, RoutePolicy] | RoutePolicy | None = None,
) -> Callable[[Request], Awaitable[Response]]:
    """Build one endpoint serving several methods, each behind its own policy.

    Unknown methods get 405 with an ``Allow`` header. Handler errors are
    rendered here, uncaught ones as a 500 whose detail is hidden in
    production, and the database session is committed only on success.
    Register the result with ``methods=ALL_METHODS``.
    """
    handlers = {method.upper(): fn for method, fn in method_handlers.items()}
    allowed = sorted(handlers)

    def policy_for(method: str) -> RoutePolicy:
        if isinstance(method_policies, RoutePolicy):
            return method_policies
        if method_policies:
            for name, policy in method_policies.items():
                if name.upper() == method:
                    return policy
        return RoutePolicy.protected()

    async def endpoint(request: Request) -> Response:
        method = request.method.upper()
        handler = handlers.get(method)
        if handler is None:
            return error_response(MethodNotAllowed(method, allowed))

        result: GateResult | None = None
        async with database.async_session_maker() as db:
            try:
                result = await get_request_gate().evaluate(request, policy_for(method), db)
                payload = await handler(HandlerContext(request, result.identity, db))
                await db.commit()
            except PortalError as exc:
                await db.rollback()
                response = error_response(exc)
            except Exception as exc:
                await db.rollback()
                response = internal_error_response(request, exc)
            else:
                if isinstance(payload, Response):
                    response = payload
                else:
                    response = JSONResponse(content=jsonable_encoder(payload))

        if result is not None:
            result.apply(response)
        return response

    return endpoint
