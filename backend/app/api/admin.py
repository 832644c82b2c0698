"""Administration API - users, sessions, rate limits and the security event log.

These routes are built with ``api_handler``: one endpoint per path, each HTTP
method behind its own ``RoutePolicy``.
"""

import logging
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from app.core.exceptions import Forbidden, NotFound, ValidationError
from app.core.request_utils import get_client_ip
from app.middleware.gate import ALL_METHODS, HandlerContext, RoutePolicy, api_handler
from app.middleware.rate_limit import get_rate_limiter
from app.models.user import UserStatus
from app.schemas.admin import (
    PasswordResetResponse,
    RateLimitResetRequest,
    SessionUpdate,
    UserCreate,
    UserListResponse,
    UserUpdate,
)
from app.schemas.auth import UserResponse
from app.services.auth import AuthService
from app.services.rbac import Action, Resource, role_level
from app.services.security_events import SecurityEventType, get_security_event_logger
from app.services.sessions import get_session_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])

MAX_PAGE_SIZE = 200


def _int_param(ctx: HandlerContext, name: str, default: int, maximum: int | None = None) -> int:
    raw = ctx.request.query_params.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ValidationError(f"Query parameter '{name}' must be an integer") from e
    if value < 1:
        raise ValidationError(f"Query parameter '{name}' must be positive")
    return min(value, maximum) if maximum else value


def _uuid_param(ctx: HandlerContext, name: str) -> UUID:
    try:
        return UUID(ctx.path_params[name])
    except (KeyError, ValueError) as e:
        raise NotFound("User not found") from e


def _check_rank(ctx: HandlerContext, target_role: str) -> None:
    """Administrators cannot act on, or grant, a role above their own."""
    if role_level(target_role) > role_level(ctx.identity.role):
        raise Forbidden("Cannot manage a user with a higher role than your own")


async def _audit(ctx: HandlerContext, event_type: SecurityEventType, message: str, **details):
    await get_security_event_logger().log(
        event_type,
        message,
        user_id=ctx.identity.user_id,
        username=ctx.identity.username,
        ip_address=get_client_ip(ctx.request),
        details=details or None,
    )


# --- Users ---


async def list_users(ctx: HandlerContext) -> UserListResponse:
    page = _int_param(ctx, "page", 1)
    page_size = _int_param(ctx, "page_size", 50, MAX_PAGE_SIZE)
    params = ctx.request.query_params
    users, total = await AuthService(ctx.db).list_users(
        role=params.get("role"),
        status=params.get("status"),
        search=params.get("search"),
        page=page,
        page_size=page_size,
    )
    return UserListResponse(
        items=[UserResponse.model_validate(u) for u in users],
        total=total,
        page=page,
        page_size=page_size,
    )


async def create_user(ctx: HandlerContext) -> JSONResponse:
    body = await ctx.parse(UserCreate)
    _check_rank(ctx, body.role.value)
    user = await AuthService(ctx.db).create_user(
        username=body.username,
        email=body.email,
        password=body.password,
        role=body.role,
        is_first_login=True,
    )
    await _audit(
        ctx, SecurityEventType.USER_CREATED, f"Created user {user.username}", role=user.role
    )
    return JSONResponse(
        status_code=201,
        content=jsonable_encoder(UserResponse.model_validate(user)),
    )


async def get_user(ctx: HandlerContext) -> UserResponse:
    user = await AuthService(ctx.db).require_user(_uuid_param(ctx, "user_id"))
    return UserResponse.model_validate(user)


async def update_user(ctx: HandlerContext) -> UserResponse:
    body = await ctx.parse(UserUpdate)
    service = AuthService(ctx.db)
    user = await service.require_user(_uuid_param(ctx, "user_id"))
    _check_rank(ctx, user.role)
    if body.role is not None:
        _check_rank(ctx, body.role.value)

    if user.id == ctx.identity.user_id and (
        body.status is UserStatus.SUSPENDED
        or (body.role is not None and body.role.value != user.role)
    ):
        raise ValidationError("You cannot suspend yourself or change your own role")

    await service.update_user(user, email=body.email, role=body.role, status=body.status)
    await _audit(
        ctx,
        SecurityEventType.USER_UPDATED,
        f"Updated user {user.username}",
        changes=body.model_dump(exclude_none=True, mode="json"),
    )
    return UserResponse.model_validate(user)


async def reset_user_password(ctx: HandlerContext) -> PasswordResetResponse:
    service = AuthService(ctx.db)
    user = await service.require_user(_uuid_param(ctx, "user_id"))
    _check_rank(ctx, user.role)
    password = await service.reset_password(user)
    await _audit(ctx, SecurityEventType.PASSWORD_RESET, f"Reset password of {user.username}")
    return PasswordResetResponse(temporary_password=password)


# --- Sessions ---


async def list_sessions(ctx: HandlerContext) -> dict:
    store = get_session_store()
    user_id = ctx.request.query_params.get("user_id")
    if user_id:
        try:
            sessions = await store.list_active_for_user(UUID(user_id))
        except ValueError as e:
            raise ValidationError("Query parameter 'user_id' must be a UUID") from e
    else:
        sessions = await store.list_active()
    return {
        "sessions": [s.to_dict() for s in sessions],
        "stats": await store.stats(),
    }


async def _require_session(ctx: HandlerContext):
    session = await get_session_store().find(ctx.path_params["session_id"])
    if session is None:
        raise NotFound("Session not found")
    return session


async def get_session(ctx: HandlerContext) -> dict:
    return (await _require_session(ctx)).to_dict()


async def update_session(ctx: HandlerContext) -> dict:
    body = await ctx.parse(SessionUpdate)
    session = await _require_session(ctx)
    updated = await get_session_store().update_metadata(session.session_id, body.metadata)
    if updated is None:
        raise ValidationError("Session is no longer active")
    return updated.to_dict()


async def delete_session(ctx: HandlerContext) -> dict:
    session = await _require_session(ctx)
    await get_session_store().invalidate(session.session_id)
    await _audit(
        ctx,
        SecurityEventType.SESSION_INVALIDATED,
        f"Invalidated session of user {session.user_id}",
        target_user=str(session.user_id),
    )
    return {"message": "Session invalidated", "session_id": session.session_id}


# --- Rate limits ---


async def rate_limit_stats(ctx: HandlerContext) -> dict:
    return await get_rate_limiter().get_stats()


async def rate_limit_reset(ctx: HandlerContext) -> dict:
    body = await ctx.parse(RateLimitResetRequest)
    limiter = get_rate_limiter()
    if body.cleanup:
        removed = await limiter.cleanup(max_age_seconds=body.max_age_seconds)
        return {"message": "Idle buckets removed", "removed": removed}
    if not body.identifier:
        raise ValidationError("Either 'identifier' or 'cleanup' is required")

    removed = await limiter.reset(body.identifier, body.endpoint)
    await _audit(
        ctx,
        SecurityEventType.RATE_LIMIT_RESET,
        f"Reset rate limits for {body.identifier}",
        endpoint=body.endpoint,
    )
    return {"message": "Rate limit reset", "removed": removed}


# --- Security events ---


async def list_security_events(ctx: HandlerContext) -> dict:
    params = ctx.request.query_params
    page = _int_param(ctx, "page", 1)
    page_size = _int_param(ctx, "page_size", 50, MAX_PAGE_SIZE)
    since = None
    if params.get("since"):
        try:
            since = datetime.fromisoformat(params["since"])
        except ValueError as e:
            raise ValidationError("Query parameter 'since' must be an ISO timestamp") from e

    events = get_security_event_logger()
    # Make buffered events visible before querying
    await events.flush()
    items, total = await events.list_events(
        ctx.db,
        event_type=params.get("event_type"),
        since=since,
        page=page,
        page_size=page_size,
    )
    return {
        "items": [event.to_dict() for event in items],
        "total": total,
        "page": page,
        "page_size": page_size,
    }


def _route(path: str, handlers: dict, policies: dict) -> None:
    router.add_api_route(
        path,
        api_handler(handlers, policies),
        methods=ALL_METHODS,
        include_in_schema=False,
    )


_route(
    "/users",
    {"GET": list_users, "POST": create_user},
    {
        "GET": RoutePolicy.admin(Resource.USERS, Action.READ),
        "POST": RoutePolicy.admin(Resource.USERS, Action.CREATE),
    },
)
_route(
    "/users/{user_id}",
    {"GET": get_user, "PATCH": update_user},
    {
        "GET": RoutePolicy.admin(Resource.USERS, Action.READ),
        "PATCH": RoutePolicy.admin(Resource.USERS, Action.UPDATE),
    },
)
_route(
    "/users/{user_id}/reset-password",
    {"POST": reset_user_password},
    {"POST": RoutePolicy.admin(Resource.USERS, Action.MANAGE)},
)
_route(
    "/sessions",
    {"GET": list_sessions},
    {"GET": RoutePolicy.admin(Resource.SECURITY, Action.READ)},
)
_route(
    "/sessions/{session_id}",
    {"GET": get_session, "PUT": update_session, "DELETE": delete_session},
    {
        "GET": RoutePolicy.admin(Resource.SECURITY, Action.READ),
        "PUT": RoutePolicy.admin(Resource.SECURITY, Action.MANAGE),
        "DELETE": RoutePolicy.admin(Resource.SECURITY, Action.MANAGE),
    },
)
_route(
    "/security/rate-limits",
    {"GET": rate_limit_stats, "POST": rate_limit_reset},
    {
        "GET": RoutePolicy.admin(Resource.SECURITY, Action.READ),
        "POST": RoutePolicy.admin(Resource.SECURITY, Action.MANAGE),
    },
)
_route(
    "/security/events",
    {"GET": list_security_events},
    {"GET": RoutePolicy.admin(Resource.LOGS, Action.READ)},
)
