"""Authentication API endpoints."""

import logging

from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import get_db
from app.core.config import settings
from app.core.cookies import (
    REFRESH_TOKEN_COOKIE,
    CookieUpdate,
    clear_auth_cookies,
    new_csrf_token,
    set_csrf_cookie,
    set_login_cookies,
)
from app.core.exceptions import (
    InvalidCode,
    InvalidCredentials,
    InvalidRefreshToken,
    NotFound,
    UserInactive,
)
from app.core.request_utils import get_client_ip, get_user_agent
from app.middleware.gate import Gate, Identity, RoutePolicy, with_auth_rate_limit
from app.schemas.auth import (
    ChangePasswordRequest,
    ChangePasswordResponse,
    CsrfTokenResponse,
    IdentityResponse,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    RefreshResponse,
    SessionListResponse,
    SessionResponse,
    UserResponse,
)
from app.services.auth import AuthService
from app.services.rbac import permissions_for
from app.services.security_events import SecurityEventType, get_security_event_logger
from app.services.sessions import Session, get_session_store
from app.services.two_factor import TwoFactorService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

authenticated = Gate(RoutePolicy.protected())


def get_auth_service(db: AsyncSession = Depends(get_db)) -> AuthService:
    """Dependency to get auth service."""
    return AuthService(db)


def _session_response(session: Session, current_id: str | None = None) -> SessionResponse:
    return SessionResponse(
        session_id=session.session_id,
        user_id=session.user_id,
        created_at=session.created_at,
        last_activity=session.last_activity,
        ip_address=session.ip_address,
        user_agent=session.user_agent,
        is_active=session.is_active,
        invalidated_at=session.invalidated_at,
        is_current=session.session_id == current_id,
    )


@router.post("/login", response_model=LoginResponse, response_model_exclude_none=True)
@with_auth_rate_limit
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
    auth_service: AuthService = Depends(get_auth_service),
) -> LoginResponse:
    """Authenticate with username and password (plus second factor when enabled).

    Sets the access, refresh and CSRF cookies and opens a session. The CSRF
    token is also returned in the body for the client to echo in
    ``X-CSRF-Token``.
    """
    events = get_security_event_logger()
    client_ip = get_client_ip(request)

    try:
        user = await auth_service.authenticate(body.username, body.password)
    except (InvalidCredentials, UserInactive) as e:
        await events.log(
            SecurityEventType.LOGIN_FAILED,
            f"Failed login for {body.username}: {e.code}",
            level="warning",
            username=body.username,
            ip_address=client_ip,
        )
        raise

    if user.two_factor_enabled:
        code = body.backup_code or body.totp_code
        if not code:
            return LoginResponse(two_factor_required=True)
        try:
            await TwoFactorService(db).verify(
                user.id, code, use_backup_code=body.backup_code is not None
            )
        except InvalidCode:
            await events.log(
                SecurityEventType.TWO_FACTOR_FAILED,
                f"Second factor rejected for {user.username}",
                level="warning",
                user_id=user.id,
                username=user.username,
                ip_address=client_ip,
            )
            raise
        if body.backup_code:
            await events.log(
                SecurityEventType.BACKUP_CODE_USED,
                f"Backup code used to log in {user.username}",
                user_id=user.id,
                username=user.username,
                ip_address=client_ip,
            )

    pair = await auth_service.start_session(user, client_ip, get_user_agent(request))
    csrf_token = new_csrf_token()
    set_login_cookies(response, pair.access_token, pair.refresh_token, csrf_token)

    await events.log(
        SecurityEventType.LOGIN_SUCCESS,
        f"{user.username} logged in",
        user_id=user.id,
        username=user.username,
        ip_address=client_ip,
        details={"session": pair.session_id[:8]},
    )
    return LoginResponse(
        user=UserResponse.model_validate(user),
        csrf_token=csrf_token,
        must_change_password=user.is_first_login,
        expires_in=settings.access_token_expire_minutes * 60,
    )


@router.post("/refresh", response_model=RefreshResponse)
@with_auth_rate_limit
async def refresh(
    request: Request,
    response: Response,
    auth_service: AuthService = Depends(get_auth_service),
) -> RefreshResponse:
    """Exchange the refresh cookie for a new access cookie.

    On failure every authentication cookie is cleared.
    """
    token = request.cookies.get(REFRESH_TOKEN_COOKIE)
    if not token:
        raise InvalidRefreshToken("Refresh token missing", clear_cookies=True)

    try:
        result = await auth_service.refresh(token)
    except (InvalidRefreshToken, UserInactive) as e:
        e.clear_cookies = True
        await get_security_event_logger().log(
            SecurityEventType.REFRESH_FAILED,
            e.message,
            level="warning",
            ip_address=get_client_ip(request),
        )
        raise

    CookieUpdate(access_token=result.access_token, refresh_token=result.refresh_token).apply(
        response
    )
    return RefreshResponse(
        message="Token refreshed",
        expires_in=settings.access_token_expire_minutes * 60,
    )


@router.post("/logout", response_model=MessageResponse)
async def logout(
    request: Request,
    response: Response,
    identity: Identity = Depends(authenticated),
    auth_service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """End the current session and clear the authentication cookies."""
    await auth_service.logout(identity.session_id)
    clear_auth_cookies(response)
    await get_security_event_logger().log(
        SecurityEventType.LOGOUT,
        f"{identity.username} logged out",
        user_id=identity.user_id,
        username=identity.username,
        ip_address=get_client_ip(request),
    )
    return MessageResponse(message="Logged out")


@router.get("/me", response_model=IdentityResponse)
async def get_me(
    identity: Identity = Depends(authenticated),
    auth_service: AuthService = Depends(get_auth_service),
) -> IdentityResponse:
    """Get the current user with the permissions granted by their role."""
    user = await auth_service.require_user(identity.user_id)
    return IdentityResponse(
        user=UserResponse.model_validate(user),
        session_id=identity.session_id,
        permissions=permissions_for(user.role),
    )


@router.get("/csrf", response_model=CsrfTokenResponse)
async def get_csrf_token(
    response: Response,
    identity: Identity = Depends(authenticated),
) -> CsrfTokenResponse:
    """Mint a new CSRF token for the current session.

    The csrfToken cookie is http-only, so a client that lost the token from
    the login response (a page reload) recovers it here. The new value
    replaces the cookie, and the previous token stops matching.
    """
    csrf_token = new_csrf_token()
    set_csrf_cookie(response, csrf_token)
    response.headers["Cache-Control"] = "no-store"
    return CsrfTokenResponse(csrf_token=csrf_token)


@router.post("/change-password", response_model=ChangePasswordResponse)
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    response: Response,
    identity: Identity = Depends(authenticated),
    auth_service: AuthService = Depends(get_auth_service),
) -> ChangePasswordResponse:
    """Change the password, revoke every other session and reissue cookies."""
    user = await auth_service.require_user(identity.user_id)
    pair = await auth_service.change_password(
        user, body.current_password, body.new_password, identity.session_id
    )

    csrf_token = new_csrf_token()
    set_login_cookies(response, pair.access_token, pair.refresh_token, csrf_token)
    await get_security_event_logger().log(
        SecurityEventType.PASSWORD_CHANGED,
        f"{user.username} changed their password",
        user_id=user.id,
        username=user.username,
        ip_address=get_client_ip(request),
    )
    return ChangePasswordResponse(message="Password changed", csrf_token=csrf_token)


@router.get("/sessions", response_model=SessionListResponse)
async def list_my_sessions(identity: Identity = Depends(authenticated)) -> SessionListResponse:
    """List the caller's active sessions, most recently used first."""
    sessions = await get_session_store().list_active_for_user(identity.user_id)
    return SessionListResponse(
        sessions=[_session_response(s, identity.session_id) for s in sessions],
        total=len(sessions),
    )


@router.delete(
    "/sessions/{session_id}",
    response_model=MessageResponse,
    status_code=status.HTTP_200_OK,
)
async def revoke_my_session(
    session_id: str,
    identity: Identity = Depends(authenticated),
) -> MessageResponse:
    """Revoke one of the caller's own sessions."""
    store = get_session_store()
    session = await store.get(session_id)
    if session is None or session.user_id != identity.user_id:
        raise NotFound("Session not found")
    await store.invalidate(session_id)
    return MessageResponse(message="Session revoked")
