"""Authentication cookie names and writers.

All three cookies are http-only, ``SameSite=strict`` and scoped to ``/``;
the ``Secure`` flag is set in production only so local development over
plain HTTP keeps working.
"""

import secrets
from dataclasses import dataclass

from starlette.responses import Response

from app.core.config import settings

ACCESS_TOKEN_COOKIE = "accessToken"
REFRESH_TOKEN_COOKIE = "refreshToken"
CSRF_TOKEN_COOKIE = "csrfToken"
CSRF_HEADER = "X-CSRF-Token"

AUTH_COOKIES = (ACCESS_TOKEN_COOKIE, REFRESH_TOKEN_COOKIE, CSRF_TOKEN_COOKIE)


def new_csrf_token() -> str:
    return secrets.token_hex(32)


def set_auth_cookie(response: Response, name: str, value: str, max_age: int) -> None:
    response.set_cookie(
        key=name,
        value=value,
        max_age=max_age,
        path="/",
        httponly=True,
        secure=settings.secure_cookies,
        samesite="strict",
    )


def clear_auth_cookies(response: Response) -> None:
    for name in AUTH_COOKIES:
        response.delete_cookie(
            key=name,
            path="/",
            httponly=True,
            secure=settings.secure_cookies,
            samesite="strict",
        )


@dataclass
class CookieUpdate:
    """Cookie changes decided during request evaluation.

    The gate cannot write to a response that does not exist yet, so it
    records what must change and the caller applies it once the handler has
    produced the response.
    """

    access_token: str | None = None
    refresh_token: str | None = None
    clear: bool = False

    @property
    def pending(self) -> bool:
        return self.clear or self.access_token is not None or self.refresh_token is not None

    def apply(self, response: Response) -> None:
        if self.clear:
            clear_auth_cookies(response)
            return
        if self.access_token is not None:
            set_auth_cookie(
                response,
                ACCESS_TOKEN_COOKIE,
                self.access_token,
                settings.access_token_expire_minutes * 60,
            )
        if self.refresh_token is not None:
            set_auth_cookie(
                response,
                REFRESH_TOKEN_COOKIE,
                self.refresh_token,
                settings.refresh_token_expire_days * 24 * 60 * 60,
            )


def set_login_cookies(
    response: Response,
    access_token: str,
    refresh_token: str,
    csrf_token: str,
) -> None:
    """Write the full cookie set issued at login or password change."""
    set_auth_cookie(
        response,
        ACCESS_TOKEN_COOKIE,
        access_token,
        settings.access_token_expire_minutes * 60,
    )
    refresh_max_age = settings.refresh_token_expire_days * 24 * 60 * 60
    set_auth_cookie(response, REFRESH_TOKEN_COOKIE, refresh_token, refresh_max_age)
    set_csrf_cookie(response, csrf_token)


def set_csrf_cookie(response: Response, csrf_token: str) -> None:
    """Write the CSRF cookie, which lives as long as the refresh token."""
    set_auth_cookie(
        response,
        CSRF_TOKEN_COOKIE,
        csrf_token,
        settings.refresh_token_expire_days * 24 * 60 * 60,
    )
