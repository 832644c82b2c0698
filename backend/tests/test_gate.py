"""Tests for the request gate: authentication, RBAC, CSRF and error rendering."""

from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from fastapi import Depends, FastAPI
from sqlalchemy import select

from app.api.router import api_router
from app.api.error_handling import register_exception_handlers
from app.core.config import settings
from app.core.database import async_session_maker
from app.middleware.gate import (
    ALL_METHODS,
    Gate,
    HandlerContext,
    Identity,
    RoutePolicy,
    api_handler,
    require_permission,
)
from app.models import User
from app.services.rbac import Action, Resource
from app.services.sessions import get_session_store
from app.services.tokens import TokenService


async def _public_articles(ctx: HandlerContext) -> dict:
    return {"articles": [], "viewer": ctx.identity.username if ctx.identity else None}


async def _create_article(ctx: HandlerContext) -> dict:
    return {"created_by": ctx.identity.username}


async def _broken(ctx: HandlerContext) -> dict:
    raise RuntimeError("database exploded")


def _build_app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)
    app.include_router(api_router)

    @app.post("/api/news/{news_id}/publish")
    async def publish(
        news_id: int,
        identity: Identity = Depends(Gate(RoutePolicy.protected(Resource.NEWS, Action.PUBLISH))),
    ):
        return {"published": news_id, "by": identity.username}

    @app.get("/api/admin/reports")
    async def reports(
        identity: Identity = Depends(Gate(RoutePolicy.admin(Resource.STATS, Action.READ))),
    ):
        return {"reports": []}

    app.add_api_route(
        "/api/articles",
        api_handler(
            {"GET": _public_articles, "POST": _create_article},
            {
                "GET": RoutePolicy.public(optional_auth=True),
                "POST": RoutePolicy.protected(Resource.NEWS, Action.CREATE),
            },
        ),
        methods=ALL_METHODS,
    )
    app.add_api_route(
        "/api/broken",
        api_handler({"GET": _broken}, RoutePolicy.public()),
        methods=ALL_METHODS,
    )
    return app


@pytest.fixture
def gate_client(client_factory):
    return client_factory(_build_app())


@pytest_asyncio.fixture
async def viewer_user(user_factory):
    return await user_factory(username="viewer", role="viewer")


# --- Authentication ---


@pytest.mark.asyncio
async def test_public_route_without_cookies(gate_client):
    response = await gate_client.get("/api/articles")
    assert response.status_code == 200
    assert response.json()["viewer"] is None
    assert response.headers["X-RateLimit-Limit"] == "100"


@pytest.mark.asyncio
async def test_optional_auth_resolves_identity(gate_client, editor_user, login):
    await login(gate_client, "editor")
    response = await gate_client.get("/api/articles")
    assert response.json()["viewer"] == "editor"


@pytest.mark.asyncio
async def test_optional_auth_ignores_dead_session(gate_client, editor_user, login):
    await login(gate_client, "editor")
    session_id = (await gate_client.get("/auth/me")).json()["session_id"]
    await get_session_store().invalidate(session_id)

    response = await gate_client.get("/api/articles")
    assert response.status_code == 200
    assert response.json()["viewer"] is None


@pytest.mark.asyncio
async def test_protected_route_requires_login(gate_client):
    response = await gate_client.post("/api/news/7/publish")
    assert response.status_code == 401
    assert response.json()["error"] == "unauthenticated"


@pytest.mark.asyncio
async def test_protected_route_with_permission(gate_client, editor_user, login):
    await login(gate_client, "editor")
    response = await gate_client.post("/api/news/7/publish")
    assert response.status_code == 200
    assert response.json() == {"published": 7, "by": "editor"}


@pytest.mark.asyncio
async def test_revoked_session_rejected(gate_client, editor_user, login):
    await login(gate_client, "editor")
    session_id = (await gate_client.get("/auth/me")).json()["session_id"]
    await get_session_store().invalidate(session_id)

    response = await gate_client.get("/auth/me")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_transparent_refresh_without_access_cookie(gate_client, editor_user, login):
    await login(gate_client, "editor")
    gate_client.cookies.delete("accessToken")

    response = await gate_client.get("/auth/me")

    assert response.status_code == 200
    assert "accessToken" in response.cookies
    assert "refreshToken" in response.cookies


@pytest.mark.asyncio
async def test_transparent_refresh_with_expired_access_token(gate_client, editor_user, login):
    await login(gate_client, "editor")
    session_id = (await gate_client.get("/auth/me")).json()["session_id"]

    two_hours_ago = TokenService(clock=lambda: datetime.now(UTC) - timedelta(hours=2))
    expired = two_hours_ago.issue_access_token(editor_user, session_id)
    gate_client.cookies.delete("accessToken")
    gate_client.cookies.set("accessToken", expired)

    response = await gate_client.post("/api/news/1/publish")

    assert response.status_code == 200
    assert response.cookies["accessToken"] != expired


@pytest.mark.asyncio
async def test_expired_access_without_refresh(gate_client, editor_user, login):
    await login(gate_client, "editor")
    gate_client.cookies.delete("refreshToken")
    gate_client.cookies.delete("accessToken")
    gate_client.cookies.set("accessToken", "not-a-jwt")

    response = await gate_client.get("/auth/me")
    assert response.status_code == 401


# --- Authorization ---


@pytest.mark.asyncio
async def test_missing_permission_forbidden(gate_client, viewer_user, login):
    await login(gate_client, "viewer")
    response = await gate_client.post("/api/news/7/publish")
    assert response.status_code == 403
    assert response.json()["error"] == "forbidden"


@pytest.mark.asyncio
async def test_admin_route_requires_admin_role(gate_client, editor_user, login):
    """Editors can read stats but are not administrators."""
    await login(gate_client, "editor")
    response = await gate_client.get("/api/admin/reports")
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_admin_route_allows_super_admin(gate_client, admin_user, login):
    await login(gate_client, "admin")
    response = await gate_client.get("/api/admin/reports")
    assert response.status_code == 200
    assert response.headers["X-RateLimit-Limit"] == "200"


@pytest.mark.asyncio
async def test_api_handler_per_method_policies(gate_client, viewer_user, login):
    await login(gate_client, "viewer")
    assert (await gate_client.get("/api/articles")).status_code == 200
    assert (await gate_client.post("/api/articles")).status_code == 403


@pytest.mark.asyncio
async def test_api_handler_protected_method(gate_client, editor_user, login):
    await login(gate_client, "editor")
    response = await gate_client.post("/api/articles")
    assert response.status_code == 200
    assert response.json() == {"created_by": "editor"}


def test_require_permission():
    identity = Identity(user_id=None, username="ed", role="editor", session_id="s")
    assert require_permission(identity, "news", "publish")
    assert not require_permission(identity, "users", "read")
    assert not require_permission(None, "news", "read")


# --- CSRF ---


@pytest.mark.asyncio
async def test_csrf_header_required(gate_client, editor_user, login):
    await login(gate_client, "editor")
    del gate_client.headers["X-CSRF-Token"]

    response = await gate_client.post("/api/news/7/publish")
    assert response.status_code == 403
    assert "CSRF" in response.json()["message"]

    # Safe methods do not need the header
    assert (await gate_client.get("/auth/me")).status_code == 200


@pytest.mark.asyncio
async def test_csrf_header_must_match_cookie(gate_client, editor_user, login):
    await login(gate_client, "editor")
    gate_client.headers["X-CSRF-Token"] = "0" * 64
    response = await gate_client.post("/auth/logout")
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_csrf_can_be_disabled(gate_client, editor_user, login, monkeypatch):
    monkeypatch.setattr(settings, "csrf_protection", False)
    await login(gate_client, "editor")
    del gate_client.headers["X-CSRF-Token"]
    assert (await gate_client.post("/api/news/7/publish")).status_code == 200


# --- Error rendering ---


@pytest.mark.asyncio
async def test_unknown_method_lists_allowed(gate_client):
    response = await gate_client.delete("/api/articles")
    assert response.status_code == 405
    assert response.headers["Allow"] == "GET, POST"
    assert response.json()["error"] == "method_not_allowed"


@pytest.mark.asyncio
async def test_internal_error_detail_outside_production(gate_client):
    response = await gate_client.get("/api/broken")
    assert response.status_code == 500
    body = response.json()
    assert body["error"] == "internal_error"
    assert "database exploded" in body["detail"]
    assert body["error_id"]


@pytest.mark.asyncio
async def test_internal_error_detail_hidden_in_production(gate_client, monkeypatch):
    monkeypatch.setattr(settings, "environment", "production")
    response = await gate_client.get("/api/broken")
    assert response.status_code == 500
    body = response.json()
    assert "detail" not in body
    assert body["error_id"]
    assert "database exploded" not in response.text


@pytest.mark.asyncio
async def test_rate_limit_applies_per_route(gate_client, monkeypatch):
    from app.middleware import rate_limit

    monkeypatch.setitem(
        rate_limit.RATE_LIMIT_RULES, "/api/articles", rate_limit.RateLimitRule(2, 60)
    )
    assert (await gate_client.get("/api/articles")).status_code == 200
    assert (await gate_client.get("/api/articles")).status_code == 200
    response = await gate_client.get("/api/articles")
    assert response.status_code == 429
    assert "Retry-After" in response.headers
    assert response.json()["limit"] == 2


# --- Suspension ---


@pytest.mark.asyncio
async def test_suspension_ends_sessions(
    admin_client, client_factory, gate_client, editor_user, login
):
    await login(gate_client, "editor")

    response = await admin_client.patch(
        f"/api/admin/users/{editor_user.id}", json={"status": "suspended"}
    )
    assert response.status_code == 200
    assert response.json()["status"] == "suspended"

    assert (await gate_client.get("/auth/me")).status_code == 401
    assert (await gate_client.post("/auth/refresh")).status_code == 401


@pytest.mark.asyncio
async def test_refresh_of_suspended_user_clears_cookies(gate_client, editor_user, login):
    await login(gate_client, "editor")
    gate_client.cookies.delete("accessToken")

    # Suspended without going through the session registry
    async with async_session_maker() as session:
        user = (await session.execute(select(User).where(User.id == editor_user.id))).scalar_one()
        user.status = "suspended"
        await session.commit()

    response = await gate_client.get("/auth/me")
    assert response.status_code == 401
    assert response.json()["error"] == "user_inactive"
    assert "accessToken" in " ".join(response.headers.get_list("set-cookie"))
