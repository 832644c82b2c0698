"""Tests for the two-factor API endpoints and the two-factor login flow."""

import pyotp
import pytest
import pytest_asyncio

from app.core.config import settings

from tests.conftest import TEST_PASSWORD


def _wrong_code(secret: str) -> str:
    return "111111" if pyotp.TOTP(secret).now() == "000000" else "000000"


async def _enroll(client) -> tuple[str, list[str]]:
    """Run setup and enable; two requests against the /auth/2fa budget."""
    setup = await client.post("/auth/2fa/setup")
    assert setup.status_code == 200
    secret = setup.json()["secret"]

    response = await client.post(
        "/auth/2fa/enable", json={"secret": secret, "code": pyotp.TOTP(secret).now()}
    )
    assert response.status_code == 200, response.text
    return secret, response.json()["backup_codes"]


@pytest_asyncio.fixture
async def editor_client(async_client, editor_user, login):
    await login(async_client, "editor")
    return async_client


@pytest_asyncio.fixture
async def enrolled(editor_client):
    """Editor with two-factor enabled: (client, secret, backup codes)."""
    secret, codes = await _enroll(editor_client)
    return editor_client, secret, codes


@pytest.mark.asyncio
async def test_status_when_disabled(editor_client):
    response = await editor_client.get("/auth/2fa/status")
    assert response.status_code == 200
    assert response.json() == {
        "enabled": False,
        "activated_at": None,
        "backup_codes_remaining": 0,
    }


@pytest.mark.asyncio
async def test_status_requires_login(async_client):
    assert (await async_client.get("/auth/2fa/status")).status_code == 401


@pytest.mark.asyncio
async def test_setup_returns_provisioning_uri(editor_client):
    response = await editor_client.post("/auth/2fa/setup")
    assert response.status_code == 200
    data = response.json()
    assert len(data["secret"]) >= 16
    assert data["otp_uri"].startswith("otpauth://totp/")
    assert "editor" in data["otp_uri"]

    # Nothing stored until enabled
    status = (await editor_client.get("/auth/2fa/status")).json()
    assert status["enabled"] is False


@pytest.mark.asyncio
async def test_enable_rejects_wrong_code(editor_client):
    secret = (await editor_client.post("/auth/2fa/setup")).json()["secret"]
    response = await editor_client.post(
        "/auth/2fa/enable", json={"secret": secret, "code": _wrong_code(secret)}
    )
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_code"


@pytest.mark.asyncio
async def test_enable(enrolled):
    client, _, codes = enrolled
    assert len(codes) == settings.two_factor_backup_code_count
    assert len(set(codes)) == len(codes)

    status = (await client.get("/auth/2fa/status")).json()
    assert status["enabled"] is True
    assert status["activated_at"] is not None
    assert status["backup_codes_remaining"] == len(codes)


@pytest.mark.asyncio
async def test_setup_again_rejected(enrolled):
    client, _, _ = enrolled
    response = await client.post("/auth/2fa/setup")
    assert response.status_code == 400
    assert response.json()["error"] == "validation_error"


@pytest.mark.asyncio
async def test_step_up_verify(enrolled):
    client, secret, _ = enrolled
    ok = await client.post("/auth/2fa/verify", json={"code": pyotp.TOTP(secret).now()})
    assert ok.status_code == 200

    bad = await client.post("/auth/2fa/verify", json={"code": _wrong_code(secret)})
    assert bad.status_code == 400


@pytest.mark.asyncio
async def test_login_asks_for_second_factor(enrolled, client_factory, login):
    fresh = client_factory()
    response = await fresh.post(
        "/auth/login", json={"username": "editor", "password": TEST_PASSWORD}
    )
    assert response.status_code == 200
    assert response.json() == {"two_factor_required": True, "must_change_password": False}
    assert "accessToken" not in response.cookies


@pytest.mark.asyncio
async def test_login_with_totp(enrolled, client_factory, login):
    _, secret, _ = enrolled
    fresh = client_factory()
    data = await login(fresh, "editor", totp_code=pyotp.TOTP(secret).now())
    assert data["user"]["two_factor_enabled"] is True
    assert (await fresh.get("/auth/me")).status_code == 200


@pytest.mark.asyncio
async def test_login_with_wrong_totp(enrolled, client_factory):
    _, secret, _ = enrolled
    response = await client_factory().post(
        "/auth/login",
        json={"username": "editor", "password": TEST_PASSWORD, "totp_code": _wrong_code(secret)},
    )
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_code"


@pytest.mark.asyncio
async def test_backup_code_is_single_use(enrolled, client_factory, login):
    client, _, codes = enrolled

    # Formatting is forgiving
    formatted = f"{codes[0][:4].lower()}-{codes[0][4:]}"
    await login(client_factory(), "editor", backup_code=formatted)

    reused = await client_factory().post(
        "/auth/login",
        json={"username": "editor", "password": TEST_PASSWORD, "backup_code": codes[0]},
    )
    assert reused.status_code == 400

    status = (await client.get("/auth/2fa/status")).json()
    assert status["backup_codes_remaining"] == len(codes) - 1


@pytest.mark.asyncio
async def test_regenerate_backup_codes(enrolled, client_factory):
    client, secret, old_codes = enrolled
    response = await client.post(
        "/auth/2fa/backup-codes",
        json={"current_password": TEST_PASSWORD, "code": pyotp.TOTP(secret).now()},
    )
    assert response.status_code == 200
    new_codes = response.json()["backup_codes"]
    assert set(new_codes).isdisjoint(old_codes)

    stale = await client_factory().post(
        "/auth/login",
        json={"username": "editor", "password": TEST_PASSWORD, "backup_code": old_codes[0]},
    )
    assert stale.status_code == 400


@pytest.mark.asyncio
async def test_disable_requires_password(enrolled):
    client, secret, _ = enrolled
    response = await client.post(
        "/auth/2fa/disable",
        json={"current_password": "wrong-password", "code": pyotp.TOTP(secret).now()},
    )
    assert response.status_code == 400
    assert (await client.get("/auth/2fa/status")).json()["enabled"] is True


@pytest.mark.asyncio
async def test_disable(enrolled, client_factory, login):
    client, secret, _ = enrolled
    response = await client.post(
        "/auth/2fa/disable",
        json={"current_password": TEST_PASSWORD, "code": pyotp.TOTP(secret).now()},
    )
    assert response.status_code == 200
    assert (await client.get("/auth/2fa/status")).json() == {
        "enabled": False,
        "activated_at": None,
        "backup_codes_remaining": 0,
    }

    data = await login(client_factory(), "editor")
    assert data["user"]["two_factor_enabled"] is False


@pytest.mark.asyncio
async def test_two_factor_routes_share_rate_limit(editor_client):
    for _ in range(10):
        assert (await editor_client.get("/auth/2fa/status")).status_code == 200
    response = await editor_client.post("/auth/2fa/setup")
    assert response.status_code == 429
