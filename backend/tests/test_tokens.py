"""Tests for the token issuer and verifier."""

import uuid
from datetime import UTC, datetime, timedelta
from types import SimpleNamespace

import jwt
import pytest

from app.core.exceptions import InvalidToken
from app.services.tokens import TokenService

SECRET = "unit-test-secret-" + "x" * 32


@pytest.fixture
def user():
    return SimpleNamespace(
        id=uuid.uuid4(), username="amina", role="editor", password_version=3
    )


@pytest.fixture
def tokens():
    return TokenService(secret_key=SECRET, algorithm="HS256")


class TestIssueAndVerify:
    def test_access_token_claims(self, tokens, user):
        token = tokens.issue_access_token(user, "session-1")
        claims = tokens.verify(token, "access")

        assert claims.user_id == user.id
        assert claims.username == "amina"
        assert claims.role == "editor"
        assert claims.session_id == "session-1"
        assert claims.password_version == 3
        assert claims.token_type == "access"
        assert claims.expires_at - claims.issued_at == tokens.access_token_ttl

    def test_refresh_token_lives_longer(self, tokens, user):
        claims = tokens.verify(tokens.issue_refresh_token(user, "s"), "refresh")
        assert claims.token_type == "refresh"
        assert claims.expires_at - claims.issued_at == tokens.refresh_token_ttl
        assert tokens.refresh_token_ttl > tokens.access_token_ttl

    def test_each_token_has_unique_jti(self, tokens, user):
        first = tokens.verify(tokens.issue_access_token(user, "s"), "access")
        second = tokens.verify(tokens.issue_access_token(user, "s"), "access")
        assert first.jti != second.jti


class TestRejection:
    def test_refresh_token_rejected_as_access(self, tokens, user):
        with pytest.raises(InvalidToken) as exc_info:
            tokens.verify(tokens.issue_refresh_token(user, "s"), "access")
        assert exc_info.value.reason == "wrong_type"

    def test_access_token_rejected_as_refresh(self, tokens, user):
        with pytest.raises(InvalidToken) as exc_info:
            tokens.verify(tokens.issue_access_token(user, "s"), "refresh")
        assert exc_info.value.reason == "wrong_type"

    def test_expired_token(self, user):
        past = datetime.now(UTC) - timedelta(hours=2)
        issuer = TokenService(secret_key=SECRET, clock=lambda: past)
        token = issuer.issue_access_token(user, "s")

        with pytest.raises(InvalidToken) as exc_info:
            TokenService(secret_key=SECRET).verify(token, "access")
        assert exc_info.value.reason == "expired"
        assert exc_info.value.expired

    def test_wrong_secret(self, tokens, user):
        token = tokens.issue_access_token(user, "s")
        with pytest.raises(InvalidToken) as exc_info:
            TokenService(secret_key="another-secret-" + "y" * 32).verify(token, "access")
        assert exc_info.value.reason == "malformed"

    def test_tampered_payload(self, tokens, user):
        header, payload, signature = tokens.issue_access_token(user, "s").split(".")
        forged = jwt.encode(
            {"sub": str(user.id), "role": "super-admin"}, "guess", algorithm="HS256"
        ).split(".")[1]
        with pytest.raises(InvalidToken) as exc_info:
            tokens.verify(f"{header}.{forged}.{signature}", "access")
        assert exc_info.value.reason == "malformed"

    @pytest.mark.parametrize("token", ["", "not-a-jwt", "a.b.c"])
    def test_garbage(self, tokens, token):
        with pytest.raises(InvalidToken) as exc_info:
            tokens.verify(token, "access")
        assert exc_info.value.reason == "malformed"

    def test_missing_session_claim(self, tokens, user):
        now = int(datetime.now(UTC).timestamp())
        token = jwt.encode(
            {
                "sub": str(user.id),
                "pv": 1,
                "type": "access",
                "iat": now,
                "exp": now + 60,
                "jti": "abc",
            },
            SECRET,
            algorithm="HS256",
        )
        with pytest.raises(InvalidToken) as exc_info:
            tokens.verify(token, "access")
        assert exc_info.value.reason == "malformed"

    def test_non_uuid_subject(self, tokens):
        now = int(datetime.now(UTC).timestamp())
        token = jwt.encode(
            {
                "sub": "admin",
                "sid": "s",
                "pv": 1,
                "type": "access",
                "iat": now,
                "exp": now + 60,
                "jti": "abc",
            },
            SECRET,
            algorithm="HS256",
        )
        with pytest.raises(InvalidToken) as exc_info:
            tokens.verify(token, "access")
        assert exc_info.value.reason == "malformed"

    def test_unsigned_token_rejected(self, tokens, user):
        now = int(datetime.now(UTC).timestamp())
        token = jwt.encode(
            {
                "sub": str(user.id),
                "sid": "s",
                "pv": 1,
                "type": "access",
                "iat": now,
                "exp": now + 60,
                "jti": "abc",
            },
            None,
            algorithm="none",
        )
        with pytest.raises(InvalidToken):
            tokens.verify(token, "access")
