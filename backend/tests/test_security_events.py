"""Tests for the security event logger."""

import uuid

import pytest

from app.services.security_events import (
    SecurityEventLogger,
    SecurityEventType,
    _redact,
)


@pytest.fixture
def events():
    return SecurityEventLogger()


class TestRedaction:
    def test_sensitive_keys_redacted(self):
        details = {
            "password": "hunter2",
            "refresh_token": "eyJ...",
            "backup_code": "AB12CD34",
            "endpoint": "/auth/login",
        }
        redacted = _redact(details)
        assert redacted["password"] == "[REDACTED]"
        assert redacted["refresh_token"] == "[REDACTED]"
        assert redacted["backup_code"] == "[REDACTED]"
        assert redacted["endpoint"] == "/auth/login"

    def test_nested_and_long_values(self):
        redacted = _redact({"request": {"Authorization": "Bearer x"}, "note": "a" * 500})
        assert redacted["request"]["Authorization"] == "[REDACTED]"
        assert redacted["note"].endswith("...[truncated]")
        assert len(redacted["note"]) < 250

    def test_empty(self):
        assert _redact(None) is None
        assert _redact({}) == {}


class TestInMemory:
    @pytest.mark.asyncio
    async def test_log_without_database(self, events):
        user_id = uuid.uuid4()
        entry = await events.log(
            SecurityEventType.LOGIN_FAILED,
            "Failed login for amina",
            level="warning",
            user_id=user_id,
            username="amina",
            ip_address="10.0.0.9",
            details={"password": "guess"},
        )

        assert entry["event_type"] == "auth.login_failed"
        assert entry["user_id"] == str(user_id)
        assert entry["details"] == {"password": "[REDACTED]"}
        assert events.get_recent() == [entry]
        assert await events.flush() == 0

    @pytest.mark.asyncio
    async def test_recent_buffer_is_bounded(self, events):
        for i in range(events.RECENT_BUFFER_SIZE + 10):
            await events.log("custom.event", f"event {i}")
        recent = events.get_recent(count=events.RECENT_BUFFER_SIZE + 10)
        assert len(recent) == events.RECENT_BUFFER_SIZE
        assert recent[-1]["message"] == f"event {events.RECENT_BUFFER_SIZE + 9}"

    @pytest.mark.asyncio
    async def test_flush_failure_is_swallowed(self, events):
        def broken_factory():
            raise RuntimeError("database is down")

        events.set_db_session_factory(broken_factory)
        await events.log(SecurityEventType.LOGOUT, "amina logged out")

        assert await events.flush() == 0
        await events.shutdown()


class TestPersistence:
    @pytest.mark.asyncio
    async def test_flush_and_list(self, db_session, event_store):
        user_id = uuid.uuid4()
        await event_store.log(SecurityEventType.LOGIN_SUCCESS, "amina logged in", user_id=user_id)
        await event_store.log(SecurityEventType.LOGOUT, "amina logged out", user_id=user_id)
        await event_store.log(SecurityEventType.ACCESS_DENIED, "denied", level="warning")

        await event_store.flush()

        items, total = await event_store.list_events(db_session)
        assert total == 3
        assert {item.event_type for item in items} == {
            "auth.login_success",
            "auth.logout",
            "access.denied",
        }

        items, total = await event_store.list_events(db_session, user_id=user_id)
        assert total == 2

        items, total = await event_store.list_events(db_session, event_type="access.denied")
        assert total == 1
        assert items[0].level == "warning"
        assert items[0].to_dict()["event_type"] == "access.denied"

    @pytest.mark.asyncio
    async def test_list_paginates(self, db_session, event_store):
        for i in range(5):
            await event_store.log("custom.event", f"event {i}")
        await event_store.flush()

        items, total = await event_store.list_events(db_session, page=2, page_size=2)
        assert total == 5
        assert len(items) == 2

    @pytest.mark.asyncio
    async def test_shutdown_flushes_pending(self, db_session, event_store):
        await event_store.log(SecurityEventType.PASSWORD_CHANGED, "amina changed password")
        await event_store.shutdown()

        _, total = await event_store.list_events(db_session)
        assert total == 1
