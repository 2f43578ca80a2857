"""Tests for the session registry: create, resolve, revoke, expiry."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from bastion.service.audit import AuditRecorder, EventType
from bastion.service.errors import AuthenticationError, SessionExpiredError
from bastion.service.sessions import SessionRegistry
from bastion.storage.memory import MemoryAuditSink


@pytest.fixture
def user(make_principal):
    return make_principal("owner@example.com")


class TestCreate:
    async def test_new_session_is_live(self, runtime, user, clock):
        session = await runtime.sessions.create(user.id, ip_address="10.0.0.1", user_agent="pytest")

        assert session.is_active
        assert session.issued_at == clock.now
        assert session.expires_at == clock.now + timedelta(minutes=runtime.settings.session_ttl_minutes)
        assert session.ip_address == "10.0.0.1"
        assert len(session.token) >= 40

    async def test_tokens_are_unique(self, runtime, user):
        first = await runtime.sessions.create(user.id)
        second = await runtime.sessions.create(user.id)

        assert first.token != second.token

    async def test_store_failure_records_event_and_raises(self, clock):
        sink = MemoryAuditSink()
        store = MagicMock()
        store.create_session.side_effect = RuntimeError("disk full")
        registry = SessionRegistry(store, store, AuditRecorder([sink], clock=clock), clock=clock)

        with pytest.raises(AuthenticationError):
            await registry.create("user-1")

        events = sink.security_events(event_type=EventType.STORE_FAILURE)
        assert len(events) == 1
        assert events[0].severity.value == "HIGH"


class TestResolve:
    async def test_live_session_resolves_with_principal(self, runtime, user):
        session = await runtime.sessions.create(user.id)

        resolved, principal = await runtime.sessions.resolve(session.token)

        assert resolved.token == session.token
        assert principal.id == user.id

    async def test_unknown_token_rejected(self, runtime):
        with pytest.raises(AuthenticationError) as excinfo:
            await runtime.sessions.validate("no-such-token")

        assert excinfo.value.detail["reason"] == "session_not_found"

    async def test_revoked_session_rejected(self, runtime, user):
        session = await runtime.sessions.create(user.id)
        assert await runtime.sessions.revoke(session.token)

        with pytest.raises(AuthenticationError) as excinfo:
            await runtime.sessions.validate(session.token)

        assert excinfo.value.detail["reason"] == "session_revoked"

    async def test_expired_session_rejected(self, runtime, user, clock):
        session = await runtime.sessions.create(user.id)
        clock.advance(minutes=runtime.settings.session_ttl_minutes)

        with pytest.raises(SessionExpiredError):
            await runtime.sessions.validate(session.token)

    async def test_inactive_principal_rejected(self, runtime, user):
        session = await runtime.sessions.create(user.id)
        runtime.store.update_principal(user.id, is_active=False)

        with pytest.raises(AuthenticationError) as excinfo:
            await runtime.sessions.validate(session.token)

        assert excinfo.value.detail["reason"] == "principal_inactive"

    async def test_locked_principal_rejected_until_lock_passes(self, runtime, user, clock):
        session = await runtime.sessions.create(user.id)
        runtime.store.update_principal(user.id, locked_until=clock.now + timedelta(minutes=5))

        with pytest.raises(AuthenticationError) as excinfo:
            await runtime.sessions.validate(session.token)
        assert excinfo.value.detail["reason"] == "principal_locked"

        clock.advance(minutes=5)
        assert (await runtime.sessions.validate(session.token)).token == session.token

    async def test_rejection_is_audited(self, runtime):
        with pytest.raises(AuthenticationError):
            await runtime.sessions.validate("missing", ip_address="10.1.1.1")

        events = runtime.audit_log.security_events(event_type=EventType.SESSION_REJECTED)
        assert events[0].metadata["reason"] == "session_not_found"
        assert events[0].ip_address == "10.1.1.1"

    async def test_store_error_is_a_rejection(self, clock):
        store = MagicMock()
        store.get_session.side_effect = ConnectionError("store down")
        registry = SessionRegistry(store, store, AuditRecorder([], clock=clock), clock=clock)

        with pytest.raises(AuthenticationError) as excinfo:
            await registry.validate("token")

        assert excinfo.value.detail["reason"] == "store_unavailable"


class TestRevoke:
    async def test_revoke_all_keeps_excepted_session(self, runtime, user):
        keep = await runtime.sessions.create(user.id)
        drop_a = await runtime.sessions.create(user.id)
        drop_b = await runtime.sessions.create(user.id)

        revoked = await runtime.sessions.revoke_all(user.id, except_token=keep.token)

        assert revoked == 2
        assert (await runtime.sessions.validate(keep.token)).token == keep.token
        for dropped in (drop_a, drop_b):
            with pytest.raises(AuthenticationError):
                await runtime.sessions.validate(dropped.token)

    async def test_revoking_twice_reports_false(self, runtime, user):
        session = await runtime.sessions.create(user.id)

        assert await runtime.sessions.revoke(session.token) is True
        assert await runtime.sessions.revoke(session.token) is False

    async def test_sweep_drops_expired_and_revoked(self, runtime, user, clock):
        expired = await runtime.sessions.create(user.id)
        clock.advance(minutes=runtime.settings.session_ttl_minutes + 1)
        live = await runtime.sessions.create(user.id)
        revoked = await runtime.sessions.create(user.id)
        await runtime.sessions.revoke(revoked.token)

        assert runtime.sessions.sweep_expired() == 2
        assert runtime.store.get_session(expired.token) is None
        assert [s.token for s in runtime.sessions.list_active(user.id)] == [live.token]


class TestTouch:
    async def test_touch_updates_activity(self, runtime, user, clock):
        session = await runtime.sessions.create(user.id)
        clock.advance(minutes=3)

        await runtime.sessions.touch(session)

        assert runtime.store.get_session(session.token).last_activity_at == clock.now

    async def test_touch_failure_is_swallowed(self, clock):
        store = MagicMock()
        store.touch_session.side_effect = RuntimeError("write failed")
        cache = MagicMock()
        cache.update_session_activity = AsyncMock()
        registry = SessionRegistry(
            store, store, AuditRecorder([], clock=clock), cache=cache, clock=clock
        )
        session = MagicMock(token="t", expires_at=clock.now + timedelta(hours=1))

        await registry.touch(session)

        cache.update_session_activity.assert_not_called()

    async def test_touch_mirrors_activity_to_cache(self, runtime, user, clock):
        session = await runtime.sessions.create(user.id)
        cache = MagicMock()
        cache.update_session_activity = AsyncMock()
        runtime.sessions.cache = cache

        await runtime.sessions.touch(session)

        cache.update_session_activity.assert_awaited_once()
        token, when, ttl = cache.update_session_activity.await_args.args
        assert token == session.token
        assert when == clock.now
        assert ttl == runtime.settings.session_ttl_minutes * 60
