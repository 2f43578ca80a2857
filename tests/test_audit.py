"""Audit fan-out, sink failure isolation and the in-memory query buffer."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

from bastion.logging import _redact_credentials
from bastion.service.audit import AuditRecorder, EventType, LogAuditSink, RedisAuditSink
from bastion.storage.memory import MemoryAuditSink
from bastion.storage.models import AuditLogEntry, SecurityEvent, Severity


class _FailingSink:
    def append(self, event):
        raise IOError("sink offline")


class _AsyncSink:
    def __init__(self):
        self.events = []

    async def append(self, event):
        self.events.append(event)


class TestAuditRecorder:
    async def test_event_reaches_every_sink(self, clock):
        memory = MemoryAuditSink()
        async_sink = _AsyncSink()
        recorder = AuditRecorder([memory, async_sink], clock=clock)

        event = await recorder.security_event(
            EventType.LOGIN_FAILED,
            Severity.WARNING,
            "bad password",
            actor_id="user-1",
            ip_address="10.0.0.1",
            metadata={"attempt": 2},
        )

        assert memory.security_events() == [event]
        assert async_sink.events == [event]
        assert event.timestamp == clock.now

    async def test_failing_sink_does_not_block_others(self, clock):
        memory = MemoryAuditSink()
        recorder = AuditRecorder([_FailingSink(), memory], clock=clock)

        delivered = await recorder.record(AuditLogEntry(action="LOGIN", resource="session"))

        assert delivered is False
        assert recorder.dropped_events == 1
        assert len(memory) == 1

    async def test_diagnostic_log_failure_is_contained(self, clock):
        recorder = AuditRecorder([_FailingSink()], clock=clock)

        with patch("bastion.service.audit.logger") as diag:
            diag.error.side_effect = RuntimeError("log pipe broken")
            await recorder.security_event(EventType.STORE_FAILURE, Severity.HIGH, "x")

        assert recorder.dropped_events == 1

    async def test_audit_entry_fields(self, clock):
        memory = MemoryAuditSink()
        recorder = AuditRecorder([memory], clock=clock)

        await recorder.audit(
            "ASSIGN_ROLE",
            "role_assignment",
            resource_id="a-1",
            actor_id="admin",
            new_values={"role": "developer"},
        )

        entry = memory.audit_entries()[0]
        assert entry.action == "ASSIGN_ROLE"
        assert entry.success is True
        assert entry.new_values == {"role": "developer"}


class TestSinks:
    def test_log_sink_writes_structured_line(self, clock):
        sink = LogAuditSink()
        sink._log = MagicMock()
        event = SecurityEvent(
            event_type=EventType.ACCOUNT_LOCKED,
            severity=Severity.HIGH,
            description="locked",
            timestamp=clock.now,
        )

        sink.append(event)

        sink._log.info.assert_called_once()
        args, kwargs = sink._log.info.call_args
        assert args == ("security_event",)
        assert kwargs["event_type"] == "ACCOUNT_LOCKED"
        assert kwargs["severity"] == "HIGH"
        assert kwargs["occurred_at"] == clock.now.isoformat()

    def test_log_sink_output_masks_nested_email(self, clock):
        sink = LogAuditSink()
        sink._log = MagicMock()
        event = SecurityEvent(
            event_type=EventType.LOGIN_FAILED,
            severity=Severity.WARNING,
            description="invalid password",
            metadata={"email": "victim@example.com", "reason": "bad_password"},
            timestamp=clock.now,
        )
        sink.append(event)
        _, kwargs = sink._log.info.call_args

        line = _redact_credentials(None, "info", dict(kwargs))

        assert line["metadata"] == {"email": "vi***om", "reason": "bad_password"}
        assert event.metadata["email"] == "victim@example.com"

    async def test_redis_sink_pushes_serialized_record(self, clock):
        cache = MagicMock()
        cache.append_audit_event = AsyncMock()
        recorder = AuditRecorder([RedisAuditSink(cache)], clock=clock)

        event = await recorder.security_event(EventType.MFA_ENABLED, Severity.INFO, "on")

        payload = cache.append_audit_event.await_args.args[0]
        assert payload["id"] == event.id
        assert payload["kind"] == "security_event"


class TestMemoryAuditSink:
    async def _fill(self, clock):
        sink = MemoryAuditSink()
        recorder = AuditRecorder([sink], clock=clock)
        await recorder.security_event(EventType.LOGIN_FAILED, Severity.WARNING, "a", actor_id="u1")
        clock.advance(hours=2)
        await recorder.security_event(EventType.ACCOUNT_LOCKED, Severity.HIGH, "b", actor_id="u1")
        await recorder.security_event(EventType.LOGIN_FAILED, Severity.WARNING, "c", actor_id="u2")
        await recorder.audit("LOGIN", "session", actor_id="u2")
        await recorder.audit("CHANGE_PASSWORD", "principal", actor_id="u2", success=False)
        return sink

    async def test_filters_are_combined(self, clock):
        sink = await self._fill(clock)

        assert [e.description for e in sink.security_events()] == ["c", "b", "a"]
        assert [e.description for e in sink.security_events(actor_id="u1")] == ["b", "a"]
        assert [
            e.description
            for e in sink.security_events(event_type=EventType.LOGIN_FAILED, actor_id="u1")
        ] == ["a"]
        assert [e.description for e in sink.security_events(severity="HIGH")] == ["b"]
        since = clock.now - timedelta(hours=1)
        assert len(sink.security_events(since=since)) == 2
        assert len(sink.security_events(limit=1)) == 1

    async def test_statistics(self, clock):
        sink = await self._fill(clock)

        stats = sink.statistics()

        assert stats["total_security_events"] == 3
        assert stats["total_audit_entries"] == 2
        assert stats["failed_operations"] == 1
        assert stats["by_severity"] == {"INFO": 0, "WARNING": 2, "HIGH": 1, "CRITICAL": 0}
        assert stats["by_event_type"][EventType.LOGIN_FAILED] == 2
        assert sink.statistics(since=clock.now)["total_security_events"] == 2

    def test_buffer_is_bounded(self, clock):
        sink = MemoryAuditSink(max_events=3)
        for _ in range(5):
            sink.append(MagicMock(spec=[]))

        assert len(sink) == 3
