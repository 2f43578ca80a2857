from __future__ import annotations

import inspect
import threading
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Optional, Protocol, Union

from bastion.logging import get_logger
from bastion.storage.models import AuditLogEntry, SecurityEvent, Severity, utcnow
from bastion.storage.redis_cache import RedisCache

logger = get_logger(__name__)

AuditRecord = Union[SecurityEvent, AuditLogEntry]


class EventType:
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    SESSION_REJECTED = "SESSION_REJECTED"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGIN_BLOCKED = "LOGIN_BLOCKED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    MFA_FAILED = "MFA_FAILED"
    MFA_ENABLED = "MFA_ENABLED"
    MFA_DISABLED = "MFA_DISABLED"
    MFA_SECRET_GENERATED = "MFA_SECRET_GENERATED"
    MFA_VERIFICATION_FAILED = "MFA_VERIFICATION_FAILED"
    AUTHORIZATION_DENIED = "AUTHORIZATION_DENIED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    STORE_FAILURE = "STORE_FAILURE"


class AuditSink(Protocol):
    """Append-only destination; ``append`` may be sync or a coroutine."""

    def append(self, event: AuditRecord) -> Any: ...


class LogAuditSink:
    """Writes each record as one structured log line on the ``audit`` channel."""

    def __init__(self) -> None:
        self._log = get_logger("bastion.audit")

    def append(self, event: AuditRecord) -> None:
        payload = event.to_dict()
        payload["occurred_at"] = payload.pop("timestamp")
        kind = payload.pop("kind")
        self._log.info(kind, **payload)


class RedisAuditSink:
    def __init__(self, cache: RedisCache) -> None:
        self.cache = cache

    async def append(self, event: AuditRecord) -> None:
        await self.cache.append_audit_event(event.to_dict())


class AuditRecorder:
    """Fan out security events and audit entries to every configured sink.

    ``record`` never raises. A failing sink is reported on the diagnostic log
    channel and counted in ``dropped_events``; the remaining sinks still
    receive the record.
    """

    def __init__(
        self,
        sinks: Iterable[AuditSink],
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._sinks = list(sinks)
        self._clock = clock
        self._lock = threading.Lock()
        self.dropped_events = 0

    @property
    def sinks(self) -> list[AuditSink]:
        return list(self._sinks)

    async def record(self, event: AuditRecord) -> bool:
        delivered = True
        for sink in self._sinks:
            try:
                result = sink.append(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                delivered = False
                with self._lock:
                    self.dropped_events += 1
                try:
                    logger.error(
                        "audit_sink_failed",
                        sink=type(sink).__name__,
                        record_id=event.id,
                        error=str(exc),
                    )
                except Exception:
                    # Diagnostic channel is down too; the caller still must not fail
                    pass
        return delivered

    async def security_event(
        self,
        event_type: str,
        severity: Severity,
        description: str,
        *,
        actor_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SecurityEvent:
        event = SecurityEvent(
            event_type=event_type,
            severity=severity,
            description=description,
            actor_id=actor_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata=dict(metadata or {}),
            timestamp=self._clock(),
        )
        await self.record(event)
        return event

    async def audit(
        self,
        action: str,
        resource: str,
        *,
        resource_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        success: bool = True,
        error_message: Optional[str] = None,
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            action=action,
            resource=resource,
            resource_id=resource_id,
            actor_id=actor_id,
            ip_address=ip_address,
            user_agent=user_agent,
            old_values=old_values,
            new_values=new_values,
            success=success,
            error_message=error_message,
            timestamp=self._clock(),
        )
        await self.record(entry)
        return entry


__all__ = [
    "AuditRecorder",
    "AuditSink",
    "EventType",
    "LogAuditSink",
    "RedisAuditSink",
    "Severity",
]
