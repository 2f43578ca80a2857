from __future__ import annotations

import secrets
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Severity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


@dataclass
class Principal:
    id: str
    email: str
    password_hash: Optional[str] = None
    role: str = "guest"
    is_active: bool = True
    locked_until: Optional[datetime] = None
    mfa_enabled: bool = False
    mfa_secret: Optional[str] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    meta: Dict | None = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


# Fields a partial principal update may touch; anything else is rejected
PRINCIPAL_MUTABLE_FIELDS = frozenset(
    {
        "password_hash",
        "role",
        "is_active",
        "locked_until",
        "mfa_enabled",
        "mfa_secret",
        "last_login_at",
        "meta",
    }
)


@dataclass
class Session:
    token: str
    principal_id: str
    issued_at: datetime
    expires_at: datetime
    is_active: bool = True
    last_activity_at: Optional[datetime] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    @classmethod
    def new(
        cls,
        principal_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_address: str | None = None,
        *,
        now: datetime | None = None,
    ) -> "Session":
        issued = now or utcnow()
        return cls(
            token=secrets.token_urlsafe(32),
            principal_id=principal_id,
            issued_at=issued,
            expires_at=issued + timedelta(minutes=ttl_minutes),
            last_activity_at=issued,
            user_agent=user_agent,
            ip_address=ip_address,
        )


@dataclass
class Role:
    id: str
    name: str
    level: int
    description: str = ""


@dataclass
class Permission:
    id: str
    name: str
    category: str = "general"
    description: str = ""


@dataclass
class RoleAssignment:
    id: str
    user_id: str
    role_id: str
    project_id: Optional[str] = None
    assigned_by: Optional[str] = None
    assigned_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    def is_live(self, now: datetime) -> bool:
        return self.expires_at is None or self.expires_at > now

    def applies_to(self, project_id: Optional[str]) -> bool:
        return self.project_id is None or self.project_id == project_id


@dataclass
class MFAEnrollment:
    """Pending second-factor secret awaiting its first valid code."""

    user_id: str
    secret: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class CounterState:
    key: str
    count: int
    window_reset_at: datetime


@dataclass(frozen=True)
class SecurityEvent:
    event_type: str
    severity: Severity
    description: str
    actor_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["severity"] = self.severity.value
        data["timestamp"] = self.timestamp.isoformat()
        data["kind"] = "security_event"
        return data


@dataclass(frozen=True)
class AuditLogEntry:
    action: str
    resource: str
    resource_id: Optional[str] = None
    actor_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    success: bool = True
    error_message: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        data["kind"] = "audit_log"
        return data
