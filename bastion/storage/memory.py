from __future__ import annotations

import base64
import hashlib
import json
import os
import secrets
import threading
from collections import Counter, deque
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Deque, Dict, Iterable, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from bastion.logging import get_logger
from bastion.storage.errors import ConstraintViolation
from bastion.storage.models import (
    PRINCIPAL_MUTABLE_FIELDS,
    AuditLogEntry,
    MFAEnrollment,
    Permission,
    Principal,
    Role,
    RoleAssignment,
    SecurityEvent,
    Session,
    Severity,
    new_id,
    utcnow,
)


class MemoryStore:
    """In-process principal, session and role/permission store.

    All reads and writes go through ``_data_lock`` so that uniqueness checks
    and the writes they guard happen in one critical section. When ``fs_root``
    is given the state is mirrored to ``<fs_root>/state/bastion_store.json``
    after each mutation and reloaded on start.
    """

    def __init__(
        self,
        fs_root: str | None = None,
        *,
        mfa_encryption_key: str | None = None,
    ) -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        self.sessions: Dict[str, Session] = {}
        self.roles: Dict[str, Role] = {}
        self.permissions: Dict[str, Permission] = {}
        self.role_permissions: Dict[str, set[str]] = {}
        self.assignments: Dict[str, RoleAssignment] = {}
        self.legacy_role_map: Dict[str, str] = {}
        self.mfa_enrollments: Dict[str, MFAEnrollment] = {}
        # RLock so helpers can be called while the lock is already held
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)
        if self.fs_root is not None:
            self._load_state()

    # -- encryption -------------------------------------------------------

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str | None) -> Fernet:
        material = key_material or os.getenv("MFA_ENCRYPTION_KEY") or os.getenv("JWT_SECRET")
        if not material:
            # Process-local key; secrets written with it do not survive a restart
            material = secrets.token_urlsafe(64)
            self.logger.warning("mfa_cipher_ephemeral_key")
        try:
            return Fernet(self._derive_cipher_key(material))
        except ValueError as exc:
            raise RuntimeError("Unable to initialize MFA cipher") from exc

    def _encrypt_secret(self, secret: str | None) -> str | None:
        if not secret:
            return secret
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_secret(self, secret: str | None) -> str | None:
        if not secret:
            return secret
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("mfa_secret_decrypt_failed")
            return None

    # -- principals -------------------------------------------------------

    def create_principal(
        self,
        email: str,
        password_hash: str | None = None,
        *,
        role: str = "guest",
        is_active: bool = True,
        meta: Optional[Dict] = None,
    ) -> Principal:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(p.email == normalized for p in self.principals.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            principal = Principal(
                id=new_id(),
                email=normalized,
                password_hash=password_hash,
                role=role,
                is_active=is_active,
                meta=meta.copy() if meta else {},
            )
            self.principals[principal.id] = principal
            self._persist_state()
            return replace(principal)

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            return replace(principal) if principal else None

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        normalized = email.strip().lower()
        with self._data_lock:
            for principal in self.principals.values():
                if principal.email == normalized:
                    return replace(principal)
            return None

    def list_principals(self) -> List[Principal]:
        with self._data_lock:
            return [replace(p) for p in self.principals.values()]

    def update_principal(self, principal_id: str, **patch: Any) -> Optional[Principal]:
        """Apply a partial update; untouched fields keep their stored values."""
        unknown = set(patch) - PRINCIPAL_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported principal fields: {sorted(unknown)}")
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return None
            updated = replace(principal, **patch)
            self.principals[principal_id] = updated
            self._persist_state()
            return replace(updated)

    # -- sessions ---------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.principal_id not in self.principals:
                raise ConstraintViolation(
                    "principal does not exist", {"principal_id": session.principal_id}
                )
            if session.token in self.sessions:
                raise ConstraintViolation("session token collision", {})
            self.sessions[session.token] = replace(session)
            self._persist_state()
            return replace(session)

    def get_session(self, token: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(token)
            return replace(session) if session else None

    def list_sessions(self, principal_id: str, *, active_only: bool = True) -> List[Session]:
        with self._data_lock:
            return [
                replace(s)
                for s in self.sessions.values()
                if s.principal_id == principal_id and (s.is_active or not active_only)
            ]

    def touch_session(self, token: str, when: datetime) -> None:
        # Activity timestamps are not persisted; they are advisory
        with self._data_lock:
            session = self.sessions.get(token)
            if session:
                session.last_activity_at = when

    def revoke_session(self, token: str) -> bool:
        with self._data_lock:
            session = self.sessions.get(token)
            if not session or not session.is_active:
                return False
            session.is_active = False
            self._persist_state()
            return True

    def revoke_principal_sessions(
        self, principal_id: str, *, except_token: str | None = None
    ) -> int:
        with self._data_lock:
            revoked = 0
            for session in self.sessions.values():
                if session.principal_id != principal_id or not session.is_active:
                    continue
                if except_token and session.token == except_token:
                    continue
                session.is_active = False
                revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def purge_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                token
                for token, s in self.sessions.items()
                if s.expires_at <= now or not s.is_active
            ]
            for token in stale:
                self.sessions.pop(token, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- roles and permissions -------------------------------------------

    def create_role(
        self, name: str, level: int, description: str = "", *, role_id: str | None = None
    ) -> Role:
        with self._data_lock:
            if any(r.name == name for r in self.roles.values()):
                raise ConstraintViolation("role already exists", {"name": name})
            role = Role(id=role_id or new_id(), name=name, level=level, description=description)
            self.roles[role.id] = role
            self.role_permissions.setdefault(role.id, set())
            self._persist_state()
            return replace(role)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            return replace(role) if role else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            for role in self.roles.values():
                if role.name == name:
                    return replace(role)
            return None

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            return sorted((replace(r) for r in self.roles.values()), key=lambda r: r.level)

    def create_permission(
        self,
        name: str,
        category: str = "general",
        description: str = "",
        *,
        permission_id: str | None = None,
    ) -> Permission:
        with self._data_lock:
            if any(p.name == name for p in self.permissions.values()):
                raise ConstraintViolation("permission already exists", {"name": name})
            permission = Permission(
                id=permission_id or new_id(),
                name=name,
                category=category,
                description=description,
            )
            self.permissions[permission.id] = permission
            self._persist_state()
            return replace(permission)

    def get_permission_by_name(self, name: str) -> Optional[Permission]:
        with self._data_lock:
            for permission in self.permissions.values():
                if permission.name == name:
                    return replace(permission)
            return None

    def list_permissions(self) -> List[Permission]:
        with self._data_lock:
            return sorted(
                (replace(p) for p in self.permissions.values()),
                key=lambda p: (p.category, p.name),
            )

    def grant_permission(self, role_id: str, permission_id: str) -> None:
        with self._data_lock:
            if role_id not in self.roles:
                raise ConstraintViolation("role does not exist", {"role_id": role_id})
            if permission_id not in self.permissions:
                raise ConstraintViolation(
                    "permission does not exist", {"permission_id": permission_id}
                )
            self.role_permissions.setdefault(role_id, set()).add(permission_id)
            self._persist_state()

    def revoke_permission(self, role_id: str, permission_id: str) -> bool:
        with self._data_lock:
            linked = self.role_permissions.get(role_id, set())
            if permission_id not in linked:
                return False
            linked.discard(permission_id)
            self._persist_state()
            return True

    def get_role_permissions(self, role_id: str) -> List[Permission]:
        with self._data_lock:
            return [
                replace(self.permissions[pid])
                for pid in sorted(self.role_permissions.get(role_id, set()))
                if pid in self.permissions
            ]

    def get_legacy_role_map(self) -> Dict[str, str]:
        with self._data_lock:
            return dict(self.legacy_role_map)

    def set_legacy_role_map(self, mapping: Dict[str, str]) -> None:
        with self._data_lock:
            self.legacy_role_map = dict(mapping)
            self._persist_state()

    def replace_role_catalog(
        self,
        roles: Iterable[Role],
        permissions: Iterable[Permission],
        links: Dict[str, Iterable[str]],
        legacy_role_map: Dict[str, str],
    ) -> None:
        """Swap the role catalog in one step.

        ``links`` maps role id to permission ids. Assignments referencing
        roles that no longer exist are dropped.
        """
        with self._data_lock:
            self.roles = {r.id: replace(r) for r in roles}
            self.permissions = {p.id: replace(p) for p in permissions}
            self.role_permissions = {
                role_id: {pid for pid in pids if pid in self.permissions}
                for role_id, pids in links.items()
                if role_id in self.roles
            }
            for role_id in self.roles:
                self.role_permissions.setdefault(role_id, set())
            self.assignments = {
                aid: a for aid, a in self.assignments.items() if a.role_id in self.roles
            }
            self.legacy_role_map = dict(legacy_role_map)
            self._persist_state()

    # -- role assignments -------------------------------------------------

    def create_assignment(
        self,
        user_id: str,
        role_id: str,
        *,
        project_id: str | None,
        assigned_by: str | None,
        expires_at: datetime | None,
        now: datetime,
    ) -> RoleAssignment:
        with self._data_lock:
            for existing in self.assignments.values():
                if (
                    existing.user_id == user_id
                    and existing.role_id == role_id
                    and existing.project_id == project_id
                    and existing.is_live(now)
                ):
                    raise ConstraintViolation(
                        "role already assigned",
                        {"assignment_id": existing.id},
                    )
            assignment = RoleAssignment(
                id=new_id(),
                user_id=user_id,
                role_id=role_id,
                project_id=project_id,
                assigned_by=assigned_by,
                assigned_at=now,
                expires_at=expires_at,
            )
            self.assignments[assignment.id] = assignment
            self._persist_state()
            return replace(assignment)

    def list_assignments(
        self, user_id: str, *, now: datetime, include_expired: bool = False
    ) -> List[RoleAssignment]:
        with self._data_lock:
            return [
                replace(a)
                for a in self.assignments.values()
                if a.user_id == user_id and (include_expired or a.is_live(now))
            ]

    def delete_assignment(
        self, user_id: str, role_id: str, *, project_id: str | None, now: datetime
    ) -> bool:
        with self._data_lock:
            match = next(
                (
                    aid
                    for aid, a in self.assignments.items()
                    if a.user_id == user_id
                    and a.role_id == role_id
                    and a.project_id == project_id
                    and a.is_live(now)
                ),
                None,
            )
            if match is None:
                return False
            self.assignments.pop(match)
            self._persist_state()
            return True

    def purge_expired_assignments(self, now: datetime) -> int:
        with self._data_lock:
            stale = [aid for aid, a in self.assignments.items() if not a.is_live(now)]
            for aid in stale:
                self.assignments.pop(aid)
            if stale:
                self._persist_state()
            return len(stale)

    # -- pending MFA enrollments -----------------------------------------

    def save_mfa_enrollment(self, user_id: str, secret: str, *, now: datetime) -> MFAEnrollment:
        with self._data_lock:
            if user_id not in self.principals:
                raise ConstraintViolation("principal not found for mfa", {"user_id": user_id})
            self.mfa_enrollments[user_id] = MFAEnrollment(
                user_id=user_id, secret=self._encrypt_secret(secret), created_at=now
            )
            self._persist_state()
            return MFAEnrollment(user_id=user_id, secret=secret, created_at=now)

    def get_mfa_enrollment(self, user_id: str) -> Optional[MFAEnrollment]:
        with self._data_lock:
            record = self.mfa_enrollments.get(user_id)
            if not record:
                return None
            secret = self._decrypt_secret(record.secret)
            if not secret:
                return None
            return MFAEnrollment(user_id=user_id, secret=secret, created_at=record.created_at)

    def delete_mfa_enrollment(self, user_id: str) -> bool:
        with self._data_lock:
            removed = self.mfa_enrollments.pop(user_id, None) is not None
            if removed:
                self._persist_state()
            return removed

    # -- persistence ------------------------------------------------------

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "bastion_store.json"

    @staticmethod
    def _dt(value: datetime | None) -> str | None:
        return value.isoformat() if value else None

    @staticmethod
    def _parse_dt(raw: str | None) -> datetime | None:
        return datetime.fromisoformat(raw) if raw else None

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "principals": [
                {
                    "id": p.id,
                    "email": p.email,
                    "password_hash": p.password_hash,
                    "role": p.role,
                    "is_active": p.is_active,
                    "locked_until": self._dt(p.locked_until),
                    "mfa_enabled": p.mfa_enabled,
                    "mfa_secret": self._encrypt_secret(p.mfa_secret),
                    "last_login_at": self._dt(p.last_login_at),
                    "created_at": self._dt(p.created_at),
                    "meta": p.meta,
                }
                for p in self.principals.values()
            ],
            "sessions": [
                {
                    "token": s.token,
                    "principal_id": s.principal_id,
                    "issued_at": self._dt(s.issued_at),
                    "expires_at": self._dt(s.expires_at),
                    "is_active": s.is_active,
                    "last_activity_at": self._dt(s.last_activity_at),
                    "user_agent": s.user_agent,
                    "ip_address": s.ip_address,
                }
                for s in self.sessions.values()
            ],
            "roles": [
                {"id": r.id, "name": r.name, "level": r.level, "description": r.description}
                for r in self.roles.values()
            ],
            "permissions": [
                {
                    "id": p.id,
                    "name": p.name,
                    "category": p.category,
                    "description": p.description,
                }
                for p in self.permissions.values()
            ],
            "role_permissions": {
                role_id: sorted(pids) for role_id, pids in self.role_permissions.items()
            },
            "assignments": [
                {
                    "id": a.id,
                    "user_id": a.user_id,
                    "role_id": a.role_id,
                    "project_id": a.project_id,
                    "assigned_by": a.assigned_by,
                    "assigned_at": self._dt(a.assigned_at),
                    "expires_at": self._dt(a.expires_at),
                }
                for a in self.assignments.values()
            ],
            "legacy_role_map": self.legacy_role_map,
            "mfa_enrollments": [
                {
                    "user_id": e.user_id,
                    "secret": e.secret,
                    "created_at": self._dt(e.created_at),
                }
                for e in self.mfa_enrollments.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.principals = {
            p["id"]: Principal(
                id=p["id"],
                email=p["email"],
                password_hash=p.get("password_hash"),
                role=p.get("role", "guest"),
                is_active=p.get("is_active", True),
                locked_until=self._parse_dt(p.get("locked_until")),
                mfa_enabled=p.get("mfa_enabled", False),
                mfa_secret=self._decrypt_secret(p.get("mfa_secret")),
                last_login_at=self._parse_dt(p.get("last_login_at")),
                created_at=self._parse_dt(p.get("created_at")) or utcnow(),
                meta=p.get("meta") or {},
            )
            for p in data.get("principals", [])
        }
        self.sessions = {
            s["token"]: Session(
                token=s["token"],
                principal_id=s["principal_id"],
                issued_at=self._parse_dt(s["issued_at"]),
                expires_at=self._parse_dt(s["expires_at"]),
                is_active=s.get("is_active", True),
                last_activity_at=self._parse_dt(s.get("last_activity_at")),
                user_agent=s.get("user_agent"),
                ip_address=s.get("ip_address"),
            )
            for s in data.get("sessions", [])
        }
        self.roles = {r["id"]: Role(**r) for r in data.get("roles", [])}
        self.permissions = {p["id"]: Permission(**p) for p in data.get("permissions", [])}
        self.role_permissions = {
            role_id: set(pids) for role_id, pids in data.get("role_permissions", {}).items()
        }
        self.assignments = {
            a["id"]: RoleAssignment(
                id=a["id"],
                user_id=a["user_id"],
                role_id=a["role_id"],
                project_id=a.get("project_id"),
                assigned_by=a.get("assigned_by"),
                assigned_at=self._parse_dt(a.get("assigned_at")) or utcnow(),
                expires_at=self._parse_dt(a.get("expires_at")),
            )
            for a in data.get("assignments", [])
        }
        self.legacy_role_map = dict(data.get("legacy_role_map", {}))
        self.mfa_enrollments = {
            e["user_id"]: MFAEnrollment(
                user_id=e["user_id"],
                secret=e["secret"],
                created_at=self._parse_dt(e.get("created_at")) or utcnow(),
            )
            for e in data.get("mfa_enrollments", [])
        }
        return True


class MemoryAuditSink:
    """Bounded append-only buffer of security events and audit entries."""

    def __init__(self, max_events: int = 10_000) -> None:
        self._events: Deque[SecurityEvent | AuditLogEntry] = deque(maxlen=max_events)
        self._lock = threading.Lock()

    def append(self, event: SecurityEvent | AuditLogEntry) -> None:
        with self._lock:
            self._events.append(event)

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def security_events(
        self,
        *,
        event_type: str | None = None,
        severity: str | None = None,
        actor_id: str | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> List[SecurityEvent]:
        """Newest-first security events matching every supplied filter."""
        with self._lock:
            snapshot = list(self._events)
        matches: List[SecurityEvent] = []
        for event in reversed(snapshot):
            if not isinstance(event, SecurityEvent):
                continue
            if event_type and event.event_type != event_type:
                continue
            if severity and event.severity.value != severity:
                continue
            if actor_id and event.actor_id != actor_id:
                continue
            if since and event.timestamp < since:
                continue
            matches.append(event)
            if len(matches) >= limit:
                break
        return matches

    def audit_entries(
        self, *, action: str | None = None, actor_id: str | None = None, limit: int = 100
    ) -> List[AuditLogEntry]:
        with self._lock:
            snapshot = list(self._events)
        matches: List[AuditLogEntry] = []
        for entry in reversed(snapshot):
            if not isinstance(entry, AuditLogEntry):
                continue
            if action and entry.action != action:
                continue
            if actor_id and entry.actor_id != actor_id:
                continue
            matches.append(entry)
            if len(matches) >= limit:
                break
        return matches

    def statistics(self, *, since: datetime | None = None) -> Dict[str, Any]:
        with self._lock:
            snapshot = list(self._events)
        security = [
            e
            for e in snapshot
            if isinstance(e, SecurityEvent) and (since is None or e.timestamp >= since)
        ]
        audit = [
            e
            for e in snapshot
            if isinstance(e, AuditLogEntry) and (since is None or e.timestamp >= since)
        ]
        by_severity = Counter(e.severity.value for e in security)
        return {
            "total_security_events": len(security),
            "total_audit_entries": len(audit),
            "failed_operations": sum(1 for e in audit if not e.success),
            "by_severity": {s.value: by_severity.get(s.value, 0) for s in Severity},
            "by_event_type": dict(Counter(e.event_type for e in security).most_common()),
            "by_action": dict(Counter(e.action for e in audit).most_common()),
        }
