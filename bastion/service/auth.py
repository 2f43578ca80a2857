from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from bastion.logging import get_logger
from bastion.service.audit import AuditRecorder, EventType
from bastion.service.errors import (
    AuthenticationError,
    ConflictError,
    MFARequiredError,
    NotFoundError,
    ValidationError,
    WeakPasswordError,
)
from bastion.service.lockout import RateGuard
from bastion.service.mfa import MFAService
from bastion.service.rbac import RBACEngine
from bastion.service.sessions import SessionRegistry
from bastion.service.tokens import REFRESH, TokenCodec, TokenPair
from bastion.storage.errors import ConstraintViolation
from bastion.storage.models import Principal, Session, Severity, utcnow

logger = get_logger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

PASSWORD_RULES = (
    (re.compile(r".{8,}"), "at least 8 characters"),
    (re.compile(r"[a-z]"), "a lowercase letter"),
    (re.compile(r"[A-Z]"), "an uppercase letter"),
    (re.compile(r"\d"), "a digit"),
    (re.compile(r"[^A-Za-z0-9]"), "a special character"),
)


class CredentialStore(Protocol):
    def create_principal(
        self,
        email: str,
        password_hash: str | None = None,
        *,
        role: str = "guest",
        is_active: bool = True,
        meta: Optional[dict] = None,
    ) -> Principal: ...

    def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    def get_principal_by_email(self, email: str) -> Optional[Principal]: ...

    def update_principal(self, principal_id: str, **patch: Any) -> Optional[Principal]: ...

    def list_principals(self) -> List[Principal]: ...


@dataclass
class LoginResult:
    principal: Principal
    session: Session
    tokens: TokenPair


def password_policy_violations(password: str) -> list[str]:
    return [label for pattern, label in PASSWORD_RULES if not pattern.search(password or "")]


class AuthService:
    """Credential checks, login lockout, token refresh and session teardown."""

    def __init__(
        self,
        store: CredentialStore,
        sessions: SessionRegistry,
        tokens: TokenCodec,
        guard: RateGuard,
        mfa: MFAService,
        rbac: RBACEngine,
        audit: AuditRecorder,
        *,
        mfa_enabled: bool = True,
        lockout_minutes: int = 15,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.tokens = tokens
        self.guard = guard
        self.mfa = mfa
        self.rbac = rbac
        self.audit = audit
        self.mfa_enabled = mfa_enabled
        self.lockout = timedelta(minutes=lockout_minutes)
        self._clock = clock
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against for unknown emails so response time does not reveal them
        self._dummy_hash = self._pwd_hasher.hash("bastion-timing-equalizer")

    # -- passwords -------------------------------------------------------

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, principal: Principal, password: str) -> bool:
        if not principal.password_hash:
            logger.warning("password_record_missing", principal_id=principal.id)
            return False
        try:
            return self._pwd_hasher.verify(principal.password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_invalid", principal_id=principal.id)
            return False

    def _burn_password_check(self, password: str) -> None:
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except VerificationError:
            pass

    @staticmethod
    def check_password_policy(password: str) -> None:
        missing = password_policy_violations(password)
        if missing:
            raise WeakPasswordError(
                "password does not meet policy", detail={"requires": missing}
            )

    # -- registration ----------------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        *,
        role: str = "guest",
        created_by: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Principal:
        normalized = (email or "").strip().lower()
        if not _EMAIL_RE.match(normalized):
            raise ValidationError("invalid email address", detail={"field": "email"})
        self.check_password_policy(password)
        if self.rbac.role_for_name(role) is None:
            raise ValidationError("unknown role", detail={"role": role})
        try:
            principal = self.store.create_principal(
                normalized, self.hash_password(password), role=role
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail={"field": "email"}) from exc
        await self.audit.audit(
            "CREATE",
            "user",
            resource_id=principal.id,
            actor_id=created_by,
            ip_address=ip_address,
            user_agent=user_agent,
            new_values={"email": principal.email, "role": principal.role},
        )
        logger.info("principal_registered", principal_id=principal.id, role=role)
        return principal

    # -- login -----------------------------------------------------------

    async def _login_failed(
        self,
        reason: str,
        description: str,
        *,
        severity: Severity = Severity.WARNING,
        event_type: str = EventType.LOGIN_FAILED,
        principal_id: Optional[str],
        email: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
        extra: Optional[dict] = None,
    ) -> None:
        await self.audit.security_event(
            event_type,
            severity,
            description,
            actor_id=principal_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"email": email, "reason": reason, **(extra or {})},
        )
        await self.audit.audit(
            "LOGIN",
            "auth",
            resource_id=principal_id,
            actor_id=principal_id,
            ip_address=ip_address,
            user_agent=user_agent,
            success=False,
            error_message=reason,
        )

    async def _guard_client(
        self, ip_address: Optional[str], user_agent: Optional[str], operation: str
    ) -> None:
        # Anonymous endpoints bypass the gate, so the per-IP budget is charged here
        if ip_address:
            await self.guard.acquire(
                f"ip:{ip_address}",
                "general",
                ip_address=ip_address,
                user_agent=user_agent,
                metadata={"operation": operation},
            )

    async def login(
        self,
        email: str,
        password: str,
        mfa_code: Optional[str] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        """Authenticate by email and password and open a new session.

        Every attempt is counted against the ``login`` policy keyed by the
        normalized email; the counter resets on success. When the failures
        reach the policy's budget the principal is locked for the lockout
        period as well, so existing sessions stop working too.
        """
        normalized = (email or "").strip().lower()
        if not normalized or not password:
            raise ValidationError("email and password are required")
        context = {"ip_address": ip_address, "user_agent": user_agent}

        await self._guard_client(ip_address, user_agent, "login")
        attempt = await self.guard.acquire(
            normalized, "login", metadata={"email": normalized}, **context
        )

        try:
            principal = self.store.get_principal_by_email(normalized)
        except Exception as exc:
            logger.error("principal_lookup_failed", error=str(exc))
            raise AuthenticationError("invalid credentials") from exc

        if principal is None:
            self._burn_password_check(password)
            await self._login_failed(
                "unknown_email",
                "login attempt for unknown email",
                principal_id=None,
                email=normalized,
                **context,
            )
            raise AuthenticationError("invalid credentials")

        now = self._clock()
        if principal.is_locked(now):
            await self._login_failed(
                "account_locked",
                "login attempt on locked account",
                severity=Severity.HIGH,
                event_type=EventType.LOGIN_BLOCKED,
                principal_id=principal.id,
                email=normalized,
                extra={"locked_until": principal.locked_until.isoformat()},
                **context,
            )
            raise AuthenticationError("account locked", detail={"reason": "account_locked"})

        if not principal.is_active:
            await self._login_failed(
                "account_inactive",
                "login attempt on deactivated account",
                principal_id=principal.id,
                email=normalized,
                **context,
            )
            raise AuthenticationError("invalid credentials")

        if not self.verify_password(principal, password):
            await self._login_failed(
                "bad_password",
                "invalid password",
                principal_id=principal.id,
                email=normalized,
                extra={"attempts": attempt.count},
                **context,
            )
            policy = self.guard.policy("login")
            if attempt.count >= policy.max_attempts:
                await self._lock_principal(principal, now, attempts=attempt.count, **context)
            raise AuthenticationError("invalid credentials")

        if self.mfa_enabled and principal.mfa_enabled:
            if not mfa_code:
                raise MFARequiredError()
            if not self.mfa.verify_code(principal.id, mfa_code):
                await self._login_failed(
                    "mfa_invalid",
                    "invalid second factor at login",
                    severity=Severity.HIGH,
                    event_type=EventType.MFA_FAILED,
                    principal_id=principal.id,
                    email=normalized,
                    **context,
                )
                raise AuthenticationError("invalid mfa code", detail={"reason": "mfa_invalid"})

        await self.guard.reset(normalized, "login")
        principal = (
            self.store.update_principal(principal.id, last_login_at=now, locked_until=None)
            or principal
        )
        session = await self.sessions.create(principal.id, **context)
        tokens = self.tokens.issue_pair(principal, session.token, not_after=session.expires_at)
        await self.audit.audit(
            "LOGIN",
            "auth",
            resource_id=principal.id,
            actor_id=principal.id,
            **context,
        )
        logger.info("login_succeeded", principal_id=principal.id)
        return LoginResult(principal=principal, session=session, tokens=tokens)

    async def _lock_principal(
        self,
        principal: Principal,
        now: datetime,
        *,
        attempts: int,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        locked_until = now + self.lockout
        self.store.update_principal(principal.id, locked_until=locked_until)
        await self.audit.security_event(
            EventType.ACCOUNT_LOCKED,
            Severity.HIGH,
            f"account locked after {attempts} failed logins",
            actor_id=principal.id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"locked_until": locked_until.isoformat(), "attempts": attempts},
        )
        logger.warning("account_locked", principal_id=principal.id, attempts=attempts)

    async def unlock(
        self, principal_id: str, *, actor_id: Optional[str] = None, ip_address: Optional[str] = None
    ) -> Principal:
        principal = self.store.update_principal(principal_id, locked_until=None)
        if principal is None:
            raise NotFoundError("user not found", detail={"user_id": principal_id})
        await self.guard.reset(principal.email, "login")
        await self.audit.audit(
            "UNLOCK",
            "user",
            resource_id=principal_id,
            actor_id=actor_id,
            ip_address=ip_address,
        )
        return principal

    # -- tokens and sessions ---------------------------------------------

    async def refresh(
        self,
        refresh_token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        """Swap a refresh token for a new session; the old session is revoked."""
        await self._guard_client(ip_address, user_agent, "refresh")
        result = self.tokens.verify(refresh_token, expected_type=REFRESH)
        if not result.is_ok:
            await self.audit.security_event(
                EventType.AUTHENTICATION_FAILED,
                Severity.WARNING,
                "refresh token rejected",
                ip_address=ip_address,
                user_agent=user_agent,
                metadata={"reason": result.error},
            )
            result.unwrap()
        claims = result.claims
        session, principal = await self.sessions.resolve(
            claims["sid"], ip_address=ip_address, user_agent=user_agent
        )
        if session.principal_id != claims["sub"]:
            raise AuthenticationError("invalid session")
        new_session = await self.sessions.create(
            principal.id, ip_address=ip_address, user_agent=user_agent
        )
        await self.sessions.revoke(session.token)
        tokens = self.tokens.issue_pair(
            principal, new_session.token, not_after=new_session.expires_at
        )
        await self.audit.audit(
            "REFRESH_TOKEN",
            "auth",
            resource_id=principal.id,
            actor_id=principal.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return LoginResult(principal=principal, session=new_session, tokens=tokens)

    async def logout(
        self,
        session: Session,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        await self.sessions.revoke(session.token)
        await self.audit.audit(
            "LOGOUT",
            "auth",
            resource_id=session.principal_id,
            actor_id=session.principal_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    async def logout_all(
        self,
        principal_id: str,
        *,
        except_token: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> int:
        count = await self.sessions.revoke_all(principal_id, except_token=except_token)
        await self.audit.audit(
            "LOGOUT_ALL",
            "auth",
            resource_id=principal_id,
            actor_id=principal_id,
            ip_address=ip_address,
            new_values={"revoked_sessions": count},
        )
        return count

    async def change_password(
        self,
        principal_id: str,
        current_password: str,
        new_password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        """Replace the password and revoke every session of the principal."""
        principal = self.store.get_principal(principal_id)
        if principal is None:
            raise NotFoundError("user not found", detail={"user_id": principal_id})
        if not self.verify_password(principal, current_password):
            await self.audit.audit(
                "UPDATE",
                "password",
                resource_id=principal_id,
                actor_id=principal_id,
                ip_address=ip_address,
                user_agent=user_agent,
                success=False,
                error_message="current password mismatch",
            )
            raise ValidationError("current password is incorrect")
        if current_password == new_password:
            raise ValidationError("new password must differ from the current one")
        self.check_password_policy(new_password)
        self.store.update_principal(principal_id, password_hash=self.hash_password(new_password))
        revoked = await self.sessions.revoke_all(principal_id)
        await self.audit.audit(
            "UPDATE",
            "password",
            resource_id=principal_id,
            actor_id=principal_id,
            ip_address=ip_address,
            user_agent=user_agent,
            new_values={"revoked_sessions": revoked},
        )
        return revoked

    async def deactivate(
        self,
        principal_id: str,
        *,
        actor_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Principal:
        """Soft-deactivate; records stay for the audit trail."""
        principal = self.store.update_principal(principal_id, is_active=False)
        if principal is None:
            raise NotFoundError("user not found", detail={"user_id": principal_id})
        revoked = await self.sessions.revoke_all(principal_id)
        await self.audit.audit(
            "DEACTIVATE",
            "user",
            resource_id=principal_id,
            actor_id=actor_id,
            ip_address=ip_address,
            old_values={"is_active": True},
            new_values={"is_active": False, "revoked_sessions": revoked},
        )
        return principal
