from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, List, NoReturn, Optional, Protocol, Tuple

from bastion.logging import get_logger
from bastion.service.audit import AuditRecorder, EventType
from bastion.service.errors import AuthenticationError, SessionExpiredError
from bastion.storage.models import Principal, Session, Severity, utcnow
from bastion.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class PrincipalStore(Protocol):
    def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    def get_principal_by_email(self, email: str) -> Optional[Principal]: ...

    def update_principal(self, principal_id: str, **patch: Any) -> Optional[Principal]: ...


class SessionStore(Protocol):
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, token: str) -> Optional[Session]: ...

    def list_sessions(self, principal_id: str, *, active_only: bool = True) -> List[Session]: ...

    def touch_session(self, token: str, when: datetime) -> None: ...

    def revoke_session(self, token: str) -> bool: ...

    def revoke_principal_sessions(
        self, principal_id: str, *, except_token: str | None = None
    ) -> int: ...

    def purge_expired_sessions(self, now: datetime) -> int: ...


_REJECTION_MESSAGES = {
    "session_not_found": "invalid session",
    "session_revoked": "session revoked",
    "session_expired": "session expired",
    "principal_not_found": "invalid session",
    "principal_inactive": "account disabled",
    "principal_locked": "account locked",
    "store_unavailable": "unable to validate session",
}


class SessionRegistry:
    """Server-side sessions backing issued bearer tokens."""

    def __init__(
        self,
        sessions: SessionStore,
        principals: PrincipalStore,
        audit: AuditRecorder,
        *,
        ttl_minutes: int = 24 * 60,
        cache: RedisCache | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.sessions = sessions
        self.principals = principals
        self.audit = audit
        self.ttl_minutes = ttl_minutes
        self.cache = cache
        self._clock = clock

    async def create(
        self,
        principal_id: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Session:
        session = Session.new(
            principal_id,
            ttl_minutes=self.ttl_minutes,
            user_agent=user_agent,
            ip_address=ip_address,
            now=self._clock(),
        )
        try:
            stored = self.sessions.create_session(session)
        except Exception as exc:
            logger.error("session_create_failed", principal_id=principal_id, error=str(exc))
            await self.audit.security_event(
                EventType.STORE_FAILURE,
                Severity.HIGH,
                "session store rejected create",
                actor_id=principal_id,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata={"operation": "session_create"},
            )
            raise AuthenticationError("unable to create session") from exc
        logger.info("session_created", principal_id=principal_id)
        return stored

    async def _reject(
        self,
        reason: str,
        *,
        principal_id: Optional[str],
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> NoReturn:
        await self.audit.security_event(
            EventType.SESSION_REJECTED,
            Severity.WARNING,
            f"session rejected: {reason}",
            actor_id=principal_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"reason": reason},
        )
        error_cls = SessionExpiredError if reason == "session_expired" else AuthenticationError
        raise error_cls(_REJECTION_MESSAGES[reason], detail={"reason": reason})

    async def validate(
        self,
        token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session:
        session, _ = await self.resolve(token, ip_address=ip_address, user_agent=user_agent)
        return session

    async def resolve(
        self,
        token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[Session, Principal]:
        """Return the live session for ``token`` with its principal.

        Checks run in a fixed order and the first failure names the rejection
        reason: exists and active, not expired, principal active, principal not
        locked. A store error is a rejection, never a pass.
        """
        context = {"ip_address": ip_address, "user_agent": user_agent}
        try:
            session = self.sessions.get_session(token) if token else None
        except Exception as exc:
            logger.error("session_lookup_failed", error=str(exc))
            await self._reject("store_unavailable", principal_id=None, **context)

        if session is None:
            await self._reject("session_not_found", principal_id=None, **context)
        if not session.is_active:
            await self._reject("session_revoked", principal_id=session.principal_id, **context)

        now = self._clock()
        if session.expires_at <= now:
            await self._reject("session_expired", principal_id=session.principal_id, **context)

        try:
            principal = self.principals.get_principal(session.principal_id)
        except Exception as exc:
            logger.error(
                "principal_lookup_failed", principal_id=session.principal_id, error=str(exc)
            )
            await self._reject(
                "store_unavailable", principal_id=session.principal_id, **context
            )
        if principal is None:
            await self._reject("principal_not_found", principal_id=session.principal_id, **context)
        if not principal.is_active:
            await self._reject("principal_inactive", principal_id=principal.id, **context)
        if principal.is_locked(now):
            await self._reject("principal_locked", principal_id=principal.id, **context)
        return session, principal

    async def touch(self, session: Session) -> None:
        """Record activity on ``session``; failures are logged and ignored."""
        now = self._clock()
        try:
            self.sessions.touch_session(session.token, now)
            session.last_activity_at = now
        except Exception as exc:
            logger.warning("session_touch_failed", error=str(exc))
            return
        if self.cache:
            ttl = int((session.expires_at - now).total_seconds())
            try:
                await self.cache.update_session_activity(session.token, now, ttl)
            except Exception as exc:
                logger.warning("session_activity_cache_failed", error=str(exc))

    async def revoke(self, token: str) -> bool:
        revoked = self.sessions.revoke_session(token)
        if revoked:
            logger.info("session_revoked")
        return revoked

    async def revoke_all(self, principal_id: str, *, except_token: str | None = None) -> int:
        count = self.sessions.revoke_principal_sessions(principal_id, except_token=except_token)
        logger.info("sessions_revoked", principal_id=principal_id, count=count)
        return count

    def list_active(self, principal_id: str) -> List[Session]:
        now = self._clock()
        return [
            s for s in self.sessions.list_sessions(principal_id) if s.expires_at > now
        ]

    def sweep_expired(self) -> int:
        """Drop expired and revoked sessions; validity never depends on this running."""
        purged = self.sessions.purge_expired_sessions(self._clock())
        if purged:
            logger.info("sessions_swept", count=purged)
        return purged
