from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from bastion.logging import get_logger
from bastion.service.audit import AuditRecorder, EventType
from bastion.service.errors import (
    AuthenticationError,
    ForbiddenError,
    RateLimitedError,
    ServiceError,
    UnknownPermissionError,
)
from bastion.service.lockout import RateGuard
from bastion.service.mfa import MFAService
from bastion.service.rbac import RBACEngine
from bastion.service.sessions import SessionRegistry
from bastion.service.tokens import TokenCodec
from bastion.storage.models import Principal, Session, Severity

logger = get_logger(__name__)

MFA_HEADER = "X-MFA-Code"

_TOKEN_MESSAGES = {
    "missing": "authentication required",
    "malformed": "invalid token",
    "signature_invalid": "invalid token",
    "expired": "token expired",
}


@dataclass
class RequestInfo:
    """What the gate needs from an inbound request, independent of framework."""

    authorization: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    path: str = ""
    mfa_code: Optional[str] = None


@dataclass
class AuthContext:
    principal: Principal
    session: Session
    claims: Dict[str, Any] = field(default_factory=dict)
    project_id: Optional[str] = None

    @property
    def user_id(self) -> str:
        return self.principal.id

    @property
    def role(self) -> str:
        return self.principal.role


@dataclass
class GateDecision:
    status_code: int
    context: Optional[AuthContext] = None
    error: Optional[Dict[str, str]] = None
    retry_after: Optional[int] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    @property
    def allowed(self) -> bool:
        return self.context is not None and self.error is None

    def raise_for_status(self) -> AuthContext:
        """Return the context, or raise the taxonomy error this decision carries."""
        if self.allowed:
            return self.context
        message = (self.error or {}).get("message", "request rejected")
        if self.status_code == 429:
            raise RateLimitedError(message, retry_after=self.retry_after, detail=self.detail)
        if self.status_code == 403:
            raise ForbiddenError(message, detail=self.detail)
        raise AuthenticationError(message, detail=self.detail)

    @classmethod
    def reject(cls, status_code: int, kind: str, message: str, **kwargs) -> "GateDecision":
        return cls(status_code=status_code, error={"kind": kind, "message": message}, **kwargs)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


class AccessGate:
    """Runs every check an authenticated request must pass, in order.

    1. per-IP ``general`` rate policy
    2. bearer token present and verified
    3. session live and owner active and unlocked
    4. session activity touch (best effort)
    5. per-user-and-path ``sensitive`` policy, when requested
    6. second factor from the ``X-MFA-Code`` header, when requested
    7. permission in the requested project scope, when requested

    The result is always a :class:`GateDecision`; internal errors are logged
    and mapped to 401 before the principal is known and 403 after.
    """

    def __init__(
        self,
        tokens: TokenCodec,
        sessions: SessionRegistry,
        rbac: RBACEngine,
        guard: RateGuard,
        mfa: MFAService,
        audit: AuditRecorder,
    ) -> None:
        self.tokens = tokens
        self.sessions = sessions
        self.rbac = rbac
        self.guard = guard
        self.mfa = mfa
        self.audit = audit

    async def _token_rejected(self, reason: str, request: RequestInfo) -> GateDecision:
        await self.audit.security_event(
            EventType.AUTHENTICATION_FAILED,
            Severity.WARNING,
            f"bearer token rejected: {reason}",
            ip_address=request.ip_address,
            user_agent=request.user_agent,
            metadata={"reason": reason, "path": request.path},
        )
        return GateDecision.reject(
            401, "unauthorized", _TOKEN_MESSAGES[reason], detail={"reason": reason}
        )

    async def evaluate(
        self,
        request: RequestInfo,
        *,
        permission: Optional[str] = None,
        project_id: Optional[str] = None,
        sensitive: bool = False,
        require_mfa: bool = False,
        rate_limit: bool = True,
    ) -> GateDecision:
        stage = "authentication"
        principal_id: Optional[str] = None
        try:
            if rate_limit and request.ip_address:
                await self.guard.acquire(
                    f"ip:{request.ip_address}",
                    "general",
                    ip_address=request.ip_address,
                    user_agent=request.user_agent,
                    metadata={"path": request.path},
                )

            token = extract_bearer(request.authorization)
            if token is None:
                return await self._token_rejected("missing", request)
            result = self.tokens.verify(token)
            if not result.is_ok:
                return await self._token_rejected(result.error, request)
            claims = result.claims

            session, principal = await self.sessions.resolve(
                claims["sid"],
                ip_address=request.ip_address,
                user_agent=request.user_agent,
            )
            if session.principal_id != claims["sub"]:
                return await self._token_rejected("signature_invalid", request)
            principal_id = principal.id
            await self.sessions.touch(session)

            stage = "authorization"
            if sensitive:
                await self.guard.acquire(
                    f"{principal.id}:{request.path}",
                    "sensitive",
                    actor_id=principal.id,
                    ip_address=request.ip_address,
                    user_agent=request.user_agent,
                    metadata={"path": request.path},
                )

            if require_mfa and principal.mfa_enabled:
                if not self.mfa.verify_code(principal.id, request.mfa_code):
                    await self.audit.security_event(
                        EventType.MFA_FAILED,
                        Severity.HIGH,
                        "second factor missing or invalid for gated operation",
                        actor_id=principal.id,
                        ip_address=request.ip_address,
                        user_agent=request.user_agent,
                        metadata={"path": request.path, "supplied": bool(request.mfa_code)},
                    )
                    return GateDecision.reject(
                        401,
                        "unauthorized",
                        "mfa code required" if not request.mfa_code else "invalid mfa code",
                        detail={"reason": "mfa_required"},
                    )

            if permission and not self.rbac.user_has_permission(
                principal.id, permission, project_id
            ):
                await self.audit.security_event(
                    EventType.AUTHORIZATION_DENIED,
                    Severity.WARNING,
                    f"missing permission {permission}",
                    actor_id=principal.id,
                    ip_address=request.ip_address,
                    user_agent=request.user_agent,
                    metadata={
                        "permission": permission,
                        "project_id": project_id,
                        "path": request.path,
                    },
                )
                return GateDecision.reject(403, "forbidden", "insufficient permissions")

            return GateDecision(
                status_code=200,
                context=AuthContext(
                    principal=principal,
                    session=session,
                    claims=claims,
                    project_id=project_id,
                ),
            )
        except UnknownPermissionError:
            raise
        except RateLimitedError as exc:
            return GateDecision.reject(
                429,
                "rate_limited",
                exc.message,
                retry_after=exc.retry_after,
                detail=exc.detail,
            )
        except ServiceError as exc:
            status = 403 if stage == "authorization" else 401
            kind = "forbidden" if status == 403 else "unauthorized"
            return GateDecision.reject(status, kind, exc.message, detail=exc.detail)
        except Exception as exc:
            logger.error(
                "access_gate_internal_error",
                stage=stage,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            await self.audit.security_event(
                EventType.STORE_FAILURE,
                Severity.HIGH,
                f"internal error during {stage}",
                actor_id=principal_id,
                ip_address=request.ip_address,
                user_agent=request.user_agent,
                metadata={"stage": stage, "error_type": type(exc).__name__},
            )
            if stage == "authorization":
                return GateDecision.reject(403, "forbidden", "access denied")
            return GateDecision.reject(401, "unauthorized", "authentication failed")
