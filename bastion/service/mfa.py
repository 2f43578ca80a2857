from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Protocol
from urllib.parse import quote, urlencode

from bastion.logging import get_logger
from bastion.service.audit import AuditRecorder, EventType
from bastion.service.errors import ConflictError, NotFoundError
from bastion.service.sessions import PrincipalStore
from bastion.storage.models import MFAEnrollment, Principal, Severity, utcnow

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
SECRET_BYTES = 20


class MFAState(str, Enum):
    DISABLED = "disabled"
    SECRET_GENERATED = "secret_generated"
    ENABLED = "enabled"


class EnrollmentStore(Protocol):
    def save_mfa_enrollment(self, user_id: str, secret: str, *, now: datetime) -> MFAEnrollment: ...

    def get_mfa_enrollment(self, user_id: str) -> Optional[MFAEnrollment]: ...

    def delete_mfa_enrollment(self, user_id: str) -> bool: ...


@dataclass(frozen=True)
class MFASetup:
    secret: str
    otpauth_uri: str


def generate_totp(
    secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS
) -> str:
    """RFC 6238 code for ``timestamp`` (HMAC-SHA1)."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    code: str,
    *,
    at: datetime,
    window: int = 1,
    interval: int = TOTP_INTERVAL,
) -> bool:
    """Accept the code for the current step or ``window`` steps either side."""
    candidate = (code or "").replace(" ", "")
    if len(candidate) != TOTP_DIGITS or not candidate.isdigit():
        return False
    now_ts = at.timestamp()
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, now_ts + offset * interval, interval=interval)
        if generated and hmac.compare_digest(generated, candidate):
            return True
    return False


class MFAService:
    """Second-factor enrollment: disabled, secret generated, enabled.

    A generated secret lives only in the enrollment store until the first
    valid code arrives; only then is it written onto the principal. Every
    transition is recorded as a security event.
    """

    def __init__(
        self,
        enrollments: EnrollmentStore,
        principals: PrincipalStore,
        audit: AuditRecorder,
        *,
        issuer: str = "Bastion",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.enrollments = enrollments
        self.principals = principals
        self.audit = audit
        self.issuer = issuer
        self._clock = clock

    def _principal(self, user_id: str) -> Principal:
        principal = self.principals.get_principal(user_id)
        if principal is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return principal

    def state(self, user_id: str) -> MFAState:
        principal = self._principal(user_id)
        if principal.mfa_enabled and principal.mfa_secret:
            return MFAState.ENABLED
        if self.enrollments.get_mfa_enrollment(user_id):
            return MFAState.SECRET_GENERATED
        return MFAState.DISABLED

    def _otpauth_uri(self, account: str, secret: str) -> str:
        label = quote(f"{self.issuer}:{account}")
        query = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "algorithm": "SHA1",
                "digits": TOTP_DIGITS,
                "period": TOTP_INTERVAL,
            }
        )
        return f"otpauth://totp/{label}?{query}"

    async def generate_secret(
        self,
        user_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> MFASetup:
        principal = self._principal(user_id)
        if principal.mfa_enabled:
            raise ConflictError("mfa already enabled", detail={"state": MFAState.ENABLED.value})
        secret = base64.b32encode(os.urandom(SECRET_BYTES)).decode("utf-8").rstrip("=")
        self.enrollments.save_mfa_enrollment(user_id, secret, now=self._clock())
        await self.audit.security_event(
            EventType.MFA_SECRET_GENERATED,
            Severity.INFO,
            "mfa secret generated",
            actor_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return MFASetup(secret=secret, otpauth_uri=self._otpauth_uri(principal.email, secret))

    async def confirm(
        self,
        user_id: str,
        code: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        """Enable MFA if ``code`` matches the pending secret.

        A wrong code leaves the enrollment pending and returns False.
        """
        principal = self._principal(user_id)
        if principal.mfa_enabled:
            raise ConflictError("mfa already enabled", detail={"state": MFAState.ENABLED.value})
        enrollment = self.enrollments.get_mfa_enrollment(user_id)
        if enrollment is None:
            raise ConflictError(
                "mfa setup has not been started", detail={"state": MFAState.DISABLED.value}
            )
        if not verify_totp(enrollment.secret, code, at=self._clock()):
            await self.audit.security_event(
                EventType.MFA_VERIFICATION_FAILED,
                Severity.WARNING,
                "invalid code during mfa enrollment",
                actor_id=user_id,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            return False
        self.principals.update_principal(user_id, mfa_enabled=True, mfa_secret=enrollment.secret)
        self.enrollments.delete_mfa_enrollment(user_id)
        await self.audit.security_event(
            EventType.MFA_ENABLED,
            Severity.INFO,
            "mfa enabled",
            actor_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.info("mfa_enabled", user_id=user_id)
        return True

    def verify_code(self, user_id: str, code: Optional[str]) -> bool:
        principal = self._principal(user_id)
        if not (principal.mfa_enabled and principal.mfa_secret and code):
            return False
        return verify_totp(principal.mfa_secret, code, at=self._clock())

    async def disable(
        self,
        user_id: str,
        *,
        actor_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        previous = self.state(user_id)
        if previous is MFAState.DISABLED:
            raise ConflictError("mfa is not enabled", detail={"state": previous.value})
        self.principals.update_principal(user_id, mfa_enabled=False, mfa_secret=None)
        self.enrollments.delete_mfa_enrollment(user_id)
        await self.audit.security_event(
            EventType.MFA_DISABLED,
            Severity.WARNING,
            "mfa disabled",
            actor_id=actor_id or user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"user_id": user_id, "previous_state": previous.value},
        )
        logger.info("mfa_disabled", user_id=user_id)
