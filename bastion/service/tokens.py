from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional

from bastion.logging import get_logger
from bastion.service.errors import (
    MalformedTokenError,
    SignatureInvalidError,
    TokenError,
    TokenExpiredError,
)
from bastion.storage.models import Principal, utcnow

logger = get_logger(__name__)

MALFORMED = "malformed"
SIGNATURE_INVALID = "signature_invalid"
EXPIRED = "expired"

_ERRORS = {
    MALFORMED: MalformedTokenError,
    SIGNATURE_INVALID: SignatureInvalidError,
    EXPIRED: TokenExpiredError,
}

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class SigningKey:
    kid: str
    secret: bytes

    @classmethod
    def from_secret(cls, secret: str) -> "SigningKey":
        raw = secret.encode()
        # Key id is a digest prefix so it is stable across restarts without revealing the key
        return cls(kid=hashlib.sha256(raw).hexdigest()[:16], secret=raw)

    def derive(self, purpose: str) -> "SigningKey":
        derived = hmac.new(self.secret, purpose.encode(), hashlib.sha256).hexdigest()
        return SigningKey.from_secret(derived)


@dataclass(frozen=True)
class TokenResult:
    """Outcome of :meth:`TokenCodec.verify`: claims on success, error kind otherwise."""

    claims: Optional[dict[str, Any]] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, claims: dict[str, Any]) -> "TokenResult":
        return cls(claims=claims)

    @classmethod
    def fail(cls, kind: str) -> "TokenResult":
        return cls(error=kind)

    @property
    def is_ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> dict[str, Any]:
        if self.error is not None:
            raise _ERRORS[self.error]()
        return self.claims or {}


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


class KeyRing:
    """One current signing key plus verify-only retired keys."""

    def __init__(self, current: SigningKey, retired: Iterable[SigningKey] = ()) -> None:
        self.current = current
        self.retired = tuple(retired)

    @classmethod
    def from_secrets(cls, current: str, retired: Iterable[str] = ()) -> "KeyRing":
        return cls(SigningKey.from_secret(current), [SigningKey.from_secret(s) for s in retired])

    def derive(self, purpose: str) -> "KeyRing":
        return KeyRing(self.current.derive(purpose), [k.derive(purpose) for k in self.retired])

    def verification_keys(self, kid: Optional[str]) -> list[SigningKey]:
        keys = [self.current, *self.retired]
        if kid:
            matching = [k for k in keys if k.kid == kid]
            if matching:
                return matching
        return keys


class TokenCodec:
    """Issues and verifies HS256 bearer credentials.

    Access and refresh tokens are signed by separate key rings so a refresh
    token can never pass as an access token. ``verify`` never raises; callers
    that prefer exceptions use ``verify_or_raise``.
    """

    ALGORITHM = "HS256"

    def __init__(
        self,
        access_keys: KeyRing,
        *,
        refresh_keys: KeyRing | None = None,
        issuer: str = "bastion",
        audience: str = "bastion-clients",
        access_ttl_minutes: int = 24 * 60,
        refresh_ttl_minutes: int = 7 * 24 * 60,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.access_keys = access_keys
        self.refresh_keys = refresh_keys or access_keys.derive("refresh")
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = timedelta(minutes=access_ttl_minutes)
        self.refresh_ttl = timedelta(minutes=refresh_ttl_minutes)
        self._clock = clock

    @classmethod
    def from_settings(cls, settings, *, clock: Callable[[], datetime] = utcnow) -> "TokenCodec":
        retired = settings.retired_secrets()
        access_keys = KeyRing.from_secrets(settings.jwt_secret, retired)
        refresh_keys = None
        if settings.jwt_refresh_secret:
            refresh_keys = KeyRing.from_secrets(settings.jwt_refresh_secret)
        return cls(
            access_keys,
            refresh_keys=refresh_keys,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl_minutes=settings.access_token_ttl_minutes,
            refresh_ttl_minutes=settings.refresh_token_ttl_minutes,
            clock=clock,
        )

    def _ring(self, token_type: str) -> KeyRing:
        return self.refresh_keys if token_type == REFRESH else self.access_keys

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    @staticmethod
    def _sign(key: SigningKey, signing_input: str) -> bytes:
        return hmac.new(key.secret, signing_input.encode(), hashlib.sha256).digest()

    def issue(
        self,
        principal: Principal,
        session_token: str,
        *,
        token_type: str = ACCESS,
        not_after: Optional[datetime] = None,
    ) -> tuple[str, datetime]:
        if token_type not in (ACCESS, REFRESH):
            raise ValueError(f"unknown token type: {token_type}")
        now = self._clock()
        expires_at = now + (self.refresh_ttl if token_type == REFRESH else self.access_ttl)
        # A token never outlives the session it names
        if not_after is not None:
            expires_at = min(expires_at, not_after)
        key = self._ring(token_type).current
        header = {"alg": self.ALGORITHM, "typ": "JWT", "kid": key.kid}
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": principal.id,
            "email": principal.email,
            "role": principal.role,
            "sid": session_token,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = self._encode_segment(self._sign(key, signing_input))
        return f"{signing_input}.{signature}", expires_at

    def issue_pair(
        self,
        principal: Principal,
        session_token: str,
        *,
        not_after: Optional[datetime] = None,
    ) -> TokenPair:
        access_token, access_exp = self.issue(
            principal, session_token, token_type=ACCESS, not_after=not_after
        )
        refresh_token, refresh_exp = self.issue(
            principal, session_token, token_type=REFRESH, not_after=not_after
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    def verify(self, token: str, *, expected_type: str = ACCESS) -> TokenResult:
        if not token or not isinstance(token, str) or not token.isascii():
            return TokenResult.fail(MALFORMED)
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return TokenResult.fail(MALFORMED)

        try:
            header = json.loads(self._decode_segment(header_b64))
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError):
            return TokenResult.fail(MALFORMED)
        if not isinstance(header, dict) or not isinstance(payload, dict):
            return TokenResult.fail(MALFORMED)
        # Only HS256 is accepted, which rules out "none" and key-confusion tricks
        if header.get("alg") != self.ALGORITHM:
            logger.warning("token_invalid_algorithm", alg=header.get("alg"))
            return TokenResult.fail(MALFORMED)

        signing_input = f"{header_b64}.{payload_b64}"
        matched = False
        for key in self._ring(expected_type).verification_keys(header.get("kid")):
            expected_sig = self._encode_segment(self._sign(key, signing_input))
            if hmac.compare_digest(expected_sig, sig_b64):
                matched = True
                break
        if not matched:
            return TokenResult.fail(SIGNATURE_INVALID)

        if payload.get("token_type") != expected_type:
            return TokenResult.fail(MALFORMED)
        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            return TokenResult.fail(MALFORMED)
        if not payload.get("sub") or not payload.get("sid"):
            return TokenResult.fail(MALFORMED)
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return TokenResult.fail(MALFORMED)
        if exp_ts <= self._clock().timestamp():
            return TokenResult.fail(EXPIRED)
        return TokenResult.ok(payload)

    def verify_or_raise(self, token: str, *, expected_type: str = ACCESS) -> dict[str, Any]:
        return self.verify(token, expected_type=expected_type).unwrap()


__all__ = [
    "ACCESS",
    "REFRESH",
    "EXPIRED",
    "MALFORMED",
    "SIGNATURE_INVALID",
    "KeyRing",
    "SigningKey",
    "TokenCodec",
    "TokenError",
    "TokenPair",
    "TokenResult",
]
