from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from bastion.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset(
    {
        "unauthorized",
        "forbidden",
        "not_found",
        "rate_limited",
        "validation_error",
        "conflict",
        "server_error",
    }
)


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error body with one of the stable error codes."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


def _normalize_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    # Strip zero-width characters before normalizing
    cleaned = "".join(c for c in value if c not in "\u200b\u200c\u200d\ufeff")
    normalized = unicodedata.normalize("NFKC", cleaned.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or "." not in domain:
        raise ValueError("invalid email address")
    return normalized


class RegisterRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)
    role: str = Field(default="guest", max_length=64)

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return _normalize_email(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)
    mfa_code: Optional[str] = Field(default=None, max_length=10)

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return _normalize_email(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=4096)


class AuthResponse(BaseModel):
    user_id: str
    role: str
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime
    session_expires_at: datetime


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=128)
    new_password: str = Field(..., max_length=128)


class UserResponse(BaseModel):
    id: str
    email: str
    role: str
    is_active: bool
    mfa_enabled: bool
    created_at: datetime
    last_login_at: Optional[datetime] = None
    locked_until: Optional[datetime] = None


class MFAStatusResponse(BaseModel):
    state: str
    enabled: bool


class MFASetupResponse(BaseModel):
    secret: str
    otpauth_uri: str


class MFAVerifyRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=10)


class RoleResponse(BaseModel):
    id: str
    name: str
    level: int
    description: str = ""


class PermissionResponse(BaseModel):
    id: str
    name: str
    category: str
    description: str = ""


class AssignmentResponse(BaseModel):
    id: str
    user_id: str
    role_id: str
    project_id: Optional[str] = None
    assigned_by: Optional[str] = None
    assigned_at: datetime
    expires_at: Optional[datetime] = None


_ROLE_REF = re.compile(r"^[A-Za-z0-9_.:-]+$")


class AssignmentRequest(BaseModel):
    user_id: str = Field(..., max_length=128)
    role_id: Optional[str] = Field(default=None, max_length=128)
    role: Optional[str] = Field(default=None, max_length=64)
    project_id: Optional[str] = Field(default=None, max_length=128)
    expires_at: Optional[datetime] = None

    @field_validator("role")
    @classmethod
    def _validate_role(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not _ROLE_REF.match(value):
            raise ValueError("role must be a plain identifier")
        return value

    @model_validator(mode="after")
    def _require_role_reference(self):
        if not self.role_id and not self.role:
            raise ValueError("either role_id or role is required")
        return self


class PermissionCheckResponse(BaseModel):
    user_id: str
    permission: str
    project_id: Optional[str] = None
    allowed: bool


class ProjectAccessResponse(BaseModel):
    project_id: str
    user_id: str
    can_access: bool
    can_manage: bool
    roles: List[str] = Field(default_factory=list)


class RoleConfigDocument(BaseModel):
    roles: List[Dict[str, Any]]
    permissions: List[Dict[str, Any]]
    role_permissions: Dict[str, List[str]]
    legacy_role_map: Optional[Dict[str, str]] = None

    @field_validator("roles", "permissions")
    @classmethod
    def _bounded(cls, value: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        if len(value) > 1000:
            raise ValueError("role configuration lists are limited to 1000 entries")
        return value


class SessionRevokeResponse(BaseModel):
    revoked_sessions: int
