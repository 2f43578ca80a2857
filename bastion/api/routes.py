from __future__ import annotations

from datetime import timedelta
from typing import Optional, Set

from fastapi import APIRouter, Depends, Query, Request

from bastion.api.schemas import (
    AssignmentRequest,
    AssignmentResponse,
    AuthResponse,
    Envelope,
    LoginRequest,
    MFASetupResponse,
    MFAStatusResponse,
    MFAVerifyRequest,
    PasswordChangeRequest,
    PermissionCheckResponse,
    PermissionResponse,
    ProjectAccessResponse,
    RegisterRequest,
    RoleConfigDocument,
    RoleResponse,
    SessionRevokeResponse,
    TokenRefreshRequest,
    UserResponse,
)
from bastion.logging import get_logger
from bastion.service.audit import EventType
from bastion.service.auth import LoginResult
from bastion.service.errors import AuthenticationError, ForbiddenError, NotFoundError
from bastion.service.gate import MFA_HEADER, AuthContext, RequestInfo
from bastion.service.runtime import get_runtime
from bastion.storage.models import Principal, RoleAssignment, Severity

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

# Every permission a route depends on; checked against the registry at startup
REQUIRED_PERMISSIONS: Set[str] = set()


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _request_info(request: Request) -> RequestInfo:
    return RequestInfo(
        authorization=request.headers.get("Authorization"),
        ip_address=_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
        path=request.url.path,
        mfa_code=request.headers.get(MFA_HEADER),
    )


def require(
    permission: Optional[str] = None,
    *,
    sensitive: bool = False,
    require_mfa: bool = False,
):
    """Build a dependency that runs the access gate for a route."""
    if permission:
        REQUIRED_PERMISSIONS.add(permission)

    async def _dependency(request: Request) -> AuthContext:
        runtime = get_runtime()
        decision = await runtime.gate.evaluate(
            _request_info(request),
            permission=permission,
            project_id=request.query_params.get("project_id"),
            sensitive=sensitive,
            require_mfa=require_mfa,
        )
        return decision.raise_for_status()

    return _dependency


get_user = require()


async def _ensure_self_or_permission(
    request: Request, ctx: AuthContext, user_id: str, permission: str
) -> None:
    """Let users read their own records; reading someone else's needs ``permission``."""
    if ctx.user_id == user_id:
        return
    runtime = get_runtime()
    if runtime.rbac.user_has_permission(ctx.user_id, permission):
        return
    await runtime.audit.security_event(
        EventType.AUTHORIZATION_DENIED,
        Severity.WARNING,
        f"missing permission {permission}",
        actor_id=ctx.user_id,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
        metadata={"permission": permission, "target_user_id": user_id, "path": request.url.path},
    )
    raise ForbiddenError("insufficient permissions")


REQUIRED_PERMISSIONS.add("manage_users")


def _user_response(principal: Principal) -> UserResponse:
    return UserResponse(
        id=principal.id,
        email=principal.email,
        role=principal.role,
        is_active=principal.is_active,
        mfa_enabled=principal.mfa_enabled,
        created_at=principal.created_at,
        last_login_at=principal.last_login_at,
        locked_until=principal.locked_until,
    )


def _auth_response(result: LoginResult) -> AuthResponse:
    return AuthResponse(
        user_id=result.principal.id,
        role=result.principal.role,
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        token_type=result.tokens.token_type,
        access_expires_at=result.tokens.access_expires_at,
        refresh_expires_at=result.tokens.refresh_expires_at,
        session_expires_at=result.session.expires_at,
    )


def _assignment_response(assignment: RoleAssignment) -> AssignmentResponse:
    return AssignmentResponse(
        id=assignment.id,
        user_id=assignment.user_id,
        role_id=assignment.role_id,
        project_id=assignment.project_id,
        assigned_by=assignment.assigned_by,
        assigned_at=assignment.assigned_at,
        expires_at=assignment.expires_at,
    )


# -- auth ------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(
    body: RegisterRequest,
    request: Request,
    ctx: AuthContext = Depends(require("manage_users")),
):
    """Create an account. Accounts are provisioned by user managers only."""
    runtime = get_runtime()
    principal = await runtime.auth.register(
        body.email,
        body.password,
        role=body.role,
        created_by=ctx.user_id,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    return Envelope(status="ok", data=_user_response(principal))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Raises:
        401: invalid credentials, locked account, or missing/invalid MFA code
        429: too many attempts for this email
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email,
        body.password,
        body.mfa_code,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.auth.refresh(
        body.refresh_token,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, ctx: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.logout(
        ctx.session,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    return Envelope(status="ok", data={"message": "session revoked"})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(
    request: Request,
    keep_current: bool = Query(False),
    ctx: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    revoked = await runtime.auth.logout_all(
        ctx.user_id,
        except_token=ctx.session.token if keep_current else None,
        ip_address=_client_ip(request),
    )
    logger.info("logout_all", user_id=ctx.user_id, revoked=revoked, keep_current=keep_current)
    return Envelope(status="ok", data=SessionRevokeResponse(revoked_sessions=revoked))


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    ctx: AuthContext = Depends(require(sensitive=True)),
):
    """Change the caller's password; every session, this one included, is revoked."""
    runtime = get_runtime()
    revoked = await runtime.auth.change_password(
        ctx.user_id,
        body.current_password,
        body.new_password,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    return Envelope(status="ok", data=SessionRevokeResponse(revoked_sessions=revoked))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_current_user(ctx: AuthContext = Depends(get_user)):
    return Envelope(status="ok", data=_user_response(ctx.principal))


# -- mfa -------------------------------------------------------------------


@router.get("/auth/mfa/status", response_model=Envelope, tags=["mfa"])
async def get_mfa_status(ctx: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    state = runtime.mfa.state(ctx.user_id)
    return Envelope(
        status="ok",
        data=MFAStatusResponse(state=state.value, enabled=state.value == "enabled"),
    )


@router.post("/auth/mfa/setup", response_model=Envelope, tags=["mfa"])
async def setup_mfa(request: Request, ctx: AuthContext = Depends(get_user)):
    """Generate a pending TOTP secret; MFA turns on after the first valid code."""
    runtime = get_runtime()
    setup = await runtime.mfa.generate_secret(
        ctx.user_id,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    return Envelope(
        status="ok", data=MFASetupResponse(secret=setup.secret, otpauth_uri=setup.otpauth_uri)
    )


@router.post("/auth/mfa/verify", response_model=Envelope, tags=["mfa"])
async def verify_mfa(
    body: MFAVerifyRequest, request: Request, ctx: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    enabled = await runtime.mfa.confirm(
        ctx.user_id,
        body.code,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    if not enabled:
        raise AuthenticationError("invalid mfa code", detail={"reason": "mfa_invalid"})
    return Envelope(status="ok", data={"state": "enabled"})


@router.post("/auth/mfa/disable", response_model=Envelope, tags=["mfa"])
async def disable_mfa(
    request: Request,
    ctx: AuthContext = Depends(require(sensitive=True, require_mfa=True)),
):
    """Turn MFA off. Needs a current code in ``X-MFA-Code``; other sessions are revoked."""
    runtime = get_runtime()
    await runtime.mfa.disable(
        ctx.user_id,
        actor_id=ctx.user_id,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    revoked = await runtime.sessions.revoke_all(ctx.user_id, except_token=ctx.session.token)
    return Envelope(status="ok", data={"state": "disabled", "revoked_sessions": revoked})


# -- user administration ---------------------------------------------------


@router.post("/users/{user_id}/unlock", response_model=Envelope, tags=["users"])
async def unlock_user(
    user_id: str, request: Request, ctx: AuthContext = Depends(require("manage_users"))
):
    runtime = get_runtime()
    principal = await runtime.auth.unlock(
        user_id, actor_id=ctx.user_id, ip_address=_client_ip(request)
    )
    return Envelope(status="ok", data=_user_response(principal))


@router.post("/users/{user_id}/deactivate", response_model=Envelope, tags=["users"])
async def deactivate_user(
    user_id: str,
    request: Request,
    ctx: AuthContext = Depends(require("manage_users", sensitive=True)),
):
    runtime = get_runtime()
    principal = await runtime.auth.deactivate(
        user_id, actor_id=ctx.user_id, ip_address=_client_ip(request)
    )
    return Envelope(status="ok", data=_user_response(principal))


# -- rbac ------------------------------------------------------------------


@router.get("/rbac/roles", response_model=Envelope, tags=["rbac"])
async def list_roles(ctx: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    roles = [
        RoleResponse(id=r.id, name=r.name, level=r.level, description=r.description)
        for r in runtime.rbac.list_roles()
    ]
    return Envelope(status="ok", data={"items": roles})


@router.get("/rbac/roles/{role_id}/permissions", response_model=Envelope, tags=["rbac"])
async def list_role_permissions(role_id: str, ctx: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    permissions = [
        PermissionResponse(id=p.id, name=p.name, category=p.category, description=p.description)
        for p in runtime.rbac.get_role_permissions(role_id)
    ]
    return Envelope(status="ok", data={"items": permissions})


@router.get("/rbac/permissions", response_model=Envelope, tags=["rbac"])
async def list_permissions(ctx: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    permissions = [
        PermissionResponse(id=p.id, name=p.name, category=p.category, description=p.description)
        for p in runtime.rbac.list_permissions()
    ]
    return Envelope(status="ok", data={"items": permissions})


@router.get("/rbac/users/{user_id}/roles", response_model=Envelope, tags=["rbac"])
async def get_user_roles(
    user_id: str,
    request: Request,
    project_id: Optional[str] = Query(None, max_length=128),
    ctx: AuthContext = Depends(get_user),
):
    await _ensure_self_or_permission(request, ctx, user_id, "manage_users")
    runtime = get_runtime()
    roles = [
        RoleResponse(id=r.id, name=r.name, level=r.level, description=r.description)
        for r in runtime.rbac.get_user_roles(user_id, project_id)
    ]
    return Envelope(status="ok", data={"user_id": user_id, "project_id": project_id, "items": roles})


@router.get("/rbac/users/{user_id}/permissions", response_model=Envelope, tags=["rbac"])
async def get_user_permissions(
    user_id: str,
    request: Request,
    project_id: Optional[str] = Query(None, max_length=128),
    ctx: AuthContext = Depends(get_user),
):
    await _ensure_self_or_permission(request, ctx, user_id, "manage_users")
    runtime = get_runtime()
    names = [p.name for p in runtime.rbac.get_user_permissions(user_id, project_id)]
    return Envelope(status="ok", data={"user_id": user_id, "project_id": project_id, "items": names})


@router.get("/rbac/users/{user_id}/assignments", response_model=Envelope, tags=["rbac"])
async def get_user_assignments(
    user_id: str,
    request: Request,
    include_expired: bool = Query(False),
    ctx: AuthContext = Depends(get_user),
):
    await _ensure_self_or_permission(request, ctx, user_id, "manage_users")
    runtime = get_runtime()
    assignments = runtime.rbac.list_assignments(user_id, include_expired=include_expired)
    return Envelope(
        status="ok", data={"items": [_assignment_response(a) for a in assignments]}
    )


@router.get("/rbac/check", response_model=Envelope, tags=["rbac"])
async def check_permission(
    request: Request,
    permission: str = Query(..., max_length=128),
    project_id: Optional[str] = Query(None, max_length=128),
    user_id: Optional[str] = Query(None, max_length=128),
    ctx: AuthContext = Depends(get_user),
):
    """Answer whether a user (default: the caller) holds ``permission``."""
    target = user_id or ctx.user_id
    await _ensure_self_or_permission(request, ctx, target, "manage_users")
    runtime = get_runtime()
    allowed = runtime.rbac.user_has_permission(target, permission, project_id)
    return Envelope(
        status="ok",
        data=PermissionCheckResponse(
            user_id=target, permission=permission, project_id=project_id, allowed=allowed
        ),
    )


def _resolve_role_id(role_id: Optional[str], role_name: Optional[str]) -> str:
    if role_id:
        return role_id
    role = get_runtime().rbac.role_for_name(role_name or "")
    if role is None:
        raise NotFoundError("role not found", detail={"role": role_name})
    return role.id


@router.post("/rbac/assignments", response_model=Envelope, status_code=201, tags=["rbac"])
async def assign_role(
    body: AssignmentRequest,
    request: Request,
    ctx: AuthContext = Depends(require("manage_system")),
):
    runtime = get_runtime()
    assignment = await runtime.rbac.assign_role_to_user(
        body.user_id,
        _resolve_role_id(body.role_id, body.role),
        body.project_id,
        ctx.user_id,
        body.expires_at,
        ip_address=_client_ip(request),
    )
    return Envelope(status="ok", data=_assignment_response(assignment))


@router.delete("/rbac/assignments", response_model=Envelope, tags=["rbac"])
async def remove_role(
    request: Request,
    user_id: str = Query(..., max_length=128),
    role_id: Optional[str] = Query(None, max_length=128),
    role: Optional[str] = Query(None, max_length=64),
    project_id: Optional[str] = Query(None, max_length=128),
    ctx: AuthContext = Depends(require("manage_system")),
):
    runtime = get_runtime()
    await runtime.rbac.remove_role_from_user(
        user_id,
        _resolve_role_id(role_id, role),
        project_id,
        removed_by=ctx.user_id,
        ip_address=_client_ip(request),
    )
    return Envelope(status="ok", data={"message": "role removed"})


@router.post("/rbac/assignments/cleanup", response_model=Envelope, tags=["rbac"])
async def cleanup_assignments(ctx: AuthContext = Depends(require("manage_system"))):
    runtime = get_runtime()
    return Envelope(status="ok", data={"purged": runtime.rbac.cleanup_expired_assignments()})


@router.get("/rbac/export", response_model=Envelope, tags=["rbac"])
async def export_roles(ctx: AuthContext = Depends(require("manage_system"))):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.rbac.export_role_config())


@router.post("/rbac/import", response_model=Envelope, tags=["rbac"])
async def import_roles(
    body: RoleConfigDocument,
    request: Request,
    ctx: AuthContext = Depends(require("manage_system", sensitive=True, require_mfa=True)),
):
    """Replace the role catalog. Permission names unknown to the document are rejected."""
    runtime = get_runtime()
    summary = await runtime.rbac.import_role_config(
        body.model_dump(),
        imported_by=ctx.user_id,
        ip_address=_client_ip(request),
    )
    return Envelope(status="ok", data=summary)


# -- projects --------------------------------------------------------------


@router.get("/projects/{project_id}/access", response_model=Envelope, tags=["projects"])
async def project_access(project_id: str, ctx: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data=ProjectAccessResponse(
            project_id=project_id,
            user_id=ctx.user_id,
            can_access=runtime.rbac.can_access_project(ctx.user_id, project_id),
            can_manage=runtime.rbac.can_manage_project(ctx.user_id, project_id),
            roles=[r.name for r in runtime.rbac.get_user_roles(ctx.user_id, project_id)],
        ),
    )


# -- audit -----------------------------------------------------------------


@router.get("/audit/security-events", response_model=Envelope, tags=["audit"])
async def list_security_events(
    event_type: Optional[str] = Query(None, max_length=64),
    severity: Optional[str] = Query(None, pattern="^(INFO|WARNING|HIGH|CRITICAL)$"),
    actor_id: Optional[str] = Query(None, max_length=128),
    since_hours: Optional[int] = Query(None, ge=1, le=24 * 365),
    limit: int = Query(100, ge=1, le=1000),
    ctx: AuthContext = Depends(require("view_audit_logs")),
):
    runtime = get_runtime()
    since = runtime.clock() - timedelta(hours=since_hours) if since_hours else None
    events = runtime.audit_log.security_events(
        event_type=event_type,
        severity=severity,
        actor_id=actor_id,
        since=since,
        limit=limit,
    )
    return Envelope(status="ok", data={"items": [e.to_dict() for e in events]})


@router.get("/audit/entries", response_model=Envelope, tags=["audit"])
async def list_audit_entries(
    action: Optional[str] = Query(None, max_length=64),
    actor_id: Optional[str] = Query(None, max_length=128),
    limit: int = Query(100, ge=1, le=1000),
    ctx: AuthContext = Depends(require("view_audit_logs")),
):
    runtime = get_runtime()
    entries = runtime.audit_log.audit_entries(action=action, actor_id=actor_id, limit=limit)
    return Envelope(status="ok", data={"items": [e.to_dict() for e in entries]})


@router.get("/audit/statistics", response_model=Envelope, tags=["audit"])
async def audit_statistics(
    since_hours: Optional[int] = Query(None, ge=1, le=24 * 365),
    ctx: AuthContext = Depends(require("view_audit_logs")),
):
    runtime = get_runtime()
    since = runtime.clock() - timedelta(hours=since_hours) if since_hours else None
    stats = runtime.audit_log.statistics(since=since)
    stats["dropped_events"] = runtime.audit.dropped_events
    return Envelope(status="ok", data=stats)
