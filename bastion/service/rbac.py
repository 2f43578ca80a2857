from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

from bastion.logging import get_logger
from bastion.service.audit import AuditRecorder, EventType
from bastion.service.errors import (
    AlreadyAssignedError,
    ForbiddenError,
    NotFoundError,
    UnknownPermissionError,
    ValidationError,
)
from bastion.service.role_catalog import MANAGE_SYSTEM
from bastion.service.sessions import PrincipalStore
from bastion.storage.errors import ConstraintViolation
from bastion.storage.models import (
    Permission,
    Role,
    RoleAssignment,
    Severity,
    new_id,
    utcnow,
)

logger = get_logger(__name__)

PROJECT_MANAGEMENT_PERMISSIONS = (MANAGE_SYSTEM, "edit_project", "manage_project_team")


class RoleStore(Protocol):
    def get_role(self, role_id: str) -> Optional[Role]: ...

    def get_role_by_name(self, name: str) -> Optional[Role]: ...

    def list_roles(self) -> List[Role]: ...

    def get_permission_by_name(self, name: str) -> Optional[Permission]: ...

    def list_permissions(self) -> List[Permission]: ...

    def get_role_permissions(self, role_id: str) -> List[Permission]: ...

    def get_legacy_role_map(self) -> Dict[str, str]: ...

    def replace_role_catalog(
        self,
        roles: Iterable[Role],
        permissions: Iterable[Permission],
        links: Dict[str, Iterable[str]],
        legacy_role_map: Dict[str, str],
    ) -> None: ...

    def create_assignment(
        self,
        user_id: str,
        role_id: str,
        *,
        project_id: str | None,
        assigned_by: str | None,
        expires_at: datetime | None,
        now: datetime,
    ) -> RoleAssignment: ...

    def list_assignments(
        self, user_id: str, *, now: datetime, include_expired: bool = False
    ) -> List[RoleAssignment]: ...

    def delete_assignment(
        self, user_id: str, role_id: str, *, project_id: str | None, now: datetime
    ) -> bool: ...

    def purge_expired_assignments(self, now: datetime) -> int: ...


class RBACEngine:
    """Resolves permissions through role assignments, optionally per project.

    A user's roles in scope are the live assignments that are global or
    scoped to the requested project. Users with no live assignment at all
    fall back to their flat ``role`` field, translated through the legacy
    role map. Permission names are checked against the permission registry
    held by the store; an unknown name raises instead of resolving to False.
    """

    def __init__(
        self,
        store: RoleStore,
        principals: PrincipalStore,
        audit: AuditRecorder,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.principals = principals
        self.audit = audit
        self._clock = clock

    # -- registry --------------------------------------------------------

    def ensure_known(self, permission_name: str) -> Permission:
        permission = self.store.get_permission_by_name(permission_name)
        if permission is None:
            raise UnknownPermissionError(
                f"unknown permission: {permission_name}",
                detail={"permission": permission_name},
            )
        return permission

    def validate_permission_names(self, names: Iterable[str]) -> None:
        """Fail fast when any of ``names`` is missing from the registry."""
        known = {p.name for p in self.store.list_permissions()}
        missing = sorted(set(names) - known)
        if missing:
            raise UnknownPermissionError(
                f"unknown permissions: {', '.join(missing)}",
                detail={"permissions": missing},
            )

    # -- role resolution -------------------------------------------------

    def role_for_name(self, name: str) -> Optional[Role]:
        """Catalog role for ``name``, translating legacy names through the map."""
        role = self.store.get_role_by_name(name)
        if role:
            return role
        mapped = self.store.get_legacy_role_map().get(name)
        if mapped:
            return self.store.get_role_by_name(mapped)
        return None

    def _legacy_role(self, user_id: str) -> Optional[Role]:
        principal = self.principals.get_principal(user_id)
        if principal is None or not principal.is_active:
            return None
        role = self.role_for_name(principal.role)
        if role is None:
            # Unrecognized flat roles get the lowest-ranked catalog role
            catalog = self.store.list_roles()
            role = catalog[0] if catalog else None
        return role

    def get_user_roles(self, user_id: str, project_id: Optional[str] = None) -> List[Role]:
        now = self._clock()
        assignments = self.store.list_assignments(user_id, now=now)
        if not assignments:
            legacy = self._legacy_role(user_id)
            return [legacy] if legacy else []
        roles: Dict[str, Role] = {}
        for assignment in assignments:
            if not assignment.applies_to(project_id) or assignment.role_id in roles:
                continue
            role = self.store.get_role(assignment.role_id)
            if role:
                roles[role.id] = role
        return sorted(roles.values(), key=lambda r: r.level, reverse=True)

    def get_user_permissions(
        self, user_id: str, project_id: Optional[str] = None
    ) -> List[Permission]:
        permissions: Dict[str, Permission] = {}
        for role in self.get_user_roles(user_id, project_id):
            for permission in self.store.get_role_permissions(role.id):
                permissions.setdefault(permission.id, permission)
        return sorted(permissions.values(), key=lambda p: p.name)

    def _permission_names(self, user_id: str, project_id: Optional[str]) -> set[str]:
        try:
            return {p.name for p in self.get_user_permissions(user_id, project_id)}
        except Exception as exc:
            # Authorization paths fail closed on store errors
            logger.error(
                "rbac_resolution_failed",
                user_id=user_id,
                project_id=project_id,
                error=str(exc),
            )
            return set()

    def user_has_permission(
        self, user_id: str, permission_name: str, project_id: Optional[str] = None
    ) -> bool:
        self.ensure_known(permission_name)
        return permission_name in self._permission_names(user_id, project_id)

    def user_has_any_permission(
        self, user_id: str, permission_names: Iterable[str], project_id: Optional[str] = None
    ) -> bool:
        names = list(permission_names)
        self.validate_permission_names(names)
        held = self._permission_names(user_id, project_id)
        return any(name in held for name in names)

    def user_has_all_permissions(
        self, user_id: str, permission_names: Iterable[str], project_id: Optional[str] = None
    ) -> bool:
        names = list(permission_names)
        self.validate_permission_names(names)
        held = self._permission_names(user_id, project_id)
        return all(name in held for name in names)

    def is_super_admin(self, user_id: str) -> bool:
        return MANAGE_SYSTEM in self._permission_names(user_id, None)

    def can_manage_project(self, user_id: str, project_id: str) -> bool:
        held = self._permission_names(user_id, project_id)
        return any(name in held for name in PROJECT_MANAGEMENT_PERMISSIONS)

    def can_access_project(self, user_id: str, project_id: str) -> bool:
        """Global ``manage_system`` holders see every project; others need a role in it."""
        if self.is_super_admin(user_id):
            return True
        try:
            assignments = self.store.list_assignments(user_id, now=self._clock())
        except Exception as exc:
            logger.error("rbac_resolution_failed", user_id=user_id, error=str(exc))
            return False
        return any(a.project_id == project_id for a in assignments)

    def is_at_least_role(self, user_role: str, required_role: str) -> bool:
        """Rank comparison on the catalog; legacy names are mapped first.

        Unknown user roles rank below everything. An unknown required role
        is never satisfied.
        """
        required = self.role_for_name(required_role)
        if required is None:
            return False
        current = self.role_for_name(user_role)
        return current is not None and current.level >= required.level

    # -- assignments -----------------------------------------------------

    async def assign_role_to_user(
        self,
        user_id: str,
        role_id: str,
        project_id: Optional[str] = None,
        assigned_by: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        *,
        ip_address: Optional[str] = None,
    ) -> RoleAssignment:
        """Grant ``role_id`` to ``user_id``.

        ``assigned_by=None`` is reserved for system bootstrap; any other
        assigner must hold ``manage_system`` globally.
        """
        now = self._clock()
        if self.principals.get_principal(user_id) is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        role = self.store.get_role(role_id)
        if role is None:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        if expires_at is not None and expires_at <= now:
            raise ValidationError("expires_at must be in the future")
        if assigned_by is not None and not self.is_super_admin(assigned_by):
            await self.audit.security_event(
                EventType.AUTHORIZATION_DENIED,
                Severity.HIGH,
                "role assignment attempted without manage_system",
                actor_id=assigned_by,
                ip_address=ip_address,
                metadata={
                    "permission": MANAGE_SYSTEM,
                    "target_user_id": user_id,
                    "role": role.name,
                    "project_id": project_id,
                },
            )
            raise ForbiddenError("insufficient permissions to assign roles")
        try:
            assignment = self.store.create_assignment(
                user_id,
                role_id,
                project_id=project_id,
                assigned_by=assigned_by,
                expires_at=expires_at,
                now=now,
            )
        except ConstraintViolation as exc:
            raise AlreadyAssignedError(
                "role already assigned",
                detail={"user_id": user_id, "role": role.name, "project_id": project_id},
            ) from exc
        await self.audit.audit(
            "ASSIGN_ROLE",
            "role_assignment",
            resource_id=assignment.id,
            actor_id=assigned_by,
            ip_address=ip_address,
            new_values={
                "user_id": user_id,
                "role": role.name,
                "project_id": project_id,
                "expires_at": expires_at.isoformat() if expires_at else None,
            },
        )
        logger.info(
            "role_assigned", user_id=user_id, role=role.name, project_id=project_id
        )
        return assignment

    async def remove_role_from_user(
        self,
        user_id: str,
        role_id: str,
        project_id: Optional[str] = None,
        *,
        removed_by: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> None:
        if removed_by is not None and not self.is_super_admin(removed_by):
            await self.audit.security_event(
                EventType.AUTHORIZATION_DENIED,
                Severity.HIGH,
                "role removal attempted without manage_system",
                actor_id=removed_by,
                ip_address=ip_address,
                metadata={
                    "permission": MANAGE_SYSTEM,
                    "target_user_id": user_id,
                    "role_id": role_id,
                    "project_id": project_id,
                },
            )
            raise ForbiddenError("insufficient permissions to remove roles")
        removed = self.store.delete_assignment(
            user_id, role_id, project_id=project_id, now=self._clock()
        )
        if not removed:
            raise NotFoundError(
                "role assignment not found",
                detail={"user_id": user_id, "role_id": role_id, "project_id": project_id},
            )
        await self.audit.audit(
            "REMOVE_ROLE",
            "role_assignment",
            actor_id=removed_by,
            ip_address=ip_address,
            old_values={"user_id": user_id, "role_id": role_id, "project_id": project_id},
        )
        logger.info("role_removed", user_id=user_id, role_id=role_id, project_id=project_id)

    def list_assignments(self, user_id: str, *, include_expired: bool = False) -> List[RoleAssignment]:
        return self.store.list_assignments(
            user_id, now=self._clock(), include_expired=include_expired
        )

    def cleanup_expired_assignments(self) -> int:
        purged = self.store.purge_expired_assignments(self._clock())
        if purged:
            logger.info("role_assignments_purged", count=purged)
        return purged

    # -- catalog ---------------------------------------------------------

    def list_roles(self) -> List[Role]:
        return self.store.list_roles()

    def list_permissions(self) -> List[Permission]:
        return self.store.list_permissions()

    def get_role_permissions(self, role_id: str) -> List[Permission]:
        if self.store.get_role(role_id) is None:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        return self.store.get_role_permissions(role_id)

    def export_role_config(self) -> Dict[str, Any]:
        roles = self.store.list_roles()
        return {
            "roles": [
                {"name": r.name, "level": r.level, "description": r.description}
                for r in roles
            ],
            "permissions": [
                {"name": p.name, "category": p.category, "description": p.description}
                for p in self.store.list_permissions()
            ],
            "role_permissions": {
                r.name: [p.name for p in self.store.get_role_permissions(r.id)] for r in roles
            },
            "legacy_role_map": self.store.get_legacy_role_map(),
        }

    @staticmethod
    def _parse_role_config(document: Dict[str, Any]) -> tuple[list, list, dict, Optional[dict]]:
        if not isinstance(document, dict):
            raise ValidationError("role configuration must be an object")
        roles = document.get("roles")
        permissions = document.get("permissions")
        links = document.get("role_permissions")
        if not isinstance(roles, list) or not isinstance(permissions, list):
            raise ValidationError("roles and permissions must be lists")
        if not isinstance(links, dict):
            raise ValidationError("role_permissions must be an object")

        role_names: set[str] = set()
        for entry in roles:
            if not isinstance(entry, dict) or not isinstance(entry.get("name"), str):
                raise ValidationError("each role needs a name")
            if not isinstance(entry.get("level"), int) or isinstance(entry.get("level"), bool):
                raise ValidationError(f"role {entry['name']} needs an integer level")
            if entry["name"] in role_names:
                raise ValidationError(f"duplicate role: {entry['name']}")
            role_names.add(entry["name"])

        permission_names: set[str] = set()
        for entry in permissions:
            if not isinstance(entry, dict) or not isinstance(entry.get("name"), str):
                raise ValidationError("each permission needs a name")
            if entry["name"] in permission_names:
                raise ValidationError(f"duplicate permission: {entry['name']}")
            permission_names.add(entry["name"])

        for role_name, granted in links.items():
            if role_name not in role_names:
                raise ValidationError(f"role_permissions references unknown role: {role_name}")
            if not isinstance(granted, list):
                raise ValidationError(f"permissions for {role_name} must be a list")
            unknown = sorted(set(granted) - permission_names)
            if unknown:
                raise UnknownPermissionError(
                    f"role {role_name} references unknown permissions",
                    detail={"permissions": unknown},
                )

        legacy = document.get("legacy_role_map")
        if legacy is not None:
            if not isinstance(legacy, dict):
                raise ValidationError("legacy_role_map must be an object")
            for legacy_name, target in legacy.items():
                if target not in role_names:
                    raise ValidationError(
                        f"legacy role {legacy_name} maps to unknown role {target}"
                    )
        return roles, permissions, links, legacy

    def apply_role_config(self, document: Dict[str, Any]) -> Dict[str, int]:
        """Replace the catalog with ``document``.

        Roles and permissions keep their ids when their names already exist,
        so assignments to surviving roles stay valid.
        """
        roles, permissions, links, legacy = self._parse_role_config(document)
        existing_roles = {r.name: r for r in self.store.list_roles()}
        existing_permissions = {p.name: p for p in self.store.list_permissions()}

        new_roles = [
            Role(
                id=existing_roles[e["name"]].id if e["name"] in existing_roles else new_id(),
                name=e["name"],
                level=e["level"],
                description=e.get("description", ""),
            )
            for e in roles
        ]
        new_permissions = [
            Permission(
                id=(
                    existing_permissions[e["name"]].id
                    if e["name"] in existing_permissions
                    else new_id()
                ),
                name=e["name"],
                category=e.get("category", "general"),
                description=e.get("description", ""),
            )
            for e in permissions
        ]
        role_ids = {r.name: r.id for r in new_roles}
        permission_ids = {p.name: p.id for p in new_permissions}
        id_links = {
            role_ids[role_name]: [permission_ids[name] for name in granted]
            for role_name, granted in links.items()
        }
        legacy_map = legacy if legacy is not None else self.store.get_legacy_role_map()
        legacy_map = {k: v for k, v in legacy_map.items() if v in role_ids}
        self.store.replace_role_catalog(new_roles, new_permissions, id_links, legacy_map)

        summary = {
            "roles": len(new_roles),
            "permissions": len(new_permissions),
            "role_permissions": sum(len(v) for v in id_links.values()),
            "legacy_roles": len(legacy_map),
        }
        logger.info("role_config_applied", **summary)
        return summary

    async def import_role_config(
        self,
        document: Dict[str, Any],
        *,
        imported_by: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Dict[str, int]:
        summary = self.apply_role_config(document)
        await self.audit.audit(
            "IMPORT_ROLE_CONFIG",
            "role_catalog",
            actor_id=imported_by,
            ip_address=ip_address,
            new_values=summary,
        )
        return summary
