"""Built-in ranked role catalog.

The document has the same shape that ``RBACEngine.export_role_config`` emits
and ``import_role_config`` accepts, so a deployment can replace it wholesale
through ``ROLE_CONFIG_PATH``.
"""

from __future__ import annotations

import copy
import json
from pathlib import Path
from typing import Any, Dict

MANAGE_SYSTEM = "manage_system"

_PERMISSIONS = [
    ("manage_system", "system", "Full administrative control, including every project"),
    ("manage_users", "system", "Create, deactivate and re-role user accounts"),
    ("view_audit_logs", "system", "Read security events and audit statistics"),
    ("export_audit_logs", "system", "Export audit records"),
    ("view_reports", "system", "Read aggregate reports"),
    ("view_project", "project", "Read project details"),
    ("create_project", "project", "Create projects"),
    ("edit_project", "project", "Change project settings"),
    ("delete_project", "project", "Delete projects"),
    ("manage_project_team", "project", "Add and remove project members"),
    ("create_task", "task", "Create tasks"),
    ("edit_task", "task", "Edit tasks"),
    ("assign_task", "task", "Assign tasks to members"),
    ("delete_task", "task", "Delete tasks"),
    ("view_document", "document", "Read project documents"),
    ("upload_document", "document", "Upload documents"),
    ("edit_document", "document", "Edit documents"),
    ("approve_document", "document", "Approve documents"),
    ("delete_document", "document", "Delete documents"),
    ("upload_asset", "asset", "Upload build and design assets"),
    ("view_prototype", "prototype", "Read prototypes"),
    ("submit_prototype", "prototype", "Submit prototypes"),
    ("edit_prototype", "prototype", "Edit prototypes"),
]

_GUEST = ["view_project"]
_CLIENT = _GUEST + ["view_document", "view_prototype"]
_DEVELOPER = _CLIENT + [
    "create_task",
    "edit_task",
    "upload_asset",
    "upload_document",
    "submit_prototype",
]
_DESIGNER = _DEVELOPER + ["edit_document", "edit_prototype"]
_QA_ENGINEER = _DESIGNER + ["assign_task", "view_reports"]
_PROJECT_ADMIN = _QA_ENGINEER + [
    "create_project",
    "edit_project",
    "manage_project_team",
    "approve_document",
    "delete_document",
    "delete_task",
    "view_audit_logs",
]

DEFAULT_ROLE_CONFIG: Dict[str, Any] = {
    "roles": [
        {"name": "guest", "level": 1, "description": "Minimal access"},
        {"name": "client", "level": 2, "description": "Read-only project access"},
        {"name": "developer", "level": 3, "description": "Development access"},
        {"name": "designer", "level": 4, "description": "Asset management"},
        {"name": "qa_engineer", "level": 5, "description": "QA and testing"},
        {"name": "project_admin", "level": 6, "description": "Project management"},
        {"name": "super_admin", "level": 7, "description": "Full system access"},
    ],
    "permissions": [
        {"name": name, "category": category, "description": description}
        for name, category, description in _PERMISSIONS
    ],
    "role_permissions": {
        "guest": _GUEST,
        "client": _CLIENT,
        "developer": _DEVELOPER,
        "designer": _DESIGNER,
        "qa_engineer": _QA_ENGINEER,
        "project_admin": _PROJECT_ADMIN,
        "super_admin": [name for name, _, _ in _PERMISSIONS],
    },
    # Older flat role names and the catalog role each one now means
    "legacy_role_map": {
        "readonly": "guest",
        "commenter": "client",
        "editor": "developer",
        "manager": "project_admin",
        "admin": "project_admin",
        "owner": "super_admin",
    },
}


def load_role_config(path: str | None) -> Dict[str, Any]:
    """Return the role document at ``path``, or a copy of the built-in one."""
    if not path:
        return copy.deepcopy(DEFAULT_ROLE_CONFIG)
    return json.loads(Path(path).read_text())
