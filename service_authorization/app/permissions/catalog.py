"""
Role permission catalog.
"""

import threading
from typing import Dict, Any, Iterable, List, Optional, Tuple

from shared.logging import get_logger
from .models import (
    Condition, ConditionOperator, Permission, Role, UserRef, WILDCARD,
    group_permissions_by_resource,
)


PERMISSION_TEMPLATES: Dict[str, Tuple[str, ...]] = {
    "crud_all": ("create", "read", "update", "delete"),
    "read_only": ("read",),
    "create_read": ("create", "read"),
    "full_management": ("create", "read", "update", "delete", "manage", "view_all"),
    "approval_workflow": ("read", "approve", "reject", "view_all"),
}

# Resource field naming the owning user, per resource type.
OWNERSHIP_FIELDS: Dict[str, str] = {
    "submissions": "created_by",
    "transactions": "created_by",
    "uploads": "uploaded_by",
    "documents": "created_by",
}
DEFAULT_OWNERSHIP_FIELD = "user_id"

ACTION_DESCRIPTIONS: Dict[str, str] = {
    "create": "Create new",
    "read": "View",
    "update": "Edit",
    "delete": "Delete",
    "manage": "Fully manage",
    "approve": "Approve",
    "reject": "Reject",
    "verify": "Verify",
    "distribute": "Distribute",
    "generate": "Generate",
    "bulk_create": "Bulk create",
    "scan": "Scan",
    "export": "Export",
    "view_all": "View all",
    "view_own": "View own",
}


def get_ownership_field(resource: str) -> str:
    return OWNERSHIP_FIELDS.get(resource, DEFAULT_OWNERSHIP_FIELD)


def from_template(resource: str, template: str) -> List[Permission]:
    """Expand a named action template into permissions on ``resource``."""
    return [Permission(resource, action) for action in PERMISSION_TEMPLATES[template]]


def _actions(resource: str, *actions: str) -> List[Permission]:
    return [Permission(resource, action) for action in actions]


def _owned_by_user(field_name: str = "created_by") -> Condition:
    return Condition(field_name, ConditionOperator.EQ, UserRef("id"))


def _status(value: str) -> Condition:
    return Condition("status", ConditionOperator.EQ, value)


def default_role_permissions() -> Dict[Role, List[Permission]]:
    """Built-in catalog: unconditioned rows first, conditioned rows after."""
    admin: List[Permission] = []
    for resource in ("users", "medicines", "inventory", "qrcode", "submissions", "transactions", "settings"):
        admin += from_template(resource, "full_management")
    admin += _actions("qrcode", "generate", "bulk_create")
    admin += from_template("approvals", "approval_workflow")
    admin += _actions("transactions", "verify", "distribute")
    admin += from_template("reports", "read_only")
    admin += _actions("reports", "export")
    admin += from_template("analytics", "read_only")
    admin += from_template("audit", "read_only")

    dinas: List[Permission] = []
    dinas += _actions("medicines", "read", "update")
    dinas += _actions("inventory", "read", "update")
    dinas += _actions("qrcode", "read", "create", "generate")
    dinas += _actions("submissions", "read", "view_all")
    dinas += from_template("approvals", "approval_workflow")
    dinas += _actions("transactions", "read", "create", "verify", "view_all")
    dinas += _actions("reports", "read", "export")
    dinas.append(Permission("submissions", "approve", (_status("pending"),)))

    popt: List[Permission] = []
    popt += from_template("medicines", "crud_all")
    popt += from_template("inventory", "crud_all")
    popt += _actions("qrcode", "read", "create", "generate", "scan")
    popt += _actions("submissions", "read", "view_all")
    popt += _actions("transactions", "read", "create", "distribute", "view_all")
    popt += _actions("reports", "read")
    popt.append(Permission("transactions", "distribute", (_status("approved"),)))

    ppl: List[Permission] = []
    ppl += _actions("medicines", "read")
    ppl += _actions("inventory", "read")
    ppl += _actions("qrcode", "read", "scan")
    ppl += _actions("submissions", "create", "read", "view_own")
    ppl += _actions("transactions", "read", "view_own")
    ppl += [
        Permission("submissions", "view_own", (_owned_by_user(),)),
        Permission("submissions", "update", (_status("draft"), _owned_by_user())),
        Permission("transactions", "view_own", (_owned_by_user(),)),
        Permission("transactions", "distribute", (_status("approved"),)),
    ]

    return {Role.ADMIN: admin, Role.DINAS: dinas, Role.POPT: popt, Role.PPL: ppl}


class PermissionCatalog:
    """Role to permission mapping.

    Each role row is an immutable tuple; edits build a new tuple and swap
    it in under a lock, so readers always see a consistent snapshot
    without locking.
    """

    def __init__(self, role_permissions: Optional[Dict[Role, Iterable[Permission]]] = None):
        self.logger = get_logger("authorization.catalog")
        self._lock = threading.RLock()
        source = role_permissions if role_permissions is not None else default_role_permissions()
        self._rows: Dict[Role, Tuple[Permission, ...]] = {
            Role(role): tuple(permissions) for role, permissions in source.items()
        }

    def get(self, role: Role) -> Tuple[Permission, ...]:
        """Snapshot of the permissions granted to ``role``."""
        return self._rows.get(Role(role), ())

    def roles(self) -> List[Role]:
        return list(self._rows.keys())

    def replace(self, role: Role, permissions: Iterable[Permission]) -> Tuple[Permission, ...]:
        """Replace the whole row for ``role``."""
        row = tuple(permissions)
        with self._lock:
            self._rows[Role(role)] = row
        self.logger.info("Role permissions replaced", role=Role(role).value, count=len(row))
        return row

    def add(self, role: Role, permission: Permission) -> bool:
        """Append ``permission`` unless an identical entry exists."""
        with self._lock:
            row = self._rows.get(Role(role), ())
            if permission in row:
                return False
            self._rows[Role(role)] = row + (permission,)
        self.logger.info("Role permission added", role=Role(role).value, permission=permission.key)
        return True

    def remove(self, role: Role, resource: str, action: str) -> int:
        """Remove every entry for ``(resource, action)``; returns how many went."""
        with self._lock:
            row = self._rows.get(Role(role), ())
            kept = tuple(p for p in row if not (p.resource == resource and p.action == action))
            self._rows[Role(role)] = kept
        removed = len(row) - len(kept)
        if removed:
            self.logger.info("Role permission removed", role=Role(role).value, resource=resource, action=action)
        return removed

    def matrix(self) -> Dict[str, Dict[str, List[str]]]:
        """``role -> resource -> sorted actions`` view of the whole catalog."""
        result: Dict[str, Dict[str, List[str]]] = {}
        for role, row in self._rows.items():
            grouped = group_permissions_by_resource(row)
            result[role.value] = {
                resource: sorted({p.action for p in perms})
                for resource, perms in grouped.items()
            }
        return result

    def summary(self, role: Role) -> Dict[str, Any]:
        """Counts and readable descriptions for one role."""
        row = self.get(role)
        grouped = group_permissions_by_resource(row)
        return {
            "role": Role(role).value,
            "total_permissions": len(row),
            "conditional_permissions": sum(1 for p in row if p.conditions),
            "resources": sorted(grouped.keys()),
            "descriptions": [describe_permission(p.resource, p.action) for p in row],
        }


def describe_permission(resource: str, action: str) -> str:
    """Readable label such as ``"Approve submissions"``."""
    resource_label = "all resources" if resource == WILDCARD else resource.replace("_", " ")
    if action == WILDCARD:
        return f"Any action on {resource_label}"
    verb = ACTION_DESCRIPTIONS.get(action, action.replace("_", " ").capitalize())
    return f"{verb} {resource_label}"
