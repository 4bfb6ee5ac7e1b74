"""
Data models for the permission engine.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Any, Optional, List, Tuple, Union, Iterable


WILDCARD = "*"
PERMISSION_TOKEN_PATTERN = re.compile(r"^[a-z_]+$")
DYNAMIC_VALUE_PATTERN = re.compile(r"^\$\{(user|resource)\.([A-Za-z0-9_.]+)\}$")


class Role(str, Enum):
    """User roles, highest privilege first."""
    ADMIN = "ADMIN"
    DINAS = "DINAS"
    POPT = "POPT"
    PPL = "PPL"


ROLE_HIERARCHY: Dict[Role, int] = {
    Role.ADMIN: 100,
    Role.DINAS: 75,
    Role.POPT: 50,
    Role.PPL: 25,
}

SUPER_ADMIN_ROLES = frozenset({Role.ADMIN})


def get_role_level(role: Union[Role, str]) -> int:
    """Hierarchy level of ``role``; unknown roles rank below every real role."""
    try:
        return ROLE_HIERARCHY[Role(role)]
    except ValueError:
        return 0


def has_role_level(user_role: Union[Role, str], required_role: Union[Role, str]) -> bool:
    """True when ``user_role`` ranks at or above ``required_role``."""
    return get_role_level(user_role) >= get_role_level(required_role)


def compare_roles(role_a: Union[Role, str], role_b: Union[Role, str]) -> int:
    """Positive when ``role_a`` outranks ``role_b``, zero when equal."""
    return get_role_level(role_a) - get_role_level(role_b)


def is_super_admin(role: Union[Role, str]) -> bool:
    try:
        return Role(role) in SUPER_ADMIN_ROLES
    except ValueError:
        return False


class ConditionOperator(str, Enum):
    """Condition operators."""
    EQ = "eq"
    NE = "ne"
    IN = "in"
    NIN = "nin"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    CONTAINS = "contains"
    EXISTS = "exists"


@dataclass(frozen=True)
class UserRef:
    """Value resolved from an attribute of the authenticated user."""
    attribute: str

    @property
    def template(self) -> str:
        return "${user.%s}" % self.attribute


@dataclass(frozen=True)
class ResourceRef:
    """Value resolved from a field of the resource snapshot."""
    field: str

    @property
    def template(self) -> str:
        return "${resource.%s}" % self.field


DynamicValue = Union[UserRef, ResourceRef]


def parse_dynamic_value(value: Any) -> Any:
    """Turn a whole-string ``${user.x}`` / ``${resource.x}`` template into a typed reference.

    Anything else, including strings that merely contain a template, is
    returned unchanged.
    """
    if not isinstance(value, str):
        return value
    match = DYNAMIC_VALUE_PATTERN.match(value)
    if not match:
        return value
    scope, path = match.groups()
    if scope == "user":
        return UserRef(path)
    return ResourceRef(path)


def render_value(value: Any) -> Any:
    """JSON-friendly form of a condition value."""
    if isinstance(value, (UserRef, ResourceRef)):
        return value.template
    if isinstance(value, (list, tuple, set, frozenset)):
        return [render_value(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value


@dataclass(frozen=True)
class Condition:
    """Predicate attached to a permission.

    ``operator`` is coerced to ConditionOperator when it names a known
    operator; unknown operators are kept verbatim and always evaluate false.
    """
    field: str
    operator: Union[ConditionOperator, str]
    value: Any = None

    def __post_init__(self):
        try:
            object.__setattr__(self, "operator", ConditionOperator(self.operator))
        except ValueError:
            pass
        value = self.value
        if isinstance(value, list):
            value = tuple(parse_dynamic_value(item) for item in value)
        else:
            value = parse_dynamic_value(value)
        object.__setattr__(self, "value", value)

    @property
    def operator_name(self) -> str:
        if isinstance(self.operator, ConditionOperator):
            return self.operator.value
        return str(self.operator)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "operator": self.operator_name,
            "value": render_value(self.value),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Condition":
        return cls(field=data["field"], operator=data["operator"], value=data.get("value"))


@dataclass(frozen=True)
class Permission:
    """A ``(resource, action)`` grant with optional AND-combined conditions."""
    resource: str
    action: str
    conditions: Tuple[Condition, ...] = ()

    def __post_init__(self):
        if not isinstance(self.conditions, tuple):
            object.__setattr__(self, "conditions", tuple(self.conditions))

    @property
    def key(self) -> str:
        return f"{self.resource}:{self.action}"

    def matches(self, resource: str, action: str) -> bool:
        """Match each side exactly or through the ``*`` wildcard."""
        return (
            self.resource in (WILDCARD, resource)
            and self.action in (WILDCARD, action)
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"resource": self.resource, "action": self.action}
        if self.conditions:
            data["conditions"] = [c.to_dict() for c in self.conditions]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Permission":
        return cls(
            resource=data["resource"],
            action=data["action"],
            conditions=tuple(Condition.from_dict(c) for c in data.get("conditions") or []),
        )


@dataclass
class AuthenticatedUser:
    """Identity supplied by the authentication layer."""
    id: str
    email: str
    role: Role
    status: str = "active"

    def __post_init__(self):
        self.role = Role(self.role)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "email": self.email, "role": self.role.value, "status": self.status}


@dataclass
class DynamicPermission:
    """Temporary per-user grant, independent of role."""
    id: str
    user_id: str
    permission: Permission
    granted_by: str
    granted_at: datetime
    expires_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "permission": self.permission.to_dict(),
            "granted_by": self.granted_by,
            "granted_at": self.granted_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DynamicPermission":
        expires_at = data.get("expires_at")
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            permission=Permission.from_dict(data["permission"]),
            granted_by=data["granted_by"],
            granted_at=datetime.fromisoformat(data["granted_at"]),
            expires_at=datetime.fromisoformat(expires_at) if expires_at else None,
            metadata=data.get("metadata") or {},
        )


@dataclass
class ConditionResult:
    """Outcome of a single condition evaluation."""
    condition: Condition
    result: bool
    actual_value: Any = None
    expected_value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "condition": self.condition.to_dict(),
            "result": self.result,
            "actual_value": render_value(self.actual_value),
            "expected_value": render_value(self.expected_value),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConditionResult":
        return cls(
            condition=Condition.from_dict(data["condition"]),
            result=data["result"],
            actual_value=data.get("actual_value"),
            expected_value=data.get("expected_value"),
        )


@dataclass
class PermissionCheckResult:
    """Decision returned by every check. Denial is data, never an exception."""
    allowed: bool
    reason: str
    evaluated_conditions: List[ConditionResult] = field(default_factory=list)
    applied_permissions: List[Permission] = field(default_factory=list)
    evaluation_time_ms: float = field(default=0.0, compare=False)
    cache_hit: bool = field(default=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "evaluated_conditions": [c.to_dict() for c in self.evaluated_conditions],
            "applied_permissions": [p.to_dict() for p in self.applied_permissions],
            "evaluation_time_ms": self.evaluation_time_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PermissionCheckResult":
        return cls(
            allowed=data["allowed"],
            reason=data["reason"],
            evaluated_conditions=[ConditionResult.from_dict(c) for c in data.get("evaluated_conditions") or []],
            applied_permissions=[Permission.from_dict(p) for p in data.get("applied_permissions") or []],
            evaluation_time_ms=data.get("evaluation_time_ms", 0.0),
        )


@dataclass
class CheckOptions:
    """Per-call switches for a permission check."""
    allow_super_admin: bool = True
    log_access: bool = True


@dataclass
class UserPermissions:
    """Snapshot of everything a user currently holds."""
    user_id: str
    role: Role
    role_permissions: List[Permission] = field(default_factory=list)
    dynamic_permissions: List[DynamicPermission] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "role": Role(self.role).value,
            "role_permissions": [p.to_dict() for p in self.role_permissions],
            "dynamic_permissions": [d.to_dict() for d in self.dynamic_permissions],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserPermissions":
        return cls(
            user_id=data["user_id"],
            role=Role(data["role"]),
            role_permissions=[Permission.from_dict(p) for p in data.get("role_permissions") or []],
            dynamic_permissions=[DynamicPermission.from_dict(d) for d in data.get("dynamic_permissions") or []],
        )


def format_permission(permission: Permission) -> str:
    """Human readable ``resource:action [field op value, ...]`` form."""
    text = permission.key
    if permission.conditions:
        parts = [
            f"{c.field} {c.operator_name} {render_value(c.value)!r}"
            for c in permission.conditions
        ]
        text += " [" + ", ".join(parts) + "]"
    return text


def parse_permission(text: str) -> Optional[Permission]:
    """Parse ``resource:action``; returns None for anything else."""
    parts = text.strip().split(":")
    if len(parts) != 2 or not all(parts):
        return None
    permission = Permission(resource=parts[0], action=parts[1])
    if validate_permission_structure(permission):
        return None
    return permission


def group_permissions_by_resource(permissions: Iterable[Permission]) -> Dict[str, List[Permission]]:
    grouped: Dict[str, List[Permission]] = {}
    for permission in permissions:
        grouped.setdefault(permission.resource, []).append(permission)
    return grouped


def _valid_token(token: Any) -> bool:
    return isinstance(token, str) and (token == WILDCARD or bool(PERMISSION_TOKEN_PATTERN.match(token)))


def validate_condition(condition: Condition) -> List[str]:
    """Return a list of problems with ``condition``; empty when valid."""
    errors = []
    if not isinstance(condition.field, str) or not condition.field:
        errors.append("condition field is required")
    if not isinstance(condition.operator, ConditionOperator):
        errors.append(f"unknown condition operator: {condition.operator}")
        return errors
    if condition.operator in (ConditionOperator.IN, ConditionOperator.NIN):
        if not isinstance(condition.value, (list, tuple, set, frozenset)):
            errors.append(f"operator {condition.operator.value} requires a list value")
    elif condition.operator != ConditionOperator.EXISTS and condition.value is None:
        errors.append(f"operator {condition.operator.value} requires a value")
    return errors


def validate_permission_structure(permission: Permission) -> List[str]:
    """Return a list of problems with ``permission``; empty when valid."""
    errors = []
    if not _valid_token(permission.resource):
        errors.append(f"invalid resource: {permission.resource!r}")
    if not _valid_token(permission.action):
        errors.append(f"invalid action: {permission.action!r}")
    for condition in permission.conditions:
        errors.extend(validate_condition(condition))
    return errors
