"""
Declarative access requirements attached to routes or handlers.

A requirement is plain data; ``AuthorizationService.enforce`` is the one
guard that evaluates any of them.
"""

from dataclasses import dataclass, field
from typing import Tuple, Union

from .models import Role


@dataclass(frozen=True)
class RoleRequirement:
    """User role must be one of ``roles``."""
    roles: Tuple[Role, ...]

    def __post_init__(self):
        object.__setattr__(self, "roles", tuple(Role(r) for r in self.roles))


@dataclass(frozen=True)
class MinimumRoleRequirement:
    """User role must rank at or above ``role``."""
    role: Role

    def __post_init__(self):
        object.__setattr__(self, "role", Role(self.role))


@dataclass(frozen=True)
class PermissionRequirement:
    resource: str
    action: str


@dataclass(frozen=True)
class AnyPermissionRequirement:
    permissions: Tuple[Tuple[str, str], ...]

    def __post_init__(self):
        object.__setattr__(self, "permissions", tuple(tuple(p) for p in self.permissions))


@dataclass(frozen=True)
class AllPermissionsRequirement:
    permissions: Tuple[Tuple[str, str], ...]

    def __post_init__(self):
        object.__setattr__(self, "permissions", tuple(tuple(p) for p in self.permissions))


@dataclass(frozen=True)
class ResourceAccessRequirement:
    """Access to one resource instance; its id is read from ``id_param``."""
    resource: str
    action: str
    id_param: str = field(default="id")


Requirement = Union[
    RoleRequirement,
    MinimumRoleRequirement,
    PermissionRequirement,
    AnyPermissionRequirement,
    AllPermissionsRequirement,
    ResourceAccessRequirement,
]
