"""
Resource guard configuration models.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional, Tuple

from ..permissions.models import (
    AuthenticatedUser, Condition, ConditionOperator, Permission, Role, UserRef,
)


class Relationship(str, Enum):
    """How a child resource relates a user to its parent."""
    OWNER = "owner"
    MEMBER = "member"
    VIEWER = "viewer"
    CUSTOM = "custom"


@dataclass(frozen=True)
class InheritanceRule:
    """Access to a resource may be derived from access to ``parent_resource``."""
    parent_resource: str
    relationship: Relationship
    condition: Optional[Condition] = None

    def __post_init__(self):
        object.__setattr__(self, "relationship", Relationship(self.relationship))


@dataclass
class ResourceGuardConfig:
    """Per-resource-type access rules, registered at startup."""
    resource: str
    ownership_field: Optional[str] = None
    allowed_roles: Tuple[Role, ...] = ()
    custom_permissions: Tuple[Permission, ...] = ()
    inheritance_rules: Tuple[InheritanceRule, ...] = ()

    def __post_init__(self):
        self.allowed_roles = tuple(Role(r) for r in self.allowed_roles)
        self.custom_permissions = tuple(self.custom_permissions)
        self.inheritance_rules = tuple(self.inheritance_rules)


class RelationshipResolver(ABC):
    """Answers membership style questions the guard cannot derive itself."""

    @abstractmethod
    def has_relationship(
        self,
        user: AuthenticatedUser,
        relationship: Relationship,
        resource: str,
        resource_id: str,
        resource_data: Any = None,
    ) -> bool:
        """True when ``user`` holds ``relationship`` on the given resource."""


def _self_condition(field_name: str) -> Tuple[Condition, ...]:
    return (Condition(field_name, ConditionOperator.EQ, UserRef("id")),)


def default_guard_configs() -> List[ResourceGuardConfig]:
    return [
        ResourceGuardConfig(
            resource="submissions",
            ownership_field="created_by",
            allowed_roles=(Role.ADMIN, Role.DINAS),
            custom_permissions=(
                Permission("submissions", "view_own", _self_condition("created_by")),
            ),
        ),
        ResourceGuardConfig(
            resource="transactions",
            ownership_field="created_by",
            allowed_roles=(Role.ADMIN, Role.DINAS, Role.POPT),
            custom_permissions=(
                Permission("transactions", "view_own", _self_condition("created_by")),
            ),
        ),
        ResourceGuardConfig(
            resource="files",
            ownership_field="uploaded_by",
            allowed_roles=(Role.ADMIN,),
            custom_permissions=(
                Permission("files", "read", _self_condition("uploaded_by")),
                Permission("files", "delete", _self_condition("uploaded_by")),
            ),
        ),
        ResourceGuardConfig(
            resource="users",
            allowed_roles=(Role.ADMIN,),
            custom_permissions=(
                Permission("users", "read", _self_condition("id")),
                Permission("users", "update", _self_condition("id")),
            ),
        ),
    ]
