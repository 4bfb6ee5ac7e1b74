"""
Request and response models for the HTTP API.
"""

from datetime import datetime, timezone
from typing import Dict, Any, Optional, List

from pydantic import BaseModel, Field, field_validator

from .audit.models import AuditLogEntry
from .permissions.models import (
    AuthenticatedUser, Condition, DynamicPermission, Permission,
    PermissionCheckResult, Role,
)


class ConditionModel(BaseModel):
    field: str
    operator: str
    value: Any = None

    def to_condition(self) -> Condition:
        return Condition(field=self.field, operator=self.operator, value=self.value)


class PermissionModel(BaseModel):
    resource: str
    action: str
    conditions: List[ConditionModel] = Field(default_factory=list)

    def to_permission(self) -> Permission:
        return Permission(
            resource=self.resource,
            action=self.action,
            conditions=tuple(c.to_condition() for c in self.conditions),
        )


class UserModel(BaseModel):
    id: str
    email: str = ""
    role: Role
    status: str = "active"

    def to_user(self) -> AuthenticatedUser:
        return AuthenticatedUser(id=self.id, email=self.email, role=self.role, status=self.status)


class PermissionCheckRequest(BaseModel):
    """Permission check request model."""
    user: UserModel
    resource: str
    action: str
    resource_id: Optional[str] = None
    context: Optional[Dict[str, Any]] = None


class PermissionCheckResponse(BaseModel):
    """Permission check response model."""
    allowed: bool
    reason: str
    evaluated_conditions: List[Dict[str, Any]] = Field(default_factory=list)
    applied_permissions: List[Dict[str, Any]] = Field(default_factory=list)
    evaluation_time_ms: float = 0.0
    cache_hit: bool = False

    @classmethod
    def from_result(cls, result: PermissionCheckResult) -> "PermissionCheckResponse":
        data = result.to_dict()
        return cls(cache_hit=result.cache_hit, **data)


class ResourceAccessRequest(BaseModel):
    user: UserModel
    resource: str
    resource_id: str
    action: str
    resource_data: Optional[Dict[str, Any]] = None


class ResourceAccessResponse(BaseModel):
    allowed: bool
    resource: str
    resource_id: str
    action: str


class AccessQueryRequest(BaseModel):
    user: UserModel
    resource: str
    action: str = "read"


class AccessQueryResponse(BaseModel):
    resource: str
    action: str
    query: Dict[str, Any]


class GrantRequest(BaseModel):
    """Dynamic permission grant request."""
    user_id: str
    permission: PermissionModel
    expires_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("expires_at")
    @classmethod
    def assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        """Naive timestamps are taken as UTC."""
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class DynamicPermissionResponse(BaseModel):
    id: str
    user_id: str
    permission: Dict[str, Any]
    granted_by: str
    granted_at: datetime
    expires_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_grant(cls, grant: DynamicPermission) -> "DynamicPermissionResponse":
        return cls(
            id=grant.id,
            user_id=grant.user_id,
            permission=grant.permission.to_dict(),
            granted_by=grant.granted_by,
            granted_at=grant.granted_at,
            expires_at=grant.expires_at,
            metadata=grant.metadata,
        )


class RolePermissionsUpdateRequest(BaseModel):
    permissions: List[PermissionModel]


class RolePermissionsResponse(BaseModel):
    role: Role
    permissions: List[Dict[str, Any]]


class AuditLogResponse(BaseModel):
    entries: List[Dict[str, Any]]
    total: int

    @classmethod
    def from_entries(cls, entries: List[AuditLogEntry]) -> "AuditLogResponse":
        return cls(entries=[e.to_dict() for e in entries], total=len(entries))
