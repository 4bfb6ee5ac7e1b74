"""
Authorization service for HTTP callers.

Exposes the permission engine as a policy decision point: other services
post a user, resource and action and act on the returned decision.
"""

from typing import Dict, Optional

from fastapi import Depends, Query

from shared.base_service import BaseService
from .config import AuthorizationConfig, get_authorization_config
from .dependencies import require
from .permissions.models import AuthenticatedUser, Role
from .permissions.requirements import RoleRequirement
from .schemas import (
    AccessQueryRequest, AccessQueryResponse, AuditLogResponse, DynamicPermissionResponse,
    GrantRequest, PermissionCheckRequest, PermissionCheckResponse, ResourceAccessRequest,
    ResourceAccessResponse, RolePermissionsResponse, RolePermissionsUpdateRequest,
)
from .service import AuthorizationService, build_authorization_service


class AuthorizationHTTPService(BaseService):
    """Authorization service implementation."""

    def __init__(
        self,
        config: Optional[AuthorizationConfig] = None,
        authorization: Optional[AuthorizationService] = None,
    ):
        config = config or get_authorization_config()
        super().__init__("authorization", config.port, config)
        self.authorization = authorization or build_authorization_service(config, self.metrics)
        self._setup_authorization_routes()

    def _setup_authorization_routes(self):
        """Set up authorization-specific routes."""
        admin_only = require(self.authorization, RoleRequirement((Role.ADMIN,)))

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "authorization",
                "message": "Authorization Service",
                "version": "1.0.0",
                "capabilities": ["permission_checks", "resource_guards", "dynamic_grants", "caching", "audit"]
            }

        @self.app.post("/authorization/check", response_model=PermissionCheckResponse)
        async def check_permission(request: PermissionCheckRequest):
            """Decide whether a user may perform an action."""
            result = await self.authorization.check_permission(
                request.user.to_user(),
                request.resource,
                request.action,
                resource_id=request.resource_id,
                context=request.context,
            )
            return PermissionCheckResponse.from_result(result)

        @self.app.post("/authorization/resource-access", response_model=ResourceAccessResponse)
        async def resource_access(request: ResourceAccessRequest):
            """Decide access to a single resource instance."""
            allowed = self.authorization.can_access_resource(
                request.user.to_user(),
                request.resource,
                request.resource_id,
                request.action,
                request.resource_data,
            )
            return ResourceAccessResponse(
                allowed=allowed,
                resource=request.resource,
                resource_id=request.resource_id,
                action=request.action
            )

        @self.app.post("/authorization/access-query", response_model=AccessQueryResponse)
        async def access_query(request: AccessQueryRequest):
            """Data-layer filter for the records a user may see."""
            query = self.authorization.build_access_query(request.user.to_user(), request.resource, request.action)
            return AccessQueryResponse(resource=request.resource, action=request.action, query=query)

        @self.app.post("/authorization/grants", response_model=DynamicPermissionResponse, status_code=201)
        async def grant_permission(request: GrantRequest, admin: AuthenticatedUser = Depends(admin_only)):
            """Grant a temporary permission to a user."""
            grant = await self.authorization.grant_dynamic_permission(
                request.user_id,
                request.permission.to_permission(),
                granted_by=admin.id,
                expires_at=request.expires_at,
                metadata=request.metadata,
            )
            return DynamicPermissionResponse.from_grant(grant)

        @self.app.get("/authorization/users/{user_id}/grants")
        async def list_grants(user_id: str, admin: AuthenticatedUser = Depends(admin_only)):
            """Active dynamic grants held by a user."""
            grants = self.authorization.get_dynamic_permissions(user_id)
            return {"user_id": user_id, "grants": [DynamicPermissionResponse.from_grant(g) for g in grants]}

        @self.app.delete("/authorization/users/{user_id}/grants/{resource}/{action}")
        async def revoke_permission(
            user_id: str,
            resource: str,
            action: str,
            admin: AuthenticatedUser = Depends(admin_only)
        ):
            """Revoke matching dynamic grants."""
            removed = await self.authorization.revoke_dynamic_permission(user_id, resource, action, revoked_by=admin.id)
            return {"user_id": user_id, "resource": resource, "action": action, "removed": removed}

        @self.app.delete("/authorization/users/{user_id}/grants")
        async def clear_grants(user_id: str, admin: AuthenticatedUser = Depends(admin_only)):
            """Remove every dynamic grant held by a user."""
            removed = await self.authorization.clear_user_dynamic_permissions(user_id, cleared_by=admin.id)
            return {"user_id": user_id, "removed": removed}

        @self.app.get("/authorization/roles/{role}/permissions", response_model=RolePermissionsResponse)
        async def get_role_permissions(role: Role):
            """Catalog row for a role."""
            permissions = self.authorization.get_role_permissions(role)
            return RolePermissionsResponse(role=role, permissions=[p.to_dict() for p in permissions])

        @self.app.put("/authorization/roles/{role}/permissions", response_model=RolePermissionsResponse)
        async def update_role_permissions(
            role: Role,
            request: RolePermissionsUpdateRequest,
            admin: AuthenticatedUser = Depends(admin_only)
        ):
            """Replace the catalog row for a role."""
            permissions = await self.authorization.update_role_permissions(
                role,
                [p.to_permission() for p in request.permissions],
                updated_by=admin.id,
            )
            return RolePermissionsResponse(role=role, permissions=[p.to_dict() for p in permissions])

        @self.app.get("/authorization/matrix")
        async def permission_matrix() -> Dict[str, Dict[str, list]]:
            """Role by resource by action overview."""
            return self.authorization.get_permission_matrix()

        @self.app.get("/authorization/audit/users/{user_id}", response_model=AuditLogResponse)
        async def audit_for_user(
            user_id: str,
            limit: int = Query(100, ge=1, le=1000),
            admin: AuthenticatedUser = Depends(admin_only)
        ):
            """Audit entries recorded for a user."""
            entries = await self.authorization.get_audit_logs_for_user(user_id, limit=limit)
            return AuditLogResponse.from_entries(entries)

        @self.app.get("/authorization/audit/resources/{resource}", response_model=AuditLogResponse)
        async def audit_for_resource(
            resource: str,
            resource_id: Optional[str] = Query(None),
            limit: int = Query(100, ge=1, le=1000),
            admin: AuthenticatedUser = Depends(admin_only)
        ):
            """Audit entries recorded against a resource."""
            entries = await self.authorization.get_audit_logs_for_resource(resource, resource_id, limit=limit)
            return AuditLogResponse.from_entries(entries)

        @self.app.get("/authorization/audit/security-events", response_model=AuditLogResponse)
        async def security_events(
            limit: int = Query(100, ge=1, le=1000),
            admin: AuthenticatedUser = Depends(admin_only)
        ):
            """Security events such as rejected role requirements."""
            entries = await self.authorization.get_security_events(limit=limit)
            return AuditLogResponse.from_entries(entries)

        @self.app.post("/authorization/audit/cleanup")
        async def cleanup_audit(admin: AuthenticatedUser = Depends(admin_only)):
            """Apply the configured retention period."""
            removed = await self.authorization.cleanup_old_logs(self.config.audit_retention_days)
            return {"removed": removed, "retention_days": self.config.audit_retention_days}

        @self.app.get("/authorization/cache/stats")
        async def cache_stats():
            """Decision cache statistics."""
            return await self.authorization.get_cache_stats()

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check service dependencies."""
        healthy = await self.authorization.cache.backend.health_check()
        return {"cache": "ok" if healthy else "error"}

    async def start(self):
        """Start the service."""
        await self.authorization.start()
        self.logger.info("Authorization service started")

    async def stop(self):
        """Stop the service."""
        await self.authorization.shutdown()
        self.logger.info("Authorization service stopped")


def create_app():
    """Create FastAPI application."""
    service = AuthorizationHTTPService()
    return service.app


if __name__ == "__main__":
    service = AuthorizationHTTPService()
    service.run()
