"""
Authorization facade.
"""

import time
from datetime import datetime
from typing import Dict, Any, Iterable, List, Optional, Tuple

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from .audit.logger import AuditLogger
from .audit.models import AuditLevel, AuditLogEntry, AuditResult, RequestMeta
from .audit.sinks import AuditSink, JsonLinesAuditSink, MemoryAuditSink, PostgresAuditSink
from .cache.backends import CacheBackend, MemoryCacheBackend, RedisCacheBackend
from .cache.permission_cache import PermissionCache
from .config import AuthorizationConfig
from .errors import (
    AuthorizationError, AuthorizationErrorCode, CacheBackendError,
    create_authorization_error,
)
from .guard.resource_guard import ResourceGuard
from .permissions.conditions import ConditionEvaluator
from .permissions.manager import PermissionManager, REASON_SUPER_ADMIN
from .permissions.models import (
    AuthenticatedUser, CheckOptions, DynamicPermission, Permission,
    PermissionCheckResult, Role, UserPermissions, format_permission,
    has_role_level, is_super_admin,
)
from .permissions.requirements import (
    AllPermissionsRequirement, AnyPermissionRequirement, MinimumRoleRequirement,
    PermissionRequirement, Requirement, ResourceAccessRequirement, RoleRequirement,
)


REASON_RESOURCE_DENIED = "resource access denied"

PermissionSpec = Tuple[str, str]


class AuthorizationService:
    """Entry point for permission checks and grant management.

    A check goes cache lookup, then the permission manager (and the
    resource guard when a resource id is given for a guarded resource),
    then cache store, then an audit entry. Cache failures fall back to
    direct evaluation; audit failures never reach the caller.
    """

    def __init__(
        self,
        permission_manager: Optional[PermissionManager] = None,
        resource_guard: Optional[ResourceGuard] = None,
        cache: Optional[PermissionCache] = None,
        audit_logger: Optional[AuditLogger] = None,
        allow_super_admin: bool = True,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.logger = get_logger("authorization.service")
        self.permission_manager = permission_manager or PermissionManager()
        self.resource_guard = resource_guard or ResourceGuard(self.permission_manager)
        self.cache = cache or PermissionCache()
        self.audit = audit_logger or AuditLogger()
        self.allow_super_admin = allow_super_admin
        self.metrics = metrics

    async def start(self):
        await self.cache.start()
        await self.audit.start()
        self.audit.log_system_event("authorization_started")
        self.logger.info("Authorization service started")

    async def shutdown(self):
        self.audit.log_system_event("authorization_stopped")
        await self.audit.shutdown()
        await self.cache.stop()
        self.logger.info("Authorization service stopped")

    @staticmethod
    def _require_user(user: Optional[AuthenticatedUser]) -> AuthenticatedUser:
        if user is None:
            raise create_authorization_error(AuthorizationErrorCode.UNAUTHORIZED)
        return user

    def _default_options(self) -> CheckOptions:
        return CheckOptions(allow_super_admin=self.allow_super_admin)

    # Decisions

    async def check_permission(
        self,
        user: Optional[AuthenticatedUser],
        resource: str,
        action: str,
        resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        options: Optional[CheckOptions] = None,
        request: Optional[RequestMeta] = None,
    ) -> PermissionCheckResult:
        """Decide and audit one ``(resource, action)`` check.

        A denial is returned as ``allowed=False``. Unexpected failures are
        audited and raised as FORBIDDEN.
        """
        user = self._require_user(user)
        options = options or self._default_options()
        start_time = time.time()
        # Decisions cached under the service default only.
        use_cache = options.allow_super_admin == self.allow_super_admin

        try:
            key = self.cache.check_key(user, resource, action, resource_id, context)

            cached = None
            if use_cache:
                try:
                    cached = await self.cache.get_check_result(key)
                except CacheBackendError as e:
                    self.logger.warning("Cache lookup failed, evaluating directly", error=e.message)

            if cached is not None:
                self._record_decision(cached, "cache", start_time)
                if options.log_access:
                    self.audit.log_authorization(
                        user.id, resource, action, cached.allowed,
                        reason=cached.reason, resource_id=resource_id,
                        context=context, request=request, metadata={"cache_hit": True}
                    )
                return cached

            generation = self.cache.generation(user.id, user.role)
            result = self._evaluate(user, resource, action, resource_id, context, options)

            if use_cache:
                try:
                    await self.cache.set_check_result(key, result, user=user, generation=generation)
                except CacheBackendError as e:
                    self.logger.warning("Cache store failed", error=e.message)

            self._record_decision(result, "computed", start_time)
            if options.log_access:
                self.audit.log_authorization(
                    user.id, resource, action, result.allowed,
                    reason=result.reason, resource_id=resource_id,
                    context=context, request=request, metadata={"cache_hit": False}
                )
            return result

        except AuthorizationError:
            raise
        except Exception as e:
            self.logger.error(
                "Permission check failed",
                user_id=user.id,
                resource=resource,
                action=action,
                error=str(e),
                exc_info=True
            )
            self.audit.log_access(AuditLogEntry(
                user_id=user.id,
                action="permission_check_error",
                resource=resource,
                resource_id=resource_id,
                result=AuditResult.DENIED,
                reason=str(e),
                context=context,
            ), request)
            raise create_authorization_error(
                AuthorizationErrorCode.FORBIDDEN,
                {"resource": resource, "action": action}
            ) from e

    def _evaluate(
        self,
        user: AuthenticatedUser,
        resource: str,
        action: str,
        resource_id: Optional[str],
        context: Optional[Dict[str, Any]],
        options: CheckOptions,
    ) -> PermissionCheckResult:
        result = self.permission_manager.check_permission(user, resource, action, resource_id, context, options)

        if (
            result.allowed
            and result.reason != REASON_SUPER_ADMIN
            and resource_id is not None
            and self.resource_guard.has_guard(resource)
        ):
            resource_data = ConditionEvaluator.resource_snapshot(context)
            if not self.resource_guard.can_access_resource(user, resource, resource_id, action, resource_data):
                return PermissionCheckResult(
                    allowed=False,
                    reason=REASON_RESOURCE_DENIED,
                    evaluated_conditions=result.evaluated_conditions,
                    evaluation_time_ms=result.evaluation_time_ms
                )
        return result

    def _record_decision(self, result: PermissionCheckResult, source: str, start_time: float):
        if self.metrics is None:
            return
        decision = "allow" if result.allowed else "deny"
        self.metrics.increment_counter("authorization_checks_total", decision=decision, source=source)
        self.metrics.observe_histogram("authorization_check_duration_seconds", time.time() - start_time)

    def has_permission(
        self,
        user: Optional[AuthenticatedUser],
        resource: str,
        action: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        user = self._require_user(user)
        options = self._default_options()
        return self.permission_manager.check_permission(user, resource, action, context=context, options=options).allowed

    def has_any_permission(
        self,
        user: Optional[AuthenticatedUser],
        permissions: Iterable[PermissionSpec],
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        return any(self.has_permission(user, r, a, context) for r, a in permissions)

    def get_missing_permissions(
        self,
        user: Optional[AuthenticatedUser],
        permissions: Iterable[PermissionSpec],
        context: Optional[Dict[str, Any]] = None,
    ) -> List[PermissionSpec]:
        return [(r, a) for r, a in permissions if not self.has_permission(user, r, a, context)]

    def has_all_permissions(
        self,
        user: Optional[AuthenticatedUser],
        permissions: Iterable[PermissionSpec],
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        return not self.get_missing_permissions(user, permissions, context)

    def can_access_resource(
        self,
        user: Optional[AuthenticatedUser],
        resource: str,
        resource_id: str,
        action: str,
        resource_data: Any = None,
        request: Optional[RequestMeta] = None,
    ) -> bool:
        """Resource-instance check, audited like any other decision."""
        user = self._require_user(user)
        if self.allow_super_admin and is_super_admin(user.role):
            allowed = True
        else:
            allowed = self.resource_guard.can_access_resource(user, resource, resource_id, action, resource_data)
        self.audit.log_authorization(
            user.id, resource, action, allowed,
            reason="resource access granted" if allowed else REASON_RESOURCE_DENIED,
            resource_id=resource_id, request=request,
            metadata={"check": "resource_access"}
        )
        return allowed

    def filter_accessible_resources(
        self,
        user: Optional[AuthenticatedUser],
        resource: str,
        records: Iterable[Any],
        action: str = "read",
    ) -> List[Any]:
        user = self._require_user(user)
        if self.allow_super_admin and is_super_admin(user.role):
            return list(records)
        return self.resource_guard.filter_accessible_resources(user, resource, records, action)

    def build_access_query(self, user: Optional[AuthenticatedUser], resource: str, action: str) -> Dict[str, Any]:
        user = self._require_user(user)
        if self.allow_super_admin and is_super_admin(user.role):
            return {}
        return self.resource_guard.build_access_query(user, resource, action)

    async def get_user_permissions(self, user: Optional[AuthenticatedUser]) -> UserPermissions:
        """Role and dynamic permissions held by ``user``, cached as a snapshot."""
        user = self._require_user(user)
        try:
            cached = await self.cache.get_cached_user_permissions(user.id, user.role)
        except CacheBackendError as e:
            self.logger.warning("Cache lookup failed, evaluating directly", error=e.message)
            cached = None
        if cached is not None:
            return cached

        generation = self.cache.generation(user.id, user.role)
        snapshot = self.permission_manager.get_user_permissions(user)
        try:
            await self.cache.cache_user_permissions(snapshot, generation=generation)
        except CacheBackendError as e:
            self.logger.warning("Cache store failed", error=e.message)
        return snapshot

    # Dynamic grants

    def _validate_or_raise(self, permissions: Iterable[Permission]):
        problems: List[Dict[str, Any]] = []
        for index, permission in enumerate(permissions):
            errors = self.permission_manager.validate_permission(permission)
            if errors:
                problems.append({"index": index, "permission": permission.to_dict(), "errors": errors})
        if problems:
            raise AuthorizationError(
                AuthorizationErrorCode.INVALID_PERMISSION,
                details={"invalid_permissions": problems}
            )

    async def grant_dynamic_permission(
        self,
        target_user_id: str,
        permission: Permission,
        granted_by: str,
        expires_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> DynamicPermission:
        """Grant a temporary permission, invalidating the user's cached decisions."""
        self._validate_or_raise([permission])
        if expires_at is not None and expires_at <= self.permission_manager.clock():
            raise AuthorizationError(
                AuthorizationErrorCode.PERMISSION_EXPIRED,
                details={"expires_at": expires_at.isoformat()}
            )

        grant = self.permission_manager.add_dynamic_permission(
            target_user_id, permission, granted_by, expires_at, metadata
        )
        audit_context = {
            "target_user_id": target_user_id,
            "permission": format_permission(permission),
            "expires_at": expires_at.isoformat() if expires_at else None,
            "grant_id": grant.id,
        }
        try:
            await self.cache.invalidate_user_permissions(target_user_id)
        except CacheBackendError as e:
            # Cached decisions predate the grant.
            self.permission_manager.remove_dynamic_permission_by_id(target_user_id, grant.id)
            self.logger.error(
                "Grant rolled back after cache invalidation failed",
                user_id=target_user_id,
                grant_id=grant.id,
                error=e.message
            )
            self.audit.log_access(AuditLogEntry(
                user_id=granted_by,
                action="grant_dynamic_permission",
                resource="permissions",
                resource_id=target_user_id,
                result=AuditResult.DENIED,
                reason="rolled back: cache invalidation failed",
                context=audit_context,
            ))
            raise

        self.audit.log_access(AuditLogEntry(
            user_id=granted_by,
            action="grant_dynamic_permission",
            resource="permissions",
            resource_id=target_user_id,
            result=AuditResult.GRANTED,
            context=audit_context,
        ))
        return grant

    async def revoke_dynamic_permission(
        self,
        target_user_id: str,
        resource: str,
        action: str,
        revoked_by: str,
    ) -> int:
        """Remove matching grants; returns how many were removed.

        The removal is audited before the cache is invalidated and stays in
        force even when invalidation fails.
        """
        removed = self.permission_manager.remove_dynamic_permission(target_user_id, resource, action)

        self.audit.log_access(AuditLogEntry(
            user_id=revoked_by,
            action="revoke_dynamic_permission",
            resource="permissions",
            resource_id=target_user_id,
            result=AuditResult.GRANTED,
            context={
                "target_user_id": target_user_id,
                "permission": f"{resource}:{action}",
                "removed": removed,
            },
        ))
        await self.cache.invalidate_user_permissions(target_user_id)
        return removed

    async def clear_user_dynamic_permissions(self, target_user_id: str, cleared_by: str) -> int:
        removed = self.permission_manager.clear_dynamic_permissions(target_user_id)

        self.audit.log_access(AuditLogEntry(
            user_id=cleared_by,
            action="clear_dynamic_permissions",
            resource="permissions",
            resource_id=target_user_id,
            result=AuditResult.GRANTED,
            context={"target_user_id": target_user_id, "removed": removed},
        ))
        await self.cache.invalidate_user_permissions(target_user_id)
        return removed

    def get_dynamic_permissions(self, user_id: str) -> List[DynamicPermission]:
        return self.permission_manager.get_dynamic_permissions(user_id)

    # Role catalog

    def get_role_permissions(self, role: Role) -> List[Permission]:
        return self.permission_manager.get_role_permissions(Role(role))

    async def update_role_permissions(
        self,
        role: Role,
        permissions: Iterable[Permission],
        updated_by: str,
    ) -> List[Permission]:
        """Replace a role's catalog row after validating every entry."""
        role = Role(role)
        permissions = list(permissions)
        self._validate_or_raise(permissions)

        previous = self.permission_manager.get_role_permissions(role)
        self.permission_manager.set_role_permissions(role, permissions)
        audit_context = {
            "role": role.value,
            "permission_count": len(permissions),
            "permissions": [format_permission(p) for p in permissions],
        }
        try:
            await self.cache.invalidate_role_permissions(role)
        except CacheBackendError as e:
            self.permission_manager.set_role_permissions(role, previous)
            self.logger.error(
                "Role update rolled back after cache invalidation failed",
                role=role.value,
                error=e.message
            )
            self.audit.log_access(AuditLogEntry(
                user_id=updated_by,
                action="update_role_permissions",
                resource="roles",
                resource_id=role.value,
                result=AuditResult.DENIED,
                reason="rolled back: cache invalidation failed",
                context=audit_context,
            ))
            raise

        self.audit.log_access(AuditLogEntry(
            user_id=updated_by,
            action="update_role_permissions",
            resource="roles",
            resource_id=role.value,
            result=AuditResult.GRANTED,
            context=audit_context,
        ))
        return permissions

    def get_permission_matrix(self) -> Dict[str, Dict[str, List[str]]]:
        return self.permission_manager.get_permission_matrix()

    def validate_permission(self, permission: Permission) -> List[str]:
        return self.permission_manager.validate_permission(permission)

    # Requirements

    async def enforce(
        self,
        requirement: Requirement,
        user: Optional[AuthenticatedUser],
        resource_id: Optional[str] = None,
        resource_data: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
        request: Optional[RequestMeta] = None,
    ) -> None:
        """Raise AuthorizationError unless ``user`` satisfies ``requirement``."""
        user = self._require_user(user)

        if isinstance(requirement, RoleRequirement):
            if user.role not in requirement.roles:
                self._reject_role(user, [r.value for r in requirement.roles], request)

        elif isinstance(requirement, MinimumRoleRequirement):
            if not has_role_level(user.role, requirement.role):
                self._reject_role(user, [requirement.role.value], request)

        elif isinstance(requirement, PermissionRequirement):
            result = await self.check_permission(
                user, requirement.resource, requirement.action, context=context, request=request
            )
            if not result.allowed:
                raise AuthorizationError(
                    AuthorizationErrorCode.INSUFFICIENT_PERMISSION,
                    details={
                        "missing_permissions": [f"{requirement.resource}:{requirement.action}"],
                        "reason": result.reason,
                    }
                )

        elif isinstance(requirement, AnyPermissionRequirement):
            for resource, action in requirement.permissions:
                result = await self.check_permission(user, resource, action, context=context, request=request)
                if result.allowed:
                    return
            raise AuthorizationError(
                AuthorizationErrorCode.INSUFFICIENT_PERMISSION,
                details={"required_any": [f"{r}:{a}" for r, a in requirement.permissions]}
            )

        elif isinstance(requirement, AllPermissionsRequirement):
            missing = []
            for resource, action in requirement.permissions:
                result = await self.check_permission(user, resource, action, context=context, request=request)
                if not result.allowed:
                    missing.append(f"{resource}:{action}")
            if missing:
                raise AuthorizationError(
                    AuthorizationErrorCode.INSUFFICIENT_PERMISSION,
                    details={"missing_permissions": missing}
                )

        elif isinstance(requirement, ResourceAccessRequirement):
            if resource_id is None:
                raise create_authorization_error(AuthorizationErrorCode.RESOURCE_NOT_FOUND)
            check_context = dict(context or {})
            check_context.update(resource_data or {})
            result = await self.check_permission(
                user, requirement.resource, requirement.action,
                resource_id=resource_id, context=check_context, request=request
            )
            if not result.allowed:
                raise create_authorization_error(AuthorizationErrorCode.RESOURCE_NOT_FOUND)

        else:
            raise ValueError(f"Unsupported requirement: {requirement!r}")

    def _reject_role(self, user: AuthenticatedUser, required: List[str], request: Optional[RequestMeta]):
        self.audit.log_security_event(
            user.id, "insufficient_role",
            reason=f"role {user.role.value} not in {required}",
            context={"required_roles": required},
            request=request
        )
        raise AuthorizationError(
            AuthorizationErrorCode.INSUFFICIENT_ROLE,
            details={"required_roles": required, "user_role": user.role.value}
        )

    # Reporting

    async def get_audit_logs_for_user(self, user_id: str, limit: int = 100) -> List[AuditLogEntry]:
        return await self.audit.get_audit_logs_for_user(user_id, limit=limit)

    async def get_audit_logs_for_resource(
        self,
        resource: str,
        resource_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]:
        return await self.audit.get_audit_logs_for_resource(resource, resource_id, limit=limit)

    async def get_security_events(self, limit: int = 100) -> List[AuditLogEntry]:
        return await self.audit.get_security_events(limit=limit)

    async def cleanup_old_logs(self, retention_days: int = 365) -> int:
        return await self.audit.cleanup_old_logs(retention_days)

    async def get_cache_stats(self) -> Dict[str, Any]:
        return await self.cache.get_stats()


def _build_cache_backend(config: AuthorizationConfig) -> CacheBackend:
    if config.cache_backend == "redis":
        return RedisCacheBackend(config.redis_url)
    return MemoryCacheBackend(max_size=config.cache_max_size)


def _build_audit_sink(config: AuthorizationConfig) -> AuditSink:
    if config.audit_sink == "postgres":
        return PostgresAuditSink(config.postgres_dsn)
    if config.audit_sink == "file":
        return JsonLinesAuditSink(config.audit_log_path)
    return MemoryAuditSink()


def build_authorization_service(
    config: AuthorizationConfig,
    metrics: Optional[MetricsCollector] = None,
) -> AuthorizationService:
    """Wire every component from configuration."""
    manager = PermissionManager()
    cache = PermissionCache(
        backend=_build_cache_backend(config),
        enabled=config.cache_enabled,
        default_ttl=config.permission_ttl,
        user_permission_ttl=config.user_permission_ttl,
        timeout=config.cache_timeout_ms / 1000.0,
        metrics=metrics,
    )
    audit_logger = AuditLogger(
        sink=_build_audit_sink(config),
        enabled=config.audit_enabled,
        batch_size=config.audit_batch_size,
        flush_interval=config.audit_flush_interval,
        max_queue_size=config.audit_max_queue_size,
        write_timeout=config.audit_write_timeout,
        level=AuditLevel(config.audit_level),
        sensitive_fields=config.audit_sensitive_fields,
        metrics=metrics,
    )
    return AuthorizationService(
        permission_manager=manager,
        resource_guard=ResourceGuard(manager),
        cache=cache,
        audit_logger=audit_logger,
        allow_super_admin=config.allow_super_admin_bypass,
        metrics=metrics,
    )
