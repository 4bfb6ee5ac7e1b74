"""
Permission decision engine.
"""

import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Dict, Any, Callable, Iterable, List, Optional, Tuple

from shared.logging import get_logger
from .catalog import PermissionCatalog
from .conditions import ConditionEvaluator
from .models import (
    AuthenticatedUser, CheckOptions, ConditionResult, DynamicPermission,
    Permission, PermissionCheckResult, Role, UserPermissions,
    is_super_admin, validate_permission_structure,
)


REASON_SUPER_ADMIN = "super admin"
REASON_NO_MATCH = "no matching permissions"
REASON_GRANTED = "permission granted"
REASON_CONDITIONS_NOT_MET = "permission conditions not met"

PermissionSpec = Tuple[str, str]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PermissionManager:
    """Combines role permissions and per-user dynamic grants into decisions.

    Candidates are the role's catalog rows followed by the user's
    unexpired dynamic grants, in that order. The first candidate whose
    conditions all hold allows the action; there is no priority system.
    """

    def __init__(
        self,
        catalog: Optional[PermissionCatalog] = None,
        evaluator: Optional[ConditionEvaluator] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.logger = get_logger("authorization.permission_manager")
        self.catalog = catalog or PermissionCatalog()
        self.evaluator = evaluator or ConditionEvaluator()
        self.clock = clock
        self._dynamic: Dict[str, List[DynamicPermission]] = {}
        self._lock = threading.RLock()

    def check_permission(
        self,
        user: AuthenticatedUser,
        resource: str,
        action: str,
        resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        options: Optional[CheckOptions] = None,
    ) -> PermissionCheckResult:
        """Decide whether ``user`` may perform ``action`` on ``resource``."""
        start_time = time.time()
        options = options or CheckOptions()

        if options.allow_super_admin and is_super_admin(user.role):
            return PermissionCheckResult(
                allowed=True,
                reason=REASON_SUPER_ADMIN,
                evaluation_time_ms=(time.time() - start_time) * 1000
            )

        candidates = [
            permission for permission in self._collect_candidates(user)
            if permission.matches(resource, action)
        ]

        if not candidates:
            return PermissionCheckResult(
                allowed=False,
                reason=REASON_NO_MATCH,
                evaluation_time_ms=(time.time() - start_time) * 1000
            )

        evaluated: List[ConditionResult] = []
        for permission in candidates:
            if not permission.conditions:
                return PermissionCheckResult(
                    allowed=True,
                    reason=REASON_GRANTED,
                    applied_permissions=[permission],
                    evaluation_time_ms=(time.time() - start_time) * 1000
                )

            passed, results = self.evaluator.evaluate_all(permission.conditions, context, user=user)
            evaluated.extend(results)
            if passed:
                return PermissionCheckResult(
                    allowed=True,
                    reason=REASON_GRANTED,
                    evaluated_conditions=results,
                    applied_permissions=[permission],
                    evaluation_time_ms=(time.time() - start_time) * 1000
                )

        self.logger.debug(
            "Permission conditions not met",
            user_id=user.id,
            resource=resource,
            action=action,
            resource_id=resource_id,
            candidates=len(candidates)
        )

        return PermissionCheckResult(
            allowed=False,
            reason=REASON_CONDITIONS_NOT_MET,
            evaluated_conditions=evaluated,
            evaluation_time_ms=(time.time() - start_time) * 1000
        )

    def has_permission(
        self,
        user: AuthenticatedUser,
        resource: str,
        action: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        return self.check_permission(user, resource, action, context=context).allowed

    def has_any_permission(
        self,
        user: AuthenticatedUser,
        permissions: Iterable[PermissionSpec],
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """True as soon as one ``(resource, action)`` pair is allowed."""
        return any(
            self.has_permission(user, resource, action, context)
            for resource, action in permissions
        )

    def has_all_permissions(
        self,
        user: AuthenticatedUser,
        permissions: Iterable[PermissionSpec],
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        return not self.get_missing_permissions(user, permissions, context)

    def get_missing_permissions(
        self,
        user: AuthenticatedUser,
        permissions: Iterable[PermissionSpec],
        context: Optional[Dict[str, Any]] = None,
    ) -> List[PermissionSpec]:
        """Every requested pair that is denied; all pairs are evaluated."""
        return [
            (resource, action) for resource, action in permissions
            if not self.has_permission(user, resource, action, context)
        ]

    def _collect_candidates(self, user: AuthenticatedUser) -> List[Permission]:
        candidates = list(self.catalog.get(user.role))
        candidates.extend(grant.permission for grant in self.get_dynamic_permissions(user.id))
        return candidates

    # Dynamic grants

    def add_dynamic_permission(
        self,
        user_id: str,
        permission: Permission,
        granted_by: str,
        expires_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> DynamicPermission:
        """Attach a temporary grant to ``user_id``."""
        grant = DynamicPermission(
            id=str(uuid.uuid4()),
            user_id=user_id,
            permission=permission,
            granted_by=granted_by,
            granted_at=self.clock(),
            expires_at=expires_at,
            metadata=dict(metadata or {}),
        )
        with self._lock:
            self._dynamic.setdefault(user_id, []).append(grant)

        self.logger.info(
            "Dynamic permission added",
            user_id=user_id,
            permission=permission.key,
            granted_by=granted_by,
            expires_at=expires_at.isoformat() if expires_at else None
        )
        return grant

    def remove_dynamic_permission(self, user_id: str, resource: str, action: str) -> int:
        """Drop grants whose resource and action match exactly; returns how many."""
        with self._lock:
            grants = self._dynamic.get(user_id, [])
            kept = [
                g for g in grants
                if not (g.permission.resource == resource and g.permission.action == action)
            ]
            removed = len(grants) - len(kept)
            if kept:
                self._dynamic[user_id] = kept
            else:
                self._dynamic.pop(user_id, None)

        if removed:
            self.logger.info("Dynamic permission removed", user_id=user_id, resource=resource, action=action)
        return removed

    def remove_dynamic_permission_by_id(self, user_id: str, grant_id: str) -> bool:
        """Drop the single grant ``grant_id``; other grants for the same permission stay."""
        with self._lock:
            grants = self._dynamic.get(user_id, [])
            kept = [g for g in grants if g.id != grant_id]
            removed = len(kept) != len(grants)
            if kept:
                self._dynamic[user_id] = kept
            else:
                self._dynamic.pop(user_id, None)

        if removed:
            self.logger.info("Dynamic permission removed", user_id=user_id, grant_id=grant_id)
        return removed

    def clear_dynamic_permissions(self, user_id: str) -> int:
        with self._lock:
            removed = len(self._dynamic.pop(user_id, []))
        if removed:
            self.logger.info("Dynamic permissions cleared", user_id=user_id, count=removed)
        return removed

    def get_dynamic_permissions(self, user_id: str, include_expired: bool = False) -> List[DynamicPermission]:
        """Grants held by ``user_id``. Expired grants stay stored but are skipped here."""
        with self._lock:
            grants = list(self._dynamic.get(user_id, []))
        if include_expired:
            return grants
        now = self.clock()
        return [g for g in grants if not g.is_expired(now)]

    def get_user_permissions(self, user: AuthenticatedUser) -> UserPermissions:
        return UserPermissions(
            user_id=user.id,
            role=user.role,
            role_permissions=list(self.catalog.get(user.role)),
            dynamic_permissions=self.get_dynamic_permissions(user.id),
        )

    # Role management

    def get_role_permissions(self, role: Role) -> List[Permission]:
        return list(self.catalog.get(role))

    def set_role_permissions(self, role: Role, permissions: Iterable[Permission]) -> None:
        self.catalog.replace(role, permissions)

    def add_role_permission(self, role: Role, permission: Permission) -> bool:
        return self.catalog.add(role, permission)

    def remove_role_permission(self, role: Role, resource: str, action: str) -> int:
        return self.catalog.remove(role, resource, action)

    def get_permission_matrix(self) -> Dict[str, Dict[str, List[str]]]:
        return self.catalog.matrix()

    @staticmethod
    def validate_permission(permission: Permission) -> List[str]:
        return validate_permission_structure(permission)
