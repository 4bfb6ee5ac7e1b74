"""
Resource-instance access control and data-layer filter construction.
"""

import json
import re
from collections.abc import Mapping
from typing import Dict, Any, Iterable, List, Optional, Set, Tuple

from shared.logging import get_logger
from ..permissions.catalog import get_ownership_field
from ..permissions.conditions import ConditionEvaluator, MISSING, get_value_from_path, strict_equals
from ..permissions.manager import PermissionManager
from ..permissions.models import (
    AuthenticatedUser, Condition, ConditionOperator, ResourceRef,
)
from .models import (
    InheritanceRule, Relationship, RelationshipResolver, ResourceGuardConfig,
    default_guard_configs,
)


# Matches no record: every stored record carries an id.
DENY_ALL: Dict[str, Any] = {"id": None}

_OPERATOR_KEYS = {
    ConditionOperator.NE: "$ne",
    ConditionOperator.IN: "$in",
    ConditionOperator.NIN: "$nin",
    ConditionOperator.GT: "$gt",
    ConditionOperator.GTE: "$gte",
    ConditionOperator.LT: "$lt",
    ConditionOperator.LTE: "$lte",
}
_QUERY_OPERATORS = {key: op for op, key in _OPERATOR_KEYS.items()}


def deny_all() -> Dict[str, Any]:
    return dict(DENY_ALL)


def _predicate_fingerprint(predicate: Dict[str, Any]) -> str:
    return json.dumps(predicate, sort_keys=True, default=str)


def matches_query(
    predicate: Dict[str, Any],
    record: Any,
    evaluator: Optional[ConditionEvaluator] = None,
) -> bool:
    """Evaluate a predicate produced by ``build_access_query`` against one record.

    Supports ``$or``/``$and`` plus the field operators the builder emits.
    An empty predicate matches everything.
    """
    evaluator = evaluator or ConditionEvaluator()

    for key, expected in predicate.items():
        if key == "$or":
            if not any(matches_query(p, record, evaluator) for p in expected):
                return False
            continue
        if key == "$and":
            if not all(matches_query(p, record, evaluator) for p in expected):
                return False
            continue

        if isinstance(expected, Mapping) and any(k.startswith("$") for k in expected):
            if not _matches_operators(key, expected, record, evaluator):
                return False
        else:
            actual = get_value_from_path(record, key)
            if expected is None:
                if actual is not None:
                    return False
            elif not strict_equals(actual, expected):
                return False
    return True


def _matches_operators(
    field_name: str,
    expression: Mapping,
    record: Any,
    evaluator: ConditionEvaluator,
) -> bool:
    for op_key, value in expression.items():
        if op_key == "$options":
            continue
        if op_key == "$regex":
            actual = get_value_from_path(record, field_name)
            flags = re.IGNORECASE if "i" in expression.get("$options", "") else 0
            if not isinstance(actual, str) or not re.search(value, actual, flags):
                return False
        elif op_key == "$exists":
            present = evaluator.evaluate(Condition(field_name, ConditionOperator.EXISTS), record)
            if present != bool(value):
                return False
        elif op_key in _QUERY_OPERATORS:
            condition = Condition(field_name, _QUERY_OPERATORS[op_key], value)
            if not evaluator.evaluate(condition, record):
                return False
        else:
            return False
    return True


class ResourceGuard:
    """Instance-level authorization layered on the permission manager.

    For a resource with a registered config, access is granted by, in
    order: role bypass, ownership of the supplied record, a satisfied
    custom permission, then inheritance from a parent resource. Resources
    without a config defer to the permission manager.
    """

    def __init__(
        self,
        permission_manager: PermissionManager,
        evaluator: Optional[ConditionEvaluator] = None,
        relationship_resolver: Optional[RelationshipResolver] = None,
        configs: Optional[Iterable[ResourceGuardConfig]] = None,
    ):
        self.logger = get_logger("authorization.resource_guard")
        self.permission_manager = permission_manager
        self.evaluator = evaluator or permission_manager.evaluator
        self.relationship_resolver = relationship_resolver
        self._configs: Dict[str, ResourceGuardConfig] = {}
        for config in (default_guard_configs() if configs is None else configs):
            self.register_guard(config)

    def register_guard(self, config: ResourceGuardConfig) -> None:
        self._configs[config.resource] = config
        self.logger.info(
            "Resource guard registered",
            resource=config.resource,
            ownership_field=config.ownership_field,
            allowed_roles=[r.value for r in config.allowed_roles]
        )

    def get_guard_config(self, resource: str) -> Optional[ResourceGuardConfig]:
        return self._configs.get(resource)

    def has_guard(self, resource: str) -> bool:
        return resource in self._configs

    def can_access_resource(
        self,
        user: AuthenticatedUser,
        resource: str,
        resource_id: str,
        action: str,
        resource_data: Any = None,
    ) -> bool:
        """Decide access to one resource instance.

        Ownership is read from ``resource_data`` only; the guard never loads
        records by id.
        """
        allowed = self._can_access(user, resource, resource_id, action, resource_data, set())
        self.logger.debug(
            "Resource access evaluated",
            user_id=user.id,
            resource=resource,
            resource_id=resource_id,
            action=action,
            allowed=allowed
        )
        return allowed

    def _can_access(
        self,
        user: AuthenticatedUser,
        resource: str,
        resource_id: str,
        action: str,
        resource_data: Any,
        visited: Set[Tuple[str, str, str]],
    ) -> bool:
        marker = (resource, str(resource_id), action)
        if marker in visited:
            return False
        visited.add(marker)

        config = self._configs.get(resource)
        if config is None:
            return self.permission_manager.has_permission(user, resource, action, context=resource_data)

        if user.role in config.allowed_roles:
            return True

        if config.ownership_field and self.check_ownership(user, resource_data, config.ownership_field):
            return True

        for permission in config.custom_permissions:
            if not permission.matches(resource, action):
                continue
            passed, _ = self.evaluator.evaluate_all(
                permission.conditions, resource_data, user=user, resource_data=resource_data
            )
            if passed:
                return True

        for rule in config.inheritance_rules:
            if self._check_inheritance(user, resource, rule, resource_id, resource_data, visited):
                return True

        return False

    def _check_inheritance(
        self,
        user: AuthenticatedUser,
        resource: str,
        rule: InheritanceRule,
        resource_id: str,
        resource_data: Any,
        visited: Set[Tuple[str, str, str]],
    ) -> bool:
        parent_data = resource_data
        if isinstance(resource_data, Mapping) and isinstance(resource_data.get(rule.parent_resource), Mapping):
            parent_data = resource_data[rule.parent_resource]

        if not self._can_access(user, rule.parent_resource, resource_id, "read", parent_data, visited):
            return False

        # A rule condition stands in for the relationship check.
        if rule.condition is not None:
            return self.evaluator.evaluate(rule.condition, resource_data, user=user, resource_data=resource_data)

        if rule.relationship == Relationship.OWNER:
            parent_config = self._configs.get(rule.parent_resource)
            if parent_config is not None and parent_config.ownership_field:
                ownership_field = parent_config.ownership_field
            else:
                ownership_field = get_ownership_field(rule.parent_resource)
            return self.check_ownership(user, parent_data, ownership_field)

        if self.relationship_resolver is None:
            self.logger.debug(
                "No relationship resolver configured",
                resource=resource,
                parent_resource=rule.parent_resource,
                relationship=rule.relationship.value
            )
            return False

        return self.relationship_resolver.has_relationship(
            user, rule.relationship, rule.parent_resource, resource_id, parent_data
        )

    def check_ownership(self, user: AuthenticatedUser, resource_data: Any, ownership_field: str) -> bool:
        owner = get_value_from_path(resource_data, ownership_field)
        return owner is not MISSING and strict_equals(owner, user.id)

    def filter_accessible_resources(
        self,
        user: AuthenticatedUser,
        resource: str,
        records: Iterable[Any],
        action: str = "read",
        id_field: str = "id",
    ) -> List[Any]:
        """Keep only the records ``user`` may access."""
        accessible = []
        for record in records:
            record_id = get_value_from_path(record, id_field)
            record_id = "" if record_id is MISSING else str(record_id)
            if self.can_access_resource(user, resource, record_id, action, record):
                accessible.append(record)
        return accessible

    def build_access_query(self, user: AuthenticatedUser, resource: str, action: str) -> Dict[str, Any]:
        """Data-layer filter describing which records ``user`` may see.

        ``{}`` means unrestricted. When no rule yields a predicate the
        result is the deny-all filter.
        """
        config = self._configs.get(resource)
        if config is None:
            if self.permission_manager.has_permission(user, resource, action):
                return {}
            return deny_all()

        if user.role in config.allowed_roles:
            return {}

        predicates: List[Dict[str, Any]] = []
        if config.ownership_field:
            predicates.append({config.ownership_field: user.id})

        for permission in config.custom_permissions:
            if not permission.matches(resource, action):
                continue
            predicate = self._conditions_to_predicate(permission.conditions, user)
            if predicate is None:
                continue
            if not predicate:
                return {}
            predicates.append(predicate)

        unique: List[Dict[str, Any]] = []
        seen = set()
        for predicate in predicates:
            fingerprint = _predicate_fingerprint(predicate)
            if fingerprint not in seen:
                seen.add(fingerprint)
                unique.append(predicate)

        if not unique:
            return deny_all()
        if len(unique) == 1:
            return unique[0]
        return {"$or": unique}

    def _conditions_to_predicate(
        self,
        conditions: Iterable[Condition],
        user: AuthenticatedUser,
    ) -> Optional[Dict[str, Any]]:
        """AND of the translated conditions, or None when one cannot be expressed."""
        clauses: List[Dict[str, Any]] = []
        for condition in conditions:
            if isinstance(condition.value, ResourceRef):
                return None
            value = self.evaluator.resolve_value(condition.value, user=user)
            expression = self._condition_expression(condition, value)
            if expression is MISSING:
                self.logger.warning(
                    "Condition cannot be expressed as a query",
                    field=condition.field,
                    operator=condition.operator_name
                )
                return None
            clauses.append({condition.field: expression})

        fields = [next(iter(clause)) for clause in clauses]
        if len(set(fields)) == len(fields):
            merged: Dict[str, Any] = {}
            for clause in clauses:
                merged.update(clause)
            return merged
        return {"$and": clauses}

    @staticmethod
    def _condition_expression(condition: Condition, value: Any) -> Any:
        operator = condition.operator
        if operator == ConditionOperator.EQ:
            return value
        if operator in (ConditionOperator.IN, ConditionOperator.NIN):
            if not isinstance(value, (list, tuple, set, frozenset)):
                return MISSING
            return {_OPERATOR_KEYS[operator]: list(value)}
        if operator in _OPERATOR_KEYS:
            return {_OPERATOR_KEYS[operator]: value}
        if operator == ConditionOperator.CONTAINS:
            if not isinstance(value, str):
                return MISSING
            return {"$regex": re.escape(value)}
        if operator == ConditionOperator.EXISTS:
            return {"$exists": True}
        return MISSING
