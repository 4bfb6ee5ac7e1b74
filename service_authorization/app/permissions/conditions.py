"""
Condition evaluation for permissions.
"""

from collections.abc import Mapping
from datetime import date, datetime
from enum import Enum
from numbers import Number
from typing import Any, Optional, List, Tuple, Iterable

from shared.logging import get_logger
from .models import (
    AuthenticatedUser, Condition, ConditionOperator, ConditionResult,
    UserRef, ResourceRef, parse_dynamic_value,
)


class _Missing:
    """Marker for a path that is absent from the context."""

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()

_COLLECTION_TYPES = (list, tuple, set, frozenset)


def get_value_from_path(data: Any, path: str) -> Any:
    """Walk a dot path through mappings, sequences and attributes.

    Returns MISSING instead of raising when any segment is absent.
    """
    current = data
    for part in path.split("."):
        if current is None or current is MISSING:
            return MISSING
        if isinstance(current, Mapping):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return MISSING
            current = current[index]
        elif not part.startswith("_") and hasattr(current, part):
            current = getattr(current, part)
        else:
            return MISSING
    return current


def _is_number(value: Any) -> bool:
    return isinstance(value, Number) and not isinstance(value, bool)


def strict_equals(left: Any, right: Any) -> bool:
    """Equality without cross-type coercion: ``True`` never equals ``1``."""
    if left is MISSING or right is MISSING:
        return False
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if _is_number(left) and _is_number(right):
        return left == right
    if isinstance(left, str) or isinstance(right, str):
        return isinstance(left, str) and isinstance(right, str) and left == right
    if type(left) is not type(right):
        return False
    return left == right


def _coerce_temporal(value: Any, other: Any) -> Any:
    if isinstance(value, str) and isinstance(other, (datetime, date)):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return value
        if isinstance(other, datetime):
            return parsed
        return parsed.date()
    return value


def _ordering_pair(left: Any, right: Any) -> Optional[Tuple[Any, Any]]:
    """Return comparable operands, or None when ordering is undefined."""
    if _is_number(left) and _is_number(right):
        return left, right
    left = _coerce_temporal(left, right)
    right = _coerce_temporal(right, left)
    if isinstance(left, datetime) and isinstance(right, datetime):
        if (left.tzinfo is None) != (right.tzinfo is None):
            return None
        return left, right
    if (
        isinstance(left, date) and not isinstance(left, datetime)
        and isinstance(right, date) and not isinstance(right, datetime)
    ):
        return left, right
    return None


class ConditionEvaluator:
    """Evaluates permission conditions against a request context.

    Condition values may reference the authenticated user (``UserRef`` or
    ``${user.x}``) or the resource snapshot (``ResourceRef`` or
    ``${resource.x}``). User values come only from the authenticated user
    object, so a request context can never impersonate them. References
    that cannot be resolved stay as their literal template string.
    """

    def __init__(self):
        self.logger = get_logger("authorization.conditions")

    def resolve_value(
        self,
        value: Any,
        user: Optional[AuthenticatedUser] = None,
        resource_data: Any = None,
    ) -> Any:
        """Substitute user and resource references inside ``value``."""
        value = parse_dynamic_value(value)

        if isinstance(value, UserRef):
            if user is None:
                return value.template
            resolved = get_value_from_path(user, value.attribute)
            if resolved is MISSING:
                return value.template
            if isinstance(resolved, Enum):
                return resolved.value
            return resolved

        if isinstance(value, ResourceRef):
            if resource_data is None:
                return value.template
            resolved = get_value_from_path(resource_data, value.field)
            return value.template if resolved is MISSING else resolved

        if isinstance(value, _COLLECTION_TYPES):
            return [self.resolve_value(item, user, resource_data) for item in value]

        return value

    def evaluate(
        self,
        condition: Condition,
        context: Any,
        user: Optional[AuthenticatedUser] = None,
        resource_data: Any = None,
    ) -> bool:
        """Evaluate a single condition."""
        return self.evaluate_with_details(condition, context, user, resource_data).result

    def evaluate_with_details(
        self,
        condition: Condition,
        context: Any,
        user: Optional[AuthenticatedUser] = None,
        resource_data: Any = None,
    ) -> ConditionResult:
        """Evaluate a single condition and keep the compared values."""
        actual = get_value_from_path(context, condition.field) if context is not None else MISSING
        if resource_data is None:
            resource_data = self.resource_snapshot(context)
        expected = self.resolve_value(condition.value, user, resource_data)

        result = self._apply_operator(condition, actual, expected)

        return ConditionResult(
            condition=condition,
            result=result,
            actual_value=None if actual is MISSING else actual,
            expected_value=expected,
        )

    def evaluate_all(
        self,
        conditions: Iterable[Condition],
        context: Any,
        user: Optional[AuthenticatedUser] = None,
        resource_data: Any = None,
    ) -> Tuple[bool, List[ConditionResult]]:
        """AND-combine ``conditions``, stopping at the first failure."""
        results: List[ConditionResult] = []
        for condition in conditions:
            outcome = self.evaluate_with_details(condition, context, user, resource_data)
            results.append(outcome)
            if not outcome.result:
                return False, results
        return True, results

    @staticmethod
    def resource_snapshot(context: Any) -> Any:
        """Resource data carried by a context: its ``resource`` mapping, else the context itself."""
        if isinstance(context, Mapping):
            nested = context.get("resource")
            if isinstance(nested, Mapping):
                return nested
        return context

    def _apply_operator(self, condition: Condition, actual: Any, expected: Any) -> bool:
        operator = condition.operator

        if operator == ConditionOperator.EQ:
            return strict_equals(actual, expected)

        elif operator == ConditionOperator.NE:
            return not strict_equals(actual, expected)

        elif operator == ConditionOperator.IN:
            if not isinstance(expected, _COLLECTION_TYPES):
                return False
            return any(strict_equals(actual, item) for item in expected)

        elif operator == ConditionOperator.NIN:
            if not isinstance(expected, _COLLECTION_TYPES):
                return False
            return not any(strict_equals(actual, item) for item in expected)

        elif operator in (
            ConditionOperator.GT, ConditionOperator.GTE,
            ConditionOperator.LT, ConditionOperator.LTE,
        ):
            pair = _ordering_pair(actual, expected)
            if pair is None:
                return False
            left, right = pair
            if operator == ConditionOperator.GT:
                return left > right
            if operator == ConditionOperator.GTE:
                return left >= right
            if operator == ConditionOperator.LT:
                return left < right
            return left <= right

        elif operator == ConditionOperator.CONTAINS:
            if not isinstance(actual, str) or not isinstance(expected, str):
                return False
            return expected in actual

        elif operator == ConditionOperator.EXISTS:
            return actual is not MISSING and actual is not None

        self.logger.warning(
            "Unknown condition operator",
            operator=condition.operator_name,
            field=condition.field
        )
        return False
