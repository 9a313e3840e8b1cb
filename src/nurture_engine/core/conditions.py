"""
Condition evaluation over subscriber attributes
"""
from enum import Enum
from typing import Any, Optional
import logging

from ..models.subscriber import Subscriber


logger = logging.getLogger(__name__)


class ConditionOperator(Enum):
    """Supported condition operators"""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_EQUAL = "greater_equal"
    LESS_EQUAL = "less_equal"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


NUMERIC_OPERATORS = {
    ConditionOperator.GREATER_THAN: lambda a, b: a > b,
    ConditionOperator.LESS_THAN: lambda a, b: a < b,
    ConditionOperator.GREATER_EQUAL: lambda a, b: a >= b,
    ConditionOperator.LESS_EQUAL: lambda a, b: a <= b,
}

HAS_TAG_FIELD = "has_tag"


def _to_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip().lower()


def _is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (str, list, tuple, dict, set)):
        return len(value) > 0
    return True


class ConditionEvaluator:
    """Pure predicate evaluation; no clock, no randomness, no I/O"""

    def evaluate(
        self,
        subscriber: Subscriber,
        field: str,
        operator: str,
        value: Any = None
    ) -> bool:
        try:
            op = ConditionOperator(operator)
        except ValueError:
            logger.warning(f"Unknown condition operator '{operator}', evaluating as false")
            return False

        if field == HAS_TAG_FIELD:
            return self._evaluate_tag(subscriber, op, value)

        actual = subscriber.get_attribute(field)

        if op == ConditionOperator.EXISTS:
            return _is_present(actual)
        if op == ConditionOperator.NOT_EXISTS:
            return not _is_present(actual)

        # a missing field never satisfies a comparison
        if actual is None:
            return False

        if op in NUMERIC_OPERATORS:
            left, right = _to_number(actual), _to_number(value)
            if left is None or right is None:
                return False
            return NUMERIC_OPERATORS[op](left, right)

        if op == ConditionOperator.EQUALS:
            return self._equals(actual, value)
        if op == ConditionOperator.NOT_EQUALS:
            return not self._equals(actual, value)
        if op == ConditionOperator.CONTAINS:
            return self._contains(actual, value)
        if op == ConditionOperator.NOT_CONTAINS:
            return not self._contains(actual, value)

        return False

    __call__ = evaluate

    def _evaluate_tag(self, subscriber: Subscriber, op: ConditionOperator, value: Any) -> bool:
        """`has_tag` treats the comparison value as the tag name"""
        if op in (ConditionOperator.EXISTS, ConditionOperator.NOT_EXISTS):
            present = _is_present(subscriber.tags)
            return present if op == ConditionOperator.EXISTS else not present
        if value is None:
            return False
        tagged = subscriber.has_tag(str(value))
        if op in (ConditionOperator.EQUALS, ConditionOperator.CONTAINS):
            return tagged
        if op in (ConditionOperator.NOT_EQUALS, ConditionOperator.NOT_CONTAINS):
            return not tagged
        return False

    def _equals(self, actual: Any, expected: Any) -> bool:
        left, right = _to_number(actual), _to_number(expected)
        if left is not None and right is not None:
            return left == right
        if expected is None:
            return False
        return _to_text(actual) == _to_text(expected)

    def _contains(self, actual: Any, expected: Any) -> bool:
        if expected is None:
            return False
        needle = _to_text(expected)
        if isinstance(actual, (list, tuple, set)):
            return any(_to_text(item) == needle for item in actual)
        return needle in _to_text(actual)
