"""Condition evaluation against a freshly fetched subject."""

from decimal import Decimal, InvalidOperation
from typing import Any

from core.constants import ConditionOperator
from core.exceptions import ConditionEvaluationError
from integrations.base import Subject, is_missing
from workflow.graph import ConditionConfig


def _is_empty(value: Any) -> bool:
    if is_missing(value) or value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, frozenset, dict)):
        return len(value) == 0
    return False


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip()


def _as_decimal(value: Any, role: str, field: str) -> Decimal:
    if isinstance(value, bool):
        raise ConditionEvaluationError(f"{role} for '{field}' is a boolean, not a number")
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ConditionEvaluationError(f"{role} for '{field}' is not numeric: {value!r}")
    if not number.is_finite():
        raise ConditionEvaluationError(f"{role} for '{field}' is not a finite number: {value!r}")
    return number


def _values_equal(actual: Any, expected: Any) -> bool:
    left, right = _as_text(actual), _as_text(expected)
    if left == right:
        return True
    try:
        return Decimal(left) == Decimal(right)
    except (InvalidOperation, ValueError):
        return False


class ConditionEvaluator:
    """Evaluates condition node configs.

    Field lookup checks the subject's own attributes first and then its
    custom fields. A missing field is empty for ``is_empty`` and
    ``is_not_empty``; every other operator raises
    ``ConditionEvaluationError`` for it.
    """

    def evaluate(self, config: ConditionConfig, subject: Subject) -> bool:
        try:
            operator = ConditionOperator(config.operator)
        except ValueError:
            raise ConditionEvaluationError(f"Unknown operator '{config.operator}'")

        actual = subject.lookup(config.field)

        if operator == ConditionOperator.IS_EMPTY:
            return _is_empty(actual)
        if operator == ConditionOperator.IS_NOT_EMPTY:
            return not _is_empty(actual)

        if is_missing(actual):
            raise ConditionEvaluationError(f"Field '{config.field}' is missing on subject {subject.id}")

        expected = config.value
        if operator == ConditionOperator.EQUALS:
            return _values_equal(actual, expected)
        if operator == ConditionOperator.NOT_EQUALS:
            return not _values_equal(actual, expected)
        if operator == ConditionOperator.CONTAINS:
            needle = _as_text(expected).lower()
            if isinstance(actual, (list, tuple, set, frozenset)):
                return any(_as_text(item).lower() == needle for item in actual)
            return needle in _as_text(actual).lower()

        left = _as_decimal(actual, "Subject value", config.field)
        right = _as_decimal(expected, "Condition value", config.field)
        if operator == ConditionOperator.GREATER_THAN:
            return left > right
        return left < right
