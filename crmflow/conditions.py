"""Predicate evaluation for condition steps."""

from __future__ import annotations

from typing import Any, Mapping

from .contracts import ConditionStep
from .errors import ConditionError
from .persistence.filters import get_path

_MISSING = object()


def evaluate_condition(step: ConditionStep, context: Mapping[str, Any]) -> bool:
    """Evaluate ``step`` against the execution context.

    ``exists`` and ``not_exists`` test for presence. Every other operator
    requires the field to be present and raises ``ConditionError`` otherwise.
    """
    actual = get_path(context, step.field, _MISSING)

    if step.op == "exists":
        return actual is not _MISSING and actual is not None
    if step.op == "not_exists":
        return actual is _MISSING or actual is None
    if actual is _MISSING:
        raise ConditionError(f"condition field '{step.field}' is not available")

    expected = step.value
    try:
        if step.op == "eq":
            return actual == expected
        if step.op == "ne":
            return actual != expected
        if step.op == "gt":
            return float(actual) > float(expected)
        if step.op == "gte":
            return float(actual) >= float(expected)
        if step.op == "lt":
            return float(actual) < float(expected)
        if step.op == "lte":
            return float(actual) <= float(expected)
        if step.op == "contains":
            return _contains(actual, expected)
        if step.op == "not_contains":
            return not _contains(actual, expected)
        if step.op == "in":
            return actual in expected
        if step.op == "not_in":
            return actual not in expected
    except (TypeError, ValueError) as e:
        raise ConditionError(
            f"cannot apply '{step.op}' to field '{step.field}': {e}"
        ) from e
    raise ConditionError(f"unsupported operator '{step.op}'")


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str):
        return isinstance(expected, str) and expected in actual
    if isinstance(actual, (list, tuple, set, frozenset, dict)):
        return expected in actual
    raise TypeError(f"{type(actual).__name__} is not a container")
