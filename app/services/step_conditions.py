# app/services/step_conditions.py - skip_when condition evaluation against prior step outputs

"""Evaluation of per-step ``skip_when`` expressions.

Leaf::

    {"step": 0, "field": "text", "op": "empty"}
    {"step": 1, "field": "category", "op": "in", "value": ["sport", "weather"]}
    {"step": "input", "field": "language", "op": "eq", "value": "en"}

``field`` is ``text``, ``json`` or a dotted path into the step's parsed JSON
output (or into the execution input when ``step`` is ``"input"``).
Combinators: ``{"any": [...]}``, ``{"all": [...]}``, ``{"not": {...}}``.
A skipped upstream step has no fields, so every lookup on it yields None.
"""

from __future__ import annotations

from typing import Any

from app.services.step_context import StepContext
from app.utils.exceptions import ConditionEvaluationError

_VALUELESS_OPS = {"exists", "not_exists", "empty", "not_empty"}
_VALUE_OPS = {"eq", "neq", "in", "not_in", "contains", "icontains", "gt", "lt"}
_LEAF_KEYS = {"step", "field", "op", "value"}


def lookup_path(value: Any, path: str) -> Any:
    current = value
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return not value
    return False


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _resolve_operand(expression: dict[str, Any], context: StepContext, current_index: int) -> Any:
    ref = expression.get("step")
    field_path = expression.get("field", "text")
    if not isinstance(field_path, str) or not field_path:
        raise ConditionEvaluationError(f"Condition field must be a non-empty string, got {field_path!r}")

    if ref == "input":
        if field_path == "text":
            return context.original_input or None
        return lookup_path(context.input_data, field_path)

    if not isinstance(ref, int) or isinstance(ref, bool) or ref < 0:
        raise ConditionEvaluationError(f"Condition references an invalid step: {ref!r}")
    if ref >= current_index:
        raise ConditionEvaluationError(
            f"Condition on step {current_index} references step {ref}, which has not run yet"
        )
    entry = context.entries.get(ref)
    if entry is None:
        raise ConditionEvaluationError(f"Condition references step {ref}, which has no recorded result")
    if not entry.is_done:
        return None
    if field_path == "text":
        return entry.text
    if field_path == "json":
        return entry.json
    return lookup_path(entry.json, field_path)


def _evaluate_leaf(expression: dict[str, Any], context: StepContext, current_index: int) -> bool:
    unknown = set(expression) - _LEAF_KEYS
    if unknown:
        raise ConditionEvaluationError(f"Unknown condition keys: {sorted(unknown)}")
    op = expression.get("op")
    if op not in _VALUELESS_OPS and op not in _VALUE_OPS:
        raise ConditionEvaluationError(f"Unknown condition operator: {op!r}")
    if op in _VALUE_OPS and "value" not in expression:
        raise ConditionEvaluationError(f"Condition operator '{op}' requires a value")

    actual = _resolve_operand(expression, context, current_index)
    expected = expression.get("value")

    if op == "eq":
        return actual == expected
    if op == "neq":
        return actual != expected
    if op in ("in", "not_in"):
        if not isinstance(expected, list):
            raise ConditionEvaluationError(f"Condition operator '{op}' requires a list value")
        return (actual in expected) if op == "in" else (actual not in expected)
    if op == "exists":
        return actual is not None
    if op == "not_exists":
        return actual is None
    if op == "empty":
        return _is_empty(actual)
    if op == "not_empty":
        return not _is_empty(actual)
    if op == "contains":
        if isinstance(actual, str):
            return str(expected) in actual
        if isinstance(actual, list):
            return expected in actual
        return False
    if op == "icontains":
        if isinstance(actual, str):
            return str(expected).lower() in actual.lower()
        if isinstance(actual, list):
            needle = str(expected).lower()
            return any(isinstance(item, str) and item.lower() == needle for item in actual)
        return False

    # gt / lt
    if not _is_number(expected):
        raise ConditionEvaluationError(f"Condition operator '{op}' requires a numeric value")
    if not _is_number(actual):
        return False
    return actual > expected if op == "gt" else actual < expected


def evaluate_condition(expression: Any, context: StepContext, current_index: int) -> bool:
    if not isinstance(expression, dict) or not expression:
        raise ConditionEvaluationError("Condition must be a non-empty object")

    for combinator in ("any", "all"):
        if combinator in expression:
            if len(expression) != 1:
                raise ConditionEvaluationError(f"'{combinator}' must be the only key of its object")
            children = expression[combinator]
            if not isinstance(children, list) or not children:
                raise ConditionEvaluationError(f"'{combinator}' requires a non-empty list of conditions")
            results = [evaluate_condition(child, context, current_index) for child in children]
            return any(results) if combinator == "any" else all(results)

    if "not" in expression:
        if len(expression) != 1:
            raise ConditionEvaluationError("'not' must be the only key of its object")
        return not evaluate_condition(expression["not"], context, current_index)

    return _evaluate_leaf(expression, context, current_index)


def should_skip(skip_when: dict[str, Any] | None, context: StepContext, current_index: int) -> bool:
    if skip_when is None:
        return False
    return evaluate_condition(skip_when, context, current_index)
