from __future__ import annotations

from typing import Any, Mapping

from ..contracts import Condition, Operator

_MISSING = object()


def resolve_path(source: Any, path: str) -> Any:
    """Follow a dotted ``path`` through nested mappings and sequences.

    Returns a sentinel (see ``is_missing``) when any segment is absent.
    """

    current = source
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def is_missing(value: Any) -> bool:
    return value is _MISSING


def compare(actual: Any, operator: Operator, expected: Any) -> bool:
    if is_missing(actual):
        return operator == "not_equals" and expected is not None
    if operator == "equals":
        return actual == expected
    if operator == "not_equals":
        return actual != expected
    if operator == "contains":
        try:
            return expected in actual
        except TypeError:
            return False
    try:
        if operator == "greater_than":
            return actual > expected
        if operator == "less_than":
            return actual < expected
    except TypeError:
        return False
    raise ValueError(f"Unknown operator: {operator}")


def evaluate(condition: Condition, snapshot: Mapping[str, Any]) -> bool:
    return compare(resolve_path(snapshot, condition.context_path), condition.operator, condition.value)
