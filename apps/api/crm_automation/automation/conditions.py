"""Condition evaluation and payload templating for automation rules.

Everything here is pure: no I/O, no logging, and no exception escapes
``evaluate``. A condition that cannot be decided resolves to ``False``.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from crm_automation.automation.schemas import AutomationCondition, canonical_operator

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}")


def resolve_path(payload: Mapping[str, Any], path: str) -> tuple[bool, Any]:
    current: Any = payload
    for segment in path.split("."):
        if not isinstance(current, Mapping) or segment not in current:
            return False, None
        current = current[segment]
    return True, current


def evaluate(conditions: Sequence[AutomationCondition | Mapping[str, Any]] | None, payload: Mapping[str, Any]) -> bool:
    if not conditions:
        return True
    return all(_evaluate_one(condition, payload) for condition in conditions)


def _evaluate_one(condition: AutomationCondition | Mapping[str, Any], payload: Mapping[str, Any]) -> bool:
    if isinstance(condition, AutomationCondition):
        field, operator, target = condition.field, condition.operator, condition.value
    elif isinstance(condition, Mapping):
        field = condition.get("field")
        operator = canonical_operator(condition.get("operator"))
        target = condition.get("value")
    else:
        return False
    if not isinstance(field, str) or not field:
        return False

    try:
        exists, current = resolve_path(payload, field)
        return _apply(operator, exists, current, target)
    except (TypeError, ValueError, ArithmeticError):
        return False


def _apply(operator: Any, exists: bool, current: Any, target: Any) -> bool:
    if operator == "is_empty":
        return not exists or _is_empty(current)
    if operator == "is_not_empty":
        return exists and not _is_empty(current)

    if operator == "equals":
        return exists and _equal(current, target)
    if operator == "not_equals":
        return not (exists and _equal(current, target))
    if operator == "contains":
        return exists and _contains(current, target)
    if operator == "not_contains":
        return not (exists and _contains(current, target))
    if operator == "in":
        return exists and _member_of(current, target)
    if operator == "not_in":
        return not (exists and _member_of(current, target))

    if not exists:
        return False
    left = _to_number(current)
    right = _to_number(target)
    if left is None or right is None:
        return False
    if operator == "greater_than":
        return left > right
    if operator == "greater_than_or_equal":
        return left >= right
    if operator == "less_than":
        return left < right
    if operator == "less_than_or_equal":
        return left <= right
    return False


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def _equal(left: Any, right: Any) -> bool:
    return normalized_compare_value(left) == normalized_compare_value(right)


def _contains(current: Any, target: Any) -> bool:
    if isinstance(current, (list, tuple, set)):
        return any(_equal(item, target) for item in current)
    if isinstance(current, Mapping):
        return target in current
    if current is None or target is None:
        return False
    if isinstance(current, (str, int, float, Decimal)) and not isinstance(current, bool):
        return str(target) in str(current)
    return False


def _member_of(current: Any, target: Any) -> bool:
    if not isinstance(target, (list, tuple, set)):
        return False
    return any(_equal(current, item) for item in target)


def normalized_compare_value(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, str):
        as_number = _parse_number(value)
        if as_number is not None:
            return as_number
        as_date = _parse_date(value)
        if as_date is not None:
            return as_date.isoformat()
        return value
    return value


def _to_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, Decimal):
        try:
            return float(value)
        except (InvalidOperation, ValueError):
            return None
    if isinstance(value, str):
        return _parse_number(value)
    return None


def _parse_number(value: str) -> float | None:
    text = value.strip()
    if not text:
        return None
    try:
        number = float(text)
    except ValueError:
        return None
    if number != number or number in (float("inf"), float("-inf")):
        return None
    return number


def _parse_date(value: str) -> date | None:
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def render_template(template: str, payload: Mapping[str, Any]) -> str:
    """Replace ``{{path.to.field}}`` placeholders with payload values.

    Placeholders whose path is missing or ``None`` are left untouched.
    """

    def _substitute(match: re.Match[str]) -> str:
        exists, value = resolve_path(payload, match.group(1))
        if not exists or value is None:
            return match.group(0)
        return str(value)

    return _PLACEHOLDER.sub(_substitute, template)


def has_unresolved_placeholder(text: str) -> bool:
    return _PLACEHOLDER.search(text) is not None


def render_value(value: Any, payload: Mapping[str, Any]) -> Any:
    if isinstance(value, str):
        return render_template(value, payload)
    return value

