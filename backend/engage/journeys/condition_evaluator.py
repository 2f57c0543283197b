# /engage/journeys/condition_evaluator.py

"""
Pure evaluation of journey condition nodes.

A condition reads one field from the customer, the order or the product the
enrollment is about (order and product fall back to the event that started
the journey) and compares it with a configured value. No I/O happens here.
"""

from typing import Any, Dict, List, Optional, TypedDict


class ExecutionContext(TypedDict, total=False):
    customer: Dict[str, Any]
    order: Optional[Dict[str, Any]]
    product: Optional[Dict[str, Any]]
    trigger_event: Dict[str, Any]
    variables: Dict[str, Any]


def get_path(obj: Any, path: str) -> Any:
    """Dotted-path lookup through dicts and list indexes; None when any hop is missing."""
    if not path:
        return None
    current = obj
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
        if current is None:
            return None
    return current


def to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def get_field_value(source: str, field: str, context: ExecutionContext) -> Any:
    trigger_event = context.get("trigger_event") or {}
    if source == "customer":
        target = context.get("customer") or {}
    elif source == "order":
        target = context.get("order") or trigger_event
    elif source == "product":
        target = context.get("product") or trigger_event
    else:
        target = trigger_event
    return get_path(target, field)


def compare(actual: Any, operator: str, expected: Any) -> bool:
    """Apply one operator. Unknown operators never match."""
    op = (operator or "").lower()

    if op == "equals":
        return actual == expected
    if op == "not_equals":
        return actual != expected

    if op in ("contains", "not_contains"):
        if isinstance(actual, list):
            found = str(expected).lower() in [str(item).lower() for item in actual]
        else:
            found = str(expected if expected is not None else "").lower() in str(actual if actual is not None else "").lower()
        return found if op == "contains" else not found

    if op == "starts_with":
        return str(actual if actual is not None else "").lower().startswith(str(expected if expected is not None else "").lower())

    if op in ("greater_than", "gt", "less_than", "lt"):
        left, right = to_number(actual), to_number(expected)
        if left is None or right is None:
            return False
        return left > right if op in ("greater_than", "gt") else left < right

    if op == "between":
        if not isinstance(expected, (list, tuple)) or len(expected) != 2:
            return False
        number, low, high = to_number(actual), to_number(expected[0]), to_number(expected[1])
        if number is None or low is None or high is None:
            return False
        return low <= number <= high

    if op in ("is_set", "is_not_set"):
        is_set = actual is not None and (not isinstance(actual, str) or actual.strip() != "")
        return is_set if op == "is_set" else not is_set

    return False


def evaluate_condition(condition: Dict[str, Any], context: ExecutionContext) -> bool:
    actual = get_field_value(condition.get("source", "customer"), condition.get("field", ""), context)
    return compare(actual, condition.get("operator", ""), condition.get("value"))


def evaluate_conditions(conditions: List[Dict[str, Any]], context: ExecutionContext) -> bool:
    """True when every condition holds; an empty list always holds."""
    return all(evaluate_condition(condition, context) for condition in conditions or [])
