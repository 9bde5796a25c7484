"""
Record helpers: dot-path access, branch condition evaluation and record identity
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Optional

from schemas.pipeline import BranchConfig, ComparisonOperator, Condition

logger = logging.getLogger(__name__)

RECORD_ID_FIELDS = ("id", "sku", "code", "slug", "externalId", "external_id", "uuid")

_MISSING = object()


def get_path(record: Any, path: str, default: Any = None) -> Any:
    """
    Value at a dot-notation path (`a.b.0.c`), or `default` when absent.

    Numeric segments index into lists.
    """
    value = _resolve(record, path)
    return default if value is _MISSING else value


def has_path(record: Any, path: str) -> bool:
    return _resolve(record, path) is not _MISSING


def _resolve(record: Any, path: str) -> Any:
    current = record
    for part in (path or "").split("."):
        if isinstance(current, dict):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, list) and part.lstrip("-").isdigit():
            index = int(part)
            if not -len(current) <= index < len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _compare(left: Any, right: Any) -> Optional[int]:
    """-1, 0 or 1; None when the values are not comparable"""
    a, b = _as_number(left), _as_number(right)
    if a is not None and b is not None:
        return (a > b) - (a < b)
    if isinstance(left, str) and isinstance(right, str):
        return (left > right) - (left < right)
    return None


def evaluate_condition(record: Dict[str, Any], condition: Condition) -> bool:
    """Evaluate one condition; type mismatches evaluate to False"""
    op = condition.cmp
    present = has_path(record, condition.field)
    actual = get_path(record, condition.field)
    expected = condition.value

    if op == ComparisonOperator.EXISTS:
        return present and actual is not None
    if op == ComparisonOperator.NOT_EXISTS:
        return not present or actual is None

    if op in (ComparisonOperator.EQ, ComparisonOperator.NE):
        equal = actual == expected or _compare(actual, expected) == 0
        return equal if op == ComparisonOperator.EQ else not equal

    if op in (ComparisonOperator.GT, ComparisonOperator.GTE, ComparisonOperator.LT, ComparisonOperator.LTE):
        result = _compare(actual, expected)
        if result is None:
            return False
        return {
            ComparisonOperator.GT: result > 0,
            ComparisonOperator.GTE: result >= 0,
            ComparisonOperator.LT: result < 0,
            ComparisonOperator.LTE: result <= 0,
        }[op]

    if op in (ComparisonOperator.IN, ComparisonOperator.NOT_IN):
        if not isinstance(expected, (list, tuple)):
            return False
        found = actual in expected
        return found if op == ComparisonOperator.IN else not found

    if op in (ComparisonOperator.CONTAINS, ComparisonOperator.NOT_CONTAINS):
        if isinstance(actual, str):
            found = isinstance(expected, str) and expected in actual
        elif isinstance(actual, (list, tuple)):
            found = expected in actual
        else:
            return False
        return found if op == ComparisonOperator.CONTAINS else not found

    if op == ComparisonOperator.STARTS_WITH:
        return isinstance(actual, str) and isinstance(expected, str) and actual.startswith(expected)
    if op == ComparisonOperator.ENDS_WITH:
        return isinstance(actual, str) and isinstance(expected, str) and actual.endswith(expected)

    if op == ComparisonOperator.REGEX:
        if actual is None or not isinstance(expected, str):
            return False
        try:
            return re.search(expected, str(actual)) is not None
        except re.error as e:
            logger.warning(f"Invalid regex in condition on '{condition.field}': {e}")
            return False

    return False


def evaluate_all(record: Dict[str, Any], conditions: Iterable[Condition]) -> bool:
    """True when every condition holds; an empty list always holds"""
    return all(evaluate_condition(record, c) for c in conditions)


def select_branch(
    record: Dict[str, Any],
    branches: List[BranchConfig],
    default_branch: Optional[str] = None,
) -> Optional[str]:
    """
    Branch a record is routed along.

    First branch (in declaration order) whose conditions all hold, else
    the default branch, else None (the record is dropped).
    """
    for branch in branches:
        if evaluate_all(record, branch.when):
            return branch.name
    return default_branch


def extract_record_id(record: Any) -> Optional[str]:
    """First non-empty identity field of a record, as a string"""
    if not isinstance(record, dict):
        return None
    for field_name in RECORD_ID_FIELDS:
        value = record.get(field_name)
        if value is not None and value != "":
            return str(value)
    return None
