"""
Condition operators shared by condition, filter and switch nodes and by
conditioned edges.

A condition is ``{"field": <dot path>, "operator": <op>, "value": <any>}``.
Comparisons are deliberately loose: flows are authored in a UI where numbers
frequently arrive as strings, so ``"150" > 100`` is true and ``"1" == 1``.
``===`` / ``!==`` are the strict variants.
"""

import logging
import re
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from flowrun.graph.expressions import data_get

logger = logging.getLogger(__name__)


def _to_number(value: Any) -> float | int | None:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return int(text)
        except ValueError:
            try:
                return float(text)
            except ValueError:
                return None
    return None


def loose_equals(left: Any, right: Any) -> bool:
    """Equality where numeric strings compare equal to numbers."""
    if left is None or right is None:
        return (left in (None, "", 0, False, [], {})) and (right in (None, "", 0, False, [], {}))
    if isinstance(left, (int, float, str, bool)) and isinstance(right, (int, float, str, bool)):
        if isinstance(left, str) and isinstance(right, str):
            return left == right
        left_num, right_num = _to_number(left), _to_number(right)
        if left_num is not None and right_num is not None:
            return left_num == right_num
    return left == right


def strict_equals(left: Any, right: Any) -> bool:
    return type(left) is type(right) and left == right


def _compare(left: Any, right: Any, op: Callable[[Any, Any], bool]) -> bool:
    left_num, right_num = _to_number(left), _to_number(right)
    if left_num is not None and right_num is not None:
        return op(left_num, right_num)
    if left is None or right is None:
        return False
    try:
        return bool(op(left, right))
    except TypeError:
        return False


def is_empty(value: Any) -> bool:
    if value is None or value is False:
        return True
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value == 0
    if isinstance(value, str):
        return value == "" or value == "0"
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return list(value)
    if isinstance(value, Mapping):
        return list(value.values())
    return [value]


def _contains(haystack: Any, needle: Any) -> bool:
    if isinstance(haystack, (list, tuple, set)):
        return any(loose_equals(item, needle) for item in haystack)
    if haystack is None:
        return str(needle) == "" if needle is not None else True
    return str(needle if needle is not None else "") in str(haystack)


_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "x": re.VERBOSE}
_DELIMITED = re.compile(r"^([/#~])(.*)\1([imsxu]*)$", re.DOTALL)


def compile_pattern(pattern: str) -> re.Pattern[str]:
    """Compile ``/pattern/flags`` (delimited) or a bare pattern."""
    match = _DELIMITED.match(pattern)
    if match:
        flags = 0
        for flag in match.group(3):
            flags |= _REGEX_FLAGS.get(flag, 0)
        return re.compile(match.group(2), flags)
    return re.compile(pattern)


def _matches(actual: Any, pattern: Any) -> bool:
    try:
        subject = "" if actual is None else str(actual)
        return compile_pattern(str(pattern)).search(subject) is not None
    except re.error as e:
        logger.warning(f"Invalid regex in condition: {pattern!r} ({e})")
        return False


OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "==": loose_equals,
    "===": strict_equals,
    "!=": lambda a, b: not loose_equals(a, b),
    "!==": lambda a, b: not strict_equals(a, b),
    ">": lambda a, b: _compare(a, b, lambda x, y: x > y),
    ">=": lambda a, b: _compare(a, b, lambda x, y: x >= y),
    "<": lambda a, b: _compare(a, b, lambda x, y: x < y),
    "<=": lambda a, b: _compare(a, b, lambda x, y: x <= y),
    "contains": _contains,
    "not_contains": lambda a, b: not _contains(a, b),
    "starts_with": lambda a, b: str("" if a is None else a).startswith(str("" if b is None else b)),
    "ends_with": lambda a, b: str("" if a is None else a).endswith(str("" if b is None else b)),
    "matches": _matches,
    "in": lambda a, b: any(loose_equals(a, item) for item in _as_list(b)),
    "not_in": lambda a, b: not any(loose_equals(a, item) for item in _as_list(b)),
    "is_empty": lambda a, _b: is_empty(a),
    "is_not_empty": lambda a, _b: not is_empty(a),
    "is_null": lambda a, _b: a is None,
    "is_not_null": lambda a, _b: a is not None,
}

SUPPORTED_OPERATORS = frozenset(OPERATORS)


def evaluate_condition(condition: Mapping[str, Any], data: Any) -> bool:
    """Evaluate one ``{field, operator, value}`` against ``data``."""
    operator = str(condition.get("operator") or "==")
    evaluator = OPERATORS.get(operator)
    if evaluator is None:
        logger.warning(f"Unknown condition operator '{operator}', treating as false")
        return False
    actual = data_get(data, condition.get("field") or "")
    return evaluator(actual, condition.get("value"))


def evaluate_conditions(
    conditions: Iterable[Mapping[str, Any]],
    data: Any,
    combine_with: str = "and",
) -> bool:
    """Combine several conditions with 'and' (all) or 'or' (any)."""
    results = [evaluate_condition(c, data) for c in conditions]
    if str(combine_with).lower() == "or":
        return any(results)
    return all(results)
