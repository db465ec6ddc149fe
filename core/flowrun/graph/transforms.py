"""Value transforms used by transform-node mappings.

A mapping may carry ``{"transform": {"type": "<name>", "params": {...}}}``.
Unknown transform types leave the value unchanged.
"""

import json
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

# PHP date() format characters that authors use in date_format params
_DATE_TOKENS = {
    "Y": "%Y",
    "y": "%y",
    "m": "%m",
    "n": "{month}",
    "d": "%d",
    "j": "{day}",
    "H": "%H",
    "G": "{hour}",
    "i": "%M",
    "s": "%S",
    "D": "%a",
    "l": "%A",
    "M": "%b",
    "F": "%B",
    "A": "%p",
    "T": "%Z",
}


def parse_datetime(value: Any) -> datetime | None:
    """Accept datetimes, unix timestamps and ISO 8601 strings."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, UTC)
    text = str(value).strip()
    if not text:
        return None
    if text.lstrip("-").isdigit():
        return datetime.fromtimestamp(int(text), UTC)
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None


def _literal(char: str) -> str:
    return char.replace("%", "%%").replace("{", "{{").replace("}", "}}")


def format_date(value: Any, fmt: str = "Y-m-d") -> str | None:
    """Format a date using PHP-style format characters (``Y-m-d H:i:s``)."""
    moment = parse_datetime(value)
    if moment is None:
        return None
    pieces = []
    escaped = False
    for char in fmt:
        if escaped:
            pieces.append(_literal(char))
            escaped = False
        elif char == "\\":
            escaped = True
        elif char in _DATE_TOKENS:
            pieces.append(_DATE_TOKENS[char])
        else:
            pieces.append(_literal(char))
    rendered = moment.strftime("".join(pieces))
    return rendered.format(month=moment.month, day=moment.day, hour=moment.hour)


def format_number(
    value: Any,
    decimals: int = 2,
    decimal_point: str = ".",
    thousands_sep: str = ",",
) -> str:
    try:
        number = float(value)
    except (TypeError, ValueError):
        number = 0.0
    rendered = f"{number:,.{int(decimals)}f}"
    return rendered.replace(",", "\x00").replace(".", decimal_point).replace("\x00", thousands_sep)


def _json_decode(value: Any) -> Any:
    try:
        return json.loads(str(value))
    except (TypeError, ValueError):
        return None


def _join(value: Any, delimiter: str) -> str:
    if isinstance(value, (list, tuple)):
        return delimiter.join("" if v is None else str(v) for v in value)
    return "" if value is None else str(value)


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def _replace(value: Any, search: str, replacement: str) -> str:
    if search == "":
        return _text(value)
    return _text(value).replace(search, replacement)


TRANSFORMS: dict[str, Callable[[Any, dict[str, Any]], Any]] = {
    "uppercase": lambda v, p: _text(v).upper(),
    "lowercase": lambda v, p: _text(v).lower(),
    "trim": lambda v, p: _text(v).strip(),
    "split": lambda v, p: _text(v).split(p.get("delimiter", ",")),
    "join": lambda v, p: _join(v, p.get("delimiter", ",")),
    "replace": lambda v, p: _replace(v, str(p.get("search", "")), str(p.get("replace", ""))),
    "date_format": lambda v, p: format_date(v, p.get("format", "Y-m-d")),
    "number_format": lambda v, p: format_number(
        v,
        p.get("decimals", 2),
        p.get("decimal_point", "."),
        p.get("thousands_sep", ","),
    ),
    "json_encode": lambda v, p: json.dumps(v, separators=(",", ":"), default=str),
    "json_decode": lambda v, p: _json_decode(v),
    "default": lambda v, p: v if v is not None else p.get("value"),
}

SUPPORTED_TRANSFORMS = frozenset(TRANSFORMS)


def apply_transform(value: Any, transform: dict[str, Any] | str | None) -> Any:
    """Apply a ``{"type", "params"}`` transform (a bare type name also works)."""
    if not transform:
        return value
    if isinstance(transform, str):
        transform = {"type": transform}
    name = transform.get("type")
    func = TRANSFORMS.get(str(name)) if name else None
    if func is None:
        if name:
            logger.debug(f"Unknown transform '{name}', value passed through")
        return value
    return func(value, transform.get("params") or {})
