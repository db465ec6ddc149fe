"""
Expression Resolver - ``{{ path }}`` templates and dot-path access.

Resolution order for a token path:
    trigger.<path>          -> original trigger payload
    node.<nodeId>.<path>    -> a prior node's recorded output
    variables.<path>        -> run variables passed to execute()
    <path>                  -> the live data bag

Resolution never raises: unresolved paths become "".
"""

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

TOKEN_PATTERN = re.compile(r"\{\{\s*([^}]+?)\s*\}\}")

_MISSING = object()


def data_get(target: Any, path: str | None, default: Any = None) -> Any:
    """
    Read a dot-notation path from nested dicts/lists.

    An empty path returns the target itself. Numeric segments index lists.
    """
    if path is None or path == "":
        return target
    current = target
    for segment in str(path).split("."):
        if isinstance(current, Mapping):
            if segment not in current:
                return default
            current = current[segment]
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(segment)]
            except (ValueError, IndexError):
                return default
        else:
            return default
    return current


def data_set(target: dict[str, Any], path: str, value: Any) -> dict[str, Any]:
    """Write a dot-notation path into a dict, creating intermediate dicts."""
    if not path:
        return target
    segments = str(path).split(".")
    current: Any = target
    for segment in segments[:-1]:
        if isinstance(current, list):
            try:
                current = current[int(segment)]
                continue
            except (ValueError, IndexError):
                return target
        nxt = current.get(segment)
        if not isinstance(nxt, (dict, list)):
            nxt = {}
            current[segment] = nxt
        current = nxt
    last = segments[-1]
    if isinstance(current, list):
        try:
            current[int(last)] = value
        except (ValueError, IndexError):
            pass
    else:
        current[last] = value
    return target


@dataclass
class ResolutionScope:
    """What a template may read from."""

    data: dict[str, Any] = field(default_factory=dict)
    trigger_data: dict[str, Any] = field(default_factory=dict)
    node_outputs: dict[str, Any] = field(default_factory=dict)
    variables: dict[str, Any] = field(default_factory=dict)


def lookup(path: str, scope: ResolutionScope) -> Any:
    """Resolve a single token path; returns "" when nothing matches."""
    path = path.strip()
    if path.startswith("trigger."):
        return data_get(scope.trigger_data, path[len("trigger.") :], "")
    if path == "trigger":
        return scope.trigger_data
    if path.startswith("node."):
        parts = path[len("node.") :].split(".", 1)
        node_output = scope.node_outputs.get(parts[0], _MISSING)
        if node_output is _MISSING:
            return ""
        return data_get(node_output, parts[1] if len(parts) > 1 else "", "")
    if path.startswith("variables."):
        return data_get(scope.variables, path[len("variables.") :], "")
    return data_get(scope.data, path, "")


def stringify(value: Any) -> str:
    """Render a resolved value inside a larger string."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), default=str)
    return str(value)


def resolve(value: Any, scope: ResolutionScope) -> Any:
    """
    Resolve every ``{{ path }}`` occurrence in a string.

    A string that is exactly one token returns the raw value (types are
    preserved). Non-string values pass through untouched.
    """
    if not isinstance(value, str):
        return value

    whole = TOKEN_PATTERN.fullmatch(value.strip())
    if whole and value.strip() == value:
        resolved = lookup(whole.group(1), scope)
        return "" if resolved is None else resolved

    return TOKEN_PATTERN.sub(lambda m: stringify(lookup(m.group(1), scope)), value)


def resolve_input(value: Any, scope: ResolutionScope) -> Any:
    """Resolve templates recursively through dicts and lists."""
    if isinstance(value, dict):
        return {key: resolve_input(item, scope) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_input(item, scope) for item in value]
    return resolve(value, scope)
