"""
Node Handlers - Pure per-type logic.

Each handler is ``(node, NodeContext) -> NodeOutcome``: it reads the context,
returns either an output dict or a signal (see ``flowrun.graph.signals``), and
never performs I/O itself. The engine owns traversal, persistence and the
collaborators that carry out ``RunAction`` / ``HttpRequest`` / ``RunCode``.

Handlers are looked up through a ``NodeHandlerRegistry`` keyed by
``NodeType``. ``default_registry()`` covers every built-in type; extra
handlers are registered at startup:

    registry = default_registry()
    registry.register(NodeType.CODE, my_code_handler)
"""

import copy
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from flowrun.graph.conditions import evaluate_conditions, loose_equals
from flowrun.graph.expressions import ResolutionScope, data_get, data_set, resolve, resolve_input
from flowrun.graph.flow import Node, NodeType, utcnow
from flowrun.graph.signals import (
    Branch,
    End,
    HttpRequest,
    Loop,
    NodeOutcome,
    RaiseError,
    RunAction,
    RunCode,
    Split,
    Wait,
)
from flowrun.graph.transforms import apply_transform

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_KEY = "items"

# wait node units -> milliseconds
_UNIT_MS = {
    "ms": 1,
    "milliseconds": 1,
    "s": 1000,
    "seconds": 1000,
    "m": 60_000,
    "minutes": 60_000,
    "h": 3_600_000,
    "hours": 3_600_000,
    "d": 86_400_000,
    "days": 86_400_000,
}


@dataclass(frozen=True)
class NodeContext:
    """Read-only view of an execution handed to a handler."""

    trigger_data: dict[str, Any] = field(default_factory=dict)
    data: dict[str, Any] = field(default_factory=dict)
    node_outputs: dict[str, Any] = field(default_factory=dict)
    inputs: list[Any] = field(default_factory=list)  # predecessor outputs, edge order
    connections: dict[str, Any] = field(default_factory=dict)
    variables: dict[str, Any] = field(default_factory=dict)
    now: datetime = field(default_factory=utcnow)
    execution_id: str | None = None

    def scope(self, data: dict[str, Any] | None = None) -> ResolutionScope:
        return ResolutionScope(
            data=self.data if data is None else data,
            trigger_data=self.trigger_data,
            node_outputs=self.node_outputs,
            variables=self.variables,
        )


NodeHandler = Callable[[Node, NodeContext], NodeOutcome]


def _as_items(value: Any) -> list[Any]:
    """Missing -> [], list -> list, anything else -> [value]."""
    if value is None or value == "":
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _resolved_conditions(conditions: Any, ctx: NodeContext) -> list[dict[str, Any]]:
    if isinstance(conditions, dict):
        conditions = [conditions]
    scope = ctx.scope()
    return [{**c, "value": resolve(c.get("value"), scope)} for c in conditions or []]


# === HANDLERS ===


def handle_trigger(node: Node, ctx: NodeContext) -> NodeOutcome:
    return dict(ctx.trigger_data)


def handle_action(node: Node, ctx: NodeContext) -> NodeOutcome:
    connector = node.config.get("connector")
    action = node.config.get("action")
    if not connector or not action:
        raise ValueError("Action node missing connector or action configuration")
    connection_id = node.config.get("connection_id") or ctx.connections.get(connector)
    return RunAction(
        connector=connector,
        action=action,
        connection_id=connection_id,
        input=resolve_input(node.config.get("input") or {}, ctx.scope()),
    )


def handle_condition(node: Node, ctx: NodeContext) -> NodeOutcome:
    conditions = _resolved_conditions(node.config.get("conditions"), ctx)
    result = evaluate_conditions(conditions, ctx.data, node.config.get("combine_with", "and"))
    return Branch(handle="true" if result else "false", output={"result": result})


def handle_switch(node: Node, ctx: NodeContext) -> NodeOutcome:
    value = data_get(ctx.data, node.config.get("field") or "")
    for case in node.config.get("cases") or []:
        if loose_equals(value, case.get("value")):
            branch = case.get("branch") or str(case.get("value"))
            return Branch(handle=branch, output={"value": value, "branch": branch})
    branch = node.config.get("default") or "default"
    return Branch(handle=branch, output={"value": value, "branch": branch})


def handle_loop(node: Node, ctx: NodeContext) -> NodeOutcome:
    items = _as_items(data_get(ctx.data, node.config.get("array_path") or ""))
    return Loop(
        items=items,
        item_var=node.config.get("item_variable") or "item",
        index_var=node.config.get("index_variable") or "index",
    )


def _zip(collections: list[list[Any]]) -> list[list[Any]]:
    if not collections:
        return []
    width = max(len(c) for c in collections)
    return [[c[i] if i < len(c) else None for c in collections] for i in range(width)]


def _collection(value: Any) -> list[Any]:
    if isinstance(value, dict):
        return list(value.values())
    return _as_items(value)


def handle_merge(node: Node, ctx: NodeContext) -> NodeOutcome:
    mode = node.config.get("mode") or "merge"
    output_key = node.config.get("output_key") or DEFAULT_OUTPUT_KEY
    inputs = ctx.inputs

    if mode == "merge":
        merged: dict[str, Any] = {}
        for item in inputs:
            if isinstance(item, dict):
                merged.update(item)
        return merged
    if mode == "concat":
        flat: list[Any] = []
        for item in inputs:
            flat.extend(_collection(item))
        return {output_key: flat}
    if mode == "zip":
        return {output_key: _zip([_collection(item) for item in inputs])}

    logger.warning(f"Unknown merge mode '{mode}' on node {node.node_id}, using first input")
    first = inputs[0] if inputs else {}
    return first if isinstance(first, dict) else {output_key: first}


def handle_transform(node: Node, ctx: NodeContext) -> NodeOutcome:
    result: dict[str, Any] = {}
    for mapping in node.config.get("mappings") or []:
        value = data_get(ctx.data, mapping.get("source") or "")
        value = apply_transform(value, mapping.get("transform"))
        data_set(result, mapping.get("target") or "", value)
    return result


def handle_filter(node: Node, ctx: NodeContext) -> NodeOutcome:
    output_key = node.config.get("output_key") or DEFAULT_OUTPUT_KEY
    source = data_get(ctx.data, node.config.get("array_path") or "")
    items = source if isinstance(source, list) else []
    conditions = _resolved_conditions(node.config.get("conditions"), ctx)
    kept = [item for item in items if evaluate_conditions(conditions, item)]
    return {output_key: kept, "count": len(kept)}


def handle_split(node: Node, ctx: NodeContext) -> NodeOutcome:
    items = _as_items(data_get(ctx.data, node.config.get("array_path") or ""))
    return Split(items=items, item_var=node.config.get("item_variable") or "item")


def handle_wait(node: Node, ctx: NodeContext) -> NodeOutcome:
    duration = node.config.get("duration", 1000)
    unit = str(node.config.get("unit") or "ms").lower()
    try:
        duration_ms = int(float(duration) * _UNIT_MS.get(unit, 1))
    except (TypeError, ValueError):
        raise ValueError(f"Invalid wait duration: {duration!r}") from None
    return Wait(resume_at=ctx.now + timedelta(milliseconds=duration_ms), duration_ms=duration_ms)


def handle_http(node: Node, ctx: NodeContext) -> NodeOutcome:
    scope = ctx.scope()
    timeout = node.config.get("timeout")
    return HttpRequest(
        url=str(resolve(node.config.get("url") or "", scope)),
        method=str(node.config.get("method") or "GET").upper(),
        headers=resolve_input(node.config.get("headers") or {}, scope),
        body=resolve_input(node.config.get("body"), scope),
        query=resolve_input(node.config.get("query") or {}, scope),
        timeout=float(timeout) if timeout is not None else None,
    )


def handle_code(node: Node, ctx: NodeContext) -> NodeOutcome:
    return RunCode(
        code=node.config.get("code") or "",
        language=node.config.get("language") or "javascript",
    )


def handle_set(node: Node, ctx: NodeContext) -> NodeOutcome:
    result = copy.deepcopy(ctx.data)
    for assignment in node.config.get("assignments") or []:
        value = resolve(assignment.get("value", ""), ctx.scope(result))
        data_set(result, assignment.get("key") or "", value)
    return result


def handle_error(node: Node, ctx: NodeContext) -> NodeOutcome:
    action = node.config.get("action") or "throw"
    if action not in ("throw", "log", "ignore"):
        raise ValueError(f"Unknown error action: {action}")
    message = resolve(node.config.get("message") or "Flow error", ctx.scope())
    return RaiseError(message=str(message), action=action)


def handle_end(node: Node, ctx: NodeContext) -> NodeOutcome:
    return End()


class NodeHandlerRegistry:
    """Maps each NodeType to its handler."""

    def __init__(self, handlers: dict[NodeType, NodeHandler] | None = None):
        self._handlers: dict[NodeType, NodeHandler] = dict(handlers or {})

    def register(self, node_type: NodeType | str, handler: NodeHandler) -> None:
        """Register (or replace) the handler for a node type."""
        self._handlers[NodeType(node_type)] = handler
        logger.debug(f"Registered handler for node type '{node_type}'")

    def get(self, node_type: NodeType | str) -> NodeHandler | None:
        return self._handlers.get(NodeType(node_type))

    def __contains__(self, node_type: object) -> bool:
        return node_type in self._handlers

    def types(self) -> list[NodeType]:
        return list(self._handlers)


BUILTIN_HANDLERS: dict[NodeType, NodeHandler] = {
    NodeType.TRIGGER: handle_trigger,
    NodeType.ACTION: handle_action,
    NodeType.CONDITION: handle_condition,
    NodeType.SWITCH: handle_switch,
    NodeType.LOOP: handle_loop,
    NodeType.MERGE: handle_merge,
    NodeType.TRANSFORM: handle_transform,
    NodeType.FILTER: handle_filter,
    NodeType.SPLIT: handle_split,
    NodeType.WAIT: handle_wait,
    NodeType.HTTP: handle_http,
    NodeType.CODE: handle_code,
    NodeType.SET: handle_set,
    NodeType.ERROR: handle_error,
    NodeType.END: handle_end,
}


def default_registry() -> NodeHandlerRegistry:
    """A registry with a handler for every built-in node type."""
    return NodeHandlerRegistry(BUILTIN_HANDLERS)
