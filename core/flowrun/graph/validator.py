"""Structural validation for flow graphs.

Validation never raises: problems come back as a ``ValidationResult`` value.
Errors block activation, warnings are informational.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from flowrun.graph.conditions import SUPPORTED_OPERATORS
from flowrun.graph.flow import Flow, Node, NodeType

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    """Result of validating a flow."""

    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def error(self) -> str:
        """Get combined error message."""
        return "; ".join(self.errors) if self.errors else ""

    def to_dict(self) -> dict[str, Any]:
        return {"valid": self.valid, "errors": list(self.errors), "warnings": list(self.warnings)}


def detect_cycles(adjacency: Mapping[str, list[str]]) -> bool:
    """
    True iff the directed graph has a cycle.

    Depth-first search with an explicit recursion stack: a cycle exists only
    when a neighbour is still on the stack. Reaching an already finished node
    (a diamond) is not a cycle.
    """
    visited: set[str] = set()
    on_stack: set[str] = set()

    for root in adjacency:
        if root in visited:
            continue
        visited.add(root)
        on_stack.add(root)
        stack: list[tuple[str, int]] = [(root, 0)]
        while stack:
            node_id, index = stack[-1]
            neighbours = adjacency.get(node_id, [])
            if index >= len(neighbours):
                stack.pop()
                on_stack.discard(node_id)
                continue
            stack[-1] = (node_id, index + 1)
            neighbour = neighbours[index]
            if neighbour in on_stack:
                return True
            if neighbour not in visited:
                visited.add(neighbour)
                on_stack.add(neighbour)
                stack.append((neighbour, 0))
    return False


def _reachable_from(flow: Flow, roots: list[str]) -> set[str]:
    seen: set[str] = set()
    to_visit = list(roots)
    while to_visit:
        current = to_visit.pop()
        if current in seen:
            continue
        seen.add(current)
        for edge in flow.get_outgoing_edges(current):
            to_visit.append(edge.target_node)
    return seen


def _conditions_of(node: Node) -> list[Any]:
    conditions = node.config.get("conditions") or []
    return [conditions] if isinstance(conditions, dict) else list(conditions)


class FlowValidator:
    """
    Checks a flow before activation.

    Order of checks:
    1. At least one trigger node
    2. Connectivity (unconnected / unreachable nodes are warnings)
    3. Per-type required config, duplicate node ids, dangling edges
    4. Cycles, unless ``settings.allow_cycles`` is set
    """

    def validate(self, flow: Flow) -> ValidationResult:
        errors: list[str] = []
        warnings: list[str] = []

        triggers = flow.trigger_nodes()
        if not triggers:
            errors.append("Flow must have at least one trigger node")
        elif len(triggers) > 1:
            warnings.append(
                f"Flow has {len(triggers)} trigger nodes; "
                f"'{triggers[0].name}' is used as the entry point"
            )

        connected: set[str] = set()
        for edge in flow.edges:
            connected.add(edge.source_node)
            connected.add(edge.target_node)

        reachable = _reachable_from(flow, [t.node_id for t in triggers])
        for node in flow.nodes:
            if node.type == NodeType.TRIGGER:
                continue
            if node.node_id not in connected:
                warnings.append(f"Node '{node.name}' is not connected")
            elif triggers and node.node_id not in reachable:
                warnings.append(f"Node '{node.name}' is not reachable from a trigger")

        seen_ids: set[str] = set()
        for node in flow.nodes:
            if node.node_id in seen_ids:
                errors.append(f"Duplicate node id '{node.node_id}'")
            seen_ids.add(node.node_id)
            node_errors, node_warnings = self.validate_node(node)
            errors.extend(node_errors)
            warnings.extend(node_warnings)

        for edge in flow.edges:
            if edge.source_node not in seen_ids:
                errors.append(f"Edge '{edge.id}' references missing source '{edge.source_node}'")
            if edge.target_node not in seen_ids:
                errors.append(f"Edge '{edge.id}' references missing target '{edge.target_node}'")

        if not flow.allow_cycles and detect_cycles(flow.adjacency()):
            errors.append("Flow contains cycles which are not allowed")

        if errors:
            logger.debug(f"Flow '{flow.slug}' failed validation: {errors}")
        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

    def validate_node(self, node: Node) -> tuple[list[str], list[str]]:
        """Type-specific config checks. Returns (errors, warnings)."""
        errors: list[str] = []
        warnings: list[str] = []
        config = node.config

        match node.type:
            case NodeType.ACTION:
                if not config.get("connector"):
                    errors.append(f"Node '{node.name}': connector is required")
                if not config.get("action"):
                    errors.append(f"Node '{node.name}': action is required")
            case NodeType.CONDITION:
                if not config.get("conditions"):
                    errors.append(f"Node '{node.name}': conditions are required")
            case NodeType.LOOP:
                if not config.get("array_path"):
                    errors.append(f"Node '{node.name}': array path is required")
            case NodeType.HTTP:
                if not config.get("url"):
                    errors.append(f"Node '{node.name}': URL is required")

        if node.type in (NodeType.CONDITION, NodeType.FILTER):
            for condition in _conditions_of(node):
                operator = condition.get("operator", "==") if isinstance(condition, dict) else None
                if operator not in SUPPORTED_OPERATORS:
                    warnings.append(f"Node '{node.name}': unknown operator '{operator}'")

        return errors, warnings
