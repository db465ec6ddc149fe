"""Graph model, validation, node handlers and the definition API."""

from flowrun.graph.flow import Edge, Flow, FlowStatus, Node, NodeType
from flowrun.graph.handlers import NodeContext, NodeHandlerRegistry, default_registry
from flowrun.graph.manager import FlowManager
from flowrun.graph.validator import FlowValidator, ValidationResult, detect_cycles

__all__ = [
    "Edge",
    "Flow",
    "FlowManager",
    "FlowStatus",
    "FlowValidator",
    "Node",
    "NodeContext",
    "NodeHandlerRegistry",
    "NodeType",
    "ValidationResult",
    "default_registry",
    "detect_cycles",
]
