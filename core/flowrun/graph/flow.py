"""
Flow Protocol - The graph a user authors.

A Flow owns:
1. Nodes - typed units of work, addressed by a graph-local ``node_id``
2. Edges - directed connections between a source handle and a target handle
3. Settings - graph-wide switches such as ``allow_cycles``

Flows are plain value objects. Persistence lives in ``flowrun.storage`` and
lifecycle operations live in ``flowrun.graph.manager``.

Example:
    Flow(
        slug="welcome_email",
        name="Send Welcome Email",
        nodes=[
            Node(node_id="start", type=NodeType.TRIGGER),
            Node(node_id="mail", type=NodeType.ACTION,
                 config={"connector": "smtp", "action": "send"}),
        ],
        edges=[Edge(source_node="start", target_node="mail")],
    )
"""

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, model_validator

DEFAULT_SOURCE_HANDLE = "output"
DEFAULT_TARGET_HANDLE = "input"


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(UTC)


def generate_label(name: str) -> str:
    """'send_welcome-email' -> 'Send Welcome Email'."""
    for sep in (".", "_", "-"):
        name = name.replace(sep, " ")
    return " ".join(part.capitalize() for part in name.split())


class NodeType(StrEnum):
    """Closed set of node types the engine knows how to interpret."""

    TRIGGER = "trigger"
    ACTION = "action"
    CONDITION = "condition"
    SWITCH = "switch"
    LOOP = "loop"
    MERGE = "merge"
    TRANSFORM = "transform"
    FILTER = "filter"
    SPLIT = "split"
    WAIT = "wait"
    HTTP = "http"
    CODE = "code"
    SET = "set"
    ERROR = "error"
    END = "end"


class FlowStatus(StrEnum):
    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"


class Node(BaseModel):
    """A typed unit of work within a flow graph."""

    id: str = Field(default_factory=new_id, description="Record id")
    node_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:8], description="Graph-local id")
    type: NodeType
    name: str = ""
    config: dict[str, Any] = Field(default_factory=dict)
    position: dict[str, float] = Field(default_factory=lambda: {"x": 0, "y": 0})

    model_config = {"extra": "allow"}

    @model_validator(mode="after")
    def _default_name(self) -> "Node":
        if not self.name:
            self.name = generate_label(self.type.value)
        return self

    @property
    def on_error(self) -> str:
        """Failure policy: 'stop' (default), 'continue' or 'retry'."""
        return str(self.config.get("on_error") or "stop")


class Edge(BaseModel):
    """A directed, optionally conditioned connection between two node handles."""

    id: str = Field(default_factory=new_id)
    source_node: str
    source_handle: str = DEFAULT_SOURCE_HANDLE
    target_node: str
    target_handle: str = DEFAULT_TARGET_HANDLE
    condition: dict[str, Any] | list[dict[str, Any]] | None = Field(
        default=None,
        description="Optional {field, operator, value} or list of them, checked against the data",
    )

    model_config = {"extra": "allow"}


class Flow(BaseModel):
    """A versioned, named automation graph."""

    id: str = Field(default_factory=new_id)
    slug: str
    name: str = ""
    description: str | None = None
    trigger_config: dict[str, Any] | None = None
    settings: dict[str, Any] = Field(default_factory=dict)
    status: FlowStatus = FlowStatus.DRAFT
    version: int = 1

    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = {"extra": "allow"}

    @model_validator(mode="after")
    def _default_name(self) -> "Flow":
        if not self.name:
            self.name = generate_label(self.slug)
        return self

    @property
    def allow_cycles(self) -> bool:
        return bool(self.settings.get("allow_cycles", False))

    def get_node(self, node_id: str) -> Node | None:
        """Get a node by its graph-local id."""
        for node in self.nodes:
            if node.node_id == node_id:
                return node
        return None

    def get_node_by_record_id(self, record_id: str) -> Node | None:
        for node in self.nodes:
            if node.id == record_id:
                return node
        return None

    def trigger_nodes(self) -> list[Node]:
        return [n for n in self.nodes if n.type == NodeType.TRIGGER]

    def entry_node(self) -> Node | None:
        """The first trigger node in definition order."""
        triggers = self.trigger_nodes()
        return triggers[0] if triggers else None

    def get_outgoing_edges(self, node_id: str) -> list[Edge]:
        """Edges leaving a node, in definition order."""
        return [e for e in self.edges if e.source_node == node_id]

    def get_incoming_edges(self, node_id: str) -> list[Edge]:
        return [e for e in self.edges if e.target_node == node_id]

    def adjacency(self) -> dict[str, list[str]]:
        """node_id -> target node_ids (edges to unknown sources are kept)."""
        graph: dict[str, list[str]] = {node.node_id: [] for node in self.nodes}
        for edge in self.edges:
            graph.setdefault(edge.source_node, []).append(edge.target_node)
        return graph
