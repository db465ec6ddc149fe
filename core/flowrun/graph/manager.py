"""
Flow Manager - The definition API.

Creates, edits, validates and (de)activates flows, plus export/import and
templates. Every structural edit (flow update, node or edge CRUD) bumps the
flow version, so the store keeps one immutable snapshot per version and past
executions keep interpreting the graph they started with.

Example:
    manager = FlowManager(store)
    flow = await manager.create("welcome_email", {
        "nodes": [{"node_id": "start", "type": "trigger"}],
    })
    await manager.activate(flow.id)
"""

import logging
import re
from typing import Any

from pydantic import ValidationError

from flowrun.errors import FlowActivationError, FlowDefinitionError, FlowNotFoundError
from flowrun.graph.flow import (
    DEFAULT_SOURCE_HANDLE,
    DEFAULT_TARGET_HANDLE,
    Edge,
    Flow,
    FlowStatus,
    Node,
    generate_label,
    new_id,
    utcnow,
)
from flowrun.graph.validator import FlowValidator, ValidationResult
from flowrun.runtime.event_bus import EventBus
from flowrun.storage.base import FlowStore

logger = logging.getLogger(__name__)

EXPORT_FORMAT_VERSION = "1.0"


def _random_suffix(length: int = 4) -> str:
    return new_id()[:length]


def slugify(text: str) -> str:
    """'Send Welcome Email' -> 'send-welcome-email'."""
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")


def _build_node(data: dict[str, Any]) -> Node:
    if "type" not in data:
        raise FlowDefinitionError("Node definition requires a 'type'")
    fields = {k: data[k] for k in ("node_id", "type", "name", "config", "position") if data.get(k)}
    try:
        return Node(**fields)
    except ValidationError as e:
        raise FlowDefinitionError(f"Invalid node definition: {e}") from e


def _build_edge(data: dict[str, Any], node_ids: set[str]) -> Edge:
    source = data.get("source_node")
    target = data.get("target_node")
    if not source or not target:
        raise FlowDefinitionError("Edge definition requires 'source_node' and 'target_node'")
    for endpoint in (source, target):
        if endpoint not in node_ids:
            raise FlowDefinitionError(f"Edge references unknown node '{endpoint}'")
    return Edge(
        source_node=source,
        source_handle=data.get("source_handle") or DEFAULT_SOURCE_HANDLE,
        target_node=target,
        target_handle=data.get("target_handle") or DEFAULT_TARGET_HANDLE,
        condition=data.get("condition"),
    )


def _build_graph(
    nodes_data: list[dict[str, Any]], edges_data: list[dict[str, Any]]
) -> tuple[list[Node], list[Edge]]:
    nodes: list[Node] = []
    seen: set[str] = set()
    for node_data in nodes_data:
        node = _build_node(node_data)
        if node.node_id in seen:
            raise FlowDefinitionError(f"Duplicate node_id '{node.node_id}'")
        seen.add(node.node_id)
        nodes.append(node)
    edges = [_build_edge(edge_data, seen) for edge_data in edges_data]
    return nodes, edges


def _node_definition(node: Node) -> dict[str, Any]:
    return {
        "node_id": node.node_id,
        "type": node.type.value,
        "name": node.name,
        "config": node.config,
        "position": node.position,
    }


def _edge_definition(edge: Edge) -> dict[str, Any]:
    return {
        "source_node": edge.source_node,
        "source_handle": edge.source_handle,
        "target_node": edge.target_node,
        "target_handle": edge.target_handle,
        "condition": edge.condition,
    }


class FlowManager:
    """CRUD, lifecycle, export/import and templates for flows in a FlowStore."""

    def __init__(
        self,
        store: FlowStore,
        event_bus: EventBus | None = None,
        validator: FlowValidator | None = None,
    ):
        self.store = store
        self.event_bus = event_bus
        self.validator = validator or FlowValidator()
        self._templates: dict[str, dict[str, Any]] = {}

    # === FLOW CRUD ===

    async def create(self, slug: str, config: dict[str, Any] | None = None) -> Flow:
        """
        Create a draft flow at version 1.

        Args:
            slug: Machine name of the flow
            config: Optional ``name``, ``description``, ``trigger``,
                ``settings``, ``nodes`` and ``edges``

        Raises:
            FlowDefinitionError: duplicate node ids, dangling edges or bad node types
        """
        config = config or {}
        nodes, edges = _build_graph(config.get("nodes") or [], config.get("edges") or [])
        flow = Flow(
            slug=slug,
            name=config.get("name") or generate_label(slug),
            description=config.get("description"),
            trigger_config=config.get("trigger"),
            settings=dict(config.get("settings") or {}),
            nodes=nodes,
            edges=edges,
        )
        await self.store.save_flow(flow)
        logger.info(f"Created flow '{flow.slug}' ({flow.id}) with {len(nodes)} nodes")
        return flow

    async def get(self, flow_id: str) -> Flow | None:
        return await self.store.get_flow(flow_id)

    async def get_by_slug(self, slug: str) -> Flow | None:
        return await self.store.get_flow_by_slug(slug)

    async def list(
        self, status: FlowStatus | str | None = None, search: str | None = None
    ) -> list[Flow]:
        """Flows filtered by status and a name/description search, most recently updated first."""
        flows = await self.store.list_flows()
        if status is not None:
            flows = [f for f in flows if f.status == FlowStatus(status)]
        if search:
            needle = search.lower()
            flows = [
                f
                for f in flows
                if needle in f.name.lower() or needle in (f.description or "").lower()
            ]
        flows.sort(key=lambda f: f.updated_at, reverse=True)
        return flows

    async def update(self, flow_id: str, config: dict[str, Any]) -> Flow:
        """
        Update a flow and bump its version.

        ``settings`` are merged into the existing ones; ``nodes`` and ``edges``,
        when given, replace the whole graph.
        """
        flow = await self._require(flow_id)
        if config.get("name"):
            flow.name = config["name"]
        if config.get("description") is not None:
            flow.description = config["description"]
        if config.get("trigger") is not None:
            flow.trigger_config = config["trigger"]
        flow.settings = {**flow.settings, **(config.get("settings") or {})}

        if "nodes" in config or "edges" in config:
            nodes_data = (
                config["nodes"] if "nodes" in config else [_node_definition(n) for n in flow.nodes]
            )
            edges_data = (
                config["edges"] if "edges" in config else [_edge_definition(e) for e in flow.edges]
            )
            flow.nodes, flow.edges = _build_graph(nodes_data or [], edges_data or [])

        return await self._save_revision(flow)

    async def delete(self, flow_id: str) -> bool:
        deleted = await self.store.delete_flow(flow_id)
        if deleted:
            logger.info(f"Deleted flow {flow_id}")
        return deleted

    async def duplicate(self, flow_id: str, new_slug: str | None = None) -> Flow:
        """Copy a flow's graph into a new draft flow."""
        original = await self._require(flow_id)
        return await self.create(
            new_slug or f"{original.slug}_copy_{_random_suffix()}",
            {
                "name": f"{original.name} (Copy)",
                "description": original.description,
                "trigger": original.trigger_config,
                "settings": original.settings,
                "nodes": [_node_definition(n) for n in original.nodes],
                "edges": [_edge_definition(e) for e in original.edges],
            },
        )

    # === NODES & EDGES ===

    async def create_node(self, flow_id: str, data: dict[str, Any]) -> Node:
        flow = await self._require(flow_id)
        node = _build_node(data)
        if flow.get_node(node.node_id) is not None:
            raise FlowDefinitionError(f"Duplicate node_id '{node.node_id}'")
        flow.nodes.append(node)
        await self._save_revision(flow)
        return node

    async def update_node(self, flow_id: str, node_id: str, data: dict[str, Any]) -> Node:
        """Update a node's name, config and/or position."""
        flow = await self._require(flow_id)
        node = flow.get_node(node_id)
        if node is None:
            raise FlowDefinitionError(f"Node '{node_id}' not found in flow {flow_id}")
        if data.get("name"):
            node.name = data["name"]
        if data.get("config") is not None:
            node.config = dict(data["config"])
        if data.get("position") is not None:
            node.position = dict(data["position"])
        await self._save_revision(flow)
        return node

    async def delete_node(self, flow_id: str, node_id: str) -> bool:
        """Remove a node and every edge touching it."""
        flow = await self._require(flow_id)
        if flow.get_node(node_id) is None:
            return False
        flow.nodes = [n for n in flow.nodes if n.node_id != node_id]
        flow.edges = [
            e for e in flow.edges if e.source_node != node_id and e.target_node != node_id
        ]
        await self._save_revision(flow)
        return True

    async def create_edge(self, flow_id: str, data: dict[str, Any]) -> Edge:
        flow = await self._require(flow_id)
        edge = _build_edge(data, {n.node_id for n in flow.nodes})
        flow.edges.append(edge)
        await self._save_revision(flow)
        return edge

    async def delete_edge(self, flow_id: str, edge_id: str) -> bool:
        flow = await self._require(flow_id)
        remaining = [e for e in flow.edges if e.id != edge_id]
        if len(remaining) == len(flow.edges):
            return False
        flow.edges = remaining
        await self._save_revision(flow)
        return True

    # === EXPORT / IMPORT ===

    async def export(self, flow_id: str) -> dict[str, Any]:
        """Portable definition of a flow (no ids, status or version)."""
        flow = await self._require(flow_id)
        return {
            "version": EXPORT_FORMAT_VERSION,
            "exported_at": utcnow().isoformat(),
            "flow": {
                "slug": flow.slug,
                "name": flow.name,
                "description": flow.description,
                "trigger": flow.trigger_config,
                "settings": flow.settings,
                "nodes": [_node_definition(n) for n in flow.nodes],
                "edges": [_edge_definition(e) for e in flow.edges],
            },
        }

    async def import_flow(self, data: dict[str, Any]) -> Flow:
        """Create a draft flow from ``export()`` output (or a bare flow definition)."""
        flow_data = data.get("flow", data)
        return await self.create(flow_data.get("slug") or _random_suffix(8), flow_data)

    # === LIFECYCLE ===

    async def validate(self, flow_id: str) -> ValidationResult:
        flow = await self._require(flow_id)
        return self.validator.validate(flow)

    async def activate(self, flow_id: str) -> Flow:
        """
        Validate and activate a flow.

        Raises:
            FlowActivationError: validation reported errors
        """
        flow = await self._require(flow_id)
        result = self.validator.validate(flow)
        if not result.valid:
            logger.warning(f"Refusing to activate flow '{flow.slug}': {result.error}")
            raise FlowActivationError("Flow validation failed", result.errors)

        flow.status = FlowStatus.ACTIVE
        flow.updated_at = utcnow()
        await self.store.save_flow(flow)
        logger.info(f"✓ Activated flow '{flow.slug}' v{flow.version}")
        if self.event_bus:
            await self.event_bus.emit_flow_activated(flow.id, flow.version)
        return flow

    async def deactivate(self, flow_id: str) -> Flow:
        flow = await self._require(flow_id)
        flow.status = FlowStatus.INACTIVE
        flow.updated_at = utcnow()
        await self.store.save_flow(flow)
        logger.info(f"Deactivated flow '{flow.slug}'")
        if self.event_bus:
            await self.event_bus.emit_flow_deactivated(flow.id)
        return flow

    async def get_status(self, flow_id: str) -> FlowStatus:
        return (await self._require(flow_id)).status

    # === TEMPLATES ===

    def register_template(self, name: str, template: dict[str, Any]) -> "FlowManager":
        self._templates[name] = dict(template)
        return self

    def list_templates(self) -> dict[str, dict[str, Any]]:
        return dict(self._templates)

    async def create_from_template(
        self, name: str, overrides: dict[str, Any] | None = None
    ) -> Flow:
        """Create a flow from a registered template; ``overrides`` win over template keys."""
        if name not in self._templates:
            raise FlowDefinitionError(f"Template not found: {name}")
        overrides = overrides or {}
        config = {**self._templates[name], **overrides}
        slug = overrides.get("slug") or f"{slugify(config.get('name') or name)}_{_random_suffix()}"
        return await self.create(slug, config)

    # === HELPERS ===

    async def _require(self, flow_id: str) -> Flow:
        flow = await self.store.get_flow(flow_id)
        if flow is None:
            raise FlowNotFoundError(flow_id)
        return flow

    async def _save_revision(self, flow: Flow) -> Flow:
        flow.version += 1
        flow.updated_at = utcnow()
        await self.store.save_flow(flow)
        logger.debug(f"Saved flow '{flow.slug}' v{flow.version}")
        return flow
