"""
Edge Protocol - How nodes connect in a flow.

Edges define:
1. Source and target nodes
2. The source handle (which output port of the source node they leave from)
3. An optional declarative condition over session variables

Handles carry most of the routing: a condition node's "yes"/"no" ports,
a quick reply's "option-2" port, a message node's "keyword-pricing" port.
The per-node-type choice of handles lives in the executor; an edge only
knows its own handle and condition.

A FlowSpec is the parsed form of a stored flow. Flow records come in two
shapes, one JSON ``definition`` blob or separate ``nodes``/``edges``
columns, and both are accepted.
"""

import logging
from typing import Any

from pydantic import BaseModel, Field

from chatflow.errors import FlowDefinitionError
from chatflow.graph.conditions import EdgeRule, evaluate_edge_rule
from chatflow.graph.node import NodeSpec, NodeType
from chatflow.schemas.session_state import safe_parse_json

logger = logging.getLogger(__name__)


class EdgeSpec(BaseModel):
    """
    Specification for an edge between nodes.

    Examples:
        # Plain edge
        EdgeSpec(id="e1", source="trigger", target="welcome")

        # Leaves the "yes" port of a condition node
        EdgeSpec(id="e2", source="is-vip", target="vip-menu", source_handle="yes")

        # Only taken when a variable holds a value
        EdgeSpec(
            id="e3",
            source="lookup",
            target="found",
            condition={"variable": "http_status", "operator": "equals", "value": 200},
        )
    """

    id: str
    source: str = Field(description="Source node ID")
    target: str = Field(description="Target node ID")
    source_handle: str | None = Field(default=None, description="Output port of the source")
    condition: EdgeRule | None = Field(
        default=None, description="Declarative condition over session variables"
    )

    # Higher priority edges are followed first when several are selected
    priority: int = 0

    model_config = {"extra": "allow"}

    @classmethod
    def from_raw(cls, raw: dict[str, Any], index: int = 0) -> "EdgeSpec":
        """Parse a builder edge dict (camelCase ``sourceHandle`` accepted)."""
        if not isinstance(raw, dict) or "source" not in raw or "target" not in raw:
            raise FlowDefinitionError(f"Edge definition without source/target: {raw!r}")

        data = raw.get("data") if isinstance(raw.get("data"), dict) else {}
        handle = raw.get("sourceHandle", raw.get("source_handle"))
        condition = raw.get("condition") or data.get("condition")
        if condition is not None and not isinstance(condition, dict):
            logger.warning(f"Ignoring non-object condition on edge '{raw.get('id')}'")
            condition = None
        return cls(
            id=str(raw.get("id") or f"edge-{index}"),
            source=str(raw["source"]),
            target=str(raw["target"]),
            source_handle=str(handle) if handle else None,
            condition=condition,
            priority=int(raw.get("priority") or data.get("priority") or 0),
        )

    def condition_holds(self, variables: dict[str, Any]) -> bool:
        """Edges without a condition always hold."""
        if self.condition is None:
            return True
        return evaluate_edge_rule(self.condition, variables)


class FlowSpec(BaseModel):
    """
    A complete flow graph.

    Nodes keep their authored order, which decides the order trigger
    nodes are tried in.
    """

    id: Any
    name: str = ""
    status: str = "active"
    company_id: Any = None
    nodes: list[NodeSpec] = Field(default_factory=list)
    edges: list[EdgeSpec] = Field(default_factory=list)

    model_config = {"extra": "allow"}

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "FlowSpec":
        """
        Build a flow from a stored flow record.

        Accepts either ``definition`` (JSON text or dict holding nodes and
        edges) or separate ``nodes``/``edges`` fields (JSON text or lists).
        Malformed JSON degrades to an empty list; unknown node types raise.
        """
        definition = safe_parse_json(record.get("definition"), dict)
        if definition:
            raw_nodes = safe_parse_json(definition.get("nodes"), list)
            raw_edges = safe_parse_json(definition.get("edges"), list)
        else:
            raw_nodes = safe_parse_json(record.get("nodes"), list)
            raw_edges = safe_parse_json(record.get("edges"), list)

        return cls(
            id=record.get("id"),
            name=record.get("name") or "",
            status=record.get("status") or "active",
            company_id=record.get("company_id", record.get("companyId")),
            nodes=[NodeSpec.from_raw(n) for n in raw_nodes],
            edges=[EdgeSpec.from_raw(e, i) for i, e in enumerate(raw_edges)],
        )

    def get_node(self, node_id: str | None) -> NodeSpec | None:
        """Get a node by ID."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def get_outgoing_edges(self, node_id: str) -> list[EdgeSpec]:
        """Get all edges leaving a node, sorted by priority (stable)."""
        edges = [e for e in self.edges if e.source == node_id]
        return sorted(edges, key=lambda e: -e.priority)

    def get_incoming_edges(self, node_id: str) -> list[EdgeSpec]:
        """Get all edges entering a node."""
        return [e for e in self.edges if e.target == node_id]

    def trigger_nodes(self) -> list[NodeSpec]:
        return [n for n in self.nodes if n.type == NodeType.TRIGGER]

    def validate(self) -> list[str]:
        """Validate the graph structure."""
        errors = []

        seen_ids: set[str] = set()
        for node in self.nodes:
            if node.id in seen_ids:
                errors.append(f"Duplicate node ID: '{node.id}'")
            seen_ids.add(node.id)

        if not self.trigger_nodes():
            errors.append("Flow has no trigger node")

        for edge in self.edges:
            if not self.get_node(edge.source):
                errors.append(f"Edge '{edge.id}' references missing source '{edge.source}'")
            if not self.get_node(edge.target):
                errors.append(f"Edge '{edge.id}' references missing target '{edge.target}'")

        # Reachability from every trigger
        triggers = self.trigger_nodes()
        if not triggers:
            return errors

        reachable = set()
        to_visit = [n.id for n in triggers]
        while to_visit:
            current = to_visit.pop()
            if current in reachable:
                continue
            reachable.add(current)
            for edge in self.get_outgoing_edges(current):
                to_visit.append(edge.target)

        for node in self.nodes:
            if node.id not in reachable:
                errors.append(f"Node '{node.id}' is unreachable from any trigger")

        return errors
