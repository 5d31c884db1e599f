"""Flow graph structures: nodes, edges, conditions and reply matching."""

from chatflow.graph.conditions import EdgeRule, evaluate_condition_node, evaluate_edge_rule
from chatflow.graph.edge import EdgeSpec, FlowSpec
from chatflow.graph.node import (
    ExecutionContext,
    NodeCategory,
    NodeExecutor,
    NodeSpec,
    NodeType,
    keyword_handle,
    normalize_node_type,
    requires_user_input,
)
from chatflow.graph.user_input import ExpectedInputType, InputMatch, match_waiting_input

__all__ = [
    # Nodes
    "ExecutionContext",
    "NodeCategory",
    "NodeExecutor",
    "NodeSpec",
    "NodeType",
    "keyword_handle",
    "normalize_node_type",
    "requires_user_input",
    # Edges
    "EdgeRule",
    "EdgeSpec",
    "FlowSpec",
    "evaluate_condition_node",
    "evaluate_edge_rule",
    # Replies
    "ExpectedInputType",
    "InputMatch",
    "match_waiting_input",
]
