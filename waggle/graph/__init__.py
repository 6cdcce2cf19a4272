"""Execution graph: DAG models and the levels wire format."""

from waggle.graph.models import (
    CRITICISM_SUFFIX,
    DAG,
    GOAL_NODE_NAME,
    ROOT_PLAN_ID,
    ROOT_PLAN_NAME,
    DAGEdge,
    DAGNode,
    LiveGraph,
    generate_hookup_edges,
    initial_nodes,
    with_root,
)
from waggle.graph.wire_format import (
    ParseResult,
    WireFormatError,
    decode_plan_text,
    parse_plan_text,
    transform_wire_format,
)

__all__ = [
    # Models
    "CRITICISM_SUFFIX",
    "DAG",
    "DAGEdge",
    "DAGNode",
    "GOAL_NODE_NAME",
    "LiveGraph",
    "ROOT_PLAN_ID",
    "ROOT_PLAN_NAME",
    "generate_hookup_edges",
    "initial_nodes",
    "with_root",
    # Wire format
    "ParseResult",
    "WireFormatError",
    "decode_plan_text",
    "parse_plan_text",
    "transform_wire_format",
]
