"""Levels wire format used by the streaming planner.

The planner emits an ordered mapping of level number to a list of entries.
An entry is either ``{parents: [levels]}`` or a ``{id, name, context}`` node.
Node ids are local to their level and get rewritten to ``level-localId``.

Example (YAML):

    1:
      - id: "0"
        name: Research AgentGPT
        context: Investigate its features.
      - id: c
        name: Review research
        context: Compare the findings.
    2:
      - parents: [1]
      - id: "0"
        name: 🍯 Goal
        context: Deliver the report.

Inlining the edges with the nodes lets tasks start before the plan is
finished. The functions here are pure so they can run in a worker thread.
"""

import json
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal

import yaml

from waggle.graph.models import CRITICISM_SUFFIX, DAG, DAGEdge, DAGNode

PlanFormat = Literal["yaml", "json"]

NODE_FIELDS = ("id", "name", "context")


class WireFormatError(ValueError):
    """The accumulated plan text could not be decoded."""

    pass


@dataclass
class ParseResult:
    """Outcome of parsing accumulated plan text: a fragment or an error."""

    dag: DAG | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.dag is not None


# =============================================================================
# TRANSFORM
# =============================================================================


def _level_key(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def _as_levels(data: Any) -> list[tuple[str, list[Any]]]:
    """Normalize the decoded document into ``[(level, entries), ...]``."""
    if data is None:
        return []
    if isinstance(data, Mapping):
        return [(_level_key(key), list(value or [])) for key, value in data.items()]
    if isinstance(data, list):
        # Some planners wrap each level in its own single-key mapping
        levels: list[tuple[str, list[Any]]] = []
        for item in data:
            if not isinstance(item, Mapping):
                raise WireFormatError(f"Unexpected level entry: {item!r}")
            levels.extend(_as_levels(item))
        return levels
    raise WireFormatError(f"Plan must be a mapping of levels, got {type(data).__name__}")


def _is_complete_node(item: Mapping[str, Any]) -> bool:
    """Nodes are immutable once merged, so half-streamed ones are skipped."""
    return all(item.get(field) is not None for field in NODE_FIELDS)


def transform_wire_format(data: Any) -> DAG:
    """
    Transform a (possibly partial) levels plan into nodes and edges.

    Within a level, every non-criticism node gets an edge to the level's
    criticism node (local id ``c``). A ``parents`` entry connects each parent
    level's criticism node to every non-criticism node of the current level;
    a level made only of its criticism node is connected directly. A parent
    level without a criticism node contributes all of its nodes as sources.

    Args:
        data: Decoded plan document.

    Returns:
        DAG fragment without the root node.

    Raises:
        WireFormatError: If the document has the wrong shape.

    Example:
        >>> dag = transform_wire_format({"1": [{"id": "0", "name": "a", "context": "b"}]})
        >>> [n.id for n in dag.nodes]
        ['1-0']
    """
    nodes: list[DAGNode] = []
    edges: list[DAGEdge] = []
    seen_edges: set[tuple[str, str]] = set()
    seen_nodes: set[str] = set()
    level_nodes: dict[str, list[DAGNode]] = {}

    def add_edge(source: str, target: str) -> None:
        if source == target or (source, target) in seen_edges:
            return
        seen_edges.add((source, target))
        edges.append(DAGEdge(s_id=source, t_id=target))

    for level, entries in _as_levels(data):
        parents: list[str] = []
        current: list[DAGNode] = []

        for item in entries:
            if not isinstance(item, Mapping):
                continue
            if "parents" in item:
                declared = item.get("parents") or []
                if not isinstance(declared, list):
                    declared = [declared]
                parents.extend(_level_key(parent) for parent in declared)
            if "id" in item and _is_complete_node(item):
                node = DAGNode(
                    id=f"{level}-{_level_key(item['id'])}",
                    name=str(item["name"]),
                    context=str(item["context"]),
                )
                if node.id in seen_nodes:
                    continue
                seen_nodes.add(node.id)
                current.append(node)

        level_nodes.setdefault(level, []).extend(current)
        nodes.extend(current)

        criticism_id = f"{level}-{CRITICISM_SUFFIX}"
        workers = [node for node in current if node.id != criticism_id]
        targets = workers or [node for node in current if node.id == criticism_id]

        for parent in parents:
            if parent == level:
                continue
            parent_nodes = level_nodes.get(parent, [])
            parent_criticism = f"{parent}-{CRITICISM_SUFFIX}"
            if any(node.id == parent_criticism for node in parent_nodes):
                sources = [parent_criticism]
            else:
                sources = [node.id for node in parent_nodes]
            for source in sources:
                for target in targets:
                    add_edge(source, target.id)

        if any(node.id == criticism_id for node in current):
            for node in workers:
                add_edge(node.id, criticism_id)

    return DAG(nodes=nodes, edges=edges)


# =============================================================================
# DECODING
# =============================================================================


def _scan_json(text: str) -> tuple[list[str], bool]:
    """Return the closers still owed and whether ``text`` ends inside a string."""
    closers: list[str] = []
    in_string = False
    escaped = False
    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            closers.append("}")
        elif char == "[":
            closers.append("]")
        elif char in "}]" and closers:
            closers.pop()
    return closers, in_string


def close_json(text: str) -> str:
    """Close the arrays and objects left open by a truncated JSON document."""
    closers, _ = _scan_json(text)
    return text + "".join(reversed(closers))


def _loads_partial_json(text: str, max_attempts: int = 64) -> Any:
    """
    Decode truncated JSON, trimming back to the last separator until it parses.

    Raises:
        WireFormatError: If no prefix of the text decodes.
    """
    candidate = text.rstrip()
    error: Exception | None = None
    for _ in range(max_attempts):
        _, in_string = _scan_json(candidate)
        if not in_string:
            try:
                return json.loads(close_json(candidate))
            except json.JSONDecodeError as e:
                error = e
        cut = max(candidate.rfind(","), candidate.rfind("{"), candidate.rfind("["))
        if cut < 0:
            break
        candidate = candidate[: cut + 1] if candidate[cut] in "{[" else candidate[:cut]
        candidate = candidate.rstrip()
    raise WireFormatError(f"Could not decode JSON plan: {error}")


def decode_plan_text(text: str, fmt: PlanFormat = "yaml") -> Any:
    """
    Decode accumulated plan text.

    Raises:
        WireFormatError: If the text cannot be decoded.
    """
    stripped = _strip_code_fence(text)
    if not stripped.strip():
        return None
    try:
        if fmt == "json":
            return _loads_partial_json(stripped)
        return yaml.safe_load(stripped)
    except yaml.YAMLError as e:
        raise WireFormatError(str(e)) from e


def _strip_code_fence(text: str) -> str:
    """Drop markdown fences some models wrap their output in."""
    lines = [line for line in text.splitlines() if not line.strip().startswith("```")]
    return "\n".join(lines)


def parse_plan_text(text: str, fmt: PlanFormat = "yaml") -> ParseResult:
    """
    Parse accumulated plan text into a graph fragment.

    Never raises; decoding and shape problems come back as ``error``.

    Example:
        >>> result = parse_plan_text("1:\\n  - id: 0\\n    name: a\\n    context: b\\n")
        >>> result.dag.nodes[0].id
        '1-0'
    """
    try:
        data = decode_plan_text(text, fmt)
        if data is None:
            return ParseResult(error="Empty plan")
        return ParseResult(dag=transform_wire_format(data))
    except (WireFormatError, ValueError, TypeError) as e:
        return ParseResult(error=str(e))
