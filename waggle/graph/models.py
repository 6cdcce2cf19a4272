"""Pydantic models for the execution graph.

The DAG only ever grows: planner fragments are merged in, nothing is
removed. Execution status lives in TaskState, never on the nodes.
"""

from collections import deque
from collections.abc import Callable, Iterable
from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from waggle.core.errors import CycleError, DanglingEdgeError

# Id of the synthetic planning node every run starts from
ROOT_PLAN_ID = "👑"
ROOT_PLAN_NAME = "⚡️ Plan"

# Name the planner gives the goal-completion node
GOAL_NODE_NAME = "🍯 Goal"

# Local id of the per-level review node
CRITICISM_SUFFIX = "c"


# =============================================================================
# NODES AND EDGES
# =============================================================================


class DAGNode(BaseModel):
    """A single task of the plan.

    Example:
        >>> node = DAGNode(id="1-0", name="Research AgentGPT", context="...")
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Unique within an execution")
    name: str = Field(default="", description="Display title")
    context: str = Field(default="", description="Task instructions")

    @property
    def is_goal(self) -> bool:
        return self.name.strip() == GOAL_NODE_NAME

    @property
    def is_review(self) -> bool:
        """Review (criticism) nodes carry the ``-c`` suffix."""
        return self.id.endswith(f"-{CRITICISM_SUFFIX}")


class DAGEdge(BaseModel):
    """Dependency edge: ``t_id`` depends on ``s_id``."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    s_id: str = Field(..., alias="sId", description="Source node id")
    t_id: str = Field(..., alias="tId", description="Target node id")

    @property
    def key(self) -> tuple[str, str]:
        return (self.s_id, self.t_id)


# =============================================================================
# GRAPH
# =============================================================================


class DAG(BaseModel):
    """
    Directed acyclic graph of plan nodes.

    Nodes keep insertion order, which drives display order and the
    "first pending" tie-break among ready tasks.

    Example:
        >>> dag = DAG(nodes=initial_nodes("Write a haiku"))
        >>> dag = dag.merge(fragment)
        >>> dag.is_goal_reached({ROOT_PLAN_ID, "1-0"})
        False
    """

    nodes: list[DAGNode] = Field(default_factory=list)
    edges: list[DAGEdge] = Field(default_factory=list)

    @property
    def node_ids(self) -> set[str]:
        return {node.id for node in self.nodes}

    def get_node(self, node_id: str) -> DAGNode | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def incoming(self, node_id: str) -> list[DAGEdge]:
        """Edges whose target is ``node_id``."""
        return [edge for edge in self.edges if edge.t_id == node_id]

    def outgoing(self, node_id: str) -> list[DAGEdge]:
        """Edges whose source is ``node_id``."""
        return [edge for edge in self.edges if edge.s_id == node_id]

    def goal_node(self) -> DAGNode | None:
        """The goal-completion node, if the planner emitted one."""
        for node in reversed(self.nodes):
            if node.is_goal:
                return node
        return None

    # =========================================================================
    # MERGE
    # =========================================================================

    def merge(self, fragment: "DAG") -> "DAG":
        """
        Merge a fragment into this graph.

        Nodes are deduplicated by id and edges by ``(s_id, t_id)``. When the
        fragment adds nothing, ``self`` is returned unchanged so callers can
        skip redundant notifications with an identity check.

        Args:
            fragment: Nodes and edges to add.

        Returns:
            A new DAG, or ``self`` if nothing was added.
        """
        known_nodes = self.node_ids
        known_edges = {edge.key for edge in self.edges}

        new_nodes: list[DAGNode] = []
        for node in fragment.nodes:
            if node.id not in known_nodes:
                known_nodes.add(node.id)
                new_nodes.append(node)

        new_edges: list[DAGEdge] = []
        for edge in fragment.edges:
            if edge.key not in known_edges:
                known_edges.add(edge.key)
                new_edges.append(edge)

        if not new_nodes and not new_edges:
            return self

        logger.debug(f"Merged {len(new_nodes)} nodes and {len(new_edges)} edges")
        return DAG(nodes=[*self.nodes, *new_nodes], edges=[*self.edges, *new_edges])

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def validate_structure(self, strict: bool = False) -> None:
        """
        Check edge endpoints and acyclicity.

        Edge targets must always exist. Sources are only required to exist
        when ``strict`` is set; a streaming plan may still resolve them, and
        until then the target simply never becomes ready.

        Raises:
            DanglingEdgeError: If an edge references a missing node.
            CycleError: If the graph contains a cycle.
        """
        ids = self.node_ids
        for edge in self.edges:
            if edge.t_id not in ids:
                raise DanglingEdgeError(edge.s_id, edge.t_id, edge.t_id)
            if strict and edge.s_id not in ids:
                raise DanglingEdgeError(edge.s_id, edge.t_id, edge.s_id)

        cycle = self.find_cycle()
        if cycle:
            raise CycleError(cycle)

    def find_cycle(self) -> list[str] | None:
        """Return one cycle path using DFS, or None."""
        WHITE, GRAY, BLACK = 0, 1, 2
        adjacency: dict[str, list[str]] = {node.id: [] for node in self.nodes}
        for edge in self.edges:
            adjacency.setdefault(edge.s_id, []).append(edge.t_id)
        colors = {node_id: WHITE for node_id in adjacency}

        for start in adjacency:
            if colors[start] != WHITE:
                continue
            path: list[str] = []
            stack: list[tuple[str, Iterable[str]]] = [(start, iter(adjacency[start]))]
            colors[start] = GRAY
            path.append(start)
            while stack:
                node_id, neighbors = stack[-1]
                advanced = False
                for neighbor in neighbors:
                    color = colors.get(neighbor, BLACK)
                    if color == GRAY:
                        return path[path.index(neighbor):] + [neighbor]
                    if color == WHITE:
                        colors[neighbor] = GRAY
                        path.append(neighbor)
                        stack.append((neighbor, iter(adjacency.get(neighbor, []))))
                        advanced = True
                        break
                if not advanced:
                    colors[node_id] = BLACK
                    path.pop()
                    stack.pop()
        return None

    # =========================================================================
    # TRAVERSAL
    # =========================================================================

    def reachable_from(self, root_id: str) -> set[str]:
        """Ids of all nodes reachable from ``root_id``, including itself."""
        if self.get_node(root_id) is None:
            return set()
        adjacency: dict[str, list[str]] = {}
        for edge in self.edges:
            adjacency.setdefault(edge.s_id, []).append(edge.t_id)

        seen = {root_id}
        queue = deque([root_id])
        while queue:
            current = queue.popleft()
            for target in adjacency.get(current, []):
                if target not in seen:
                    seen.add(target)
                    queue.append(target)
        return seen

    def topological_order(self) -> list[str]:
        """Kahn's algorithm; ties keep insertion order."""
        ids = [node.id for node in self.nodes]
        in_degree = {node_id: 0 for node_id in ids}
        adjacency: dict[str, list[str]] = {}
        for edge in self.edges:
            if edge.s_id in in_degree and edge.t_id in in_degree:
                adjacency.setdefault(edge.s_id, []).append(edge.t_id)
                in_degree[edge.t_id] += 1

        queue = deque(node_id for node_id in ids if in_degree[node_id] == 0)
        order: list[str] = []
        while queue:
            current = queue.popleft()
            order.append(current)
            for target in adjacency.get(current, []):
                in_degree[target] -= 1
                if in_degree[target] == 0:
                    queue.append(target)
        return order

    def is_goal_reached(
        self,
        completed_tasks: set[str],
        root_id: str = ROOT_PLAN_ID,
    ) -> bool:
        """
        Check whether every schedulable node has completed.

        Schedulable nodes are those reachable from the root; without a root
        every node counts. A graph holding nothing but the root has no goal
        yet and is never reached.

        Raises:
            DanglingEdgeError: If an edge targets a node that does not exist.
        """
        ids = self.node_ids
        for edge in self.edges:
            if edge.t_id not in ids:
                raise DanglingEdgeError(edge.s_id, edge.t_id, edge.t_id)

        if root_id in ids:
            required = self.reachable_from(root_id)
        else:
            required = ids
        required.discard(root_id)

        if not required:
            return False
        return required <= completed_tasks

    def to_dict(self) -> dict[str, Any]:
        """Convert to the camelCase wire representation."""
        return self.model_dump(by_alias=True)


# =============================================================================
# ROOT HOOKUP
# =============================================================================


def initial_nodes(goal: str) -> list[DAGNode]:
    """The synthetic nodes every run starts with."""
    return [DAGNode(id=ROOT_PLAN_ID, name=ROOT_PLAN_NAME, context=goal)]


def generate_hookup_edges(dag: DAG, root_id: str = ROOT_PLAN_ID) -> list[DAGEdge]:
    """
    Edges from the root to every node without a declared dependency.

    Levels that depend on nothing would otherwise never become ready, since a
    task with no incoming edge is not schedulable on its own.
    """
    targets = {edge.t_id for edge in dag.edges}
    return [
        DAGEdge(s_id=root_id, t_id=node.id)
        for node in dag.nodes
        if node.id != root_id and node.id not in targets
    ]


def with_root(fragment: DAG, root: DAGNode) -> DAG:
    """Prepend ``root`` to a planner fragment and hook up its entry nodes."""
    nodes = [root, *(node for node in fragment.nodes if node.id != root.id)]
    rooted = DAG(nodes=nodes, edges=list(fragment.edges))
    hookups = generate_hookup_edges(rooted, root.id)
    return DAG(nodes=nodes, edges=[*hookups, *fragment.edges])


# =============================================================================
# LIVE GRAPH
# =============================================================================


GraphListener = Callable[[DAG], None]


class LiveGraph:
    """
    Single owner of a run's growing DAG.

    All writes go through ``merge`` from the planner's publication callback,
    which runs on the event loop, so merges are serialized without a lock.
    """

    def __init__(self, initial: DAG | None = None) -> None:
        self._dag = initial or DAG()
        self._listeners: list[GraphListener] = []

    @property
    def dag(self) -> DAG:
        return self._dag

    def add_listener(self, listener: GraphListener) -> None:
        self._listeners.append(listener)

    def merge(self, fragment: DAG) -> bool:
        """
        Merge ``fragment`` and notify listeners if the graph changed.

        Returns:
            True if nodes or edges were added.

        Raises:
            GraphStructureError: If the merged graph is invalid. The live
                graph is left untouched in that case.
        """
        merged = self._dag.merge(fragment)
        if merged is self._dag:
            return False

        merged.validate_structure()
        self._dag = merged
        logger.debug(
            f"Live graph now has {len(merged.nodes)} nodes and {len(merged.edges)} edges"
        )
        for listener in self._listeners:
            try:
                listener(merged)
            except Exception as e:
                logger.warning(f"Graph listener error: {e}")
        return True
