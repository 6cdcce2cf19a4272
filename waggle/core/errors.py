"""Exception hierarchy for Waggle runs.

Structural planning errors, task execution errors, cancellation and
scheduler invariant violations each get their own type so callers can tell
an aborted run from a failed one.
"""


class WaggleError(Exception):
    """Base exception for Waggle errors."""

    pass


class PlanningError(WaggleError):
    """The planner produced no usable plan."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GraphStructureError(PlanningError):
    """The plan graph violates a structural invariant."""

    pass


class DanglingEdgeError(GraphStructureError):
    """An edge references a node that is not part of the graph."""

    def __init__(self, source_id: str, target_id: str, missing_id: str) -> None:
        super().__init__(
            f"Edge {source_id} -> {target_id} references unknown node {missing_id}"
        )
        self.source_id = source_id
        self.target_id = target_id
        self.missing_id = missing_id


class CycleError(GraphStructureError):
    """The plan graph contains a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(f"Circular dependency detected: {' -> '.join(cycle)}")
        self.cycle = cycle


class TaskExecutionError(WaggleError):
    """A task failed; fatal for the whole run."""

    def __init__(self, task_id: str, message: str) -> None:
        super().__init__(f"Task {task_id} failed: {message}")
        self.task_id = task_id


class AbortedError(WaggleError):
    """The run was cancelled through its abort signal."""

    pass


class SchedulerStateError(WaggleError):
    """Nothing is left to schedule but the goal has not been reached."""

    pass
