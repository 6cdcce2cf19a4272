"""
Task scheduler for a streaming plan.

The scheduler polls the live graph with a fixed backoff, dispatches every
ready task of the current layer concurrently, and never awaits a single
task from the loop itself. Completions record their result in the sink and
their id in ``completed_tasks``; the first failure aborts the whole run.
"""

import asyncio
from typing import Any

from loguru import logger

from waggle.core.cancellation import AbortController
from waggle.core.errors import AbortedError, SchedulerStateError, TaskExecutionError
from waggle.core.state import TaskState, TaskStatus
from waggle.events.sink import EventSink
from waggle.execution.executor import TaskExecutor
from waggle.execution.packets import AgentPacket, ErrorPacket, Severity, packet_result
from waggle.graph.models import DAG, DAGEdge, DAGNode, LiveGraph, ROOT_PLAN_ID


class TaskScheduler:
    """
    Polling control loop over a growing DAG.

    A task is ready when it is pending, has at least one incoming edge, and
    every source of those edges is completed. Entry tasks are connected to
    the root by hookup edges, and the root is completed from the start, so
    they form the first layer. The goal node, and any review node not yet
    wired to a worker of its level, is held back until planning has finished.

    Example:
        >>> scheduler = TaskScheduler(live_graph, executor, sink, controller)
        >>> scheduler.mark_planning_done()
        >>> await scheduler.run()
        >>> scheduler.completed_tasks
        {'👑', '1-0', '1-c', '2-0'}
    """

    def __init__(
        self,
        live_graph: LiveGraph,
        executor: TaskExecutor,
        sink: EventSink,
        controller: AbortController,
        root_id: str = ROOT_PLAN_ID,
        poll_interval: float = 0.1,
        max_concurrent: int = 0,
    ):
        self.live_graph = live_graph
        self.executor = executor
        self.sink = sink
        self.controller = controller
        self.signal = controller.signal
        self.root_id = root_id
        self.poll_interval = poll_interval

        self.completed_tasks: set[str] = {root_id}
        self.executions_started = 0

        self._scheduled: set[str] = set()
        self._in_flight: dict[str, asyncio.Task[None]] = {}
        self._error: BaseException | None = None
        self._planning_done = False
        self._semaphore = asyncio.Semaphore(max_concurrent) if max_concurrent > 0 else None

    # =========================================================================
    # STATE
    # =========================================================================

    @property
    def planning_done(self) -> bool:
        return self._planning_done

    @property
    def in_flight(self) -> set[str]:
        return set(self._in_flight)

    @property
    def error(self) -> BaseException | None:
        return self._error

    def mark_planning_done(self) -> None:
        """Allow the goal node to run and the goal check to succeed."""
        self._planning_done = True

    def mark_completed(self, node_id: str) -> None:
        """Record a node finished outside of task execution."""
        self._scheduled.add(node_id)
        self.completed_tasks.add(node_id)

    def fail(self, error: BaseException) -> None:
        """Record a fatal error and abort the run. The first error wins."""
        if self._error is not None:
            return
        self._error = error
        logger.error(f"Run failed: {error}")
        self.controller.abort(str(error))

    # =========================================================================
    # READINESS
    # =========================================================================

    def pending_tasks(self, dag: DAG) -> list[DAGNode]:
        """Nodes that are neither the root, completed, nor already scheduled."""
        return [
            node
            for node in dag.nodes
            if node.id != self.root_id
            and node.id not in self.completed_tasks
            and node.id not in self._scheduled
        ]

    def ready_layer(self, dag: DAG, pending: list[DAGNode] | None = None) -> list[DAGNode]:
        """
        Pending tasks whose dependencies are all completed, in insertion order.

        Args:
            dag: Graph snapshot.
            pending: Precomputed pending tasks.

        Returns:
            Tasks to dispatch together.
        """
        if pending is None:
            pending = self.pending_tasks(dag)

        layer: list[DAGNode] = []
        for task in pending:
            if task.is_goal and not self._planning_done:
                continue
            incoming = dag.incoming(task.id)
            if not incoming:
                continue
            if task.is_review and not self._planning_done and not self._has_reviewees(task, incoming):
                continue
            if all(edge.s_id in self.completed_tasks for edge in incoming):
                layer.append(task)
        return layer

    @staticmethod
    def _has_reviewees(task: DAGNode, incoming: list[DAGEdge]) -> bool:
        """
        Whether a review node is wired to at least one worker of its level.

        While the plan streams, a criticism node can arrive before its
        siblings and be hooked to the root alone; it waits until an edge from
        a sibling shows up, or until planning ends.
        """
        prefix = task.id.split("-")[0] + "-"
        return any(edge.s_id.startswith(prefix) and edge.s_id != task.id for edge in incoming)

    def reviewee_results(self, task: DAGNode) -> list[TaskState]:
        """Finished results of the task's level siblings (``<base>-`` prefix)."""
        prefix = task.id.split("-")[0] + "-"
        return [
            state
            for node_id, state in self.sink.task_states.items()
            if node_id != task.id
            and node_id.startswith(prefix)
            and state.status == TaskStatus.DONE
        ]

    # =========================================================================
    # MAIN LOOP
    # =========================================================================

    async def run(self) -> None:
        """
        Schedule until the goal is reached or the run fails.

        Raises:
            TaskExecutionError: The first task failure, or any error passed
                to ``fail`` (planning errors included).
            AbortedError: If the run is cancelled.
            SchedulerStateError: If nothing is ready or in flight after
                planning finished and the goal is still unreached.
        """
        waiting = False
        try:
            while True:
                if self._error is not None:
                    self.controller.abort(str(self._error))
                    raise self._error

                if self.signal.aborted:
                    raise AbortedError(self.signal.reason or "Signal aborted")

                dag = self.live_graph.dag
                if self._planning_done and dag.is_goal_reached(self.completed_tasks, self.root_id):
                    logger.info(f"Goal reached after {self.executions_started} task executions")
                    return

                pending = self.pending_tasks(dag)
                layer = self.ready_layer(dag, pending)

                if not layer:
                    if self._planning_done and not self._in_flight:
                        raise SchedulerStateError(
                            "No tasks ready or running after planning finished, "
                            f"yet the goal is not reached ({len(pending)} pending)"
                        )
                    if not waiting:
                        logger.debug(
                            f"Waiting for dependencies: {len(pending)} pending, "
                            f"{len(self._in_flight)} running"
                        )
                        waiting = True
                    await self.signal.sleep(self.poll_interval)
                    continue

                waiting = False
                self._dispatch(layer, dag)
                # Yield so the new tasks start before the next readiness check
                await asyncio.sleep(0)
        finally:
            await self.shutdown()

    def _dispatch(self, layer: list[DAGNode], dag: DAG) -> None:
        logger.info(f"Dispatching layer: {', '.join(task.id for task in layer)}")
        for task in layer:
            self._scheduled.add(task.id)
            self.executions_started += 1
            self._in_flight[task.id] = asyncio.create_task(
                self._execute(task, dag),
                name=f"waggle-task-{task.id}",
            )

    async def _execute(self, task: DAGNode, dag: DAG) -> None:
        try:
            if self._semaphore is not None:
                async with self._semaphore:
                    packet = await self._call_executor(task, dag)
            else:
                packet = await self._call_executor(task, dag)
        except AbortedError:
            logger.debug(f"Task {task.id} stopped by abort")
        except Exception as e:
            self.sink.inject(ErrorPacket(severity=Severity.FATAL, message=str(e)), task)
            self.fail(e if isinstance(e, TaskExecutionError) else TaskExecutionError(task.id, str(e)))
        else:
            self._complete(task, packet)
        finally:
            self._in_flight.pop(task.id, None)

    async def _call_executor(self, task: DAGNode, dag: DAG) -> AgentPacket:
        self.signal.raise_if_aborted()
        return await self.executor.execute(
            task,
            dag,
            self.reviewee_results(task),
            set(self.completed_tasks),
            self.signal,
        )

    def _complete(self, task: DAGNode, packet: AgentPacket) -> None:
        state = self.sink.inject(packet, task)
        if state.status == TaskStatus.ERROR:
            self.fail(TaskExecutionError(task.id, packet_result(packet) or packet.type))
            return
        self.completed_tasks.add(task.id)
        logger.info(f"Task {task.id} completed ({len(self.completed_tasks) - 1} done)")

    async def shutdown(self) -> None:
        """Cancel task executions that are still running."""
        running = [job for job in self._in_flight.values() if not job.done()]
        if not running:
            return
        logger.info(f"Cancelling {len(running)} running tasks")
        for job in running:
            job.cancel()
        results: list[Any] = await asyncio.gather(*running, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.warning(f"Task ended with error during shutdown: {result}")
