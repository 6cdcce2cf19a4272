"""Main Waggle orchestrator - plans and executes a goal as a task graph.

Planning and scheduling run side by side: the scheduler starts as soon as
the planner has streamed the first task and keeps polling the live graph
while the rest of the plan arrives.
"""

import asyncio
import sys
from collections.abc import Callable
from pathlib import Path
from uuid import uuid4

import httpx
from loguru import logger

from waggle.core.cancellation import AbortController
from waggle.core.config import Settings, get_settings
from waggle.core.errors import AbortedError, PlanningError, WaggleError
from waggle.core.state import RunStatus, WaggleDanceResult
from waggle.events.persistence import ResultStore
from waggle.events.sink import EventSink
from waggle.execution.executor import TaskExecutor
from waggle.execution.packets import DonePacket, ErrorPacket, Severity, WorkingPacket
from waggle.execution.scheduler import TaskScheduler
from waggle.graph.models import DAG, DAGNode, LiveGraph, initial_nodes
from waggle.planning.planner import StreamingPlanParser

GraphCallback = Callable[[DAG], None]


class WaggleDance:
    """
    Main Waggle orchestrator class.

    Runs one goal at a time:
    1. Stream a plan from the planning service into a live graph
    2. Schedule ready tasks as soon as their dependencies complete
    3. Route every packet through the event sink
    4. Stop when every task reachable from the root is done, or on the
       first failure

    Example:
        >>> waggle = WaggleDance()
        >>> result = await waggle.run("Compare the top three Python web frameworks")
        >>> result.status
        <RunStatus.COMPLETED: 'completed'>
        >>> result.task_results["3-0"].result
        'FastAPI is the best fit because ...'
    """

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
        configure_logging: bool = True,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            settings: Optional settings override. Uses default if not provided.
            client: Optional httpx client shared by all service calls.
            configure_logging: Install the loguru sinks.
        """
        self.settings = settings or get_settings()
        self._client = client
        self._controller: AbortController | None = None
        self.status = RunStatus.PENDING

        self.live_graph: LiveGraph | None = None
        self.sink: EventSink | None = None
        self.scheduler: TaskScheduler | None = None

        if configure_logging:
            self._configure_logging()

    def _configure_logging(self) -> None:
        """Configure loguru based on settings."""
        logger.remove()  # Remove default handler

        log_format = (
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
            "<level>{message}</level>"
        )

        logs_dir = Path(self.settings.waggle_logs_dir)
        logs_dir.mkdir(parents=True, exist_ok=True)

        logger.add(
            str(logs_dir / "waggle_{time:YYYY-MM-DD}.log"),
            rotation="1 day",
            retention="7 days",
            level=self.settings.waggle_log_level,
            format=log_format,
        )

        # Console output goes to stderr so stdout stays free for results
        logger.add(
            lambda msg: print(msg, end="", file=sys.stderr),
            level="DEBUG" if self.settings.waggle_debug else self.settings.waggle_log_level,
            format=log_format,
            colorize=True,
        )

    # =========================================================================
    # CONTROL
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return self._controller is not None and not self._controller.signal.aborted

    def stop(self, reason: str = "Stopped by user") -> None:
        """Abort the current run, if any."""
        if self._controller is not None:
            self._controller.abort(reason)

    # =========================================================================
    # RUN
    # =========================================================================

    async def run(
        self,
        goal: str,
        goal_id: str | None = None,
        execution_id: str | None = None,
        abort_controller: AbortController | None = None,
        planner: StreamingPlanParser | None = None,
        executor: TaskExecutor | None = None,
        sink: EventSink | None = None,
        on_graph: GraphCallback | None = None,
    ) -> WaggleDanceResult:
        """
        Plan and execute a goal.

        A run started on an instance that is still running aborts the
        previous run first.

        Args:
            goal: Natural language goal.
            goal_id: Optional goal id (generated if not provided).
            execution_id: Optional run id (generated if not provided).
            abort_controller: Optional controller the caller keeps to cancel.
            planner: Optional planner override.
            executor: Optional executor override.
            sink: Optional event sink; observers attached to it see every packet.
            on_graph: Called whenever the live graph grows.

        Returns:
            Run result. Failed and aborted runs carry their error and every
            task result recorded before the run ended.
        """
        goal_id = goal_id or str(uuid4())
        execution_id = execution_id or str(uuid4())

        if self.is_running:
            logger.warning("Superseding the previous run")
            self.stop("Superseded by a new run")

        controller = abort_controller or AbortController()
        self._controller = controller
        self.status = RunStatus.PLANNING

        sink = sink or EventSink(
            goal_id=goal_id,
            execution_id=execution_id,
            result_store=ResultStore(
                self.settings.result_url,
                client=self._client,
                timeout=self.settings.waggle_request_timeout,
            ),
        )
        root = initial_nodes(goal)[0]
        live_graph = LiveGraph(DAG(nodes=[root]))
        if on_graph is not None:
            live_graph.add_listener(on_graph)

        planner = planner or StreamingPlanParser.from_settings(self.settings, client=self._client)
        executor = executor or TaskExecutor.from_settings(
            self.settings,
            sink,
            goal=goal,
            goal_id=goal_id,
            execution_id=execution_id,
            client=self._client,
        )
        scheduler = TaskScheduler(
            live_graph,
            executor,
            sink,
            controller,
            root_id=root.id,
            poll_interval=self.settings.waggle_poll_interval,
            max_concurrent=self.settings.waggle_max_concurrent_tasks,
        )
        self.live_graph, self.sink, self.scheduler = live_graph, sink, scheduler

        logger.info(f"Starting run {execution_id} for goal: {goal[:100]}")

        ready = asyncio.Event()
        planning = asyncio.create_task(
            self._plan(planner, goal, goal_id, execution_id, controller, live_graph, scheduler, sink, root, ready),
            name=f"waggle-plan-{execution_id}",
        )

        def on_abort(reason: str) -> None:
            ready.set()
            if not planning.done() and asyncio.current_task() is not planning:
                planning.cancel()

        controller.signal.add_callback(on_abort)

        status = RunStatus.FAILED
        error: Exception | None = None
        try:
            await ready.wait()
            await scheduler.run()
            status = RunStatus.COMPLETED
        except AbortedError as e:
            status, error = RunStatus.ABORTED, e
            logger.warning(f"Run {execution_id} aborted: {e}")
        except WaggleError as e:
            status, error = RunStatus.FAILED, e
            logger.error(f"Run {execution_id} failed: {e}")
        finally:
            if not planning.done():
                planning.cancel()
            await asyncio.gather(planning, return_exceptions=True)
            await sink.flush()
            if self._controller is controller:
                self._controller = None
                self.status = status

        if status == RunStatus.COMPLETED:
            logger.info(
                f"Run {execution_id} completed: {len(scheduler.completed_tasks) - 1} tasks done"
            )

        return WaggleDanceResult(
            task_results=sink.task_states,
            completed_tasks=set(scheduler.completed_tasks),
            status=status,
            error=error,
            dag=live_graph.dag,
        )

    async def _plan(
        self,
        planner: StreamingPlanParser,
        goal: str,
        goal_id: str,
        execution_id: str,
        controller: AbortController,
        live_graph: LiveGraph,
        scheduler: TaskScheduler,
        sink: EventSink,
        root: DAGNode,
        ready: asyncio.Event,
    ) -> None:
        """Run the planner, then resolve the root node with the outcome."""
        try:
            await planner.plan(
                goal=goal,
                goal_id=goal_id,
                execution_id=execution_id,
                signal=controller.signal,
                on_fragment=live_graph.merge,
                on_first_task=lambda task, dag: ready.set(),
                on_started=lambda: sink.inject(WorkingPacket(), root),
            )
            dag = live_graph.dag
            self._check_plan(dag)

            tasks = [node for node in dag.nodes if node.id != root.id]
            if len(tasks) == 1 and tasks[0].is_goal:
                # The planner answered directly; nothing to execute
                logger.info("Plan is a direct answer, resolving the goal node")
                sink.inject(DonePacket(value=tasks[0].context), tasks[0])
                scheduler.mark_completed(tasks[0].id)

            sink.inject(
                DonePacket(
                    value=f"Planned an execution graph with {len(tasks)} tasks and {len(dag.edges)} edges."
                ),
                root,
            )
            scheduler.mark_planning_done()
            if self._controller is controller:
                self.status = RunStatus.RUNNING
        except AbortedError:
            logger.info("Planning stopped by abort")
        except Exception as e:
            planning_error = e if isinstance(e, WaggleError) else PlanningError(str(e))
            sink.inject(ErrorPacket(severity=Severity.FATAL, message=str(planning_error)), root)
            scheduler.fail(planning_error)
        finally:
            ready.set()

    @staticmethod
    def _check_plan(dag: DAG) -> None:
        """
        Reject degenerate plans.

        Raises:
            PlanningError: If the plan has no task besides the root, or no edges.
            GraphStructureError: If an edge source never appeared.
        """
        if len(dag.nodes) < 2:
            raise PlanningError(f"No tasks planned; the plan has {len(dag.nodes)} nodes")
        if not dag.edges:
            raise PlanningError("No edges planned; the plan has no dependencies")
        dag.validate_structure(strict=True)
