"""
Integration tests for the WaggleDance orchestrator.

Planner and executor run in-process behind an httpx MockTransport; the
plan streams in chunks while tasks are already executing.
"""

import asyncio

import httpx
import pytest

from waggle.core.cancellation import AbortController
from waggle.core.errors import PlanningError, TaskExecutionError
from waggle.core.orchestrator import WaggleDance
from waggle.core.state import RunStatus
from waggle.events.sink import EventSink, PacketEvent
from waggle.execution.executor import TaskExecutor
from waggle.execution.packets import TaskStatus
from waggle.graph.models import ROOT_PLAN_ID

pytestmark = pytest.mark.integration

RESULT_URL = "http://results.test/api/result"


def split_lines(text: str) -> list[str]:
    return text.splitlines(keepends=True)


class WatchingExecutor:
    """Calls ``watch`` before delegating each task."""

    def __init__(self, inner: TaskExecutor, watch) -> None:
        self.inner = inner
        self.watch = watch

    async def execute(self, *args):
        self.watch()
        return await self.inner.execute(*args)


@pytest.fixture
def executed() -> list[str]:
    return []


@pytest.fixture
def done_executor(chunked, ndjson, executed):
    """Execution service answering every task with a done packet."""

    async def execute(body: dict) -> httpx.Response:
        task_id = body["task"]["id"]
        executed.append(task_id)
        await asyncio.sleep(0.01)
        chunks = ndjson(
            {"type": "handleLLMStart"},
            {"type": "token", "token": "..."},
            {"type": "done", "value": f"Result of {task_id}"},
        )
        return httpx.Response(200, stream=chunked(chunks))

    return execute


async def run_goal(settings, transport: httpx.MockTransport, **kwargs):
    async with httpx.AsyncClient(transport=transport) as client:
        waggle = WaggleDance(settings=settings, client=client, configure_logging=False)
        return await asyncio.wait_for(
            waggle.run("Compare AgentGPT and BabyAGI", goal_id="g1", execution_id="e1", **kwargs),
            timeout=10,
        )


# =============================================================================
# COMPLETED RUNS
# =============================================================================


class TestCompletedRuns:
    """Runs that reach their goal."""

    @pytest.mark.asyncio
    async def test_full_run(
        self, settings, service_transport, done_executor, example_plan_yaml, executed
    ) -> None:
        """Test every planned task is executed once and the goal is reached."""
        transport = service_transport(split_lines(example_plan_yaml), done_executor, plan_delay=0.01)

        async with httpx.AsyncClient(transport=transport) as client:
            waggle = WaggleDance(settings=settings, client=client, configure_logging=False)
            assert waggle.status == RunStatus.PENDING
            result = await asyncio.wait_for(waggle.run("Compare AgentGPT and BabyAGI"), timeout=10)

        assert result.status == RunStatus.COMPLETED
        assert result.is_success
        assert not waggle.is_running
        assert waggle.status == RunStatus.COMPLETED
        assert result.completed_tasks == {ROOT_PLAN_ID, "1-0", "1-c", "2-0", "2-c", "3-0", "3-c"}
        assert sorted(executed) == sorted(["1-0", "1-c", "2-0", "2-c", "3-0", "3-c"])
        assert result.task_results["3-c"].result == "Result of 3-c"
        assert (
            result.task_results[ROOT_PLAN_ID].result
            == "Planned an execution graph with 6 tasks and 7 edges."
        )

    @pytest.mark.asyncio
    async def test_status_follows_planning(
        self, settings, service_transport, done_executor, example_plan_yaml
    ) -> None:
        """Test the run is planning while the plan streams and running afterwards."""
        transport = service_transport(split_lines(example_plan_yaml), done_executor, plan_delay=0.01)
        seen: list[RunStatus] = []

        async with httpx.AsyncClient(transport=transport) as client:
            waggle = WaggleDance(settings=settings, client=client, configure_logging=False)
            sink = EventSink(goal_id="g1", execution_id="e1")
            executor = WatchingExecutor(
                TaskExecutor.from_settings(
                    settings, sink, goal="goal", goal_id="g1", execution_id="e1", client=client
                ),
                lambda: seen.append(waggle.status),
            )
            result = await asyncio.wait_for(
                waggle.run("goal", executor=executor, sink=sink), timeout=10
            )

        assert result.status == RunStatus.COMPLETED
        assert seen[0] == RunStatus.PLANNING
        assert seen[-1] == RunStatus.RUNNING

    @pytest.mark.asyncio
    async def test_second_run_does_not_supersede_finished_run(
        self, settings, service_transport, done_executor, example_plan_yaml
    ) -> None:
        """Test a finished run leaves nothing to abort for the next one."""
        transport = service_transport([example_plan_yaml], done_executor)

        async with httpx.AsyncClient(transport=transport) as client:
            waggle = WaggleDance(settings=settings, client=client, configure_logging=False)
            first = AbortController()
            await asyncio.wait_for(waggle.run("first", abort_controller=first), timeout=10)
            second = await asyncio.wait_for(waggle.run("second"), timeout=10)

        assert not first.signal.aborted
        assert second.status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_execution_starts_before_planning_ends(
        self, settings, service_transport, done_executor, example_plan_yaml, executed
    ) -> None:
        """Test the first task runs while the plan is still streaming."""
        lines = split_lines(example_plan_yaml)
        order: list[str] = []

        def on_graph(dag) -> None:
            order.append(f"graph:{len(dag.nodes)}")

        async def execute(body: dict) -> httpx.Response:
            order.append(f"task:{body['task']['id']}")
            return await done_executor(body)

        transport = service_transport(lines, execute, plan_delay=0.02)
        result = await run_goal(settings, transport, on_graph=on_graph)

        assert result.status == RunStatus.COMPLETED
        first_task = order.index("task:1-0")
        assert "graph:7" in order[first_task:]

    @pytest.mark.asyncio
    async def test_json_plan(
        self, settings, service_transport, done_executor, example_plan_json
    ) -> None:
        """Test the JSON plan encoding end to end."""
        settings = settings.model_copy(update={"waggle_plan_format": "json"})
        transport = service_transport(split_lines(example_plan_json), done_executor)

        result = await run_goal(settings, transport)

        assert result.status == RunStatus.COMPLETED
        assert len(result.completed_tasks) == 7

    @pytest.mark.asyncio
    async def test_direct_answer(
        self, settings, service_transport, done_executor, direct_answer_yaml, executed
    ) -> None:
        """Test a single goal node is answered without execution."""
        transport = service_transport([direct_answer_yaml], done_executor)

        result = await run_goal(settings, transport)

        assert result.status == RunStatus.COMPLETED
        assert executed == []
        assert result.task_results["1-0"].result == "The capital of France is Paris."
        assert (
            result.task_results[ROOT_PLAN_ID].result
            == "Planned an execution graph with 1 tasks and 1 edges."
        )

    @pytest.mark.asyncio
    async def test_observers_see_every_packet(
        self, settings, service_transport, done_executor, example_plan_yaml
    ) -> None:
        """Test packets are routed to sink observers as they happen."""
        sink = EventSink(goal_id="g1", execution_id="e1")
        events: list[PacketEvent] = []
        sink.add_observer(events.append)
        transport = service_transport(split_lines(example_plan_yaml), done_executor)

        await run_goal(settings, transport, sink=sink)

        root_types = [e.packet.type for e in events if e.node.id == ROOT_PLAN_ID]
        assert root_types == ["working", "done"]
        task_types = [e.packet.type for e in events if e.node.id == "1-0"]
        assert task_types == ["handleLLMStart", "token", "done"]

    @pytest.mark.asyncio
    async def test_results_are_persisted(
        self, settings, service_transport, done_executor, example_plan_yaml
    ) -> None:
        """Test terminal packets are posted to the result service."""
        settings = settings.model_copy(update={"result_url": RESULT_URL})
        results: list[dict] = []
        transport = service_transport([example_plan_yaml], done_executor, results=results)

        await run_goal(settings, transport)

        saved = {payload["node"]["id"]: payload["state"] for payload in results}
        assert saved[ROOT_PLAN_ID] == "done"
        assert saved["3-c"] == "done"
        assert all(payload["executionId"] == "e1" for payload in results)


# =============================================================================
# FAILED RUNS
# =============================================================================


class TestFailedRuns:
    """Runs that end on an error."""

    @pytest.mark.asyncio
    async def test_task_error_fails_run(
        self, settings, service_transport, chunked, ndjson, example_plan_yaml
    ) -> None:
        """Test the first task error aborts the run and keeps partial results."""

        async def execute(body: dict) -> httpx.Response:
            task_id = body["task"]["id"]
            if task_id == "2-0":
                await asyncio.sleep(0.2)
                packet = {"type": "error", "severity": "fatal", "message": "model overloaded"}
            else:
                packet = {"type": "done", "value": f"Result of {task_id}"}
            return httpx.Response(200, stream=chunked(ndjson(packet)))

        controller = AbortController()
        transport = service_transport([example_plan_yaml], execute)

        result = await run_goal(settings, transport, abort_controller=controller)

        assert result.status == RunStatus.FAILED
        assert isinstance(result.error, TaskExecutionError)
        assert controller.signal.aborted
        assert result.task_results["2-0"].status == TaskStatus.ERROR
        assert "3-0" not in result.completed_tasks
        assert ROOT_PLAN_ID in result.completed_tasks
        assert {"1-0", "1-c"} <= result.completed_tasks
        assert result.task_results["1-0"].result == "Result of 1-0"
        assert result.task_results["1-c"].status == TaskStatus.DONE

    @pytest.mark.asyncio
    async def test_planner_error_fails_run(self, settings) -> None:
        """Test a planning service error is reported on the root node."""
        transport = httpx.MockTransport(lambda request: httpx.Response(500, text="boom"))

        result = await run_goal(settings, transport)

        assert result.status == RunStatus.FAILED
        assert isinstance(result.error, PlanningError)
        assert result.error.status_code == 500
        root = result.task_results[ROOT_PLAN_ID]
        assert root.status == TaskStatus.ERROR
        assert "Error fetching plan: 500 boom" in root.result

    @pytest.mark.asyncio
    async def test_unparseable_plan_fails(
        self, settings, service_transport, done_executor
    ) -> None:
        """Test a planner reply without a plan is fatal."""
        transport = service_transport(["Sorry, no plan today.\n"], done_executor)

        result = await run_goal(settings, transport)

        assert result.status == RunStatus.FAILED
        assert isinstance(result.error, PlanningError)

    @pytest.mark.asyncio
    async def test_stop_aborts_run(
        self, settings, service_transport, chunked, ndjson, example_plan_yaml
    ) -> None:
        """Test stopping a run ends it as aborted."""
        started = asyncio.Event()

        async def execute(body: dict) -> httpx.Response:
            started.set()
            await asyncio.sleep(10)
            return httpx.Response(200, stream=chunked(ndjson({"type": "done", "value": "late"})))

        transport = service_transport([example_plan_yaml], execute)
        async with httpx.AsyncClient(transport=transport) as client:
            waggle = WaggleDance(settings=settings, client=client, configure_logging=False)
            run = asyncio.create_task(waggle.run("Compare AgentGPT and BabyAGI"))
            await asyncio.wait_for(started.wait(), timeout=5)
            assert waggle.is_running

            waggle.stop("user stop")
            result = await asyncio.wait_for(run, timeout=5)

        assert result.status == RunStatus.ABORTED
        assert "user stop" in str(result.error)
        assert not waggle.is_running

