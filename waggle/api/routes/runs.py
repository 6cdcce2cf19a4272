"""
Runs API Routes.

Start, inspect and stop runs.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, HTTPException, Query
from loguru import logger
from pydantic import BaseModel, Field

from waggle.api.websocket import ws_manager
from waggle.core.cancellation import AbortController
from waggle.core.orchestrator import WaggleDance
from waggle.core.state import RunStatus, WaggleDanceResult
from waggle.events.persistence import ResultStore
from waggle.events.sink import EventSink

router = APIRouter()


# ============================================================================
# Registry
# ============================================================================


@dataclass
class RunRecord:
    """A run started through the API."""

    execution_id: str
    goal_id: str
    goal: str
    orchestrator: WaggleDance
    controller: AbortController
    sink: EventSink
    result: WaggleDanceResult | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    task: asyncio.Task[None] | None = None

    @property
    def status(self) -> RunStatus:
        """Final status once finished, otherwise the orchestrator's live one."""
        if self.result is not None:
            return self.result.status
        return self.orchestrator.status


class RunRegistry:
    """
    In-memory registry of the runs started by this process.

    Active runs are always kept. Finished runs are evicted oldest first once
    there are more than ``waggle_api_max_runs`` of them.
    """

    def __init__(self) -> None:
        self.runs: dict[str, RunRecord] = {}
        self.orchestrator_factory: Callable[[], WaggleDance] = lambda: WaggleDance(
            configure_logging=False
        )

    def get(self, execution_id: str) -> RunRecord:
        record = self.runs.get(execution_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return record

    def start(self, goal: str, goal_id: str | None = None) -> RunRecord:
        """Create a run and schedule it on the running loop."""
        orchestrator = self.orchestrator_factory()
        execution_id = str(uuid4())
        goal_id = goal_id or str(uuid4())
        sink = EventSink(
            goal_id=goal_id,
            execution_id=execution_id,
            result_store=ResultStore(
                orchestrator.settings.result_url,
                timeout=orchestrator.settings.waggle_request_timeout,
            ),
        )
        sink.add_observer(ws_manager.notify_packet)

        record = RunRecord(
            execution_id=execution_id,
            goal_id=goal_id,
            goal=goal,
            orchestrator=orchestrator,
            controller=AbortController(),
            sink=sink,
        )
        self.runs[execution_id] = record
        record.task = asyncio.create_task(self._run(record), name=f"waggle-run-{execution_id}")
        return record

    async def _run(self, record: RunRecord) -> None:
        result = await record.orchestrator.run(
            record.goal,
            goal_id=record.goal_id,
            execution_id=record.execution_id,
            abort_controller=record.controller,
            sink=record.sink,
        )
        record.result = result
        await ws_manager.notify_run_update(
            record.execution_id,
            result.status.value,
            str(result.error) if result.error else None,
        )
        logger.info(f"API run {record.execution_id} finished: {result.status.value}")
        self.evict_finished(record.orchestrator.settings.waggle_api_max_runs)

    def evict_finished(self, keep: int) -> list[str]:
        """
        Drop the oldest finished runs beyond ``keep``.

        Returns:
            Execution ids that were evicted.
        """
        finished = sorted(
            (r for r in self.runs.values() if not r.status.is_active),
            key=lambda r: r.created_at,
        )
        evicted = [r.execution_id for r in finished[: max(len(finished) - keep, 0)]]
        for execution_id in evicted:
            del self.runs[execution_id]
        if evicted:
            logger.debug(f"Evicted {len(evicted)} finished runs")
        return evicted


registry = RunRegistry()


# ============================================================================
# Request / Response Models
# ============================================================================


class RunCreate(BaseModel):
    """Run creation request model."""

    goal: str = Field(..., min_length=1)
    goal_id: str | None = None


class RunResponse(BaseModel):
    """Run response model."""

    execution_id: str
    goal_id: str
    goal: str
    status: str
    created_at: datetime
    error: str | None = None


class RunDetailResponse(RunResponse):
    """Detailed run response with task states and graph."""

    completed_tasks: list[str]
    task_states: dict[str, dict[str, Any]]
    dag: dict[str, Any] | None


def _to_response(record: RunRecord) -> RunResponse:
    error = record.result.error if record.result else None
    return RunResponse(
        execution_id=record.execution_id,
        goal_id=record.goal_id,
        goal=record.goal,
        status=record.status.value,
        created_at=record.created_at,
        error=str(error) if error else None,
    )


# ============================================================================
# Routes
# ============================================================================


@router.post("/", response_model=RunResponse, status_code=202)
async def create_run(request: RunCreate) -> RunResponse:
    """
    Start a new run.

    Args:
        request: Goal to plan and execute.

    Returns:
        The accepted run.
    """
    record = registry.start(request.goal, request.goal_id)
    logger.info(f"Accepted run {record.execution_id}")
    return _to_response(record)


@router.get("/", response_model=list[RunResponse])
async def list_runs(
    status: str | None = Query(None, description="Filter by status"),
) -> list[RunResponse]:
    """
    List runs, newest first.

    Args:
        status: Optional status filter.
    """
    records = sorted(registry.runs.values(), key=lambda r: r.created_at, reverse=True)
    return [_to_response(r) for r in records if status is None or r.status.value == status]


@router.get("/{execution_id}", response_model=RunDetailResponse)
async def get_run(execution_id: str) -> RunDetailResponse:
    """
    Get a run with its live task states.

    Raises:
        HTTPException: If the run is not found.
    """
    record = registry.get(execution_id)
    orchestrator = record.orchestrator
    if record.result is not None:
        completed = record.result.completed_tasks
        dag = record.result.dag
    else:
        completed = orchestrator.scheduler.completed_tasks if orchestrator.scheduler else set()
        dag = orchestrator.live_graph.dag if orchestrator.live_graph else None

    return RunDetailResponse(
        **_to_response(record).model_dump(),
        completed_tasks=sorted(completed),
        task_states={node_id: state.to_dict() for node_id, state in record.sink.task_states.items()},
        dag=dag.to_dict() if dag else None,
    )


@router.delete("/{execution_id}", response_model=RunResponse)
async def stop_run(execution_id: str) -> RunResponse:
    """
    Abort a running run.

    Raises:
        HTTPException: If the run is not found.
    """
    record = registry.get(execution_id)
    if record.status.is_active:
        record.controller.abort("Stopped through the API")
        logger.info(f"Stop requested for run {execution_id}")
    return _to_response(record)
