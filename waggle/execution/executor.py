"""
Task executor.

Runs one task against the execution service. The response is
newline-delimited JSON packets; progress packets are routed to the sink as
they arrive and the first ``done`` or ``error`` packet resolves the task.
"""

import json
from typing import Any

import httpx
from loguru import logger
from pydantic import ValidationError

from waggle.core.cancellation import AbortSignal
from waggle.core.config import Settings
from waggle.core.errors import AbortedError, TaskExecutionError
from waggle.core.http import open_client
from waggle.core.state import TaskState
from waggle.events.sink import EventSink
from waggle.execution.packets import (
    AgentPacket,
    DonePacket,
    ErrorPacket,
    Severity,
    is_terminal,
    parse_packet,
)
from waggle.graph.models import DAG, DAGNode


class TaskExecutor:
    """
    Client for the execution service, bound to one run.

    Example:
        >>> executor = TaskExecutor.from_settings(settings, sink, goal="...", goal_id="g1", execution_id="e1")
        >>> packet = await executor.execute(task, dag, [], {ROOT_PLAN_ID}, signal)
        >>> packet.type
        'done'
    """

    def __init__(
        self,
        url: str,
        sink: EventSink,
        goal: str,
        goal_id: str,
        execution_id: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 600.0,
        creation_props: dict[str, Any] | None = None,
    ):
        self.url = url
        self.sink = sink
        self.goal = goal
        self.goal_id = goal_id
        self.execution_id = execution_id
        self.creation_props = creation_props or {}
        self._client = client
        self._timeout = timeout

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        sink: EventSink,
        goal: str,
        goal_id: str,
        execution_id: str,
        client: httpx.AsyncClient | None = None,
    ) -> "TaskExecutor":
        return cls(
            url=settings.executor_url,
            sink=sink,
            goal=goal,
            goal_id=goal_id,
            execution_id=execution_id,
            client=client,
            timeout=settings.waggle_request_timeout,
            creation_props=settings.creation_props("execute"),
        )

    def build_request(
        self,
        task: DAGNode,
        dag: DAG,
        reviewee_results: list[TaskState],
        completed_tasks: set[str],
    ) -> dict[str, Any]:
        """Build the JSON body of an execution request."""
        return {
            "goal": self.goal,
            "goalId": self.goal_id,
            "executionId": self.execution_id,
            "task": task.model_dump(),
            "dag": dag.to_dict(),
            "revieweeTaskResults": [state.to_dict() for state in reviewee_results],
            "completedTasks": sorted(completed_tasks),
            "creationProps": self.creation_props,
        }

    async def execute(
        self,
        task: DAGNode,
        dag: DAG,
        reviewee_results: list[TaskState],
        completed_tasks: set[str],
        signal: AbortSignal,
    ) -> AgentPacket:
        """
        Execute a single task.

        Args:
            task: Node to execute.
            dag: Snapshot of the live graph.
            reviewee_results: Results of the task's level siblings.
            completed_tasks: Ids completed so far.
            signal: Run abort signal.

        Returns:
            Terminal ``done`` or ``error`` packet. The terminal packet is not
            injected here; the caller owns the task's completion.

        Raises:
            AbortedError: If the run is cancelled before or during the task.
            TaskExecutionError: On a transport failure.
        """
        signal.raise_if_aborted()
        request = self.build_request(task, dag, reviewee_results, completed_tasks)
        logger.info(f"Executing task {task.id}: {task.name}")

        try:
            async with open_client(self._client, self._timeout) as client:
                async with client.stream("POST", self.url, json=request) as response:
                    if response.status_code >= 400:
                        body = (await response.aread()).decode(errors="replace")
                        logger.error(f"Task {task.id} request failed: {response.status_code}")
                        return ErrorPacket(
                            severity=Severity.FATAL,
                            message=f"Error executing task: {response.status_code} {body}",
                        )
                    return await self._read_packets(task, response, signal)
        except httpx.HTTPError as e:
            raise TaskExecutionError(task.id, str(e)) from e

    async def _read_packets(
        self,
        task: DAGNode,
        response: httpx.Response,
        signal: AbortSignal,
    ) -> AgentPacket:
        plain_text: list[str] = []

        async for line in response.aiter_lines():
            if signal.aborted:
                raise AbortedError(signal.reason or "Signal aborted")
            line = line.strip()
            if not line:
                continue

            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                plain_text.append(line)
                continue
            if not isinstance(data, dict) or "type" not in data:
                plain_text.append(line)
                continue

            try:
                packet = parse_packet(data)
            except ValidationError as e:
                logger.warning(f"Skipping unknown packet for {task.id}: {data.get('type')} ({e.error_count()} errors)")
                continue

            if is_terminal(packet):
                logger.info(f"Task {task.id} finished with {packet.type}")
                return packet
            self.sink.inject(packet, task)

        if plain_text:
            return DonePacket(value="\n".join(plain_text))

        logger.error(f"Task {task.id} stream ended without a result")
        return ErrorPacket(
            severity=Severity.FATAL,
            message="Execution stream ended without a result",
        )
