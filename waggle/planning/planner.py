"""
Streaming plan parser.

Requests a plan from the planning service and turns its streamed body into
a growing DAG. Complete lines are accumulated and re-parsed off the event
loop after every chunk; each parse that yields a different node or edge
count is published, so the scheduler can start on the first tasks while
the rest of the plan is still streaming.
"""

import asyncio
from collections.abc import Callable
from typing import Any

import httpx
from loguru import logger

from waggle.core.cancellation import AbortSignal
from waggle.core.config import Settings
from waggle.core.errors import AbortedError, PlanningError
from waggle.core.http import open_client
from waggle.graph.models import DAG, DAGNode, initial_nodes, with_root
from waggle.graph.wire_format import ParseResult, PlanFormat, parse_plan_text

FragmentCallback = Callable[[DAG], None]
FirstTaskCallback = Callable[[DAGNode, DAG], None]


# =============================================================================
# LINE BUFFER
# =============================================================================


class LineBuffer:
    """
    Accumulate streamed text, exposing only complete lines.

    Example:
        >>> buffer = LineBuffer()
        >>> buffer.feed("1:\\n  - id: ")
        True
        >>> buffer.accumulated
        '1:\\n'
        >>> buffer.partial
        '  - id: '
    """

    def __init__(self) -> None:
        self.accumulated = ""
        self.partial = ""

    def feed(self, chunk: str) -> bool:
        """
        Add a chunk.

        Returns:
            True if at least one new complete line was accumulated.
        """
        line_break = chunk.rfind("\n")
        if line_break == -1:
            self.partial += chunk
            return False

        self.accumulated += self.partial + chunk[: line_break + 1]
        self.partial = chunk[line_break + 1 :]
        return True

    def flush(self) -> bool:
        """Move a trailing partial line into the accumulated text."""
        if not self.partial:
            return False
        self.accumulated += self.partial
        self.partial = ""
        return True


# =============================================================================
# PARSER
# =============================================================================


class StreamingPlanParser:
    """
    Client for the planning service.

    Args:
        url: Planning endpoint.
        plan_format: Encoding of the streamed levels plan.
        client: Optional shared httpx client (tests inject a MockTransport).
        timeout: Request timeout in seconds.

    Example:
        >>> parser = StreamingPlanParser.from_settings(get_settings())
        >>> dag = await parser.plan(
        ...     goal="Write a haiku",
        ...     goal_id="g1",
        ...     execution_id="e1",
        ...     signal=controller.signal,
        ...     on_fragment=live_graph.merge,
        ... )
    """

    def __init__(
        self,
        url: str,
        plan_format: PlanFormat = "yaml",
        client: httpx.AsyncClient | None = None,
        timeout: float = 600.0,
        creation_props: dict[str, Any] | None = None,
    ):
        self.url = url
        self.plan_format = plan_format
        self.creation_props = creation_props or {}
        self._client = client
        self._timeout = timeout

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        client: httpx.AsyncClient | None = None,
    ) -> "StreamingPlanParser":
        return cls(
            url=settings.planner_url,
            plan_format=settings.waggle_plan_format,
            client=client,
            timeout=settings.waggle_request_timeout,
            creation_props=settings.creation_props("plan"),
        )

    async def plan(
        self,
        goal: str,
        goal_id: str,
        execution_id: str,
        signal: AbortSignal,
        on_fragment: FragmentCallback,
        on_first_task: FirstTaskCallback | None = None,
        on_started: Callable[[], None] | None = None,
    ) -> DAG:
        """
        Stream a plan and publish it as it grows.

        Args:
            goal: Goal text.
            goal_id: Goal identifier forwarded to the service.
            execution_id: Run identifier forwarded to the service.
            signal: Run abort signal, checked on every chunk.
            on_fragment: Called on the event loop with each rooted graph
                whose node or edge count changed.
            on_first_task: Called once, when the first task after the root
                becomes available.
            on_started: Called once the response stream is open.

        Returns:
            The last published graph, including the root node.

        Raises:
            PlanningError: On a non-2xx response, a transport failure, or
                when the stream ends without producing a graph. Structural
                errors raised by ``on_fragment`` propagate as well.
            AbortedError: If the signal is set while streaming.
        """
        signal.raise_if_aborted()
        root = initial_nodes(goal)[0]
        payload = {
            "goal": goal,
            "goalId": goal_id,
            "executionId": execution_id,
            "creationProps": self.creation_props,
        }

        buffer = LineBuffer()
        jobs: set[asyncio.Task[None]] = set()
        published: DAG | None = None
        first_task_started = False
        submitted = 0
        applied = -1
        publish_error: BaseException | None = None

        def apply(seq: int, result: ParseResult) -> None:
            nonlocal applied, published, first_task_started, publish_error
            if seq <= applied or publish_error is not None:
                return
            applied = seq
            if not result.ok:
                logger.debug(f"Skipping unparseable plan snapshot {seq}: {result.error}")
                return

            rooted = with_root(result.dag, root)
            if published is None or (
                len(rooted.nodes) != len(published.nodes)
                or len(rooted.edges) != len(published.edges)
            ):
                try:
                    on_fragment(rooted)
                except Exception as e:
                    publish_error = e
                    return
                published = rooted

            if not first_task_started and on_first_task and len(rooted.nodes) > 1:
                first_task_started = True
                logger.info(f"First task ready: {rooted.nodes[1].id}")
                on_first_task(rooted.nodes[1], rooted)

        async def parse(seq: int, text: str) -> None:
            try:
                result = await asyncio.to_thread(parse_plan_text, text, self.plan_format)
            except Exception as e:
                logger.warning(f"Parse worker error: {e}")
                return
            apply(seq, result)

        def submit(text: str) -> None:
            nonlocal submitted
            job = asyncio.create_task(parse(submitted, text))
            submitted += 1
            jobs.add(job)
            job.add_done_callback(jobs.discard)

        try:
            async with open_client(self._client, self._timeout) as client:
                async with client.stream("POST", self.url, json=payload) as response:
                    if response.status_code >= 400:
                        body = (await response.aread()).decode(errors="replace")
                        raise PlanningError(
                            f"Error fetching plan: {response.status_code} {body}",
                            status_code=response.status_code,
                        )

                    logger.info(f"Started planning for execution {execution_id}")
                    if on_started:
                        on_started()

                    async for chunk in response.aiter_text():
                        if signal.aborted:
                            raise AbortedError(signal.reason or "Signal aborted")
                        if publish_error is not None:
                            raise publish_error
                        if buffer.feed(chunk):
                            submit(buffer.accumulated)

            if buffer.flush():
                submit(buffer.accumulated)

            while jobs:
                await asyncio.gather(*list(jobs))
        except httpx.HTTPError as e:
            raise PlanningError(f"Planning request failed: {e}") from e
        finally:
            for job in jobs:
                job.cancel()

        if publish_error is not None:
            raise publish_error
        signal.raise_if_aborted()

        if published is None:
            raise PlanningError("No plan produced")

        logger.info(
            f"Planning finished: {len(published.nodes)} nodes, {len(published.edges)} edges"
        )
        return published
