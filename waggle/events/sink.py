"""
Packet routing for a run.

The EventSink owns every node's TaskState. Packets are appended in arrival
order and fanned out to observers and subscriber queues; delivery never
blocks the caller.
"""

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from loguru import logger

from waggle.core.state import TaskState
from waggle.events.persistence import ResultStore
from waggle.execution.packets import AgentPacket, dump_packet, is_terminal
from waggle.graph.models import DAGNode

# =============================================================================
# EVENTS
# =============================================================================


@dataclass(frozen=True)
class PacketEvent:
    """One packet routed to one node."""

    execution_id: str
    node: DAGNode
    packet: AgentPacket
    status: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to the message shape sent to websocket clients."""
        return {
            "type": "packet",
            "executionId": self.execution_id,
            "nodeId": self.node.id,
            "node": self.node.model_dump(),
            "packet": dump_packet(self.packet),
            "status": self.status,
        }


Observer = Callable[[PacketEvent], None | Awaitable[None]]


# =============================================================================
# SINK
# =============================================================================


class EventSink:
    """
    Fan-out channel for planning and execution packets.

    Example:
        >>> sink = EventSink(goal_id="g1", execution_id="e1")
        >>> sink.add_observer(lambda event: print(event.packet.type))
        >>> state = sink.inject(DonePacket(value="42"), node)
        >>> state.status
        <TaskStatus.DONE: 'done'>
    """

    def __init__(
        self,
        goal_id: str = "",
        execution_id: str = "",
        result_store: ResultStore | None = None,
        queue_size: int = 1000,
    ):
        self.goal_id = goal_id
        self.execution_id = execution_id
        self.result_store = result_store
        self.queue_size = queue_size

        self._states: dict[str, TaskState] = {}
        self._observers: list[Observer] = []
        self._queues: list[asyncio.Queue[PacketEvent]] = []
        self._background: set[asyncio.Task[Any]] = set()

    # =========================================================================
    # STATE
    # =========================================================================

    def task_state(self, node_id: str) -> TaskState | None:
        return self._states.get(node_id)

    @property
    def task_states(self) -> dict[str, TaskState]:
        """Snapshot of all task states, in first-packet order."""
        return dict(self._states)

    # =========================================================================
    # OBSERVERS
    # =========================================================================

    def add_observer(self, observer: Observer) -> None:
        """Register a sync or async callable called for every packet."""
        self._observers.append(observer)

    def remove_observer(self, observer: Observer) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def subscribe(self, maxsize: int | None = None) -> "asyncio.Queue[PacketEvent]":
        """
        Open a bounded queue receiving every subsequent packet.

        When the queue is full new packets are dropped for that subscriber.
        """
        queue: asyncio.Queue[PacketEvent] = asyncio.Queue(maxsize=maxsize or self.queue_size)
        self._queues.append(queue)
        return queue

    def unsubscribe(self, queue: "asyncio.Queue[PacketEvent]") -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    # =========================================================================
    # INJECTION
    # =========================================================================

    def inject(self, packet: AgentPacket, node: DAGNode) -> TaskState:
        """
        Route a packet to a node.

        Appends it to the node's TaskState (creating the state on the first
        packet), notifies observers, and hands terminal packets to the
        result store.

        Args:
            packet: Packet to route.
            node: Node the packet belongs to.

        Returns:
            The node's updated TaskState.
        """
        state = self._states.get(node.id)
        if state is None:
            state = TaskState(node=node)
            self._states[node.id] = state
        state.append(packet)

        logger.debug(f"Packet {packet.type} -> {node.id} ({state.status.value})")

        event = PacketEvent(
            execution_id=self.execution_id,
            node=node,
            packet=packet,
            status=state.status.value,
        )
        self._notify(event)

        if is_terminal(packet) and self.result_store is not None and self.result_store.enabled:
            self._spawn(self.result_store.save(self._result_payload(state, packet)))

        return state

    def _notify(self, event: PacketEvent) -> None:
        for observer in list(self._observers):
            try:
                outcome = observer(event)
                if inspect.isawaitable(outcome):
                    self._spawn(outcome)
            except Exception as e:
                logger.warning(f"Observer error: {e}")

        for queue in list(self._queues):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"Subscriber queue full, dropping {event.packet.type} for {event.node.id}")

    def _result_payload(self, state: TaskState, packet: AgentPacket) -> dict[str, Any]:
        return {
            "goalId": self.goal_id,
            "executionId": self.execution_id,
            "node": state.node.model_dump(),
            "packet": dump_packet(packet),
            "packets": [dump_packet(p) for p in state.packets],
            "state": state.status.value,
        }

    # =========================================================================
    # BACKGROUND WORK
    # =========================================================================

    def _spawn(self, awaitable: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(awaitable)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: "asyncio.Task[Any]") -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"Background delivery failed: {error}")

    async def flush(self) -> None:
        """Wait for pending async observers and result saves."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
