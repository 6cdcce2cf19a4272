"""Unit tests for the event sink and result persistence."""

import json

import httpx
import pytest
from unittest.mock import AsyncMock

from waggle.events.persistence import ResultStore
from waggle.events.sink import EventSink, PacketEvent
from waggle.execution.packets import DonePacket, ErrorPacket, TaskStatus, TokenPacket
from waggle.graph.models import DAGNode

RESULT_URL = "http://results.test/api/result"


@pytest.fixture
def node_a() -> DAGNode:
    return DAGNode(id="1-0", name="A", context="do a")


@pytest.fixture
def node_b() -> DAGNode:
    return DAGNode(id="2-0", name="B", context="do b")


# =============================================================================
# INJECTION TESTS
# =============================================================================


class TestInject:
    """Tests for EventSink.inject."""

    def test_creates_state_lazily(self, node_a: DAGNode) -> None:
        """Test a state exists only after the first packet."""
        sink = EventSink()
        assert sink.task_state("1-0") is None
        state = sink.inject(TokenPacket(token="a"), node_a)
        assert sink.task_state("1-0") is state
        assert state.status == TaskStatus.WORKING

    def test_per_node_order_is_arrival_order(self, node_a: DAGNode, node_b: DAGNode) -> None:
        """Test packets of one node keep their order."""
        sink = EventSink()
        for i in range(3):
            sink.inject(TokenPacket(token=f"a{i}"), node_a)
            sink.inject(TokenPacket(token=f"b{i}"), node_b)

        assert [p.token for p in sink.task_state("1-0").packets] == ["a0", "a1", "a2"]
        assert [p.token for p in sink.task_state("2-0").packets] == ["b0", "b1", "b2"]

    def test_result_from_terminal_packet(self, node_a: DAGNode) -> None:
        """Test done and error packets set the result."""
        sink = EventSink()
        sink.inject(DonePacket(value="answer"), node_a)
        assert sink.task_state("1-0").result == "answer"

    def test_task_states_is_a_snapshot(self, node_a: DAGNode) -> None:
        """Test callers cannot mutate the sink's map."""
        sink = EventSink()
        sink.inject(DonePacket(value="x"), node_a)
        states = sink.task_states
        states.clear()
        assert sink.task_state("1-0") is not None


# =============================================================================
# OBSERVER TESTS
# =============================================================================


class TestObservers:
    """Tests for observer fan-out."""

    def test_sync_observer_receives_events(self, node_a: DAGNode) -> None:
        """Test observers get every packet with its projected status."""
        sink = EventSink(execution_id="e1")
        events: list[PacketEvent] = []
        sink.add_observer(events.append)

        sink.inject(DonePacket(value="ok"), node_a)

        event = events[0]
        assert isinstance(event, PacketEvent)
        assert event.execution_id == "e1"
        assert event.status == "done"
        assert event.to_dict()["packet"] == {"type": "done", "value": "ok"}

    def test_observer_errors_are_not_propagated(self, node_a: DAGNode) -> None:
        """Test a failing observer does not affect injection or other observers."""
        sink = EventSink()
        events: list[PacketEvent] = []

        def broken(event: PacketEvent) -> None:
            raise RuntimeError("boom")

        sink.add_observer(broken)
        sink.add_observer(events.append)

        state = sink.inject(TokenPacket(token="x"), node_a)

        assert state.status == TaskStatus.WORKING
        assert len(events) == 1

    def test_remove_observer(self, node_a: DAGNode) -> None:
        """Test removed observers are not called."""
        sink = EventSink()
        events: list[PacketEvent] = []
        sink.add_observer(events.append)
        sink.remove_observer(events.append)
        sink.inject(TokenPacket(token="x"), node_a)
        assert events == []

    @pytest.mark.asyncio
    async def test_async_observer_is_scheduled(self, node_a: DAGNode) -> None:
        """Test coroutine observers run in the background."""
        sink = EventSink()
        observer = AsyncMock()
        sink.add_observer(observer)

        sink.inject(DonePacket(value="ok"), node_a)
        await sink.flush()

        observer.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_subscribe_queue(self, node_a: DAGNode) -> None:
        """Test subscriber queues receive events."""
        sink = EventSink()
        queue = sink.subscribe()

        sink.inject(TokenPacket(token="x"), node_a)

        event = queue.get_nowait()
        assert event.node.id == "1-0"

    @pytest.mark.asyncio
    async def test_full_queue_drops_packets(self, node_a: DAGNode) -> None:
        """Test a slow subscriber never blocks injection."""
        sink = EventSink()
        queue = sink.subscribe(maxsize=1)

        sink.inject(TokenPacket(token="1"), node_a)
        sink.inject(TokenPacket(token="2"), node_a)

        assert queue.qsize() == 1
        assert len(sink.task_state("1-0").packets) == 2

    @pytest.mark.asyncio
    async def test_unsubscribe(self, node_a: DAGNode) -> None:
        """Test unsubscribed queues stop receiving."""
        sink = EventSink()
        queue = sink.subscribe()
        sink.unsubscribe(queue)
        sink.inject(TokenPacket(token="x"), node_a)
        assert queue.empty()


# =============================================================================
# PERSISTENCE TESTS
# =============================================================================


class TestResultStore:
    """Tests for ResultStore and its use by the sink."""

    @pytest.mark.asyncio
    async def test_no_url_is_noop(self) -> None:
        """Test saving without a URL does nothing."""
        store = ResultStore(None)
        assert not store.enabled
        assert await store.save({"node": {"id": "1-0"}}) is False

    @pytest.mark.asyncio
    async def test_save_posts_payload(self) -> None:
        """Test the payload is posted as JSON."""
        received: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(json.loads(request.content))
            return httpx.Response(200)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            store = ResultStore(RESULT_URL, client=client)
            assert await store.save({"node": {"id": "1-0"}, "state": "done"}) is True

        assert received == [{"node": {"id": "1-0"}, "state": "done"}]

    @pytest.mark.asyncio
    async def test_failures_are_logged_not_raised(self) -> None:
        """Test service errors never reach the caller."""
        transport = httpx.MockTransport(lambda request: httpx.Response(500))
        async with httpx.AsyncClient(transport=transport) as client:
            store = ResultStore(RESULT_URL, client=client)
            assert await store.save({"node": {"id": "1-0"}}) is False

    @pytest.mark.asyncio
    async def test_sink_persists_terminal_packets_only(self, node_a: DAGNode) -> None:
        """Test only done and error packets are handed to the store."""
        received: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(json.loads(request.content))
            return httpx.Response(200)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            sink = EventSink(
                goal_id="g1",
                execution_id="e1",
                result_store=ResultStore(RESULT_URL, client=client),
            )
            sink.inject(TokenPacket(token="x"), node_a)
            sink.inject(ErrorPacket(message="bad"), node_a)
            await sink.flush()

        assert len(received) == 1
        payload = received[0]
        assert payload["goalId"] == "g1"
        assert payload["executionId"] == "e1"
        assert payload["node"]["id"] == "1-0"
        assert payload["packet"]["type"] == "error"
        assert len(payload["packets"]) == 2
        assert payload["state"] == "error"
