"""Pytest configuration and shared fixtures."""

import asyncio
import json
import os
from collections.abc import AsyncIterator, Awaitable, Callable, Generator
from typing import Any

import httpx
import pytest

# Set test environment
os.environ.setdefault("WAGGLE_DEBUG", "true")
os.environ.setdefault("WAGGLE_LOG_LEVEL", "DEBUG")

PLANNER_URL = "http://planner.test/api/agent/plan"
EXECUTOR_URL = "http://executor.test/api/agent/execute"
RESULT_URL = "http://results.test/api/result"


# =============================================================================
# STREAMING DOUBLES
# =============================================================================


class ChunkedStream(httpx.AsyncByteStream):
    """Response body that yields its chunks one at a time."""

    def __init__(self, chunks: list[str], delay: float = 0.0) -> None:
        self.chunks = chunks
        self.delay = delay

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for chunk in self.chunks:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield chunk.encode()


def packet_lines(*packets: dict[str, Any]) -> list[str]:
    """Encode packets as newline-delimited JSON chunks."""
    return [json.dumps(packet) + "\n" for packet in packets]


@pytest.fixture
def chunked() -> Callable[..., ChunkedStream]:
    """Factory for chunked response bodies."""
    return ChunkedStream


@pytest.fixture
def ndjson() -> Callable[..., list[str]]:
    """Factory for newline-delimited packet chunks."""
    return packet_lines


@pytest.fixture
def stream_transport() -> Callable[..., httpx.MockTransport]:
    """Factory for a service streaming the given chunks."""

    def factory(
        chunks: list[str],
        status_code: int = 200,
        delay: float = 0.0,
        requests: list[dict[str, Any]] | None = None,
    ) -> httpx.MockTransport:
        def handler(request: httpx.Request) -> httpx.Response:
            if requests is not None:
                requests.append(json.loads(request.content))
            if status_code >= 400:
                return httpx.Response(status_code, text="".join(chunks))
            return httpx.Response(status_code, stream=ChunkedStream(chunks, delay))

        return httpx.MockTransport(handler)

    return factory


@pytest.fixture
def service_transport() -> Callable[..., httpx.MockTransport]:
    """
    Factory for a transport serving both services.

    ``plan_chunks`` stream from the planner URL; ``execute`` maps the
    request body of each execution call to a response.
    """

    def factory(
        plan_chunks: list[str],
        execute: Callable[[dict[str, Any]], Awaitable[httpx.Response]],
        plan_delay: float = 0.0,
        results: list[dict[str, Any]] | None = None,
    ) -> httpx.MockTransport:
        async def handler(request: httpx.Request) -> httpx.Response:
            url = str(request.url)
            if url == PLANNER_URL:
                return httpx.Response(200, stream=ChunkedStream(plan_chunks, plan_delay))
            if url == EXECUTOR_URL:
                return await execute(json.loads(request.content))
            if url == RESULT_URL and results is not None:
                results.append(json.loads(request.content))
                return httpx.Response(200, json={"ok": True})
            return httpx.Response(404)

        return httpx.MockTransport(handler)

    return factory


# =============================================================================
# SETTINGS
# =============================================================================


@pytest.fixture
def mock_settings() -> Generator:
    """Clear cached settings around a test."""
    from waggle.core.config import clear_settings_cache

    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def settings(tmp_path):
    """Settings pointing at the test service URLs."""
    from waggle.core.config import Settings

    return Settings(
        planner_url=PLANNER_URL,
        executor_url=EXECUTOR_URL,
        waggle_poll_interval=0.01,
        waggle_request_timeout=30,
        waggle_logs_dir=str(tmp_path / "logs"),
    )


# =============================================================================
# PLANS
# =============================================================================


@pytest.fixture
def example_plan_yaml() -> str:
    """Three-level plan: two independent levels feeding a goal level."""
    return """\
1:
  - id: "0"
    name: Research AgentGPT
    context: Investigate the features of AgentGPT.
  - id: c
    name: Review AgentGPT research
    context: Check the AgentGPT findings for gaps.
2:
  - id: "0"
    name: Research BabyAGI
    context: Investigate the features of BabyAGI.
  - id: c
    name: Review BabyAGI research
    context: Check the BabyAGI findings for gaps.
3:
  - parents: [1, 2]
  - id: "0"
    name: 🍯 Goal
    context: Compare both projects and deliver a report.
  - id: c
    name: Review the report
    context: Make sure the report answers the goal.
"""


@pytest.fixture
def example_plan_json() -> str:
    """The three-level plan in JSON, one entry per line."""
    return """\
{
  "1": [
    {"id": "0", "name": "Research AgentGPT", "context": "Investigate the features of AgentGPT."},
    {"id": "c", "name": "Review AgentGPT research", "context": "Check the AgentGPT findings for gaps."}
  ],
  "2": [
    {"id": "0", "name": "Research BabyAGI", "context": "Investigate the features of BabyAGI."},
    {"id": "c", "name": "Review BabyAGI research", "context": "Check the BabyAGI findings for gaps."}
  ],
  "3": [
    {"parents": [1, 2]},
    {"id": "0", "name": "🍯 Goal", "context": "Compare both projects and deliver a report."},
    {"id": "c", "name": "Review the report", "context": "Make sure the report answers the goal."}
  ]
}
"""


@pytest.fixture
def example_edges() -> set[tuple[str, str]]:
    """Edges the three-level plan transforms to."""
    return {
        ("1-0", "1-c"),
        ("2-0", "2-c"),
        ("1-c", "3-0"),
        ("2-c", "3-0"),
        ("3-0", "3-c"),
    }


@pytest.fixture
def direct_answer_yaml() -> str:
    """Plan for a single question: just the goal node."""
    return """\
1:
  - id: "0"
    name: 🍯 Goal
    context: The capital of France is Paris.
"""


def pytest_configure(config: pytest.Config) -> None:
    """Configure custom markers."""
    config.addinivalue_line("markers", "unit: mark test as unit test")
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")
