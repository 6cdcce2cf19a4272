"""Streaming planner client."""

from waggle.planning.planner import LineBuffer, StreamingPlanParser

__all__ = ["LineBuffer", "StreamingPlanParser"]
