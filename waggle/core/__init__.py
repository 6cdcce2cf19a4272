"""Core module - Configuration, errors, cancellation and run state."""

from waggle.core.cancellation import AbortController, AbortSignal
from waggle.core.config import Settings, clear_settings_cache, get_settings
from waggle.core.errors import (
    AbortedError,
    CycleError,
    DanglingEdgeError,
    GraphStructureError,
    PlanningError,
    SchedulerStateError,
    TaskExecutionError,
    WaggleError,
)

__all__ = [
    "AbortController",
    "AbortSignal",
    "AbortedError",
    "CycleError",
    "DanglingEdgeError",
    "GraphStructureError",
    "PlanningError",
    "SchedulerStateError",
    "Settings",
    "TaskExecutionError",
    "WaggleError",
    "clear_settings_cache",
    "get_settings",
]
