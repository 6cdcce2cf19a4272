"""
Waggle - streaming DAG planning and execution engine.

Plans a goal into a graph of agent tasks and executes the graph while the
plan is still streaming in.
"""

__version__ = "0.1.0"
__author__ = "Waggle Team"

from waggle.core.orchestrator import WaggleDance

__all__ = ["WaggleDance", "__version__"]
