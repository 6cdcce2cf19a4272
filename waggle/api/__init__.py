"""
Waggle HTTP API.

FastAPI backend for starting runs and streaming their packets.
"""

from waggle.api.main import app
from waggle.api.websocket import ConnectionManager, ws_manager

__all__ = ["app", "ConnectionManager", "ws_manager"]
