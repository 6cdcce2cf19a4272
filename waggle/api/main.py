"""
Waggle API.

FastAPI backend for starting runs and following them in real time.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from waggle import __version__
from waggle.api.websocket import ws_manager


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """
    Startup and shutdown events.

    Runs still going at shutdown are aborted.

    Yields:
        None during application runtime.
    """
    logger.info("Starting Waggle API...")
    yield
    for record in runs.registry.runs.values():
        if record.status.is_active:
            record.controller.abort("API shutting down")
    logger.info("Shutting down Waggle API...")


app = FastAPI(
    title="Waggle API",
    description="Streaming DAG planning and execution API",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Import and include routers
from waggle.api.routes import runs  # noqa: E402

app.include_router(runs.router, prefix="/api/runs", tags=["runs"])


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, execution_id: str | None = None) -> None:
    """
    Stream packets of one or more runs.

    Passing ``?execution_id=<id>`` subscribes on connect and replays the
    task states recorded so far, so a client joining mid-run does not miss
    earlier packets. Further runs are followed by sending
    {"action": "subscribe", "execution_id": "<id>"}.
    """
    await ws_manager.connect(websocket)
    try:
        if execution_id:
            record = runs.registry.runs.get(execution_id)
            if record is None:
                error = {"type": "error", "execution_id": execution_id, "message": "Run not found"}
                await websocket.send_text(json.dumps(error))
            else:
                await ws_manager.subscribe(websocket, execution_id)
                await ws_manager.send_snapshot(
                    websocket,
                    execution_id,
                    record.status.value,
                    {node_id: state.to_dict() for node_id, state in record.sink.task_states.items()},
                )
        while True:
            data = await websocket.receive_text()
            await ws_manager.handle_message(websocket, data)
    except WebSocketDisconnect:
        ws_manager.disconnect(websocket)


@app.get("/health")
async def health_check() -> dict[str, Any]:
    """Liveness plus the number of runs still in progress."""
    active = sum(1 for record in runs.registry.runs.values() if record.status.is_active)
    return {
        "status": "healthy",
        "version": __version__,
        "active_runs": active,
        "known_runs": len(runs.registry.runs),
    }


@app.get("/api/ws-status")
async def ws_status() -> dict[str, int]:
    """Connected clients and their run subscriptions."""
    return {
        "active_connections": ws_manager.connection_count,
        "subscriptions": ws_manager.subscription_count,
    }
