"""
WebSocket Connection Manager.

Streams packets of subscribed runs to connected clients.
"""

from __future__ import annotations

import json
from typing import Any

from fastapi import WebSocket
from loguru import logger

from waggle.events.sink import PacketEvent


class ConnectionManager:
    """
    Manages WebSocket connections and broadcasts.

    Clients subscribe to execution ids and only receive packets of those
    runs.
    """

    def __init__(self) -> None:
        """Initialize the connection manager."""
        self.active_connections: list[WebSocket] = []
        self.subscriptions: dict[WebSocket, set[str]] = {}

    async def connect(self, websocket: WebSocket) -> None:
        """
        Accept new WebSocket connection.

        Args:
            websocket: The WebSocket connection to accept.
        """
        await websocket.accept()
        self.active_connections.append(websocket)
        self.subscriptions[websocket] = set()
        logger.info(f"Client connected. Total: {len(self.active_connections)}")

    def disconnect(self, websocket: WebSocket) -> None:
        """
        Handle WebSocket disconnection.

        Args:
            websocket: The WebSocket connection that disconnected.
        """
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
        if websocket in self.subscriptions:
            del self.subscriptions[websocket]
        logger.info(f"Client disconnected. Total: {len(self.active_connections)}")

    async def handle_message(self, websocket: WebSocket, data: str) -> None:
        """
        Handle incoming WebSocket message.

        Supports ``subscribe``, ``unsubscribe`` and ``ping`` actions.

        Args:
            websocket: The WebSocket that sent the message.
            data: The raw message data (JSON string).
        """
        try:
            message = json.loads(data)
        except json.JSONDecodeError:
            logger.warning(f"Invalid WebSocket message: {data}")
            return

        action = message.get("action")
        execution_id = message.get("execution_id")

        if action == "subscribe":
            if execution_id:
                await self.subscribe(websocket, execution_id)

        elif action == "unsubscribe":
            if execution_id and websocket in self.subscriptions:
                self.subscriptions[websocket].discard(execution_id)
                logger.debug(f"Client unsubscribed from run {execution_id}")

        elif action == "ping":
            await websocket.send_text(json.dumps({"type": "pong"}))

    async def subscribe(self, websocket: WebSocket, execution_id: str) -> bool:
        """
        Subscribe a connected client to a run and confirm it.

        Returns:
            False if the client is not connected.
        """
        if websocket not in self.subscriptions:
            return False
        self.subscriptions[websocket].add(execution_id)
        logger.debug(f"Client subscribed to run {execution_id}")
        await websocket.send_text(
            json.dumps({"type": "subscription_confirmed", "execution_id": execution_id})
        )
        return True

    async def send_snapshot(
        self,
        websocket: WebSocket,
        execution_id: str,
        status: str,
        task_states: dict[str, Any],
    ) -> None:
        """Send a late subscriber everything recorded for a run so far."""
        await websocket.send_text(
            json.dumps(
                {
                    "type": "run_snapshot",
                    "execution_id": execution_id,
                    "status": status,
                    "task_states": task_states,
                }
            )
        )

    @property
    def subscription_count(self) -> int:
        """Total run subscriptions across all clients."""
        return sum(len(runs) for runs in self.subscriptions.values())

    async def send_to_run_subscribers(self, execution_id: str, message: dict[str, Any]) -> None:
        """
        Send message to clients subscribed to a run.

        Args:
            execution_id: The run to send to.
            message: The message to send.
        """
        data = json.dumps(message)
        disconnected: list[WebSocket] = []

        for websocket, subscriptions in self.subscriptions.items():
            if execution_id in subscriptions:
                try:
                    await websocket.send_text(data)
                except Exception as e:
                    logger.error(f"Send error: {e}")
                    disconnected.append(websocket)

        # Clean up disconnected clients
        for conn in disconnected:
            self.disconnect(conn)

    async def notify_packet(self, event: PacketEvent) -> None:
        """Forward a routed packet to the run's subscribers."""
        await self.send_to_run_subscribers(event.execution_id, event.to_dict())

    async def notify_run_update(
        self,
        execution_id: str,
        status: str,
        message: str | None = None,
    ) -> None:
        """
        Notify subscribers of a run status change.

        Args:
            execution_id: The run id.
            status: The new run status.
            message: Optional status message.
        """
        await self.send_to_run_subscribers(
            execution_id,
            {
                "type": "run_update",
                "execution_id": execution_id,
                "status": status,
                "message": message,
            },
        )

    @property
    def connection_count(self) -> int:
        """Get the number of active connections."""
        return len(self.active_connections)


# Global instance
ws_manager = ConnectionManager()
