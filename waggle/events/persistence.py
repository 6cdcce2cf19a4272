"""Client for the external result-persistence service."""

from typing import Any

import httpx
from loguru import logger

from waggle.core.http import open_client


class ResultStore:
    """
    Fire-and-forget sink for terminal task results.

    Posts ``{goalId, node, executionId, packet, packets, state}`` to the
    configured URL. With no URL configured every save is a no-op. Failures
    are logged and never reach the scheduler.
    """

    def __init__(
        self,
        url: str | None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        self.url = url
        self._client = client
        self._timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    async def save(self, payload: dict[str, Any]) -> bool:
        """
        Store one result.

        Returns:
            True if the service accepted the result.
        """
        if not self.url:
            return False

        node_id = payload.get("node", {}).get("id", "?")
        try:
            async with open_client(self._client, self._timeout) as client:
                response = await client.post(self.url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Failed to persist result for {node_id}: {e}")
            return False

        logger.debug(f"Persisted result for {node_id}")
        return True
