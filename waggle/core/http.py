"""HTTP client helpers shared by the service clients."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx


@asynccontextmanager
async def open_client(
    client: httpx.AsyncClient | None,
    timeout: float,
) -> AsyncIterator[httpx.AsyncClient]:
    """
    Yield ``client`` if one was injected, otherwise a fresh one.

    Only clients created here are closed on exit.

    Example:
        >>> async with open_client(None, timeout=30) as client:
        ...     await client.get("http://localhost:3000/health")
    """
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=10.0)) as owned:
        yield owned
