"""Cooperative cancellation shared by every component of a run.

One AbortController per run. Its signal is checked at suspension points
(stream reads, scheduler backoff, task starts); nothing is interrupted
mid-step.
"""

import asyncio
from collections.abc import Callable

from loguru import logger

from waggle.core.errors import AbortedError


class AbortSignal:
    """Read side of an abort controller."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._callbacks: list[Callable[[str], None]] = []

    @property
    def aborted(self) -> bool:
        """Whether the run has been cancelled."""
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def raise_if_aborted(self) -> None:
        """Raise AbortedError if the signal is set."""
        if self.aborted:
            raise AbortedError(self._reason or "Signal aborted")

    def add_callback(self, callback: Callable[[str], None]) -> None:
        """Call ``callback(reason)`` once when the signal is set."""
        if self.aborted:
            callback(self._reason or "")
            return
        self._callbacks.append(callback)

    async def wait(self) -> None:
        """Block until the signal is set."""
        await self._event.wait()

    async def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` but return early once aborted."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except TimeoutError:
            pass

    def _set(self, reason: str) -> None:
        self._reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback(reason)
            except Exception as e:
                logger.warning(f"Abort callback error: {e}")


class AbortController:
    """
    Owner of a run's abort signal.

    Example:
        >>> controller = AbortController()
        >>> controller.abort("user stop")
        >>> controller.signal.aborted
        True
    """

    def __init__(self) -> None:
        self.signal = AbortSignal()

    def abort(self, reason: str = "Signal aborted") -> None:
        """Set the signal. Later calls keep the first reason."""
        if self.signal.aborted:
            return
        logger.info(f"Aborting run: {reason}")
        self.signal._set(reason)
