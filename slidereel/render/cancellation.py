"""Cooperative cancellation passed explicitly into render calls."""

import asyncio
import logging
from typing import Callable

from slidereel.exceptions import RenderCancelledError

logger = logging.getLogger(__name__)


class CancellationToken:
    """One-shot cancellation signal.

    The transport layer cancels the token (for example when the client
    disconnects); renderers only observe it.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[], None]] = []
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def register(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run ``callback`` on cancellation; returns a function that unregisters it.

        A callback registered after cancellation runs immediately.
        """
        if self._event.is_set():
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def unregister() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unregister

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RenderCancelledError(f"Render cancelled: {self.reason}")
