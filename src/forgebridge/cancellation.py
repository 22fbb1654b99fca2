"""
Cooperative cancellation for the agent loop and long-running handlers.

One token per agent run. Every suspension point (model await, dispatch
await) is raced against it, and long handlers poll it between steps.
"""

import asyncio
import logging
from typing import Any, Awaitable

from forgebridge.errors import LoopCancelled

logger = logging.getLogger(__name__)


class CancellationToken:
    """A one-shot cancellation signal."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Cancelled by user") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()
            logger.info(f"Cancellation requested: {reason}")

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise LoopCancelled(self.reason)

    async def run(self, awaitable: Awaitable[Any]) -> Any:
        """
        Await awaitable unless the token fires first.

        If the token fires, the awaitable is cancelled, its eventual result
        is discarded and LoopCancelled is raised.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise LoopCancelled(self.reason)
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task.done():
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"Discarding late failure after cancellation: {e}")
        raise LoopCancelled(self.reason)
