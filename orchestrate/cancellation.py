"""
Cooperative cancellation for streaming requests.

A CancellationToken is handed explicitly to every suspension point of a
stream (opening the request, reading the next chunk). Cancelling it never
interrupts the event loop; the stream notices at its next check and
unwinds with StreamAborted.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, TypeVar

from orchestrate.errors import StreamAborted

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """One-shot cancellation signal shared between a controller and a stream."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Request aborted") -> bool:
        """Signal cancellation. Returns False if it was already cancelled."""
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        return True

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise StreamAborted(self.reason)

    async def wait(self):
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """
        Await `awaitable` unless the token fires first.

        If cancellation wins, the pending operation is cancelled and awaited
        so the underlying read is torn down before StreamAborted is raised.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise StreamAborted(self.reason)
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()

        if task in done:
            return task.result()

        await asyncio.gather(task, return_exceptions=True)
        logger.debug("Pending read torn down by cancellation (%s)", self.reason)
        raise StreamAborted(self.reason)
