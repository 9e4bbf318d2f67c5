"""Cooperative cancellation tokens.

A token is threaded through every I/O call of a send.  Awaitables run via
:meth:`CancellationToken.run` are raced against the token, so a cancel
interrupts a blocked network read or backoff sleep immediately; code
between suspension points checks :meth:`raise_if_cancelled`.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Awaitable, TypeVar

_logger = logging.getLogger(__name__)

T = TypeVar("T")


class OperationCancelled(Exception):
    """A deliberate, user-initiated stop.  Not a failure."""

    def __init__(self, reason: str = "cancelled") -> None:
        super().__init__(reason)
        self.reason = reason


class CancellationToken:
    """One-shot cancellation signal for a single in-flight operation."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        _logger.debug("Cancellation requested: %s", reason)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(self.reason)

    async def wait(self) -> None:
        await self._event.wait()

    async def run(self, aw: Awaitable[T]) -> T:
        """Await *aw*, raising ``OperationCancelled`` if the token fires first."""
        if self.cancelled:
            if inspect.iscoroutine(aw):
                aw.close()
            raise OperationCancelled(self.reason)
        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise

        if task in done:
            waiter.cancel()
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise OperationCancelled(self.reason)

    async def sleep(self, delay: float) -> None:
        """Interruptible ``asyncio.sleep``."""
        await self.run(asyncio.sleep(delay))
