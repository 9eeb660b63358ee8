"""
Cooperative cancellation for pollers.
"""

import asyncio
from typing import Awaitable, Optional, TypeVar

from .errors import ExecutionAbortedError


T = TypeVar("T")


class AbortSignal:
    """
    Carries a caller's abort request into every polling sleep.

    Pollers sleep through ``sleep`` so an abort wakes them immediately and
    raises ``ExecutionAbortedError`` instead of letting them keep mutating
    state. Task cancellation (``asyncio.CancelledError``) propagates as usual.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self, reason: str = "Execution aborted") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_aborted(self) -> None:
        if self.aborted:
            raise ExecutionAbortedError(self.reason or "Execution aborted")

    async def sleep(self, seconds: float) -> None:
        self.raise_if_aborted()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        self.raise_if_aborted()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable``, cancelling it if an abort arrives first."""
        self.raise_if_aborted()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        cancelled_by_abort = False
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
                cancelled_by_abort = True
            # Let the task unwind before reporting the abort
            await asyncio.gather(task, waiter, return_exceptions=True)
        if cancelled_by_abort or task.cancelled():
            self.raise_if_aborted()
            raise asyncio.CancelledError()
        return task.result()
