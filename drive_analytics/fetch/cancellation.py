"""
Cooperative cancellation for long-running async operations.

Every logical operation (a paginated fetch, a neighbor resolution) owns a
:class:`CancellationToken`. Starting a newer operation of the same kind
cancels the older token; all awaits made through the token wake up
immediately and raise :class:`OperationCancelled`, which the owning
operation swallows.
"""
import asyncio
import itertools
from typing import Awaitable, Optional, TypeVar

from drive_analytics.utils.exceptions import OperationCancelled
from drive_analytics.utils.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

_token_ids = itertools.count(1)


class CancellationToken:
    """
    One-shot cancellation flag backed by an ``asyncio.Event``.

    Example:
        >>> token = CancellationToken()
        >>> token.cancel()
        >>> token.cancelled
        True
    """

    def __init__(self, label: Optional[str] = None):
        self.id = next(_token_ids)
        self.label = label
        self._event = asyncio.Event()

    def __repr__(self):
        state = "cancelled" if self.cancelled else "active"
        return f"CancellationToken(id={self.id}, label={self.label!r}, {state})"

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelled(f"operation {self.label or self.id} was cancelled")

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Await ``awaitable`` unless the token is cancelled first.

        On cancellation the pending work is cancelled as well (a request
        running in a worker thread finishes in the background and its
        result is discarded).

        Raises:
            OperationCancelled: The token was cancelled before completion
        """
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()

        if work.done():
            return work.result()

        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug("cancelled_call_failed", token=self.id, error=str(e))
        raise OperationCancelled(f"operation {self.label or self.id} was cancelled")

    async def sleep(self, delay: float) -> None:
        """
        Sleep for ``delay`` seconds, waking early if the token is cancelled.

        Raises:
            OperationCancelled: The token was cancelled before or during the sleep
        """
        self.raise_if_cancelled()
        if delay <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()
