"""Cooperative cancellation shared by every task of one scan."""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, List, Optional, TypeVar

from .errors import CancelReason, OperationCancelled

T = TypeVar("T")


class CancellationToken:
    """Single-fire signal observed by all tasks of a scan.

    The first ``cancel`` call wins; its reason tells a pause apart from a
    risk-control abort.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Optional[CancelReason] = None
        self._children: List["CancellationToken"] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[CancelReason]:
        return self._reason

    def cancel(self, reason: CancelReason) -> bool:
        """Fire the token. Returns False when it had already fired."""
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        for child in self._children:
            child.cancel(reason)
        return True

    def child(self) -> "CancellationToken":
        """A token that fires with this one but can also fire on its own."""
        token = CancellationToken()
        if self._reason is not None:
            token.cancel(self._reason)
        else:
            self._children.append(token)
        return token

    def raise_if_cancelled(self) -> None:
        if self._reason is not None:
            raise OperationCancelled(self._reason)

    async def wait(self) -> CancelReason:
        await self._event.wait()
        return self._reason

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await *awaitable* unless the token fires first."""
        if self._reason is not None:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise OperationCancelled(self._reason)
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise
        if task in done:
            waiter.cancel()
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise OperationCancelled(self._reason)

    async def sleep(self, seconds: float) -> None:
        await self.run(asyncio.sleep(seconds))

    @asynccontextmanager
    async def acquire(self, semaphore: asyncio.Semaphore) -> AsyncIterator[None]:
        """Hold one permit of *semaphore*; waiting for it is cancellable."""
        await self.run(semaphore.acquire())
        try:
            yield
        finally:
            semaphore.release()
