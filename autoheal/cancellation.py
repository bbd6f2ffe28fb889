"""Cooperative cancellation shared by the invoker, the orchestrator and the healer.

A :class:`CancellationToken` is a small wrapper around an :class:`asyncio.Event`.
Tokens form a tree: a token created with :meth:`CancellationToken.linked`
trips whenever its parent does, and may additionally trip on its own
timeout.  Code observes cancellation only at explicit check points:

* :meth:`CancellationToken.raise_if_cancelled` at step/attempt boundaries,
* :meth:`CancellationToken.sleep` for retry delays,
* :meth:`CancellationToken.run` while awaiting an external collaborator.

Each of them raises :class:`~autoheal.exceptions.OperationCancelledError`,
which callers distinguish from ordinary failures.
"""

import asyncio
import logging
from typing import Awaitable, TypeVar

from autoheal.exceptions import OperationCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TIMEOUT_REASON = "timeout"


class CancellationToken:
    def __init__(self, parent: "CancellationToken | None" = None):
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._timed_out = False
        self._timer: asyncio.TimerHandle | None = None
        self._children: list[CancellationToken] = []
        self._parent = parent
        if parent is not None:
            parent._children.append(self)
            if parent.cancelled:
                self.cancel(parent.reason)

    @classmethod
    def linked(cls, parent: "CancellationToken | None", timeout_s: float | None = None) -> "CancellationToken":
        """Create a child of *parent* that also trips after *timeout_s* seconds."""
        token = cls(parent)
        if timeout_s is not None:
            token.cancel_after(timeout_s)
        return token

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def timed_out(self) -> bool:
        """True only when this token tripped on its own timer."""
        return self._timed_out

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None):
        if self._event.is_set():
            return
        self._reason = reason or "cancelled"
        self._event.set()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        for child in list(self._children):
            child.cancel(self._reason)

    def cancel_after(self, delay_s: float):
        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(max(delay_s, 0.0), self._on_timeout)

    def _on_timeout(self):
        self._timer = None
        if not self._event.is_set():
            self._timed_out = True
            self.cancel(TIMEOUT_REASON)

    def close(self):
        """Detach from the parent and stop the timer; the token keeps its state."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._parent is not None:
            try:
                self._parent._children.remove(self)
            except ValueError:
                pass
            self._parent = None

    def __enter__(self) -> "CancellationToken":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise OperationCancelledError(self._reason)

    async def wait(self):
        await self._event.wait()

    async def sleep(self, delay_s: float):
        """Sleep for *delay_s* seconds unless cancelled first."""
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay_s)
        except asyncio.TimeoutError:
            return
        raise OperationCancelledError(self._reason)

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await *awaitable*, abandoning it as soon as this token trips."""
        if self._event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise OperationCancelledError(self._reason)
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task in done:
            return task.result()
        task.cancel()
        # Let the abandoned call unwind; its outcome no longer matters.
        await asyncio.gather(task, return_exceptions=True)
        logger.debug("Abandoned pending call after cancellation (%s)", self._reason)
        raise OperationCancelledError(self._reason)


async def sleep(delay_s: float, cancellation: CancellationToken | None = None):
    """Interruptible sleep; a plain sleep when no token is given."""
    if cancellation is None:
        await asyncio.sleep(delay_s)
    else:
        await cancellation.sleep(delay_s)


async def run(awaitable: Awaitable[T], cancellation: CancellationToken | None = None) -> T:
    if cancellation is None:
        return await awaitable
    return await cancellation.run(awaitable)
