"""Bounded-concurrency batch execution with cooperative cancellation."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Iterable, TypeVar

from plume.lib.exceptions import OperationCancelled

T = TypeVar("T")
R = TypeVar("R")

DEFAULT_CONCURRENCY = 5


class CancelContext:
    """Cancellation handle and optional deadline for a batch call.

    A request handler creates one per request and calls :meth:`cancel` when
    the client disconnects; batch operations stop launching new work, cancel
    what is in flight and still run their compensating rollback.
    """

    def __init__(self, timeout: float | None = None) -> None:
        self._event = asyncio.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.cancel("deadline exceeded")
            return True
        return False

    def check(self) -> None:
        """Raise ``OperationCancelled`` if the context is done."""
        if self.cancelled:
            raise OperationCancelled(f"Operation {self.reason}", {"reason": self.reason})

    async def wait(self) -> None:
        """Block until cancelled or the deadline passes."""
        timeout = self.remaining()
        if timeout is None:
            await self._event.wait()
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
        except asyncio.TimeoutError:
            self.cancel("deadline exceeded")


@dataclass
class Outcome(Generic[R]):
    """Result of one worker invocation, index-aligned with the input."""

    index: int
    value: R | None = None
    error: BaseException | None = None
    started: bool = True

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> R:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


async def run_bounded(
    items: Iterable[T],
    worker: Callable[[T], Awaitable[R]],
    concurrency: int = DEFAULT_CONCURRENCY,
    *,
    context: CancelContext | None = None,
) -> list[Outcome[R]]:
    """Run ``worker`` over ``items`` with at most ``concurrency`` in flight.

    Worker exceptions are captured per item; this function itself only
    raises for an invalid ``concurrency``. If the calling task is cancelled,
    every worker is cancelled and awaited before ``CancelledError``
    propagates.
    """
    if concurrency < 1:
        raise ValueError(f"concurrency must be >= 1, got {concurrency}")

    items = list(items)
    if not items:
        return []

    semaphore = asyncio.Semaphore(concurrency)
    outcomes: list[Outcome[R] | None] = [None] * len(items)

    def _cancelled(index: int, started: bool) -> Outcome[R]:
        reason = context.reason if context is not None and context.reason else "cancelled"
        return Outcome(
            index=index,
            error=OperationCancelled(f"Operation {reason}", {"reason": reason, "index": index}),
            started=started,
        )

    async def _run(index: int, item: T) -> None:
        async with semaphore:
            if context is not None and context.cancelled:
                outcomes[index] = _cancelled(index, started=False)
                return
            try:
                value = await worker(item)
            except asyncio.CancelledError:
                outcomes[index] = _cancelled(index, started=True)
                raise
            except Exception as exc:
                outcomes[index] = Outcome(index=index, error=exc)
            else:
                outcomes[index] = Outcome(index=index, value=value)

    tasks = [asyncio.create_task(_run(i, item)) for i, item in enumerate(items)]
    gathered = asyncio.gather(*tasks, return_exceptions=True)

    try:
        if context is None:
            await gathered
        else:
            stopper = asyncio.create_task(context.wait())
            try:
                await asyncio.wait({gathered, stopper}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                stopper.cancel()
            if not gathered.done():
                for task in tasks:
                    task.cancel()
            await gathered
    except asyncio.CancelledError:
        # The caller itself was cancelled: no worker may outlive this call
        for task in tasks:
            task.cancel()
        await wait_settled(tasks)
        raise

    # Tasks cancelled before reaching the semaphore never recorded anything
    return [
        outcome if outcome is not None else _cancelled(i, started=False)
        for i, outcome in enumerate(outcomes)
    ]


async def wait_settled(aws: Iterable[asyncio.Future]) -> None:
    """Wait until every future is done, even if the caller is cancelled meanwhile."""
    pending = set(aws)
    while pending:
        try:
            _, pending = await asyncio.wait(pending)
        except asyncio.CancelledError:
            continue


async def to_thread_shielded(func: Callable[..., R], /, *args: Any, **kwargs: Any) -> R:
    """``asyncio.to_thread`` whose thread always finishes before the caller returns.

    A worker thread cannot be interrupted. When the calling task is cancelled
    this waits for the thread and then re-raises ``CancelledError``, so a
    rollback that runs after the cancellation sees every write the thread made.
    """
    future = asyncio.ensure_future(asyncio.to_thread(func, *args, **kwargs))
    try:
        return await asyncio.shield(future)
    except asyncio.CancelledError:
        await wait_settled([future])
        if not future.cancelled():
            future.exception()
        raise
