"""
Cancellation signal helpers.

A cancellation signal is a plain ``asyncio.Event``: the caller sets it and
every network operation that received it stops at its next await point
with ``OperationCancelled``.
"""

import asyncio
from typing import Awaitable, Optional, TypeVar

from core.exceptions import OperationCancelled

T = TypeVar("T")


def raise_if_cancelled(cancel_event: Optional[asyncio.Event], operation: str = "operation") -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelled(
            f"{operation} cancelled",
            context={"operation": operation}
        )


async def cancellable_sleep(
    delay: float,
    cancel_event: Optional[asyncio.Event],
    operation: str = "operation"
) -> None:
    """Sleep for ``delay`` seconds, waking early with OperationCancelled if signalled."""
    if cancel_event is None:
        await asyncio.sleep(delay)
        return

    raise_if_cancelled(cancel_event, operation)
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return
    raise_if_cancelled(cancel_event, operation)


async def run_cancellable(
    awaitable: Awaitable[T],
    cancel_event: Optional[asyncio.Event],
    operation: str = "operation"
) -> T:
    """
    Await ``awaitable`` unless the cancellation signal fires first.

    On cancellation the underlying task is cancelled and awaited before
    ``OperationCancelled`` is raised, so no work continues in the background.
    """
    if cancel_event is None:
        return await awaitable

    if cancel_event.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise_if_cancelled(cancel_event, operation)

    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel_event.wait())
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
    await asyncio.gather(task, return_exceptions=True)
    raise OperationCancelled(
        f"{operation} cancelled",
        context={"operation": operation}
    )
