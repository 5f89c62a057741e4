"""Race awaitables against a timer and an optional cancel signal."""
import asyncio
from typing import Awaitable, Optional, Type, TypeVar

T = TypeVar("T")


async def race_with_timeout(
    awaitable: Awaitable[T],
    timeout_ms: float,
    timeout_error: Type[Exception],
    message: str = "timeout",
    cancel_event: Optional[asyncio.Event] = None,
    cancel_error: Optional[Type[Exception]] = None,
) -> T:
    """
    Await ``awaitable`` unless the timer fires or ``cancel_event`` is set first.

    The losing call is cancelled and awaited before the typed error is raised.

    Args:
        awaitable: Coroutine or future to run
        timeout_ms: Time budget in milliseconds
        timeout_error: Exception class raised when the budget is exceeded
        message: Message for the raised exception
        cancel_event: Optional event the caller sets to abort the call
        cancel_error: Exception class raised on abort (defaults to timeout_error)

    Returns:
        The awaitable's result
    """
    task = asyncio.ensure_future(awaitable)
    waiters = {task}
    cancel_waiter = None
    if cancel_event is not None:
        cancel_waiter = asyncio.ensure_future(cancel_event.wait())
        waiters.add(cancel_waiter)

    try:
        done, _ = await asyncio.wait(
            waiters,
            timeout=timeout_ms / 1000.0,
            return_when=asyncio.FIRST_COMPLETED,
        )
    except asyncio.CancelledError:
        await cancel_and_wait(task)
        raise
    finally:
        if cancel_waiter is not None and not cancel_waiter.done():
            await cancel_and_wait(cancel_waiter)

    if task in done:
        return task.result()

    await cancel_and_wait(task)
    if cancel_waiter is not None and cancel_waiter in done:
        raise (cancel_error or timeout_error)(f"{message}: cancelled by caller")
    raise timeout_error(f"{message} after {timeout_ms:.0f} ms")


async def cancel_and_wait(task: asyncio.Future) -> None:
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception:
        # lost the race
        pass
