import asyncio
from typing import Awaitable, TypeVar

T = TypeVar("T")


async def guard(operation: Awaitable[T], timeout_ms: int, timeout_message: str,
                cancel_on_timeout: bool = True) -> T:
    """
    Race an awaitable against a deadline.

    Resolves with the operation's result if it finishes before ``timeout_ms``,
    otherwise raises ``TimeoutError(timeout_message)``. The timer is released on
    either outcome.

    With ``cancel_on_timeout`` the losing coroutine is cancelled. Work already
    handed to a thread (``asyncio.to_thread``) keeps running regardless, so a
    timeout means "stopped waiting", never "nothing happened". Pass
    ``cancel_on_timeout=False`` to leave the operation running in the
    background, e.g. when other callers share it.
    """
    if timeout_ms <= 0:
        raise ValueError(f"timeout_ms must be positive, got {timeout_ms}")

    task = asyncio.ensure_future(operation)
    awaited = task if cancel_on_timeout else asyncio.shield(task)
    try:
        return await asyncio.wait_for(awaited, timeout=timeout_ms / 1000)
    except asyncio.TimeoutError:
        if not cancel_on_timeout:
            task.add_done_callback(_discard_result)
        raise TimeoutError(timeout_message) from None


def _discard_result(task: "asyncio.Future") -> None:
    # Retrieve the late outcome so the loop does not report it as unhandled
    if not task.cancelled():
        task.exception()
