from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable, Optional


async def call_handler(
    handler: Callable[..., Any], argument: Any, timeout: Optional[float] = None
) -> Any:
    """Call a user handler with ``argument`` and return its result.

    Coroutine functions are awaited on the loop; anything else runs in a
    worker thread. When a plain callable hands back an awaitable (a
    ``functools.partial`` over a coroutine function, an object with an async
    ``__call__``) that awaitable is awaited too. ``timeout`` covers both.
    """

    async def _call() -> Any:
        if inspect.iscoroutinefunction(handler):
            return await handler(argument)
        result = await asyncio.to_thread(handler, argument)
        if inspect.isawaitable(result):
            result = await result
        return result

    return await asyncio.wait_for(_call(), timeout)
