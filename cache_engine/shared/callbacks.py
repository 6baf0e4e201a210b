"""
Helpers for caller-supplied callbacks that may be sync or async.
"""

import asyncio
from typing import Any


async def await_if_needed(result: Any) -> Any:
    """Await ``result`` when a callback handed back an awaitable."""
    if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
        return await result
    return result


async def invoke(callback, *args) -> Any:
    """Call a loader/saver/handler and resolve its result."""
    return await await_if_needed(callback(*args))
