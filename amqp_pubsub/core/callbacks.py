"""Helpers for user-supplied callables that may be sync or async."""

from __future__ import annotations

import inspect
from typing import Any, Callable


async def maybe_await(fn: Callable[..., Any], *args: Any) -> Any:
    """Call ``fn`` and await the result if it is awaitable."""
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result
