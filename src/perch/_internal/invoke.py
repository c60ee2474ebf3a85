"""Invoke helpers — call sync or async collaborators uniformly.

Compilers and renderers may be plain functions or coroutines. Any code
that calls a user-provided collaborator goes through here so the
sync/async check lives in exactly one place.

Sync callables run in a worker thread so slow compiles or renders never
block the event loop, and timeouts around them stay effective.
"""

import functools
import inspect
from typing import Any

import anyio.to_thread


async def invoke(func: Any, *args: Any, **kwargs: Any) -> Any:
    """Call *func* and await the result if it's a coroutine function.

    Usage::

        result = await invoke(compiler.compile, path, options)
    """
    if inspect.iscoroutinefunction(func) or inspect.iscoroutinefunction(
        getattr(func, "__call__", None)
    ):
        return await func(*args, **kwargs)
    result = await anyio.to_thread.run_sync(
        functools.partial(func, *args, **kwargs),
        abandon_on_cancel=True,
    )
    if inspect.isawaitable(result):
        result = await result
    return result
