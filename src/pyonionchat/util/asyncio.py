from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Coroutine
from typing import Any, TypeVar

T = TypeVar("T")


async def cancel_suppress(task: asyncio.Task[object] | None) -> None:
    if not task:
        return
    # Never cancel/await the current task: doing so can deadlock or raise
    # "Task cannot await on itself". Callers typically set a stop flag and then
    # return from the current task naturally.
    if task is asyncio.current_task():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


def ensure_task(coro: Coroutine[Any, Any, T], *, name: str | None = None) -> asyncio.Task[T]:
    t: asyncio.Task[T] = asyncio.create_task(coro)
    if name:
        with contextlib.suppress(Exception):
            t.set_name(name)
    return t
