from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

E = TypeVar("E")

Listener = Callable[[E], Awaitable[None]] | Callable[[E], None]
_Waiter = tuple[Callable[[Any], bool] | None, asyncio.Future[Any]]


class Subscription(Generic[E]):
    """
    Registration handle returned by `AsyncEventHub.subscribe`.

    `cancel()` removes exactly this registration; other listeners for the same event
    kind (including another registration of the same callable) are unaffected.
    Usable as a context manager for scoped subscriptions.
    """

    __slots__ = ("_hub", "kind", "listener", "_active")

    def __init__(self, hub: AsyncEventHub, kind: type[E], listener: Listener[E]) -> None:
        self._hub = hub
        self.kind = kind
        self.listener = listener
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        if not self._active:
            return
        self._active = False
        self._hub._remove(self)

    def __enter__(self) -> Subscription[E]:
        return self

    def __exit__(self, *exc: object) -> None:
        self.cancel()


class AsyncEventHub:
    """
    Minimal async-friendly event hub keyed by event *type*.

    - `subscribe(Kind, fn)` registers a listener (sync or async) and returns a handle.
    - `emit(event)` dispatches on `type(event)` and awaits async listeners in order.
    - `wait_for(Kind, predicate, timeout_s)` waits for the next matching emission.

    A listener that raises is logged and skipped; it never stops the remaining
    listeners for the same event from running.
    """

    def __init__(self) -> None:
        self._subs: dict[type[Any], list[Subscription[Any]]] = defaultdict(list)
        self._waiters: dict[type[Any], list[_Waiter]] = defaultdict(list)

    def subscribe(self, kind: type[E], listener: Listener[E]) -> Subscription[E]:
        sub: Subscription[E] = Subscription(self, kind, listener)
        self._subs[kind].append(sub)
        return sub

    def _remove(self, sub: Subscription[Any]) -> None:
        subs = self._subs.get(sub.kind)
        if not subs:
            return
        self._subs[sub.kind] = [s for s in subs if s is not sub]
        if not self._subs[sub.kind]:
            self._subs.pop(sub.kind, None)

    def listener_count(self, kind: type[Any]) -> int:
        return len(self._subs.get(kind, ()))

    def wait_for_future(
        self, kind: type[E], *, predicate: Callable[[E], bool] | None = None
    ) -> asyncio.Future[E]:
        """
        Register a waiter *synchronously* and return its Future.

        This avoids a common race where the event could be emitted between
        constructing an awaitable and actually awaiting it.
        """
        loop = asyncio.get_running_loop()
        fut: asyncio.Future[E] = loop.create_future()
        self._waiters[kind].append((predicate, fut))
        return fut

    def _remove_waiter_future(self, kind: type[Any], fut: asyncio.Future[Any]) -> None:
        waiters = self._waiters.get(kind)
        if not waiters:
            return
        self._waiters[kind] = [(p, f) for (p, f) in waiters if f is not fut and not f.done()]
        if not self._waiters[kind]:
            self._waiters.pop(kind, None)

    async def emit(self, event: object) -> bool:
        kind = type(event)
        any_triggered = False

        waiters = self._waiters.get(kind)
        if waiters:
            remaining: list[_Waiter] = []
            for predicate, fut in waiters:
                if fut.done():
                    continue
                try:
                    ok = True if predicate is None else bool(predicate(event))
                except Exception:
                    logger.exception("event waiter predicate failed for %s", kind.__name__)
                    ok = False
                if ok:
                    fut.set_result(event)
                    any_triggered = True
                else:
                    remaining.append((predicate, fut))
            if remaining:
                self._waiters[kind] = remaining
            else:
                self._waiters.pop(kind, None)

        for sub in list(self._subs.get(kind, ())):
            if not sub.active:
                continue
            any_triggered = True
            try:
                res = sub.listener(event)
                if asyncio.iscoroutine(res):
                    await res
            except Exception:
                logger.exception("listener for %s failed", kind.__name__)

        return any_triggered

    async def wait_for(
        self,
        kind: type[E],
        *,
        predicate: Callable[[E], bool] | None = None,
        timeout_s: float | None = None,
    ) -> E:
        fut = self.wait_for_future(kind, predicate=predicate)
        try:
            if timeout_s is None:
                return await fut
            return await asyncio.wait_for(fut, timeout=timeout_s)
        finally:
            # Remove the future if it's still pending (timeout/cancellation).
            self._remove_waiter_future(kind, fut)
