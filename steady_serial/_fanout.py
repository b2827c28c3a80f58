"""Multicast of one event category to any number of subscribers.

Handlers may be plain callables or coroutine functions. A coroutine handler
runs on the event loop that was running when it subscribed (if any), so
asyncio code can subscribe from inside its loop and get called back there.
dispatch() returns once every handler has finished or failed.
"""

import asyncio
import concurrent.futures
import inspect
import logging
import threading
from typing import Any, Awaitable, Callable, Generic, NamedTuple, TypeVar

from steady_serial import _timeout_math

log = logging.getLogger("steady_serial.fanout")

EventT = TypeVar("EventT")

Handler = Callable[[EventT], Any]


class _Subscriber(NamedTuple):
    handler: Callable[[Any], Any]
    loop: asyncio.AbstractEventLoop | None


class EventFanout(Generic[EventT]):
    def __init__(
        self,
        category: str,
        *,
        handler_timeout: float | None = None,
        logger: logging.Logger | None = None,
    ):
        self.category = category
        self._handler_timeout = handler_timeout
        self._log = logger or log
        self._lock = threading.Lock()
        self._subscribers: list[_Subscriber] = []

    def __repr__(self) -> str:
        return f"EventFanout({self.category!r}, {len(self)} handlers)"

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def __iadd__(self, handler: Handler) -> "EventFanout":
        return self.add(handler)

    def __isub__(self, handler: Handler) -> "EventFanout":
        return self.remove(handler)

    def add(self, handler: Handler) -> "EventFanout":
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        with self._lock:
            self._subscribers.append(_Subscriber(handler, loop))
        return self

    def remove(self, handler: Handler) -> "EventFanout":
        with self._lock:
            for i, sub in enumerate(self._subscribers):
                if sub.handler == handler:
                    del self._subscribers[i]
                    break
        return self

    def clear(self) -> None:
        with self._lock:
            self._subscribers.clear()

    def handlers(self) -> tuple[Handler, ...]:
        with self._lock:
            return tuple(sub.handler for sub in self._subscribers)

    def dispatch(self, event: EventT) -> int:
        """Calls every current subscriber with 'event'; returns the number
        of handlers that raised (each failure is logged, none escapes)"""

        with self._lock:
            subscribers = list(self._subscribers)

        failures = 0
        pending: list[tuple[_Subscriber, concurrent.futures.Future]] = []
        for sub in subscribers:
            try:
                result = sub.handler(event)
                if inspect.isawaitable(result):
                    if future := self._schedule(sub, result):
                        pending.append((sub, future))
            except Exception:
                failures += 1
                self._log_failure(sub, event)

        deadline = _timeout_math.to_deadline(self._handler_timeout)
        for sub, future in pending:
            try:
                future.result(timeout=_timeout_math.from_deadline(deadline))
            except concurrent.futures.TimeoutError:
                failures += 1
                future.cancel()
                self._log.warning(
                    "%s handler %r still running after %.1fs, abandoned",
                    self.category,
                    sub.handler,
                    self._handler_timeout,
                )
            except Exception:
                failures += 1
                self._log_failure(sub, event)

        return failures

    def _schedule(
        self, sub: _Subscriber, awaitable: Awaitable
    ) -> concurrent.futures.Future | None:
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None

        # a stopped loop would never run the handler
        loop = sub.loop if sub.loop and sub.loop.is_running() else current
        if loop is None:
            asyncio.run(_awaited(awaitable))
            return None

        if loop is current:
            # Can't block our own loop waiting for it; let it run and report
            task = loop.create_task(_awaited(awaitable))
            task.add_done_callback(lambda t: self._task_done(sub, t))
            return None

        return asyncio.run_coroutine_threadsafe(_awaited(awaitable), loop)

    def _task_done(self, sub: _Subscriber, task: asyncio.Task) -> None:
        if not task.cancelled() and (exc := task.exception()):
            self._log.error(
                "%s handler %r failed",
                self.category,
                sub.handler,
                exc_info=exc,
            )

    def _log_failure(self, sub: _Subscriber, event: Any) -> None:
        self._log.error(
            "%s handler %r failed on %r",
            self.category,
            sub.handler,
            event,
            exc_info=True,
        )


async def _awaited(awaitable: Awaitable) -> Any:
    return await awaitable
