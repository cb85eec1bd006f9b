"""In-process event bus."""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable, Generic, TypeVar

from loguru import logger

T = TypeVar("T")

Handler = Callable[[T], Any]


class EventBus(Generic[T]):
    """Fan-out of events to every subscriber, in subscription order.

    Handlers may be plain callables or coroutine functions. Coroutines are
    scheduled on the running loop; without a loop they are dropped with a
    warning. A handler that raises is logged and skipped so one broken
    subscriber cannot starve the others.
    """

    def __init__(self, name: str = "events"):
        self.name = name
        self._handlers: list[Handler] = []
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        """Register *handler* and return a callable that unregisters it."""
        self._handlers.append(handler)

        def _unsubscribe() -> None:
            try:
                self._handlers.remove(handler)
            except ValueError:
                pass

        return _unsubscribe

    def publish(self, event: T) -> None:
        for handler in list(self._handlers):
            try:
                outcome = handler(event)
            except Exception:
                logger.exception("Bus {}: subscriber {!r} failed", self.name, handler)
                continue
            if inspect.isawaitable(outcome):
                self._schedule(handler, outcome)

    def _schedule(self, handler: Handler, awaitable: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Bus {}: no running loop for async subscriber {!r}", self.name, handler)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        async def _run() -> None:
            try:
                await awaitable
            except Exception:
                logger.exception("Bus {}: async subscriber {!r} failed", self.name, handler)

        task = loop.create_task(_run())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def __len__(self) -> int:
        return len(self._handlers)
