"""In-process publish/subscribe channel for real-time events."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Optional, Union

from .events import Event, EventKind

logger = logging.getLogger(__name__)

Handler = Callable[[Event], Union[None, Awaitable[None]]]


class EventHub:
    """Typed event channel between the transport adapter and the engine.

    Publishers enqueue without waiting; a single consumer task dispatches
    each event, in arrival order, to the handlers registered for its kind.
    A failing handler is logged and does not stop delivery.
    """

    def __init__(self, maxsize: int = 0) -> None:
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize)
        self._handlers: dict[EventKind, list[Handler]] = defaultdict(list)
        self._task: Optional[asyncio.Task] = None

    def subscribe(self, kind: EventKind, handler: Handler) -> None:
        handlers = self._handlers[kind]
        if handler not in handlers:
            handlers.append(handler)

    def subscribe_all(self, handler: Handler) -> None:
        for kind in EventKind:
            self.subscribe(kind, handler)

    def unsubscribe(self, kind: EventKind, handler: Handler) -> None:
        handlers = self._handlers.get(kind)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def publish(self, kind: EventKind | str, payload: Any = None) -> Event:
        event = Event(kind=kind if isinstance(kind, EventKind) else EventKind.parse(kind), payload=payload)
        self._queue.put_nowait(event)
        return event

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def dispatch(self, event: Event) -> None:
        for handler in list(self._handlers.get(event.kind, ())):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Handler {getattr(handler, '__qualname__', handler)!r} failed for {event.kind.value}")

    async def drain(self) -> int:
        """Dispatch everything currently queued; returns the number of events handled."""
        handled = 0
        while not self._queue.empty():
            event = self._queue.get_nowait()
            try:
                await self.dispatch(event)
            finally:
                self._queue.task_done()
            handled += 1
        return handled

    async def run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.dispatch(event)
            finally:
                self._queue.task_done()

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
