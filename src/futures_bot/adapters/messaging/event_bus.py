"""
In-Memory Event Bus.

Queue-backed pub/sub for exchange push, monitor and lifecycle events.
Handlers of one event run concurrently; a failing handler is logged and does
not affect the others.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import TypeVar

from futures_bot.domain.events import DomainEvent
from futures_bot.observability.logging import get_logger
from futures_bot.ports.event_bus import EventBusPort

logger = get_logger(__name__)

T = TypeVar("T", bound=DomainEvent)
Handler = Callable[[DomainEvent], Awaitable[None]]


class InMemoryEventBus(EventBusPort):
    """
    Async event bus keyed by the exact event class.

    Before `start()` (and after `stop()`), `publish()` dispatches inline, which
    keeps tests and one-shot scripts deterministic.
    """

    def __init__(self):
        self._handlers: dict[type[DomainEvent], list[Handler]] = defaultdict(list)
        self._running = False
        self._queue: asyncio.Queue[DomainEvent] = asyncio.Queue()
        self._processor_task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return

        self._running = True
        self._processor_task = asyncio.create_task(self._process_events(), name="exit_event_bus")
        logger.debug("Event bus started")

    async def stop(self) -> None:
        """Stop the processor and drain remaining events."""
        if not self._running:
            return

        self._running = False

        if self._processor_task:
            self._processor_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._processor_task
            self._processor_task = None

        while not self._queue.empty():
            event = self._queue.get_nowait()
            try:
                await self._dispatch(event)
            except Exception as e:
                logger.exception(f"Error processing {type(event).__name__} during shutdown: {e}")

        logger.debug("Event bus stopped")

    def subscribe(self, event_type: type[T], handler: Callable[[T], Awaitable[None]]) -> None:
        handlers = self._handlers[event_type]
        if handler not in handlers:
            handlers.append(handler)  # type: ignore[arg-type]
        logger.debug(f"Subscribed {getattr(handler, '__name__', repr(handler))} to {event_type.__name__}")

    def unsubscribe(self, event_type: type[T], handler: Callable[[T], Awaitable[None]]) -> None:
        handlers = self._handlers.get(event_type)
        if handlers and handler in handlers:
            handlers.remove(handler)  # type: ignore[arg-type]

    async def publish(self, event: DomainEvent) -> None:
        if not self._running:
            await self._dispatch(event)
            return

        await self._queue.put(event)

    async def wait_idle(self) -> None:
        """Block until every queued event has been dispatched."""
        await self._queue.join()

    def subscriber_count(self, event_type: type[DomainEvent]) -> int:
        return len(self._handlers.get(event_type, []))

    async def _process_events(self) -> None:
        while self._running:
            event = await self._queue.get()
            try:
                await self._dispatch(event)
            except Exception as e:
                logger.exception(f"Event processor error: {e}")
            finally:
                self._queue.task_done()

    async def _dispatch(self, event: DomainEvent) -> None:
        handlers = list(self._handlers.get(type(event), []))
        if not handlers:
            logger.debug(f"No handlers for {event.event_type}")
            return

        async with asyncio.TaskGroup() as tg:
            for handler in handlers:
                tg.create_task(self._safe_call(handler, event))

    async def _safe_call(self, handler: Handler, event: DomainEvent) -> None:
        try:
            await handler(event)
        except Exception as e:
            handler_name = getattr(handler, "__name__", repr(handler))
            logger.exception(f"Handler {handler_name} failed for {event.event_type}: {e}")
