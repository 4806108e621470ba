"""
Event Bus Port: pub/sub for exchange push, monitor and lifecycle events.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import TypeVar

from futures_bot.domain.events import DomainEvent

T = TypeVar("T", bound=DomainEvent)
EventHandler = Callable[[DomainEvent], Awaitable[None]]


class EventBusPort(ABC):
    """Publish/subscribe keyed by event class."""

    @abstractmethod
    async def start(self) -> None: ...

    @abstractmethod
    async def stop(self) -> None:
        """Stop dispatching; queued events are drained first."""
        ...

    @abstractmethod
    def subscribe(self, event_type: type[T], handler: Callable[[T], Awaitable[None]]) -> None: ...

    @abstractmethod
    def unsubscribe(self, event_type: type[T], handler: Callable[[T], Awaitable[None]]) -> None: ...

    @abstractmethod
    async def publish(self, event: DomainEvent) -> None: ...

    @abstractmethod
    def subscriber_count(self, event_type: type[DomainEvent]) -> int: ...
