"""
Typed domain events.

Handlers are registered against an event class rather than a string name,
so a typo in registration fails at import time instead of silently never
firing.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

from calcbase.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class DomainEvent:
    """Base class for all domain events."""


@dataclass(frozen=True)
class ComputedValuesCommitted(DomainEvent):
    """
    Computed values were committed for one table.

    ``changes`` holds RecordChange entries (see calcbase.realtime.changes);
    typed as Any here to keep core free of realtime imports.
    """

    base_id: str
    table_id: str
    changes: tuple[Any, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class OutboxTaskFailed(DomainEvent):
    """An outbox task failed; ``permanent`` means no further automatic retry."""

    task_id: str
    error: str
    permanent: bool


E = TypeVar("E", bound=DomainEvent)
Handler = Callable[[Any], Awaitable[None]]


class EventBus:
    """In-process async event bus keyed by event class."""

    def __init__(self) -> None:
        self._handlers: dict[type[DomainEvent], list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Callable[[E], Awaitable[None]]) -> None:
        """Register an async handler for an event class (and its subclasses)."""
        if not (isinstance(event_type, type) and issubclass(event_type, DomainEvent)):
            raise TypeError(f"{event_type!r} is not a DomainEvent subclass")
        self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: type[E], handler: Callable[[E], Awaitable[None]]) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def handlers_for(self, event: DomainEvent) -> list[Handler]:
        """Handlers registered for the event's class and its bases, in MRO order."""
        result: list[Handler] = []
        for cls in type(event).__mro__:
            result.extend(self._handlers.get(cls, []))
        return result

    async def publish(self, event: DomainEvent) -> int:
        """
        Deliver an event to every matching handler.

        Handler failures are logged and do not stop delivery to the rest.

        Returns:
            Number of handlers that completed without raising
        """
        delivered = 0
        for handler in self.handlers_for(event):
            try:
                await handler(event)
                delivered += 1
            except Exception as e:
                logger.exception(
                    f"Event handler failed for {type(event).__name__}: {e}",
                    extra={"event": type(event).__name__},
                )
        return delivered


class DeferredEvents:
    """
    Collects published events and delivers them later.

    Passed where an EventBus is expected when delivery must wait, e.g.
    until an outbox task is settled and outside its execution timeout.
    """

    def __init__(self) -> None:
        self.events: list[DomainEvent] = []

    async def publish(self, event: DomainEvent) -> int:
        self.events.append(event)
        return 0

    async def flush(self, bus: EventBus | None) -> int:
        """Deliver collected events to ``bus`` in publish order and clear the buffer."""
        events, self.events = self.events, []
        if bus is None:
            return 0
        delivered = 0
        for event in events:
            delivered += await bus.publish(event)
        return delivered
