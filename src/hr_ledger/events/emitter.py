"""In-process publisher for approval and payroll events.

Sinks (notifications, reporting feeds) subscribe by event class, by
category, or to everything. A failing sink is logged and reported back to
the publisher; it never aborts the workflow operation that raised the event.
"""

from __future__ import annotations

import logging
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Callable, Iterable

from hr_ledger.events.types import DomainEvent, EventCategory

logger = logging.getLogger(__name__)

EventHandler = Callable[[DomainEvent], None]


@dataclass
class _Hold:
    events: list[DomainEvent] = field(default_factory=list)
    depth: int = 0


# Open batches of the running task, keyed by emitter
_holds: ContextVar[dict[int, _Hold] | None] = ContextVar("held_events", default=None)


@dataclass
class Subscription:
    handler: EventHandler
    event_types: frozenset[str] = field(default_factory=frozenset)
    categories: frozenset[EventCategory] = field(default_factory=frozenset)

    def matches(self, event: DomainEvent) -> bool:
        if self.event_types and event.event_type not in self.event_types:
            return False
        if self.categories and event.category not in self.categories:
            return False
        return True


def _as_list(value):
    return value if isinstance(value, (list, tuple, set)) else [value]


class EventEmitter:
    """Synchronous event publisher.

    Usage:
        emitter = EventEmitter()
        emitter.on(ApprovalRequestResolved, notify_requester)
        emitter.on_category(EventCategory.PAYMENT, post_to_finance_channel)

        with emitter.batch() as batch:
            batch.add(created_event)
            batch.add(status_event)
        # Delivered together once the block exits cleanly

    Batches belong to the running task, so concurrent requests sharing
    one emitter never release or drop each other's events.
    """

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    def on(self, event_type, handler: EventHandler) -> None:
        """Subscribe ``handler`` to one event class or a list of them."""
        names = frozenset(t.__name__ for t in _as_list(event_type))
        self._subscriptions.append(Subscription(handler, event_types=names))

    def on_category(self, category, handler: EventHandler) -> None:
        self._subscriptions.append(
            Subscription(handler, categories=frozenset(_as_list(category)))
        )

    def on_all(self, handler: EventHandler) -> None:
        self._subscriptions.append(Subscription(handler))

    def off(self, handler: EventHandler) -> None:
        self._subscriptions = [s for s in self._subscriptions if s.handler != handler]

    def emit(self, event: DomainEvent) -> list[Exception]:
        """Deliver ``event`` to every matching subscriber.

        Inside a batch the event is held instead. Returns the exceptions
        raised by subscribers, if any.
        """
        hold = self._hold()
        if hold is not None:
            hold.events.append(event)
            return []
        return self._deliver(event)

    def emit_all(self, events: Iterable[DomainEvent]) -> list[Exception]:
        errors: list[Exception] = []
        for event in events:
            errors.extend(self.emit(event))
        return errors

    def batch(self) -> EventBatch:
        """Hold events until the outermost batch exits.

        Held events are dropped if the block raises.
        """
        return EventBatch(self)

    def _deliver(self, event: DomainEvent) -> list[Exception]:
        errors: list[Exception] = []
        for subscription in self._subscriptions:
            if not subscription.matches(event):
                continue
            try:
                subscription.handler(event)
            except Exception as exc:
                logger.exception(
                    "Event sink %r failed on %s (event %s)",
                    subscription.handler,
                    event.event_type,
                    event.metadata.event_id,
                )
                errors.append(exc)
        return errors

    def _hold(self) -> _Hold | None:
        holds = _holds.get()
        return holds.get(id(self)) if holds else None

    def _open(self) -> None:
        hold = self._hold()
        if hold is None:
            hold = _Hold()
            _holds.set({**(_holds.get() or {}), id(self): hold})
        hold.depth += 1

    def _close(self, deliver: bool) -> list[Exception]:
        hold = self._hold()
        if hold is None:
            return []
        hold.depth -= 1
        if hold.depth > 0 and deliver:
            return []

        # A failed inner batch drops everything the outer ones held
        remaining = dict(_holds.get() or {})
        remaining.pop(id(self), None)
        _holds.set(remaining)
        if not deliver:
            logger.debug("Dropped %d held event(s)", len(hold.events))
            return []
        return self.emit_all(hold.events)


class EventBatch:
    """Context manager returned by ``EventEmitter.batch``."""

    def __init__(self, emitter: EventEmitter) -> None:
        self._emitter = emitter
        self.errors: list[Exception] = []

    def __enter__(self) -> EventBatch:
        self._emitter._open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.errors = self._emitter._close(deliver=exc_type is None)

    def add(self, event: DomainEvent) -> None:
        self._emitter.emit(event)
