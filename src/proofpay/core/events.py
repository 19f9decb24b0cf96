"""In-process async event bus for ProofPay domain events.

Presentation code (CLI, dashboards, notifiers) subscribes here; the core only
publishes.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

logger = logging.getLogger("proofpay.events")

LINK_ADDED = "link-added"
LINK_REMOVED = "link-removed"
SWITCH_COMMITTED = "switch-committed"
SWITCH_FAILED = "switch-failed"
REQUEST_CREATED = "request-created"
REQUEST_PAID = "request-paid"
REQUEST_EXPIRED = "request-expired"
REQUEST_CANCELLED = "request-cancelled"


@dataclass
class DomainEvent:
    name: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Callback = Callable[[DomainEvent], Awaitable[None]]


class EventBus:
    """Async pub/sub bus keyed by event name."""

    def __init__(self, history_limit: int = 500):
        self._subscribers: dict[str, list[Callback]] = {}  # name -> callbacks
        self._global: list[Callback] = []
        self._history: list[DomainEvent] = []
        self._history_limit = history_limit
        self._lock = asyncio.Lock()

    def subscribe(self, name: str, callback: Callback) -> None:
        if name not in self._subscribers:
            self._subscribers[name] = []
        self._subscribers[name].append(callback)

    def subscribe_all(self, callback: Callback) -> None:
        self._global.append(callback)

    def unsubscribe(self, name: str, callback: Callback) -> None:
        callbacks = self._subscribers.get(name, [])
        if callback in callbacks:
            callbacks.remove(callback)

    async def publish(self, event: DomainEvent) -> None:
        async with self._lock:
            self._history.append(event)
            if len(self._history) > self._history_limit:
                del self._history[: len(self._history) - self._history_limit]

        # A failing subscriber must not break the publisher or other subscribers.
        for callback in [*self._global, *self._subscribers.get(event.name, [])]:
            try:
                await callback(event)
            except Exception as e:
                logger.error(f"Subscriber callback error on '{event.name}': {e}")

    async def emit(self, name: str, **payload: Any) -> DomainEvent:
        event = DomainEvent(name=name, payload=payload)
        await self.publish(event)
        return event

    def get_history(self, limit: int = 50, name: str | None = None) -> list[DomainEvent]:
        # Return a copy to avoid mutation during iteration
        events = list(self._history)
        if name:
            events = [e for e in events if e.name == name]
        return events[-limit:]
