"""Engine event stream.

Why This Module Exists
----------------------
Persistence and notification collaborators need to see every lifecycle
transition the engine makes, in the order it made them, without the engine
importing any of them. The ``EventBus`` is an ordered observer list:
producers publish, subscribers register a pattern and a callback.

Delivery is synchronous and in subscription order. The engine publishes
while holding the owning workflow's lock, so the events of one workflow
reach every subscriber in exactly the order the transitions happened.

Usage::

    from flowspine.core.events import EventBus

    bus = EventBus()
    sub_id = bus.subscribe("step:*", lambda event: print(event.event_type))
    bus.publish(Event(event_type="step:started", workflow_id="wf-1"))
    bus.unsubscribe(sub_id)

Patterns: ``*`` matches everything, ``step:*`` matches ``step:started``,
``step:retry`` and so on, anything else matches exactly.
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from flowspine.core.logging import get_logger

__all__ = [
    "Event",
    "EventBus",
    "EventHandler",
    "Subscription",
]

logger = get_logger(__name__)


# ── Event Model ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Event:
    """Immutable lifecycle event.

    Attributes:
        event_type: Colon-separated type (e.g. ``step:retry``, ``state:changed``)
        workflow_id: Workflow the event belongs to (None for engine-level events)
        payload: Event-specific data
        sequence: Position in the workflow's event stream (0 for engine events)
        timestamp: When the event occurred (UTC)
        event_id: Unique event identifier
    """

    event_type: str
    workflow_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    sequence: int = 0
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def matches(self, pattern: str) -> bool:
        """Check if the event type matches a subscription pattern."""
        if pattern == "*":
            return True
        if pattern.endswith(":*"):
            prefix = pattern[:-2]
            return self.event_type.startswith(prefix + ":")
        return self.event_type == pattern

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON/storage."""
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "workflow_id": self.workflow_id,
            "sequence": self.sequence,
            "timestamp": self.timestamp.isoformat(),
            "payload": self.payload,
        }


# ── Type Aliases ─────────────────────────────────────────────────────────

EventHandler = Callable[[Event], None]


@dataclass
class Subscription:
    """Internal subscription record."""

    id: str
    pattern: str
    handler: EventHandler
    workflow_id: str | None = None

    def wants(self, event: Event) -> bool:
        if self.workflow_id is not None and event.workflow_id != self.workflow_id:
            return False
        return event.matches(self.pattern)


# ── EventBus ─────────────────────────────────────────────────────────────


class EventBus:
    """In-process, synchronous observer list.

    Handler exceptions are logged and swallowed: a broken observer must
    never stall the scheduling loop that published the event.
    """

    def __init__(self) -> None:
        self._subscriptions: dict[str, Subscription] = {}
        self._lock = threading.Lock()
        self._closed = False

    def publish(self, event: Event) -> None:
        """Deliver an event to every matching subscriber, in subscription order."""
        if self._closed:
            return

        with self._lock:
            targets = [sub for sub in self._subscriptions.values() if sub.wants(event)]

        for sub in targets:
            try:
                sub.handler(event)
            except Exception as e:
                logger.warning(
                    "event_handler_error",
                    subscription_id=sub.id,
                    event_type=event.event_type,
                    workflow=event.workflow_id,
                    error=str(e),
                )

    def subscribe(
        self,
        event_type: str,
        handler: EventHandler,
        workflow_id: str | None = None,
    ) -> str:
        """Subscribe to events matching a pattern.

        Args:
            event_type: Pattern to match (supports ``*`` and ``prefix:*``)
            handler: Callback receiving each matching :class:`Event`
            workflow_id: Only deliver events of this workflow

        Returns:
            Subscription ID
        """
        sub_id = f"sub_{uuid.uuid4().hex[:12]}"
        with self._lock:
            self._subscriptions[sub_id] = Subscription(
                id=sub_id,
                pattern=event_type,
                handler=handler,
                workflow_id=workflow_id,
            )
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Remove a subscription. Returns False if it was unknown."""
        with self._lock:
            return self._subscriptions.pop(subscription_id, None) is not None

    def close(self) -> None:
        """Stop delivering events and drop all subscriptions."""
        self._closed = True
        with self._lock:
            self._subscriptions.clear()

    @property
    def subscription_count(self) -> int:
        """Number of active subscriptions."""
        return len(self._subscriptions)
