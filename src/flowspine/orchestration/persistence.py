"""Persistence sinks — durable views of the engine's event stream.

The engine never writes anything to disk itself. Persistence is an event
subscriber like any other: attach a store to an engine (or a bare
``EventBus``) and it records every event it is sent, in delivery order.

Stores::

    InMemoryEventStore   ─ list in memory; handy for tests and introspection
    JsonLinesEventStore  ─ one JSON object per line, appended and flushed per event

Workflow state itself can be written out with :func:`save_snapshot`, which
serialises a ``Workflow`` copy (steps, data, history, checkpoint names) to a
JSON document.

Example::

    store = JsonLinesEventStore("events.jsonl")
    store.attach(engine)
    ...
    for record in store.read(workflow_id="wf-1"):
        print(record["sequence"], record["event_type"])
"""

from __future__ import annotations

import json
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator
from pathlib import Path
from typing import Any, Protocol

from flowspine.core.errors import ValidationError
from flowspine.core.events import Event, EventBus, EventHandler
from flowspine.core.logging import get_logger
from flowspine.orchestration.models import Workflow

logger = get_logger(__name__)


class _Subscribable(Protocol):
    def subscribe(self, event_type: str, handler: EventHandler, workflow_id: str | None = None) -> str:
        ...


class _AttachableStore(ABC):
    """Shared ``attach`` logic for event stores; subclasses implement ``append``."""

    def attach(
        self,
        source: _Subscribable | EventBus,
        pattern: str = "*",
        workflow_id: str | None = None,
    ) -> str:
        """Subscribe this store to an engine or event bus. Returns the subscription id."""
        return source.subscribe(pattern, self, workflow_id=workflow_id)

    def __call__(self, event: Event) -> None:
        self.append(event)

    @abstractmethod
    def append(self, event: Event) -> None:
        """Record one event."""


class InMemoryEventStore(_AttachableStore):
    """Keeps every received event in a list."""

    def __init__(self) -> None:
        self._events: list[Event] = []
        self._lock = threading.Lock()

    def append(self, event: Event) -> None:
        with self._lock:
            self._events.append(event)

    def events(self, workflow_id: str | None = None, event_type: str | None = None) -> list[Event]:
        """Recorded events, optionally filtered by workflow and type pattern."""
        with self._lock:
            events = list(self._events)
        if workflow_id is not None:
            events = [e for e in events if e.workflow_id == workflow_id]
        if event_type is not None:
            events = [e for e in events if e.matches(event_type)]
        return events

    def event_types(self, workflow_id: str | None = None) -> list[str]:
        return [e.event_type for e in self.events(workflow_id)]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()

    def __len__(self) -> int:
        return len(self._events)


class JsonLinesEventStore(_AttachableStore):
    """Appends each event as one JSON line to a file."""

    def __init__(self, path: str | Path, encoding: str = "utf-8") -> None:
        self.path = Path(path)
        self._encoding = encoding
        self._lock = threading.Lock()
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def append(self, event: Event) -> None:
        line = json.dumps(event.to_dict(), default=str, sort_keys=True)
        with self._lock:
            with open(self.path, "a", encoding=self._encoding) as f:
                f.write(line + "\n")
                f.flush()

    def read(self, workflow_id: str | None = None) -> Iterator[dict[str, Any]]:
        """Yield stored records in file order.

        Raises:
            ValidationError: A line isn't valid JSON
        """
        if not self.path.exists():
            return
        with open(self.path, encoding=self._encoding) as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError as e:
                    raise ValidationError(
                        f"Invalid JSON at line {line_num}: {e}",
                        cause=e,
                    ).with_context(path=str(self.path))
                if workflow_id is None or record.get("workflow_id") == workflow_id:
                    yield record


def snapshot_workflow(workflow: Workflow) -> dict[str, Any]:
    """JSON-safe dict of a workflow's full state."""
    return json.loads(json.dumps(workflow.to_dict(), default=str))


def save_snapshot(workflow: Workflow, path: str | Path) -> Path:
    """Write :func:`snapshot_workflow` output to ``path`` (replacing it)."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp = target.with_suffix(target.suffix + ".tmp")
    tmp.write_text(json.dumps(snapshot_workflow(workflow), indent=2), encoding="utf-8")
    tmp.replace(target)
    logger.debug("workflow.snapshot_saved", workflow=workflow.id, path=str(target))
    return target


def load_snapshot(path: str | Path) -> dict[str, Any]:
    """Read a snapshot written by :func:`save_snapshot`."""
    return json.loads(Path(path).read_text(encoding="utf-8"))


__all__ = [
    "InMemoryEventStore",
    "JsonLinesEventStore",
    "load_snapshot",
    "save_snapshot",
    "snapshot_workflow",
]
