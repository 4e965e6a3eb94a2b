"""Clock and timer abstraction.

Backoff delays are scheduled waits, never sleeps: the engine hands a callback
to ``Clock.call_later`` and goes on dispatching other eligible steps. In
production that is a ``threading.Timer``; tests substitute
:class:`~flowspine.orchestration.testing.ManualClock` and advance time by
hand, which keeps retry behaviour deterministic.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable


@runtime_checkable
class TimerHandle(Protocol):
    """A scheduled callback that can still be cancelled."""

    def cancel(self) -> None:
        ...


@runtime_checkable
class Clock(Protocol):
    """Source of time and of delayed callbacks."""

    def now(self) -> datetime:
        """Current time, timezone-aware UTC."""
        ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Run ``callback`` once, ``delay`` seconds from now, off the caller's stack."""
        ...


class SystemClock:
    """Wall clock backed by daemon ``threading.Timer`` threads."""

    def now(self) -> datetime:
        return datetime.now(UTC)

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = threading.Timer(max(delay, 0.0), callback)
        timer.daemon = True
        timer.start()
        return timer


__all__ = ["Clock", "TimerHandle", "SystemClock"]
