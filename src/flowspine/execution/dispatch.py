"""Step dispatch strategies and cooperative cancellation.

ARCHITECTURE
────────────
::

    Dispatcher (protocol)
      ├── InlineDispatcher      ─ runs the work on the caller's thread
      └── ThreadPoolDispatcher  ─ ThreadPoolExecutor, max_workers threads

    CancellationToken           ─ handed to every executor call

The engine never holds a workflow lock while a dispatched job runs, so the
choice of dispatcher only decides *where* executors run, not how state is
guarded. ``InlineDispatcher`` is what the test-suite uses: with a manual
clock, a whole workflow runs to completion inside ``start_workflow``.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Protocol, runtime_checkable

from flowspine.core.logging import get_logger

logger = get_logger(__name__)


class CancellationToken:
    """Cooperative cancellation signal passed to step executors.

    The engine sets it when the dispatch is no longer wanted: the
    workflow was rolled back, reset, removed or failed, or the engine
    closed. Pausing does not cancel anything. Executors that care poll
    ``cancelled`` or block on ``wait``; executors that ignore it simply run
    to completion.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or timeout; returns True if cancelled."""
        return self._event.wait(timeout)

    def __repr__(self) -> str:
        state = f"cancelled:{self.reason}" if self.cancelled else "active"
        return f"CancellationToken({state})"


@runtime_checkable
class Dispatcher(Protocol):
    """Runs engine jobs (one step attempt each)."""

    def submit(self, job: Callable[[], None]) -> None:
        ...

    def shutdown(self, wait: bool = True) -> None:
        ...


class InlineDispatcher:
    """Run each job immediately on the submitting thread."""

    def submit(self, job: Callable[[], None]) -> None:
        job()

    def shutdown(self, wait: bool = True) -> None:
        pass


class ThreadPoolDispatcher:
    """Run jobs concurrently on a bounded thread pool."""

    def __init__(self, max_workers: int = 4, thread_name_prefix: str = "flowspine-step") -> None:
        self.max_workers = max_workers
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix=thread_name_prefix,
        )

    def submit(self, job: Callable[[], None]) -> None:
        future = self._executor.submit(job)
        future.add_done_callback(self._log_crash)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=not wait)

    @staticmethod
    def _log_crash(future: Future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error("dispatch.job_crashed", error=str(error), error_type=type(error).__name__)


__all__ = [
    "CancellationToken",
    "Dispatcher",
    "InlineDispatcher",
    "ThreadPoolDispatcher",
]
