"""
Shared pytest fixtures and configuration for flowspine tests.

This module provides:
- Settings isolation (no FLOWSPINE_* variables or cached settings leak in)
- A deterministic engine (inline dispatch, manual clock)
- Executor doubles and an event recorder attached to the engine
- Sample step lists (linear chain, diamond)

Usage:
    Fixtures are auto-discovered by pytest:

    def test_something(engine, recorder, linear_steps):
        engine.create_workflow("wf", "wf", linear_steps)
        ...
"""

from __future__ import annotations

import os
from collections.abc import Generator
from typing import Any

import pytest

from flowspine.core.settings import EngineSettings, clear_settings_cache
from flowspine.execution.registry import ExecutorRegistry
from flowspine.orchestration.engine import WorkflowEngine
from flowspine.orchestration.persistence import InMemoryEventStore
from flowspine.orchestration.testing import ManualClock, StubExecutor, make_engine


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch) -> Generator[None, None, None]:
    """Strip FLOWSPINE_* variables and forget cached settings around every test."""
    for key in list(os.environ):
        if key.startswith("FLOWSPINE_"):
            monkeypatch.delenv(key, raising=False)
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def settings() -> EngineSettings:
    """Engine settings with the documented defaults (3 attempts, 1s base backoff)."""
    return EngineSettings(_env_file=None)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def stub() -> StubExecutor:
    """Executor that always succeeds and records its calls."""
    return StubExecutor()


@pytest.fixture
def registry(stub: StubExecutor) -> ExecutorRegistry:
    """Registry with the ``stub`` executor registered as step type ``task``."""
    reg = ExecutorRegistry()
    reg.register("task", stub)
    return reg


@pytest.fixture
def engine(registry: ExecutorRegistry, clock: ManualClock, settings: EngineSettings) -> Generator[WorkflowEngine, None, None]:
    """Deterministic engine: steps run inline, backoffs wait on ``clock``."""
    eng = make_engine(registry=registry, clock=clock, settings=settings)
    yield eng
    eng.close()


@pytest.fixture
def recorder(engine: WorkflowEngine) -> InMemoryEventStore:
    """Every event the engine publishes, in order."""
    store = InMemoryEventStore()
    store.attach(engine)
    return store


@pytest.fixture
def linear_steps() -> list[dict[str, Any]]:
    """A → B → C."""
    return [
        {"id": "A", "type": "task"},
        {"id": "B", "type": "task", "dependencies": ["A"]},
        {"id": "C", "type": "task", "dependencies": ["B"]},
    ]


@pytest.fixture
def diamond_steps() -> list[dict[str, Any]]:
    """A → (B, C) → D."""
    return [
        {"id": "A", "type": "task"},
        {"id": "B", "type": "task", "dependencies": ["A"]},
        {"id": "C", "type": "task", "dependencies": ["A"]},
        {"id": "D", "type": "task", "dependencies": ["B", "C"]},
    ]
