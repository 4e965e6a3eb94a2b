"""Tests for flowspine.execution.registry — ExecutorRegistry."""

import pytest

from flowspine.core.errors import UnknownStepTypeError
from flowspine.execution.dispatch import CancellationToken
from flowspine.execution.registry import ExecutorRegistry, FunctionExecutor, StepExecutor
from flowspine.orchestration.testing import StubExecutor


class TestRegister:
    def test_register_object(self):
        registry = ExecutorRegistry()
        stub = StubExecutor({"ok": True})
        assert registry.register("task", stub) is stub
        assert registry.resolve("task") is stub

    def test_register_function_is_wrapped(self):
        registry = ExecutorRegistry()

        def double(config, data, cancel):
            return {"value": config["n"] * 2}

        executor = registry.register("double", double)
        assert isinstance(executor, FunctionExecutor)
        assert isinstance(executor, StepExecutor)
        assert executor.execute({"n": 4}, {}, CancellationToken()) == {"value": 8}

    def test_decorator(self):
        registry = ExecutorRegistry()

        @registry.executor("echo", description="Echo config back")
        def echo(config, data, cancel):
            return dict(config)

        assert echo({"a": 1}, {}, CancellationToken()) == {"a": 1}
        assert registry.resolve("echo").execute({"a": 1}, {}, CancellationToken()) == {"a": 1}
        assert registry.describe() == {"echo": "Echo config back"}

    def test_reregister_replaces(self):
        registry = ExecutorRegistry()
        first, second = StubExecutor(), StubExecutor()
        registry.register("task", first)
        registry.register("task", second)
        assert registry.resolve("task") is second
        assert len(registry) == 1

    def test_rejects_non_callable(self):
        with pytest.raises(TypeError):
            ExecutorRegistry().register("task", 42)

    def test_rejects_empty_type(self):
        with pytest.raises(ValueError):
            ExecutorRegistry().register("", StubExecutor())


class TestLookup:
    def test_unknown_type(self):
        registry = ExecutorRegistry()
        registry.register("http", StubExecutor())
        with pytest.raises(UnknownStepTypeError) as exc_info:
            registry.resolve("sql")
        assert exc_info.value.step_type == "sql"
        assert exc_info.value.available == ["http"]

    def test_has_and_contains(self):
        registry = ExecutorRegistry()
        registry.register("http", StubExecutor())
        assert registry.has("http")
        assert "http" in registry
        assert "sql" not in registry

    def test_unregister(self):
        registry = ExecutorRegistry()
        registry.register("http", StubExecutor())
        assert registry.unregister("http") is True
        assert registry.unregister("http") is False
        assert registry.list_types() == []

    def test_list_types_sorted(self):
        registry = ExecutorRegistry()
        for step_type in ("sql", "http", "python"):
            registry.register(step_type, StubExecutor())
        assert registry.list_types() == ["http", "python", "sql"]
