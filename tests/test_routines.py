import threading
import time

import pytest

from jobflow.errors import UnknownRoutineError
from jobflow.routines.registry import RoutineRegistry


@pytest.fixture
def registry():
    registry = RoutineRegistry()
    registry.load()
    return registry


def test_builtins_are_loaded(registry):
    assert {"set_next", "schedule_resume", "set_vars", "noop"} <= set(registry.list_names())


def test_unknown_routine(registry):
    with pytest.raises(UnknownRoutineError, match="Unknown internal function: nope"):
        registry.get("nope")


def test_register_and_call(registry):
    registry.register("double", lambda params: params["n"] * 2)
    assert registry.call("double", {"n": 4}) == 8


@pytest.mark.parametrize("name", ["", "has space", "1abc", None])
def test_rejects_bad_names(registry, name):
    with pytest.raises(ValueError, match="Invalid routine name"):
        registry.register(name, lambda params: None)


def test_rejects_wrong_signature(registry):
    with pytest.raises(ValueError, match="single params argument"):
        registry.register("two_args", lambda a, b: None)


def test_rejects_non_callable(registry):
    with pytest.raises(ValueError, match="not callable"):
        registry.register("thing", 42)


def test_rejects_duplicates_unless_replacing(registry):
    with pytest.raises(ValueError, match="already registered"):
        registry.register("noop", lambda params: {"x": 1})
    registry.register("noop", lambda params: {"x": 1}, replace=True)
    assert registry.call("noop") == {"x": 1}


def test_concurrent_first_lookups_wait_for_load(monkeypatch):
    registry = RoutineRegistry()
    original_register = RoutineRegistry.register

    def slow_register(self, name, fn, replace=False):
        time.sleep(0.01)
        original_register(self, name, fn, replace=replace)

    monkeypatch.setattr(RoutineRegistry, "register", slow_register)
    barrier = threading.Barrier(8)
    errors = []

    def lookup():
        barrier.wait()
        try:
            registry.get("noop")
        except UnknownRoutineError as e:
            errors.append(e)

    threads = [threading.Thread(target=lookup) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert {"set_next", "schedule_resume", "set_vars", "noop"} <= set(registry.list_names())


class TestBuiltins:
    def test_set_next(self, registry):
        assert registry.call("set_next", {"value": 3}) == {"next_step": 3}
        assert registry.call("set_next", {}) == {"next_step": None}

    def test_set_vars(self, registry):
        assert registry.call("set_vars", {"values": {"a": 1}}) == {"set_vars": {"a": 1}}
        assert registry.call("set_vars", {"b": 2}) == {"set_vars": {"b": 2}}

    def test_schedule_resume(self, registry):
        assert registry.call("schedule_resume", {"resume_at": "2030-01-01T00:00:00Z"}) == {
            "delayed_until": "2030-01-01T00:00:00Z"
        }
        assert "delayed_until" in registry.call("schedule_resume", {"delay": "5m"})
        assert registry.call("schedule_resume", {}) == {}
