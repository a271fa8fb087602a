import sqlite3

import pytest

from errors import InvalidState, MachineBusy, NoSuchMachine
from models import BUSY, DEAD, IDLE, UNAVAILABLE
from registry import MachineRegistry


@pytest.fixture
def registry():
    events = []
    r = MachineRegistry(emit=lambda event, **payload: events.append((event, payload)))
    r.events = events
    return r


def test_register_and_list_by_class(registry):
    registry.register("a:22", ["gpu", "cpu"])
    registry.register("b:22", ["cpu"])
    assert [m.addr for m in registry.list_by_class("cpu")] == ["a:22", "b:22"]
    assert [m.addr for m in registry.list_by_class("gpu")] == ["a:22"]
    assert registry.list_by_class("tpu") == []
    assert registry.get("a:22").state == IDLE


def test_register_without_classes_is_unavailable(registry):
    m = registry.register("a", [])
    assert m.state == UNAVAILABLE


def test_every_transition_is_emitted(registry):
    registry.register("a", ["c"])
    registry.set_state("a", BUSY, job=3)
    registry.set_state("a", IDLE)
    registry.remove("a")
    assert [kind for kind, _ in registry.events] == ["machine_added", "machine_state", "machine_state", "machine_removed"]


def test_remove_busy_machine_needs_force(registry):
    registry.register("a", ["c"])
    registry.set_state("a", BUSY, job=1)
    with pytest.raises(MachineBusy):
        registry.remove("a")
    assert "a" in registry
    registry.remove("a", force=True)
    assert "a" not in registry
    assert registry.list_by_class("c") == []


def test_busy_for_at_most_one_job(registry):
    registry.register("a", ["c"])
    registry.set_state("a", BUSY, job=1)
    with pytest.raises(MachineBusy):
        registry.set_state("a", BUSY, job=2)
    with pytest.raises(InvalidState):
        registry.set_state("a", BUSY)


def test_mark_dead(registry):
    registry.register("a", ["c"])
    registry.mark_dead("a", error="no route")
    m = registry.get("a")
    assert m.state == DEAD
    assert m.error == "no route"
    assert registry.idle_in_class("c") == []


def test_idle_longest_first(registry):
    registry.register("a", ["c"])
    registry.register("b", ["c"])
    registry.set_state("a", BUSY, job=1)
    registry.set_state("a", IDLE)
    assert [m.addr for m in registry.idle_in_class("c")] == ["b", "a"]


def test_unknown_machine(registry):
    with pytest.raises(NoSuchMachine):
        registry.get("nope")
    with pytest.raises(NoSuchMachine):
        registry.remove("nope")


def test_failed_append_leaves_state_untouched(registry):
    registry.register("a", ["c"])

    def broken(event, **payload):
        raise sqlite3.OperationalError("disk I/O error")

    registry.emit = broken
    with pytest.raises(sqlite3.OperationalError):
        registry.set_state("a", BUSY, job=1)
    m = registry.get("a")
    assert (m.state, m.job, m.idle_order) == (IDLE, None, 1)
    with pytest.raises(sqlite3.OperationalError):
        registry.remove("a")
    assert "a" in registry
    with pytest.raises(sqlite3.OperationalError):
        registry.register("b", ["c"])
    assert "b" not in registry
    with pytest.raises(sqlite3.OperationalError):
        registry.set_classes("a", ["d"])
    assert registry.get("a").classes == ["c"]
