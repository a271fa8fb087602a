import pytest

from errors import InvalidRequest, InvalidState, NoSuchJob, NoSuchMatrix
from jobs import JobQueue
from matrix import JobTemplate
from models import CANCELED, DONE, RUNNING, WAITING


@pytest.fixture
def queue():
    events = []
    q = JobQueue(emit=lambda event, **payload: events.append((event, payload)))
    q.events = events
    return q


def test_ids_are_monotonic(queue):
    a = queue.enqueue("c", "one")
    b = queue.enqueue("c", "two")
    assert (a.jid, b.jid) == (0, 1)
    assert [j.jid for j in queue.waiting()] == [0, 1]


def test_matrix_instances_follow_parameter_order(queue):
    m = queue.enqueue_matrix(JobTemplate(cmd="exp {a} {b}", cls="c", params={"a": ["1", "2"], "b": ["x", "y"]}))
    jobs = [queue.get(jid) for jid in m.jids]
    assert [(j.variables["a"], j.variables["b"]) for j in jobs] == [("1", "x"), ("1", "y"), ("2", "x"), ("2", "y")]
    assert all(j.matrix == m.id and j.state == WAITING for j in jobs)
    assert m.jids == sorted(m.jids)
    assert queue.matrix(m.id) is m


def test_matrix_bindings_override_snapshot(queue):
    m = queue.enqueue_matrix(JobTemplate(cmd="exp", cls="c", params={"n": ["1"]}), {"n": "0", "dir": "/x"})
    assert queue.get(m.jids[0]).variables == {"n": "1", "dir": "/x"}


def test_bad_matrix_leaves_no_trace(queue):
    with pytest.raises(InvalidRequest):
        queue.enqueue_matrix(JobTemplate(cmd="exp", cls="c", params={"n": []}))
    assert queue.events == []
    assert queue.list() == []


def test_cancel_only_waiting(queue):
    job = queue.enqueue("c", "x")
    queue.cancel(job.jid)
    assert job.state == CANCELED
    assert queue.waiting() == []

    other = queue.enqueue("c", "y")
    queue.transition(other.jid, RUNNING, machine="m")
    events_before = len(queue.events)
    with pytest.raises(InvalidState):
        queue.cancel(other.jid)
    assert other.state == RUNNING
    assert len(queue.events) == events_before


def test_terminal_states_are_immutable(queue):
    job = queue.enqueue("c", "x")
    queue.transition(job.jid, RUNNING)
    queue.transition(job.jid, DONE)
    with pytest.raises(InvalidState):
        queue.transition(job.jid, WAITING)


def test_delete_only_terminal(queue):
    job = queue.enqueue("c", "x")
    with pytest.raises(InvalidState):
        queue.delete(job.jid)
    queue.cancel(job.jid)
    queue.delete(job.jid)
    with pytest.raises(NoSuchJob):
        queue.get(job.jid)


def test_clone_copies_binding(queue):
    job = queue.enqueue("c", "exp {n}", {"n": "3"}, cp_results="/tmp/r")
    copy = queue.clone(job.jid)
    assert copy.jid != job.jid
    assert (copy.cls, copy.cmd, copy.variables, copy.cp_results) == ("c", "exp {n}", {"n": "3"}, "/tmp/r")
    assert copy.state == WAITING


def test_list_filters(queue):
    queue.enqueue("a", "x")
    b = queue.enqueue("b", "y")
    queue.add_pipeline("m", ["setup"], ["a"])
    queue.cancel(b.jid)
    assert [j.jid for j in queue.list(cls="a")] == [0]
    assert [j.jid for j in queue.list(state=CANCELED)] == [1]
    assert [j.jid for j in queue.list(kind="setup")] == [2]
    with pytest.raises(InvalidState):
        queue.list(state="bogus")


def test_unknown_ids(queue):
    with pytest.raises(NoSuchJob):
        queue.cancel(42)
    with pytest.raises(NoSuchMatrix):
        queue.matrix(42)


def test_jobs_and_pipelines_emit_their_kind(queue):
    queue.enqueue("c", "x")
    queue.add_pipeline("m", ["setup"], ["a"])
    assert [(event, payload["kind"]) for event, payload in queue.events] == [("job_added", "job"), ("job_added", "setup")]
