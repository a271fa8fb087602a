import threading
import time
from pathlib import Path

import pytest

from errors import TransportFailure
from remote import Transport
from scheduler import Scheduler
from storage import Storage


class FakeTransport(Transport):
    """Scripted stand-in for ssh: matches commands by substring."""

    def __init__(self):
        self.scripts = []
        self.files = {}
        self.calls = []
        self.copies = []
        self.unreachable = set()
        self.release = threading.Event()
        self.release.set()
        self._lock = threading.Lock()

    def script(self, match, lines=(), exit_code=0, error=None):
        self.scripts.insert(0, (match, list(lines), exit_code, error))

    def run(self, machine, command, on_line):
        with self._lock:
            self.calls.append((machine.addr, command))
        if machine.addr in self.unreachable:
            raise TransportFailure(f"{machine.addr} unreachable")
        self.release.wait(5)
        for match, lines, exit_code, error in self.scripts:
            if match in command:
                for line in lines:
                    on_line(line)
                if error is not None:
                    raise error
                return exit_code
        return 0

    def copy(self, machine, remote_path, local_path):
        with self._lock:
            self.copies.append((machine.addr, remote_path, str(local_path)))
        if machine.addr in self.unreachable:
            raise TransportFailure(f"{machine.addr} unreachable")
        try:
            content = self.files[(machine.addr, remote_path)]
        except KeyError:
            raise TransportFailure(f"No such file {remote_path}", unreachable=False) from None
        Path(local_path).parent.mkdir(parents=True, exist_ok=True)
        Path(local_path).write_text(content)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "jobserver.db"


@pytest.fixture
def storage(db_path):
    s = Storage(db_path)
    yield s
    s.close()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def results_dir(tmp_path):
    return tmp_path / "results"


@pytest.fixture
def make_scheduler(storage, transport, results_dir):
    def make(**kwargs):
        kwargs.setdefault("results_dir", results_dir)
        kwargs.setdefault("poll_interval", 0.01)
        return Scheduler(storage, transport, **kwargs)
    return make


@pytest.fixture
def scheduler(make_scheduler):
    s = make_scheduler()
    yield s
    s.stop()
    s.join(timeout=5)


def settle(scheduler, rounds=20):
    """Tick and join until nothing new gets launched."""
    for _ in range(rounds):
        scheduler.join(timeout=5)
        if not scheduler.tick():
            return
    scheduler.join(timeout=5)


def wait_for(predicate, timeout=5):
    deadline = time.monotonic() + timeout
    while not predicate() and time.monotonic() < deadline:
        time.sleep(0.01)
    return predicate()
