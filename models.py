# models.py
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Dict, List, Optional

# Machine states
UNAVAILABLE = "unavailable"
SETTING_UP = "setting_up"
IDLE = "idle"
BUSY = "busy"
DEAD = "dead"
MACHINE_STATES = (UNAVAILABLE, SETTING_UP, IDLE, BUSY, DEAD)

# Job states
WAITING = "waiting"
RUNNING = "running"
DONE = "done"
FAILED = "failed"
CANCELED = "canceled"
JOB_STATES = (WAITING, RUNNING, DONE, FAILED, CANCELED)
TERMINAL = (DONE, FAILED, CANCELED)

RESULTS_PREFIX = "RESULTS: "


def now_iso():
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Machine:
    addr: str
    classes: List[str] = field(default_factory=list)
    state: str = IDLE   # unavailable | setting_up | idle | busy | dead
    job: Optional[int] = None
    user: Optional[str] = None
    key_filename: Optional[str] = None
    idle_since: Optional[str] = None
    idle_order: int = 0
    error: Optional[str] = None
    added_at: str = field(default_factory=now_iso)

    @property
    def host(self):
        return self.addr.rsplit(":", 1)[0] if ":" in self.addr else self.addr

    @property
    def port(self):
        return int(self.addr.rsplit(":", 1)[1]) if ":" in self.addr else None

    def to_dict(self):
        return asdict(self)


@dataclass
class Job:
    jid: int
    cls: str
    cmd: str
    variables: Dict[str, str] = field(default_factory=dict)
    cp_results: Optional[str] = None
    matrix: Optional[int] = None
    state: str = WAITING   # waiting | running | done | failed | canceled
    machine: Optional[str] = None
    exit_code: Optional[int] = None
    error: Optional[str] = None
    results: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=now_iso)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    kind: str = "job"

    @property
    def terminal(self):
        return self.state in TERMINAL

    def to_dict(self):
        return asdict(self)


@dataclass
class SetupPipeline:
    """An ordered list of setup commands bound to one machine.

    Shares the job id space with ordinary jobs. On success the machine joins
    ``classes`` and becomes idle; on failure it is left unavailable.
    """
    jid: int
    machine: str
    cmds: List[str]
    classes: List[str] = field(default_factory=list)
    variables: Dict[str, str] = field(default_factory=dict)
    step: int = 0
    state: str = WAITING
    exit_code: Optional[int] = None
    error: Optional[str] = None
    created_at: str = field(default_factory=now_iso)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    kind: str = "setup"

    @property
    def terminal(self):
        return self.state in TERMINAL

    @property
    def cmd(self):
        return self.cmds[self.step] if self.cmds else ""

    def to_dict(self):
        d = asdict(self)
        d["cmd"] = self.cmd
        return d


@dataclass
class Matrix:
    id: int
    cls: str
    cmd: str
    params: Dict[str, List[str]]
    jids: List[int] = field(default_factory=list)
    cp_results: Optional[str] = None
    created_at: str = field(default_factory=now_iso)

    def to_dict(self):
        return asdict(self)
