# jobs.py
import itertools
from logging import getLogger
from typing import Dict, List, Union

from errors import InvalidState, NoSuchJob, NoSuchMatrix
from matrix import JobTemplate, expand_template
from models import Job, Matrix, SetupPipeline, CANCELED, JOB_STATES, TERMINAL, WAITING

log = getLogger(__name__)

Entry = Union[Job, SetupPipeline]


class JobQueue:
    """All job instances, matrices and setup pipelines, keyed by id.

    Ids come from one monotonic counter. Like the registry, callers hold the
    scheduler lock; every mutation is passed to ``emit`` first.
    """

    def __init__(self, emit=None):
        self.jobs: Dict[int, Job] = {}
        self.pipelines: Dict[int, SetupPipeline] = {}
        self.matrices: Dict[int, Matrix] = {}
        self.emit = emit or (lambda event, **payload: None)
        self._ids = itertools.count(0)

    def next_id(self):
        return next(self._ids)

    def _log_transition(self, jid, old_state, new_state, extra=""):
        log.info(f"Job {jid}: {old_state} → {new_state} {extra}".rstrip())

    # ---------------- Creation ----------------
    def enqueue(self, cls, cmd, variables=None, cp_results=None, matrix=None) -> Job:
        job = Job(
            jid=self.next_id(),
            cls=cls,
            cmd=cmd,
            variables=dict(variables or {}),
            cp_results=cp_results,
            matrix=matrix)
        self.emit("job_added", **job.to_dict())
        self.jobs[job.jid] = job
        self._log_transition(job.jid, "-", WAITING, f"(class={cls}, cmd={cmd!r})")
        return job

    def enqueue_matrix(self, template: JobTemplate, variables=None) -> Matrix:
        # Expansion happens before any id is taken, so a bad template leaves no trace
        combos = expand_template(template)
        params = {k: list(v) if isinstance(v, (list, tuple)) else [v] for k, v in template.params.items()}
        matrix = Matrix(
            id=self.next_id(),
            cls=template.cls,
            cmd=template.cmd,
            params={k: [str(x) for x in v] for k, v in params.items()},
            cp_results=template.cp_results)
        for combo in combos:
            bound = dict(variables or {})
            bound.update(combo)
            job = self.enqueue(template.cls, template.cmd, bound, template.cp_results, matrix=matrix.id)
            matrix.jids.append(job.jid)
        self.emit("matrix_added", **matrix.to_dict())
        self.matrices[matrix.id] = matrix
        log.info(f"Matrix {matrix.id}: {len(combos)} job(s) {matrix.jids[:1]}..{matrix.jids[-1:]}")
        return matrix

    def add_pipeline(self, machine, cmds, classes, variables=None) -> SetupPipeline:
        pipeline = SetupPipeline(
            jid=self.next_id(),
            machine=machine,
            cmds=list(cmds),
            classes=list(classes),
            variables=dict(variables or {}))
        self.emit("job_added", **pipeline.to_dict())
        self.pipelines[pipeline.jid] = pipeline
        self._log_transition(pipeline.jid, "-", WAITING, f"(setup {machine}, {len(cmds)} step(s))")
        return pipeline

    def clone(self, jid) -> Job:
        job = self.get(jid)
        if not isinstance(job, Job):
            raise InvalidState(f"Job {jid} is a setup pipeline and cannot be cloned")
        return self.enqueue(job.cls, job.cmd, job.variables, job.cp_results)

    # ---------------- Lookup ----------------
    def get(self, jid) -> Entry:
        if jid in self.jobs:
            return self.jobs[jid]
        if jid in self.pipelines:
            return self.pipelines[jid]
        raise NoSuchJob(f"No such job: {jid}")

    def matrix(self, mid) -> Matrix:
        try:
            return self.matrices[mid]
        except KeyError:
            raise NoSuchMatrix(f"No such matrix: {mid}") from None

    def list(self, state=None, cls=None, kind=None) -> List[Entry]:
        if state is not None and state not in JOB_STATES:
            raise InvalidState(f"Unknown job state {state!r}")
        entries = list(self.jobs.values()) + list(self.pipelines.values())
        out = []
        for entry in sorted(entries, key=lambda e: e.jid):
            if state is not None and entry.state != state:
                continue
            if kind is not None and entry.kind != kind:
                continue
            if cls is not None and (entry.cls if isinstance(entry, Job) else None) != cls:
                continue
            out.append(entry)
        return out

    def waiting(self) -> List[Job]:
        """Waiting jobs in admission order."""
        return [j for j in sorted(self.jobs.values(), key=lambda j: j.jid) if j.state == WAITING]

    def waiting_pipelines(self) -> List[SetupPipeline]:
        return [p for p in sorted(self.pipelines.values(), key=lambda p: p.jid) if p.state == WAITING]

    # ---------------- Transitions ----------------
    def transition(self, jid, state, **changes):
        entry = self.get(jid)
        old = entry.state
        if old in TERMINAL:
            raise InvalidState(f"Job {jid} is already {old}")
        self.emit("job_state", jid=jid, state=state, **changes)
        entry.state = state
        for key, value in changes.items():
            setattr(entry, key, value)
        extra = ", ".join(f"{k}={v}" for k, v in changes.items() if k in ("machine", "exit_code", "error") and v is not None)
        self._log_transition(jid, old, state, f"({extra})" if extra else "")
        return entry

    def cancel(self, jid) -> Entry:
        entry = self.get(jid)
        if entry.state != WAITING:
            raise InvalidState(f"Job {jid} is {entry.state}; only waiting jobs can be canceled")
        return self.transition(jid, CANCELED)

    def delete(self, jid) -> Entry:
        entry = self.get(jid)
        if not entry.terminal:
            raise InvalidState(f"Job {jid} is {entry.state}; only finished jobs can be deleted")
        self.emit("job_deleted", jid=jid)
        self.jobs.pop(jid, None)
        self.pipelines.pop(jid, None)
        log.info(f"Job {jid}: deleted")
        return entry

    # ---------------- Replay ----------------
    def restore(self, data):
        data = dict(data)
        if data.pop("kind", "job") == "setup":
            data.pop("cmd", None)
            entry = SetupPipeline(**data)
            self.pipelines[entry.jid] = entry
        else:
            entry = Job(**data)
            self.jobs[entry.jid] = entry
        self._bump(entry.jid)

    def restore_matrix(self, data):
        matrix = Matrix(**data)
        self.matrices[matrix.id] = matrix
        self._bump(max([matrix.id] + matrix.jids))

    def restore_state(self, jid, state, **changes):
        entry = self.jobs.get(jid) or self.pipelines.get(jid)
        if entry is None:
            return
        entry.state = state
        for key, value in changes.items():
            setattr(entry, key, value)

    def discard(self, jid):
        self.jobs.pop(jid, None)
        self.pipelines.pop(jid, None)

    def _bump(self, jid):
        current = next(self._ids)
        self._ids = itertools.count(max(current, jid + 1))
