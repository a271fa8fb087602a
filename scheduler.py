# scheduler.py
import copy
import threading
import time
from logging import getLogger

from errors import InvalidRequest, MachineBusy, TransportFailure
from jobs import JobQueue
from matrix import JobTemplate
from models import (
    SetupPipeline, BUSY, IDLE, SETTING_UP, UNAVAILABLE,
    RUNNING, WAITING, FAILED, now_iso,
)
from registry import MachineRegistry
from remote import make_transport
from worker import Worker

log = getLogger(__name__)


class Scheduler:
    """Owns the registry and the job queue.

    Every read or write of either goes through ``self.lock``; dispatch runs
    outside it on one thread per (job, machine) pairing. Each accepted
    mutation is appended to ``storage`` before the call returns.
    """

    def __init__(self, storage, transport, results_dir="results", driver="", poll_interval=1.0,
                 dead_on_transport_failure=True, health_check_interval=0.0):
        self.lock = threading.RLock()
        self.storage = storage
        self.registry = MachineRegistry(emit=self._emit)
        self.queue = JobQueue(emit=self._emit)
        self.variables = {}
        self.worker = Worker(self, transport, results_dir, driver, dead_on_transport_failure)
        self.poll_interval = poll_interval
        self.health_check_interval = health_check_interval
        self._threads = {}
        self._stalled = set()
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._loop = None
        self._last_health_check = time.monotonic()
        self._health = None

    @classmethod
    def from_storage(cls, storage, **overrides):
        """Build a scheduler from the config table; ``overrides`` win over stored values."""
        settings = {
            "driver": storage.get_config("driver"),
            "transport": storage.get_config("transport"),
            "results_dir": storage.get_config("results_dir"),
            "poll_interval": storage.get_float("poll_interval"),
            "dead_on_transport_failure": storage.get_bool("dead_on_transport_failure"),
            "health_check_interval": storage.get_float("health_check_interval"),
            "ssh_user": storage.get_config("ssh_user"),
            "ssh_key_filename": storage.get_config("ssh_key_filename"),
        }
        settings.update({k: v for k, v in overrides.items() if v is not None})
        transport = make_transport(settings["transport"], settings["ssh_user"], settings["ssh_key_filename"])
        return cls(
            storage,
            transport,
            results_dir=settings["results_dir"],
            driver=settings["driver"],
            poll_interval=settings["poll_interval"],
            dead_on_transport_failure=settings["dead_on_transport_failure"],
            health_check_interval=settings["health_check_interval"])

    def _emit(self, event, **payload):
        self.storage.append(event, **payload)

    # ---------------- Machines ----------------
    def _check_not_in_flight(self, addr):
        """A removed machine keeps running its last job; it cannot be re-added until that ends."""
        machine = self.registry.machines.get(addr)
        for entry in self.queue.list(state=RUNNING):
            if entry.machine != addr:
                continue
            if machine is None or machine.job != entry.jid:
                raise MachineBusy(f"Machine {addr} is still running job {entry.jid}")

    def add_machine(self, addr, classes, user=None, key_filename=None):
        with self.lock:
            self._check_not_in_flight(addr)
            machine = self.registry.register(addr, classes, user=user, key_filename=key_filename)
            self._wake.set()
            return machine.to_dict()

    def remove_machine(self, addr, force=False):
        with self.lock:
            return self.registry.remove(addr, force=force).to_dict()

    def list_machines(self, cls=None):
        with self.lock:
            return [m.to_dict() for m in self.registry.list(cls)]

    def setup_machine(self, addr, cmds, classes=(), user=None, key_filename=None):
        if not cmds:
            raise InvalidRequest("A setup pipeline needs at least one command")
        with self.lock:
            if addr in self.registry:
                machine = self.registry.get(addr)
                if machine.state in (BUSY, SETTING_UP):
                    raise MachineBusy(f"Machine {addr} is {machine.state} (job {machine.job})")
            else:
                self._check_not_in_flight(addr)
                self.registry.register(addr, [], user=user, key_filename=key_filename, state=UNAVAILABLE)
            pipeline = self.queue.add_pipeline(addr, cmds, classes, self.variables)
            self.registry.set_state(addr, SETTING_UP, job=pipeline.jid)
            self._wake.set()
            return pipeline.jid

    # ---------------- Variables ----------------
    def set_var(self, name, value):
        with self.lock:
            self._emit("var_set", name=name, value=value)
            old = self.variables.get(name)
            self.variables[name] = value
            if old is not None and old != value:
                log.warning(f"Variable {name}: {old!r} → {value!r}")
            else:
                log.info(f"Variable {name}={value!r}")

    def list_vars(self):
        with self.lock:
            return dict(self.variables)

    # ---------------- Jobs ----------------
    def enqueue(self, cls, cmd, cp_results=None):
        with self.lock:
            job = self.queue.enqueue(cls, cmd, self.variables, cp_results)
            self._wake.set()
            return job.jid

    def enqueue_matrix(self, template: JobTemplate):
        with self.lock:
            matrix = self.queue.enqueue_matrix(template, self.variables)
            self._wake.set()
            return matrix.id, list(matrix.jids)

    def cancel(self, jid):
        with self.lock:
            entry = self.queue.cancel(jid)
            if isinstance(entry, SetupPipeline):
                self._release_setup(entry.machine, jid)
            self._stalled.discard(jid)
            return self._status(entry)

    def clone(self, jid):
        with self.lock:
            job = self.queue.clone(jid)
            self._wake.set()
            return job.jid

    def delete(self, jid):
        with self.lock:
            return self._status(self.queue.delete(jid))

    def _status(self, entry):
        status = entry.to_dict()
        status["output"] = str(self.worker.output_path(entry))
        return status

    def status(self, jid):
        with self.lock:
            return self._status(self.queue.get(jid))

    def list_jobs(self, state=None, cls=None, kind=None):
        with self.lock:
            return [self._status(e) for e in self.queue.list(state=state, cls=cls, kind=kind)]

    def matrix_status(self, mid):
        with self.lock:
            matrix = self.queue.matrix(mid)
            status = matrix.to_dict()
            status["jobs"] = [self._status(self.queue.jobs[jid]) for jid in matrix.jids if jid in self.queue.jobs]
            return status

    def output(self, jid):
        with self.lock:
            path = self.worker.output_path(self.queue.get(jid))
        if not path.exists():
            return ""
        return path.read_text()

    # ---------------- Scheduling ----------------
    def tick(self):
        """One scheduling pass. Returns the (entry, machine) pairings it launched."""
        launched = []
        with self.lock:
            for pipeline in self.queue.waiting_pipelines():
                machine = self.registry.machines.get(pipeline.machine)
                if machine is None or machine.state != SETTING_UP or machine.job != pipeline.jid:
                    self.queue.transition(pipeline.jid, FAILED, finished_at=now_iso(),
                                          error=f"Machine {pipeline.machine} is no longer reserved for setup")
                    continue
                self.queue.transition(pipeline.jid, RUNNING, step=0, started_at=now_iso())
                launched.append((copy.deepcopy(pipeline), copy.deepcopy(machine)))

            for job in self.queue.waiting():
                idle = self.registry.idle_in_class(job.cls)
                if not idle:
                    if job.jid not in self._stalled:
                        self._stalled.add(job.jid)
                        log.info(f"Job {job.jid}: no idle machine in class {job.cls!r}; waiting")
                    continue
                machine = idle[0]
                self.registry.set_state(machine.addr, BUSY, job=job.jid)
                self.queue.transition(job.jid, RUNNING, machine=machine.addr, started_at=now_iso())
                self._stalled.discard(job.jid)
                launched.append((copy.deepcopy(job), copy.deepcopy(machine)))

        self._threads = {jid: t for jid, t in self._threads.items() if t is not None and t.is_alive()}
        for entry, machine in launched:
            setup = isinstance(entry, SetupPipeline)
            target = self.worker.run_setup if setup else self.worker.run_job
            try:
                self._threads[entry.jid] = self.worker.spawn(target, entry, machine)
            except Exception as e:
                log.exception(f"Job {entry.jid}: could not start dispatch on {machine.addr}")
                error = f"{type(e).__name__}: {e}"
                if setup:
                    self.finish_setup(entry.jid, FAILED, machine.addr, UNAVAILABLE, error=error)
                else:
                    self.finish(entry.jid, FAILED, machine.addr, IDLE, error=error)
        return launched

    def advance(self, jid, step):
        with self.lock:
            pipeline = self.queue.pipelines.get(jid)
            if pipeline is None:
                return
            self._emit("setup_step", jid=jid, step=step)
            pipeline.step = step
            log.info(f"Setup {jid}: step {step + 1}/{len(pipeline.cmds)} on {pipeline.machine}")

    def finish(self, jid, state, addr, release, error=None, exit_code=None, results=None,
               machine_error=None, detail=None):
        with self.lock:
            changes = {"finished_at": now_iso(), "error": error, "exit_code": exit_code}
            if results is not None:
                changes["results"] = results
            self.queue.transition(jid, state, **changes)
            if detail:
                log.info(f"Job {jid}: {detail}")
            machine = self.registry.machines.get(addr)
            if machine is None or machine.state != BUSY or machine.job != jid:
                log.warning(f"Job {jid}: machine {addr} was not held for it on release")
            else:
                self.registry.set_state(addr, release, error=machine_error)
            self._wake.set()

    def finish_setup(self, jid, state, addr, release, error=None, exit_code=None):
        with self.lock:
            pipeline = self.queue.transition(jid, state, finished_at=now_iso(), error=error, exit_code=exit_code)
            machine = self.registry.machines.get(addr)
            if machine is None or machine.state != SETTING_UP or machine.job != jid:
                log.warning(f"Setup {jid}: machine {addr} was not held for it on completion")
                return
            if release == IDLE:
                classes = list(dict.fromkeys(machine.classes + pipeline.classes))
                self.registry.set_classes(addr, classes)
                if not classes:
                    release = UNAVAILABLE
            self.registry.set_state(addr, release, error=error)
            self._wake.set()

    def _release_setup(self, addr, jid):
        machine = self.registry.machines.get(addr)
        if machine is not None and machine.state == SETTING_UP and machine.job == jid:
            self.registry.set_state(addr, IDLE if machine.classes else UNAVAILABLE)

    def check_health(self):
        """Probe idle machines; unreachable ones are marked dead.

        Probes run without the lock. A machine is only marked dead if it has
        stayed in the same idle spell since it was probed.
        """
        with self.lock:
            idle = [copy.deepcopy(m) for m in self.registry.machines.values() if m.state == IDLE]
        for machine in idle:
            try:
                self.worker.transport.check(machine)
            except TransportFailure as e:
                with self.lock:
                    current = self.registry.machines.get(machine.addr)
                    if current is not None and current.state == IDLE and current.idle_order == machine.idle_order:
                        log.error(f"Machine {machine.addr}: health check failed: {e.detail}")
                        self.registry.mark_dead(machine.addr, error=e.detail)

    def _start_health_check(self):
        if self._health is not None and self._health.is_alive():
            return
        self._last_health_check = time.monotonic()
        self._health = threading.Thread(target=self.check_health, name="health-check", daemon=True)
        self._health.start()

    # ---------------- Loop ----------------
    def run(self, stop_event=None):
        stop_event = stop_event or self._stop
        while not stop_event.is_set():
            try:
                self.tick()
                if self.health_check_interval > 0 and time.monotonic() - self._last_health_check >= self.health_check_interval:
                    self._start_health_check()
            except Exception:
                log.exception("Scheduling pass failed; retrying")
            self._wake.wait(self.poll_interval)
            self._wake.clear()

    def start(self):
        self._stop.clear()
        self._loop = threading.Thread(target=self.run, name="scheduler", daemon=True)
        self._loop.start()
        log.info(f"Scheduler started (poll={self.poll_interval}s)")

    def stop(self, timeout=5.0):
        self._stop.set()
        self._wake.set()
        if self._loop is not None:
            self._loop.join(timeout=timeout)
            self._loop = None
        log.info("Scheduler stopped")

    def join(self, timeout=None):
        """Wait for every dispatch thread started so far."""
        for jid, t in list(self._threads.items()):
            if t is None:
                self._threads.pop(jid, None)
                continue
            t.join(timeout=timeout)
            if not t.is_alive():
                self._threads.pop(jid, None)

    # ---------------- Recovery ----------------
    def _apply(self, kind, payload):
        if kind == "machine_added":
            self.registry.restore(payload)
        elif kind == "machine_removed":
            self.registry.discard(payload["addr"])
        elif kind == "machine_state":
            self.registry.restore_state(**payload)
        elif kind == "var_set":
            self.variables[payload["name"]] = payload["value"]
        elif kind == "job_added":
            self.queue.restore(payload)
        elif kind == "job_state":
            self.queue.restore_state(**payload)
        elif kind == "job_deleted":
            self.queue.discard(payload["jid"])
        elif kind == "matrix_added":
            self.queue.restore_matrix(payload)
        elif kind == "setup_step":
            pipeline = self.queue.pipelines.get(payload["jid"])
            if pipeline is not None:
                pipeline.step = payload["step"]
        else:
            log.warning(f"Skipping unknown event kind {kind!r}")

    def recover(self):
        """Rebuild state from the event log.

        Anything that was running when the server went down is put back to
        waiting, since the remote process cannot be assumed to have survived.
        """
        with self.lock:
            count = 0
            for _, kind, payload in self.storage.events():
                self._apply(kind, payload)
                count += 1

            requeued = []
            for job in sorted(self.queue.jobs.values(), key=lambda j: j.jid):
                if job.state == RUNNING:
                    self.queue.transition(job.jid, WAITING, machine=None, started_at=None)
                    requeued.append(job.jid)
            for pipeline in sorted(self.queue.pipelines.values(), key=lambda p: p.jid):
                if pipeline.state == RUNNING:
                    self.queue.transition(pipeline.jid, WAITING, step=0, started_at=None)
                    requeued.append(pipeline.jid)

            for machine in list(self.registry.machines.values()):
                if machine.state == BUSY:
                    self.registry.set_state(machine.addr, IDLE)
                elif machine.state == SETTING_UP:
                    pipeline = self.queue.pipelines.get(machine.job)
                    if pipeline is None or pipeline.state != WAITING:
                        self.registry.set_state(machine.addr, IDLE if machine.classes else UNAVAILABLE)

            log.info(f"Recovered {len(self.queue.jobs)} job(s), {len(self.registry.machines)} machine(s) "
                     f"from {count} event(s); requeued {requeued}")
            return requeued
