# worker.py
import threading
import time
from logging import getLogger
from pathlib import Path, PurePosixPath

from errors import DriverFailure, TransportFailure
from matrix import full_command
from models import DEAD, DONE, FAILED, IDLE, UNAVAILABLE, RESULTS_PREFIX

log = getLogger(__name__)

OUTPUT_LOG = "output.log"


class Worker:
    """Executes one (job, machine) pairing per call.

    Blocks on the transport only; every outcome is reported back through the
    scheduler, which owns the state transitions. Nothing is retried here.
    """

    def __init__(self, scheduler, transport, results_dir="results", driver="", dead_on_transport_failure=True):
        self.scheduler = scheduler
        self.transport = transport
        self.results_dir = Path(results_dir)
        self.driver = driver or ""
        self.dead_on_transport_failure = dead_on_transport_failure

    def job_dir(self, entry):
        base = Path(getattr(entry, "cp_results", None) or self.results_dir)
        return base / f"job-{entry.jid}"

    def output_path(self, entry):
        return self.job_dir(entry) / OUTPUT_LOG

    def _unreachable_state(self, e):
        if e.unreachable:
            return DEAD if self.dead_on_transport_failure else UNAVAILABLE
        return None

    def _run(self, entry, machine, cmd, log_file, announced):
        def on_line(line):
            log_file.write(line + "\n")
            log_file.flush()
            if line.startswith(RESULTS_PREFIX):
                path = line[len(RESULTS_PREFIX):].strip()
                if path:
                    announced.append(path)

        command = full_command(self.driver, cmd, entry.variables, machine.addr)
        log.info(f"Job {entry.jid}: running on {machine.addr}: {command}")
        exit_code = self.transport.run(machine, command, on_line)
        if exit_code != 0:
            raise DriverFailure(f"Driver exited with code {exit_code}", exit_code=exit_code)
        return exit_code

    def _local_name(self, out_dir, remote_path, taken):
        name = PurePosixPath(remote_path).name or "result"
        stem, suffix = PurePosixPath(name).stem, PurePosixPath(name).suffix
        n = 0
        while name in taken:
            n += 1
            name = f"{stem}-{n}{suffix}"
        taken.add(name)
        return out_dir / name

    def fetch(self, job, machine, announced, out_dir):
        taken = {OUTPUT_LOG}
        results = []
        for remote_path in announced:
            local_path = self._local_name(out_dir, remote_path, taken)
            log.info(f"Job {job.jid}: copying {machine.addr}:{remote_path} → {local_path}")
            self.transport.copy(machine, remote_path, local_path)
            results.append(str(local_path))
        return results

    # ---------------- Jobs ----------------
    def run_job(self, job, machine):
        start_time = time.monotonic()
        out_dir = self.job_dir(job)
        announced = []
        try:
            out_dir.mkdir(parents=True, exist_ok=True)
            with open(out_dir / OUTPUT_LOG, "w") as log_file:
                exit_code = self._run(job, machine, job.cmd, log_file, announced)
            results = self.fetch(job, machine, announced, out_dir)
        except TransportFailure as e:
            log.error(f"Job {job.jid}: transport failure on {machine.addr}: {e.detail}")
            release = self._unreachable_state(e) or IDLE
            self.scheduler.finish(job.jid, FAILED, machine.addr, release, error=f"TransportFailure: {e.detail}",
                                  machine_error=e.detail if release != IDLE else None)
        except DriverFailure as e:
            log.error(f"Job {job.jid}: {e.detail} on {machine.addr}")
            self.scheduler.finish(job.jid, FAILED, machine.addr, IDLE, error=f"DriverFailure: {e.detail}",
                                  exit_code=e.exit_code)
        except Exception as e:
            log.exception(f"Job {job.jid}: dispatch crashed on {machine.addr}")
            self.scheduler.finish(job.jid, FAILED, machine.addr, IDLE, error=f"{type(e).__name__}: {e}")
        else:
            duration = time.monotonic() - start_time
            if not announced:
                log.info(f"Job {job.jid}: completed with no results")
            self.scheduler.finish(job.jid, DONE, machine.addr, IDLE, exit_code=exit_code, results=results,
                                  detail=f"duration={duration:.3f}s, results={len(results)}")

    # ---------------- Setup pipelines ----------------
    def run_setup(self, pipeline, machine):
        out_dir = self.job_dir(pipeline)
        exit_code = 0
        try:
            out_dir.mkdir(parents=True, exist_ok=True)
            with open(out_dir / OUTPUT_LOG, "w") as log_file:
                for step, cmd in enumerate(pipeline.cmds):
                    self.scheduler.advance(pipeline.jid, step)
                    announced = []
                    exit_code = self._run(pipeline, machine, cmd, log_file, announced)
                    if announced:
                        log.warning(f"Setup {pipeline.jid}: step {step} announced results {announced}; ignoring")
        except TransportFailure as e:
            log.error(f"Setup {pipeline.jid}: transport failure on {machine.addr}: {e.detail}")
            release = self._unreachable_state(e) or UNAVAILABLE
            self.scheduler.finish_setup(pipeline.jid, FAILED, machine.addr, release,
                                        error=f"TransportFailure: {e.detail}")
        except DriverFailure as e:
            log.error(f"Setup {pipeline.jid}: failed on {machine.addr}: {e.detail}")
            self.scheduler.finish_setup(pipeline.jid, FAILED, machine.addr, UNAVAILABLE,
                                        error=f"DriverFailure: {e.detail}", exit_code=e.exit_code)
        except Exception as e:
            log.exception(f"Setup {pipeline.jid}: crashed on {machine.addr}")
            self.scheduler.finish_setup(pipeline.jid, FAILED, machine.addr, UNAVAILABLE,
                                        error=f"{type(e).__name__}: {e}")
        else:
            self.scheduler.finish_setup(pipeline.jid, DONE, machine.addr, IDLE, exit_code=exit_code)

    def spawn(self, target, entry, machine):
        t = threading.Thread(target=target, args=(entry, machine), name=f"dispatch-{entry.jid}", daemon=True)
        t.start()
        return t
