# registry.py
import itertools
from logging import getLogger
from typing import Dict, List

from errors import InvalidState, MachineBusy, NoSuchMachine
from models import Machine, MACHINE_STATES, BUSY, DEAD, IDLE, SETTING_UP, UNAVAILABLE, now_iso

log = getLogger(__name__)


class MachineRegistry:
    """Known machines and their class memberships.

    Not thread-safe on its own: the scheduler calls it from inside its
    critical section. ``emit(event, **payload)`` receives every transition.
    """

    def __init__(self, emit=None):
        self.machines: Dict[str, Machine] = {}
        # class name -> machine addrs
        self.classes: Dict[str, set] = {}
        self.emit = emit or (lambda event, **payload: None)
        self._idle_counter = itertools.count(1)

    def __contains__(self, addr):
        return addr in self.machines

    def get(self, addr) -> Machine:
        try:
            return self.machines[addr]
        except KeyError:
            raise NoSuchMachine(f"No such machine: {addr}") from None

    def _index(self, machine):
        for members in self.classes.values():
            members.discard(machine.addr)
        for cls in machine.classes:
            self.classes.setdefault(cls, set()).add(machine.addr)
        for cls in [c for c, members in self.classes.items() if not members]:
            del self.classes[cls]

    def register(self, addr, classes, user=None, key_filename=None, state=None):
        classes = list(dict.fromkeys(classes))
        if state is None:
            state = IDLE if classes else UNAVAILABLE
        old = self.machines.get(addr)
        if old is not None:
            if old.state in (BUSY, SETTING_UP):
                # Keep the in-flight job; only membership and credentials change
                state, job = old.state, old.job
            else:
                job = None
            log.warning(f"Machine {addr}: classes {old.classes} → {classes}")
        else:
            job = None

        machine = Machine(
            addr=addr,
            classes=classes,
            state=state,
            job=job,
            user=user,
            key_filename=key_filename,
            idle_since=now_iso() if state == IDLE else None,
            idle_order=next(self._idle_counter) if state == IDLE else 0)
        self.emit("machine_added", **machine.to_dict())
        self.machines[addr] = machine
        self._index(machine)
        log.info(f"Machine {addr}: registered in {classes} ({state})")
        return machine

    def remove(self, addr, force=False):
        machine = self.get(addr)
        if machine.state in (BUSY, SETTING_UP) and not force:
            raise MachineBusy(f"Machine {addr} is {machine.state} (job {machine.job})")
        self.emit("machine_removed", addr=addr)
        del self.machines[addr]
        self._index(Machine(addr=addr))
        log.info(f"Machine {addr}: removed (was {machine.state})")
        return machine

    def set_state(self, addr, state, job=None, error=None):
        if state not in MACHINE_STATES:
            raise InvalidState(f"Unknown machine state {state!r}")
        machine = self.get(addr)
        if state == BUSY and job is None:
            raise InvalidState(f"Machine {addr} cannot be busy without a job")
        if state == BUSY and machine.state == BUSY and machine.job != job:
            raise MachineBusy(f"Machine {addr} is already running job {machine.job}")
        old = machine.state
        job = job if state in (BUSY, SETTING_UP) else None
        idle_since, idle_order = machine.idle_since, machine.idle_order
        if state == IDLE and old != IDLE:
            idle_since, idle_order = now_iso(), next(self._idle_counter)
        elif state != IDLE:
            idle_since, idle_order = None, 0
        self.emit("machine_state", addr=addr, state=state, job=job, error=error,
                  idle_since=idle_since, idle_order=idle_order)
        machine.state = state
        machine.job = job
        machine.error = error
        machine.idle_since = idle_since
        machine.idle_order = idle_order
        log.info(f"Machine {addr}: {old} → {state}" + (f" (job {job})" if job is not None else ""))
        return machine

    def set_classes(self, addr, classes):
        machine = self.get(addr)
        classes = list(dict.fromkeys(classes))
        self.emit("machine_added", **dict(machine.to_dict(), classes=classes))
        machine.classes = classes
        self._index(machine)
        return machine

    def mark_dead(self, addr, error=None):
        # In-flight jobs are left to their dispatcher
        machine = self.get(addr)
        return self.set_state(addr, DEAD, job=machine.job if machine.state == BUSY else None, error=error)

    def list_by_class(self, cls) -> List[Machine]:
        return [self.machines[addr] for addr in sorted(self.classes.get(cls, ()))]

    def idle_in_class(self, cls) -> List[Machine]:
        """Idle machines of ``cls``, longest-idle first."""
        idle = [m for m in self.list_by_class(cls) if m.state == IDLE and m.classes]
        return sorted(idle, key=lambda m: (m.idle_order, m.addr))

    def list(self, cls=None) -> List[Machine]:
        if cls is not None:
            return self.list_by_class(cls)
        return [self.machines[addr] for addr in sorted(self.machines)]

    # ---------------- Replay ----------------
    def _bump(self, order):
        current = next(self._idle_counter)
        self._idle_counter = itertools.count(max(current, order + 1))

    def restore(self, data):
        machine = Machine(**data)
        self._bump(machine.idle_order)
        self.machines[machine.addr] = machine
        self._index(machine)

    def restore_state(self, addr, state, job=None, error=None, idle_since=None, idle_order=0):
        machine = self.machines.get(addr)
        if machine is None:
            return
        machine.state = state
        machine.job = job
        machine.error = error
        machine.idle_since = idle_since
        machine.idle_order = idle_order
        self._bump(idle_order)

    def discard(self, addr):
        if self.machines.pop(addr, None) is not None:
            self._index(Machine(addr=addr))
