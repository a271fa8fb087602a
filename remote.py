# remote.py
import shutil
from logging import getLogger
from pathlib import Path

import invoke
from fabric import Connection
from paramiko.ssh_exception import SSHException

from errors import TransportFailure

log = getLogger(__name__)
getLogger('paramiko').setLevel('WARN')

HEALTH_CHECK = "true"


class LineStream:
    """File-like sink for invoke's ``out_stream``; hands out whole lines."""

    def __init__(self, on_line):
        self.on_line = on_line
        self._buffer = ""

    def write(self, data):
        self._buffer += data
        *lines, self._buffer = self._buffer.split("\n")
        for line in lines:
            self.on_line(line.rstrip("\r"))

    def flush(self):
        pass

    def close(self):
        if self._buffer:
            line, self._buffer = self._buffer, ""
            self.on_line(line.rstrip("\r"))


class Transport:
    """Run a command on a machine and copy files back from it.

    ``run`` returns the exit code and feeds stdout to ``on_line``; anything
    that keeps the command from running at all is a ``TransportFailure``.
    """

    def run(self, machine, command, on_line):
        raise NotImplementedError()

    def copy(self, machine, remote_path, local_path):
        raise NotImplementedError()

    def check(self, machine):
        exit_code = self.run(machine, HEALTH_CHECK, lambda line: None)
        if exit_code != 0:
            raise TransportFailure(f"Health check on {machine.addr} exited {exit_code}")


class SSHTransport(Transport):
    def __init__(self, user=None, key_filename=None, connect_timeout=10):
        self.user = user or None
        self.key_filename = key_filename or None
        self.connect_timeout = connect_timeout

    def connect(self, machine):
        key = machine.key_filename or self.key_filename
        connect_kwargs = {'allow_agent': True, 'look_for_keys': key is None}
        if key:
            connect_kwargs['key_filename'] = [key]
        return Connection(
            host=machine.host,
            user=machine.user or self.user,
            port=machine.port,
            connect_timeout=self.connect_timeout,
            connect_kwargs=connect_kwargs)

    def run(self, machine, command, on_line):
        stream = LineStream(on_line)
        conn = self.connect(machine)
        try:
            r = conn.run(command, hide='err', warn=True, pty=False, in_stream=False, out_stream=stream)
        except (SSHException, OSError, EOFError) as e:
            raise TransportFailure(f"Unable to run on {machine.addr}: {e}") from e
        finally:
            stream.close()
            conn.close()
        return r.exited

    def copy(self, machine, remote_path, local_path):
        Path(local_path).parent.mkdir(parents=True, exist_ok=True)
        conn = self.connect(machine)
        try:
            conn.get(remote_path, local=str(local_path))
        except (FileNotFoundError, PermissionError) as e:
            raise TransportFailure(f"Unable to copy {machine.addr}:{remote_path}: {e}", unreachable=False) from e
        except (SSHException, OSError, EOFError) as e:
            raise TransportFailure(f"Unable to copy {machine.addr}:{remote_path}: {e}") from e
        finally:
            conn.close()
        log.debug(f'Copied "{machine.addr}:{remote_path}" to "{local_path}"')


class LocalTransport(Transport):
    """Runs drivers on the server host; they reach the machine through ``{MACHINE}``."""

    def run(self, machine, command, on_line):
        stream = LineStream(on_line)
        try:
            r = invoke.context.Context().run(command, hide='err', warn=True, pty=False, in_stream=False, out_stream=stream)
        except OSError as e:
            raise TransportFailure(f"Unable to run locally for {machine.addr}: {e}") from e
        finally:
            stream.close()
        return r.exited

    def copy(self, machine, remote_path, local_path):
        Path(local_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            shutil.copyfile(remote_path, local_path)
        except OSError as e:
            raise TransportFailure(f"Unable to copy {remote_path}: {e}", unreachable=False) from e

    def check(self, machine):
        pass


def make_transport(kind, user=None, key_filename=None):
    if kind == 'ssh':
        return SSHTransport(user=user, key_filename=key_filename)
    if kind == 'local':
        return LocalTransport()
    raise ValueError(f'Unknown transport "{kind}"')
