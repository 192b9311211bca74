"""Termination of processes keeping a path busy."""

from __future__ import annotations

import logging
import os
import signal
from enum import Enum
from typing import Iterator, Protocol

__all__ = ["Signal", "ProcessTerminator", "ProcfsTerminator"]


log = logging.getLogger(__name__)


PROC = "/proc"


class Signal(Enum):
    """Escalation level applied to processes holding a path open."""

    NONE = 0  # only report the holders
    HANGUP = 1
    KILL = 2

    @property
    def signum(self) -> int | None:
        if self is Signal.HANGUP:
            return signal.SIGHUP
        if self is Signal.KILL:
            return signal.SIGKILL
        return None


class ProcessTerminator(Protocol):
    def terminate_holders_of(self, path: str, strength: Signal) -> None:
        """Signal every process holding files under ``path``. Best effort, must
        not block.
        """
        ...


def _is_under(candidate: str, path: str) -> bool:
    return candidate == path or candidate.startswith(path.rstrip("/") + "/")


class ProcfsTerminator:
    """``ProcessTerminator`` scanning ``/proc`` for open files, working
    directories, roots, executables and memory mappings under a path.
    """

    def __init__(self, proc: str = PROC):
        self._proc = proc

    def _links(self, pid_dir: str) -> Iterator[str]:
        for name in ("cwd", "root", "exe"):
            try:
                yield os.readlink(os.path.join(pid_dir, name))
            except OSError:
                continue
        fd_dir = os.path.join(pid_dir, "fd")
        try:
            fds = os.listdir(fd_dir)
        except OSError:
            fds = []
        for fd in fds:
            try:
                yield os.readlink(os.path.join(fd_dir, fd))
            except OSError:
                continue
        try:
            with open(os.path.join(pid_dir, "maps"), encoding="utf-8") as f:
                for line in f:
                    fields = line.split(maxsplit=5)
                    if len(fields) == 6:
                        yield fields[5].rstrip("\n")
        except OSError:
            pass

    def holders_of(self, path: str) -> list[int]:
        """Return the PIDs of processes using files under ``path``."""
        holders = []
        try:
            entries = os.listdir(self._proc)
        except OSError as e:
            log.error(f"Unable to scan {self._proc} ({e.strerror})")
            return holders
        own_pid = os.getpid()
        for entry in entries:
            if not entry.isdigit() or int(entry) == own_pid:
                continue
            pid_dir = os.path.join(self._proc, entry)
            if any(_is_under(link, path) for link in self._links(pid_dir)):
                holders.append(int(entry))
        return sorted(holders)

    def terminate_holders_of(self, path: str, strength: Signal) -> None:
        for pid in self.holders_of(path):
            log.warning(f"Process {pid} has open files under {path}")
            signum = strength.signum
            if signum is None:
                continue
            log.warning(f"Sending {signal.Signals(signum).name} to process {pid}")
            try:
                os.kill(pid, signum)
            except ProcessLookupError:
                pass
            except PermissionError as e:
                log.error(f"Unable to signal process {pid} ({e.strerror})")
