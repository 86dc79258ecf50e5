#!/usr/bin/env python3
"""
Process Attribution for mini-chroot.

Nothing supervises a running root, so which processes belong to which root
is inferred from the live process table on every query:

1. Snapshot /proc once: pid, parent pid and resolved executable of every
   process. A process whose executable cannot be resolved (exited, zombie,
   kernel thread) is skipped.
2. A process whose executable lies under ``<roots>/<id>/`` is a root
   process (anchor) of ``id``. This is usually the shell or command that
   chroot/jchroot executed inside the tree.
3. Every other process walks up its parent chain. The first anchor it
   meets decides its root; a chain that leaves the snapshot leaves the
   process unattributed.

    pid 1 (init)                     unattributed
    └── pid 200 chroot               unattributed (exe /usr/sbin/chroot)
        └── pid 201 bash             anchor of "debian" (exe <roots>/debian/bin/bash)
            └── pid 230 make         "debian" (via 201)
                └── pid 231 cc       "debian" (via 230 -> 201)

The snapshot is never cached between invocations: process tables change
constantly and another invocation may be acting on another root.
"""

import logging
import os
import signal
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from mini_chroot.utils import is_valid_root_id

log = logging.getLogger(__name__)

DELETED_SUFFIX = " (deleted)"


class ProcessTableError(Exception):
    """Exception raised when the process table cannot be read."""

    pass


@dataclass(frozen=True)
class ProcessEntry:
    """One process of a snapshot."""

    pid: int
    ppid: int
    exe: Optional[str] = None


def read_stat(proc_path: str, pid: int) -> List[str]:
    """
    Read the fields of /proc/<pid>/stat that follow the command name.

    Returns:
        [state, ppid, pgrp, ...], or [] if the process is gone
    """
    try:
        with open(os.path.join(proc_path, str(pid), "stat"), "r") as f:
            stat = f.read()
    except (IOError, OSError):
        return []

    # The command name may contain spaces and parentheses
    return stat[stat.rfind(")") + 1 :].split()


def read_ppid(proc_path: str, pid: int) -> Optional[int]:
    """Read a process's parent pid."""
    fields = read_stat(proc_path, pid)
    try:
        return int(fields[1])
    except (IndexError, ValueError):
        return None


def read_state(proc_path: str, pid: int) -> Optional[str]:
    """Read a process's state letter (R, S, Z, ...), None if it is gone."""
    fields = read_stat(proc_path, pid)
    return fields[0] if fields else None


def read_exe(proc_path: str, pid: int) -> Optional[str]:
    """Resolve a process's executable, or None (kernel thread, zombie, gone)."""
    try:
        exe = os.readlink(os.path.join(proc_path, str(pid), "exe"))
    except OSError:
        return None
    if exe.endswith(DELETED_SUFFIX):
        exe = exe[: -len(DELETED_SUFFIX)]
    return exe or None


def snapshot_processes(proc_path: str = "/proc") -> Dict[int, ProcessEntry]:
    """
    Take a snapshot of the process table.

    Processes that exit while scanning, zombies and kernel threads (no
    resolvable executable) are skipped.

    Raises:
        ProcessTableError: If the process table cannot be listed
    """
    try:
        names = os.listdir(proc_path)
    except OSError as e:
        raise ProcessTableError(f"Cannot read process table {proc_path}: {e}")

    snapshot = {}
    for name in names:
        if not name.isdigit():
            continue
        pid = int(name)
        ppid = read_ppid(proc_path, pid)
        exe = read_exe(proc_path, pid)
        if ppid is None or exe is None:
            continue
        snapshot[pid] = ProcessEntry(pid, ppid, exe)
    return snapshot


def root_of_path(path: Optional[str], roots_path: str) -> Optional[str]:
    """
    Get the root id whose tree contains a path.

    Examples:
        >>> root_of_path("/var/lib/mini-chroot/roots/debian/bin/bash",
        ...              "/var/lib/mini-chroot/roots")
        'debian'
        >>> root_of_path("/usr/bin/bash", "/var/lib/mini-chroot/roots") is None
        True
    """
    if not path:
        return None
    prefix = roots_path.rstrip("/") + "/"
    if not path.startswith(prefix):
        return None
    root_id = path[len(prefix) :].split("/", 1)[0]
    return root_id if is_valid_root_id(root_id) else None


@dataclass
class Attribution:
    """Processes attributed to each root."""

    processes: Dict[str, Set[int]] = field(default_factory=dict)
    anchors: Dict[str, Set[int]] = field(default_factory=dict)

    def pids(self, root_id: str) -> Set[int]:
        return self.processes.get(root_id, set())

    def count(self, root_id: str) -> int:
        return len(self.pids(root_id))

    def primary(self, root_id: str) -> Optional[int]:
        """Get the primary root process (lowest anchor pid)."""
        anchors = self.anchors.get(root_id)
        return min(anchors) if anchors else None

    def root_of(self, pid: int) -> Optional[str]:
        for root_id, pids in self.processes.items():
            if pid in pids:
                return root_id
        return None


def attribute(snapshot: Dict[int, ProcessEntry], roots_path: str) -> Attribution:
    """
    Attribute the processes of a snapshot to roots.

    Args:
        snapshot: Process table snapshot
        roots_path: Resolved directory holding the root trees

    Returns:
        Attribution; processes without an executable or that reach no
        anchor are left out
    """
    snapshot = {pid: entry for pid, entry in snapshot.items() if entry.exe}
    result = Attribution()
    owner: Dict[int, Optional[str]] = {}

    for pid, entry in snapshot.items():
        root_id = root_of_path(entry.exe, roots_path)
        if root_id is not None:
            owner[pid] = root_id
            result.anchors.setdefault(root_id, set()).add(pid)

    for pid in snapshot:
        if pid in owner:
            continue

        chain = [pid]
        found: Optional[str] = None
        current = snapshot[pid].ppid
        while current in snapshot and current not in chain:
            if current in owner:
                # Nearest anchor wins, also when a chain could reach several
                found = owner[current]
                break
            chain.append(current)
            current = snapshot[current].ppid

        for member in chain:
            owner[member] = found

    for pid, root_id in owner.items():
        if root_id is not None:
            result.processes.setdefault(root_id, set()).add(pid)

    return result


class ProcessTracker:
    """
    Answer process questions about roots for one invocation.

    The snapshot is taken lazily on first use and then reused for the rest
    of this tracker's lifetime only.

    Example:
        tracker = ProcessTracker("/var/lib/mini-chroot/roots")
        tracker.count("debian")
        tracker.kill("debian")
    """

    def __init__(
        self,
        roots_path: str,
        proc_path: str = "/proc",
        snapshot: Optional[Dict[int, ProcessEntry]] = None,
    ):
        self.roots_path = os.path.realpath(roots_path)
        self.proc_path = proc_path
        self._snapshot = snapshot
        self._attribution: Optional[Attribution] = None

    @property
    def snapshot(self) -> Dict[int, ProcessEntry]:
        if self._snapshot is None:
            self._snapshot = snapshot_processes(self.proc_path)
        return self._snapshot

    @property
    def attribution(self) -> Attribution:
        if self._attribution is None:
            self._attribution = attribute(self.snapshot, self.roots_path)
        return self._attribution

    def processes(self, root_id: str) -> Set[int]:
        return self.attribution.pids(root_id)

    def count(self, root_id: str) -> int:
        return self.attribution.count(root_id)

    def primary(self, root_id: str) -> Optional[int]:
        return self.attribution.primary(root_id)

    def is_running(
        self, root_id: str, isolated: bool, terminal_mounted: bool
    ) -> bool:
        """
        Decide whether a root is running.

        Args:
            root_id: Root id
            isolated: Whether the stronger isolation tool is in use; then
                a root process must exist
            terminal_mounted: Whether the root's terminal-device target is
                mounted; the liveness proxy for plain chroot

        Returns:
            True if the root is running
        """
        if isolated:
            return self.primary(root_id) is not None
        return terminal_mounted

    def kill(self, root_id: str, sig: int = signal.SIGKILL) -> int:
        """
        Signal every process attributed to a root.

        Processes that are gone or not ours are skipped.

        Returns:
            Number of processes signalled
        """
        signalled = 0
        for pid in sorted(self.processes(root_id)):
            if pid == os.getpid():
                continue
            try:
                os.kill(pid, sig)
                signalled += 1
            except (ProcessLookupError, PermissionError) as e:
                log.debug("kill %d: %s", pid, e)
        return signalled

    def wait(self, pids: Iterable[int], timeout: float = 2.0) -> Set[int]:
        """
        Wait for processes to exit.

        Zombies count as exited since their mounts are already released.

        Returns:
            Pids still alive when the timeout expired
        """
        remaining = set(pids)
        deadline = time.monotonic() + timeout
        while remaining:
            remaining = {
                pid
                for pid in remaining
                if read_state(self.proc_path, pid) not in (None, "Z")
            }
            if not remaining or time.monotonic() >= deadline:
                break
            time.sleep(0.1)
        return remaining
