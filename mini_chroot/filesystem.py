#!/usr/bin/env python3
"""
Shared Filesystem Mounts for mini-chroot.

Every root gets the same set of special filesystems mounted into its tree,
read from the shared mount table ``<root>/fstab``:

    # source  target   type    options
    proc      proc     proc    defaults
    sysfs     sys      sysfs   defaults
    /dev      dev      none    bind
    devpts    dev/pts  devpts  defaults

Targets are relative to the root's tree. The terminal-device target
(``dev/pts``) doubles as the liveness marker of a plain-chroot root: while it
is mounted the root counts as running.

Whether something is mounted is always decided from the host's live mount
table (``/proc/mounts``), never from state saved by an earlier invocation.
"""

import logging
import os
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional

from mini_chroot.utils import run_command

log = logging.getLogger(__name__)

TERMINAL_FSTYPE = "devpts"
TERMINAL_TARGET = "dev/pts"

DEFAULT_FSTAB = """\
# Shared mounts applied to every root.
# source  target   type    options
proc      proc     proc    defaults
sysfs     sys      sysfs   defaults
/dev      dev      none    bind
devpts    dev/pts  devpts  defaults
"""

_OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")


class FilesystemError(Exception):
    """Exception raised for filesystem operations."""

    pass


@dataclass(frozen=True)
class MountEntry:
    """One mount: a shared fstab line or a line of the live mount table."""

    source: str
    target: str
    fstype: str
    options: str = "defaults"

    @property
    def is_terminal(self) -> bool:
        return self.fstype == TERMINAL_FSTYPE


class MountTable:
    """
    Snapshot of the host's live mount table.

    Example:
        table = read_mount_table()
        table.is_mounted("/var/lib/mini-chroot/roots/debian/dev/pts")
    """

    def __init__(self, entries: Iterable[MountEntry]):
        self.entries = list(entries)

    def find(self, target: str) -> Optional[MountEntry]:
        """Get the most recent mount at a target."""
        target = os.path.normpath(target)
        for entry in reversed(self.entries):
            if entry.target == target:
                return entry
        return None

    def is_mounted(self, target: str) -> bool:
        return self.find(target) is not None

    def under(self, path: str) -> List[MountEntry]:
        """Get all mounts at or below a path."""
        path = os.path.normpath(path)
        prefix = path.rstrip("/") + "/"
        return [e for e in self.entries if e.target == path or e.target.startswith(prefix)]

    def __len__(self) -> int:
        return len(self.entries)


def unescape_mount_field(value: str) -> str:
    """Decode the octal escapes (``\\040`` etc.) used in /proc/mounts."""
    return _OCTAL_ESCAPE.sub(lambda m: chr(int(m.group(1), 8)), value)


def parse_mount_table(text: str) -> MountTable:
    """Parse the contents of /proc/mounts."""
    entries = []
    for line in text.splitlines():
        parts = line.split()
        if len(parts) < 4:
            continue
        entries.append(
            MountEntry(
                source=unescape_mount_field(parts[0]),
                target=os.path.normpath(unescape_mount_field(parts[1])),
                fstype=parts[2],
                options=parts[3],
            )
        )
    return MountTable(entries)


def read_mount_table(proc_path: str = "/proc") -> MountTable:
    """
    Read the live mount table.

    Raises:
        FilesystemError: If the mount table cannot be read
    """
    path = os.path.join(proc_path, "mounts")
    try:
        with open(path, "r") as f:
            return parse_mount_table(f.read())
    except (IOError, OSError) as e:
        raise FilesystemError(f"Cannot read mount table {path}: {e}")


def parse_fstab(text: str) -> List[MountEntry]:
    """
    Parse the shared mount table.

    Lines are ``source target type options``; blank lines and lines
    starting with ``#`` are ignored.
    """
    entries = []
    for lineno, line in enumerate(text.splitlines(), 1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split()
        if len(parts) != 4:
            raise FilesystemError(f"fstab line {lineno}: expected 4 fields, got {len(parts)}")
        source, target, fstype, options = parts
        target = target.strip("/")
        if not target or ".." in target.split("/"):
            raise FilesystemError(f"fstab line {lineno}: invalid target {parts[1]!r}")
        entries.append(MountEntry(source, target, fstype, options))
    return entries


def load_fstab(path: str) -> List[MountEntry]:
    """Load the shared mount table; the built-in default stands in if missing."""
    if not os.path.exists(path):
        return parse_fstab(DEFAULT_FSTAB)
    try:
        with open(path, "r") as f:
            return parse_fstab(f.read())
    except (IOError, OSError) as e:
        raise FilesystemError(f"Cannot read {path}: {e}")


def ensure_fstab(path: str) -> None:
    """Write the default shared mount table if none exists."""
    if os.path.exists(path):
        return
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w") as f:
        f.write(DEFAULT_FSTAB)


def terminal_entry(entries: List[MountEntry]) -> MountEntry:
    """Get the terminal-device entry (devpts), with a built-in fallback."""
    for entry in entries:
        if entry.is_terminal:
            return entry
    return MountEntry(TERMINAL_FSTYPE, TERMINAL_TARGET, TERMINAL_FSTYPE, "defaults")


def terminal_target(root_path: str, entries: List[MountEntry]) -> str:
    """Get the absolute terminal-device mount point of a root."""
    return os.path.join(root_path, terminal_entry(entries).target)


def mount_command(entry: MountEntry, target: str) -> List[str]:
    """Build the mount(8) invocation for an entry."""
    cmd = ["mount"]
    if entry.fstype and entry.fstype != "none":
        cmd += ["-t", entry.fstype]
    if entry.options and entry.options != "defaults":
        cmd += ["-o", entry.options]
    return cmd + [entry.source, target]


def mount(entry: MountEntry, target: str) -> None:
    """
    Mount an entry at an absolute target.

    Raises:
        FilesystemError: If mount fails
    """
    result = run_command(mount_command(entry, target))
    if result.returncode != 0:
        raise FilesystemError(
            f"mount({entry.source} -> {target}, {entry.fstype}) failed: "
            f"{result.stderr.strip() or result.returncode}"
        )


def umount(target: str, force: bool = True) -> bool:
    """Unmount a target; returns False instead of raising on failure."""
    cmd = ["umount", "-f", target] if force else ["umount", target]
    return run_command(cmd).returncode == 0


def mount_shared(
    root_path: str, entries: List[MountEntry], table: MountTable
) -> List[str]:
    """
    Mount the shared filesystems into a root's tree.

    Nothing is done if the terminal-device target is already mounted.
    Missing target directories are created.

    Args:
        root_path: Absolute path of the root's tree
        entries: Shared mount table
        table: Live mount table snapshot

    Returns:
        List of targets that were mounted

    Raises:
        FilesystemError: If a mount fails
    """
    if table.is_mounted(terminal_target(root_path, entries)):
        log.debug("shared mounts already present in %s", root_path)
        return []

    mounted = []
    for entry in entries:
        target = os.path.join(root_path, entry.target)
        os.makedirs(target, exist_ok=True)
        mount(entry, target)
        mounted.append(target)
    return mounted


def unmount_shared(
    root_path: str, entries: List[MountEntry], table: MountTable
) -> List[str]:
    """
    Unmount the shared filesystems of a root.

    Only acts if the terminal-device target is mounted. Targets are
    force-unmounted in reverse order; a failure is logged and the loop goes
    on with the next target.

    Returns:
        List of targets that could not be unmounted
    """
    if not table.is_mounted(terminal_target(root_path, entries)):
        return []

    failed = []
    for entry in reversed(entries):
        target = os.path.join(root_path, entry.target)
        if not umount(target):
            log.warning("Could not unmount %s", target)
            failed.append(target)
    return failed


def write_terminal_fstab(path: str, entries: List[MountEntry]) -> str:
    """
    Write a one-entry fstab holding only the terminal-device mount.

    jchroot mounts the entries of such a file itself inside its new
    mount namespace.
    """
    entry = terminal_entry(entries)
    with open(path, "w") as f:
        f.write(f"{entry.source} /{entry.target} {entry.fstype} {entry.options} 0 0\n")
    return path
