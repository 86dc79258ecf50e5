#!/usr/bin/env python3
"""
Utility functions for mini-chroot.

Provides:
- Root id validation and sanitization
- Storage layout (roots, templates, shared fstab)
- External command runner
- Size, duration and date formatting

Storage Layout
==============

Everything lives below a single storage directory (``paths.root``):

    <root>/fstab                 shared mount table applied to every root
    <root>/templates/<type>      executables that populate a fresh tree
    <root>/roots/<id>/           the root tree itself
    <root>/roots/<id>/.info.json metadata of a directory-backed root
    <root>/roots/<id>.<format>   disk image of an image-backed root
    <root>/roots/<id>.info.json  metadata of an image-backed root

Root ids double as directory names and as process attribution keys, so they
are restricted to ``[A-Za-z0-9_]+``.
"""

import logging
import os
import re
import subprocess
import time
from dataclasses import dataclass
from typing import List, Optional, Sequence

log = logging.getLogger(__name__)

# Determine the default storage directory
if os.environ.get("MINI_CHROOT_ROOT"):
    DEFAULT_ROOT = os.environ["MINI_CHROOT_ROOT"]
else:
    DEFAULT_ROOT = "/var/lib/mini-chroot"

INVALID_ID_CHARS = re.compile(r"[^A-Za-z0-9_]")

METADATA_FILE = ".info.json"


def sanitize_root_id(raw: str) -> str:
    """Strip every character that is not allowed in a root id."""
    return INVALID_ID_CHARS.sub("", raw or "")


def is_valid_root_id(root_id: str) -> bool:
    """
    Check a root id.

    An id is valid when it is non-empty and survives sanitization unchanged.

    Examples:
        >>> is_valid_root_id("debian_12")
        True
        >>> is_valid_root_id("../etc")
        False
    """
    return bool(root_id) and sanitize_root_id(root_id) == root_id


@dataclass(frozen=True)
class Layout:
    """Paths of the storage directory."""

    base: str

    @property
    def roots_path(self) -> str:
        return os.path.join(self.base, "roots")

    @property
    def templates_path(self) -> str:
        return os.path.join(self.base, "templates")

    @property
    def fstab_path(self) -> str:
        return os.path.join(self.base, "fstab")

    def root_path(self, root_id: str) -> str:
        """Get the path to a root's tree."""
        return os.path.join(self.roots_path, root_id)

    def image_path(self, root_id: str, fmt: str) -> str:
        """Get the path of a root's disk image in the given format."""
        return os.path.join(self.roots_path, f"{root_id}.{fmt}")

    def template_path(self, name: str) -> str:
        return os.path.join(self.templates_path, name)


def ensure_directories(layout: Layout) -> None:
    """Create all required storage directories."""
    for directory in (layout.base, layout.roots_path, layout.templates_path):
        os.makedirs(directory, exist_ok=True)


def check_root() -> bool:
    """Check if running as root."""
    return os.geteuid() == 0


def run_command(
    args: Sequence[str],
    check: bool = False,
    input: Optional[str] = None,
    capture: bool = True,
) -> subprocess.CompletedProcess:
    """
    Run an external command and wait for it.

    Args:
        args: Command and its arguments
        check: Whether to raise CalledProcessError on non-zero exit
        input: Text fed to the command's stdin
        capture: Capture output; when False it goes to our stdout/stderr

    Returns:
        CompletedProcess instance (stdout/stderr are "" when not captured)
    """
    cmd = [str(a) for a in args]
    log.debug("run: %s", " ".join(cmd))
    result = subprocess.run(
        cmd, capture_output=capture, text=True, check=check, input=input
    )
    if not capture:
        result.stdout = result.stderr = ""
    if result.returncode != 0:
        log.debug("exit %d: %s", result.returncode, result.stderr.strip())
    return result


def compute_size(path: str) -> int:
    """
    Compute on-disk usage of a tree in bytes.

    Symlinks are not followed and nested mount points (proc, sys, dev, ...)
    are not descended into. A missing or empty tree is 0.
    """
    if not os.path.isdir(path):
        try:
            return os.lstat(path).st_size
        except OSError:
            return 0

    total = 0
    for dirpath, dirnames, filenames in os.walk(path):
        dirnames[:] = [
            d for d in dirnames if not os.path.ismount(os.path.join(dirpath, d))
        ]
        for name in filenames:
            try:
                total += os.lstat(os.path.join(dirpath, name)).st_size
            except OSError:
                pass
    return total


def format_size(num_bytes: Optional[int]) -> str:
    """Format a byte count (e.g. ``1.5G``)."""
    if num_bytes is None:
        return "-"
    size = float(num_bytes)
    for unit in ("B", "K", "M", "G"):
        if size < 1024:
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}T"


def format_duration(seconds: Optional[float]) -> str:
    """Format a duration as its two most significant units (``2h 5m``)."""
    if seconds is None:
        return "-"
    seconds = int(max(seconds, 0))
    parts: List[str] = []
    for unit, length in (("d", 86400), ("h", 3600), ("m", 60), ("s", 1)):
        value, seconds = divmod(seconds, length)
        if value or (unit == "s" and not parts):
            parts.append(f"{value}{unit}")
    return " ".join(parts[:2])


def format_time(timestamp: Optional[float]) -> str:
    """Format a UNIX timestamp for listings."""
    if not timestamp:
        return "-"
    return time.strftime("%Y-%m-%d %H:%M", time.localtime(timestamp))
