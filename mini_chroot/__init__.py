"""
Mini-Chroot: manage named chroot environments ("roots") on a Linux host.

This tool implements:
- Roots populated from templates, clones or left empty
- Optional disk-image backing through qemu-img and qemu-nbd
- Shared special filesystems (proc, sys, dev, dev/pts) per root
- Plain chroot or jchroot (hostname + pid namespace) isolation
- Process attribution from the live process table
- Per-root metadata with an append-only comment log

Author: Mini-Chroot Contributors
License: MIT
"""

__version__ = "1.0.0"

from mini_chroot.config import Config, load_config  # noqa: E402
from mini_chroot.images import ImageMounter  # noqa: E402
from mini_chroot.metadata import MetadataStore  # noqa: E402
from mini_chroot.processes import ProcessTracker  # noqa: E402
from mini_chroot.root import RootManager  # noqa: E402

__all__ = [
    "RootManager",
    "MetadataStore",
    "ProcessTracker",
    "ImageMounter",
    "Config",
    "load_config",
]
