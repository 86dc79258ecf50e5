#!/usr/bin/env python3
"""
Image-backed Roots for mini-chroot.

A root may keep its tree inside a virtual disk image instead of directly on
the host filesystem. The image is exposed as a network block device slot
(``/dev/nbd<N>``) with qemu-nbd and its first partition is mounted on the
root's tree:

    <root>/roots/debian.qcow2 --qemu-nbd--> /dev/nbd3 --> /dev/nbd3p1
                                                          |
                                           mount at <root>/roots/debian/

Slot Allocation
===============

There is no allocation table. Right before attaching, the live state is
scanned (mounted nbd devices and slots with a connected client under
/sys/block) and the new slot is ``max(attached) + 1``, or 0 when none is
attached. Gaps are not reused.

First Use
=========

A fresh image has no partition table. When the slot's first partition node
does not show up after attaching, the device gets a single primary Linux
partition spanning the disk and the configured filesystem is created on it.
"""

import logging
import os
import re
import time
from typing import Iterable, List, Optional, Set

from mini_chroot.filesystem import MountTable, umount
from mini_chroot.utils import Layout, run_command

log = logging.getLogger(__name__)

IMAGE_FORMATS = ("raw", "cloop", "cow", "qcow", "qcow2", "vmdk", "vdi")

NBD_DEVICE = re.compile(r"^nbd(\d+)(?:p\d+)?$")

# Seconds to wait for the kernel to publish partition nodes
PARTITION_SETTLE = 2.0
PARTITION_TIMEOUT = 10.0
POLL_INTERVAL = 0.1


class ImageError(Exception):
    """Exception raised for disk image operations."""

    pass


def image_format(path: str) -> Optional[str]:
    """Get the recognized format of an image file from its suffix."""
    _, ext = os.path.splitext(path)
    fmt = ext.lstrip(".")
    return fmt if fmt in IMAGE_FORMATS else None


def image_files(layout: Layout, root_id: str) -> List[str]:
    """Get all existing image files of a root, in format order."""
    return [
        layout.image_path(root_id, fmt)
        for fmt in IMAGE_FORMATS
        if os.path.isfile(layout.image_path(root_id, fmt))
    ]


def find_image(layout: Layout, root_id: str) -> Optional[str]:
    """Get the image file backing a root, or None for a directory root."""
    files = image_files(layout, root_id)
    return files[0] if files else None


def create_image(path: str, fmt: str, size: str, qemu_img: str = "qemu-img") -> str:
    """
    Create an empty disk image.

    Raises:
        ImageError: If the format is unknown or qemu-img fails
    """
    if fmt not in IMAGE_FORMATS:
        raise ImageError(f"Unknown image format: {fmt}")

    result = run_command([qemu_img, "create", "-f", fmt, path, size])
    if result.returncode != 0 or not os.path.exists(path):
        raise ImageError(
            f"Failed to create image {path}: {result.stderr.strip() or result.returncode}"
        )
    return path


def slot_of(device: str) -> Optional[int]:
    """
    Extract the slot number from an nbd device name.

    Examples:
        >>> slot_of("/dev/nbd3p1")
        3
        >>> slot_of("/dev/sda1") is None
        True
    """
    match = NBD_DEVICE.match(os.path.basename(device))
    return int(match.group(1)) if match else None


def attached_slots(table: MountTable, sys_block: str = "/sys/block") -> Set[int]:
    """
    Scan the slots currently in use.

    A slot is in use when one of its devices is mounted, or when the kernel
    reports a connected client for it (``/sys/block/nbd<N>/pid``).
    """
    slots = set()
    for entry in table.entries:
        slot = slot_of(entry.source)
        if slot is not None:
            slots.add(slot)

    try:
        names = os.listdir(sys_block)
    except OSError:
        names = []
    for name in names:
        slot = slot_of(name)
        if slot is not None and os.path.exists(os.path.join(sys_block, name, "pid")):
            slots.add(slot)
    return slots


def next_slot(slots: Iterable[int]) -> int:
    """Allocate the slot after the highest attached one."""
    return max(slots, default=-1) + 1


def wait_for(path: str, timeout: float) -> bool:
    """Poll until a path exists or the timeout expires."""
    deadline = time.monotonic() + timeout
    while True:
        if os.path.exists(path):
            return True
        if time.monotonic() >= deadline:
            return False
        time.sleep(POLL_INTERVAL)


class ImageMounter:
    """
    Attach, prepare and mount disk images.

    Example:
        mounter = ImageMounter(qemu_nbd="qemu-nbd", filesystem="ext4")
        slot = mounter.mount_image(image, "/var/lib/mini-chroot/roots/debian", table)
        mounter.detach_image("/var/lib/mini-chroot/roots/debian", read_mount_table())
    """

    def __init__(
        self,
        qemu_nbd: str = "qemu-nbd",
        filesystem: str = "ext4",
        dev_path: str = "/dev",
        sys_block: str = "/sys/block",
    ):
        self.qemu_nbd = qemu_nbd
        self.filesystem = filesystem
        self.dev_path = dev_path
        self.sys_block = sys_block

    def device(self, slot: int) -> str:
        return os.path.join(self.dev_path, f"nbd{slot}")

    def partition(self, slot: int) -> str:
        return os.path.join(self.dev_path, f"nbd{slot}p1")

    def ensure_driver(self) -> None:
        """Load the nbd driver with partition support if it is missing."""
        if os.path.isdir(os.path.join(self.sys_block, "nbd0")):
            return
        result = run_command(["modprobe", "nbd", "max_part=16"])
        if result.returncode != 0:
            raise ImageError(f"Failed to load nbd driver: {result.stderr.strip()}")

    def mount_image(
        self, image: Optional[str], target: str, table: MountTable
    ) -> Optional[int]:
        """
        Mount a root's image on its tree.

        Args:
            image: Image file, or None for a directory-backed root
            target: Root tree (mount point)
            table: Live mount table snapshot

        Returns:
            Slot number, or None if there is no recognized image
        """
        if not image or not image_format(image):
            return None
        self.ensure_driver()
        return self.attach_image(image, target, table)

    def attach_image(
        self, image: str, target: str, table: MountTable
    ) -> Optional[int]:
        """
        Attach an image to a free slot and mount its first partition.

        Does nothing if the target is already mounted.

        Returns:
            Slot number in use for the target (None if it is not an nbd mount)

        Raises:
            ImageError: If attaching, partitioning, formatting or mounting fails
        """
        existing = table.find(target)
        if existing is not None:
            slot = slot_of(existing.source)
            log.debug("%s already mounted from %s", target, existing.source)
            return slot

        slot = next_slot(attached_slots(table, self.sys_block))
        device = self.device(slot)

        log.info("Attaching %s to %s", image, device)
        result = run_command(
            [self.qemu_nbd, "-c", device, "-f", image_format(image), image]
        )
        if result.returncode != 0:
            raise ImageError(f"Failed to attach {image} to {device}: {result.stderr.strip()}")

        try:
            partition = self.partition(slot)
            if not wait_for(partition, PARTITION_SETTLE):
                self._prepare(device, partition)

            os.makedirs(target, exist_ok=True)
            result = run_command(["mount", partition, target])
            if result.returncode != 0:
                raise ImageError(f"Failed to mount {partition} on {target}: {result.stderr.strip()}")
        except ImageError:
            self.disconnect(slot)
            raise

        return slot

    def _prepare(self, device: str, partition: str) -> None:
        """Partition and format a first-use image."""
        log.info("First use of %s: partitioning and creating %s", device, self.filesystem)

        result = run_command(["sfdisk", device], input=",,L\n")
        if result.returncode != 0:
            raise ImageError(f"Failed to partition {device}: {result.stderr.strip()}")

        if not wait_for(partition, PARTITION_TIMEOUT):
            raise ImageError(f"Partition {partition} did not appear")

        result = run_command(["mkfs", "-t", self.filesystem, partition])
        if result.returncode != 0:
            raise ImageError(f"Failed to create {self.filesystem} on {partition}: {result.stderr.strip()}")

    def disconnect(self, slot: int) -> bool:
        """Detach a slot from its image."""
        return run_command([self.qemu_nbd, "-d", self.device(slot)]).returncode == 0

    def detach_image(self, target: str, table: MountTable) -> Optional[int]:
        """
        Unmount a root's image and free its slot.

        Best effort: failures are logged, not raised. A slot whose
        filesystem is still mounted stays attached.

        Returns:
            The freed slot, or None if nothing was freed
        """
        entry = table.find(target)
        if entry is None:
            return None

        slot = slot_of(entry.source)
        if slot is None:
            return None

        if not umount(target, force=False):
            log.warning("Could not unmount %s, leaving %s attached", target, self.device(slot))
            return None
        if not self.disconnect(slot):
            log.warning("Could not detach %s", self.device(slot))
        return slot
