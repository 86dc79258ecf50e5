#!/usr/bin/env python3
"""
Root Management for mini-chroot.

This is the core module that brings the pieces together:
- Metadata (declared attributes of a root)
- Process attribution (who runs inside a root)
- Shared mounts (proc, sys, dev, dev/pts)
- Disk images (nbd slots, partitioning, formatting)

Root Lifecycle:
    absent -> create -> stopped <-> start/stop -> running
    stopped -> delete -> absent

Running or stopped is never stored. It is decided on every query: with
jchroot a root runs while a process executes from inside its tree, with
plain chroot while its terminal-device target (dev/pts) is mounted.
"""

import logging
import os
import shutil
import sys
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, NoReturn, Optional, Sequence

from mini_chroot.config import Config
from mini_chroot.filesystem import (FilesystemError, MountTable, ensure_fstab,
                                    load_fstab, mount_shared, read_mount_table,
                                    terminal_target, umount, unmount_shared,
                                    write_terminal_fstab)
from mini_chroot.images import (ImageMounter, create_image, find_image,
                                image_files, image_format)
from mini_chroot.metadata import DEFAULT_TYPE, MetadataStore, RootInfo
from mini_chroot.processes import ProcessTracker
from mini_chroot.utils import (compute_size, ensure_directories,
                               is_valid_root_id, run_command)

log = logging.getLogger(__name__)

CLONE_PREFIX = "clone:"

# Seconds to wait for killed processes before unmounting
STOP_TIMEOUT = 2.0


class RootError(Exception):
    """Exception raised for root operations."""

    pass


class InvalidRootIdError(RootError):
    """The root id is empty or contains characters outside [A-Za-z0-9_]."""


class RootNotFoundError(RootError):
    """The root does not exist."""


class RootExistsError(RootError):
    """The root already exists."""


class RootRunningError(RootError):
    """The operation needs a stopped root."""


class TemplateNotFoundError(RootError):
    """No template and no clone source matches the requested type."""


class PrivilegeError(RootError):
    """The operation needs root privileges."""


@dataclass
class RootStatus:
    """Declared attributes of a root merged with its live state."""

    id: str
    path: str
    running: bool
    info: RootInfo
    processes: int = 0
    root_pid: Optional[int] = None
    uptime: Optional[float] = None
    size_bytes: int = 0
    image: Optional[str] = None

    @property
    def status(self) -> str:
        return "running" if self.running else "stopped"

    @property
    def backing_store(self) -> str:
        return "image" if self.image else "directory"

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "path": self.path,
            "status": self.status,
            "processes": self.processes,
            "rootPid": self.root_pid,
            "uptime": self.uptime,
            "sizeBytes": self.size_bytes,
            "backingStore": self.backing_store,
            "image": self.image,
        }
        doc = self.info.to_document()
        doc.pop("sizeBytes", None)
        data.update(doc)
        return data


@dataclass(frozen=True)
class ExecHandoff:
    """
    Result of start: the isolated command that takes over this process.

    Calling execute() replaces the current process image and never returns.
    Nothing runs after it; unmounting is left to a later stop.
    """

    root_id: str
    argv: List[str] = field(default_factory=list)

    def execute(self) -> NoReturn:
        sys.stdout.flush()
        sys.stderr.flush()
        os.execvp(self.argv[0], self.argv)


class RootManager:
    """
    Root manager class.

    This class handles the complete lifecycle of a root:
    - Creation from a template, a clone source or empty
    - Starting (entering) and stopping
    - Renaming and deletion

    Example:
        manager = RootManager(load_config())
        manager.create("debian", "debootstrap", ["bookworm"])
        manager.start("debian").execute()
    """

    def __init__(self, config: Config):
        self.config = config
        self.layout = config.layout
        self.store = MetadataStore(self.layout)
        self.images = ImageMounter(
            qemu_nbd=config.tools.qemu_nbd,
            filesystem=config.image.filesystem,
            dev_path=config.paths.dev,
            sys_block=config.paths.sys_block,
        )

    # =========================================================================
    # Live state
    # =========================================================================

    def root_path(self, root_id: str) -> str:
        """Get the resolved path of a root's tree."""
        return os.path.realpath(self.layout.root_path(root_id))

    def shared_mounts(self):
        return load_fstab(self.layout.fstab_path)

    def mount_table(self) -> MountTable:
        return read_mount_table(self.config.paths.proc)

    def tracker(self) -> ProcessTracker:
        return ProcessTracker(self.layout.roots_path, self.config.paths.proc)

    def exists(self, root_id: str) -> bool:
        return os.path.isdir(self.layout.root_path(root_id)) or bool(
            find_image(self.layout, root_id)
        )

    def is_running(
        self,
        root_id: str,
        tracker: Optional[ProcessTracker] = None,
        table: Optional[MountTable] = None,
    ) -> bool:
        """Decide from live state whether a root is running."""
        tracker = tracker or self.tracker()
        isolated = self.config.use_jchroot
        terminal_mounted = False
        if not isolated:
            table = table or self.mount_table()
            target = terminal_target(self.root_path(root_id), self.shared_mounts())
            terminal_mounted = table.is_mounted(target)
        return tracker.is_running(root_id, isolated, terminal_mounted)

    def compute_size(self, root_id: str) -> int:
        """Compute on-disk usage: allocated image size or tree size."""
        image = find_image(self.layout, root_id)
        if image:
            try:
                return os.stat(image).st_blocks * 512
            except OSError:
                return 0
        return compute_size(self.layout.root_path(root_id))

    def list_ids(self) -> List[str]:
        """List ids of all roots, sorted."""
        try:
            names = os.listdir(self.layout.roots_path)
        except OSError:
            return []
        return sorted(
            name
            for name in names
            if is_valid_root_id(name)
            and os.path.isdir(os.path.join(self.layout.roots_path, name))
        )

    def templates(self) -> List[str]:
        """List available templates."""
        try:
            names = os.listdir(self.layout.templates_path)
        except OSError:
            return []
        return sorted(name for name in names if self.find_template(name))

    def find_template(self, name: str) -> Optional[str]:
        """Get the executable of a template, or None."""
        if not name or os.path.basename(name) != name or name.startswith("."):
            return None
        path = self.layout.template_path(name)
        if os.path.isfile(path) and os.access(path, os.X_OK):
            return path
        return None

    # =========================================================================
    # Preconditions
    # =========================================================================

    def _check_id(self, root_id: str) -> None:
        if not is_valid_root_id(root_id):
            raise InvalidRootIdError(f"Invalid root id: {root_id!r}")

    def _require_exists(self, root_id: str) -> None:
        self._check_id(root_id)
        if not self.exists(root_id):
            raise RootNotFoundError(f"Root not found: {root_id}")

    def _require_absent(self, root_id: str) -> None:
        self._check_id(root_id)
        if self.exists(root_id):
            raise RootExistsError(f"Root already exists: {root_id}")

    def _require_stopped(self, root_id: str) -> None:
        if self.is_running(root_id):
            raise RootRunningError(f"Root still running: {root_id}")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def create(
        self,
        root_id: str,
        root_type: Optional[str] = None,
        args: Sequence[str] = (),
        image: Optional[bool] = None,
    ) -> RootStatus:
        """
        Create a new root.

        The type is resolved before anything on disk changes, so an unknown
        template or clone source leaves an existing root untouched even when
        force is set.

        Args:
            root_id: Root id
            root_type: Template name, ``clone:<source>``, or None for an
                empty (custom) root
            args: Extra arguments for the template
            image: Back the root with a disk image (default from config)

        Returns:
            RootStatus of the new root

        Raises:
            RootExistsError: If the root exists and force is not set
            TemplateNotFoundError: If the type matches no template/source
        """
        self._check_id(root_id)
        root_type = root_type or DEFAULT_TYPE
        template = None
        source = None
        if root_type.startswith(CLONE_PREFIX):
            source = root_type[len(CLONE_PREFIX):]
            if source == root_id:
                raise TemplateNotFoundError(f"Cannot clone {root_id} onto itself")
            if not is_valid_root_id(source) or not self.exists(source):
                raise TemplateNotFoundError(f"Clone source not found: {source}")
            self._require_stopped(source)
        elif root_type != DEFAULT_TYPE:
            template = self.find_template(root_type)
            if template is None:
                raise TemplateNotFoundError(f"Template not found: {root_type}")

        if self.exists(root_id):
            if not self.config.force:
                raise RootExistsError(f"Root already exists: {root_id}")
            log.info("Replacing existing root %s", root_id)
            self.delete(root_id)

        use_image = self.config.image.enabled if image is None else image

        ensure_directories(self.layout)
        ensure_fstab(self.layout.fstab_path)
        path = self.layout.root_path(root_id)
        os.makedirs(path)

        image_file = None
        if use_image:
            fmt = self.config.image.format
            try:
                image_file = create_image(
                    self.layout.image_path(root_id, fmt),
                    fmt,
                    self.config.image.size,
                    self.config.tools.qemu_img,
                )
            except Exception:
                shutil.rmtree(path, ignore_errors=True)
                raise

        info = RootInfo(type=root_type)
        self.store.write(root_id, info)
        log.info("Created root %s (%s)", root_id, root_type)

        if image_file:
            try:
                self.images.mount_image(image_file, self.root_path(root_id), self.mount_table())
            except Exception:
                self._discard(root_id)
                raise

        try:
            try:
                if template:
                    self._run_template(template, root_id, args)
                elif source:
                    self._copy_tree(source, root_id)
            finally:
                info.size_bytes = self.compute_size(root_id)
                self.store.write(root_id, info)
        finally:
            if image_file:
                self.images.detach_image(self.root_path(root_id), self.mount_table())

        return self.status(root_id)

    def _discard(self, root_id: str) -> None:
        """Remove what a failed create left behind."""
        log.info("Removing incomplete root %s", root_id)
        shutil.rmtree(self.layout.root_path(root_id), ignore_errors=True)
        for image_file in image_files(self.layout, root_id):
            os.unlink(image_file)
        self.store.remove(root_id)

    def _run_template(self, template: str, root_id: str, args: Sequence[str]) -> None:
        log.info("Populating %s with %s", root_id, template)
        result = run_command(
            [template, self.root_path(root_id)] + list(args), capture=False
        )
        if result.returncode != 0:
            # The root stays as populated so far
            log.warning(
                "Template %s exited with status %d", template, result.returncode
            )

    def _copy_tree(self, source: str, root_id: str) -> None:
        source_path = self.root_path(source)
        source_image = find_image(self.layout, source)
        if source_image:
            self.images.mount_image(source_image, source_path, self.mount_table())

        try:
            log.info("Copying %s to %s", source, root_id)
            result = run_command(
                ["cp", "-a", f"{source_path}/.", f"{self.root_path(root_id)}/"]
            )
            if result.returncode != 0:
                log.warning("Copy of %s failed: %s", source, result.stderr.strip())
        finally:
            if source_image:
                self.images.detach_image(source_path, self.mount_table())

    def clone(self, source: str, root_id: str) -> RootStatus:
        """
        Clone a stopped root.

        Raises:
            RootNotFoundError: If the source does not exist
            RootRunningError: If the source is running
            RootExistsError: If the target exists
        """
        self._require_exists(source)
        self._require_absent(root_id)
        self._require_stopped(source)
        return self.create(root_id, f"{CLONE_PREFIX}{source}")

    def start(self, root_id: str, command: Optional[Sequence[str]] = None) -> ExecHandoff:
        """
        Prepare a root and build the command that enters it.

        Mounts the image (if any) and the shared filesystems, records the
        start time and returns the handoff. The caller ends its own control
        flow with ``handoff.execute()``.

        Args:
            root_id: Root id
            command: Command to run inside (default: the configured shell)

        Returns:
            ExecHandoff for the isolated command

        Raises:
            RootError: If the isolation tool cannot be executed
        """
        self._require_exists(root_id)
        path = self.root_path(root_id)
        entries = self.shared_mounts()
        if self.config.use_jchroot:
            tool = self.config.tools.jchroot
        else:
            tool = self.config.tools.chroot
        if shutil.which(tool) is None:
            raise RootError(f"Command not found: {tool}")

        was_running = self.is_running(root_id)

        table = self.mount_table()
        image_file = find_image(self.layout, root_id)
        if image_file:
            self.images.mount_image(image_file, path, table)
            table = self.mount_table()

        argv = list(command) if command else [self.config.shell]

        if self.config.use_jchroot:
            run_dir = os.path.join(self.layout.base, "run")
            os.makedirs(run_dir, exist_ok=True)
            fstab = write_terminal_fstab(os.path.join(run_dir, f"{root_id}.fstab"), entries)
            argv = [tool, "-n", root_id, "-f", fstab, path, "--"] + argv
        else:
            mount_shared(path, entries, table)
            argv = [tool, path] + argv

        if not was_running:
            info = self.store.load(root_id)
            info.start_time = time.time()
            self.store.write(root_id, info)

        log.info("Entering %s: %s", root_id, " ".join(argv))
        return ExecHandoff(root_id, argv)

    def stop(self, root_id: str) -> bool:
        """
        Stop a root.

        Kills every process attributed to the root (SIGKILL, no grace
        period), then unmounts the shared filesystems and the image. A
        stopped root is left alone unless force is set, in which case the
        unmounts are still attempted.

        Returns:
            True if the root was running
        """
        self._require_exists(root_id)
        tracker = self.tracker()
        table = self.mount_table()
        running = self.is_running(root_id, tracker, table)

        if not running and not self.config.force:
            return False

        if running:
            pids = tracker.processes(root_id)
            killed = tracker.kill(root_id)
            log.info("Killed %d process(es) of %s", killed, root_id)
            left = tracker.wait(pids, STOP_TIMEOUT)
            if left:
                log.warning("Processes of %s still alive: %s", root_id, sorted(left))

        path = self.root_path(root_id)
        unmount_shared(path, self.shared_mounts(), table)
        self.images.detach_image(path, self.mount_table())

        info = self.store.read(root_id)
        if info is not None and info.start_time is not None:
            info.start_time = None
            self.store.write(root_id, info)

        return running

    def _release_mounts(self, root_id: str) -> None:
        """
        Unmount everything below a stopped root before touching its tree.

        Raises:
            FilesystemError: If mounts remain
        """
        path = self.root_path(root_id)
        self.images.detach_image(path, self.mount_table())

        for entry in reversed(self.mount_table().under(path)):
            if not umount(entry.target):
                log.warning("Could not unmount %s", entry.target)

        remaining = self.mount_table().under(path)
        if remaining:
            raise FilesystemError(
                f"Mounts remain under {path}: "
                + ", ".join(e.target for e in remaining)
            )

    def delete(self, root_id: str) -> None:
        """
        Delete a stopped root: its tree, image files and metadata.

        Raises:
            RootNotFoundError: If the root does not exist
            RootRunningError: If the root is running
        """
        self._require_exists(root_id)
        self._require_stopped(root_id)
        self._release_mounts(root_id)

        path = self.layout.root_path(root_id)
        if os.path.lexists(path):
            shutil.rmtree(path)
        for image_file in image_files(self.layout, root_id):
            os.unlink(image_file)
        self.store.remove(root_id)
        log.info("Deleted root %s", root_id)

    def rename(self, root_id: str, new_id: str) -> None:
        """
        Rename a stopped root, moving its tree and image files.

        Raises:
            RootNotFoundError: If the root does not exist
            RootExistsError: If the new id is taken
            RootRunningError: If the root is running
        """
        self._require_exists(root_id)
        self._require_absent(new_id)
        self._require_stopped(root_id)
        self._release_mounts(root_id)

        sibling = os.path.join(self.layout.roots_path, f"{root_id}.info.json")
        if os.path.exists(sibling):
            os.rename(sibling, os.path.join(self.layout.roots_path, f"{new_id}.info.json"))

        for image_file in image_files(self.layout, root_id):
            fmt = image_format(image_file)
            os.rename(image_file, self.layout.image_path(new_id, fmt))

        path = self.layout.root_path(root_id)
        if os.path.isdir(path):
            os.rename(path, self.layout.root_path(new_id))
        log.info("Renamed root %s to %s", root_id, new_id)

    # =========================================================================
    # Queries
    # =========================================================================

    def status(
        self,
        root_id: str,
        tracker: Optional[ProcessTracker] = None,
        table: Optional[MountTable] = None,
    ) -> RootStatus:
        """Merge a root's metadata with its live state."""
        tracker = tracker or self.tracker()
        info = self.store.load(root_id)
        running = self.is_running(root_id, tracker, table)

        uptime = None
        if running and info.start_time:
            uptime = max(time.time() - info.start_time, 0.0)

        return RootStatus(
            id=root_id,
            path=self.layout.root_path(root_id),
            running=running,
            info=info,
            processes=tracker.count(root_id),
            root_pid=tracker.primary(root_id),
            uptime=uptime,
            size_bytes=self.compute_size(root_id),
            image=find_image(self.layout, root_id),
        )

    def info(self, root_id: str, comment: Optional[str] = None) -> RootStatus:
        """
        Get details of a root, appending a comment first if given.

        Args:
            root_id: Root id
            comment: Comment text (default: the configured comment)
        """
        self._require_exists(root_id)
        comment = comment or self.config.comment
        if comment:
            self.store.append_comment(root_id, comment)
        return self.status(root_id)

    def list(self) -> List[RootStatus]:
        """List all roots with their live state."""
        tracker = self.tracker()
        table = None if self.config.use_jchroot else self.mount_table()
        return [self.status(root_id, tracker, table) for root_id in self.list_ids()]
