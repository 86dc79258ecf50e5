"""Shared fixtures for the mini-chroot test suite.

Nothing here touches the real host: external commands are answered by
FakeHost, which keeps its own mount table and writes it to a fake
``<proc>/mounts`` just like the kernel would.
"""

import os
import shutil
import subprocess
from dataclasses import replace

import pytest

from mini_chroot import images
from mini_chroot.config import Config, PathsConfig, ToolsConfig


class FakeHost:
    """Answers mount, umount, qemu-img, qemu-nbd, sfdisk, mkfs, modprobe and cp."""

    def __init__(self, base):
        self.proc = os.path.join(base, "proc")
        self.dev = os.path.join(base, "dev")
        self.sys_block = os.path.join(base, "sys", "block")
        for path in (self.proc, self.dev, self.sys_block):
            os.makedirs(path)

        self.mounts = []
        self.calls = []
        self.failing = set()
        self.scripts = {}
        self.write_mounts()

    # -- mount table ---------------------------------------------------------

    def write_mounts(self):
        with open(os.path.join(self.proc, "mounts"), "w") as f:
            f.write("sysfs /sys sysfs rw 0 0\n")
            for source, target, fstype in self.mounts:
                escaped = target.replace(" ", "\\040")
                f.write(f"{source} {escaped} {fstype} rw 0 0\n")

    def add_mount(self, source, target, fstype="none"):
        self.mounts.append((source, os.path.normpath(target), fstype))
        self.write_mounts()

    def targets(self):
        return [target for _, target, _ in self.mounts]

    # -- processes -----------------------------------------------------------

    def add_process(self, pid, ppid, exe=None, state="S", name="sh"):
        """Create /proc/<pid>/stat (and the exe link) for a fake process."""
        pid_dir = os.path.join(self.proc, str(pid))
        os.makedirs(pid_dir)
        with open(os.path.join(pid_dir, "stat"), "w") as f:
            f.write(f"{pid} ({name}) {state} {ppid} {pid} {pid} 0 -1 4194560\n")
        if exe:
            os.symlink(exe, os.path.join(pid_dir, "exe"))

    # -- commands ------------------------------------------------------------

    def commands(self, name):
        return [cmd for cmd in self.calls if os.path.basename(cmd[0]) == name]

    def __call__(self, args, check=False, input=None, capture=True):
        cmd = [str(a) for a in args]
        self.calls.append(cmd)
        name = os.path.basename(cmd[0])

        if name in self.failing:
            return subprocess.CompletedProcess(cmd, 1, "", f"{name}: failed")

        handler = self.scripts.get(name) or getattr(
            self, "_" + name.replace("-", "_"), None
        )
        returncode = 0
        if handler is not None:
            returncode = handler(cmd, input) or 0
        return subprocess.CompletedProcess(cmd, returncode, "", "")

    def _mount(self, cmd, input):
        fstype = cmd[cmd.index("-t") + 1] if "-t" in cmd else "none"
        self.add_mount(cmd[-2], cmd[-1], fstype)

    def _umount(self, cmd, input):
        target = os.path.normpath(cmd[-1])
        for i in range(len(self.mounts) - 1, -1, -1):
            if self.mounts[i][1] == target:
                del self.mounts[i]
                self.write_mounts()
                return 0
        return 32

    def _qemu_img(self, cmd, input):
        # qemu-img create -f <fmt> <path> <size>
        open(cmd[4], "w").close()

    def _qemu_nbd(self, cmd, input):
        device = os.path.basename(cmd[2])
        slot_dir = os.path.join(self.sys_block, device)
        if cmd[1] == "-c":
            os.makedirs(slot_dir, exist_ok=True)
            with open(os.path.join(slot_dir, "pid"), "w") as f:
                f.write("4242\n")
        elif cmd[1] == "-d":
            pid_file = os.path.join(slot_dir, "pid")
            if os.path.exists(pid_file):
                os.unlink(pid_file)

    def _sfdisk(self, cmd, input):
        assert input == ",,L\n"
        open(cmd[1] + "p1", "w").close()

    def _mkfs(self, cmd, input):
        pass

    def _modprobe(self, cmd, input):
        os.makedirs(os.path.join(self.sys_block, "nbd0"), exist_ok=True)

    def _cp(self, cmd, input):
        # cp -a <src>/. <dst>/
        src = cmd[2][: -len("/.")]
        shutil.copytree(src, cmd[3].rstrip("/"), symlinks=True, dirs_exist_ok=True)


@pytest.fixture
def base(tmp_path):
    """Resolved temporary directory."""
    return os.path.realpath(str(tmp_path))


@pytest.fixture
def host(base, monkeypatch):
    """Fake host commands patched into every module that runs them."""
    fake = FakeHost(os.path.join(base, "host"))
    for module in ("mini_chroot.filesystem", "mini_chroot.images", "mini_chroot.root"):
        monkeypatch.setattr(f"{module}.run_command", fake)
    monkeypatch.setattr(images, "PARTITION_SETTLE", 0)
    monkeypatch.setattr(images, "POLL_INTERVAL", 0.001)
    return fake


@pytest.fixture
def config(base, host):
    """Config pointing every path at the fake host."""
    paths = PathsConfig(
        root=os.path.join(base, "storage"),
        proc=host.proc,
        dev=host.dev,
        sys_block=host.sys_block,
    )
    tools = ToolsConfig(chroot=make_executable(os.path.join(base, "bin", "chroot")))
    return replace(Config(), paths=paths, tools=tools)


@pytest.fixture
def manager(config):
    from mini_chroot.root import RootManager

    return RootManager(config)


def make_executable(path, content="#!/bin/sh\nexit 0\n"):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w") as f:
        f.write(content)
    os.chmod(path, 0o755)
    return path
