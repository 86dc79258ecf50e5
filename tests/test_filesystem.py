"""Tests for mount tables and shared mounts."""

import os

import pytest

from mini_chroot.filesystem import (DEFAULT_FSTAB, FilesystemError, MountEntry,
                                    ensure_fstab, load_fstab, mount,
                                    mount_command, mount_shared,
                                    parse_fstab, parse_mount_table,
                                    read_mount_table, terminal_target,
                                    unmount_shared, write_terminal_fstab)


class TestMountTable:
    """Test parsing of /proc/mounts."""

    def test_parse(self):
        table = parse_mount_table(
            "proc /proc proc rw,nosuid 0 0\n"
            "/dev/nbd0p1 /srv/roots/my\\040root ext4 rw 0 0\n"
            "short line\n"
        )
        assert len(table) == 2
        entry = table.find("/srv/roots/my root")
        assert entry.source == "/dev/nbd0p1"
        assert entry.fstype == "ext4"

    def test_latest_mount_wins(self):
        table = parse_mount_table("a /mnt ext4 rw 0 0\nb /mnt/ xfs rw 0 0\n")
        assert table.find("/mnt").source == "b"

    def test_under(self):
        table = parse_mount_table(
            "proc /r/debian/proc proc rw 0 0\n"
            "devpts /r/debian/dev/pts devpts rw 0 0\n"
            "proc /r/debian2/proc proc rw 0 0\n"
        )
        assert [e.target for e in table.under("/r/debian")] == [
            "/r/debian/proc",
            "/r/debian/dev/pts",
        ]

    def test_read_missing(self, tmp_path):
        with pytest.raises(FilesystemError):
            read_mount_table(str(tmp_path))


class TestFstab:
    """Test the shared mount table."""

    def test_default(self):
        entries = parse_fstab(DEFAULT_FSTAB)
        assert [e.target for e in entries] == ["proc", "sys", "dev", "dev/pts"]
        assert entries[-1].is_terminal

    def test_targets_are_relative(self):
        entries = parse_fstab("tmpfs /tmp tmpfs size=64m\n")
        assert entries == [MountEntry("tmpfs", "tmp", "tmpfs", "size=64m")]

    @pytest.mark.parametrize("line", ["proc proc proc", "x ../etc none bind", "x / none bind"])
    def test_invalid(self, line):
        with pytest.raises(FilesystemError):
            parse_fstab(line)

    def test_missing_file_uses_default(self, tmp_path):
        path = str(tmp_path / "fstab")
        assert load_fstab(path) == parse_fstab(DEFAULT_FSTAB)
        assert not os.path.exists(path)

        ensure_fstab(path)
        assert load_fstab(path) == parse_fstab(DEFAULT_FSTAB)

    def test_custom_terminal_target(self):
        entries = parse_fstab("devpts pts devpts gid=5\n")
        assert terminal_target("/r/debian", entries) == "/r/debian/pts"

    def test_terminal_fallback(self):
        assert terminal_target("/r/debian", []) == "/r/debian/dev/pts"

    def test_write_terminal_fstab(self, tmp_path):
        path = write_terminal_fstab(str(tmp_path / "debian.fstab"), parse_fstab(DEFAULT_FSTAB))
        with open(path) as f:
            assert f.read() == "devpts /dev/pts devpts defaults 0 0\n"


class TestMountCommands:
    def test_mount_command(self):
        assert mount_command(MountEntry("proc", "proc", "proc"), "/r/proc") == [
            "mount", "-t", "proc", "proc", "/r/proc",
        ]
        assert mount_command(MountEntry("/dev", "dev", "none", "bind"), "/r/dev") == [
            "mount", "-o", "bind", "/dev", "/r/dev",
        ]

    def test_mount_failure(self, host):
        host.failing.add("mount")
        with pytest.raises(FilesystemError, match="mount"):
            mount(MountEntry("proc", "proc", "proc"), "/r/proc")


class TestSharedMounts:
    """Test mounting and unmounting the shared filesystems of a root."""

    def test_mount_and_unmount(self, host, base):
        root = os.path.join(base, "debian")
        entries = parse_fstab(DEFAULT_FSTAB)

        mounted = mount_shared(root, entries, read_mount_table(host.proc))
        assert mounted == [os.path.join(root, t) for t in ("proc", "sys", "dev", "dev/pts")]
        assert os.path.isdir(os.path.join(root, "dev", "pts"))
        assert read_mount_table(host.proc).is_mounted(terminal_target(root, entries))

        failed = unmount_shared(root, entries, read_mount_table(host.proc))
        assert failed == []
        assert host.targets() == []
        # Reverse order, forced
        assert host.commands("umount")[0] == ["umount", "-f", os.path.join(root, "dev/pts")]

    def test_mount_is_idempotent(self, host, base):
        root = os.path.join(base, "debian")
        entries = parse_fstab(DEFAULT_FSTAB)
        mount_shared(root, entries, read_mount_table(host.proc))

        assert mount_shared(root, entries, read_mount_table(host.proc)) == []
        assert len(host.commands("mount")) == 4

    def test_unmount_requires_terminal(self, host, base):
        root = os.path.join(base, "debian")
        host.add_mount("proc", os.path.join(root, "proc"), "proc")

        assert unmount_shared(root, parse_fstab(DEFAULT_FSTAB), read_mount_table(host.proc)) == []
        assert host.commands("umount") == []

    def test_unmount_continues_after_failure(self, host, base):
        root = os.path.join(base, "debian")
        entries = parse_fstab(DEFAULT_FSTAB)
        mount_shared(root, entries, read_mount_table(host.proc))
        host.mounts = [m for m in host.mounts if not m[1].endswith("/sys")]

        failed = unmount_shared(root, entries, read_mount_table(host.proc))
        assert failed == [os.path.join(root, "sys")]
        assert len(host.commands("umount")) == 4
