"""Tests for the command line interface."""

import json
import logging
import os

import pytest

from mini_chroot import __version__
from mini_chroot.cli import (ALIASES, Command, create_parser, main,
                             parse_args, resolve_command)
from mini_chroot.filesystem import FilesystemError
from mini_chroot.logger import LOGGER_NAME
from mini_chroot.root import RootManager


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def cli(config, base, monkeypatch):
    """Point the CLI at the fake host through a config file."""
    path = os.path.join(base, "config.json")
    with open(path, "w") as f:
        json.dump(config.to_dict(), f)
    monkeypatch.setenv("MINI_CHROOT_CONFIG", path)
    return main


@pytest.fixture
def as_root(monkeypatch):
    monkeypatch.setattr("mini_chroot.cli.check_root", lambda: True)


@pytest.fixture
def as_user(monkeypatch):
    monkeypatch.setattr("mini_chroot.cli.check_root", lambda: False)


class TestParser:
    """Test argument parsing and command resolution."""

    def test_aliases_resolve(self):
        assert resolve_command("ls") is Command.LIST
        assert resolve_command("ps") is Command.LIST
        assert resolve_command("rm") is Command.DELETE
        assert resolve_command("enter") is Command.START
        assert resolve_command("stop") is Command.STOP

    def test_unknown_command(self):
        with pytest.raises(ValueError):
            resolve_command("explode")

    @pytest.mark.parametrize("alias", sorted(ALIASES))
    def test_parser_accepts_alias(self, alias):
        parser = create_parser()
        extra = {
            Command.INFO: ["x"], Command.CREATE: ["x"], Command.CLONE: ["x", "y"],
            Command.DELETE: ["x"], Command.START: ["x"], Command.STOP: ["x"],
            Command.RENAME: ["x", "y"],
        }.get(ALIASES[alias], [])
        args = parser.parse_args([alias] + extra)
        assert resolve_command(args.command) is ALIASES[alias]

    def test_options_before_and_after_command(self):
        parser = create_parser()
        before = parser.parse_args(["-f", "stop", "x"])
        after = parser.parse_args(["stop", "-f", "x"])
        assert before.force and after.force

    def test_unset_options_are_absent(self):
        args = create_parser().parse_args(["list"])
        assert not hasattr(args, "force")
        assert not hasattr(args, "storage")

    def test_create_template_args(self):
        args = parse_args(create_parser(), ["create", "-t", "debootstrap", "debian", "bookworm", "--variant=minbase"])
        assert args.root_type == "debootstrap"
        assert args.root == "debian"
        assert args.template_args == ["bookworm", "--variant=minbase"]

    def test_create_options_after_root(self):
        args = parse_args(create_parser(), ["create", "debian", "-t", "debootstrap", "bookworm", "-f"])
        assert args.root == "debian"
        assert args.root_type == "debootstrap"
        assert args.force
        assert args.template_args == ["bookworm"]

    def test_create_separator(self):
        args = parse_args(create_parser(), ["create", "debian", "-t", "debootstrap", "--", "-v", "bookworm"])
        assert args.root_type == "debootstrap"
        assert not hasattr(args, "verbose")
        assert args.template_args == ["-v", "bookworm"]

    def test_create_without_args(self):
        assert parse_args(create_parser(), ["create", "debian"]).template_args == []

    def test_unknown_arguments_rejected(self):
        with pytest.raises(SystemExit):
            parse_args(create_parser(), ["stop", "debian", "--bogus"])

    def test_start_command(self):
        args = create_parser().parse_args(["start", "debian", "ls", "-la"])
        assert args.cmd == ["ls", "-la"]


class TestCommands:
    """Test commands end to end against the fake host."""

    def test_no_command(self, cli, capsys):
        assert cli([]) == 0
        assert "usage" in capsys.readouterr().out

    def test_version(self, cli, capsys):
        assert cli(["version", "--format", "json"]) == 0
        assert json.loads(capsys.readouterr().out)["mini-chroot"] == __version__

    def test_create_and_list(self, cli, as_root, capsys):
        assert cli(["create", "debian"]) == 0
        assert "Created root: debian" in capsys.readouterr().out

        assert cli(["list"]) == 0
        out = capsys.readouterr().out
        assert "ROOT" in out
        assert "debian" in out
        assert "stopped" in out

    def test_list_long(self, cli, as_root, capsys):
        cli(["create", "debian"])
        capsys.readouterr()
        assert cli(["ls", "-l"]) == 0
        assert "PROCS" in capsys.readouterr().out

    def test_list_json(self, cli, as_root, capsys):
        cli(["create", "debian"])
        capsys.readouterr()
        assert cli(["list", "--format", "json"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert [d["id"] for d in data] == ["debian"]
        assert data[0]["status"] == "stopped"

    def test_list_quiet(self, cli, as_root, capsys):
        cli(["create", "b"])
        cli(["create", "a"])
        capsys.readouterr()
        cli(["list", "-q"])
        assert capsys.readouterr().out.split() == ["a", "b"]

    def test_list_unprivileged(self, cli, as_user, capsys):
        assert cli(["list"]) == 0

    def test_mutation_requires_root(self, cli, as_user, capsys):
        assert cli(["create", "debian"]) == 1
        assert "requires root" in capsys.readouterr().err

    def test_info(self, cli, as_root, capsys):
        cli(["create", "debian"])
        capsys.readouterr()
        assert cli(["info", "debian"]) == 0
        out = capsys.readouterr().out
        assert "Status:" in out
        assert "directory" in out

    def test_info_comment(self, cli, as_root, capsys):
        cli(["create", "debian"])
        assert cli(["info", "debian", "-m", "first note"]) == 0
        capsys.readouterr()
        assert cli(["info", "debian", "--format", "json"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert [c["text"] for c in data[0]["comments"]] == ["first note"]

    def test_info_comment_requires_root(self, cli, as_user, capsys):
        assert cli(["info", "debian", "-m", "note"]) == 1

    def test_info_missing(self, cli, capsys):
        assert cli(["info", "nope"]) == 1
        assert "Root not found" in capsys.readouterr().err

    def test_info_continues_after_error(self, cli, as_root, capsys, monkeypatch):
        cli(["create", "a"])
        cli(["create", "b"])
        capsys.readouterr()
        original = RootManager.info

        def info(self, root_id, comment=None):
            if root_id == "a":
                raise FilesystemError("mount table unreadable")
            return original(self, root_id, comment)

        monkeypatch.setattr(RootManager, "info", info)
        assert cli(["info", "a", "b", "--format", "json"]) == 1
        captured = capsys.readouterr()
        assert "Error reading a: mount table unreadable" in captured.err
        assert [d["id"] for d in json.loads(captured.out)] == ["b"]

    def test_create_from_template_with_options_after_root(self, cli, as_root, config, host):
        from tests.conftest import make_executable

        make_executable(config.layout.template_path("debootstrap"))
        assert cli(["create", "debian", "-t", "debootstrap", "bookworm"]) == 0

        path = RootManager(config).root_path("debian")
        assert host.commands("debootstrap")[0][1:] == [path, "bookworm"]
        assert RootManager(config).store.load("debian").type == "debootstrap"

    def test_delete_continues_after_error(self, cli, as_root, capsys):
        cli(["create", "debian"])
        assert cli(["delete", "nope", "debian"]) == 1
        captured = capsys.readouterr()
        assert "Deleted: debian" in captured.out
        assert "nope" in captured.err

    def test_delete_running(self, cli, as_root, capsys, monkeypatch):
        monkeypatch.setattr(os, "execvp", lambda file, args: None)
        cli(["create", "debian"])
        cli(["start", "debian"])
        assert cli(["rm", "debian"]) == 1
        assert "stop it first" in capsys.readouterr().err

    def test_start_executes(self, cli, as_root, config, monkeypatch):
        calls = []
        monkeypatch.setattr(os, "execvp", lambda file, args: calls.append(args))
        cli(["create", "debian"])
        cli(["start", "debian", "--", "echo", "hi"])

        path = RootManager(config).root_path("debian")
        assert calls == [[config.tools.chroot, path, "echo", "hi"]]

    def test_stop(self, cli, as_root, capsys, monkeypatch):
        monkeypatch.setattr(os, "execvp", lambda file, args: None)
        cli(["create", "debian"])
        cli(["start", "debian"])
        capsys.readouterr()

        assert cli(["stop", "debian"]) == 0
        assert "Stopped: debian" in capsys.readouterr().out
        assert cli(["kill", "debian"]) == 0
        assert "Not running: debian" in capsys.readouterr().out

    def test_rename_and_clone(self, cli, as_root, capsys):
        cli(["create", "debian"])
        assert cli(["mv", "debian", "bookworm"]) == 0
        assert cli(["cp", "bookworm", "copy"]) == 0
        capsys.readouterr()
        cli(["list", "-q"])
        assert capsys.readouterr().out.split() == ["bookworm", "copy"]

    def test_templates(self, cli, config, capsys):
        from tests.conftest import make_executable

        make_executable(config.layout.template_path("busybox"))
        assert cli(["templates"]) == 0
        assert capsys.readouterr().out.split() == ["busybox"]

    def test_config(self, cli, capsys):
        assert cli(["config", "--set", "image.format=raw"]) == 0
        out = capsys.readouterr().out
        assert "image.format = raw" in out
        assert "paths.proc = " in out

    def test_bad_override(self, cli, capsys):
        assert cli(["--set", "image.colour=red", "config"]) == 1
        assert "Unknown configuration key" in capsys.readouterr().err

    def test_storage_option(self, cli, base, capsys):
        storage = os.path.join(base, "elsewhere")
        assert cli(["config", "--root", storage]) == 0
        assert f"paths.root = {storage}" in capsys.readouterr().out

    def test_interrupted(self, cli, monkeypatch):
        def interrupt(self):
            raise KeyboardInterrupt

        monkeypatch.setattr(RootManager, "list", interrupt)
        assert cli(["list"]) == 130
