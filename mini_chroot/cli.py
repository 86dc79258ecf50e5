#!/usr/bin/env python3
"""
Command Line Interface for mini-chroot.

Provides commands:
    mini-chroot list                        - List roots
    mini-chroot info <root>                 - Show details of a root
    mini-chroot create <root> [args]        - Create a root from a template
    mini-chroot clone <source> <root>       - Clone a stopped root
    mini-chroot delete <root>...            - Delete stopped roots
    mini-chroot start <root> [command]      - Enter a root
    mini-chroot stop <root>...              - Stop roots
    mini-chroot rename <root> <new>         - Rename a stopped root
    mini-chroot templates                   - List templates
    mini-chroot config                      - Show effective configuration
    mini-chroot version                     - Version information

Global options may be given before or after the command.
"""

import argparse
import json
import platform
import sys
from enum import Enum
from typing import Callable, Dict, List, Optional

from mini_chroot import __version__
from mini_chroot.config import Config, ConfigError, describe, load_config, parse_assignments
from mini_chroot.filesystem import FilesystemError
from mini_chroot.images import ImageError
from mini_chroot.logger import setup_logging
from mini_chroot.processes import ProcessTableError
from mini_chroot.root import (PrivilegeError, RootError, RootManager,
                              RootRunningError, RootStatus)
from mini_chroot.utils import (check_root, format_duration, format_size,
                               format_time)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INTERRUPTED = 130

ERRORS = (RootError, FilesystemError, ImageError, ProcessTableError, OSError)


class Command(Enum):
    """Commands understood by the CLI."""

    LIST = "list"
    INFO = "info"
    CREATE = "create"
    CLONE = "clone"
    DELETE = "delete"
    START = "start"
    STOP = "stop"
    RENAME = "rename"
    TEMPLATES = "templates"
    CONFIG = "config"
    VERSION = "version"


ALIASES: Dict[str, Command] = {
    "ls": Command.LIST,
    "ps": Command.LIST,
    "show": Command.INFO,
    "inspect": Command.INFO,
    "new": Command.CREATE,
    "mk": Command.CREATE,
    "cp": Command.CLONE,
    "rm": Command.DELETE,
    "remove": Command.DELETE,
    "enter": Command.START,
    "run": Command.START,
    "kill": Command.STOP,
    "mv": Command.RENAME,
}

# Commands that change roots or mounts
PRIVILEGED = {
    Command.CREATE,
    Command.CLONE,
    Command.DELETE,
    Command.START,
    Command.STOP,
    Command.RENAME,
}


def resolve_command(name: str) -> Command:
    """
    Resolve a command name or alias.

    Raises:
        ValueError: If the name is unknown
    """
    if name in ALIASES:
        return ALIASES[name]
    return Command(name)


def aliases_of(command: Command) -> List[str]:
    return [alias for alias, target in ALIASES.items() if target is command]


def common_options() -> argparse.ArgumentParser:
    """Options accepted both before and after the command."""
    common = argparse.ArgumentParser(add_help=False, argument_default=argparse.SUPPRESS)
    common.add_argument("--config", "-c", help="Config file (JSON)")
    common.add_argument(
        "--set",
        dest="overrides",
        action="append",
        metavar="KEY=VALUE",
        help="Override a configuration key (e.g. image.format=raw)",
    )
    common.add_argument("--root", "-r", dest="storage", help="Storage directory")
    common.add_argument("--verbose", "-v", action="count", help="More output (repeatable)")
    common.add_argument("--force", "-f", action="store_true", help="Force the operation")
    common.add_argument("--long", "-l", action="store_true", help="Long listing")
    common.add_argument(
        "--jchroot", "-j", action="store_true", help="Use jchroot isolation"
    )
    common.add_argument(
        "--image", "-i", action="store_true", help="Back new roots with a disk image"
    )
    common.add_argument("--comment", "-m", help="Append a comment to the root")
    common.add_argument("--debug", action="store_true", help="Show tracebacks")
    return common


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser with all commands and options."""
    common = common_options()
    parser = argparse.ArgumentParser(
        prog="mini-chroot",
        description="mini-chroot: manage chroot environments and their images",
        parents=[common],
    )
    parser.add_argument(
        "--version", action="version", version=f"mini-chroot {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    def add(command: Command, help_text: str) -> argparse.ArgumentParser:
        return subparsers.add_parser(
            command.value,
            aliases=aliases_of(command),
            help=help_text,
            parents=[common],
        )

    # =========================================================================
    # list command
    # =========================================================================
    list_parser = add(Command.LIST, "List roots")
    list_parser.add_argument(
        "--quiet", "-q", action="store_true", help="Only display root ids"
    )
    list_parser.add_argument(
        "--format", choices=["table", "json"], default="table", help="Output format"
    )

    # =========================================================================
    # info command
    # =========================================================================
    info_parser = add(Command.INFO, "Show details of a root")
    info_parser.add_argument("roots", nargs="+", help="Root id(s)")
    info_parser.add_argument(
        "--format", choices=["text", "json"], default="text", help="Output format"
    )

    # =========================================================================
    # create command
    # =========================================================================
    create_parser_ = add(Command.CREATE, "Create a root")
    create_parser_.add_argument("root", help="Root id")
    create_parser_.add_argument(
        "--type", "-t", dest="root_type", help="Template name or clone:<root>"
    )
    # Anything the parser does not recognize is handed to the template;
    # arguments that look like mini-chroot options go after "--"
    create_parser_.set_defaults(template_args=[])

    # =========================================================================
    # clone command
    # =========================================================================
    clone_parser = add(Command.CLONE, "Clone a stopped root")
    clone_parser.add_argument("source", help="Root to clone")
    clone_parser.add_argument("root", help="New root id")

    # =========================================================================
    # delete command
    # =========================================================================
    delete_parser = add(Command.DELETE, "Delete stopped roots")
    delete_parser.add_argument("roots", nargs="+", help="Root id(s)")

    # =========================================================================
    # start command
    # =========================================================================
    start_parser = add(Command.START, "Enter a root")
    start_parser.add_argument("root", help="Root id")
    start_parser.add_argument(
        "cmd", nargs=argparse.REMAINDER, help="Command to run (default: shell)"
    )

    # =========================================================================
    # stop command
    # =========================================================================
    stop_parser = add(Command.STOP, "Stop roots")
    stop_parser.add_argument("roots", nargs="+", help="Root id(s)")

    # =========================================================================
    # rename command
    # =========================================================================
    rename_parser = add(Command.RENAME, "Rename a stopped root")
    rename_parser.add_argument("root", help="Root id")
    rename_parser.add_argument("new_root", help="New root id")

    add(Command.TEMPLATES, "List templates")
    add(Command.CONFIG, "Show effective configuration")

    version_parser = add(Command.VERSION, "Show version information")
    version_parser.add_argument(
        "--format", choices=["text", "json"], default="text", help="Output format"
    )

    return parser


def parse_args(
    parser: argparse.ArgumentParser, argv: Optional[List[str]] = None
) -> argparse.Namespace:
    """
    Parse the command line.

    Only create takes unrecognized arguments: they become the template
    arguments, in order, without the first "--" separator.
    """
    args, extra = parser.parse_known_args(argv)
    if extra:
        if not args.command or resolve_command(args.command) is not Command.CREATE:
            parser.error(f"unrecognized arguments: {' '.join(extra)}")
        if "--" in extra:
            extra.remove("--")
        args.template_args = extra
    return args


def build_config(args: argparse.Namespace) -> Config:
    """Build the configuration from the parsed command line."""
    flags = {}
    if hasattr(args, "storage"):
        flags["paths.root"] = args.storage
    if hasattr(args, "verbose"):
        flags["verbose"] = args.verbose
    for name in ("force", "long", "jchroot", "comment"):
        if hasattr(args, name):
            flags[name] = getattr(args, name)
    if hasattr(args, "image"):
        flags["image.enabled"] = args.image

    overrides = parse_assignments(getattr(args, "overrides", []))
    return load_config(getattr(args, "config", None), overrides, flags)


# =============================================================================
# Command Handlers
# =============================================================================


def print_table(statuses: List[RootStatus], long: bool) -> None:
    if long:
        print(
            f"{'ROOT':<20} {'STATUS':<8} {'PROCS':>5} {'SIZE':>8} "
            f"{'UPTIME':<8} {'CREATED':<16} {'TYPE'}"
        )
    else:
        print(f"{'ROOT':<20} {'STATUS':<8} {'TYPE'}")

    for s in statuses:
        if long:
            print(
                f"{s.id:<20} {s.status:<8} {s.processes:>5} "
                f"{format_size(s.size_bytes):>8} {format_duration(s.uptime):<8} "
                f"{format_time(s.info.creation_time):<16} {s.info.type}"
            )
        else:
            print(f"{s.id:<20} {s.status:<8} {s.info.type}")


def print_status(s: RootStatus) -> None:
    fields = [
        ("Root", s.id),
        ("Path", s.path),
        ("Status", s.status),
        ("Type", s.info.type),
        ("Backing store", s.backing_store if not s.image else f"image ({s.image})"),
        ("Created", format_time(s.info.creation_time)),
        ("Size", format_size(s.size_bytes)),
    ]
    if s.running:
        fields += [
            ("Started", format_time(s.info.start_time)),
            ("Uptime", format_duration(s.uptime)),
            ("Processes", str(s.processes)),
            ("Root PID", str(s.root_pid) if s.root_pid else "-"),
        ]
    for key, value in fields:
        print(f"{key + ':':<16} {value}")
    if s.info.comments:
        print("Comments:")
        for c in s.info.comments:
            print(f"  [{format_time(c.time)}] {c.text}")


def cmd_list(manager: RootManager, args: argparse.Namespace) -> int:
    """Handle list command."""
    statuses = manager.list()

    if getattr(args, "quiet", False):
        for s in statuses:
            print(s.id)
    elif getattr(args, "format", "table") == "json":
        print(json.dumps([s.to_dict() for s in statuses], indent=2))
    else:
        print_table(statuses, manager.config.long)
    return EXIT_OK


def cmd_info(manager: RootManager, args: argparse.Namespace) -> int:
    """Handle info command."""
    exit_code = EXIT_OK
    results = []

    for root_id in args.roots:
        try:
            results.append(manager.info(root_id))
        except ERRORS as e:
            print(f"Error reading {root_id}: {e}", file=sys.stderr)
            exit_code = EXIT_ERROR

    if args.format == "json":
        print(json.dumps([s.to_dict() for s in results], indent=2))
    else:
        for i, s in enumerate(results):
            if i:
                print()
            print_status(s)
    return exit_code


def cmd_create(manager: RootManager, args: argparse.Namespace) -> int:
    """Handle create command."""
    status = manager.create(args.root, args.root_type, args.template_args)
    print(f"Created root: {status.id} ({status.info.type}, {format_size(status.size_bytes)})")
    return EXIT_OK


def cmd_clone(manager: RootManager, args: argparse.Namespace) -> int:
    """Handle clone command."""
    status = manager.clone(args.source, args.root)
    print(f"Cloned {args.source} to {status.id}")
    return EXIT_OK


def cmd_delete(manager: RootManager, args: argparse.Namespace) -> int:
    """Handle delete command."""
    exit_code = EXIT_OK

    for root_id in args.roots:
        try:
            manager.delete(root_id)
            print(f"Deleted: {root_id}")
        except RootRunningError as e:
            print(f"Error: {e} (stop it first)", file=sys.stderr)
            exit_code = EXIT_ERROR
        except ERRORS as e:
            print(f"Error deleting {root_id}: {e}", file=sys.stderr)
            exit_code = EXIT_ERROR

    return exit_code


def cmd_start(manager: RootManager, args: argparse.Namespace) -> int:
    """Handle start command. Does not return on success."""
    command = list(args.cmd)
    if command[:1] == ["--"]:
        command = command[1:]

    handoff = manager.start(args.root, command or None)
    handoff.execute()


def cmd_stop(manager: RootManager, args: argparse.Namespace) -> int:
    """Handle stop command."""
    exit_code = EXIT_OK

    for root_id in args.roots:
        try:
            if manager.stop(root_id):
                print(f"Stopped: {root_id}")
            else:
                print(f"Not running: {root_id}")
        except ERRORS as e:
            print(f"Error stopping {root_id}: {e}", file=sys.stderr)
            exit_code = EXIT_ERROR

    return exit_code


def cmd_rename(manager: RootManager, args: argparse.Namespace) -> int:
    """Handle rename command."""
    manager.rename(args.root, args.new_root)
    print(f"Renamed {args.root} to {args.new_root}")
    return EXIT_OK


def cmd_templates(manager: RootManager, args: argparse.Namespace) -> int:
    """Handle templates command."""
    for name in manager.templates():
        print(name)
    return EXIT_OK


def cmd_config(manager: RootManager, args: argparse.Namespace) -> int:
    """Handle config command."""
    for key, value in describe(manager.config):
        print(f"{key} = {value}")
    return EXIT_OK


def cmd_version(manager: RootManager, args: argparse.Namespace) -> int:
    """Handle version command."""
    version_info = {
        "mini-chroot": __version__,
        "Python": platform.python_version(),
        "Kernel": platform.release(),
        "OS": platform.system(),
        "Architecture": platform.machine(),
    }

    if args.format == "json":
        print(json.dumps(version_info, indent=2))
    else:
        print(f"mini-chroot version {__version__}")
        print(f"Python version {platform.python_version()}")
        print(f"Kernel {platform.release()}")
        print(f"OS/Arch: {platform.system()}/{platform.machine()}")
    return EXIT_OK


HANDLERS: Dict[Command, Callable[[RootManager, argparse.Namespace], int]] = {
    Command.LIST: cmd_list,
    Command.INFO: cmd_info,
    Command.CREATE: cmd_create,
    Command.CLONE: cmd_clone,
    Command.DELETE: cmd_delete,
    Command.START: cmd_start,
    Command.STOP: cmd_stop,
    Command.RENAME: cmd_rename,
    Command.TEMPLATES: cmd_templates,
    Command.CONFIG: cmd_config,
    Command.VERSION: cmd_version,
}


def needs_privilege(command: Command, config: Config) -> bool:
    """Whether a command must run as root."""
    if command is Command.INFO:
        return bool(config.comment)
    return command in PRIVILEGED


# =============================================================================
# Main Entry Point
# =============================================================================


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parse_args(parser, argv)

    if not args.command:
        parser.print_help()
        return EXIT_OK

    command = resolve_command(args.command)

    try:
        config = build_config(args)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR

    setup_logging(config.verbose)

    try:
        if needs_privilege(command, config) and not check_root():
            raise PrivilegeError(f"'{command.value}' requires root privileges")
        return HANDLERS[command](RootManager(config), args)
    except KeyboardInterrupt:
        print("\nInterrupted")
        return EXIT_INTERRUPTED
    except ERRORS as e:
        if getattr(args, "debug", False):
            raise
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
