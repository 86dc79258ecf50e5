#!/usr/bin/env python3
"""
Simple Root Example

This example walks a root through its lifecycle:
1. Create a root populated by a template
2. Enter it with a command (in a child process, since start replaces
   the calling process)
3. Inspect its status and attach a comment
4. Stop, rename and delete it

The template is a small shell script that copies busybox into the tree.

Run with: sudo python3 simple_root.py
"""

import os
import shutil
import sys
import tempfile

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from mini_chroot.config import load_config
from mini_chroot.logger import setup_logging
from mini_chroot.root import RootError, RootManager
from mini_chroot.utils import check_root, format_duration, format_size

BUSYBOX_TEMPLATE = """#!/bin/sh
set -e
tree="$1"
mkdir -p "$tree/bin"
cp "$(command -v busybox)" "$tree/bin/busybox"
for applet in sh echo ls cat hostname; do
    ln -sf busybox "$tree/bin/$applet"
done
"""


def print_header(text: str) -> None:
    """Print a formatted header."""
    print(f"\n{'='*60}")
    print(f"  {text}")
    print(f"{'='*60}\n")


def print_step(text: str) -> None:
    print(f"[+] {text}")


def print_info(text: str) -> None:
    print(f"    {text}")


def install_template(manager: RootManager) -> None:
    """Install the busybox template into the storage directory."""
    path = manager.layout.template_path("busybox")
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w") as f:
        f.write(BUSYBOX_TEMPLATE)
    os.chmod(path, 0o755)


def run_inside(manager: RootManager, root_id: str, command: list) -> int:
    """Enter a root in a child process and wait for it."""
    pid = os.fork()
    if pid == 0:
        try:
            manager.start(root_id, command).execute()
        except BaseException as e:
            print(f"Error: {e}", file=sys.stderr)
        finally:
            os._exit(127)

    _, status = os.waitpid(pid, 0)
    return os.WEXITSTATUS(status) if os.WIFEXITED(status) else -1


def example_lifecycle(manager: RootManager) -> bool:
    """
    Create, enter, inspect and remove a root.
    """
    print_header("Root Lifecycle")

    print_step("Creating root 'demo' from the busybox template...")
    status = manager.create("demo", "busybox")
    print_info(f"Type: {status.info.type}")
    print_info(f"Size: {format_size(status.size_bytes)}")

    print_step("Running a command inside...")
    exit_code = run_inside(manager, "demo", ["/bin/sh", "-c", "echo Hello from $(hostname); ls /"])
    print_step(f"Command exited with code: {exit_code}")

    status = manager.info("demo", "created by simple_root.py")
    print_step(f"Status: {status.status}")
    print_info(f"Uptime: {format_duration(status.uptime)}")
    print_info(f"Comments: {[c.text for c in status.info.comments]}")

    print_step("Stopping...")
    print_info(f"Was running: {manager.stop('demo')}")

    print_step("Renaming to 'demo_old' and deleting...")
    manager.rename("demo", "demo_old")
    manager.delete("demo_old")
    print_info(f"Remaining roots: {manager.list_ids()}")

    return True


def main():
    """Run the example."""
    print_header("mini-chroot Simple Root Example")

    if not check_root():
        print("Error: This example requires root privileges.")
        print("Please run with: sudo python3 simple_root.py")
        return 1

    if not shutil.which("busybox"):
        print("Error: busybox not found on this host")
        return 1

    setup_logging(1)
    storage = tempfile.mkdtemp(prefix="mini-chroot-")
    config = load_config(flags={"paths.root": storage})
    manager = RootManager(config)
    install_template(manager)

    try:
        ok = example_lifecycle(manager)
    except RootError as e:
        print(f"Error: {e}")
        ok = False
    finally:
        for root_id in manager.list_ids():
            manager.stop(root_id)
            manager.delete(root_id)
        shutil.rmtree(storage, ignore_errors=True)

    print_header("Summary")
    print(f"  Root Lifecycle: {'✓ PASSED' if ok else '✗ FAILED'}")
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
