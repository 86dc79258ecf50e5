"""
Mini-Chroot Test Suite
======================

This package contains unit tests for the mini-chroot root manager.

Test Categories:
    - test_basic.py: Import tests and basic functionality
    - test_config.py: Configuration merge and overrides
    - test_metadata.py: Metadata documents and atomic writes
    - test_processes.py: Process attribution over a fake /proc
    - test_filesystem.py: Mount tables and shared mounts
    - test_images.py: nbd slot allocation and first-use preparation
    - test_root.py: Root lifecycle
    - test_cli.py: Command line interface

Running Tests:
    pytest tests/ -v

Note:
    External commands (mount, qemu-nbd, ...) are answered by the FakeHost
    fixture in conftest.py, so the suite runs unprivileged. Tests that need
    the real kernel are marked with @pytest.mark.skipif(os.geteuid() != 0).
"""

import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
