#!/usr/bin/env python3
"""
Mini-Chroot entry point.
Allows running as: python3 -m mini_chroot <command>
"""

import sys

from mini_chroot.cli import main

if __name__ == "__main__":
    sys.exit(main())
