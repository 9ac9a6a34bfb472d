#!/usr/bin/env python3
"""
vSphere VM Fleet OS Upgrade Tool

- Upgrade VMs in place (default)
- List inventory with --list-vms
- Remove pre-upgrade snapshots with --cleanup-snapshots

Runs directly from a source checkout by putting the local `src/` directory
on sys.path. For production use, prefer installing the project and using
the `vm-os-upgrader` console script.
"""

import os
import sys

REPO_ROOT = os.path.dirname(os.path.abspath(__file__))
SRC_PATH = os.path.join(REPO_ROOT, "src")
if SRC_PATH not in sys.path:
    sys.path.insert(0, SRC_PATH)

from cli import main  # noqa: E402

if __name__ == "__main__":
    sys.exit(main())
