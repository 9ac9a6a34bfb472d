"""
In-guest script payloads and guest-side paths.
"""

import base64
import os
from dataclasses import dataclass, field
from typing import Tuple

POWERSHELL = "C:\\Windows\\System32\\WindowsPowerShell\\v1.0\\powershell.exe"
WORKING_DIRECTORY = "C:\\Windows\\Temp"
SIGNAL_FILE = "C:\\Temp\\osupgrader_ready.txt"
SIGNAL_TASK_SCRIPT = "C:\\Temp\\createsignaltasks.ps1"
PROCESS_MONITOR_SCRIPT = "C:\\Temp\\processmonitor.ps1"

UPGRADE_SCRIPT_FILE = "upgradeos.ps1"
CLEANUP_SCRIPT_FILE = "cleanup.ps1"
UPLOADS = (
    ("createsignaltasks.ps1", SIGNAL_TASK_SCRIPT),
    ("processmonitor.ps1", PROCESS_MONITOR_SCRIPT),
)


def encode_powershell(script: str) -> str:
    """Encode a script for ``powershell -EncodedCommand`` (UTF-16LE, base64)."""
    return base64.b64encode(script.encode("utf-16-le")).decode("ascii")


def encoded_command_args(script: str) -> str:
    return (
        "-NoLogo -NonInteractive -ExecutionPolicy Bypass -EncodedCommand "
        + encode_powershell(script)
    )


def file_command_args(guest_path: str) -> str:
    return f"-NoProfile -ExecutionPolicy Bypass -File {guest_path}"


@dataclass(frozen=True)
class ScriptBundle:
    """Scripts run or uploaded during an upgrade. Their content is opaque here."""

    upgrade_script: str
    cleanup_script: str = ""
    uploads: Tuple[Tuple[str, bytes], ...] = field(default_factory=tuple)

    @classmethod
    def from_directory(cls, path: str) -> "ScriptBundle":
        """
        Load scripts from a directory.

        Expects upgradeos.ps1, cleanup.ps1, createsignaltasks.ps1 and
        processmonitor.ps1.

        Raises:
            FileNotFoundError: If a script is missing
        """
        with open(os.path.join(path, UPGRADE_SCRIPT_FILE), encoding="utf-8") as f:
            upgrade = f.read()
        with open(os.path.join(path, CLEANUP_SCRIPT_FILE), encoding="utf-8") as f:
            cleanup = f.read()
        uploads = []
        for local_name, guest_path in UPLOADS:
            with open(os.path.join(path, local_name), "rb") as f:
                uploads.append((guest_path, f.read()))
        return cls(upgrade_script=upgrade, cleanup_script=cleanup, uploads=tuple(uploads))
