"""Console entry point for the VM OS Upgrader CLI."""

from __future__ import annotations

import argparse
import getpass
import logging
import os
from typing import List

from clients import VSphereClient, VSphereError
from config import (
    DEFAULT_POWEROFF_MINUTES,
    DEFAULT_SIGNAL_FILES_MINUTES,
    DEFAULT_SIGNAL_SCRIPT_SECONDS,
    DEFAULT_TARGET_OS,
    DEFAULT_TARGET_OS_MINUTES,
    DEFAULT_TIMEOUT_MINUTES,
    UpgraderConfig,
)
from guest_scripts import ScriptBundle
from log_utils import CLEANUP_LOG, UPGRADE_LOG, register_secret, setup_logging
from snapshots import SnapshotCleaner
from upgrader import FleetUpgrader, resolve_vms
from validators import ValidationError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2

VCENTER_PASSWORD_ENV = "VCENTER_PASSWORD"
GUEST_PASSWORD_ENV = "GUEST_PASSWORD"


def build_parser() -> argparse.ArgumentParser:
    """Build and return the CLI argument parser."""
    parser = argparse.ArgumentParser(
        description=(
            "Unattended in-place OS upgrades for vSphere Windows VMs.\n\n"
            "Mounts an install ISO, runs the upgrade script in each guest, manages\n"
            "the reboot and waits for the target OS, many VMs in parallel."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Passwords are read from the VCENTER_PASSWORD and GUEST_PASSWORD\n"
            "environment variables, or prompted for.\n\n"
            "Examples:\n"
            "  # Preview an upgrade\n"
            "  vm-os-upgrader --vcenter vc01 --user admin@vsphere.local \\\n"
            "      --vms srv001 srv002 --iso '[datastore1] win2022.iso' --dry-run\n\n"
            "  # Remove pre-upgrade snapshots once upgrades are verified\n"
            "  vm-os-upgrader --vcenter vc01 --user admin@vsphere.local \\\n"
            "      --vms srv001 srv002 --cleanup-snapshots"
        ),
    )

    required = parser.add_argument_group("required arguments")
    required.add_argument("--vcenter", required=True, metavar="HOST", help="vCenter host")
    required.add_argument("--user", required=True, help="vCenter user name")

    mode = parser.add_argument_group("operation mode")
    exclusive = mode.add_mutually_exclusive_group()
    exclusive.add_argument(
        "--list-vms", action="store_true", help="List VMs in the inventory and exit"
    )
    exclusive.add_argument(
        "--cleanup-snapshots",
        action="store_true",
        help="Remove snapshots whose names start with --snapshot-prefix",
    )
    mode.add_argument("--dry-run", action="store_true", help="Only show what would be done")

    target = parser.add_argument_group("targets")
    target.add_argument("--vms", nargs="+", metavar="NAME", help="VM names to process")
    target.add_argument(
        "--iso", metavar="PATH", help="Install ISO, e.g. '[datastore1] iso/win2022.iso'"
    )
    target.add_argument(
        "--target-os",
        nargs="+",
        metavar="NAME",
        help=f"Accepted guest OS names after the upgrade (default: {', '.join(DEFAULT_TARGET_OS)})",
    )
    target.add_argument(
        "--guest-user",
        default="Administrator",
        help="Guest OS user; bare names are qualified with the VM's domain",
    )
    target.add_argument(
        "--scripts-dir",
        default="scripts",
        metavar="DIR",
        help="Directory holding upgradeos.ps1, cleanup.ps1 and helper scripts",
    )

    snap = parser.add_argument_group("snapshots")
    snap.add_argument("--no-snapshot", action="store_true", help="Skip the pre-upgrade snapshot")
    snap.add_argument("--snapshot-prefix", default="pre-upgrade", metavar="PREFIX")
    snap.add_argument(
        "--include-memory", action="store_true", help="Include VM memory in the snapshot"
    )

    safety = parser.add_argument_group("safety and control")
    safety.add_argument(
        "--parallel", type=int, default=10, metavar="N", help="Concurrent upgrades (default: 10)"
    )
    safety.add_argument(
        "--precheck-disk-gb",
        type=int,
        default=10,
        metavar="GB",
        help="Required free GB on the system drive, 0 disables (default: 10)",
    )

    timeouts = parser.add_argument_group("timeouts")
    timeouts.add_argument(
        "--timeout-minutes", type=int, default=DEFAULT_TIMEOUT_MINUTES, metavar="MIN",
        help=f"Overall budget per VM (default: {DEFAULT_TIMEOUT_MINUTES})",
    )
    timeouts.add_argument(
        "--signal-script-seconds", type=int, default=DEFAULT_SIGNAL_SCRIPT_SECONDS,
        metavar="SEC",
    )
    timeouts.add_argument(
        "--signal-files-minutes", type=int, default=DEFAULT_SIGNAL_FILES_MINUTES,
        metavar="MIN",
    )
    timeouts.add_argument(
        "--target-os-minutes", type=int, default=DEFAULT_TARGET_OS_MINUTES, metavar="MIN"
    )
    timeouts.add_argument(
        "--poweroff-minutes", type=int, default=DEFAULT_POWEROFF_MINUTES, metavar="MIN"
    )

    conn = parser.add_argument_group("connection")
    conn.add_argument(
        "--insecure", action="store_true", help="Skip TLS certificate verification"
    )
    conn.add_argument("--api-release", default="8.0.1.0", metavar="RELEASE")

    output = parser.add_argument_group("logging and output")
    output.add_argument("--report-dir", default=".", metavar="DIR")
    output.add_argument("--verbose", action="store_true")
    return parser


def read_password(env_var: str, prompt: str) -> str:
    """Password from the environment, or an interactive prompt. Masked in logs."""
    value = os.environ.get(env_var) or getpass.getpass(prompt)
    register_secret(value)
    return value


def _list_vms(client: VSphereClient) -> int:
    vms = client.list_vms()
    logger.info(f"{'VM':<30} {'Power':<12} {'Domain':<30} {'OS'}")
    logger.info("-" * 100)
    for vm in vms:
        logger.info(f"{vm.name:<30} {vm.power_state:<12} {vm.domain:<30} {vm.os}")
    logger.info(f"{len(vms)} VM(s)")
    return EXIT_OK


def _cleanup_snapshots(client: VSphereClient, config: UpgraderConfig) -> int:
    if config.vms:
        vms, unknown = resolve_vms(client, config.vms)
        if unknown:
            raise ValidationError(f"Unknown VM name(s): {', '.join(unknown)}")
    else:
        vms = client.list_vms()

    cleaner = SnapshotCleaner(
        client,
        prefix=config.snapshot_prefix,
        dry_run=config.dry_run,
        max_parallel=config.parallel,
    )
    stats = cleaner.run([vm.to_machine() for vm in vms])
    return EXIT_FAILED if stats.get("failed", 0) > 0 else EXIT_OK


def main(argv: List[str] | None = None) -> int:
    """CLI main for console_scripts entry point."""
    parser = build_parser()
    args = parser.parse_args(args=argv)

    upgrade_mode = not (args.list_vms or args.cleanup_snapshots)
    if upgrade_mode and not (args.vms and args.iso):
        parser.error("--vms and --iso are required to run an upgrade")

    log_file = CLEANUP_LOG if args.cleanup_snapshots else UPGRADE_LOG
    setup_logging(verbose=args.verbose, log_file=log_file)

    config = UpgraderConfig.from_args(args)
    vcenter_password = read_password(
        VCENTER_PASSWORD_ENV, f"vCenter password for {config.vcenter_user}: "
    )

    def connect() -> VSphereClient:
        return VSphereClient(
            host=config.vcenter_host,
            username=config.vcenter_user,
            password=vcenter_password,
            insecure=config.insecure,
            release=config.api_release,
        )

    try:
        scripts = None
        guest_password = ""
        if upgrade_mode:
            scripts = ScriptBundle.from_directory(config.scripts_dir)
            guest_password = read_password(
                GUEST_PASSWORD_ENV, f"Guest password for {config.guest_username}: "
            )

        with connect() as client:
            if args.list_vms:
                return _list_vms(client)
            if args.cleanup_snapshots:
                return _cleanup_snapshots(client, config)

            upgrader = FleetUpgrader(
                config,
                inventory=client,
                guest_password=guest_password,
                scripts=scripts,
                connect=connect,
            )
            stats = upgrader.run()
    except (ValidationError, FileNotFoundError) as e:
        logger.error(f"Validation failed: {e}")
        return EXIT_INVALID
    except VSphereError as e:
        logger.error(f"vCenter error: {e}")
        return EXIT_FAILED
    except KeyboardInterrupt:
        logger.warning("Interrupted by operator")
        return EXIT_FAILED

    if stats.get("interrupted"):
        return EXIT_FAILED
    return EXIT_FAILED if stats.get("failed", 0) > 0 else EXIT_OK
