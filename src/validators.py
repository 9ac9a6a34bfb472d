"""
Pre-flight checks and guest facts used before and during an upgrade.
"""

from typing import Iterable, Optional, Tuple

from clients import HypervisorAPI

POWERED_ON = "poweredOn"
TOOLS_RUNNING = "guestToolsRunning"
BYTES_PER_GB = 1024 * 1024 * 1024


class ValidationError(ValueError):
    """Input that cannot be used for an upgrade run."""


def parse_iso_path(iso_path: str) -> Tuple[str, str]:
    """
    Split a ``[datastore] path/file.iso`` reference.

    Returns:
        Tuple of (datastore_name, file_path)

    Raises:
        ValidationError: If the reference is malformed
    """
    iso_path = iso_path.strip()
    if not iso_path.startswith("[") or "]" not in iso_path:
        raise ValidationError(
            f"invalid ISO path format (expects [datastore] path/file.iso): {iso_path}"
        )

    ds_part, file_part = iso_path.split("]", 1)
    ds_name = ds_part.lstrip("[").strip()
    file_path = file_part.strip().lstrip("/")

    if not ds_name or not file_path:
        raise ValidationError(f"datastore name or file path is empty: {iso_path}")
    if not file_path.lower().endswith(".iso"):
        raise ValidationError(f"file path must end with .iso: {file_path}")
    return ds_name, file_path


def validate_iso_path(iso_path: str, datastores: Iterable[str]) -> Tuple[str, str]:
    """
    Check ISO reference format and that its datastore is known.

    The ISO file itself is only checked when the mount phase runs.
    """
    ds_name, file_path = parse_iso_path(iso_path)
    known = list(datastores)
    if ds_name.lower() not in {d.lower() for d in known}:
        raise ValidationError(
            f"datastore '{ds_name}' not found. Available: {', '.join(known) or 'none'}"
        )
    return ds_name, file_path


def check_upgrade_in_progress(
    hypervisor: HypervisorAPI, vm: str
) -> Tuple[bool, str]:
    """
    Decide whether a machine looks like it is mid-upgrade.

    A machine that is not powered on is rebooting or already being handled,
    so it must not be upgraded again.

    Returns:
        Tuple of (in_progress, power_state)
    """
    props = hypervisor.get_properties(vm, ["runtime.powerState"])
    state = props.get("runtime.powerState") or "unknown"
    return state != POWERED_ON, state


def get_system_drive(hypervisor: HypervisorAPI, vm: str) -> str:
    """Find the guest system volume, normally C:\\."""
    disks = hypervisor.get_properties(vm, ["guest.disk"]).get("guest.disk")
    if not disks:
        raise ValidationError("no guest disk info (VMware Tools?)")

    for disk in disks:
        if str(disk.get("diskPath", "")).lower().startswith("c:"):
            return "C:\\"

    first = str(disks[0].get("diskPath", ""))
    if ":" in first:
        return first.split(":", 1)[0] + ":\\"
    return "C:\\"


def get_disk_free_gb(hypervisor: HypervisorAPI, vm: str, drive: str) -> int:
    """Free space on a guest drive in whole GB."""
    disks = hypervisor.get_properties(vm, ["guest.disk"]).get("guest.disk")
    if not disks:
        raise ValidationError("no guest disk info (VMware Tools?)")
    for disk in disks:
        if str(disk.get("diskPath", "")).lower() == drive.lower():
            return int(disk.get("freeSpace", 0)) // BYTES_PER_GB
    raise ValidationError(f"drive {drive} not found")


def resolve_guest_username(username: str, fqdn: Optional[str]) -> str:
    """
    Qualify a bare guest username with the machine's domain.

    ``Administrator`` on ``srv01.corp.example`` becomes
    ``Administrator@corp.example``. Names already containing ``\\`` or ``@``
    are returned unchanged.
    """
    if "\\" in username or "@" in username or not fqdn:
        return username
    domain = fqdn.split(".", 1)[1] if "." in fqdn else fqdn
    return f"{username}@{domain}"
