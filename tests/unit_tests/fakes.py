"""
In-memory hypervisor and guest planes for workflow tests.

FakeVM simulates one machine through a full upgrade: the upgrade script
exits, the guest shuts itself down, and powering on boots the target OS and
writes the readiness signal file.
"""

import threading
from typing import Dict, List, Optional

from guest_scripts import SIGNAL_FILE, ScriptBundle
from models import GuestCredentials, GuestProcessInfo, SnapshotEntry, VMInfo

GB = 1024 * 1024 * 1024

SCRIPTS = ScriptBundle(
    upgrade_script="Write-Output 'upgrade'",
    cleanup_script="Remove-Item C:\\Temp\\osupgrader_ready.txt",
    uploads=(
        ("C:\\Temp\\createsignaltasks.ps1", b"# signal tasks"),
        ("C:\\Temp\\processmonitor.ps1", b"# monitor"),
    ),
)


class FakeVM:
    """State of one simulated machine."""

    def __init__(
        self,
        name: str,
        ref: str,
        domain: str = "",
        power_state: str = "poweredOn",
        os_name: str = "Microsoft Windows Server 2016 (64-bit)",
        upgraded_os: str = "Microsoft Windows Server 2022 (64-bit)",
        free_gb: int = 40,
    ):
        self.name = name
        self.ref = ref
        self.domain = domain
        self.power_state = power_state
        self.os_name = os_name
        self.upgraded_os = upgraded_os
        self.tools = "guestToolsRunning"
        self.disks = [{"diskPath": "C:\\", "freeSpace": free_gb * GB, "capacity": 100 * GB}]
        self.snapshots: List[SnapshotEntry] = []
        self.iso: Optional[str] = None
        self.files: Dict[str, bytes] = {}
        self.booted_upgraded = False

        # Behaviour switches
        self.guest_shuts_down = True
        self.write_signal_file = True
        self.keep_old_os = False
        self.upgrade_exit_code = 0
        self.signal_exit_code = 0
        self.signal_script_hangs = False

    def info(self) -> VMInfo:
        return VMInfo(
            name=self.name,
            ref=self.ref,
            os=self.os_name,
            domain=self.domain,
            power_state=self.power_state,
        )


class FakeHypervisor:
    """HypervisorAPI over a dict of FakeVMs. Thread-safe."""

    def __init__(self, vms: List[FakeVM], datastores=("datastore1",)):
        self.vms = {vm.ref: vm for vm in vms}
        self.datastores = list(datastores)
        self.calls: List[tuple] = []
        self.fail: Dict[str, Exception] = {}
        self.drop_created_snapshots = False
        self._lock = threading.Lock()
        self._snap_seq = 0

    def _record(self, method: str, *args) -> None:
        with self._lock:
            self.calls.append((method,) + args)
        if method in self.fail:
            raise self.fail[method]

    def calls_to(self, method: str) -> List[tuple]:
        with self._lock:
            return [c for c in self.calls if c[0] == method]

    def get_properties(self, vm, selectors):
        self._record("get_properties", vm, tuple(selectors))
        m = self.vms[vm]
        values = {
            "runtime.powerState": m.power_state,
            "guest.guestFullName": m.os_name,
            "guest.toolsRunningStatus": m.tools,
            "guest.disk": m.disks,
            "guest.hostName": m.domain,
        }
        return {s: values.get(s) for s in selectors}

    def mount_iso(self, vm, iso_path, cancel=None):
        self._record("mount_iso", vm, iso_path)
        self.vms[vm].iso = iso_path

    def unmount_iso(self, vm, cancel=None):
        self._record("unmount_iso", vm)
        self.vms[vm].iso = None

    def create_snapshot(self, vm, name, description="", memory=False, quiesce=False, cancel=None):
        self._record("create_snapshot", vm, name, memory)
        m = self.vms[vm]
        with self._lock:
            self._snap_seq += 1
            ref = f"snapshot-{self._snap_seq}"
        if not self.drop_created_snapshots:
            m.snapshots.append(SnapshotEntry(vm_name=m.name, name=name, ref=ref))

    def list_snapshots(self, vm, vm_name=""):
        self._record("list_snapshots", vm)
        return list(self.vms[vm].snapshots)

    def remove_snapshot(self, snapshot, cancel=None):
        self._record("remove_snapshot", snapshot)
        for m in self.vms.values():
            m.snapshots = [s for s in m.snapshots if s.ref != snapshot]

    def power_on(self, vm, timeout=None, cancel=None):
        self._record("power_on", vm)
        m = self.vms[vm]
        m.power_state = "poweredOn"
        if not m.keep_old_os:
            m.os_name = m.upgraded_os
        m.booted_upgraded = True
        if m.write_signal_file:
            m.files[SIGNAL_FILE] = b"ready"

    def power_off(self, vm, timeout=None, cancel=None):
        self._record("power_off", vm)
        self.vms[vm].power_state = "poweredOff"

    def list_datastores(self):
        self._record("list_datastores")
        return list(self.datastores)

    def list_vms(self):
        self._record("list_vms")
        return sorted((m.info() for m in self.vms.values()), key=lambda v: v.name)


class FakeGuest:
    """GuestAPI backed by the same FakeVMs as a FakeHypervisor."""

    def __init__(self, hypervisor: FakeHypervisor, password: str = "secret"):
        self.hv = hypervisor
        self.password = password
        self.calls: List[tuple] = []
        self.fail: Dict[str, Exception] = {}
        self._lock = threading.Lock()
        self._next_pid = 1000
        self._procs: Dict[int, dict] = {}

    def _record(self, method: str, *args) -> None:
        with self._lock:
            self.calls.append((method,) + args)
        if method in self.fail:
            raise self.fail[method]

    def calls_to(self, method: str) -> List[tuple]:
        with self._lock:
            return [c for c in self.calls if c[0] == method]

    def validate_credentials(self, vm, creds: GuestCredentials):
        self._record("validate_credentials", vm, creds.username)
        if creds.password != self.password:
            raise PermissionError("InvalidGuestLogin")

    def start_program(self, vm, creds, program_path, arguments="", working_directory=""):
        self._record("start_program", vm, arguments, working_directory)
        m = self.hv.vms[vm]
        with self._lock:
            self._next_pid += 1
            pid = self._next_pid
        if "-File" in arguments:
            kind, code = "signal", m.signal_exit_code
        elif m.booted_upgraded:
            kind, code = "cleanup", 0
        else:
            kind, code = "upgrade", m.upgrade_exit_code
        self._procs[pid] = {"vm": vm, "kind": kind, "exit_code": code}
        return pid

    def list_processes(self, vm, creds, pids):
        self._record("list_processes", vm, tuple(pids))
        out = []
        for pid in pids:
            proc = self._procs.get(pid)
            if proc is None:
                continue
            m = self.hv.vms[proc["vm"]]
            if proc["kind"] == "signal" and m.signal_script_hangs:
                out.append(GuestProcessInfo(pid=pid))
                continue
            if proc["kind"] == "upgrade" and m.guest_shuts_down and proc["exit_code"] == 0:
                m.power_state = "poweredOff"
            out.append(
                GuestProcessInfo(pid=pid, exit_code=proc["exit_code"], end_time="done")
            )
        return out

    def upload_file(self, vm, creds, guest_path, content, overwrite=True):
        self._record("upload_file", vm, guest_path)
        self.hv.vms[vm].files[guest_path] = content

    def file_exists(self, vm, creds, guest_path):
        self._record("file_exists", vm, guest_path)
        return guest_path in self.hv.vms[vm].files


class FakeClient(FakeHypervisor, FakeGuest):
    """One handle implementing both planes, like VSphereClient."""

    def __init__(self, vms: List[FakeVM], password: str = "secret", datastores=("datastore1",)):
        FakeHypervisor.__init__(self, vms, datastores)
        self.hv = self
        self.password = password
        self._next_pid = 1000
        self._procs = {}

    def _record(self, method, *args):
        FakeHypervisor._record(self, method, *args)
