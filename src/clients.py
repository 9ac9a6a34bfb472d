"""
vSphere client for the hypervisor control plane and guest operations (VI/JSON API).
"""

import logging
import time
from typing import Any, Dict, Iterable, List, Optional, Protocol

import requests

from models import GuestCredentials, GuestProcessInfo, SnapshotEntry, VMInfo
from polling import CancelToken

logger = logging.getLogger(__name__)

SESSION_HEADER = "vmware-api-session-id"

# Fixed managed object ids from the ServiceContent
SESSION_MANAGER = "SessionManager/SessionManager"
VIEW_MANAGER = "ViewManager/ViewManager"
AUTH_MANAGER = "GuestAuthManager/guestOperationsAuthManager"
PROCESS_MANAGER = "GuestProcessManager/guestOperationsProcessManager"
FILE_MANAGER = "GuestFileManager/guestOperationsFileManager"


class VSphereError(RuntimeError):
    """Transport-level or HTTP failure talking to vCenter."""


class VSphereFault(VSphereError):
    """vSphere fault returned by the API (InvalidGuestLogin, FileNotFound, ...)."""

    def __init__(self, fault_type: str, message: str, status_code: int = 500):
        super().__init__(f"{fault_type}: {message}" if message else fault_type)
        self.fault_type = fault_type
        self.status_code = status_code


class TaskCancelled(VSphereError):
    """Stopped waiting for a task because the caller was cancelled."""


class HypervisorAPI(Protocol):
    """Hypervisor control plane capabilities used by the upgrade workflow."""

    def get_properties(self, vm: str, selectors: Iterable[str]) -> Dict[str, Any]: ...

    def mount_iso(
        self, vm: str, iso_path: str, cancel: Optional[CancelToken] = None
    ) -> None: ...

    def unmount_iso(self, vm: str, cancel: Optional[CancelToken] = None) -> None: ...

    def create_snapshot(
        self,
        vm: str,
        name: str,
        description: str,
        memory: bool,
        quiesce: bool,
        cancel: Optional[CancelToken] = None,
    ) -> None: ...

    def list_snapshots(self, vm: str, vm_name: str = "") -> List[SnapshotEntry]: ...

    def remove_snapshot(
        self, snapshot: str, cancel: Optional[CancelToken] = None
    ) -> None: ...

    def power_on(
        self, vm: str, timeout: Optional[float] = None, cancel: Optional[CancelToken] = None
    ) -> None: ...

    def power_off(
        self, vm: str, timeout: Optional[float] = None, cancel: Optional[CancelToken] = None
    ) -> None: ...

    def list_datastores(self) -> List[str]: ...


class GuestAPI(Protocol):
    """Guest execution plane capabilities used by the upgrade workflow."""

    def validate_credentials(self, vm: str, creds: GuestCredentials) -> None: ...

    def start_program(
        self,
        vm: str,
        creds: GuestCredentials,
        program_path: str,
        arguments: str = "",
        working_directory: str = "",
    ) -> int: ...

    def list_processes(
        self, vm: str, creds: GuestCredentials, pids: List[int]
    ) -> List[GuestProcessInfo]: ...

    def upload_file(
        self,
        vm: str,
        creds: GuestCredentials,
        guest_path: str,
        content: bytes,
        overwrite: bool = True,
    ) -> None: ...

    def file_exists(self, vm: str, creds: GuestCredentials, guest_path: str) -> bool: ...


def moref(type_name: str, value: str) -> Dict[str, str]:
    """Build a ManagedObjectReference document."""
    return {"_typeName": "ManagedObjectReference", "type": type_name, "value": value}


def guest_auth(creds: GuestCredentials) -> Dict[str, Any]:
    return {
        "_typeName": "NamePasswordAuthentication",
        "username": creds.username,
        "password": creds.password,
        "interactiveSession": False,
    }


def lookup(data: Any, path: str) -> Any:
    """Follow a dotted property path through nested dictionaries."""
    current = data
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


class VSphereClient:
    """
    Per-run handle to a vCenter server.

    Implements both the hypervisor and the guest operations capabilities.
    Use it as a context manager so the session is always logged out.
    """

    RETRYABLE_STATUS_CODES = {429, 502, 503, 504}
    TASK_POLL_INTERVAL = 2.0

    def __init__(
        self,
        host: str,
        username: str,
        password: str,
        insecure: bool = False,
        release: str = "8.0.1.0",
        timeout_s: int = 60,
        max_retries: int = 5,
        base_delay: float = 2.0,
    ):
        """
        Initialize the vSphere client.

        Args:
            host: vCenter host name (scheme, port and path are stripped)
            username: vCenter user
            password: vCenter password (kept in memory only)
            insecure: Skip TLS certificate verification
            release: VI/JSON API release segment
            timeout_s: Request timeout in seconds
            max_retries: Maximum number of retries for transient errors
            base_delay: Base delay for exponential backoff
        """
        self.host = normalize_host(host)
        self.username = username
        self._password = password
        self.release = release
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self.base_delay = base_delay

        self.session = requests.Session()
        self.session.verify = not insecure
        self.session.headers.update({"Content-Type": "application/json"})
        self._root_folder: Optional[Dict[str, str]] = None

    def __enter__(self) -> "VSphereClient":
        self.login()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.logout()

    @property
    def base_url(self) -> str:
        return f"https://{self.host}/sdk/vim25/{self.release}"

    def _url(self, path: str) -> str:
        """Construct full API URL from path."""
        return f"{self.base_url}/{path.lstrip('/')}"

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request_with_retry(self, method: str, url: str, **kwargs) -> requests.Response:
        """
        Execute HTTP request with exponential backoff retry for transient errors.

        Raises:
            VSphereError: If max retries exceeded
        """
        last_error = None

        for attempt in range(self.max_retries + 1):
            try:
                resp = self.session.request(
                    method.upper(), url, timeout=self.timeout_s, **kwargs
                )
            except requests.RequestException as e:
                delay = self._calculate_delay(attempt)
                logger.warning(
                    f"Request error: {e}, attempt {attempt + 1}/{self.max_retries + 1}, waiting {delay:.1f}s..."
                )
                last_error = str(e)
                time.sleep(delay)
                continue

            if resp.status_code in self.RETRYABLE_STATUS_CODES:
                delay = self._calculate_delay(attempt, resp)
                logger.warning(
                    f"Retryable error {resp.status_code}, attempt {attempt + 1}/{self.max_retries + 1}, waiting {delay:.1f}s..."
                )
                last_error = f"HTTP {resp.status_code}: {resp.text[:200]}"
                time.sleep(delay)
                continue

            return resp

        raise VSphereError(f"Max retries exceeded. Last error: {last_error}")

    def _calculate_delay(self, attempt: int, resp=None) -> float:
        """Calculate delay with exponential backoff and jitter."""
        if resp is not None and "Retry-After" in resp.headers:
            try:
                return float(resp.headers["Retry-After"])
            except ValueError:
                pass

        delay = self.base_delay * (2**attempt)
        jitter = delay * 0.2 * (0.5 - time.time() % 1)
        return min(delay + jitter, 60.0)

    def _call(self, method: str, path: str, body: Optional[Dict] = None) -> Any:
        """Invoke an API path and decode the JSON result."""
        kwargs = {"json": body} if body is not None else {}
        resp = self._request_with_retry(method, self._url(path), **kwargs)
        if resp.status_code == 204 or not resp.content:
            if resp.status_code >= 400:
                raise VSphereError(f"{path} failed ({resp.status_code})")
            return None
        if resp.status_code >= 400:
            raise self._fault(resp, path)
        return resp.json()

    def _fault(self, resp: requests.Response, path: str) -> VSphereError:
        try:
            data = resp.json()
        except ValueError:
            return VSphereError(f"{path} failed ({resp.status_code}): {resp.text[:200]}")
        fault_type = data.get("_typeName", "") if isinstance(data, dict) else ""
        message = ""
        if isinstance(data, dict):
            message = data.get("faultMessage") or data.get("localizedMessage") or ""
            if isinstance(message, list):
                message = "; ".join(
                    str(m.get("message", m)) if isinstance(m, dict) else str(m)
                    for m in message
                )
        if not fault_type:
            return VSphereError(f"{path} failed ({resp.status_code}): {resp.text[:200]}")
        return VSphereFault(fault_type, message, resp.status_code)

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    def login(self) -> None:
        """Authenticate and attach the session id to subsequent requests."""
        resp = self._request_with_retry(
            "POST",
            self._url(f"{SESSION_MANAGER}/Login"),
            json={"userName": self.username, "password": self._password},
        )
        if resp.status_code >= 400:
            raise self._fault(resp, "Login")
        session_id = resp.headers.get(SESSION_HEADER)
        if not session_id:
            raise VSphereError("Login returned no session id")
        self.session.headers[SESSION_HEADER] = session_id
        logger.info(f"Logged in to {self.host} as {self.username}")

    def logout(self) -> None:
        if SESSION_HEADER not in self.session.headers:
            return
        try:
            self._call("POST", f"{SESSION_MANAGER}/Logout")
        except VSphereError as e:
            logger.warning(f"Logout from {self.host} failed: {e}")
        finally:
            self.session.headers.pop(SESSION_HEADER, None)
            self.session.close()

    # ------------------------------------------------------------------
    # Tasks and properties
    # ------------------------------------------------------------------

    def wait_for_task(
        self,
        task: Dict[str, str],
        timeout: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
    ) -> Any:
        """
        Poll a task until it reaches a terminal state.

        Args:
            task: Task managed object reference
            timeout: Optional limit for the wait (seconds)
            cancel: Stops the wait early; the task itself keeps running

        Returns:
            The task result

        Raises:
            TaskCancelled: If ``cancel`` fires before the task finishes
            VSphereError: If the task fails or the timeout passes
        """
        task_id = task["value"]
        start = time.monotonic()
        while True:
            info = self._call("GET", f"Task/{task_id}/info") or {}
            state = info.get("state", "")
            if state == "success":
                return info.get("result")
            if state == "error":
                error = info.get("error") or {}
                message = error.get("localizedMessage") or str(error)
                raise VSphereError(f"Task {task_id} failed: {message}")
            if timeout is not None and time.monotonic() - start > timeout:
                raise VSphereError(f"Task {task_id} did not complete within {timeout:.0f}s")
            if cancel is None:
                time.sleep(self.TASK_POLL_INTERVAL)
            elif cancel.wait(self.TASK_POLL_INTERVAL):
                logger.warning(f"Abandoning wait for task {task_id}: {cancel.reason}")
                raise TaskCancelled(f"Task {task_id} abandoned: {cancel.reason}")

    def get_properties(self, vm: str, selectors: Iterable[str]) -> Dict[str, Any]:
        """
        Read virtual machine properties by dotted selector.

        Args:
            vm: Virtual machine managed object id
            selectors: e.g. ["runtime.powerState", "guest.guestFullName"]

        Returns:
            Dictionary of selector -> value (None when unset)
        """
        selectors = list(selectors)
        roots: Dict[str, Any] = {}
        for selector in selectors:
            root = selector.split(".", 1)[0]
            if root not in roots:
                roots[root] = self._call("GET", f"VirtualMachine/{vm}/{root}")

        out: Dict[str, Any] = {}
        for selector in selectors:
            root, _, rest = selector.partition(".")
            out[selector] = lookup(roots[root], rest) if rest else roots[root]
        return out

    # ------------------------------------------------------------------
    # Hypervisor operations
    # ------------------------------------------------------------------

    def _find_cdrom(self, vm: str) -> Dict[str, Any]:
        devices = self.get_properties(vm, ["config.hardware.device"])[
            "config.hardware.device"
        ] or []
        for dev in devices:
            if dev.get("_typeName") == "VirtualCdrom":
                return dict(dev)
        raise VSphereError(f"No CD/DVD device on {vm}")

    def _edit_device(
        self, vm: str, device: Dict[str, Any], cancel: Optional[CancelToken] = None
    ) -> None:
        spec = {
            "_typeName": "VirtualMachineConfigSpec",
            "deviceChange": [
                {
                    "_typeName": "VirtualDeviceConfigSpec",
                    "operation": "edit",
                    "device": device,
                }
            ],
        }
        task = self._call("POST", f"VirtualMachine/{vm}/ReconfigVM_Task", {"spec": spec})
        self.wait_for_task(task, cancel=cancel)

    def mount_iso(
        self, vm: str, iso_path: str, cancel: Optional[CancelToken] = None
    ) -> None:
        """Back the first CD-ROM device with an ISO file and connect it."""
        cd = self._find_cdrom(vm)
        cd["backing"] = {"_typeName": "VirtualCdromIsoBackingInfo", "fileName": iso_path}
        cd["connectable"] = {
            "_typeName": "VirtualDeviceConnectInfo",
            "startConnected": True,
            "connected": True,
            "allowGuestControl": True,
        }
        self._edit_device(vm, cd, cancel=cancel)

    def unmount_iso(self, vm: str, cancel: Optional[CancelToken] = None) -> None:
        """Disconnect the CD-ROM device and reset it to client passthrough."""
        cd = self._find_cdrom(vm)
        cd["backing"] = {
            "_typeName": "VirtualCdromRemotePassthroughBackingInfo",
            "deviceName": "",
            "exclusive": False,
        }
        cd["connectable"] = {
            "_typeName": "VirtualDeviceConnectInfo",
            "startConnected": False,
            "connected": False,
            "allowGuestControl": True,
        }
        self._edit_device(vm, cd, cancel=cancel)

    def create_snapshot(
        self,
        vm: str,
        name: str,
        description: str,
        memory: bool,
        quiesce: bool,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        task = self._call(
            "POST",
            f"VirtualMachine/{vm}/CreateSnapshot_Task",
            {
                "name": name,
                "description": description,
                "memory": memory,
                "quiesce": quiesce,
            },
        )
        self.wait_for_task(task, cancel=cancel)

    def list_snapshots(self, vm: str, vm_name: str = "") -> List[SnapshotEntry]:
        """List all snapshots of a VM, flattening the snapshot tree."""
        info = self._call("GET", f"VirtualMachine/{vm}/snapshot")
        if not info or not info.get("rootSnapshotList"):
            return []

        out: List[SnapshotEntry] = []

        def walk(nodes: List[Dict[str, Any]]) -> None:
            for node in nodes:
                out.append(
                    SnapshotEntry(
                        vm_name=vm_name or vm,
                        name=node.get("name", ""),
                        ref=(node.get("snapshot") or {}).get("value", ""),
                        created=node.get("createTime", ""),
                    )
                )
                walk(node.get("childSnapshotList") or [])

        walk(info["rootSnapshotList"])
        return out

    def remove_snapshot(self, snapshot: str, cancel: Optional[CancelToken] = None) -> None:
        task = self._call(
            "POST",
            f"VirtualMachineSnapshot/{snapshot}/RemoveSnapshot_Task",
            {"removeChildren": False},
        )
        self.wait_for_task(task, cancel=cancel)

    def power_on(
        self, vm: str, timeout: Optional[float] = None, cancel: Optional[CancelToken] = None
    ) -> None:
        task = self._call("POST", f"VirtualMachine/{vm}/PowerOnVM_Task", {})
        self.wait_for_task(task, timeout=timeout, cancel=cancel)

    def power_off(
        self, vm: str, timeout: Optional[float] = None, cancel: Optional[CancelToken] = None
    ) -> None:
        task = self._call("POST", f"VirtualMachine/{vm}/PowerOffVM_Task", {})
        self.wait_for_task(task, timeout=timeout, cancel=cancel)

    def _container_view(self, type_name: str) -> List[Dict[str, str]]:
        if self._root_folder is None:
            content = self._call("GET", "ServiceInstance/ServiceInstance/content")
            self._root_folder = content["rootFolder"]
        view = self._call(
            "POST",
            f"{VIEW_MANAGER}/CreateContainerView",
            {"container": self._root_folder, "type": [type_name], "recursive": True},
        )
        try:
            return self._call("GET", f"ContainerView/{view['value']}/view") or []
        finally:
            self._call("POST", f"ContainerView/{view['value']}/DestroyView")

    def list_datastores(self) -> List[str]:
        """Names of all datastores visible to the session."""
        return [
            self._call("GET", f"Datastore/{ref['value']}/name")
            for ref in self._container_view("Datastore")
        ]

    def list_vms(self) -> List[VMInfo]:
        """Inventory of all virtual machines, sorted by name."""
        out: List[VMInfo] = []
        for ref in self._container_view("VirtualMachine"):
            vm = ref["value"]
            name = self._call("GET", f"VirtualMachine/{vm}/name")
            if not name:
                continue
            guest = self._call("GET", f"VirtualMachine/{vm}/guest") or {}
            runtime = self._call("GET", f"VirtualMachine/{vm}/runtime") or {}
            out.append(
                VMInfo(
                    name=name,
                    ref=vm,
                    os=guest.get("guestFullName") or "Unknown",
                    domain=guest.get("hostName") or "",
                    power_state=runtime.get("powerState", ""),
                )
            )
        out.sort(key=lambda v: v.name)
        return out

    # ------------------------------------------------------------------
    # Guest operations
    # ------------------------------------------------------------------

    def validate_credentials(self, vm: str, creds: GuestCredentials) -> None:
        """
        Check guest credentials without starting anything in the guest.

        Raises:
            VSphereFault: InvalidGuestLogin when the credentials are rejected
        """
        self._call(
            "POST",
            f"{AUTH_MANAGER}/ValidateCredentialsInGuest",
            {"vm": moref("VirtualMachine", vm), "auth": guest_auth(creds)},
        )

    def start_program(
        self,
        vm: str,
        creds: GuestCredentials,
        program_path: str,
        arguments: str = "",
        working_directory: str = "",
    ) -> int:
        spec: Dict[str, Any] = {
            "_typeName": "GuestProgramSpec",
            "programPath": program_path,
            "arguments": arguments,
        }
        if working_directory:
            spec["workingDirectory"] = working_directory
        pid = self._call(
            "POST",
            f"{PROCESS_MANAGER}/StartProgramInGuest",
            {"vm": moref("VirtualMachine", vm), "auth": guest_auth(creds), "spec": spec},
        )
        return int(pid)

    def list_processes(
        self, vm: str, creds: GuestCredentials, pids: List[int]
    ) -> List[GuestProcessInfo]:
        procs = self._call(
            "POST",
            f"{PROCESS_MANAGER}/ListProcessesInGuest",
            {"vm": moref("VirtualMachine", vm), "auth": guest_auth(creds), "pids": pids},
        )
        return [
            GuestProcessInfo(
                pid=int(p["pid"]),
                exit_code=p.get("exitCode"),
                end_time=p.get("endTime"),
            )
            for p in procs or []
        ]

    def _transfer_url(self, url: str) -> str:
        # The guest tools may answer with a wildcard host
        return url.replace("://*", f"://{self.host}", 1)

    def upload_file(
        self,
        vm: str,
        creds: GuestCredentials,
        guest_path: str,
        content: bytes,
        overwrite: bool = True,
    ) -> None:
        url = self._call(
            "POST",
            f"{FILE_MANAGER}/InitiateFileTransferToGuest",
            {
                "vm": moref("VirtualMachine", vm),
                "auth": guest_auth(creds),
                "guestFilePath": guest_path,
                "fileAttributes": {"_typeName": "GuestFileAttributes"},
                "fileSize": len(content),
                "overwrite": overwrite,
            },
        )
        try:
            resp = self.session.put(
                self._transfer_url(url),
                data=content,
                headers={"Content-Type": "application/octet-stream"},
                timeout=self.timeout_s,
            )
        except requests.RequestException as e:
            raise VSphereError(f"Upload of {guest_path} failed: {e}") from e
        if resp.status_code not in (200, 201):
            raise VSphereError(
                f"Upload of {guest_path} failed ({resp.status_code}): {resp.text[:200]}"
            )

    def file_exists(self, vm: str, creds: GuestCredentials, guest_path: str) -> bool:
        """Whether a file exists in the guest (via a transfer-from-guest request)."""
        try:
            self._call(
                "POST",
                f"{FILE_MANAGER}/InitiateFileTransferFromGuest",
                {
                    "vm": moref("VirtualMachine", vm),
                    "auth": guest_auth(creds),
                    "guestFilePath": guest_path,
                },
            )
        except VSphereFault as e:
            if e.fault_type == "FileNotFound":
                return False
            raise
        return True


def normalize_host(host: str) -> str:
    """Strip scheme, port and path so only the host name remains."""
    h = host.strip()
    for scheme in ("https://", "http://"):
        if h.lower().startswith(scheme):
            h = h[len(scheme):]
            break
    h = h.split("/", 1)[0]
    return h.split(":", 1)[0]
