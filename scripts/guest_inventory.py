"""
Guest side of the disk map: what Windows reports about its own volumes.

Two PowerShell scripts run inside the guest through the vSphere Guest
Operations API. Each writes JSON to a temporary file which is downloaded
and parsed back into typed records. Execution failures and decoding
failures are reported with different exception types.
"""

import http.client
import json
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Tuple

import requests
from pyVmomi import vim, vmodl

from disk_mapper_console import log, warn
from vcenter_session import port_open


POWERSHELL = r"C:\Windows\System32\WindowsPowerShell\v1.0\powershell.exe"
TOOLS_RUNNING = "guestToolsRunning"

_DRIVE_LETTER = re.compile(r'^([A-Za-z]):?\\?$')

VOLUME_SCRIPT = r"""
param([string]$OutputPath)
$ErrorActionPreference = 'Stop'
$volumes = @(Get-CimInstance -ClassName Win32_Volume -Filter "DriveType=3" |
    Where-Object { $_.DriveLetter } |
    ForEach-Object {
        [pscustomobject]@{
            DriveLetter = $_.DriveLetter
            Label       = $_.Label
            FileSystem  = $_.FileSystem
            SizeGB      = [math]::Round($_.Capacity / 1GB, 2)
        }
    })
$json = ConvertTo-Json -InputObject $volumes -Compress
[System.IO.File]::WriteAllText($OutputPath, $json, [System.Text.Encoding]::UTF8)
"""

DRIVE_MAP_SCRIPT = r"""
param([string]$OutputPath)
$ErrorActionPreference = 'Stop'
$signature = [regex]::Escape('__SIGNATURE__')
$map = @()
$disks = Get-CimInstance -ClassName Win32_DiskDrive |
    Where-Object { $_.Model -match $signature -or $_.PNPDeviceID -match $signature }
foreach ($disk in $disks) {
    $partitions = Get-CimAssociatedInstance -InputObject $disk -ResultClassName Win32_DiskPartition
    foreach ($partition in $partitions) {
        $logicalDisks = Get-CimAssociatedInstance -InputObject $partition -ResultClassName Win32_LogicalDisk
        foreach ($logicalDisk in $logicalDisks) {
            $map += [pscustomobject]@{
                DriveLetter = $logicalDisk.DeviceID
                SCSIBus     = $disk.SCSIBus
                SCSITarget  = $disk.SCSITargetId
            }
        }
    }
}
$json = ConvertTo-Json -InputObject @($map) -Compress
[System.IO.File]::WriteAllText($OutputPath, $json, [System.Text.Encoding]::UTF8)
"""


class VMSkipped(Exception):
    """A VM cannot be processed; reason ends up in the failure log."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class GuestToolsNotRunning(VMSkipped):
    pass


class GuestPortUnreachable(VMSkipped):
    pass


class GuestExecutionError(VMSkipped):
    """The script could not be transferred, started, or finished badly."""


class GuestOutputParseError(VMSkipped):
    """The script ran but its output could not be decoded."""


@dataclass(frozen=True)
class GuestVolumeRecord:
    drive_letter: str
    volume_label: Optional[str]
    filesystem: Optional[str]
    size_gb: float


@dataclass(frozen=True)
class GuestDriveToBusMap:
    drive_letter: str
    scsi_bus: int
    scsi_target: int


class GuestInventory(Protocol):
    def list_volumes(self) -> List[GuestVolumeRecord]:
        ...

    def map_drives_to_bus(self) -> List[GuestDriveToBusMap]:
        ...


def normalize_drive_letter(value: Any) -> str:
    """'c', 'C:', 'C:\\' -> 'C:'"""
    if not isinstance(value, str):
        raise ValueError(f"drive letter must be a string, got {value!r}")
    match = _DRIVE_LETTER.match(value.strip())
    if not match:
        raise ValueError(f"not a drive letter: {value!r}")
    return f"{match.group(1).upper()}:"


def _load_json_list(text: Optional[str], what: str) -> List[Dict[str, Any]]:
    stripped = (text or "").strip().lstrip("\ufeff")
    if not stripped:
        return []

    try:
        data = json.loads(stripped)
    except ValueError as e:
        raise GuestOutputParseError(f"{what} output is not valid JSON: {e}")

    if data is None:
        return []
    # ConvertTo-Json emits a bare object for single-element pipelines
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
        raise GuestOutputParseError(f"{what} output is not a list of objects")
    return data


def _as_int(value: Any, field: str) -> int:
    if isinstance(value, bool) or value is None:
        raise ValueError(f"{field} must be an integer, got {value!r}")
    if isinstance(value, float) and not value.is_integer():
        raise ValueError(f"{field} must be a whole number, got {value!r}")
    return int(value)


def parse_volumes(text: Optional[str]) -> List[GuestVolumeRecord]:
    """Decode the volume script's JSON output."""
    volumes = []
    for item in _load_json_list(text, "volume"):
        try:
            size = item.get("SizeGB")
            if isinstance(size, bool) or size is None:
                raise ValueError(f"SizeGB must be a number, got {size!r}")
            volumes.append(GuestVolumeRecord(
                drive_letter=normalize_drive_letter(item.get("DriveLetter")),
                volume_label=item.get("Label") or None,
                filesystem=item.get("FileSystem") or None,
                size_gb=max(0.0, round(float(size), 2)),
            ))
        except (TypeError, ValueError) as e:
            raise GuestOutputParseError(f"bad volume entry {item!r}: {e}")
    return volumes


def parse_drive_map(text: Optional[str]) -> List[GuestDriveToBusMap]:
    """Decode the drive-to-bus script's JSON output."""
    entries = []
    for item in _load_json_list(text, "drive map"):
        try:
            entries.append(GuestDriveToBusMap(
                drive_letter=normalize_drive_letter(item.get("DriveLetter")),
                scsi_bus=_as_int(item.get("SCSIBus"), "SCSIBus"),
                scsi_target=_as_int(item.get("SCSITarget"), "SCSITarget"),
            ))
        except (TypeError, ValueError) as e:
            raise GuestOutputParseError(f"bad drive map entry {item!r}: {e}")
    return entries


def check_guest_preconditions(vm: Any, port: int, timeout: float = 5) -> None:
    """
    Raise VMSkipped unless guest operations can be attempted.

    VMware Tools must be running, and the VM's ESXi host must accept TCP
    connections on the guest operations port.
    """
    tools_status = getattr(vm.guest, "toolsRunningStatus", None) if vm.guest else None
    if str(tools_status) != TOOLS_RUNNING:
        raise GuestToolsNotRunning(f"VMware Tools not running (status: {tools_status})")

    host = vm.runtime.host
    host_name = host.name if host is not None else None
    if not host_name:
        raise GuestPortUnreachable("VM has no ESXi host to reach for guest operations")
    if not port_open(host_name, port, timeout):
        raise GuestPortUnreachable(f"ESXi host {host_name} unreachable on port {port}")


def fix_transfer_url(url: str, host_name: Optional[str]) -> str:
    """ESXi hands back https://*/... when contacted directly"""
    if host_name and "://*" in url:
        return url.replace("://*", f"://{host_name}", 1)
    return url


class GuestScriptRunner:
    """Run a PowerShell script in a Windows guest and return what it wrote."""

    def __init__(self, si: Any, vm: Any, credential: Tuple[str, str], settings: Dict[str, Any]):
        self.si = si
        self.vm = vm
        self.auth = vim.vm.guest.NamePasswordAuthentication(
            username=credential[0],
            password=credential[1]
        )
        self.timeout = settings.get("script_timeout", 600)
        self.poll_interval = settings.get("poll_interval", 2)
        self.temp_dir = settings.get("temp_dir")
        self.verify_ssl = not settings.get("disable_ssl_verification", True)

    def run(self, script: str, name: str) -> str:
        guest_ops = self.si.content.guestOperationsManager
        file_manager = guest_ops.fileManager
        process_manager = guest_ops.processManager

        created: List[str] = []
        try:
            script_path = self._temp_file(file_manager, f"vmdm-{name}-", ".ps1")
            created.append(script_path)
            output_path = self._temp_file(file_manager, f"vmdm-{name}-", ".json")
            created.append(output_path)

            self._upload(file_manager, script_path, script)
            pid = self._start(process_manager, script_path, output_path)
            self._wait(process_manager, pid, name)
            return self._download(file_manager, output_path)

        except vmodl.MethodFault as e:
            raise GuestExecutionError(f"{name} script: {e.msg or type(e).__name__}")
        except requests.RequestException as e:
            raise GuestExecutionError(f"{name} script: file transfer failed: {e}")
        except (OSError, http.client.HTTPException) as e:
            raise GuestExecutionError(f"{name} script: connection error: {e!r}")
        finally:
            for path in created:
                self._delete(file_manager, path)

    def _temp_file(self, file_manager: Any, prefix: str, suffix: str) -> str:
        return file_manager.CreateTemporaryFileInGuest(
            vm=self.vm,
            auth=self.auth,
            prefix=prefix,
            suffix=suffix,
            directoryPath=self.temp_dir
        )

    def _host_name(self) -> Optional[str]:
        host = self.vm.runtime.host
        return host.name if host is not None else None

    def _upload(self, file_manager: Any, path: str, content: str) -> None:
        data = content.encode("utf-8")
        url = file_manager.InitiateFileTransferToGuest(
            vm=self.vm,
            auth=self.auth,
            guestFilePath=path,
            fileAttributes=vim.vm.guest.FileManager.WindowsFileAttributes(),
            fileSize=len(data),
            overwrite=True
        )
        response = requests.put(fix_transfer_url(url, self._host_name()), data=data, verify=self.verify_ssl)
        if response.status_code not in [200, 201]:
            raise GuestExecutionError(f"upload of {path} failed (HTTP {response.status_code})")

    def _start(self, process_manager: Any, script_path: str, output_path: str) -> int:
        spec = vim.vm.guest.ProcessManager.ProgramSpec(
            programPath=POWERSHELL,
            arguments=(
                f'-NoProfile -NonInteractive -ExecutionPolicy Bypass '
                f'-File "{script_path}" -OutputPath "{output_path}"'
            )
        )
        return process_manager.StartProgramInGuest(vm=self.vm, auth=self.auth, spec=spec)

    def _wait(self, process_manager: Any, pid: int, name: str) -> None:
        deadline = time.monotonic() + self.timeout
        while True:
            processes = process_manager.ListProcessesInGuest(vm=self.vm, auth=self.auth, pids=[pid])
            if processes and processes[0].endTime:
                if processes[0].exitCode != 0:
                    raise GuestExecutionError(f"{name} script exited with code {processes[0].exitCode}")
                return
            if time.monotonic() >= deadline:
                raise GuestExecutionError(f"{name} script still running after {self.timeout}s")
            time.sleep(self.poll_interval)

    def _download(self, file_manager: Any, path: str) -> str:
        info = file_manager.InitiateFileTransferFromGuest(vm=self.vm, auth=self.auth, guestFilePath=path)
        response = requests.get(fix_transfer_url(info.url, self._host_name()), verify=self.verify_ssl)
        if response.status_code != 200:
            raise GuestExecutionError(f"download of {path} failed (HTTP {response.status_code})")
        return response.content.decode("utf-8-sig", errors="replace")

    def _delete(self, file_manager: Any, path: str) -> None:
        try:
            file_manager.DeleteFileInGuest(vm=self.vm, auth=self.auth, filePath=path)
        except (vmodl.MethodFault, OSError) as e:
            log(f"{self.vm.name}: could not delete guest file {path}: {getattr(e, 'msg', None) or e}")


class VMwareGuestInventory:
    """GuestInventory backed by in-guest PowerShell via VMware Tools."""

    def __init__(self, runner: GuestScriptRunner, vendor_signature: str = "VMware"):
        self.runner = runner
        self.vendor_signature = vendor_signature

    def list_volumes(self) -> List[GuestVolumeRecord]:
        return parse_volumes(self.runner.run(VOLUME_SCRIPT, "volumes"))

    def map_drives_to_bus(self) -> List[GuestDriveToBusMap]:
        script = DRIVE_MAP_SCRIPT.replace("__SIGNATURE__", self.vendor_signature.replace("'", "''"))
        entries = parse_drive_map(self.runner.run(script, "drivemap"))
        if not entries:
            warn(f"{self.runner.vm.name}: no disks matching '{self.vendor_signature}' found in guest")
        return entries
