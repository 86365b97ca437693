"""
Hardware side of the disk map: the virtual disks vCenter reports for a VM.

Each VirtualDisk is paired with its owning controller (by controllerKey)
and its backing is classified as a datastore file (VMDK) or a raw device
mapping (RDM). Datastore and LUN lookups return a Resolution so callers can
tell "resolved", "not applicable" and "lookup failed" apart.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pyVmomi import vim, vmodl

from disk_mapper_console import warn


SCSI = "SCSI"
NVME = "NVMe"
SATA = "SATA"
OTHER = "Other"

VMDK = "VMDK"
RDM = "RDM"

# VirtualAHCIController is a VirtualSATAController subclass
_DISK_CONTROLLERS = (
    vim.vm.device.VirtualSCSIController,
    vim.vm.device.VirtualNVMEController,
    vim.vm.device.VirtualSATAController,
)

_DATASTORE_PREFIX = re.compile(r'^\[([^\]]+)\]')


class ResolutionStatus(str, Enum):
    RESOLVED = "resolved"
    NOT_APPLICABLE = "not-applicable"
    FAILED = "failed"


@dataclass(frozen=True)
class Resolution:
    """Outcome of an optional metadata lookup."""

    status: ResolutionStatus
    value: Any = None
    error: Optional[str] = None

    @classmethod
    def resolved(cls, value: Any) -> "Resolution":
        return cls(ResolutionStatus.RESOLVED, value=value)

    @classmethod
    def not_applicable(cls) -> "Resolution":
        return cls(ResolutionStatus.NOT_APPLICABLE)

    @classmethod
    def failed(cls, error: str) -> "Resolution":
        return cls(ResolutionStatus.FAILED, error=error)

    @property
    def ok(self) -> bool:
        return self.status == ResolutionStatus.RESOLVED


@dataclass(frozen=True)
class LunInfo:
    canonical_name: str
    display_name: Optional[str]
    capacity_gb: Optional[float]


@dataclass(frozen=True)
class VirtualDiskRecord:
    """One virtual disk as seen by the hypervisor."""

    label: str
    controller_type: Optional[str]
    bus_number: Optional[int]
    unit_number: Optional[int]
    join_key: Optional[str]
    backing_type: str
    datastore: Resolution
    lun: Resolution

    @property
    def datastore_name(self) -> Optional[str]:
        return self.datastore.value if self.datastore.ok else None

    @property
    def lun_canonical_name(self) -> Optional[str]:
        return self.lun.value.canonical_name if self.lun.ok else None

    @property
    def lun_display_name(self) -> Optional[str]:
        return self.lun.value.display_name if self.lun.ok else None

    @property
    def lun_capacity_gb(self) -> Optional[float]:
        return self.lun.value.capacity_gb if self.lun.ok else None


def build_join_key(controller_type: Optional[str], bus: Optional[int], unit: Optional[int]) -> Optional[str]:
    """
    Positional key shared by the hardware and guest inventories.

    Only SCSI-attached disks get a key; NVMe/SATA/IDE disks have no guest
    side counterpart to correlate with.
    """
    if controller_type != SCSI or bus is None or unit is None:
        return None
    return f"SCSI({int(bus)}:{int(unit)})"


def controller_type_of(controller: Any) -> str:
    if isinstance(controller, vim.vm.device.VirtualSCSIController):
        return SCSI
    if isinstance(controller, vim.vm.device.VirtualNVMEController):
        return NVME
    if isinstance(controller, vim.vm.device.VirtualSATAController):
        return SATA
    return OTHER


def bytes_to_gb(size_bytes: float) -> float:
    """Bytes to GiB, rounded to 2 decimals and clamped at zero"""
    return max(0.0, round(size_bytes / (1024 ** 3), 2))


def datastore_from_path(file_name: Optional[str]) -> Optional[str]:
    """'[DS01] web01/web01.vmdk' -> 'DS01'"""
    if not file_name:
        return None
    match = _DATASTORE_PREFIX.match(file_name.strip())
    return match.group(1) if match else None


def find_duplicate_join_keys(disks: List[VirtualDiskRecord]) -> List[str]:
    """Join keys carried by more than one disk of the same VM"""
    seen: Dict[str, int] = {}
    for disk in disks:
        if disk.join_key:
            seen[disk.join_key] = seen.get(disk.join_key, 0) + 1
    return sorted(key for key, count in seen.items() if count > 1)


class HardwareInventoryReader:
    """Read VirtualDiskRecords from a vim.VirtualMachine."""

    def __init__(self, on_warning: Optional[Callable[[str], None]] = None):
        self.on_warning = on_warning or warn

    def read(self, vm: Any) -> List[VirtualDiskRecord]:
        devices = list(vm.config.hardware.device) if vm.config else []

        controllers = {
            device.key: device
            for device in devices
            if isinstance(device, _DISK_CONTROLLERS)
        }

        records = []
        for device in devices:
            if not isinstance(device, vim.vm.device.VirtualDisk):
                continue
            record = self._build_record(vm, device, controllers.get(device.controllerKey))
            for field, resolution in (("datastore", record.datastore), ("LUN", record.lun)):
                if resolution.status == ResolutionStatus.FAILED:
                    self.on_warning(
                        f"{vm.name}: {record.label}: could not resolve {field}: {resolution.error}"
                    )
            records.append(record)

        for key in find_duplicate_join_keys(records):
            self.on_warning(f"{vm.name}: more than one virtual disk at {key}; the first one is used")

        return records

    def _build_record(self, vm: Any, disk: Any, controller: Any) -> VirtualDiskRecord:
        label = disk.deviceInfo.label if disk.deviceInfo else f"Disk {disk.key}"

        if controller is not None:
            controller_type = controller_type_of(controller)
            bus_number = controller.busNumber
        else:
            controller_type = None
            bus_number = None
        unit_number = disk.unitNumber

        backing = disk.backing
        if isinstance(backing, vim.vm.device.VirtualDisk.RawDiskMappingVer1BackingInfo):
            backing_type = RDM
            datastore = Resolution.not_applicable()
            lun = self.resolve_lun(vm, backing.lunUuid)
        else:
            backing_type = VMDK
            datastore = self.resolve_datastore(backing)
            lun = Resolution.not_applicable()

        return VirtualDiskRecord(
            label=label,
            controller_type=controller_type,
            bus_number=bus_number,
            unit_number=unit_number,
            join_key=build_join_key(controller_type, bus_number, unit_number),
            backing_type=backing_type,
            datastore=datastore,
            lun=lun,
        )

    def resolve_datastore(self, backing: Any) -> Resolution:
        if backing is None:
            return Resolution.failed("disk has no backing")

        try:
            datastore = getattr(backing, "datastore", None)
            if datastore is not None:
                return Resolution.resolved(datastore.name)
        except vmodl.MethodFault as e:
            fallback = datastore_from_path(getattr(backing, "fileName", None))
            if fallback:
                return Resolution.resolved(fallback)
            return Resolution.failed(e.msg or type(e).__name__)

        name = datastore_from_path(getattr(backing, "fileName", None))
        if name:
            return Resolution.resolved(name)
        return Resolution.failed("backing has no datastore reference")

    def resolve_lun(self, vm: Any, lun_uuid: Optional[str]) -> Resolution:
        if not lun_uuid:
            return Resolution.failed("RDM backing has no LUN UUID")

        try:
            host = vm.runtime.host
            if host is None:
                return Resolution.failed("VM has no owning host")
            luns = host.config.storageDevice.scsiLun
        except (vmodl.MethodFault, AttributeError) as e:
            return Resolution.failed(f"storage lookup on host failed: {getattr(e, 'msg', None) or e}")

        for lun in luns or []:
            if lun.uuid != lun_uuid:
                continue
            capacity_gb = None
            capacity = getattr(lun, "capacity", None)
            if capacity is not None:
                capacity_gb = bytes_to_gb(capacity.block * capacity.blockSize)
            return Resolution.resolved(LunInfo(
                canonical_name=lun.canonicalName,
                display_name=lun.displayName,
                capacity_gb=capacity_gb,
            ))

        return Resolution.failed(f"LUN {lun_uuid} not found on host {host.name}")
