"""
Join guest volumes to virtual disks through the SCSI(bus:target) key.

Guest Windows disks and vCenter virtual disks share no stable identifier;
the SCSI bus number and target/unit number are the only common ground.
When a drive letter or a key appears more than once the first entry wins.
"""

from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional

from guest_inventory import GuestDriveToBusMap, GuestVolumeRecord
from hardware_inventory import SCSI, VirtualDiskRecord, build_join_key


@dataclass(frozen=True)
class VMContext:
    name: str
    esxi_host: Optional[str] = None
    cluster: Optional[str] = None


@dataclass(frozen=True)
class MergedRow:
    vm_name: str
    esxi_host: Optional[str]
    cluster_name: Optional[str]
    drive_letter: str
    volume_label: Optional[str]
    filesystem: Optional[str]
    volume_size_gb: float
    vmware_disk: Optional[str] = None
    controller_type: Optional[str] = None
    scsi_id: Optional[str] = None
    backing_type: Optional[str] = None
    datastore: Optional[str] = None
    lun_canonical_name: Optional[str] = None
    lun_display_name: Optional[str] = None
    lun_capacity_gb: Optional[float] = None

    @property
    def matched(self) -> bool:
        return bool(self.vmware_disk)


def _first_by_drive(drive_map: Iterable[GuestDriveToBusMap]) -> Dict[str, GuestDriveToBusMap]:
    first: Dict[str, GuestDriveToBusMap] = {}
    for entry in drive_map:
        first.setdefault(entry.drive_letter, entry)
    return first


def _first_by_key(disks: Iterable[VirtualDiskRecord]) -> Dict[str, VirtualDiskRecord]:
    first: Dict[str, VirtualDiskRecord] = {}
    for disk in disks:
        if disk.join_key:
            first.setdefault(disk.join_key, disk)
    return first


def find_ambiguities(drive_map: Iterable[GuestDriveToBusMap]) -> List[str]:
    """Human readable notes for drive letters the guest maps more than once"""
    notes = []

    letters: Dict[str, int] = {}
    for entry in drive_map:
        letters[entry.drive_letter] = letters.get(entry.drive_letter, 0) + 1
    for letter in sorted(k for k, n in letters.items() if n > 1):
        notes.append(f"drive {letter} maps to {letters[letter]} guest disks; using the first")

    return notes


def reconcile_vm(
    vm: VMContext,
    disks: List[VirtualDiskRecord],
    volumes: List[GuestVolumeRecord],
    drive_map: List[GuestDriveToBusMap]
) -> List[MergedRow]:
    """One MergedRow per guest volume, hardware fields empty when unmatched."""
    by_drive = _first_by_drive(drive_map)
    by_key = _first_by_key(disks)

    rows = []
    for volume in volumes:
        disk = None
        bus_entry = by_drive.get(volume.drive_letter)
        if bus_entry is not None:
            key = build_join_key(SCSI, bus_entry.scsi_bus, bus_entry.scsi_target)
            disk = by_key.get(key) if key else None

        row = MergedRow(
            vm_name=vm.name,
            esxi_host=vm.esxi_host,
            cluster_name=vm.cluster,
            drive_letter=volume.drive_letter,
            volume_label=volume.volume_label,
            filesystem=volume.filesystem,
            volume_size_gb=volume.size_gb,
        )
        if disk is not None:
            row = replace(
                row,
                vmware_disk=disk.label,
                controller_type=disk.controller_type,
                scsi_id=disk.join_key,
                backing_type=disk.backing_type,
                datastore=disk.datastore_name,
                lun_canonical_name=disk.lun_canonical_name,
                lun_display_name=disk.lun_display_name,
                lun_capacity_gb=disk.lun_capacity_gb,
            )
        rows.append(row)

    return rows
