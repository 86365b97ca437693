"""
Deduplicate, sort and write the merged rows; write the failure log.
"""

import csv
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple, Union

from disk_reconcile import MergedRow


FIELDNAMES = [
    "VMName",
    "ESXiHost",
    "ClusterName",
    "GuestDriveLetter",
    "VolumeLabel",
    "FileSystem",
    "VolumeSizeGB",
    "VMwareDisk",
    "ControllerType",
    "SCSI_ID",
    "BackingType",
    "Datastore",
    "LunCanonicalName",
    "LunDisplayName",
    "LunCapacityGB",
]


@dataclass(frozen=True)
class VMFailure:
    vm: str
    reason: str


def dedupe_rows(rows: Iterable[MergedRow]) -> List[MergedRow]:
    """
    Keep one row per (VM, drive letter).

    A row with a matched virtual disk beats an unmatched one; otherwise the
    first row seen is kept. Output preserves first-seen key order.
    """
    chosen: Dict[Tuple[str, str], MergedRow] = {}
    for row in rows:
        key = (row.vm_name, row.drive_letter)
        current = chosen.get(key)
        if current is None or (row.matched and not current.matched):
            chosen[key] = row
    return list(chosen.values())


def sort_rows(rows: Iterable[MergedRow]) -> List[MergedRow]:
    return sorted(rows, key=lambda r: (r.vm_name, r.drive_letter))


def _gb(value: Optional[float]) -> str:
    return "" if value is None else f"{value:.2f}"


def _text(value: Optional[str]) -> str:
    return "" if value is None else str(value)


def row_to_record(row: MergedRow) -> Dict[str, str]:
    return {
        "VMName": row.vm_name,
        "ESXiHost": _text(row.esxi_host),
        "ClusterName": _text(row.cluster_name),
        "GuestDriveLetter": row.drive_letter,
        "VolumeLabel": _text(row.volume_label),
        "FileSystem": _text(row.filesystem),
        "VolumeSizeGB": _gb(row.volume_size_gb),
        "VMwareDisk": _text(row.vmware_disk),
        "ControllerType": _text(row.controller_type),
        "SCSI_ID": _text(row.scsi_id),
        "BackingType": _text(row.backing_type),
        "Datastore": _text(row.datastore),
        "LunCanonicalName": _text(row.lun_canonical_name),
        "LunDisplayName": _text(row.lun_display_name),
        "LunCapacityGB": _gb(row.lun_capacity_gb),
    }


def write_rows_csv(rows: Iterable[MergedRow], output_path: Union[str, Path]) -> int:
    """Write rows to output_path (overwriting), every field quoted. Returns row count."""
    count = 0
    with open(output_path, "w", newline="", encoding="utf-8") as csvfile:
        writer = csv.DictWriter(csvfile, fieldnames=FIELDNAMES, quoting=csv.QUOTE_ALL)
        writer.writeheader()
        for row in rows:
            writer.writerow(row_to_record(row))
            count += 1
    return count


def format_failure_table(failures: Iterable[VMFailure]) -> str:
    ordered = sorted(failures, key=lambda f: (f.vm, f.reason))
    width = max([len("VM")] + [len(f.vm) for f in ordered])
    lines = [
        f"{'VM':<{width}}  Reason",
        f"{'-' * width}  {'-' * 6}",
    ]
    for failure in ordered:
        lines.append(f"{failure.vm:<{width}}  {failure.reason}")
    return "\n".join(lines) + "\n"


def write_failure_log(failures: List[VMFailure], output_path: Union[str, Path]) -> bool:
    """Write the failure table only when there is something to report."""
    if not failures:
        return False
    with open(output_path, "w", encoding="utf-8") as f:
        f.write(format_failure_table(failures))
    return True
