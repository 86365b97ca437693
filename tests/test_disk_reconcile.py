from disk_reconcile import VMContext, find_ambiguities, reconcile_vm
from guest_inventory import GuestDriveToBusMap, GuestVolumeRecord
from hardware_inventory import LunInfo, Resolution, VirtualDiskRecord, build_join_key


def _vmdk_disk(label, bus, unit, datastore="DS01", controller_type="SCSI"):
    return VirtualDiskRecord(
        label=label,
        controller_type=controller_type,
        bus_number=bus,
        unit_number=unit,
        join_key=build_join_key(controller_type, bus, unit),
        backing_type="VMDK",
        datastore=Resolution.resolved(datastore),
        lun=Resolution.not_applicable(),
    )


def _rdm_disk(label, bus, unit, canonical):
    return VirtualDiskRecord(
        label=label,
        controller_type="SCSI",
        bus_number=bus,
        unit_number=unit,
        join_key=build_join_key("SCSI", bus, unit),
        backing_type="RDM",
        datastore=Resolution.not_applicable(),
        lun=Resolution.resolved(LunInfo(canonical, "PURE Fibre Channel Disk", 500.0)),
    )


WEB01 = VMContext(name="WEB01", esxi_host="esx01", cluster="Prod")


def test_web01_system_drive_joins_to_datastore_disk():
    rows = reconcile_vm(
        WEB01,
        disks=[_vmdk_disk("Hard disk 1", 0, 0, "DS01")],
        volumes=[GuestVolumeRecord("C:", "OS", "NTFS", 80.0)],
        drive_map=[GuestDriveToBusMap("C:", 0, 0)],
    )

    assert len(rows) == 1
    row = rows[0]
    assert row.vm_name == "WEB01"
    assert row.esxi_host == "esx01"
    assert row.cluster_name == "Prod"
    assert row.drive_letter == "C:"
    assert row.filesystem == "NTFS"
    assert row.volume_size_gb == 80.0
    assert row.vmware_disk == "Hard disk 1"
    assert row.backing_type == "VMDK"
    assert row.datastore == "DS01"
    assert row.scsi_id == "SCSI(0:0)"
    assert row.controller_type == "SCSI"
    assert row.matched


def test_rdm_volume_carries_lun_and_no_datastore():
    rows = reconcile_vm(
        VMContext(name="DB01"),
        disks=[_vmdk_disk("Hard disk 1", 0, 0), _rdm_disk("Hard disk 2", 1, 0, "naa.600a0b80001234")],
        volumes=[GuestVolumeRecord("D:", "SQLData", "NTFS", 500.0)],
        drive_map=[GuestDriveToBusMap("D:", 1, 0)],
    )

    row = rows[0]
    assert row.backing_type == "RDM"
    assert row.lun_canonical_name == "naa.600a0b80001234"
    assert row.lun_capacity_gb == 500.0
    assert row.datastore is None
    assert row.scsi_id == "SCSI(1:0)"


def test_one_row_per_volume_even_when_unmatched():
    volumes = [
        GuestVolumeRecord("C:", "OS", "NTFS", 80.0),
        GuestVolumeRecord("P:", "Pagefile", "NTFS", 16.0),
        GuestVolumeRecord("T:", "TempDB", "NTFS", 50.0),
    ]
    rows = reconcile_vm(
        WEB01,
        disks=[_vmdk_disk("Hard disk 1", 0, 0), _vmdk_disk("Hard disk 3", 0, 2)],
        volumes=volumes,
        drive_map=[GuestDriveToBusMap("C:", 0, 0), GuestDriveToBusMap("T:", 0, 9)],
    )

    assert len(rows) == len(volumes)
    by_letter = {row.drive_letter: row for row in rows}
    assert by_letter["C:"].matched
    # no bus mapping at all
    assert not by_letter["P:"].matched
    assert by_letter["P:"].scsi_id is None
    assert by_letter["P:"].datastore is None
    # mapped, but no virtual disk at SCSI(0:9)
    assert not by_letter["T:"].matched
    assert by_letter["T:"].volume_label == "TempDB"


def test_non_scsi_disks_never_match():
    rows = reconcile_vm(
        WEB01,
        disks=[_vmdk_disk("Hard disk 1", 0, 0, controller_type="NVMe")],
        volumes=[GuestVolumeRecord("C:", "OS", "NTFS", 80.0)],
        drive_map=[GuestDriveToBusMap("C:", 0, 0)],
    )

    assert not rows[0].matched


def test_no_volumes_means_no_rows():
    assert reconcile_vm(WEB01, [_vmdk_disk("Hard disk 1", 0, 0)], [], [GuestDriveToBusMap("C:", 0, 0)]) == []


def test_first_match_wins_for_duplicate_letters_and_keys():
    rows = reconcile_vm(
        WEB01,
        disks=[_vmdk_disk("Hard disk 1", 0, 1, "DS01"), _vmdk_disk("Hard disk 9", 0, 1, "DS09")],
        volumes=[GuestVolumeRecord("E:", "Data", "NTFS", 10.0)],
        drive_map=[GuestDriveToBusMap("E:", 0, 1), GuestDriveToBusMap("E:", 0, 5)],
    )

    assert rows[0].vmware_disk == "Hard disk 1"
    assert rows[0].datastore == "DS01"


def test_find_ambiguities_reports_duplicate_drive_letters():
    notes = find_ambiguities([GuestDriveToBusMap("E:", 0, 1), GuestDriveToBusMap("E:", 0, 2)])

    assert len(notes) == 1
    assert "E:" in notes[0]


def test_find_ambiguities_clean_input():
    assert find_ambiguities([GuestDriveToBusMap("C:", 0, 0), GuestDriveToBusMap("D:", 0, 1)]) == []
