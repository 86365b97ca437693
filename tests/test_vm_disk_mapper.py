import http.client
from types import SimpleNamespace

import pytest
from pyVmomi import vim

import hardware_inventory
import vm_disk_mapper
from disk_export import dedupe_rows
from guest_inventory import (
    GuestDriveToBusMap,
    GuestExecutionError,
    GuestOutputParseError,
    GuestToolsNotRunning,
    GuestVolumeRecord,
)
from vm_disk_mapper import DiskMapper, DiskMapperError, authenticate, choose_auth_method, resolve_vcenter


def _vm(name, tools="guestToolsRunning"):
    controller = vim.vm.device.ParaVirtualSCSIController(key=1000, busNumber=0)
    disk = vim.vm.device.VirtualDisk(
        key=2000,
        controllerKey=1000,
        unitNumber=0,
        deviceInfo=vim.Description(label="Hard disk 1", summary="80 GB"),
        backing=vim.vm.device.VirtualDisk.FlatVer2BackingInfo(fileName="[DS01] vm/vm.vmdk"),
    )
    host = SimpleNamespace(
        name="esx01",
        parent=SimpleNamespace(name="Prod"),
        config=SimpleNamespace(storageDevice=SimpleNamespace(scsiLun=[])),
    )
    return SimpleNamespace(
        name=name,
        config=SimpleNamespace(hardware=SimpleNamespace(device=[controller, disk])),
        runtime=SimpleNamespace(host=host),
        guest=SimpleNamespace(toolsRunningStatus=tools),
    )


class FakeGuest:
    def __init__(self, volumes=None, drive_map=None, volume_error=None, map_error=None):
        self.volumes = volumes if volumes is not None else [GuestVolumeRecord("C:", "OS", "NTFS", 80.0)]
        self.drive_map = drive_map if drive_map is not None else [GuestDriveToBusMap("C:", 0, 0)]
        self.volume_error = volume_error
        self.map_error = map_error

    def list_volumes(self):
        if self.volume_error:
            raise self.volume_error
        return self.volumes

    def map_drives_to_bus(self):
        if self.map_error:
            raise self.map_error
        return self.drive_map


def _tools_check(vm):
    if vm.guest.toolsRunningStatus != "guestToolsRunning":
        raise GuestToolsNotRunning(f"VMware Tools not running (status: {vm.guest.toolsRunningStatus})")


def _mapper(guests):
    return DiskMapper(guest_factory=lambda vm: guests[vm.name], precheck=_tools_check)


def test_web01_end_to_end_row():
    mapper = _mapper({"WEB01": FakeGuest()})

    rows, failure = mapper.process_vm(_vm("WEB01"))

    assert failure is None
    assert len(rows) == 1
    row = rows[0]
    assert row.vmware_disk == "Hard disk 1"
    assert row.backing_type == "VMDK"
    assert row.datastore == "DS01"
    assert row.scsi_id == "SCSI(0:0)"
    assert row.esxi_host == "esx01"


def test_tools_not_running_skips_vm_and_run_continues():
    mapper = _mapper({"DB01": FakeGuest(), "WEB01": FakeGuest()})

    mapper.run([_vm("DB01", tools="guestToolsNotRunning"), _vm("WEB01")])

    assert [row.vm_name for row in mapper.rows] == ["WEB01"]
    assert len(mapper.failures) == 1
    assert mapper.failures[0].vm == "DB01"
    assert "Tools" in mapper.failures[0].reason


@pytest.mark.parametrize(
    "guest,expected",
    [
        (FakeGuest(volume_error=GuestExecutionError("volumes script exited with code 1")),
         "Guest volume query failed"),
        (FakeGuest(volume_error=GuestOutputParseError("volume output is not valid JSON")),
         "Guest volume output could not be parsed"),
        (FakeGuest(map_error=GuestExecutionError("drivemap script still running")),
         "Guest disk map query failed"),
        (FakeGuest(map_error=GuestOutputParseError("bad drive map entry")),
         "Guest disk map output could not be parsed"),
    ],
)
def test_guest_failures_are_distinguished(guest, expected):
    rows, failure = _mapper({"APP01": guest}).process_vm(_vm("APP01"))

    assert rows == []
    assert failure.reason.startswith(expected)


def test_vsphere_fault_stays_inside_vm_boundary():
    def failing_precheck(vm):
        raise vim.fault.NoPermission(msg="Permission to perform this operation was denied.")

    mapper = DiskMapper(guest_factory=lambda vm: FakeGuest(), precheck=failing_precheck)

    rows, failure = mapper.process_vm(_vm("APP01"))

    assert rows == []
    assert "Permission" in failure.reason


def test_socket_error_skips_vm_and_run_continues():
    def flaky_precheck(vm):
        if vm.name == "APP01":
            raise ConnectionResetError(104, "Connection reset by peer")

    mapper = DiskMapper(guest_factory=lambda vm: FakeGuest(), precheck=flaky_precheck)

    mapper.run([_vm("APP01"), _vm("WEB01")])

    assert [row.vm_name for row in mapper.rows] == ["WEB01"]
    assert [failure.vm for failure in mapper.failures] == ["APP01"]
    assert "connection" in mapper.failures[0].reason


def test_http_error_from_guest_stays_inside_vm_boundary():
    guest = FakeGuest(volume_error=http.client.IncompleteRead(b""))

    rows, failure = _mapper({"APP01": guest}).process_vm(_vm("APP01"))

    assert rows == []
    assert failure.vm == "APP01"
    assert "IncompleteRead" in failure.reason


def test_hardware_read_attribute_error_skips_vm():
    vm = _vm("APP01")
    vm.config.hardware = None

    rows, failure = _mapper({"APP01": FakeGuest()}).process_vm(vm)

    assert rows == []
    assert failure.reason.startswith("Hardware inventory read failed")


def test_duplicate_join_key_is_warned_once(monkeypatch):
    seen = []
    monkeypatch.setattr(hardware_inventory, "warn", seen.append)
    monkeypatch.setattr(vm_disk_mapper, "warn", seen.append)
    vm = _vm("SQL01")
    vm.config.hardware.device += [
        vim.vm.device.VirtualLsiLogicController(key=1001, busNumber=0),
        vim.vm.device.VirtualDisk(
            key=2001,
            controllerKey=1001,
            unitNumber=0,
            deviceInfo=vim.Description(label="Hard disk 2", summary="40 GB"),
            backing=vim.vm.device.VirtualDisk.FlatVer2BackingInfo(fileName="[DS02] vm/vm_1.vmdk"),
        ),
    ]

    rows, failure = _mapper({"SQL01": FakeGuest()}).process_vm(vm)

    assert failure is None
    assert rows[0].vmware_disk == "Hard disk 1"
    assert len([note for note in seen if "SCSI(0:0)" in note]) == 1


def test_rows_per_vm_equal_guest_volume_count():
    volumes = [
        GuestVolumeRecord("C:", "OS", "NTFS", 80.0),
        GuestVolumeRecord("P:", "Pagefile", "NTFS", 16.0),
        GuestVolumeRecord("T:", "TempDB", "NTFS", 40.0),
    ]
    mapper = _mapper({"SQL01": FakeGuest(volumes=volumes)})

    rows, _ = mapper.process_vm(_vm("SQL01"))

    assert len(rows) == 3
    assert sum(1 for row in rows if row.matched) == 1


def test_join_then_dedup_twice_is_stable():
    mapper = _mapper({"WEB01": FakeGuest()})
    mapper.run([_vm("WEB01"), _vm("WEB01")])

    once = dedupe_rows(mapper.rows)

    assert len(once) == 1
    assert dedupe_rows(once + mapper.rows) == once


def test_resolve_vcenter_prefers_flag_then_config_then_prompt(monkeypatch):
    config = {"vcenter": {"hostname": "vc-config"}}
    assert resolve_vcenter(SimpleNamespace(vcenter="vc-flag"), config) == "vc-flag"
    assert resolve_vcenter(SimpleNamespace(vcenter=None), config) == "vc-config"

    monkeypatch.setattr("builtins.input", lambda prompt: "  vc-typed ")
    assert resolve_vcenter(SimpleNamespace(vcenter=None), {"vcenter": {}}) == "vc-typed"


def test_resolve_vcenter_empty_is_fatal(monkeypatch):
    monkeypatch.setattr("builtins.input", lambda prompt: "")

    with pytest.raises(DiskMapperError):
        resolve_vcenter(SimpleNamespace(vcenter=None), {"vcenter": {"hostname": None}})


def test_choose_auth_method(monkeypatch):
    assert choose_auth_method(SimpleNamespace(auth="saved")) == "saved"

    monkeypatch.setattr("builtins.input", lambda prompt: "2")
    assert choose_auth_method(SimpleNamespace(auth=None)) == "integrated"

    monkeypatch.setattr("builtins.input", lambda prompt: "")
    assert choose_auth_method(SimpleNamespace(auth=None)) == "prompt"

    monkeypatch.setattr("builtins.input", lambda prompt: "9")
    with pytest.raises(DiskMapperError):
        choose_auth_method(SimpleNamespace(auth=None))


class FakeSession:
    hostname = "vc01"

    def __init__(self):
        self.logins = []

    def connect_with_password(self, username, password):
        self.logins.append((username, password))


class FakeSecrets:
    cache_file = "/nowhere/credentials.yaml"

    def __init__(self, cached=None, prompted=("admin", "pw")):
        self.cached = cached
        self.prompted = prompted
        self.saved = []

    def load_cached_credential(self, vcenter):
        return self.cached

    def get_vcenter_credential(self, username=None):
        return self.prompted

    def save_cached_credential(self, vcenter, username, password):
        self.saved.append((vcenter, username, password))
        return self.cache_file


def test_authenticate_saved_credential_missing_is_fatal():
    with pytest.raises(DiskMapperError):
        authenticate(FakeSession(), "saved", FakeSecrets(), {"vcenter": {}})


def test_authenticate_saved_credential_used():
    session = FakeSession()
    authenticate(session, "saved", FakeSecrets(cached=("svc", "s3cret")), {"vcenter": {}})
    assert session.logins == [("svc", "s3cret")]


def test_authenticate_prompt_offers_to_save(monkeypatch):
    session = FakeSession()
    secrets = FakeSecrets()
    monkeypatch.setattr("builtins.input", lambda prompt: "y")

    authenticate(session, "prompt", secrets, {"vcenter": {}})

    assert session.logins == [("admin", "pw")]
    assert secrets.saved == [("vc01", "admin", "pw")]


def test_authenticate_prompt_without_password_is_fatal(monkeypatch):
    monkeypatch.setattr("builtins.input", lambda prompt: "n")

    with pytest.raises(DiskMapperError):
        authenticate(FakeSession(), "prompt", FakeSecrets(prompted=("admin", "")), {"vcenter": {}})


def test_main_reports_fatal_error(monkeypatch, capsys):
    def boom(args):
        raise DiskMapperError("No vCenter Server address given")

    monkeypatch.setattr(vm_disk_mapper, "run", boom)
    monkeypatch.setattr("sys.argv", ["vm_disk_mapper.py"])

    with pytest.raises(SystemExit) as excinfo:
        vm_disk_mapper.main()

    assert excinfo.value.code == 1
    assert "No vCenter Server address given" in capsys.readouterr().out
