#!/usr/bin/env python3
"""
VM Disk Mapper
Purpose: Map Windows guest drive letters to the VMware virtual disks,
datastores and RDM LUNs behind them

For every powered-on Windows VM in scope the script reads the virtual disk
layout from vCenter, asks the guest (through VMware Tools) for its fixed
volumes and their SCSI addresses, and joins the two on SCSI(bus:target).
Use the result to find the page-file or TempDB volumes to leave out of a
replication VPG.

Usage:
    vm_disk_mapper.py                               # Prompt for everything
    vm_disk_mapper.py --vcenter vc01 --auth saved   # Use a cached credential
    vm_disk_mapper.py --vm 'SQL*' --vm WEB01        # Limit to matching VMs
    vm_disk_mapper.py --cluster Prod --log run.log  # One cluster, with run log
"""

import argparse
import http.client
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import urllib3
from pyVmomi import vmodl

# Add scripts directory to path for sibling module imports
sys.path.insert(0, str(Path(__file__).parent))

# pylint: disable=wrong-import-position
from disk_export import VMFailure, dedupe_rows, sort_rows, write_failure_log, write_rows_csv
from disk_mapper_config import load_config
from disk_mapper_console import Colors, banner, error, info, open_log, print_message, success, warn
from disk_mapper_secrets import SecretsManager
from disk_reconcile import MergedRow, VMContext, find_ambiguities, reconcile_vm
from guest_inventory import (
    GuestExecutionError,
    GuestInventory,
    GuestOutputParseError,
    GuestScriptRunner,
    VMSkipped,
    VMwareGuestInventory,
    check_guest_preconditions,
)
from hardware_inventory import HardwareInventoryReader
from vcenter_session import VCenterSession, find_candidate_vms, vm_location

# Disable SSL warnings
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

AUTH_METHODS = {
    "1": "prompt",
    "2": "integrated",
    "3": "saved",
}


class DiskMapperError(Exception):
    """Fatal condition that aborts the whole run."""


class DiskMapper:
    """Run the per-VM pipeline and collect rows and failures."""

    def __init__(
        self,
        guest_factory: Callable[[Any], GuestInventory],
        precheck: Callable[[Any], None],
        hardware_reader: Optional[HardwareInventoryReader] = None
    ):
        self.guest_factory = guest_factory
        self.precheck = precheck
        self.hardware_reader = hardware_reader or HardwareInventoryReader()
        self.rows: List[MergedRow] = []
        self.failures: List[VMFailure] = []

    def process_vm(self, vm: Any) -> Tuple[List[MergedRow], Optional[VMFailure]]:
        """
        Returns the rows for one VM, or an empty list and the reason it was
        skipped. Nothing raised while handling a VM escapes this method.
        """
        name = vm.name
        try:
            self.precheck(vm)

            try:
                esxi_host, cluster = vm_location(vm)
                disks = self.hardware_reader.read(vm)
            except (vmodl.MethodFault, AttributeError) as e:
                raise VMSkipped(f"Hardware inventory read failed: {getattr(e, 'msg', None) or e}")

            guest = self.guest_factory(vm)

            try:
                volumes = guest.list_volumes()
            except GuestOutputParseError as e:
                raise VMSkipped(f"Guest volume output could not be parsed: {e.reason}")
            except GuestExecutionError as e:
                raise VMSkipped(f"Guest volume query failed: {e.reason}")

            try:
                drive_map = guest.map_drives_to_bus()
            except GuestOutputParseError as e:
                raise VMSkipped(f"Guest disk map output could not be parsed: {e.reason}")
            except GuestExecutionError as e:
                raise VMSkipped(f"Guest disk map query failed: {e.reason}")

        except VMSkipped as e:
            return [], VMFailure(vm=name, reason=e.reason)
        except vmodl.MethodFault as e:
            return [], VMFailure(vm=name, reason=f"vSphere API error: {e.msg or type(e).__name__}")
        except (OSError, http.client.HTTPException) as e:
            return [], VMFailure(vm=name, reason=f"vSphere connection error: {e!r}")

        for note in find_ambiguities(drive_map):
            warn(f"{name}: {note}")

        context = VMContext(name=name, esxi_host=esxi_host, cluster=cluster)
        return reconcile_vm(context, disks, volumes, drive_map), None

    def run(self, vms: List[Any]) -> None:
        total = len(vms)
        for index, vm in enumerate(vms, start=1):
            print_message(Colors.YELLOW, f"[{index}/{total}] {vm.name}")
            rows, failure = self.process_vm(vm)
            if failure:
                print_message(Colors.RED, f"  ✗ skipped: {failure.reason}")
                self.failures.append(failure)
                continue
            matched = sum(1 for row in rows if row.matched)
            print_message(Colors.GREEN, f"  ✓ {len(rows)} volume(s), {matched} matched to a virtual disk")
            self.rows.extend(rows)


def resolve_vcenter(args: argparse.Namespace, config: Dict[str, Any]) -> str:
    hostname = args.vcenter or config["vcenter"].get("hostname")
    if not hostname:
        hostname = input("Enter vCenter Server address: ").strip()
    if not hostname:
        raise DiskMapperError("No vCenter Server address given")
    return hostname


def choose_auth_method(args: argparse.Namespace) -> str:
    if args.auth:
        return args.auth

    print(f"\n{Colors.BLUE}Authentication method:{Colors.NC}")
    print("  1. Enter credential")
    print("  2. Windows integrated (current logon)")
    print("  3. Saved credential file")
    choice = input("Select [1-3] (default 1): ").strip() or "1"
    if choice not in AUTH_METHODS:
        raise DiskMapperError(f"Invalid authentication choice: {choice}")
    return AUTH_METHODS[choice]


def authenticate(session: VCenterSession, method: str, secrets: SecretsManager, config: Dict[str, Any],
                 username: Optional[str] = None) -> None:
    """Log in to vCenter; raises DiskMapperError or ConnectionError on failure."""
    if method == "integrated":
        session.connect_integrated()
        return

    if method == "saved":
        credential = secrets.load_cached_credential(session.hostname)
        if credential is None:
            raise DiskMapperError(
                f"No saved credential for {session.hostname} in {secrets.cache_file}"
            )
        session.connect_with_password(*credential)
        return

    user, password = secrets.get_vcenter_credential(username or config["vcenter"].get("username"))
    if not user or not password:
        raise DiskMapperError("No vCenter credential supplied")
    session.connect_with_password(user, password)

    answer = input(f"Save credential for {session.hostname}? (y/n): ").strip().lower()
    if answer in ("y", "yes"):
        path = secrets.save_cached_credential(session.hostname, user, password)
        success(f"Credential saved to {path}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Map Windows guest volumes to VMware virtual disks, datastores and RDM LUNs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-c", "--config", type=Path,
                        help="Path to YAML config file (default: config/vm-disk-mapper.yaml)")
    parser.add_argument("--vcenter", help="vCenter Server address")
    parser.add_argument("--auth", choices=sorted(set(AUTH_METHODS.values())),
                        help="Authentication method (prompted when omitted)")
    parser.add_argument("--user", help="vCenter username for --auth prompt")
    parser.add_argument("--vm", action="append", metavar="PATTERN",
                        help="VM name or glob pattern; repeatable (default: all)")
    parser.add_argument("--cluster", help="Only VMs running in this cluster")
    parser.add_argument("--output", help="CSV output path")
    parser.add_argument("--failure-log", help="Failure log path")
    parser.add_argument("--log", type=str, help="Write detailed log to file")
    return parser


def run(args: argparse.Namespace) -> int:
    try:
        config = load_config(args.config)
    except (FileNotFoundError, ValueError) as e:
        raise DiskMapperError(str(e))

    open_log(args.log)
    banner("VM Disk Mapper")

    project_dir = Path(__file__).resolve().parent.parent
    secrets = SecretsManager(project_dir, Path(config["credentials"]["cache_file"]).expanduser())

    vcenter_config = config["vcenter"]
    session = VCenterSession(
        resolve_vcenter(args, config),
        port=vcenter_config["port"],
        disable_ssl_verification=vcenter_config["disable_ssl_verification"],
    )

    print_message(Colors.YELLOW, f"Checking {session.hostname}:{session.port}...")
    session.check_reachable(vcenter_config["connect_timeout"])

    method = choose_auth_method(args)
    try:
        authenticate(session, method, secrets, config, args.user)
        success(f"Connected to vCenter {session.hostname}")

        patterns = args.vm or config["vm_filter"]["names"]
        cluster = args.cluster or config["vm_filter"].get("cluster")
        vms = find_candidate_vms(session.all_vms(), patterns, cluster)
        if not vms:
            raise DiskMapperError(f"No powered-on Windows VMs match {', '.join(patterns)}")
        info(f"Found {len(vms)} candidate VM(s)")

        guest_user, guest_password = secrets.get_guest_credential()
        if not guest_user or not guest_password:
            raise DiskMapperError("No guest credential supplied")

        guest_settings = dict(config["guest"])
        guest_settings["disable_ssl_verification"] = vcenter_config["disable_ssl_verification"]

        mapper = DiskMapper(
            guest_factory=lambda vm: VMwareGuestInventory(
                GuestScriptRunner(session.si, vm, (guest_user, guest_password), guest_settings),
                guest_settings["vendor_signature"],
            ),
            precheck=lambda vm: check_guest_preconditions(
                vm, guest_settings["port"], guest_settings["port_timeout"]
            ),
        )
        mapper.run(vms)
    finally:
        session.disconnect()

    output_path = args.output or config["output"]["csv_path"]
    failure_path = args.failure_log or config["output"]["failure_log"]

    rows = sort_rows(dedupe_rows(mapper.rows))
    count = write_rows_csv(rows, output_path)

    print()
    banner("Summary")
    success(f"{count} row(s) written to {output_path}")
    unmatched = sum(1 for row in rows if not row.matched)
    if unmatched:
        warn(f"{unmatched} volume(s) could not be matched to a virtual disk")
    if write_failure_log(mapper.failures, failure_path):
        warn(f"{len(mapper.failures)} VM(s) skipped, see {failure_path}")
    return 0


def main():
    """Main entry point"""
    args = build_parser().parse_args()
    try:
        sys.exit(run(args))
    except KeyboardInterrupt:
        print("\n\nOperation cancelled by user")
        sys.exit(130)
    except (DiskMapperError, ConnectionError) as e:
        error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
