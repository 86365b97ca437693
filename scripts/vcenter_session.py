"""
vCenter connection handling and candidate VM discovery.
"""

import base64
import fnmatch
import socket
import ssl
from typing import Any, Iterable, List, Optional, Tuple

from pyVim.connect import Disconnect, SmartConnect, SmartStubAdapter
from pyVmomi import vim, vmodl


def port_open(host: str, port: int, timeout: float = 5) -> bool:
    """True if a TCP connection to host:port succeeds within timeout"""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def _ssl_context(disable_verification: bool) -> Optional[ssl.SSLContext]:
    if disable_verification:
        return ssl._create_unverified_context()
    return None


class VCenterSession:
    """Connect to vCenter Server with one of the supported login methods."""

    def __init__(self, hostname: str, port: int = 443, disable_ssl_verification: bool = True):
        self.hostname = hostname
        self.port = port
        self.disable_ssl_verification = disable_ssl_verification
        self.si: Optional[vim.ServiceInstance] = None

    def check_reachable(self, timeout: float = 5) -> None:
        if not port_open(self.hostname, self.port, timeout):
            raise ConnectionError(f"vCenter {self.hostname} is not reachable on port {self.port}")

    def connect_with_password(self, username: str, password: str) -> vim.ServiceInstance:
        """Connect with a username/password credential."""
        try:
            self.si = SmartConnect(
                host=self.hostname,
                user=username,
                pwd=password,
                port=self.port,
                sslContext=_ssl_context(self.disable_ssl_verification)
            )
        except vim.fault.InvalidLogin as e:
            raise ConnectionError(f"Authentication to {self.hostname} failed: {e.msg}")
        except Exception as e:
            raise ConnectionError(f"Failed to connect to vCenter: {e}")
        return self.si

    def connect_integrated(self) -> vim.ServiceInstance:
        """Connect with the current Windows logon (SSPI / Negotiate)."""
        try:
            import sspi  # pywin32, Windows only
        except ImportError:
            raise ConnectionError(
                "Windows integrated authentication requires Windows with pywin32 installed"
            )

        try:
            stub = SmartStubAdapter(
                host=self.hostname,
                port=self.port,
                sslContext=_ssl_context(self.disable_ssl_verification)
            )
            si = vim.ServiceInstance("ServiceInstance", stub)
            session_manager = si.content.sessionManager

            client = sspi.ClientAuth("Negotiate", targetspn=f"host/{self.hostname}")
            challenge = None
            while True:
                _, out_buffer = client.authorize(challenge)
                token = base64.b64encode(out_buffer[0].Buffer).decode("ascii")
                try:
                    session_manager.LoginBySSPI(base64Token=token)
                    break
                except vim.fault.SSPIChallenge as e:
                    challenge = base64.b64decode(e.base64Token)
        except vim.fault.InvalidLogin as e:
            raise ConnectionError(f"Integrated authentication to {self.hostname} failed: {e.msg}")
        except Exception as e:
            raise ConnectionError(f"Failed to connect to vCenter: {e}")

        self.si = si
        return si

    def disconnect(self) -> None:
        """Disconnect from vCenter Server."""
        if self.si:
            try:
                Disconnect(self.si)
            except vmodl.MethodFault:
                pass
            self.si = None

    def all_vms(self) -> List[Any]:
        """Get all VMs from vCenter inventory."""
        if not self.si:
            raise RuntimeError("Not connected to vCenter")

        content = self.si.RetrieveContent()
        container_view = content.viewManager.CreateContainerView(
            content.rootFolder, [vim.VirtualMachine], True
        )
        vms = list(container_view.view)
        container_view.Destroy()
        return vms


def vm_location(vm: Any) -> Tuple[Optional[str], Optional[str]]:
    """(ESXi host name, cluster name) for a VM; either may be None"""
    host = vm.runtime.host
    if host is None:
        return None, None
    parent = host.parent
    cluster = parent.name if isinstance(parent, vim.ClusterComputeResource) else None
    return host.name, cluster


def is_windows_guest(vm: Any) -> bool:
    config = vm.config
    if config is None:
        return False
    guest_id = (config.guestId or "").lower()
    full_name = (config.guestFullName or "").lower()
    return guest_id.startswith("win") or "windows" in full_name


def is_candidate(vm: Any, patterns: Iterable[str], cluster: Optional[str] = None) -> bool:
    """Powered on Windows VM whose name matches one of the glob patterns"""
    if str(vm.runtime.powerState) != "poweredOn":
        return False
    if not is_windows_guest(vm):
        return False
    if not any(fnmatch.fnmatchcase(vm.name.lower(), p.lower()) for p in patterns):
        return False
    if cluster:
        _, vm_cluster = vm_location(vm)
        if (vm_cluster or "").lower() != cluster.lower():
            return False
    return True


def find_candidate_vms(vms: Iterable[Any], patterns: Iterable[str], cluster: Optional[str] = None) -> List[Any]:
    patterns = list(patterns) or ["*"]
    return sorted(
        (vm for vm in vms if is_candidate(vm, patterns, cluster)),
        key=lambda vm: vm.name.lower()
    )
