"""VM lifecycle management for astroneer-vps via the virsh and virt-install CLIs."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional

from astrovps.constants import LIBVIRT_URI, QEMU_LOG_DIR, SHUTDOWN_POLL_INTERVAL, SHUTDOWN_TIMEOUT
from astrovps.exceptions import CommandFailed, ResourceConflict
from astrovps.models import VMDescriptor
from astrovps.network import render_dhcp_host_xml
from astrovps.runner import CommandRunner
from astrovps.utils import log, wait_until

_ABSENT_MARKERS = ("domain is not running", "failed to get domain", "domain not found", "not found")


class VMController:
    """Thin wrapper around ``virsh`` for one libvirt connection."""

    def __init__(self, runner: CommandRunner, uri: str = LIBVIRT_URI) -> None:
        self.runner = runner
        self.uri = uri

    def _virsh(self, *args: str) -> List[str]:
        return ["virsh", "-c", self.uri, *args]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def exists(self, name: str) -> bool:
        return self.runner.query(self._virsh("dominfo", name), privileged=True).returncode == 0

    def state(self, name: str) -> str:
        result = self.runner.query(self._virsh("domstate", name), privileged=True)
        if result.returncode != 0:
            return "not found"
        return result.stdout.strip() or "unknown"

    def is_running(self, name: str) -> bool:
        return self.state(name) == "running"

    def memory_used_mb(self, name: str) -> Optional[int]:
        result = self.runner.query(self._virsh("dominfo", name), privileged=True)
        if result.returncode != 0:
            return None
        for line in result.stdout.splitlines():
            key, _, value = line.partition(":")
            if key.strip() == "Used memory":
                parts = value.split()
                if parts and parts[0].isdigit():
                    return int(parts[0]) // 1024
        return None

    def console_log(self, name: str) -> Path:
        return QEMU_LOG_DIR / f"{name}.log"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def install_command(self, descriptor: VMDescriptor) -> List[str]:
        d = descriptor
        return [
            "virt-install",
            "--connect", self.uri,
            "--name", d.name,
            "--ram", str(d.memory_mb),
            "--vcpus", str(d.vcpus),
            "--os-variant", d.os_variant,
            "--disk", f"path={d.disk_path},size={d.disk_gb},bus=virtio,format=qcow2",
            "--cdrom", str(d.install_iso),
            "--disk", f"path={d.driver_iso},device=cdrom",
            "--disk", f"path={d.media_iso},device=cdrom",
            "--network", f"network={d.network},model=virtio,mac={d.mac}",
            "--graphics", f"vnc,listen=127.0.0.1,port={d.vnc_port},password={d.vnc_password}",
            "--boot", "hd,cdrom",
            "--noautoconsole",
            "--wait", "-1",
        ]

    def create(self, descriptor: VMDescriptor) -> Optional[subprocess.Popen]:
        """Start virt-install in the background; the installer keeps running unattended."""
        if self.exists(descriptor.name):
            raise ResourceConflict(
                f"VM '{descriptor.name}' already exists",
                remediation="Destroy it first (astrovps manage destroy) or re-run setup with --force.",
            )
        log("INFO", f"Creating VM: {descriptor.name}")
        log("INFO", f"  RAM: {descriptor.memory_mb}MB | CPUs: {descriptor.vcpus} | Disk: {descriptor.disk_gb}GB")
        proc = self.runner.spawn(self.install_command(descriptor), privileged=True)
        if proc is not None:
            log("SUCCESS", f"VM creation started (PID: {proc.pid})")
        return proc

    def _absent(self, result: subprocess.CompletedProcess) -> bool:
        err = (result.stderr or "").lower()
        return any(marker in err for marker in _ABSENT_MARKERS)

    def _tolerant(self, args: List[str]) -> None:
        """Run a virsh call where "already gone" is success and anything else raises."""
        result = self.runner.run(self._virsh(*args), privileged=True, capture=True, check=False)
        if result.returncode != 0 and not self._absent(result):
            raise CommandFailed(
                f"virsh {args[0]} {args[1]} failed (exit {result.returncode}): {(result.stderr or '').strip()}"
            )

    def destroy(self, name: str, keep_disk: bool = False) -> None:
        """Force off and undefine ``name``; a stopped or missing domain is not an error."""
        self._tolerant(["destroy", name])
        undefine = ["undefine", name]
        if not keep_disk:
            undefine.append("--remove-all-storage")
        self._tolerant(undefine)
        log("SUCCESS", f"VM '{name}' destroyed")

    def start(self, name: str) -> None:
        self.runner.run(self._virsh("start", name), privileged=True, capture=True)

    def shutdown(self, name: str, graceful: bool = True) -> None:
        if graceful:
            self.runner.run(self._virsh("shutdown", name), privileged=True, capture=True)
        else:
            self._tolerant(["destroy", name])

    def wait_until_stopped(
        self,
        name: str,
        timeout: float = SHUTDOWN_TIMEOUT,
        interval: float = SHUTDOWN_POLL_INTERVAL,
    ) -> bool:
        if self.runner.dry_run:
            return True
        return wait_until(lambda: not self.is_running(name), timeout, interval)

    def set_autostart(self, name: str, enabled: bool) -> None:
        args = ["autostart", name] if enabled else ["autostart", "--disable", name]
        self.runner.run(self._virsh(*args), privileged=True, capture=True)
        log("SUCCESS", f"Autostart {'enabled' if enabled else 'disabled'}")

    # ------------------------------------------------------------------
    # Virtual network
    # ------------------------------------------------------------------
    def network_active(self, network: str) -> bool:
        result = self.runner.query(self._virsh("net-info", network), privileged=True)
        if result.returncode != 0:
            return False
        for line in result.stdout.splitlines():
            key, _, value = line.partition(":")
            if key.strip() == "Active":
                return value.strip() == "yes"
        return False

    def ensure_network(self, network: str) -> None:
        if self.network_active(network):
            log("INFO", f"Network '{network}' already active")
            return
        self.runner.run(self._virsh("net-start", network), privileged=True, capture=True)
        self.runner.run(self._virsh("net-autostart", network), privileged=True, capture=True)
        log("SUCCESS", f"Network '{network}' active")

    def add_static_lease(self, descriptor: VMDescriptor) -> bool:
        xml = render_dhcp_host_xml(descriptor.mac, descriptor.name, descriptor.ip)
        result = self.runner.run(
            self._virsh("net-update", descriptor.network, "add", "ip-dhcp-host", xml, "--live", "--config"),
            privileged=True,
            capture=True,
            check=False,
        )
        if result.returncode != 0:
            log("WARN", f"DHCP lease for {descriptor.mac} may already exist: {(result.stderr or '').strip()}")
            return False
        log("SUCCESS", f"Static DHCP: {descriptor.mac} -> {descriptor.ip}")
        return True

    def remove_static_lease(self, network: str, name: str, mac: str, ip: str) -> None:
        """Drop the reservation; an already-missing lease is not an error."""
        xml = render_dhcp_host_xml(mac, name, ip)
        self.runner.run(
            self._virsh("net-update", network, "delete", "ip-dhcp-host", xml, "--live", "--config"),
            privileged=True,
            capture=True,
            allow_failure=True,
        )
