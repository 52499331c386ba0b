"""Data models for astroneer-vps."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, NamedTuple, Optional


class PortForward(NamedTuple):
    host_port: int
    guest_port: int
    protocol: str = "tcp"


class RemoteResult(NamedTuple):
    exit_status: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


@dataclass(frozen=True)
class Settings:
    """Validated operator configuration; never mutated after loading."""

    vm_name: str
    vm_ip: str
    vm_ram_mb: int
    vm_cpus: int
    vm_disk_gb: int
    vnc_port: int
    vnc_password: str
    win_username: str
    win_password: str
    server_name: str
    owner_name: str
    public_ip: str
    astro_port: int
    launcher_port: int
    images_dir: Path
    data_dir: Path
    log_dir: Path
    network_name: str = "default"
    forward_interface: Optional[str] = None
    profile_path: Optional[Path] = None
    source_path: Optional[Path] = None

    @property
    def port_forwards(self) -> List[PortForward]:
        return [
            PortForward(self.astro_port, self.astro_port, "udp"),
            PortForward(self.launcher_port, self.launcher_port, "tcp"),
        ]


@dataclass(frozen=True)
class SyncTarget:
    name: str
    host_dir: str
    remote_path: str
    kind: str = "binary"  # "text" gets line endings translated
    pattern: str = "*"
    direction: str = "both"  # "push", "pull" or "both"
    optional: bool = False

    @property
    def pushes(self) -> bool:
        return self.direction in {"push", "both"}

    @property
    def pulls(self) -> bool:
        return self.direction in {"pull", "both"}


@dataclass(frozen=True)
class ImageSource:
    filename: str
    url: Optional[str] = None
    candidates: List[str] = field(default_factory=list)
    download_page: Optional[str] = None


@dataclass(frozen=True)
class WorkloadProfile:
    name: str
    os_variant: str
    packages: List[str]
    driver_image: ImageSource
    base_image: ImageSource
    media_filename: str
    media_volume_id: str
    media_template: str
    installer_script: str
    installer_remote_path: str
    install_dir: str
    supervisor_process: str
    supervisor_executable: str
    workload_process: str
    log_file: str
    update_command: str
    sync_targets: List[SyncTarget]


@dataclass(frozen=True)
class VMDescriptor:
    name: str
    memory_mb: int
    vcpus: int
    disk_gb: int
    ip: str
    mac: str
    disk_path: Path
    install_iso: Path
    driver_iso: Path
    media_iso: Path
    os_variant: str
    vnc_port: int
    vnc_password: str
    network: str = "default"


@dataclass
class StatusReport:
    """Composite view of the VM and its workload; ``None`` means unknown."""

    vm_name: str
    vm_state: str
    ip: str
    reachable: Optional[bool] = None
    supervisor_running: Optional[bool] = None
    workload_running: Optional[bool] = None
    memory_used_mb: Optional[int] = None
    memory_total_mb: Optional[int] = None
    forwards_present: Optional[bool] = None

    @property
    def running(self) -> bool:
        return self.vm_state == "running"
