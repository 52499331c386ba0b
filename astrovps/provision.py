"""First-time setup: host preparation, VM creation and workload provisioning."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from astrovps.constants import (
    BACKGROUND_REAP_TIMEOUT,
    CPUINFO_PATH,
    DISK_MARGIN_GB,
    SETUP_SSH_INTERVAL,
    SETUP_SSH_TIMEOUT,
)
from astrovps.exceptions import CommandFailed, ManagerError, PrerequisiteUnmet, Timeout
from astrovps.host import (
    PackageInstaller,
    cpu_virtualization_supported,
    ensure_libvirt_group,
    ensure_libvirtd,
    free_disk_gb,
)
from astrovps.locks import CleanupRegistry
from astrovps.media import (
    build_install_media,
    ensure_driver_image,
    locate_base_image,
    template_values,
)
from astrovps.models import Settings, VMDescriptor, WorkloadProfile
from astrovps.remote import RemoteClient
from astrovps.runner import CommandRunner
from astrovps.services import ServiceManager
from astrovps.utils import confirm as ask, deterministic_mac, download_file_with_retry, log
from astrovps.vm import VMController


class SetupState(Enum):
    CHECKING_PREREQUISITES = "checking-prerequisites"
    INSTALLING_PACKAGES = "installing-packages"
    ACQUIRING_IMAGES = "acquiring-images"
    BUILDING_INSTALL_MEDIA = "building-install-media"
    CREATING_VM = "creating-vm"
    WAITING_FOR_REACHABILITY = "waiting-for-reachability"
    PROVISIONING_WORKLOAD = "provisioning-workload"
    READY = "ready"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass
class SetupOptions:
    image: Optional[Path] = None
    skip_provision: bool = False
    force: bool = False


class Provisioner:
    """Drives ``astrovps setup`` through its states, one step at a time."""

    def __init__(
        self,
        settings: Settings,
        profile: WorkloadProfile,
        runner: CommandRunner,
        vm: VMController,
        remote: RemoteClient,
        services: ServiceManager,
        cleanup: CleanupRegistry,
        assets_dir: Path,
        confirm: Callable[[str], bool] = ask,
        downloader: Callable[..., None] = download_file_with_retry,
        cpuinfo: Path = CPUINFO_PATH,
    ) -> None:
        self.settings = settings
        self.profile = profile
        self.runner = runner
        self.vm = vm
        self.remote = remote
        self.services = services
        self.cleanup = cleanup
        self.assets_dir = assets_dir
        self.confirm = confirm
        self.downloader = downloader
        self.cpuinfo = cpuinfo
        self.history: List[SetupState] = []
        self._installer: Optional[subprocess.Popen] = None

    @property
    def state(self) -> Optional[SetupState]:
        return self.history[-1] if self.history else None

    def _enter(self, state: SetupState) -> SetupState:
        self.history.append(state)
        log("DEBUG", f"Setup state: {state.value}")
        return state

    def descriptor(self, install_iso: Path, driver_iso: Path, media_iso: Path) -> VMDescriptor:
        s = self.settings
        return VMDescriptor(
            name=s.vm_name,
            memory_mb=s.vm_ram_mb,
            vcpus=s.vm_cpus,
            disk_gb=s.vm_disk_gb,
            ip=s.vm_ip,
            mac=deterministic_mac(s.vm_name),
            disk_path=s.images_dir / f"{s.vm_name}.qcow2",
            install_iso=install_iso,
            driver_iso=driver_iso,
            media_iso=media_iso,
            os_variant=self.profile.os_variant,
            vnc_port=s.vnc_port,
            vnc_password=s.vnc_password,
            network=s.network_name,
        )

    def run(self, options: SetupOptions) -> SetupState:
        try:
            self._enter(SetupState.CHECKING_PREREQUISITES)
            log("INFO", "Checking prerequisites")
            self.check_prerequisites()

            self._enter(SetupState.INSTALLING_PACKAGES)
            log("INFO", "Installing host packages")
            self.install_packages()

            self._enter(SetupState.ACQUIRING_IMAGES)
            log("INFO", "Acquiring installation images")
            images = self.settings.images_dir
            driver_iso = ensure_driver_image(self.runner, self.profile.driver_image, images, self.downloader)
            install_iso = locate_base_image(self.runner, options.image, self.profile.base_image, images)

            self._enter(SetupState.BUILDING_INSTALL_MEDIA)
            log("INFO", "Building unattended-install media")
            media_iso = build_install_media(
                self.runner,
                self.assets_dir / self.profile.media_template,
                [self.assets_dir / self.profile.installer_script],
                images / self.profile.media_filename,
                self.profile.media_volume_id,
                template_values(self.settings),
            )

            self._enter(SetupState.CREATING_VM)
            descriptor = self.descriptor(install_iso, driver_iso, media_iso)
            if not self.create_vm(descriptor, options.force):
                return self._enter(SetupState.ABORTED)

            self._enter(SetupState.WAITING_FOR_REACHABILITY)
            if self.runner.dry_run:
                log("DRY", "[dry-run] skipping wait for SSH")
            else:
                self.wait_for_reachability()

            self._enter(SetupState.PROVISIONING_WORKLOAD)
            if options.skip_provision:
                log("INFO", "Skipping provisioning (--skip-provision)")
                log("INFO", "Run later with: astrovps manage install")
            elif self.runner.dry_run:
                log("DRY", "[dry-run] skipping workload provisioning")
            else:
                self.services.install()
        except ManagerError:
            self._enter(SetupState.FAILED)
            raise

        self._enter(SetupState.READY)
        self._summary()
        return SetupState.READY

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------
    def check_prerequisites(self) -> None:
        if not cpu_virtualization_supported(self.cpuinfo):
            raise PrerequisiteUnmet(
                "CPU virtualization (VT-x/AMD-V) not available",
                remediation="Enable virtualization in the BIOS/UEFI settings.",
            )
        log("SUCCESS", "CPU virtualization supported")

        needed = self.settings.vm_disk_gb + DISK_MARGIN_GB
        free = free_disk_gb(self.settings.images_dir)
        if free < needed:
            raise PrerequisiteUnmet(
                f"Not enough free space at {self.settings.images_dir}: {free:.1f}G available, {needed}G needed",
                remediation="Free up space or lower VM_DISK_SIZE.",
            )
        log("SUCCESS", f"Disk space: {free:.1f}G available ({needed}G needed)")

        missing = [
            str(path)
            for path in (
                self.assets_dir / self.profile.media_template,
                self.assets_dir / self.profile.installer_script,
            )
            if not path.is_file()
        ]
        if missing:
            raise PrerequisiteUnmet(
                f"Missing provisioning files: {', '.join(missing)}",
                remediation=f"Place them in {self.assets_dir}.",
            )

    def install_packages(self) -> None:
        PackageInstaller(self.runner).install(self.profile.packages)
        ensure_libvirt_group(self.runner)
        ensure_libvirtd(self.runner)

    def create_vm(self, descriptor: VMDescriptor, force: bool) -> bool:
        """Create the VM, recreating an existing one only with consent; False means aborted."""
        if self.vm.exists(descriptor.name):
            log("WARN", f"VM '{descriptor.name}' already exists")
            if not force and not self.confirm("Destroy and recreate? (y/n)"):
                log("INFO", "Aborted.")
                return False
            self.vm.destroy(descriptor.name)
            log("SUCCESS", "Old VM removed")

        self.vm.ensure_network(descriptor.network)
        self._installer = self.vm.create(descriptor)
        if self._installer is not None:
            self.cleanup.register(self._terminate_installer, "terminate virt-install")
        self.vm.add_static_lease(descriptor)
        return True

    def _check_installer(self) -> None:
        proc = self._installer
        if proc is None or proc.poll() is None or proc.returncode == 0:
            return
        detail = proc.stderr.read().strip() if proc.stderr else ""
        raise CommandFailed(
            f"virt-install exited with status {proc.returncode}" + (f"\n  {detail}" if detail else ""),
            remediation="Check the VM definition and the hypervisor log, then re-run setup.",
        )

    def wait_for_reachability(self) -> None:
        s = self.settings
        log("INFO", "Windows is installing; this takes 15-25 minutes. Monitor it via VNC:")
        log("INFO", f"  ssh -L {s.vnc_port}:localhost:{s.vnc_port} <user>@<this-host>, then open localhost:{s.vnc_port}")
        try:
            self.remote.wait_until_reachable(SETUP_SSH_TIMEOUT, SETUP_SSH_INTERVAL, guard=self._check_installer)
        except Timeout as exc:
            raise Timeout(
                str(exc),
                remediation="Connect via VNC (astrovps manage vnc) to check the installer, then run: astrovps manage install",
            ) from exc
        self._reap_installer()

    def _reap_installer(self) -> None:
        proc = self._installer
        if proc is None:
            return
        try:
            proc.wait(timeout=BACKGROUND_REAP_TIMEOUT)
        except subprocess.TimeoutExpired:
            log("DEBUG", "virt-install still waiting on the guest; detaching")
            self._terminate_installer()
        self._installer = None

    def _terminate_installer(self) -> None:
        proc = self._installer
        if proc is None or proc.poll() is not None:
            return
        proc.terminate()
        try:
            proc.wait(timeout=10)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()

    def _summary(self) -> None:
        s = self.settings
        log("SUCCESS", "Setup complete!")
        log("INFO", f"  VM:     {s.vm_name} ({s.vm_ip})")
        log("INFO", f"  SSH:    ssh {s.win_username}@{s.vm_ip}")
        log("INFO", f"  Server: {s.public_ip}:{s.astro_port}")
        log("INFO", "  Next: astrovps manage forward on && astrovps manage start-workload")
