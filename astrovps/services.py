"""Game server lifecycle inside the guest for astroneer-vps."""

from __future__ import annotations

from pathlib import Path
from typing import List, Set

from astrovps.constants import (
    LOG_TAIL_DEFAULT,
    REMOTE_RETRIES,
    RETRY_BACKOFF,
    RETRY_INITIAL_DELAY,
    WORKLOAD_POLL_INTERVAL,
    WORKLOAD_START_TIMEOUT,
    WORKLOAD_STOP_GRACE,
)
from astrovps.exceptions import PrerequisiteUnmet, RemoteCommandFailed, TransferFailed
from astrovps.models import Settings, StatusReport, WorkloadProfile
from astrovps.network import PortForwarder
from astrovps.remote import RemoteClient, powershell_command, ps_quote, windows_path
from astrovps.sync import DataSynchronizer
from astrovps.utils import log, retry, wait_until
from astrovps.vm import VMController


def _arg_quote(value: str) -> str:
    """Double-quote an argument for ``powershell.exe -File`` under cmd.exe."""
    return '"' + str(value).replace('"', '\\"') + '"'


class ServiceManager:
    """Installs, starts, stops and inspects the dedicated server in the guest."""

    def __init__(
        self,
        settings: Settings,
        profile: WorkloadProfile,
        remote: RemoteClient,
        vm: VMController,
        synchronizer: DataSynchronizer,
        forwarder: PortForwarder,
        assets_dir: Path,
    ) -> None:
        self.settings = settings
        self.profile = profile
        self.remote = remote
        self.vm = vm
        self.synchronizer = synchronizer
        self.forwarder = forwarder
        self.assets_dir = assets_dir

    @property
    def dry_run(self) -> bool:
        return self.remote.dry_run

    def _require_reachable(self) -> None:
        if self.dry_run:
            return
        if not self.remote.is_reachable():
            raise RemoteCommandFailed(
                f"SSH is not available on {self.settings.vm_ip}. Is the VM running?",
                remediation="Start it with: astrovps manage start",
            )

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------
    def installer_command(self) -> str:
        s = self.settings
        return " ".join(
            [
                "powershell.exe -ExecutionPolicy Bypass -File",
                windows_path(self.profile.installer_remote_path),
                f"-ServerPort {s.astro_port}",
                f"-LauncherPort {s.launcher_port}",
                f"-ServerName {_arg_quote(s.server_name)}",
                f"-OwnerName {_arg_quote(s.owner_name)}",
                f"-PublicIP {_arg_quote(s.public_ip)}",
            ]
        )

    def install(self) -> None:
        """Copy the installer script to the guest and run it with the configured parameters."""
        script = self.assets_dir / self.profile.installer_script
        if not script.is_file():
            raise PrerequisiteUnmet(
                f"Installer script not found: {script}",
                remediation=f"Place {self.profile.installer_script} next to your configuration file.",
            )
        self._require_reachable()

        log("INFO", "Copying setup script to VM...")
        retry(
            lambda: self.remote.copy(script, self.profile.installer_remote_path, "to"),
            attempts=REMOTE_RETRIES,
            delay=RETRY_INITIAL_DELAY,
            backoff=RETRY_BACKOFF,
            retry_on=(RemoteCommandFailed, TransferFailed),
            description="Installer upload",
        )

        log("INFO", f"Running {self.profile.name} installer (this takes a few minutes)...")
        command = self.installer_command()
        # Only session-level failures are retried; a non-zero installer exit is final.
        result = retry(
            lambda: self.remote.execute(command, check=False),
            attempts=REMOTE_RETRIES,
            delay=RETRY_INITIAL_DELAY,
            backoff=RETRY_BACKOFF,
            retry_on=(RemoteCommandFailed,),
            description="Installer run",
        )
        if not result.ok:
            detail = (result.stderr or result.stdout).strip()
            raise RemoteCommandFailed(
                f"Installer exited with status {result.exit_status}" + (f"\n  {detail}" if detail else ""),
                remediation="Inspect the guest over SSH (astrovps manage ssh), then re-run: astrovps manage install",
            )
        log("SUCCESS", "Provisioning complete")

    # ------------------------------------------------------------------
    # Process control
    # ------------------------------------------------------------------
    def running_processes(self) -> Set[str]:
        result = self.remote.powershell(
            "Get-Process | Select-Object -ExpandProperty ProcessName",
            check=False,
            mutating=False,
        )
        return {line.strip().lower() for line in result.stdout.splitlines() if line.strip()}

    def _managed(self) -> List[str]:
        return [self.profile.supervisor_process, self.profile.workload_process]

    def _running_managed(self) -> List[str]:
        running = self.running_processes()
        return [name for name in self._managed() if name.lower() in running]

    def _force_kill(self) -> None:
        names = ",".join(self._managed())
        self.remote.powershell(f"Stop-Process -Name {names} -Force -ErrorAction SilentlyContinue", check=False)

    def start_workload(self) -> bool:
        """Launch the supervisor detached from the SSH session and wait for the server process.

        Returns False (with a warning) if the server did not appear in time.
        """
        self._require_reachable()
        log("INFO", f"Starting {self.profile.name}...")
        self._force_kill()

        executable = windows_path(self.profile.supervisor_executable)
        script = (
            "$r = Invoke-CimMethod -ClassName Win32_Process -MethodName Create -Arguments @{"
            f"CommandLine={ps_quote(_arg_quote(executable))}; "
            f"CurrentDirectory={ps_quote(windows_path(self.profile.install_dir))}"
            "}; exit $r.ReturnValue"
        )
        self.remote.powershell(script)
        if self.dry_run:
            return True

        workload = self.profile.workload_process.lower()
        if wait_until(lambda: workload in self.running_processes(), WORKLOAD_START_TIMEOUT, WORKLOAD_POLL_INTERVAL):
            log("SUCCESS", f"{self.profile.workload_process} running")
            return True
        log(
            "WARN",
            f"{self.profile.workload_process} not detected after {WORKLOAD_START_TIMEOUT}s; "
            "it may still be starting. Check with: astrovps manage status",
        )
        return False

    def stop_workload(self) -> bool:
        """Stop the server gracefully, force after the grace period, then pull data.

        Returns False without touching anything when nothing is running.
        """
        self._require_reachable()
        present = self._running_managed() if not self.dry_run else self._managed()
        if not present:
            log("INFO", f"{self.profile.name} is not running")
            return False

        log("INFO", f"Stopping {self.profile.name}...")
        for name in present:
            self.remote.execute(f"taskkill /IM {name}.exe", check=False)
        if not self.dry_run:
            stopped = wait_until(lambda: not self._running_managed(), WORKLOAD_STOP_GRACE, WORKLOAD_POLL_INTERVAL)
            if not stopped:
                log("WARN", f"Graceful stop timed out after {WORKLOAD_STOP_GRACE}s, forcing...")
                self._force_kill()
        log("SUCCESS", f"{self.profile.name} stopped")
        if self.dry_run:
            log("DRY", "[dry-run] pull synced data from the guest")
        else:
            self.synchronizer.pull()
        return True

    def update(self) -> None:
        if not self.profile.update_command:
            raise PrerequisiteUnmet("No update command configured in the workload profile")
        self._require_reachable()
        log("INFO", f"Updating {self.profile.name}...")
        self.remote.execute(self.profile.update_command)
        log("SUCCESS", "Update complete")

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------
    def status(self) -> StatusReport:
        """Collect what is observable; fields stay ``None`` when they cannot be determined."""
        s = self.settings
        report = StatusReport(
            vm_name=s.vm_name,
            vm_state=self.vm.state(s.vm_name),
            ip=s.vm_ip,
            memory_total_mb=s.vm_ram_mb,
        )
        if not report.running:
            return report

        report.memory_used_mb = self.vm.memory_used_mb(s.vm_name)
        report.forwards_present = self.forwarder.present()
        report.reachable = self.remote.is_reachable()
        if report.reachable:
            try:
                running = self.running_processes()
            except RemoteCommandFailed as exc:
                log("DEBUG", f"Process listing failed: {exc}")
            else:
                report.supervisor_running = self.profile.supervisor_process.lower() in running
                report.workload_running = self.profile.workload_process.lower() in running
        return report

    def logs(self, lines: int = LOG_TAIL_DEFAULT, follow: bool = False) -> None:
        """Print the server log tail, or the hypervisor's log for the VM when SSH is down."""
        if not self.remote.is_reachable():
            path = self.vm.console_log(self.settings.vm_name)
            log("WARN", f"SSH unreachable; showing hypervisor log {path}")
            result = self.vm.runner.query(["tail", "-n", str(lines), str(path)], privileged=True)
            print(result.stdout if result.returncode == 0 and result.stdout else "No logs found", flush=True)
            return

        path = ps_quote(windows_path(self.profile.log_file))
        if follow:
            command = powershell_command(f"Get-Content -Path {path} -Tail {lines} -Wait")
            for line in self.remote.stream(command):
                print(line, flush=True)
            return
        result = self.remote.powershell(
            f"Get-Content -Path {path} -Tail {lines} -ErrorAction SilentlyContinue",
            check=False,
            mutating=False,
        )
        if result.stdout.strip():
            print(result.stdout.rstrip(), flush=True)
        else:
            log("WARN", "No server logs found yet")
