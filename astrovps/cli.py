"""CLI entry points for astroneer-vps."""

from __future__ import annotations

import argparse
import contextlib
import getpass
import signal
import socket
import traceback
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

from astrovps.config import load_profile, load_settings
from astrovps.constants import DEFAULT_ENV_PATH, LOG_TAIL_DEFAULT, SSH_TIMEOUT_START
from astrovps.exceptions import ManagerError, PrerequisiteUnmet, RemoteCommandFailed, Timeout
from astrovps.locks import CleanupRegistry, RunLock
from astrovps.models import Settings, WorkloadProfile
from astrovps.network import PortForwarder
from astrovps.provision import Provisioner, SetupOptions
from astrovps.remote import RemoteClient
from astrovps.runner import CommandRunner
from astrovps.services import ServiceManager
from astrovps.status import render_status
from astrovps.sync import SYNC_DIRECTIONS, DataSynchronizer
from astrovps.utils import close_run_log, confirm, deterministic_mac, init_run_log, log, set_verbose
from astrovps.vm import VMController

# Commands that only observe state and may run alongside a locked operation.
READ_ONLY_ACTIONS = {"status", "logs", "vnc", "ssh"}


@dataclass
class AppContext:
    settings: Settings
    profile: WorkloadProfile
    runner: CommandRunner
    vm: VMController
    remote: RemoteClient
    synchronizer: DataSynchronizer
    forwarder: PortForwarder
    services: ServiceManager
    cleanup: CleanupRegistry
    assets_dir: Path

    @property
    def dry_run(self) -> bool:
        return self.runner.dry_run


def build_context(
    settings: Settings,
    profile: WorkloadProfile,
    dry_run: bool,
    cleanup: CleanupRegistry,
) -> AppContext:
    assets_dir = settings.source_path.parent if settings.source_path else Path.cwd()
    runner = CommandRunner(dry_run=dry_run)
    vm = VMController(runner)
    remote = RemoteClient(settings.vm_ip, settings.win_username, settings.win_password, dry_run=dry_run)
    cleanup.register(remote.close, "close SSH session")
    synchronizer = DataSynchronizer(remote, settings.data_dir, profile.sync_targets)
    forwarder = PortForwarder(runner, settings.vm_ip, settings.port_forwards, settings.forward_interface)
    services = ServiceManager(settings, profile, remote, vm, synchronizer, forwarder, assets_dir)
    return AppContext(
        settings=settings,
        profile=profile,
        runner=runner,
        vm=vm,
        remote=remote,
        synchronizer=synchronizer,
        forwarder=forwarder,
        services=services,
        cleanup=cleanup,
        assets_dir=assets_dir,
    )


# ----------------------------------------------------------------------
# setup
# ----------------------------------------------------------------------
def cmd_setup(ctx: AppContext, args: argparse.Namespace) -> int:
    provisioner = Provisioner(
        ctx.settings,
        ctx.profile,
        ctx.runner,
        ctx.vm,
        ctx.remote,
        ctx.services,
        ctx.cleanup,
        ctx.assets_dir,
    )
    options = SetupOptions(
        image=Path(args.image) if args.image else None,
        skip_provision=args.skip_provision,
        force=args.force,
    )
    provisioner.run(options)
    return 0


# ----------------------------------------------------------------------
# manage
# ----------------------------------------------------------------------
def cmd_start(ctx: AppContext, args: argparse.Namespace) -> int:
    name = ctx.settings.vm_name
    if ctx.vm.is_running(name):
        log("SUCCESS", "VM is already running")
    else:
        log("INFO", f"Starting VM: {name}")
        ctx.vm.start(name)
    ctx.forwarder.apply()
    if ctx.dry_run:
        return 0
    try:
        ctx.remote.wait_until_reachable(SSH_TIMEOUT_START)
    except Timeout:
        log("WARN", "VM started but SSH not yet available; it may still be booting. Try: astrovps manage ssh")
        return 0
    log("SUCCESS", f"VM ready: SSH {ctx.settings.win_username}@{ctx.settings.vm_ip}")
    return 0


def cmd_stop(ctx: AppContext, args: argparse.Namespace) -> int:
    name = ctx.settings.vm_name
    if not ctx.vm.is_running(name):
        log("SUCCESS", "VM is already stopped")
        return 0

    log("INFO", "Shutting down VM gracefully...")
    if not ctx.dry_run and ctx.remote.is_reachable():
        try:
            ctx.remote.powershell("Stop-Computer -Force", check=False)
        except RemoteCommandFailed as exc:
            log("DEBUG", f"SSH session closed during shutdown: {exc}")
        ctx.remote.close()
    else:
        ctx.vm.shutdown(name)

    if not ctx.vm.wait_until_stopped(name):
        log("WARN", "Graceful shutdown timed out, forcing...")
        ctx.vm.shutdown(name, graceful=False)
    log("SUCCESS", "VM stopped")
    return 0


def cmd_restart(ctx: AppContext, args: argparse.Namespace) -> int:
    cmd_stop(ctx, args)
    return cmd_start(ctx, args)


def cmd_status(ctx: AppContext, args: argparse.Namespace) -> int:
    render_status(ctx.services.status(), ctx.settings)
    return 0


def cmd_ssh(ctx: AppContext, args: argparse.Namespace) -> int:
    if not ctx.vm.is_running(ctx.settings.vm_name):
        raise PrerequisiteUnmet("VM is not running", remediation="Start it with: astrovps manage start")
    log("INFO", "Connecting via SSH...")
    return ctx.remote.interactive_shell()


def cmd_install(ctx: AppContext, args: argparse.Namespace) -> int:
    ctx.services.install()
    return 0


def cmd_start_workload(ctx: AppContext, args: argparse.Namespace) -> int:
    ctx.services.start_workload()
    return 0


def cmd_stop_workload(ctx: AppContext, args: argparse.Namespace) -> int:
    ctx.services.stop_workload()
    return 0


def cmd_sync(ctx: AppContext, args: argparse.Namespace) -> int:
    ctx.synchronizer.sync(args.direction)
    return 0


def cmd_logs(ctx: AppContext, args: argparse.Namespace) -> int:
    ctx.services.logs(lines=args.lines, follow=args.follow)
    return 0


def cmd_autostart(ctx: AppContext, args: argparse.Namespace) -> int:
    ctx.vm.set_autostart(ctx.settings.vm_name, args.mode == "on")
    return 0


def cmd_destroy(ctx: AppContext, args: argparse.Namespace) -> int:
    s = ctx.settings
    if not args.force:
        print("\033[0;31mThis will permanently delete the VM and its disk.\033[0m", flush=True)
        if not confirm("Are you sure? (type 'yes' to confirm)", accept=("yes",)):
            log("INFO", "Aborted.")
            return 0
    ctx.forwarder.remove()
    ctx.vm.destroy(s.vm_name)
    ctx.vm.remove_static_lease(s.network_name, s.vm_name, deterministic_mac(s.vm_name), s.vm_ip)
    return 0


def cmd_vnc(ctx: AppContext, args: argparse.Namespace) -> int:
    s = ctx.settings
    port = s.vnc_port
    lines = [
        "",
        "  VNC is available for emergency access (Server Core has limited GUI).",
        "",
        "  From your local machine:",
        f"    ssh -L {port}:localhost:{port} {getpass.getuser()}@{socket.gethostname()}",
        f"    Then open VNC -> localhost:{port}",
        f"    Password: {s.vnc_password}",
        "",
        "  Prefer SSH instead: astrovps manage ssh",
        "",
    ]
    for line in lines:
        print(line, flush=True)
    return 0


def cmd_update(ctx: AppContext, args: argparse.Namespace) -> int:
    ctx.services.update()
    return 0


def cmd_forward(ctx: AppContext, args: argparse.Namespace) -> int:
    if args.mode == "on":
        ctx.forwarder.apply()
    elif args.mode == "off":
        ctx.forwarder.remove()
    else:
        state = "active" if ctx.forwarder.present() else "missing"
        print(f"  Forwards ({state}): {ctx.forwarder.describe()}", flush=True)
    return 0


MANAGE_COMMANDS: Dict[str, Callable[[AppContext, argparse.Namespace], int]] = {
    "start": cmd_start,
    "stop": cmd_stop,
    "restart": cmd_restart,
    "status": cmd_status,
    "ssh": cmd_ssh,
    "install": cmd_install,
    "start-workload": cmd_start_workload,
    "stop-workload": cmd_stop_workload,
    "sync": cmd_sync,
    "logs": cmd_logs,
    "autostart": cmd_autostart,
    "destroy": cmd_destroy,
    "vnc": cmd_vnc,
    "update": cmd_update,
    "forward": cmd_forward,
}


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--env-file", type=Path, default=argparse.SUPPRESS, help="Configuration file (default: .env)")
    common.add_argument("--dry-run", action="store_true", default=argparse.SUPPRESS, help="Print mutating commands without running them")
    common.add_argument("-v", "--verbose", action="store_true", default=argparse.SUPPRESS, help="Enable debug output")

    parser = argparse.ArgumentParser(prog="astrovps", description="Astroneer dedicated server VM manager", parents=[common])
    sub = parser.add_subparsers(dest="command", required=True)

    setup = sub.add_parser("setup", parents=[common], help="Install KVM, create the VM and provision the server")
    setup.add_argument("--image", metavar="PATH", help="Path to the Windows installation ISO")
    setup.add_argument("--skip-provision", action="store_true", help="Stop after the VM is reachable")
    setup.add_argument("--force", action="store_true", help="Recreate an existing VM without asking")

    manage = sub.add_parser("manage", parents=[common], help="Operate an existing VM")
    actions = manage.add_subparsers(dest="action", required=True)
    actions.add_parser("start", help="Start the VM and wait for SSH")
    actions.add_parser("stop", help="Graceful shutdown")
    actions.add_parser("restart", help="Stop + start")
    actions.add_parser("status", help="VM state, SSH, server processes, memory")
    actions.add_parser("ssh", help="Interactive SSH session to the VM")
    actions.add_parser("install", help="Install or reinstall the server in the VM")
    actions.add_parser("start-workload", help="Start the server inside the VM")
    actions.add_parser("stop-workload", help="Stop the server and pull its data")
    sync = actions.add_parser("sync", help="Synchronize host data with the VM")
    sync.add_argument("direction", nargs="?", choices=SYNC_DIRECTIONS, default="both")
    logs = actions.add_parser("logs", help="Tail server logs")
    logs.add_argument("--lines", type=int, default=LOG_TAIL_DEFAULT)
    logs.add_argument("--follow", action="store_true")
    autostart = actions.add_parser("autostart", help="Start the VM on host boot")
    autostart.add_argument("mode", choices=("on", "off"))
    destroy = actions.add_parser("destroy", help="Delete the VM and its disk (permanent!)")
    destroy.add_argument("--force", action="store_true", help="Do not ask for confirmation")
    actions.add_parser("vnc", help="Show VNC connection instructions")
    actions.add_parser("update", help="Update the server via SteamCMD")
    forward = actions.add_parser("forward", help="Manage host port forwarding")
    forward.add_argument("mode", nargs="?", choices=("on", "off", "status"), default="status")
    return parser


def _report(exc: ManagerError) -> None:
    log("ERROR", f"{exc.classification}: {exc}")
    if exc.remediation:
        log("INFO", exc.remediation)


def _handle_sigterm(signum, frame):
    raise SystemExit(128 + signum)


def _read_only(args: argparse.Namespace) -> bool:
    return args.command == "manage" and args.action in READ_ONLY_ACTIONS


def _dispatch(ctx: AppContext, args: argparse.Namespace) -> int:
    handler = cmd_setup if args.command == "setup" else MANAGE_COMMANDS[args.action]
    try:
        return handler(ctx, args)
    finally:
        ctx.cleanup.run_all()


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    env_file: Path = getattr(args, "env_file", DEFAULT_ENV_PATH)
    dry_run: bool = getattr(args, "dry_run", False)
    set_verbose(getattr(args, "verbose", False))

    prev_sigterm = signal.signal(signal.SIGTERM, _handle_sigterm)
    cleanup = CleanupRegistry()
    try:
        settings = load_settings(env_file)
        read_only = _read_only(args)
        # Read-only commands neither take the lock nor prune old run logs.
        with contextlib.nullcontext() if read_only else RunLock():
            run_log = init_run_log(settings.log_dir, prune=not read_only)
            log("DEBUG", f"Run log: {run_log}")
            profile = load_profile(settings.profile_path)
            ctx = build_context(settings, profile, dry_run, cleanup)
            return _dispatch(ctx, args)
    except ManagerError as exc:
        _report(exc)
        return 1
    except KeyboardInterrupt:
        log("WARN", "Interrupted")
        return 130
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        traceback.print_exc()
        return 1
    finally:
        cleanup.run_all()
        close_run_log()
        signal.signal(signal.SIGTERM, prev_sigterm)
