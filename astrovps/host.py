"""Host prerequisite checks and package management."""

from __future__ import annotations

import getpass
import grp
import shutil
from pathlib import Path
from typing import Iterable, List

from astrovps.constants import CPUINFO_PATH
from astrovps.runner import CommandRunner
from astrovps.utils import log


def cpu_virtualization_supported(cpuinfo: Path = CPUINFO_PATH) -> bool:
    """Return True when the CPU advertises VT-x (vmx) or AMD-V (svm)."""
    try:
        text = cpuinfo.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return False
    for line in text.splitlines():
        if line.startswith("flags"):
            flags = line.partition(":")[2].split()
            if "vmx" in flags or "svm" in flags:
                return True
    return False


def free_disk_gb(path: Path) -> float:
    """Free space at ``path`` (or its nearest existing parent) in GiB."""
    candidate = path
    while not candidate.exists() and candidate != candidate.parent:
        candidate = candidate.parent
    return shutil.disk_usage(candidate).free / (1024**3)


class PackageInstaller:
    """Installs Debian packages that are not already present."""

    def __init__(self, runner: CommandRunner) -> None:
        self.runner = runner

    def is_installed(self, package: str) -> bool:
        result = self.runner.query(["dpkg-query", "-W", "-f=${Status}", package])
        return result.returncode == 0 and "install ok installed" in result.stdout

    def missing(self, packages: Iterable[str]) -> List[str]:
        return [pkg for pkg in packages if not self.is_installed(pkg)]

    def install(self, packages: Iterable[str]) -> List[str]:
        """Install ``required - installed``; returns what was (or would be) installed."""
        needed = self.missing(packages)
        if not needed:
            log("SUCCESS", "All packages already installed")
            return []
        log("INFO", f"Installing packages: {' '.join(needed)}")
        self.runner.run(["apt-get", "update", "-qq"], privileged=True)
        self.runner.run(["apt-get", "install", "-y", "-qq", *needed], privileged=True)
        log("SUCCESS", f"Installed: {' '.join(needed)}")
        return needed


def user_in_group(user: str, group: str) -> bool:
    try:
        entry = grp.getgrnam(group)
    except KeyError:
        return False
    return user in entry.gr_mem


def ensure_libvirt_group(runner: CommandRunner, user: str = "") -> None:
    user = user or getpass.getuser()
    if user == "root" or user_in_group(user, "libvirt"):
        return
    runner.run(["usermod", "-aG", "libvirt", user], privileged=True)
    log("WARN", f"Added {user} to libvirt group; log out and back in for full access")


def ensure_libvirtd(runner: CommandRunner) -> None:
    runner.run(["systemctl", "enable", "--now", "libvirtd"], privileged=True)
    log("SUCCESS", "libvirtd running")
