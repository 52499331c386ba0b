"""Shared test fixtures: recording command runner, directory-backed SFTP, settings."""

from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from astrovps import utils
from astrovps.config import load_profile, validate
from astrovps.models import Settings, WorkloadProfile
from astrovps.remote import RemoteClient


def completed(cmd, returncode: int = 0, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(list(cmd), returncode, stdout, stderr)


class FakeRunner:
    """Stands in for CommandRunner and records every command it is handed."""

    def __init__(self, dry_run: bool = False) -> None:
        self.dry_run = dry_run
        self.commands: List[List[str]] = []
        self.queries: List[List[str]] = []
        self.spawned: List[List[str]] = []
        self.on_run: Callable[[List[str]], subprocess.CompletedProcess] = lambda cmd: completed(cmd)
        self.on_query: Callable[[List[str]], subprocess.CompletedProcess] = lambda cmd: completed(cmd)
        self.process: Optional[object] = None

    def run(self, cmd, **kwargs) -> subprocess.CompletedProcess:
        cmd = [str(c) for c in cmd]
        self.commands.append(cmd)
        if self.dry_run:
            return completed(cmd)
        return self.on_run(cmd)

    def query(self, cmd, **kwargs) -> subprocess.CompletedProcess:
        cmd = [str(c) for c in cmd]
        self.queries.append(cmd)
        return self.on_query(cmd)

    def spawn(self, cmd, **kwargs):
        self.spawned.append([str(c) for c in cmd])
        if self.dry_run:
            return None
        return self.process

    def ran(self, *prefix: str) -> List[List[str]]:
        return [c for c in self.commands if c[: len(prefix)] == list(prefix)]


class _Attr:
    def __init__(self, filename: str, st_mode: int) -> None:
        self.filename = filename
        self.st_mode = st_mode


class FakeSFTP:
    """Minimal paramiko.SFTPClient replacement backed by a local directory."""

    def __init__(self, root: Path) -> None:
        self.root = root
        (self.root / "C:").mkdir(parents=True, exist_ok=True)
        self.puts: List[str] = []

    def _local(self, remote: str) -> Path:
        return self.root / remote.lstrip("/")

    def stat(self, remote: str):
        st = os.stat(self._local(remote))  # raises FileNotFoundError like paramiko
        return _Attr(Path(remote).name, st.st_mode)

    def mkdir(self, remote: str) -> None:
        self._local(remote).mkdir()

    def listdir_attr(self, remote: str):
        local = self._local(remote)
        if not local.is_dir():
            raise FileNotFoundError(2, "No such file", remote)
        return [_Attr(p.name, p.stat().st_mode) for p in sorted(local.iterdir())]

    def put(self, local: str, remote: str) -> None:
        target = self._local(remote)
        if not target.parent.is_dir():
            raise FileNotFoundError(2, "No such file", remote)
        shutil.copyfile(local, target)
        self.puts.append(remote)

    def get(self, remote: str, local: str) -> None:
        shutil.copyfile(self._local(remote), local)

    def close(self) -> None:
        pass

    def guest_file(self, windows_path: str) -> Path:
        return self._local("/" + windows_path.replace("\\", "/"))


@pytest.fixture(autouse=True)
def _isolate_logging():
    utils.set_verbose(False)
    utils.close_run_log()
    yield
    utils.close_run_log()


@pytest.fixture
def env_values(tmp_path) -> Dict[str, str]:
    return {
        "VM_NAME": "astroneer",
        "VM_IP": "192.168.122.50",
        "VM_RAM": "8192",
        "VM_CPUS": "4",
        "VM_DISK_SIZE": "60",
        "VNC_PORT": "5900",
        "VNC_PASSWORD": "vncsecret",
        "WIN_USERNAME": "Administrator",
        "WIN_PASSWORD": "winsecret",
        "ASTRO_SERVER_NAME": "Test Server",
        "ASTRO_OWNER_NAME": "owner",
        "ASTRO_PUBLIC_IP": "203.0.113.10",
        "ASTRO_PORT": "7777",
        "IMAGES_DIR": str(tmp_path / "images"),
        "DATA_DIR": str(tmp_path / "data"),
        "LOG_DIR": str(tmp_path / "logs"),
    }


@pytest.fixture
def settings(env_values) -> Settings:
    return validate(env_values)


@pytest.fixture
def profile() -> WorkloadProfile:
    return load_profile()


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def fake_sftp(tmp_path) -> FakeSFTP:
    return FakeSFTP(tmp_path / "guest")


@pytest.fixture
def sftp_remote(fake_sftp) -> RemoteClient:
    """A RemoteClient whose file transfer goes to ``fake_sftp``."""
    remote = RemoteClient("192.168.122.50", "Administrator", "winsecret")
    remote._sftp = fake_sftp
    return remote
