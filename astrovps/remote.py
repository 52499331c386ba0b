"""SSH/SFTP access to the Windows guest for astroneer-vps."""

from __future__ import annotations

import base64
import os
import re
import socket
import stat
import subprocess
import time
from pathlib import Path, PurePosixPath
from typing import Callable, Iterator, List, Optional

try:
    import paramiko  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("paramiko is required but not installed") from exc

from astrovps.constants import SSH_CONNECT_TIMEOUT, SSH_POLL_INTERVAL, SSH_PORT, SSH_TIMEOUT_DEFAULT
from astrovps.exceptions import RemoteCommandFailed, Timeout, TransferFailed
from astrovps.models import RemoteResult
from astrovps.utils import ensure_directory, log, wait_until

_DRIVE_RE = re.compile(r"^[A-Za-z]:")


def powershell_command(script: str) -> str:
    """Wrap a PowerShell script as an ``-EncodedCommand`` invocation (UTF-16LE, base64)."""
    encoded = base64.b64encode(script.encode("utf-16-le")).decode("ascii")
    return f"powershell.exe -NoProfile -NonInteractive -EncodedCommand {encoded}"


def ps_quote(value: str) -> str:
    """Single-quote a value for PowerShell."""
    return "'" + str(value).replace("'", "''") + "'"


def windows_path(path: str) -> str:
    return path.replace("/", "\\")


def sftp_path(path: str) -> str:
    """Translate ``C:/dir`` or ``C:\\dir`` into the ``/C:/dir`` form Windows OpenSSH serves."""
    posix = path.replace("\\", "/")
    if _DRIVE_RE.match(posix):
        return "/" + posix
    return posix


class RemoteClient:
    """Password-authenticated SSH client for the guest.

    Host keys are accepted without verification: the guest is recreated with
    a fresh key on every setup and only lives on the local NAT network.
    """

    def __init__(
        self,
        host: str,
        username: str,
        password: str,
        port: int = SSH_PORT,
        connect_timeout: float = SSH_CONNECT_TIMEOUT,
        dry_run: bool = False,
    ) -> None:
        self.host = host
        self.username = username
        self.password = password
        self.port = port
        self.connect_timeout = connect_timeout
        self.dry_run = dry_run
        self._client: Optional[paramiko.SSHClient] = None
        self._sftp: Optional[paramiko.SFTPClient] = None

    @property
    def target(self) -> str:
        return f"{self.username}@{self.host}"

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------
    def connect(self, timeout: Optional[float] = None) -> paramiko.SSHClient:
        """Open (or reuse) the session; ``timeout`` bounds the TCP connect, banner and auth phases."""
        if self._client is not None:
            transport = self._client.get_transport()
            if transport is not None and transport.is_active():
                return self._client
            self.close()

        limit = self.connect_timeout if timeout is None else timeout
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                self.host,
                port=self.port,
                username=self.username,
                password=self.password,
                timeout=limit,
                banner_timeout=limit,
                auth_timeout=limit,
                look_for_keys=False,
                allow_agent=False,
            )
        except paramiko.AuthenticationException as exc:
            client.close()
            raise RemoteCommandFailed(
                f"SSH authentication failed for {self.target}: {exc}",
                remediation="Check WIN_USERNAME and WIN_PASSWORD in the configuration file.",
            )
        except (paramiko.SSHException, OSError, EOFError) as exc:
            client.close()
            raise RemoteCommandFailed(f"Cannot connect to {self.target}:{self.port}: {exc}")
        self._client = client
        return client

    def close(self) -> None:
        if self._sftp is not None:
            try:
                self._sftp.close()
            except (paramiko.SSHException, OSError):
                pass
            self._sftp = None
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> "RemoteClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Command execution
    # ------------------------------------------------------------------
    def execute(
        self,
        command: str,
        *,
        check: bool = True,
        mutating: bool = True,
        timeout: Optional[float] = None,
    ) -> RemoteResult:
        """Run ``command`` on the guest and collect its exit status and output.

        Mutating commands are only logged in dry-run mode.
        """
        if self.dry_run and mutating:
            log("DRY", f"[dry-run] ssh {self.target} {command}")
            return RemoteResult(0, "", "")

        client = self.connect(None if timeout is None else min(timeout, self.connect_timeout))
        log("DEBUG", f"ssh {self.target}: {command}")
        try:
            _stdin, stdout, stderr = client.exec_command(command, timeout=timeout)
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            status = stdout.channel.recv_exit_status()
        except socket.timeout:
            self.close()
            raise Timeout(f"Remote command timed out after {timeout}s: {command}")
        except (paramiko.SSHException, OSError, EOFError) as exc:
            self.close()
            raise RemoteCommandFailed(f"SSH session to {self.target} failed: {exc}")

        result = RemoteResult(status, out, err)
        if check and status != 0:
            message = f"Remote command failed ({status}): {command}"
            if err.strip():
                message += f"\n  {err.strip()}"
            raise RemoteCommandFailed(message)
        return result

    def powershell(self, script: str, **kwargs) -> RemoteResult:
        return self.execute(powershell_command(script), **kwargs)

    def stream(self, command: str) -> Iterator[str]:
        """Yield output lines of a long-running command until it exits."""
        client = self.connect()
        try:
            _stdin, stdout, _stderr = client.exec_command(command)
            for line in iter(stdout.readline, ""):
                yield line.rstrip("\r\n")
            stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError, EOFError) as exc:
            self.close()
            raise RemoteCommandFailed(f"SSH session to {self.target} failed: {exc}")

    def interactive_shell(self) -> int:
        """Hand the terminal to an interactive ssh session; the password goes through ``SSHPASS``."""
        cmd = [
            "sshpass", "-e", "ssh",
            "-o", "StrictHostKeyChecking=no",
            "-o", "UserKnownHostsFile=/dev/null",
            "-o", "LogLevel=ERROR",
            "-p", str(self.port),
            self.target,
        ]
        return subprocess.call(cmd, env={**os.environ, "SSHPASS": self.password})

    # ------------------------------------------------------------------
    # Reachability
    # ------------------------------------------------------------------
    def is_reachable(self, timeout: Optional[float] = None) -> bool:
        """Try SSH once; ``timeout`` caps the whole attempt below ``connect_timeout``."""
        limit = self.connect_timeout if timeout is None else min(timeout, self.connect_timeout)
        try:
            result = self.execute("echo ok", check=False, mutating=False, timeout=limit)
        except (RemoteCommandFailed, Timeout):
            return False
        return result.ok and "ok" in result.stdout

    def wait_until_reachable(
        self,
        timeout: float = SSH_TIMEOUT_DEFAULT,
        interval: float = SSH_POLL_INTERVAL,
        guard: Optional[Callable[[], None]] = None,
    ) -> None:
        """Block until SSH answers, raising :class:`Timeout` once ``timeout`` elapses.

        ``guard`` runs before every attempt and may raise to abort the wait early.
        """
        deadline = time.monotonic() + timeout

        def _attempt() -> bool:
            if guard is not None:
                guard()
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            return self.is_reachable(timeout=remaining)

        def _tick(elapsed: float) -> None:
            log("INFO", f"Waiting for SSH on {self.host}... {int(elapsed)}s")

        if not wait_until(_attempt, timeout, interval, on_tick=_tick):
            raise Timeout(
                f"SSH on {self.host} not reachable after {int(timeout)}s",
                remediation="Open the VNC console to inspect the guest (astrovps manage vnc).",
            )
        log("SUCCESS", f"SSH reachable on {self.host}")

    # ------------------------------------------------------------------
    # File transfer
    # ------------------------------------------------------------------
    def _sftp_client(self) -> paramiko.SFTPClient:
        if self._sftp is None:
            try:
                self._sftp = self.connect().open_sftp()
            except (paramiko.SSHException, OSError) as exc:
                raise TransferFailed(f"Cannot open SFTP session to {self.target}: {exc}")
        return self._sftp

    def exists(self, remote: str) -> bool:
        try:
            self._sftp_client().stat(sftp_path(remote))
        except FileNotFoundError:
            return False
        except (paramiko.SSHException, OSError) as exc:
            raise TransferFailed(f"Cannot stat {remote}: {exc}")
        return True

    def is_dir(self, remote: str) -> bool:
        try:
            attrs = self._sftp_client().stat(sftp_path(remote))
        except FileNotFoundError:
            return False
        except (paramiko.SSHException, OSError) as exc:
            raise TransferFailed(f"Cannot stat {remote}: {exc}")
        return stat.S_ISDIR(attrs.st_mode or 0)

    def makedirs(self, remote: str) -> None:
        if self.dry_run:
            log("DRY", f"[dry-run] mkdir -p {self.target}:{remote}")
            return
        sftp = self._sftp_client()
        path = PurePosixPath(sftp_path(remote))
        parts = path.parts
        # Skip "/" and the drive component.
        start = 2 if len(parts) > 1 and _DRIVE_RE.match(parts[1]) else 1
        current = PurePosixPath(*parts[:start])
        for part in parts[start:]:
            current = current / part
            try:
                sftp.stat(str(current))
            except FileNotFoundError:
                try:
                    sftp.mkdir(str(current))
                except OSError as exc:
                    raise TransferFailed(f"Cannot create {current}: {exc}")

    def list_files(self, remote: str) -> List[str]:
        """Return POSIX paths of every regular file below ``remote``, relative to it."""
        sftp = self._sftp_client()
        root = sftp_path(remote)
        found: List[str] = []
        pending = [""]
        while pending:
            relative = pending.pop()
            current = f"{root.rstrip('/')}/{relative}" if relative else root
            try:
                entries = sftp.listdir_attr(current)
            except (paramiko.SSHException, OSError) as exc:
                raise TransferFailed(f"Cannot list {current}: {exc}")
            for entry in entries:
                child = f"{relative}/{entry.filename}" if relative else entry.filename
                if stat.S_ISDIR(entry.st_mode or 0):
                    pending.append(child)
                else:
                    found.append(child)
        return sorted(found)

    def put_file(self, local: Path, remote: str) -> None:
        if self.dry_run:
            log("DRY", f"[dry-run] upload {local} -> {self.target}:{remote}")
            return
        try:
            self._sftp_client().put(str(local), sftp_path(remote))
        except (paramiko.SSHException, OSError) as exc:
            raise TransferFailed(f"Upload of {local} to {remote} failed: {exc}")
        log("DEBUG", f"Uploaded {local} -> {remote}")

    def get_file(self, remote: str, local: Path) -> None:
        if self.dry_run:
            log("DRY", f"[dry-run] download {self.target}:{remote} -> {local}")
            return
        ensure_directory(local.parent)
        try:
            self._sftp_client().get(sftp_path(remote), str(local))
        except (paramiko.SSHException, OSError) as exc:
            raise TransferFailed(f"Download of {remote} to {local} failed: {exc}")
        log("DEBUG", f"Downloaded {remote} -> {local}")

    def copy(self, local: Path, remote: str, direction: str = "to") -> int:
        """Copy a file or directory tree in ``direction`` ("to" or "from" the guest).

        Returns the number of files transferred.
        """
        if direction == "to":
            if local.is_dir():
                files = sorted(p for p in local.rglob("*") if p.is_file())
                for path in files:
                    relative = path.relative_to(local).as_posix()
                    target = f"{remote.rstrip('/')}/{relative}"
                    self.makedirs(str(PurePosixPath(target).parent))
                    self.put_file(path, target)
                return len(files)
            self.makedirs(str(PurePosixPath(remote.replace("\\", "/")).parent))
            self.put_file(local, remote)
            return 1
        if direction == "from":
            if self.is_dir(remote):
                names = self.list_files(remote)
                for relative in names:
                    self.get_file(f"{remote.rstrip('/')}/{relative}", local / relative)
                return len(names)
            self.get_file(remote, local)
            return 1
        raise ValueError(f"Unknown copy direction: {direction}")
