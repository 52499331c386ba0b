"""Host command execution with dry-run support for astroneer-vps."""

from __future__ import annotations

import os
import shlex
import subprocess
from typing import Dict, List, Optional, Sequence

from astrovps.exceptions import CommandFailed
from astrovps.utils import log


class CommandRunner:
    """Runs host commands, or only prints the mutating ones when ``dry_run`` is set."""

    def __init__(self, dry_run: bool = False, use_sudo: Optional[bool] = None) -> None:
        self.dry_run = dry_run
        if use_sudo is None:
            use_sudo = os.geteuid() != 0
        self.use_sudo = use_sudo

    def _argv(self, cmd: Sequence[str], privileged: bool) -> List[str]:
        argv = [str(part) for part in cmd]
        if privileged and self.use_sudo:
            return ["sudo", *argv]
        return argv

    def run(
        self,
        cmd: Sequence[str],
        *,
        check: bool = True,
        privileged: bool = False,
        allow_failure: bool = False,
        capture: bool = False,
        env: Optional[Dict[str, str]] = None,
        input: Optional[str] = None,
    ) -> subprocess.CompletedProcess:
        """Execute a command that changes host state.

        ``allow_failure`` is reserved for best-effort cleanup whose failure
        means the target was already absent; every other non-zero exit raises
        :class:`CommandFailed`.
        """
        argv = self._argv(cmd, privileged)
        printable = shlex.join(argv)
        if self.dry_run:
            log("DRY", f"[dry-run] {printable}")
            return subprocess.CompletedProcess(argv, 0, "", "")

        log("DEBUG", f"Running: {printable}")
        full_env = None
        if env:
            full_env = {**os.environ, **env}
        result = subprocess.run(
            argv,
            check=False,
            text=True,
            capture_output=capture,
            env=full_env,
            input=input,
        )
        if result.returncode != 0:
            if allow_failure:
                log("DEBUG", f"Ignored exit status {result.returncode} from: {printable}")
                return result
            if check:
                detail = (result.stderr or "").strip() if capture else ""
                message = f"Command failed (exit {result.returncode}): {printable}"
                if detail:
                    message += f"\n  {detail}"
                raise CommandFailed(message)
        return result

    def query(self, cmd: Sequence[str], *, privileged: bool = False) -> subprocess.CompletedProcess:
        """Run a read-only query. Always executed, output captured, exit status returned as-is."""
        argv = self._argv(cmd, privileged)
        log("DEBUG", f"Query: {shlex.join(argv)}")
        try:
            return subprocess.run(argv, check=False, text=True, capture_output=True)
        except FileNotFoundError as exc:
            return subprocess.CompletedProcess(argv, 127, "", str(exc))

    def spawn(self, cmd: Sequence[str], *, privileged: bool = False) -> Optional[subprocess.Popen]:
        """Start a background process and return its handle (``None`` in dry-run)."""
        argv = self._argv(cmd, privileged)
        printable = shlex.join(argv)
        if self.dry_run:
            log("DRY", f"[dry-run] {printable} &")
            return None
        log("DEBUG", f"Spawning: {printable}")
        return subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            text=True,
        )
