"""Host <-> guest data synchronization for astroneer-vps."""

from __future__ import annotations

import fnmatch
import tempfile
from pathlib import Path
from typing import List, Sequence

from astrovps.models import SyncTarget
from astrovps.remote import RemoteClient
from astrovps.utils import log

SYNC_DIRECTIONS = ("to", "from", "both")


def to_crlf(data: bytes) -> bytes:
    return data.replace(b"\r\n", b"\n").replace(b"\n", b"\r\n")


def to_lf(data: bytes) -> bytes:
    return data.replace(b"\r\n", b"\n")


class DataSynchronizer:
    """Mirrors the sync manifest between ``data_dir`` and the guest.

    Text targets are stored with LF on the host and CRLF on the guest; binary
    targets are copied verbatim.
    """

    def __init__(self, remote: RemoteClient, data_dir: Path, targets: Sequence[SyncTarget]) -> None:
        self.remote = remote
        self.data_dir = data_dir
        self.targets = list(targets)

    def host_path(self, target: SyncTarget) -> Path:
        return self.data_dir / target.host_dir

    def push(self) -> int:
        """Upload every push-enabled target; returns the number of files sent."""
        total = 0
        for target in self.targets:
            if not target.pushes:
                continue
            source = self.host_path(target)
            if not source.is_dir():
                log("INFO", f"{target.name}: nothing to sync ({source} does not exist)")
                continue
            if target.kind == "text":
                sent = self._push_text(target, source)
            else:
                sent = self.remote.copy(source, target.remote_path, "to")
            if sent:
                log("SUCCESS", f"{target.name}: pushed {sent} file(s) -> {target.remote_path}")
            else:
                log("INFO", f"{target.name}: nothing to sync")
            total += sent
        return total

    def _push_text(self, target: SyncTarget, source: Path) -> int:
        files = sorted(p for p in source.glob(target.pattern) if p.is_file())
        if not files:
            return 0
        self.remote.makedirs(target.remote_path)
        with tempfile.TemporaryDirectory(prefix="astrovps-sync-") as tmp:
            for path in files:
                staged = Path(tmp) / path.name
                staged.write_bytes(to_crlf(path.read_bytes()))
                self.remote.put_file(staged, f"{target.remote_path.rstrip('/')}/{path.name}")
        return len(files)

    def pull(self) -> int:
        """Download every pull-enabled target; returns the number of files received."""
        total = 0
        for target in self.targets:
            if not target.pulls:
                continue
            if target.optional and not self.remote.exists(target.remote_path):
                log("INFO", f"{target.name}: {target.remote_path} not present on guest, skipped")
                continue
            dest = self.host_path(target)
            if target.kind == "text":
                received = self._pull_text(target, dest)
            else:
                received = self.remote.copy(dest, target.remote_path, "from")
            if received:
                log("SUCCESS", f"{target.name}: pulled {received} file(s) -> {dest}")
            else:
                log("INFO", f"{target.name}: nothing to sync")
            total += received
        return total

    def _pull_text(self, target: SyncTarget, dest: Path) -> int:
        names: List[str] = [
            name
            for name in self.remote.list_files(target.remote_path)
            if "/" not in name and fnmatch.fnmatch(name, target.pattern)
        ]
        for name in names:
            local = dest / name
            self.remote.get_file(f"{target.remote_path.rstrip('/')}/{name}", local)
            if local.exists() and not self.remote.dry_run:
                local.write_bytes(to_lf(local.read_bytes()))
        return len(names)

    def sync(self, direction: str = "both") -> int:
        if direction not in SYNC_DIRECTIONS:
            raise ValueError(f"Unknown sync direction: {direction}")
        total = 0
        if direction in ("to", "both"):
            total += self.push()
        if direction in ("from", "both"):
            total += self.pull()
        return total
