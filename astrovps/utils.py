"""Utility functions for astroneer-vps."""

from __future__ import annotations

import hashlib
import os
import sys
import tempfile
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Tuple, Type, TypeVar
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from astrovps.constants import LOG_KEEP, MAC_PREFIX, RETRY_BACKOFF, RETRY_INITIAL_DELAY, TRUTHY
from astrovps.exceptions import ManagerError

T = TypeVar("T")

_verbose = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY
_run_log: Optional[Path] = None

_COLOURS = {
    "INFO": "\033[0;34m",
    "WARN": "\033[1;33m",
    "ERROR": "\033[0;31m",
    "SUCCESS": "\033[0;32m",
    "DEBUG": "\033[0;90m",
    "DRY": "\033[2m",
}


def log(level: str, message: str) -> None:
    """Lightweight structured logging compatible with existing colour expectation."""
    _append_run_log(level, message)
    if level == "DEBUG" and not _verbose:
        return
    colour = _COLOURS.get(level, "")
    reset = "\033[0m" if colour else ""
    stream = sys.stderr if level in {"WARN", "ERROR"} else sys.stdout
    print(f"{colour}[{level}]{reset} {message}", file=stream, flush=True)


def set_verbose(enabled: bool) -> None:
    global _verbose
    _verbose = enabled


def _append_run_log(level: str, message: str) -> None:
    if _run_log is None:
        return
    stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    try:
        with open(_run_log, "a", encoding="utf-8") as handle:
            handle.write(f"[{stamp}] {level:<7} {message}\n")
    except OSError:
        pass


def init_run_log(log_dir: Path, keep: int = LOG_KEEP, prune: bool = True) -> Path:
    """Start a timestamped log file for this run and, with ``prune``, drop all but the newest ``keep``."""
    global _run_log
    ensure_directory(log_dir)
    path = log_dir / f"{datetime.now().strftime('%Y%m%d-%H%M%S')}.log"
    path.touch()
    _run_log = path
    if not prune:
        return path
    logs = sorted(log_dir.glob("*.log"), key=lambda p: p.stat().st_mtime, reverse=True)
    for stale in logs[keep:]:
        if stale == path:
            continue
        stale.unlink(missing_ok=True)
    return path


def close_run_log() -> None:
    global _run_log
    _run_log = None


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def confirm(prompt: str, accept: Tuple[str, ...] = ("y", "yes")) -> bool:
    """Ask the operator a yes/no question. EOF (no TTY) counts as "no"."""
    try:
        answer = input(f"{prompt} ")
    except EOFError:
        return False
    return answer.strip().lower() in accept


def deterministic_mac(seed: str) -> str:
    """Map a VM name to a stable MAC so its DHCP reservation survives recreation."""
    digest = hashlib.md5(seed.encode("utf-8")).digest()
    octets = list(MAC_PREFIX) + [digest[0], digest[1], digest[2]]
    return ":".join(f"{octet:02x}" for octet in octets)


def wait_until(
    predicate: Callable[[], bool],
    timeout: float,
    interval: float,
    *,
    on_tick: Optional[Callable[[float], None]] = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Poll ``predicate`` every ``interval`` seconds until it holds or ``timeout`` elapses.

    Returns True on the first positive check and False once the deadline has
    passed; never sleeps beyond the deadline.
    """
    start = clock()
    deadline = start + timeout
    while True:
        if predicate():
            return True
        now = clock()
        remaining = deadline - now
        if remaining <= 0:
            return False
        if on_tick is not None:
            on_tick(now - start)
        sleep(min(interval, remaining))


def retry(
    func: Callable[[], T],
    *,
    attempts: int,
    delay: float,
    backoff: float = 2.0,
    retry_on: Tuple[Type[BaseException], ...] = (ManagerError,),
    description: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``func`` up to ``attempts`` times with exponential backoff.

    The last error is re-raised unchanged once attempts are exhausted.
    """
    wait = delay
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except retry_on as exc:
            if attempt == attempts:
                log("ERROR", f"{description} failed after {attempts} attempts")
                raise
            log("WARN", f"{description} failed (attempt {attempt}/{attempts}): {exc}; retrying in {wait:.0f}s")
            sleep(wait)
            wait *= backoff
    raise AssertionError("unreachable")  # pragma: no cover


def download_file(url: str, destination: Path, label: str = "Downloading") -> None:
    """Download a file with a progress bar using Python urllib."""
    log("INFO", f"{label}: {url}")
    req = Request(url, headers={"User-Agent": "astroneer-vps/1.0"})
    try:
        response = urlopen(req, timeout=60)
    except HTTPError as exc:
        raise ManagerError(f"HTTP error downloading {url}: {exc.code} {exc.reason}")
    except URLError as exc:
        raise ManagerError(f"Failed to download {url}: {exc.reason}")

    total = response.headers.get("Content-Length")
    total_bytes = int(total) if total else None
    downloaded = 0
    start_time = time.time()

    with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent) as tmp:
        tmp_path = Path(tmp.name)
        try:
            chunk_size = 1024 * 256  # 256 KiB
            while True:
                chunk = response.read(chunk_size)
                if not chunk:
                    break
                tmp.write(chunk)
                downloaded += len(chunk)

                elapsed = time.time() - start_time
                speed = downloaded / elapsed if elapsed > 0 else 0
                downloaded_mb = downloaded / (1024 * 1024)
                if total_bytes:
                    total_mb = total_bytes / (1024 * 1024)
                    pct = downloaded * 100 / total_bytes
                    bar_len = 30
                    filled = int(bar_len * downloaded / total_bytes)
                    bar = "#" * filled + "-" * (bar_len - filled)
                    print(
                        f"\r  [{bar}] {pct:5.1f}% {downloaded_mb:.1f}/{total_mb:.1f} MiB "
                        f"({speed / (1024 * 1024):.1f} MiB/s)",
                        end="", flush=True,
                    )
                else:
                    print(
                        f"\r  {downloaded_mb:.1f} MiB downloaded ({speed / (1024 * 1024):.1f} MiB/s)",
                        end="", flush=True,
                    )
            print(flush=True)
            tmp.flush()
            tmp_path.replace(destination)
            elapsed = time.time() - start_time
            log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s")
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise


def download_file_with_retry(url: str, destination: Path, label: str = "Downloading", retries: int = 3) -> None:
    retry(
        lambda: download_file(url, destination, label=label),
        attempts=retries,
        delay=RETRY_INITIAL_DELAY,
        backoff=RETRY_BACKOFF,
        description=f"Download of {url}",
    )
