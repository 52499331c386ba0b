"""Status report rendering for astroneer-vps."""

from __future__ import annotations

from typing import List, Optional

from astrovps.models import Settings, StatusReport

_GREEN = "\033[0;32m"
_RED = "\033[0;31m"
_YELLOW = "\033[1;33m"
_DIM = "\033[2m"
_RESET = "\033[0m"


def _flag(value: Optional[bool], yes: str, no: str) -> str:
    if value is None:
        return f"{_YELLOW}unknown{_RESET}"
    if value:
        return f"{_GREEN}{yes}{_RESET}"
    return f"{_RED}{no}{_RESET}"


def status_lines(report: StatusReport, settings: Settings) -> List[str]:
    lines: List[str] = [""]
    colour = _GREEN if report.running else _RED
    lines.append(f"  VM:        {colour}{report.vm_state}{_RESET}")
    if not report.running:
        lines.append("")
        return lines

    lines.append(f"  IP:        {report.ip}")
    lines.append(f"  SSH:       {_flag(report.reachable, 'reachable', 'unreachable')}")
    if report.reachable:
        lines.append(f"  Launcher:  {_flag(report.supervisor_running, 'running', 'stopped')}")
        lines.append(f"  Server:    {_flag(report.workload_running, 'running', 'stopped')}")
    lines.append(f"  Forwards:  {_flag(report.forwards_present, 'active', 'missing')}")
    used = f"{report.memory_used_mb} MB" if report.memory_used_mb is not None else "unknown"
    lines.append(f"  Memory:    {used} / {report.memory_total_mb} MB")
    lines.append("")
    lines.append(f"  {_DIM}Public:    {settings.public_ip}:{settings.astro_port}{_RESET}")
    lines.append(f"  {_DIM}SSH:       ssh {settings.win_username}@{settings.vm_ip}{_RESET}")
    lines.append("")
    return lines


def render_status(report: StatusReport, settings: Settings) -> None:
    for line in status_lines(report, settings):
        print(line, flush=True)
