"""Tests for astrovps.status module."""

from __future__ import annotations

import re

from astrovps.models import StatusReport
from astrovps.status import render_status, status_lines

_ANSI = re.compile(r"\033\[[0-9;]*m")


def _plain(lines):
    return [_ANSI.sub("", line) for line in lines]


class TestStatusLines:
    def test_stopped_vm_shows_only_state(self, settings):
        lines = _plain(status_lines(StatusReport("astroneer", "shut off", "192.168.122.50"), settings))
        assert "  VM:        shut off" in lines
        assert not any("SSH" in line for line in lines)

    def test_running_and_reachable(self, settings):
        report = StatusReport(
            "astroneer",
            "running",
            "192.168.122.50",
            reachable=True,
            supervisor_running=True,
            workload_running=False,
            memory_used_mb=4096,
            memory_total_mb=8192,
            forwards_present=True,
        )
        lines = _plain(status_lines(report, settings))
        assert "  SSH:       reachable" in lines
        assert "  Launcher:  running" in lines
        assert "  Server:    stopped" in lines
        assert "  Forwards:  active" in lines
        assert "  Memory:    4096 MB / 8192 MB" in lines
        assert "  Public:    203.0.113.10:7777" in lines

    def test_unknown_values(self, settings):
        report = StatusReport("astroneer", "running", "192.168.122.50", reachable=False, memory_total_mb=8192)
        lines = _plain(status_lines(report, settings))
        assert "  SSH:       unreachable" in lines
        assert "  Forwards:  unknown" in lines
        assert "  Memory:    unknown / 8192 MB" in lines
        assert not any("Server:" in line for line in lines)

    def test_render_prints(self, settings, capsys):
        render_status(StatusReport("astroneer", "paused", "192.168.122.50"), settings)
        assert "paused" in capsys.readouterr().out
