"""Tests for astrovps.utils module."""

from __future__ import annotations

import os
import re
import time
from unittest.mock import MagicMock, patch

import pytest

from astrovps import utils
from astrovps.exceptions import ManagerError, RemoteCommandFailed
from astrovps.utils import confirm, deterministic_mac, init_run_log, log, retry, wait_until


class TestLog:
    def test_info_level(self, capsys):
        log("INFO", "test message")
        captured = capsys.readouterr()
        assert "[INFO]" in captured.out
        assert "test message" in captured.out

    def test_debug_suppressed_by_default(self, capsys):
        log("DEBUG", "should not appear")
        assert capsys.readouterr().out == ""

    def test_debug_shown_when_verbose(self, capsys):
        utils.set_verbose(True)
        log("DEBUG", "visible")
        assert "visible" in capsys.readouterr().out

    def test_errors_go_to_stderr(self, capsys):
        log("ERROR", "broken")
        captured = capsys.readouterr()
        assert captured.out == ""
        assert "broken" in captured.err


class TestRunLog:
    def test_lines_are_appended(self, tmp_path):
        path = init_run_log(tmp_path / "logs")
        log("INFO", "hello")
        log("DEBUG", "hidden on console")
        content = path.read_text()
        assert "INFO    hello" in content
        assert "hidden on console" in content

    def test_keeps_newest_logs(self, tmp_path):
        log_dir = tmp_path / "logs"
        log_dir.mkdir()
        now = time.time()
        for idx in range(7):
            old = log_dir / f"old-{idx}.log"
            old.write_text("x")
            os.utime(old, (now - 1000 + idx, now - 1000 + idx))
        current = init_run_log(log_dir, keep=5)
        remaining = sorted(p.name for p in log_dir.glob("*.log"))
        assert len(remaining) == 5
        assert current.name in remaining
        assert "old-0.log" not in remaining
        assert "old-6.log" in remaining

    def test_no_prune_keeps_old_logs(self, tmp_path):
        log_dir = tmp_path / "logs"
        log_dir.mkdir()
        for idx in range(7):
            (log_dir / f"old-{idx}.log").write_text("x")
        init_run_log(log_dir, keep=5, prune=False)
        assert len(list(log_dir.glob("*.log"))) == 8


class TestDeterministicMac:
    def test_stable_and_prefixed(self):
        mac = deterministic_mac("astroneer")
        assert mac == deterministic_mac("astroneer")
        assert mac.startswith("52:54:00:")
        assert re.match(r"^([0-9a-f]{2}:){5}[0-9a-f]{2}$", mac)

    def test_matches_md5_prefix(self):
        # md5("astroneer") starts with the three octets used as the suffix.
        import hashlib

        digest = hashlib.md5(b"astroneer").hexdigest()
        expected = f"52:54:00:{digest[0:2]}:{digest[2:4]}:{digest[4:6]}"
        assert deterministic_mac("astroneer") == expected

    def test_different_names_differ(self):
        assert deterministic_mac("a") != deterministic_mac("b")


class TestWaitUntil:
    def test_returns_true_on_first_success(self):
        sleep = MagicMock()
        assert wait_until(lambda: True, timeout=10, interval=1, sleep=sleep) is True
        sleep.assert_not_called()

    def test_succeeds_after_three_polls(self):
        answers = iter([False, False, True])
        check = MagicMock(side_effect=lambda: next(answers))
        clock = iter(range(100))
        sleep = MagicMock()
        assert wait_until(check, timeout=60, interval=5, clock=lambda: next(clock), sleep=sleep) is True
        assert check.call_count == 3
        assert sleep.call_count == 2

    def test_never_sleeps_past_deadline(self):
        now = [0.0]
        sleeps = []

        def _sleep(seconds):
            sleeps.append(seconds)
            now[0] += seconds

        assert wait_until(lambda: False, timeout=12, interval=5, clock=lambda: now[0], sleep=_sleep) is False
        assert sleeps == [5, 5, 2]

    def test_real_two_second_bound(self):
        start = time.monotonic()
        assert wait_until(lambda: False, timeout=2, interval=0.5) is False
        elapsed = time.monotonic() - start
        assert 2.0 <= elapsed < 3.0

    def test_on_tick_reports_elapsed(self):
        now = [0.0]
        ticks = []

        def _sleep(seconds):
            now[0] += seconds

        wait_until(lambda: False, timeout=3, interval=1, on_tick=ticks.append, clock=lambda: now[0], sleep=_sleep)
        assert ticks == [0.0, 1.0, 2.0]


class TestRetry:
    def test_returns_first_success(self):
        func = MagicMock(return_value=42)
        assert retry(func, attempts=3, delay=1, sleep=MagicMock()) == 42
        func.assert_called_once()

    def test_backoff_then_success(self):
        func = MagicMock(side_effect=[ManagerError("a"), ManagerError("b"), "ok"])
        sleep = MagicMock()
        with patch("astrovps.utils.log") as mock_log:
            assert retry(func, attempts=3, delay=5, backoff=2, sleep=sleep) == "ok"
        assert [c.args[0] for c in sleep.call_args_list] == [5, 10]
        assert [c.args[0] for c in mock_log.call_args_list] == ["WARN", "WARN"]

    def test_reraises_last_error(self):
        errors = [RemoteCommandFailed("one"), RemoteCommandFailed("two")]
        func = MagicMock(side_effect=errors)
        with pytest.raises(RemoteCommandFailed, match="two"):
            retry(func, attempts=2, delay=1, sleep=MagicMock())

    def test_other_errors_not_retried(self):
        func = MagicMock(side_effect=ValueError("boom"))
        with pytest.raises(ValueError):
            retry(func, attempts=3, delay=1, sleep=MagicMock())
        func.assert_called_once()


class TestConfirm:
    def test_accepts_yes(self, monkeypatch):
        monkeypatch.setattr("builtins.input", lambda prompt: "y")
        assert confirm("Continue? (y/n)") is True

    def test_rejects_other(self, monkeypatch):
        monkeypatch.setattr("builtins.input", lambda prompt: "n")
        assert confirm("Continue? (y/n)") is False

    def test_eof_is_no(self, monkeypatch):
        def _eof(prompt):
            raise EOFError

        monkeypatch.setattr("builtins.input", _eof)
        assert confirm("Continue? (y/n)") is False

    def test_custom_accept(self, monkeypatch):
        monkeypatch.setattr("builtins.input", lambda prompt: "y")
        assert confirm("Type yes", accept=("yes",)) is False
