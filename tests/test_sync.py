"""Tests for astrovps.sync module."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from astrovps.sync import DataSynchronizer, to_crlf, to_lf

CONFIG_REMOTE = "C:/AstroneerServer/Astro/Saved/Config/WindowsServer"
SAVES_REMOTE = "C:/AstroneerServer/Astro/Saved/SaveGames"


@pytest.fixture
def data_dir(tmp_path):
    return tmp_path / "data"


@pytest.fixture
def synchronizer(sftp_remote, data_dir, profile):
    return DataSynchronizer(sftp_remote, data_dir, profile.sync_targets)


class TestLineEndings:
    def test_crlf_is_not_doubled(self):
        assert to_crlf(b"a\nb\r\nc") == b"a\r\nb\r\nc"

    def test_lf(self):
        assert to_lf(b"a\r\nb\r\n") == b"a\nb\n"


class TestPush:
    def test_missing_host_dirs_send_nothing(self, synchronizer, fake_sftp):
        assert synchronizer.push() == 0
        assert fake_sftp.puts == []

    def test_text_converted_to_crlf(self, synchronizer, fake_sftp, data_dir):
        config = data_dir / "config"
        config.mkdir(parents=True)
        (config / "AstroServerSettings.ini").write_bytes(b"[Section]\nPort=7777\n")
        (config / "notes.txt").write_bytes(b"ignored\n")

        assert synchronizer.push() == 1
        guest = fake_sftp.guest_file(f"{CONFIG_REMOTE}/AstroServerSettings.ini")
        assert guest.read_bytes() == b"[Section]\r\nPort=7777\r\n"
        assert not fake_sftp.guest_file(f"{CONFIG_REMOTE}/notes.txt").exists()

    def test_binary_copied_verbatim(self, synchronizer, fake_sftp, data_dir):
        saves = data_dir / "saves"
        saves.mkdir(parents=True)
        payload = b"\x00\r\n\x01\n"
        (saves / "world.savegame").write_bytes(payload)
        synchronizer.push()
        assert fake_sftp.guest_file(f"{SAVES_REMOTE}/world.savegame").read_bytes() == payload


class TestPull:
    def test_round_trip_restores_host_files(self, synchronizer, data_dir):
        (data_dir / "config").mkdir(parents=True)
        (data_dir / "saves" / "slot").mkdir(parents=True)
        ini = b"[Server]\nName=Test\n"
        save = b"\x10\x00\r\n\xff"
        (data_dir / "config" / "Engine.ini").write_bytes(ini)
        (data_dir / "saves" / "slot" / "world.savegame").write_bytes(save)

        synchronizer.push()
        (data_dir / "config" / "Engine.ini").unlink()
        (data_dir / "saves" / "slot" / "world.savegame").unlink()

        assert synchronizer.pull() == 2
        assert (data_dir / "config" / "Engine.ini").read_bytes() == ini
        assert (data_dir / "saves" / "slot" / "world.savegame").read_bytes() == save

    def test_guest_crlf_becomes_lf(self, synchronizer, sftp_remote, fake_sftp, data_dir):
        sftp_remote.makedirs(CONFIG_REMOTE)
        sftp_remote.makedirs(SAVES_REMOTE)
        fake_sftp.guest_file(f"{CONFIG_REMOTE}/Game.ini").write_bytes(b"a=1\r\nb=2\r\n")
        synchronizer.pull()
        assert (data_dir / "config" / "Game.ini").read_bytes() == b"a=1\nb=2\n"

    def test_optional_target_skipped_when_absent(self, sftp_remote, data_dir, profile):
        backups = [t for t in profile.sync_targets if t.name == "backups"]
        synchronizer = DataSynchronizer(sftp_remote, data_dir, backups)
        assert synchronizer.pull() == 0
        assert not (data_dir / "backups").exists()

    def test_push_only_target_not_pulled(self, profile, data_dir):
        remote = MagicMock()
        mods = [t for t in profile.sync_targets if t.name == "mods"]
        DataSynchronizer(remote, data_dir, mods).pull()
        remote.copy.assert_not_called()


class TestSyncDirection:
    def test_both_pushes_then_pulls(self, synchronizer):
        calls = []
        synchronizer.push = lambda: calls.append("push") or 1
        synchronizer.pull = lambda: calls.append("pull") or 2
        assert synchronizer.sync("both") == 3
        assert calls == ["push", "pull"]

    def test_unknown_direction(self, synchronizer):
        with pytest.raises(ValueError):
            synchronizer.sync("sideways")


class TestDryRun:
    def test_pull_leaves_host_text_untouched(self, sftp_remote, fake_sftp, data_dir, profile):
        sftp_remote.makedirs(CONFIG_REMOTE)
        fake_sftp.guest_file(f"{CONFIG_REMOTE}/Engine.ini").write_bytes(b"a=1\r\n")
        host_file = data_dir / "config" / "Engine.ini"
        host_file.parent.mkdir(parents=True)
        host_file.write_bytes(b"a=1\r\nb=2\r\n")
        sftp_remote.dry_run = True
        config = [t for t in profile.sync_targets if t.name == "config"]

        assert DataSynchronizer(sftp_remote, data_dir, config).pull() == 1
        assert host_file.read_bytes() == b"a=1\r\nb=2\r\n"
