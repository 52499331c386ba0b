"""Tests for astrovps.media module."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from astrovps.exceptions import PrerequisiteUnmet
from astrovps.media import (
    build_install_media,
    ensure_driver_image,
    find_candidate,
    locate_base_image,
    render_template,
    template_values,
)
from astrovps.models import ImageSource

from conftest import completed


class TestRenderTemplate:
    def test_substitutes_known_tokens(self):
        text, unresolved = render_template("user={{WIN_USERNAME}} port={{ ASTRO_PORT }}", {
            "WIN_USERNAME": "Administrator",
            "ASTRO_PORT": "7777",
        })
        assert text == "user=Administrator port=7777"
        assert unresolved == []

    def test_unknown_tokens_left_and_reported_once(self):
        text, unresolved = render_template("{{NOPE}} and {{NOPE}}", {})
        assert text == "{{NOPE}} and {{NOPE}}"
        assert unresolved == ["NOPE"]

    def test_xml_escaping(self):
        text, _ = render_template("<Value>{{WIN_PASSWORD}}</Value>", {"WIN_PASSWORD": "a<b&\"c'"}, xml=True)
        assert text == "<Value>a&lt;b&amp;&quot;c&apos;</Value>"

    def test_plain_text_not_escaped(self):
        text, _ = render_template("{{X}}", {"X": "a&b"})
        assert text == "a&b"

    def test_template_values_from_settings(self, settings):
        values = template_values(settings)
        assert values["VM_NAME"] == "astroneer"
        assert values["ASTRO_PORT"] == "7777"
        assert values["LAUNCHER_PORT"] == "5000"
        assert values["ASTRO_PUBLIC_IP"] == "203.0.113.10"


class TestBuildInstallMedia:
    def test_stages_rendered_template_and_companions(self, fake_runner, tmp_path):
        template = tmp_path / "autounattend.xml"
        template.write_text("<Password>{{WIN_PASSWORD}}</Password>")
        script = tmp_path / "setup-astroneer.ps1"
        script.write_text("Write-Host hi\n")
        staged = {}

        def _run(cmd):
            if cmd[0] == "genisoimage":
                content = Path(cmd[-1])
                staged.update({p.name: p.read_text() for p in content.iterdir()})
            return completed(cmd)

        fake_runner.on_run = _run
        output = tmp_path / "images" / "autounattend.iso"
        result = build_install_media(fake_runner, template, [script], output, "OEMDRV", {"WIN_PASSWORD": "x&y"})

        assert result == output
        assert staged == {
            "autounattend.xml": "<Password>x&amp;y</Password>",
            "setup-astroneer.ps1": "Write-Host hi\n",
        }
        iso_cmd = fake_runner.ran("genisoimage")[0]
        assert iso_cmd[iso_cmd.index("-volid") + 1] == "OEMDRV"
        install_cmd = fake_runner.ran("install")[0]
        assert install_cmd[-1] == str(output)

    def test_staging_removed_on_failure(self, fake_runner, tmp_path):
        template = tmp_path / "autounattend.xml"
        template.write_text("x")
        seen = []

        def _fail(cmd):
            seen.append(cmd[-1])
            raise RuntimeError("genisoimage crashed")

        fake_runner.on_run = _fail
        with pytest.raises(RuntimeError):
            build_install_media(fake_runner, template, [], tmp_path / "out.iso", "OEMDRV", {})
        assert not Path(seen[0]).exists()


class TestEnsureDriverImage:
    SOURCE = ImageSource(filename="virtio-win.iso", url="https://example.invalid/virtio-win.iso")

    def test_existing_file_skips_download(self, fake_runner, tmp_path):
        (tmp_path / "virtio-win.iso").write_bytes(b"iso")
        downloader = MagicMock()
        assert ensure_driver_image(fake_runner, self.SOURCE, tmp_path, downloader) == tmp_path / "virtio-win.iso"
        downloader.assert_not_called()

    def test_downloads_missing_file(self, fake_runner, tmp_path):
        downloader = MagicMock()
        dest = ensure_driver_image(fake_runner, self.SOURCE, tmp_path / "images", downloader)
        assert dest == tmp_path / "images" / "virtio-win.iso"
        args, kwargs = downloader.call_args
        assert args == (self.SOURCE.url, dest)
        assert kwargs["retries"] == 3

    def test_no_url_is_prerequisite_failure(self, fake_runner, tmp_path):
        with pytest.raises(PrerequisiteUnmet):
            ensure_driver_image(fake_runner, ImageSource(filename="virtio-win.iso"), tmp_path, MagicMock())

    def test_dry_run_does_not_download(self, tmp_path):
        from conftest import FakeRunner

        downloader = MagicMock()
        ensure_driver_image(FakeRunner(dry_run=True), self.SOURCE, tmp_path / "images", downloader)
        downloader.assert_not_called()
        assert not (tmp_path / "images").exists()


class TestLocateBaseImage:
    def _source(self, *candidates):
        return ImageSource(
            filename="Win2022.iso",
            download_page="https://www.microsoft.com/evalcenter",
            candidates=list(candidates),
        )

    def test_glob_candidate(self, tmp_path):
        images = tmp_path / "images"
        images.mkdir()
        (images / "SERVER_EVAL_x64.iso").write_bytes(b"iso")
        found = find_candidate(["{images_dir}/Win2022.iso", "{images_dir}/SERVER_EVAL*.iso"], images)
        assert found == images / "SERVER_EVAL_x64.iso"

    def test_copies_found_image_into_place(self, fake_runner, tmp_path):
        images = tmp_path / "images"
        elsewhere = tmp_path / "dl" / "win.iso"
        elsewhere.parent.mkdir()
        elsewhere.write_bytes(b"iso")
        dest = locate_base_image(fake_runner, elsewhere, self._source(), images)
        assert dest == images / "Win2022.iso"
        assert fake_runner.ran("cp") == [["cp", str(elsewhere), str(dest)]]

    def test_image_already_in_place(self, fake_runner, tmp_path):
        images = tmp_path / "images"
        images.mkdir()
        (images / "Win2022.iso").write_bytes(b"iso")
        locate_base_image(fake_runner, None, self._source("{images_dir}/Win2022.iso"), images)
        assert fake_runner.ran("cp") == []

    def test_missing_image_explains_how_to_obtain(self, fake_runner, tmp_path):
        images = tmp_path / "images"
        with pytest.raises(PrerequisiteUnmet) as exc:
            locate_base_image(fake_runner, None, self._source("{images_dir}/Win2022.iso"), images)
        hint = exc.value.remediation
        assert "https://www.microsoft.com/evalcenter" in hint
        assert str(images / "Win2022.iso") in hint
        assert "--image" in hint

    def test_explicit_missing_file(self, fake_runner, tmp_path):
        with pytest.raises(PrerequisiteUnmet, match="not found"):
            locate_base_image(fake_runner, tmp_path / "nope.iso", self._source(), tmp_path)
