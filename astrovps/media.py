"""Installation images and unattended-install media for astroneer-vps."""

from __future__ import annotations

import glob
import os
import shutil
import tempfile
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple
from xml.sax.saxutils import escape

from astrovps.constants import DOWNLOAD_RETRIES, TEMPLATE_TOKEN_RE
from astrovps.exceptions import PrerequisiteUnmet
from astrovps.models import ImageSource, Settings
from astrovps.runner import CommandRunner
from astrovps.utils import download_file_with_retry, log

Downloader = Callable[..., None]


def template_values(settings: Settings) -> Dict[str, str]:
    """Expose the configuration under the KEY names used in ``{{KEY}}`` tokens."""
    return {
        "VM_NAME": settings.vm_name,
        "VM_IP": settings.vm_ip,
        "WIN_USERNAME": settings.win_username,
        "WIN_PASSWORD": settings.win_password,
        "ASTRO_SERVER_NAME": settings.server_name,
        "ASTRO_OWNER_NAME": settings.owner_name,
        "ASTRO_PUBLIC_IP": settings.public_ip,
        "ASTRO_PORT": str(settings.astro_port),
        "LAUNCHER_PORT": str(settings.launcher_port),
    }


def render_template(text: str, values: Mapping[str, str], xml: bool = False) -> Tuple[str, List[str]]:
    """Substitute ``{{KEY}}`` tokens; unknown tokens are left in place and reported."""
    unresolved: List[str] = []

    def _replace(match) -> str:
        key = match.group(1)
        if key not in values:
            if key not in unresolved:
                unresolved.append(key)
            return match.group(0)
        value = str(values[key])
        return escape(value, {'"': "&quot;", "'": "&apos;"}) if xml else value

    return TEMPLATE_TOKEN_RE.sub(_replace, text), unresolved


def build_install_media(
    runner: CommandRunner,
    template: Path,
    companions: Sequence[Path],
    output: Path,
    volume_id: str,
    values: Mapping[str, str],
) -> Path:
    """Render ``template``, stage it with ``companions`` and pack both into an ISO at ``output``.

    The staging directory is always removed, including on failure.
    """
    rendered, unresolved = render_template(
        template.read_text(encoding="utf-8"), values, xml=template.suffix.lower() == ".xml"
    )
    if unresolved:
        log("WARN", f"Unresolved template tokens in {template.name}: {', '.join(unresolved)}")

    with tempfile.TemporaryDirectory(prefix="astrovps-media-") as tmp:
        staging = Path(tmp) / "content"
        staging.mkdir()
        (staging / template.name).write_text(rendered, encoding="utf-8")
        for companion in companions:
            shutil.copy2(companion, staging / companion.name)
        iso = Path(tmp) / output.name
        runner.run(
            ["genisoimage", "-quiet", "-o", str(iso), "-joliet", "-rock", "-volid", volume_id, str(staging)],
            capture=True,
        )
        runner.run(["install", "-D", "-m", "0644", str(iso), str(output)], privileged=True)
    log("SUCCESS", f"Install media built: {output}")
    return output


def ensure_images_dir(runner: CommandRunner, images_dir: Path) -> None:
    if images_dir.is_dir():
        return
    if runner.dry_run:
        log("DRY", f"[dry-run] mkdir -p {images_dir}")
        return
    try:
        images_dir.mkdir(parents=True)
    except PermissionError:
        runner.run(["mkdir", "-p", str(images_dir)], privileged=True)


def ensure_driver_image(
    runner: CommandRunner,
    source: ImageSource,
    images_dir: Path,
    downloader: Downloader = download_file_with_retry,
) -> Path:
    """Download the driver ISO unless it is already present. No checksum is verified."""
    dest = images_dir / source.filename
    if dest.exists():
        log("SUCCESS", f"{source.filename} already exists")
        return dest
    if not source.url:
        raise PrerequisiteUnmet(
            f"{source.filename} missing and no download URL configured",
            remediation=f"Place the file at {dest}.",
        )
    if runner.dry_run:
        log("DRY", f"[dry-run] download {source.url} -> {dest}")
        return dest

    ensure_images_dir(runner, images_dir)
    if os.access(images_dir, os.W_OK):
        downloader(source.url, dest, label=f"Downloading {source.filename}", retries=DOWNLOAD_RETRIES)
        return dest

    with tempfile.TemporaryDirectory(prefix="astrovps-dl-") as tmp:
        staged = Path(tmp) / source.filename
        downloader(source.url, staged, label=f"Downloading {source.filename}", retries=DOWNLOAD_RETRIES)
        runner.run(["install", "-m", "0644", str(staged), str(dest)], privileged=True)
    return dest


def _expand(pattern: str, images_dir: Path) -> str:
    return os.path.expanduser(pattern.replace("{images_dir}", str(images_dir)))


def find_candidate(candidates: Sequence[str], images_dir: Path) -> Optional[Path]:
    """Return the first existing file in ``candidates`` (glob patterns allowed)."""
    for raw in candidates:
        pattern = _expand(raw, images_dir)
        if glob.has_magic(pattern):
            matches = sorted(p for p in glob.glob(pattern) if os.path.isfile(p))
            if matches:
                return Path(matches[0])
        elif os.path.isfile(pattern):
            return Path(pattern)
    return None


def _missing_image_hint(source: ImageSource, images_dir: Path) -> str:
    lines = []
    if source.download_page:
        lines.append(f"Download the evaluation ISO from: {source.download_page}")
    lines.append(f"Then either place it at {images_dir / source.filename}")
    lines.append("or re-run: astrovps setup --image=/path/to/downloaded.iso")
    return "\n  ".join(lines)


def locate_base_image(
    runner: CommandRunner,
    explicit: Optional[Path],
    source: ImageSource,
    images_dir: Path,
) -> Path:
    """Find the installation ISO and copy it to its standard location under ``images_dir``."""
    if explicit is not None:
        explicit = explicit.expanduser()
        if not explicit.is_file():
            raise PrerequisiteUnmet(
                f"Installation image not found: {explicit}",
                remediation=_missing_image_hint(source, images_dir),
            )
        found: Optional[Path] = explicit
    else:
        found = find_candidate(source.candidates, images_dir)
    if found is None:
        raise PrerequisiteUnmet(
            f"{source.filename} not found in any known location",
            remediation=_missing_image_hint(source, images_dir),
        )

    dest = images_dir / source.filename
    if found.resolve() != dest.resolve():
        ensure_images_dir(runner, images_dir)
        log("INFO", f"Copying {found} -> {dest}")
        runner.run(["cp", str(found), str(dest)], privileged=True)
    log("SUCCESS", f"Installation image: {dest}")
    return dest
